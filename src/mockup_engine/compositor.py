"""
Mockup compositor.

:class:`MockupRenderer` takes an imported template, its raster snapshots and
the caller's designs, and produces the finished mockup. Two strategies are
available:

- **sandwich**: when the template names pre-flattened base and overlay
  rasters (and both are present), draw base, then every insertion area,
  then overlay.
- **recursive**: walk the layer tree in ascending z-index, replacing smart
  objects with their designs and drawing every other layer from its
  snapshot.

Problems that only affect one region are collected as diagnostics; only an
unexpected exception fails the whole render.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import cv2
import numpy as np

from .blending import composite, composite_at, destination_in
from .diagnostics import Diagnostic, DiagnosticLog, WarningKind
from .export import encode_surface
from .geometry import Bounds, Quad, Size
from .images import ImageCache, ImageDecodeError
from .layers import (
    AdjustmentLayer,
    BlendMode,
    DesignInput,
    FitMode,
    GroupLayer,
    Mask,
    MockupTemplate,
    RasterImageLayer,
    RenderLayer,
    ShapeLayer,
    SmartObjectInfo,
    SmartObjectLayer,
    SolidColorLayer,
)
from .masking import draw_masked, mask_to_canvas
from .perspective import create_drawer
from .surface import Surface

LOGGER = logging.getLogger(__name__)

SANDWICH = "sandwich"
RECURSIVE = "recursive"


@dataclass
class RendererConfiguration:
    """Configuration for the mockup renderer."""

    backend: str = "homography"
    subdivisions: int = 8
    use_opencl: bool = False
    antialias_clip: bool = True
    interpolation: str = "linear"
    preload_workers: int = 4
    cache_size: int = 64


@dataclass
class RenderOptions:
    scale: float = 1.0
    format: str = "png"
    quality: float = 0.92
    return_surface_handle: bool = False


@dataclass
class RenderResult:
    success: bool
    surface: Optional[Surface] = None
    encoded_image: Optional[bytes] = None
    width: int = 0
    height: int = 0
    format: str = "png"
    render_time_ms: float = 0.0
    warnings: List[Diagnostic] = field(default_factory=list)
    error: Optional[str] = None
    strategy: Optional[str] = None
    drawn_layers: List[str] = field(default_factory=list)


@dataclass
class _RenderPass:
    """State of a single render call."""

    surface: Surface
    snapshots: Mapping[str, Any]
    designs: Sequence[DesignInput]
    areas: Dict[str, SmartObjectInfo]
    diagnostics: DiagnosticLog
    drawn_layers: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------- #
# Strategy and design resolution
# ---------------------------------------------------------------------- #
def select_strategy(template: MockupTemplate, snapshots: Mapping[str, Any]) -> str:
    """Sandwich only when both hinted rasters are actually available."""
    hint = template.render_layers
    if hint is None or not hint.base_layer_id or not hint.overlay_layer_id:
        return RECURSIVE
    if hint.base_layer_id in snapshots and hint.overlay_layer_id in snapshots:
        return SANDWICH
    return RECURSIVE


def resolve_design(
    area: SmartObjectInfo,
    designs: Sequence[DesignInput],
    area_count: int,
) -> Optional[DesignInput]:
    """Find the design meant for ``area``.

    Tried in order: exact ``target_id`` match on the area id, then a
    case-insensitive substring match between the area name and the design
    key, then a lone design that either names no target or is the only
    candidate for a single-area template.
    """
    for design in designs:
        if design.target_id == area.id:
            return design

    name = area.name.lower()
    for design in designs:
        key = (design.target_id or "").lower()
        if key and (key in name or name in key):
            return design

    if len(designs) == 1 and (not designs[0].target_id or area_count == 1):
        return designs[0]
    return None


def fit_design(pixels: np.ndarray, target: Size, fit: FitMode) -> np.ndarray:
    """Reconcile the design's aspect ratio with the placed size.

    ``cover`` centre-crops, ``contain`` pads with transparency and
    ``stretch`` leaves the design untouched.
    """
    if fit is FitMode.STRETCH or target.width <= 0 or target.height <= 0:
        return pixels

    height, width = pixels.shape[:2]
    target_aspect = target.width / target.height
    aspect = width / height

    if fit is FitMode.COVER:
        if aspect > target_aspect:
            new_w = max(1, int(round(height * target_aspect)))
            x0 = (width - new_w) // 2
            return np.ascontiguousarray(pixels[:, x0:x0 + new_w])
        new_h = max(1, int(round(width / target_aspect)))
        y0 = (height - new_h) // 2
        return np.ascontiguousarray(pixels[y0:y0 + new_h, :])

    if aspect > target_aspect:
        new_h = int(round(width / target_aspect))
        pad = new_h - height
        top = pad // 2
        padding = ((top, pad - top), (0, 0), (0, 0))
    else:
        new_w = int(round(height * target_aspect))
        pad = new_w - width
        left = pad // 2
        padding = ((0, 0), (left, pad - left), (0, 0))
    return np.pad(pixels, padding, mode="constant")


# ---------------------------------------------------------------------- #
# Renderer
# ---------------------------------------------------------------------- #
class MockupRenderer:
    """
    Composites designs into imported mockup templates.

    Owns one :class:`Surface` and one :class:`ImageCache`. Rendering is
    synchronous; overlapping ``render`` calls on one instance are not
    supported.
    """

    def __init__(self, config: Optional[Dict] = None):
        """Initialize the renderer.

        Args:
            config: ``renderer`` configuration section
        """
        cfg = config or {}
        self.config = RendererConfiguration(
            backend=cfg.get("backend", "homography"),
            subdivisions=int(cfg.get("subdivisions", 8)),
            use_opencl=cfg.get("use_opencl", False),
            antialias_clip=cfg.get("antialias_clip", True),
            interpolation=cfg.get("interpolation", "linear"),
            preload_workers=int(cfg.get("preload_workers", 4)),
            cache_size=int(cfg.get("cache_size", 64)),
        )
        self.drawer = create_drawer(
            self.config.backend,
            subdivisions=self.config.subdivisions,
            use_opencl=self.config.use_opencl,
            interpolation=self.config.interpolation,
        )
        self.cache = ImageCache(self.config.cache_size)
        self.surface: Optional[Surface] = None
        LOGGER.info("Mockup renderer initialized (%s backend)", self.drawer.name)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def render(
        self,
        template: MockupTemplate,
        designs: Sequence[DesignInput],
        raster_snapshots: Optional[Mapping[str, Any]] = None,
        options: Optional[RenderOptions] = None,
    ) -> RenderResult:
        """Render ``designs`` into ``template``.

        Args:
            template: imported mockup template
            designs: one design per insertion area to fill
            raster_snapshots: layer pixels keyed by layer id
            options: scale and output format

        Returns:
            RenderResult with either the encoded image or the surface.
        """
        options = options or RenderOptions()
        start = time.perf_counter()
        diagnostics = DiagnosticLog(LOGGER)
        strategy = None

        try:
            surface = self._prepare_surface(template.canvas_size, options.scale)
            state = _RenderPass(
                surface=surface,
                snapshots=raster_snapshots or {},
                designs=list(designs),
                areas={area.id: area for area in template.insert_areas},
                diagnostics=diagnostics,
            )

            strategy = select_strategy(template, state.snapshots)
            LOGGER.debug("Rendering '%s' with the %s strategy", template.name, strategy)
            if strategy == SANDWICH:
                self._render_sandwich(template, state)
            else:
                self._render_layers(template.layers, state, 1.0)

            encoded = None
            if not options.return_surface_handle:
                encoded = encode_surface(surface, options.format, options.quality)

            elapsed = (time.perf_counter() - start) * 1000.0
            LOGGER.info(
                "Rendered '%s' (%dx%d) in %.1f ms with %d warning(s)",
                template.name, surface.width, surface.height, elapsed, len(diagnostics),
            )
            return RenderResult(
                success=True,
                surface=surface if options.return_surface_handle else None,
                encoded_image=encoded,
                width=surface.width,
                height=surface.height,
                format=options.format,
                render_time_ms=elapsed,
                warnings=list(diagnostics.entries),
                strategy=strategy,
                drawn_layers=state.drawn_layers,
            )
        except Exception as e:
            LOGGER.exception("Render of '%s' failed", getattr(template, "name", "?"))
            return RenderResult(
                success=False,
                format=options.format,
                render_time_ms=(time.perf_counter() - start) * 1000.0,
                warnings=list(diagnostics.entries),
                error=str(e),
                strategy=strategy,
            )

    def render_preview(self, template, designs, raster_snapshots=None) -> RenderResult:
        return self.render(template, designs, raster_snapshots, RenderOptions(format="jpeg", quality=0.95))

    def render_high_quality(self, template, designs, raster_snapshots=None) -> RenderResult:
        return self.render(template, designs, raster_snapshots, RenderOptions(format="png", quality=1.0))

    def preload(self, images) -> int:
        """Decode ``images`` into the cache on a thread pool."""
        return self.cache.preload(images, self.config.preload_workers)

    def clear_cache(self):
        self.cache.clear()
        LOGGER.debug("Image cache cleared")

    def cleanup(self):
        """Release the surface and the image cache."""
        self.cache.clear()
        self.surface = None
        LOGGER.info("Mockup renderer cleaned up")

    # ------------------------------------------------------------------ #
    # Strategies
    # ------------------------------------------------------------------ #
    def _prepare_surface(self, canvas: Size, scale: float) -> Surface:
        if scale <= 0:
            raise ValueError(f"Render scale must be positive, got {scale}")
        width = max(1, int(round(canvas.width * scale)))
        height = max(1, int(round(canvas.height * scale)))
        if self.surface is not None and self.surface.shape == (height, width):
            self.surface.clear()
            self.surface.scale = float(scale)
        else:
            self.surface = Surface.for_canvas(canvas.width, canvas.height, scale)
        return self.surface

    def _render_sandwich(self, template: MockupTemplate, state: _RenderPass):
        hint = template.render_layers
        self._draw_hinted(template, hint.base_layer_id, state)
        for area in template.insert_areas:
            if area.visible:
                state.drawn_layers.append(area.id)
                self._draw_insert_area(area, state, area.opacity)
        self._draw_hinted(template, hint.overlay_layer_id, state)

    def _draw_hinted(self, template: MockupTemplate, layer_id: str, state: _RenderPass):
        state.drawn_layers.append(layer_id)
        layer = template.find_layer(layer_id)
        if layer is None:
            # Snapshot without a matching layer: full-canvas raster at the origin
            self._draw_snapshot(layer_id, Bounds(0, 0, 0, 0), 1.0, BlendMode.NORMAL, None, state)
            return
        self._draw_snapshot(layer.id, layer.bounds, layer.opacity, layer.blend_mode, layer.mask, state)

    def _render_layers(self, layers: Sequence[RenderLayer], state: _RenderPass, opacity: float):
        for layer in sorted(layers, key=lambda item: item.z_index):
            if not layer.visible:
                LOGGER.debug("Skipping hidden layer %s", layer.id)
                continue
            self._draw_layer(layer, state, opacity * layer.opacity)

    def _draw_layer(self, layer: RenderLayer, state: _RenderPass, opacity: float):
        if isinstance(layer, GroupLayer):
            state.drawn_layers.append(layer.id)
            self._render_layers(layer.children, state, opacity)
        elif isinstance(layer, SmartObjectLayer):
            state.drawn_layers.append(layer.id)
            area = state.areas.get(layer.id, layer.smart_object)
            if area is not None:
                self._draw_insert_area(area, state, opacity)
        elif isinstance(layer, SolidColorLayer):
            state.drawn_layers.append(layer.id)
            if layer.id in state.snapshots:
                self._draw_leaf(layer, state, opacity)
            else:
                self._fill_color(layer, state, opacity)
        elif isinstance(layer, (RasterImageLayer, ShapeLayer, AdjustmentLayer)):
            state.drawn_layers.append(layer.id)
            self._draw_leaf(layer, state, opacity)
        else:
            raise TypeError(f"Unknown layer kind: {type(layer).__name__}")

    # ------------------------------------------------------------------ #
    # Drawing
    # ------------------------------------------------------------------ #
    def _draw_leaf(self, layer: RenderLayer, state: _RenderPass, opacity: float):
        if layer.id not in state.snapshots:
            LOGGER.debug("No snapshot for %s, skipped", layer.id)
            return
        if layer.fill_opacity is not None:
            opacity *= layer.fill_opacity
        self._draw_snapshot(layer.id, layer.bounds, opacity, layer.blend_mode, layer.mask, state)

    def _draw_snapshot(
        self,
        key: str,
        bounds: Bounds,
        opacity: float,
        blend_mode: BlendMode,
        mask: Optional[Mask],
        state: _RenderPass,
    ):
        """Draw a layer raster at its bounds, gated by its own mask."""
        try:
            pixels = self.cache.get(state.snapshots[key])
        except ImageDecodeError as e:
            state.diagnostics.warn(WarningKind.DECODE_FAILURE, f"Layer snapshot unreadable: {e}", key)
            return

        surface = state.surface
        scale = surface.scale
        if scale != 1.0:
            size = (max(1, int(round(pixels.shape[1] * scale))), max(1, int(round(pixels.shape[0] * scale))))
            pixels = cv2.resize(pixels, size, interpolation=cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR)
        x = int(round(bounds.left * scale))
        y = int(round(bounds.top * scale))

        mask_map = self._mask_map(mask, state, key) if mask is not None else None
        if mask_map is None:
            composite_at(surface.pixels, pixels, x, y, opacity, blend_mode)
            return

        buffer = surface.new_layer()
        composite_at(buffer, pixels, x, y)
        destination_in(buffer, mask_map)
        composite(surface.pixels, buffer, opacity, blend_mode)

    def _fill_color(self, layer: SolidColorLayer, state: _RenderPass, opacity: float):
        surface = state.surface
        bounds = layer.bounds
        if bounds.is_empty():
            bounds = Bounds(0, 0, surface.width / surface.scale, surface.height / surface.scale)
        scale = surface.scale
        x0, y0 = int(round(bounds.left * scale)), int(round(bounds.top * scale))
        width = max(1, int(round(bounds.width * scale)))
        height = max(1, int(round(bounds.height * scale)))

        r, g, b, a = layer.color
        alpha = a / 255.0
        color = np.array([b / 255.0 * alpha, g / 255.0 * alpha, r / 255.0 * alpha, alpha], dtype=np.float32)
        fill = np.broadcast_to(color, (height, width, 4))
        composite_at(surface.pixels, fill, x0, y0, opacity, layer.blend_mode)

    def _draw_insert_area(self, area: SmartObjectInfo, state: _RenderPass, opacity: float):
        design = resolve_design(area, state.designs, len(state.areas))
        if design is None:
            state.diagnostics.warn(WarningKind.DESIGN_UNRESOLVED, f"No design for '{area.name}'", area.id)
            return

        try:
            pixels = self.cache.get(design.image)
        except ImageDecodeError as e:
            state.diagnostics.warn(WarningKind.DECODE_FAILURE, f"Design image unreadable: {e}", area.id)
            return
        pixels = fit_design(pixels, area.placed_size, design.fit)

        quad = area.perspective_quad or Quad.from_bounds(area.bounds)
        quad = quad.scaled(state.surface.scale)
        if quad.is_degenerate():
            state.diagnostics.warn(WarningKind.GEOMETRY_DEGENERATE, "Insertion quad is degenerate", area.id)
            return

        mask_map = self._mask_map(area.mask, state, area.id) if area.mask is not None else None
        drawn = draw_masked(
            state.surface.pixels,
            self.drawer,
            pixels,
            quad,
            opacity,
            area.blend_mode,
            mask_map,
            self.config.antialias_clip,
        )
        if not drawn:
            state.diagnostics.warn(WarningKind.GEOMETRY_DEGENERATE, "Perspective transform is degenerate", area.id)
            return
        LOGGER.debug("Drew design '%s' into %s", design.target_id, area.id)

    def _mask_map(self, mask: Mask, state: _RenderPass, owner: str) -> Optional[np.ndarray]:
        source = state.snapshots.get(mask.mask_image_ref)
        if source is None:
            state.diagnostics.warn(
                WarningKind.DECODE_FAILURE,
                f"Mask snapshot {mask.mask_image_ref} missing; drawn without it",
                owner,
            )
            return None
        try:
            pixels = self.cache.get_mask(source)
        except ImageDecodeError as e:
            state.diagnostics.warn(WarningKind.DECODE_FAILURE, f"Mask unreadable: {e}", owner)
            return None
        surface = state.surface
        return mask_to_canvas(pixels, mask.bounds, surface.shape, mask.default_color, surface.scale)
