"""
Layered-scene importer.

Reads a Photoshop document with psd-tools and turns it into an immutable
:class:`MockupTemplate` plus a map of raster snapshots (layer pixels, mask
pixels and the flattened composite) that the compositor draws from.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import cv2
import numpy as np
from psd_tools import PSDImage
from psd_tools.constants import Tag

from .diagnostics import DiagnosticLog, WarningKind
from .geometry import Bounds, Quad, Size
from .layers import (
    AdjustmentLayer,
    BlendMode,
    GroupLayer,
    Mask,
    MockupTemplate,
    RasterImageLayer,
    RenderLayer,
    RenderLayerHint,
    ShapeLayer,
    SmartObjectInfo,
    SmartObjectLayer,
    SolidColorLayer,
)

LOGGER = logging.getLogger(__name__)

PSD_SIGNATURE = b"8BPS"
COMPOSITE_KEY = "__composite__"
MASK_SUFFIX = "_mask"

BASE_PATTERNS = [re.compile(rf"\b{word}\b", re.IGNORECASE) for word in ("base", "background", "bg", "fundo")]
OVERLAY_PATTERNS = [
    re.compile(rf"\b{word}\b", re.IGNORECASE)
    for word in ("overlay", "hand", "hands", "reflection", "shadow", "light", "glass", "occlusion", "oclusion")
]

# Photoshop modes drawn as normal
PSD_BLEND_MODES = {
    "PASS_THROUGH": BlendMode.NORMAL,
    "DISSOLVE": BlendMode.NORMAL,
}

SHAPE_KINDS = {"shape", "gradientfill", "patternfill"}
RASTER_KINDS = {"pixel", "type"}

Snapshots = Dict[str, np.ndarray]


@dataclass
class ParseOptions:
    """Caller-supplied template metadata and extraction switches."""

    name: Optional[str] = None
    description: str = ""
    category: str = "other"
    tags: Tuple[str, ...] = ()
    extract_raster_snapshots: bool = True


@dataclass
class ParseResult:
    success: bool
    template: Optional[MockupTemplate] = None
    raster_snapshots: Optional[Snapshots] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ImportConfiguration:
    """Configuration for the layered-scene importer."""

    extract_raster_snapshots: bool = True
    include_composite: bool = True


class ImportFatal(Exception):
    """The scene cannot be imported at all."""


# ---------------------------------------------------------------------- #
# Public entry points
# ---------------------------------------------------------------------- #
def parse_layered_scene(
    data: bytes,
    options: Optional[ParseOptions] = None,
    config: Optional[Dict] = None,
) -> ParseResult:
    """Parse PSD bytes into a template and its raster snapshots.

    Args:
        data: raw PSD file contents
        options: template metadata and extraction switches
        config: ``importer`` configuration section

    Returns:
        ParseResult; ``success`` is False only when the document could not
        be read at all.
    """
    return _parse(data, options or ParseOptions(), config, None)


def _parse(data: bytes, options: ParseOptions, config: Optional[Dict], filename: Optional[str]) -> ParseResult:
    try:
        psd = PSDImage.open(BytesIO(data))
    except Exception as e:
        LOGGER.error("Could not read layered scene: %s", e)
        return ParseResult(success=False, errors=[f"Could not read PSD data: {e}"])

    return SceneImporter(config).build(psd, options, filename)


def parse_layered_scene_file(
    path: Union[str, Path],
    options: Optional[ParseOptions] = None,
    config: Optional[Dict] = None,
) -> ParseResult:
    """Read ``path`` and parse it; the template name defaults to the file stem."""
    path = Path(path)
    options = options or ParseOptions()
    if options.name is None:
        options = ParseOptions(
            name=path.stem,
            description=options.description,
            category=options.category,
            tags=options.tags,
            extract_raster_snapshots=options.extract_raster_snapshots,
        )
    try:
        data = path.read_bytes()
    except OSError as e:
        LOGGER.error("Could not open %s: %s", path, e)
        return ParseResult(success=False, errors=[f"Could not open {path}: {e}"])

    return _parse(data, options, config, path.name)


def is_layered_scene_file(path: Union[str, Path]) -> bool:
    """True for files with a ``.psd`` extension or the PSD signature."""
    path = Path(path)
    if path.suffix.lower() == ".psd":
        return True
    try:
        with path.open("rb") as f:
            return f.read(4) == PSD_SIGNATURE
    except OSError:
        return False


# ---------------------------------------------------------------------- #
# Importer
# ---------------------------------------------------------------------- #
class SceneImporter:
    """
    Converts an opened psd-tools document into the scene model.

    The walk is bottom-to-top: root layer ``i`` gets z-index ``i`` and child
    ``j`` of a layer with z-index ``z`` gets ``z * 100 + j``.
    """

    def __init__(self, config: Optional[Dict] = None):
        cfg = config or {}
        self.config = ImportConfiguration(
            extract_raster_snapshots=cfg.get("extract_raster_snapshots", True),
            include_composite=cfg.get("include_composite", True),
        )
        self._ids: Set[str] = set()
        self._snapshots: Snapshots = {}
        self._extract = True
        self.diagnostics = DiagnosticLog(LOGGER)

    def build(self, psd: Any, options: ParseOptions, filename: Optional[str] = None) -> ParseResult:
        """Build a :class:`ParseResult` from a psd-tools-like document."""
        self._ids = set()
        self._snapshots = {}
        self._extract = options.extract_raster_snapshots and self.config.extract_raster_snapshots
        self.diagnostics = DiagnosticLog(LOGGER)

        try:
            width, height = self._canvas_size(psd)
            layers = tuple(self._convert(layer, z_index) for z_index, layer in enumerate(psd))
        except ImportFatal as e:
            LOGGER.error("Import failed: %s", e)
            return ParseResult(success=False, errors=[str(e)])

        insert_areas = tuple(find_insert_areas(layers))
        if not insert_areas:
            self.diagnostics.warn(
                WarningKind.IMPORT_WARNING,
                "No smart objects found; the mockup has no insertion areas",
            )

        if self._extract and self.config.include_composite:
            self._snapshot_composite(psd)

        name = options.name or "Imported mockup"
        template = MockupTemplate(
            id=f"mockup-{uuid.uuid4().hex[:12]}",
            name=name,
            canvas_size=Size(width, height),
            layers=layers,
            insert_areas=insert_areas,
            render_layers=find_render_layers(layers),
            description=options.description,
            category=options.category,
            tags=tuple(options.tags),
            metadata={
                "original_filename": filename or options.name or "unknown.psd",
                "created_at": datetime.now(timezone.utc).isoformat(),
                "version": 1,
            },
        )
        LOGGER.info(
            "Imported '%s': %dx%d, %d root layers, %d insertion areas",
            name, width, height, len(layers), len(insert_areas),
        )
        return ParseResult(
            success=True,
            template=template,
            raster_snapshots=self._snapshots if self._extract else None,
            warnings=[str(entry) for entry in self.diagnostics.entries],
        )

    @staticmethod
    def _canvas_size(psd: Any) -> Tuple[int, int]:
        width = int(getattr(psd, "width", 0) or 0)
        height = int(getattr(psd, "height", 0) or 0)
        if width <= 0 or height <= 0:
            raise ImportFatal(f"Invalid canvas size {width}x{height}")
        return width, height

    # ------------------------------------------------------------------ #
    # Layer conversion
    # ------------------------------------------------------------------ #
    def _convert(self, layer: Any, z_index: int) -> RenderLayer:
        name = getattr(layer, "name", None) or "unnamed"
        slug = re.sub(r"\s", "-", name)
        layer_id = self._unique_id(f"layer-{z_index}-{slug}")
        kind = getattr(layer, "kind", "pixel")
        bounds = _layer_bounds(layer)

        common = dict(
            id=layer_id,
            name=name,
            bounds=bounds,
            z_index=z_index,
            visible=bool(getattr(layer, "visible", True)),
            opacity=_unit(getattr(layer, "opacity", 255)),
            blend_mode=psd_blend_mode(getattr(layer, "blend_mode", None)),
            clips_to_parent=bool(getattr(layer, "clipping_layer", False)),
            mask=self._mask(layer, layer_id),
            fill_opacity=_fill_opacity(layer),
        )
        LOGGER.debug("Layer '%s' (%s) -> %s", name, kind, layer_id)

        if kind == "group":
            children = tuple(self._convert(child, z_index * 100 + j) for j, child in enumerate(layer))
            return GroupLayer(children=children, **common)

        self._snapshot_pixels(layer, layer_id)

        if kind == "smartobject":
            return SmartObjectLayer(smart_object=self._smart_object(layer, common), **common)
        if kind == "solidcolorfill":
            return SolidColorLayer(color=_fill_color(layer), **common)
        if kind in SHAPE_KINDS:
            return ShapeLayer(**common)
        if kind in RASTER_KINDS:
            return RasterImageLayer(**common)
        return AdjustmentLayer(adjustment=str(kind), **common)

    def _smart_object(self, layer: Any, common: Dict[str, Any]) -> SmartObjectInfo:
        smart = getattr(layer, "smart_object", None)
        bounds = common["bounds"]
        config = getattr(smart, "_config", None) if smart is not None else None
        # SmartObjectLayerData keeps its descriptor in .data
        descriptor = getattr(config, "data", config)

        quad = _perspective_quad(smart, descriptor)
        placed_size = _placed_size(descriptor) or bounds.size

        placed_kind = "embedded"
        if smart is not None:
            try:
                if smart.kind == "external":
                    placed_kind = "linked"
            except ValueError as e:
                self.diagnostics.warn(
                    WarningKind.IMPORT_WARNING, f"Smart object data unreadable: {e}", common["id"]
                )

        return SmartObjectInfo(
            id=common["id"],
            name=common["name"],
            bounds=bounds,
            size=bounds.size,
            placed_size=placed_size,
            perspective_quad=quad,
            placed_kind=placed_kind,
            mask=common["mask"],
            blend_mode=common["blend_mode"],
            opacity=common["opacity"],
            visible=common["visible"],
        )

    def _unique_id(self, candidate: str) -> str:
        layer_id = candidate
        suffix = 2
        while layer_id in self._ids:
            layer_id = f"{candidate}-{suffix}"
            suffix += 1
        self._ids.add(layer_id)
        return layer_id

    def _mask(self, layer: Any, layer_id: str) -> Optional[Mask]:
        has_mask = getattr(layer, "has_mask", None)
        if not callable(has_mask) or not has_mask():
            return None
        mask = layer.mask
        bounds = _mask_bounds(mask)
        if bounds.is_empty():
            return None

        key = layer_id + MASK_SUFFIX
        if self._extract:
            try:
                image = mask.topil()
            except Exception as e:
                self.diagnostics.warn(WarningKind.IMPORT_WARNING, f"Unreadable mask pixels: {e}", layer_id)
                image = None
            if image is not None:
                self._snapshots[key] = _frozen(np.array(image.convert("L")))

        return Mask(
            bounds=bounds,
            mask_image_ref=key,
            default_color=int(getattr(mask, "background_color", 0) or 0),
        )

    def _snapshot_pixels(self, layer: Any, layer_id: str):
        if not self._extract:
            return
        try:
            image = layer.topil()
        except Exception as e:
            self.diagnostics.warn(WarningKind.IMPORT_WARNING, f"Unreadable layer pixels: {e}", layer_id)
            return
        if image is None:
            return
        rgba = np.array(image.convert("RGBA"))
        self._snapshots[layer_id] = _frozen(cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA))

    def _snapshot_composite(self, psd: Any):
        try:
            image = psd.composite()
        except Exception as e:
            self.diagnostics.warn(WarningKind.IMPORT_WARNING, f"Could not composite document: {e}")
            return
        if image is not None:
            rgba = np.array(image.convert("RGBA"))
            self._snapshots[COMPOSITE_KEY] = _frozen(cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA))


# ---------------------------------------------------------------------- #
# Template-level passes
# ---------------------------------------------------------------------- #
def find_insert_areas(layers, ambient: Optional[Mask] = None) -> List[SmartObjectInfo]:
    """Flatten the smart objects of a layer tree, resolving inherited masks.

    A group's mask becomes the ambient mask of its subtree (innermost wins);
    a smart object without a mask of its own takes the ambient one.
    """
    areas = []
    for layer in layers:
        current = ambient
        if isinstance(layer, GroupLayer) and layer.mask is not None:
            current = layer.mask
            LOGGER.debug("Group '%s' mask applies to its children", layer.name)

        if isinstance(layer, SmartObjectLayer) and layer.smart_object is not None:
            info = layer.smart_object
            if info.mask is None and current is not None:
                info = replace(info, mask=current)
                LOGGER.debug("Smart object '%s' inherited mask %s", layer.name, current.mask_image_ref)
            areas.append(info)

        if isinstance(layer, GroupLayer):
            areas.extend(find_insert_areas(layer.children, current))
    return areas


def find_render_layers(layers) -> Optional[RenderLayerHint]:
    """Pick pre-flattened base and overlay layers by name.

    The first match in traversal order wins for each role.
    """
    found = {"base": None, "overlay": None}

    def visit(layer_list):
        for layer in layer_list:
            if found["base"] is None and any(p.search(layer.name) for p in BASE_PATTERNS):
                found["base"] = layer.id
            if found["overlay"] is None and any(p.search(layer.name) for p in OVERLAY_PATTERNS):
                found["overlay"] = layer.id
            if isinstance(layer, GroupLayer):
                visit(layer.children)

    visit(layers)
    if found["base"] is None and found["overlay"] is None:
        return None
    return RenderLayerHint(base_layer_id=found["base"], overlay_layer_id=found["overlay"])


# ---------------------------------------------------------------------- #
# psd-tools attribute helpers
# ---------------------------------------------------------------------- #
def psd_blend_mode(value: Any) -> BlendMode:
    """Map a psd-tools blend mode (enum or name) onto :class:`BlendMode`."""
    if value is None:
        return BlendMode.NORMAL
    key = str(getattr(value, "name", value)).upper().replace(" ", "_")
    if key in PSD_BLEND_MODES:
        return PSD_BLEND_MODES[key]
    mode = BlendMode.parse(key)
    if mode is BlendMode.NORMAL and key != "NORMAL":
        LOGGER.debug("Unsupported blend mode %s, using normal", key)
    return mode


def _unit(value: Any) -> float:
    return float(np.clip(float(value) / 255.0, 0.0, 1.0))


def _number(value: Any) -> float:
    return float(getattr(value, "value", value))


def _frozen(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def _layer_bounds(layer: Any) -> Bounds:
    bbox = getattr(layer, "bbox", None)
    if bbox is None:
        return Bounds(0.0, 0.0, 0.0, 0.0)
    try:
        return Bounds.from_tuple(tuple(bbox))
    except (TypeError, ValueError):
        return Bounds(0.0, 0.0, 0.0, 0.0)


def _mask_bounds(mask: Any) -> Bounds:
    bbox = getattr(mask, "bbox", None)
    if bbox is not None:
        return Bounds.from_tuple(tuple(bbox))
    return Bounds(
        float(getattr(mask, "left", 0)),
        float(getattr(mask, "top", 0)),
        float(getattr(mask, "right", 0)),
        float(getattr(mask, "bottom", 0)),
    )


def _fill_opacity(layer: Any) -> Optional[float]:
    blocks = getattr(layer, "tagged_blocks", None)
    if blocks is None:
        return None
    value = blocks.get_data(Tag.BLEND_FILL_OPACITY)
    return None if value is None else _unit(_number(value))


def _fill_color(layer: Any) -> Tuple[int, int, int, int]:
    data = getattr(layer, "data", None)
    color = data.get(b"Clr ") if data is not None and hasattr(data, "get") else None
    if color is None:
        return (0, 0, 0, 255)
    try:
        return (
            int(round(_number(color.get(b"Rd  ", 0)))),
            int(round(_number(color.get(b"Grn ", 0)))),
            int(round(_number(color.get(b"Bl  ", 0)))),
            255,
        )
    except (TypeError, ValueError):
        LOGGER.debug("Fill colour is not RGB; using black")
        return (0, 0, 0, 255)


def _perspective_quad(smart: Any, descriptor: Any) -> Optional[Quad]:
    """Destination corners of a placed layer as TL, TR, BR, BL."""
    values = None
    if descriptor is not None and hasattr(descriptor, "get"):
        for key in (b"nonAffineTransform", b"Trnf"):
            raw = descriptor.get(key)
            if raw is not None:
                values = [_number(v) for v in raw]
                break
    if values is None and smart is not None:
        box = getattr(smart, "transform_box", None)
        if box is not None:
            values = [_number(v) for v in box]

    if values is None or len(values) < 8:
        return None
    return Quad.from_flat(values)


def _placed_size(descriptor: Any) -> Optional[Size]:
    if descriptor is None or not hasattr(descriptor, "get"):
        return None
    size = descriptor.get(b"Sz  ")
    if size is None:
        return None
    try:
        width, height = _number(size.get(b"Wdth")), _number(size.get(b"Hght"))
    except (TypeError, ValueError, AttributeError):
        return None
    if width <= 0 or height <= 0:
        return None
    return Size(width, height)
