"""
Scene model for imported mockup templates.

A :class:`MockupTemplate` is produced once by the importer and never
mutated afterwards. Layers form a closed family: one dataclass per
:class:`LayerKind`, dispatched exhaustively by the compositor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple

from .geometry import Bounds, Quad, Size


class BlendMode(Enum):
    """Blend modes understood by the compositor."""

    NORMAL = "normal"
    MULTIPLY = "multiply"
    SCREEN = "screen"
    OVERLAY = "overlay"
    DARKEN = "darken"
    LIGHTEN = "lighten"
    COLOR_DODGE = "color_dodge"
    COLOR_BURN = "color_burn"
    LINEAR_DODGE = "linear_dodge"
    LINEAR_BURN = "linear_burn"
    HARD_LIGHT = "hard_light"
    SOFT_LIGHT = "soft_light"
    VIVID_LIGHT = "vivid_light"
    LINEAR_LIGHT = "linear_light"
    PIN_LIGHT = "pin_light"
    HARD_MIX = "hard_mix"
    DIFFERENCE = "difference"
    EXCLUSION = "exclusion"
    SUBTRACT = "subtract"
    DIVIDE = "divide"
    DARKER_COLOR = "darker_color"
    LIGHTER_COLOR = "lighter_color"
    HUE = "hue"
    SATURATION = "saturation"
    COLOR = "color"
    LUMINOSITY = "luminosity"

    @staticmethod
    def parse(value: Any) -> "BlendMode":
        """Accept a BlendMode, its value, or a camelCase/spaced name."""
        if isinstance(value, BlendMode):
            return value
        if value is None:
            return BlendMode.NORMAL
        key = str(value).strip()
        if key.isalpha() and not (key.isupper() or key.islower()):
            # camelCase, e.g. "colorDodge"
            key = "".join("_" + c.lower() if c.isupper() else c for c in key).lstrip("_")
        key = key.replace(" ", "_").replace("-", "_").lower()
        try:
            return BlendMode(key)
        except ValueError:
            return BlendMode.NORMAL


class LayerKind(Enum):
    GROUP = "group"
    SMART_OBJECT = "smart_object"
    RASTER_IMAGE = "raster_image"
    SOLID_COLOR = "solid_color"
    SHAPE = "shape"
    ADJUSTMENT = "adjustment"


class FitMode(Enum):
    """How a design's aspect ratio is reconciled with its target."""

    STRETCH = "stretch"
    COVER = "cover"
    CONTAIN = "contain"


@dataclass(frozen=True)
class Mask:
    """Grayscale raster gating visibility of the layer it is attached to."""

    bounds: Bounds
    mask_image_ref: str
    default_color: int = 0


@dataclass(frozen=True)
class SmartObjectInfo:
    """An insertion area: where and how a caller's design is placed."""

    id: str
    name: str
    bounds: Bounds
    size: Size
    placed_size: Size
    perspective_quad: Optional[Quad] = None
    placed_kind: str = "embedded"
    mask: Optional[Mask] = None
    blend_mode: BlendMode = BlendMode.NORMAL
    opacity: float = 1.0
    visible: bool = True


@dataclass(frozen=True)
class RenderLayer:
    """Fields shared by every layer kind."""

    id: str
    name: str
    bounds: Bounds
    z_index: int
    visible: bool = True
    opacity: float = 1.0
    blend_mode: BlendMode = BlendMode.NORMAL
    clips_to_parent: bool = False
    mask: Optional[Mask] = None
    fill_opacity: Optional[float] = None

    kind = None  # type: LayerKind


@dataclass(frozen=True)
class GroupLayer(RenderLayer):
    children: Tuple[RenderLayer, ...] = ()

    kind = LayerKind.GROUP


@dataclass(frozen=True)
class SmartObjectLayer(RenderLayer):
    smart_object: Optional[SmartObjectInfo] = None

    kind = LayerKind.SMART_OBJECT


@dataclass(frozen=True)
class RasterImageLayer(RenderLayer):
    kind = LayerKind.RASTER_IMAGE


@dataclass(frozen=True)
class SolidColorLayer(RenderLayer):
    color: Tuple[int, int, int, int] = (0, 0, 0, 255)  # RGBA

    kind = LayerKind.SOLID_COLOR


@dataclass(frozen=True)
class ShapeLayer(RenderLayer):
    kind = LayerKind.SHAPE


@dataclass(frozen=True)
class AdjustmentLayer(RenderLayer):
    adjustment: str = ""

    kind = LayerKind.ADJUSTMENT


@dataclass(frozen=True)
class RenderLayerHint:
    """Pre-flattened base/overlay rasters enabling the sandwich fast path."""

    base_layer_id: Optional[str] = None
    overlay_layer_id: Optional[str] = None


@dataclass(frozen=True)
class MockupTemplate:
    id: str
    name: str
    canvas_size: Size
    layers: Tuple[RenderLayer, ...] = ()
    insert_areas: Tuple[SmartObjectInfo, ...] = ()
    render_layers: Optional[RenderLayerHint] = None
    description: str = ""
    category: str = "other"
    tags: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    def iter_layers(self) -> Iterator[RenderLayer]:
        """Depth-first walk over every layer, parents before children."""
        return _walk(self.layers)

    def find_layer(self, layer_id: str) -> Optional[RenderLayer]:
        for layer in self.iter_layers():
            if layer.id == layer_id:
                return layer
        return None


def _walk(layers) -> Iterator[RenderLayer]:
    for layer in layers:
        yield layer
        if isinstance(layer, GroupLayer):
            yield from _walk(layer.children)


@dataclass
class DesignInput:
    """A caller-supplied design for one insertion area.

    ``image`` may be any source accepted by :func:`images.decode_image`.
    """

    target_id: str
    image: Any
    fit: FitMode = FitMode.STRETCH
