"""
mockup_engine - Planar-homography mockup compositing.

This package provides functionality for:
- Importing layered PSD mockups and their smart objects
- Solving unit-square and quad-to-quad homographies
- Warping designs into perspective quads (exact or subdivided)
- Masked compositing with Photoshop-style blend modes
- Encoding the rendered mockup to PNG, JPEG or WEBP
"""

from .geometry import Bounds, Point2D, Quad, Size
from .homography import Degenerate, quad_to_quad_matrix, rect_to_quad_matrix, unit_square_to_quad
from .layers import (
    BlendMode,
    DesignInput,
    FitMode,
    LayerKind,
    Mask,
    MockupTemplate,
    RenderLayerHint,
    SmartObjectInfo,
)
from .diagnostics import Diagnostic, WarningKind
from .images import ImageCache, ImageDecodeError, RawPixels
from .surface import Surface
from .perspective import HomographyDrawer, PerspectiveDrawer, SubdivisionDrawer, create_drawer
from .psd_import import (
    ParseOptions,
    ParseResult,
    is_layered_scene_file,
    parse_layered_scene,
    parse_layered_scene_file,
)
from .compositor import MockupRenderer, RenderOptions, RenderResult, RendererConfiguration
from .export import encode_surface, save_surface

__version__ = "0.1.0"

__all__ = [
    # Geometry
    "Bounds",
    "Point2D",
    "Quad",
    "Size",
    # Homography
    "Degenerate",
    "quad_to_quad_matrix",
    "rect_to_quad_matrix",
    "unit_square_to_quad",
    # Scene model
    "BlendMode",
    "DesignInput",
    "FitMode",
    "LayerKind",
    "Mask",
    "MockupTemplate",
    "RenderLayerHint",
    "SmartObjectInfo",
    # Diagnostics & images
    "Diagnostic",
    "WarningKind",
    "ImageCache",
    "ImageDecodeError",
    "RawPixels",
    "Surface",
    # Perspective
    "HomographyDrawer",
    "PerspectiveDrawer",
    "SubdivisionDrawer",
    "create_drawer",
    # Import
    "ParseOptions",
    "ParseResult",
    "is_layered_scene_file",
    "parse_layered_scene",
    "parse_layered_scene_file",
    # Rendering
    "MockupRenderer",
    "RenderOptions",
    "RenderResult",
    "RendererConfiguration",
    "encode_surface",
    "save_surface",
]
