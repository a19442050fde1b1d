"""
Masked compositing of a design into one insertion area.

A design is never drawn straight onto the surface. It is first warped into
an off-screen buffer covering the quad's bounding box, gated by the area's
mask (or by the quad polygon when there is no mask) and only then merged
with the area's opacity and blend mode.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from .blending import composite_at, destination_in
from .geometry import Bounds, Quad
from .layers import BlendMode
from .perspective import PerspectiveDrawer, quad_region

LOGGER = logging.getLogger(__name__)

POLY_SHIFT = 4


def mask_to_canvas(
    mask_pixels: np.ndarray,
    bounds: Bounds,
    canvas_shape: Tuple[int, int],
    default_color: int = 0,
    scale: float = 1.0,
) -> np.ndarray:
    """Place a grayscale mask in canvas space.

    Args:
        mask_pixels: HxW float map in [0, 1] covering ``bounds``
        bounds: mask rectangle in scene coordinates
        canvas_shape: (height, width) of the target surface
        default_color: mask value (0 or 255) outside ``bounds``
        scale: scene to surface scale factor

    Returns:
        float32 map the size of ``canvas_shape``.
    """
    height, width = canvas_shape[:2]
    canvas = np.full((height, width), float(default_color) / 255.0, dtype=np.float32)
    if bounds.is_empty() or mask_pixels.size == 0:
        return canvas

    left = int(round(bounds.left * scale))
    top = int(round(bounds.top * scale))
    target_w = max(1, int(round(bounds.width * scale)))
    target_h = max(1, int(round(bounds.height * scale)))

    pixels = mask_pixels.astype(np.float32, copy=False)
    if pixels.shape[:2] != (target_h, target_w):
        pixels = cv2.resize(pixels, (target_w, target_h), interpolation=cv2.INTER_LINEAR)

    sx0, sy0 = max(0, -left), max(0, -top)
    dx0, dy0 = max(0, left), max(0, top)
    cw = min(target_w - sx0, width - dx0)
    ch = min(target_h - sy0, height - dy0)
    if cw > 0 and ch > 0:
        canvas[dy0:dy0 + ch, dx0:dx0 + cw] = pixels[sy0:sy0 + ch, sx0:sx0 + cw]
    return canvas


def quad_clip(
    quad: Quad,
    shape: Tuple[int, int],
    scale: float = 1.0,
    antialias: bool = True,
) -> np.ndarray:
    """Rasterise the quad polygon into an HxW float32 coverage map."""
    height, width = shape[:2]
    coverage = np.zeros((height, width), dtype=np.uint8)
    # Polygon vertices sit on pixel edges; OpenCV rasterises around pixel centres
    pts = (quad.to_array() * scale - 0.5) * (1 << POLY_SHIFT)
    pts = np.round(pts).astype(np.int32).reshape(-1, 1, 2)
    line_type = cv2.LINE_AA if antialias else cv2.LINE_8
    cv2.fillPoly(coverage, [pts], 255, line_type, POLY_SHIFT)
    return coverage.astype(np.float32) / 255.0


def draw_masked(
    target: np.ndarray,
    drawer: PerspectiveDrawer,
    image: np.ndarray,
    quad: Quad,
    opacity: float = 1.0,
    blend_mode: BlendMode = BlendMode.NORMAL,
    mask: Optional[np.ndarray] = None,
    antialias: bool = True,
) -> bool:
    """Warp ``image`` into ``quad`` and merge it onto ``target``.

    Args:
        target: premultiplied BGRA surface pixels, modified in place
        drawer: perspective backend
        image: premultiplied BGRA design
        quad: destination corners in surface pixels
        opacity: area opacity, applied when merging
        blend_mode: area blend mode, applied when merging
        mask: optional surface-sized coverage map from :func:`mask_to_canvas`
        antialias: anti-alias the quad clip when there is no mask

    Returns:
        False if the geometry was degenerate and nothing was drawn.
    """
    if quad.is_degenerate():
        return False

    region = quad_region(quad, target.shape)
    if region is None:
        return True
    x0, y0, x1, y1 = region

    buffer = np.zeros((y1 - y0, x1 - x0, 4), dtype=np.float32)
    local_quad = quad.translated(-x0, -y0)
    if not drawer.draw(buffer, image, local_quad):
        return False

    if mask is not None:
        destination_in(buffer, mask[y0:y1, x0:x1])
    else:
        destination_in(buffer, quad_clip(local_quad, buffer.shape, antialias=antialias))

    composite_at(target, buffer, x0, y0, opacity, blend_mode)
    return True
