"""
Perspective drawing of a flat design onto a destination quad.

Two interchangeable backends, selected once per renderer:

- ``HomographyDrawer`` realises the exact homography with
  ``cv2.warpPerspective`` (optionally through OpenCV's OpenCL transparent
  API).
- ``SubdivisionDrawer`` approximates it on the CPU by splitting the unit
  square into an N x N grid and drawing every cell as two affine-mapped
  triangles.

Both draw premultiplied BGRA images into premultiplied BGRA targets and
only touch the quad's bounding box.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import cv2
import numpy as np

from . import homography
from .blending import composite_at
from .geometry import Quad, bilinear_point
from .layers import BlendMode

LOGGER = logging.getLogger(__name__)

AFFINE_EPSILON = 1e-10
# Pixels a solved homography may miss a destination corner by
CORNER_TOLERANCE = 0.5

INTERPOLATION_FLAGS = {
    "nearest": cv2.INTER_NEAREST,
    "linear": cv2.INTER_LINEAR,
    "cubic": cv2.INTER_CUBIC,
}

Region = Tuple[int, int, int, int]


def _translation(tx: float, ty: float) -> np.ndarray:
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]], dtype=np.float64)


def quad_region(quad: Quad, shape: Tuple[int, int], pad: int = 1) -> Optional[Region]:
    """Integer bounding box ``(x0, y0, x1, y1)`` of ``quad`` clipped to ``shape``."""
    height, width = shape[:2]
    box = quad.bounding_box()
    x0 = max(0, int(math.floor(box.left)) - pad)
    y0 = max(0, int(math.floor(box.top)) - pad)
    x1 = min(width, int(math.ceil(box.right)) + pad)
    y1 = min(height, int(math.ceil(box.bottom)) + pad)
    if x1 <= x0 or y1 <= y0:
        return None
    return (x0, y0, x1, y1)


def solve_affine(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
    """Closed-form 2x3 affine transform taking triangle ``src`` onto ``dst``.

    Returns None when the source triangle is degenerate.
    """
    (sx0, sy0), (sx1, sy1), (sx2, sy2) = src
    (dx0, dy0), (dx1, dy1), (dx2, dy2) = dst

    denom = (sx0 - sx2) * (sy1 - sy2) - (sx1 - sx2) * (sy0 - sy2)
    if abs(denom) < AFFINE_EPSILON:
        return None

    a = ((dx0 - dx2) * (sy1 - sy2) - (dx1 - dx2) * (sy0 - sy2)) / denom
    b = ((dx1 - dx2) * (sx0 - sx2) - (dx0 - dx2) * (sx1 - sx2)) / denom
    tx = dx2 - a * sx2 - b * sy2

    c = ((dy0 - dy2) * (sy1 - sy2) - (dy1 - dy2) * (sy0 - sy2)) / denom
    d = ((dy1 - dy2) * (sx0 - sx2) - (dy0 - dy2) * (sx1 - sx2)) / denom
    ty = dy2 - c * sx2 - d * sy2

    return np.array([[a, b, tx], [c, d, ty]], dtype=np.float64)


class PerspectiveDrawer:
    """Base class: warp an image into a quad and composite it."""

    name = "base"

    def __init__(self, interpolation: str = "linear"):
        self.interpolation = INTERPOLATION_FLAGS.get(interpolation, cv2.INTER_LINEAR)

    def draw(
        self,
        target: np.ndarray,
        image: np.ndarray,
        quad: Quad,
        opacity: float = 1.0,
        blend_mode: BlendMode = BlendMode.NORMAL,
        clip: Optional[np.ndarray] = None,
    ) -> bool:
        """Draw ``image`` onto ``target`` so its corners land on ``quad``.

        Args:
            target: premultiplied BGRA buffer, modified in place
            image: premultiplied BGRA source
            quad: destination corners in target pixel coordinates
            opacity: opacity applied while compositing
            blend_mode: blend mode applied while compositing
            clip: optional coverage map the size of ``target``

        Returns:
            False if the geometry was degenerate and nothing was drawn.
        """
        if image.shape[0] == 0 or image.shape[1] == 0:
            return False
        if quad.is_degenerate():
            LOGGER.debug("Skipping degenerate quad %s", quad.to_flat())
            return False

        region = quad_region(quad, target.shape)
        if region is None:
            return True

        patch = self.warp(image, quad, region)
        if patch is None:
            return False

        x0, y0, x1, y1 = region
        coverage = clip[y0:y1, x0:x1] if clip is not None else None
        composite_at(target, patch, x0, y0, opacity, blend_mode, coverage)
        return True

    def warp(self, image: np.ndarray, quad: Quad, region: Region) -> Optional[np.ndarray]:
        raise NotImplementedError


class HomographyDrawer(PerspectiveDrawer):
    """Exact projective mapping through ``cv2.warpPerspective``."""

    name = "homography"

    def __init__(self, interpolation: str = "linear", use_opencl: bool = False):
        super().__init__(interpolation)
        self.use_opencl = bool(use_opencl) and cv2.ocl.haveOpenCL()
        if self.use_opencl:
            cv2.ocl.setUseOpenCL(True)
            LOGGER.info("Perspective warps will use OpenCL")

    def warp(self, image: np.ndarray, quad: Quad, region: Region) -> Optional[np.ndarray]:
        src_h, src_w = image.shape[:2]
        matrix = homography.rect_to_quad_matrix(src_w, src_h, quad)
        if homography.is_degenerate(matrix):
            LOGGER.debug("Homography degenerate: %s", matrix.reason)
            return None

        corners = homography.transform_points(Quad.from_rect(src_w, src_h).to_array(), matrix)
        if not np.allclose(corners, quad.to_array(), atol=CORNER_TOLERANCE):
            LOGGER.debug("Homography misses the quad corners: %s", corners.ravel())
            return None

        x0, y0, x1, y1 = region
        # Source and destination pixel centres sit at +0.5 of the rectangle edges
        local = _translation(-x0 - 0.5, -y0 - 0.5) @ matrix @ _translation(0.5, 0.5)
        size = (x1 - x0, y1 - y0)

        src = cv2.UMat(np.ascontiguousarray(image)) if self.use_opencl else image
        warped = cv2.warpPerspective(
            src,
            local,
            size,
            flags=self.interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0, 0),
        )
        if isinstance(warped, cv2.UMat):
            warped = warped.get()
        return np.clip(warped, 0.0, 1.0)


class SubdivisionDrawer(PerspectiveDrawer):
    """Grid-of-triangles approximation of the homography.

    Cell corners are placed by bilinear interpolation of the quad's edges,
    which is not the true projective mapping; accuracy improves with the
    number of subdivisions.
    """

    name = "subdivision"

    def __init__(self, subdivisions: int = 8, interpolation: str = "linear"):
        super().__init__(interpolation)
        self.subdivisions = max(1, int(subdivisions))
        self.skipped_triangles = 0

    def warp(self, image: np.ndarray, quad: Quad, region: Region) -> Optional[np.ndarray]:
        src_h, src_w = image.shape[:2]
        x0, y0, x1, y1 = region
        patch = np.zeros((y1 - y0, x1 - x0, 4), dtype=np.float32)
        origin = np.array([x0, y0], dtype=np.float64)
        n = self.subdivisions

        for row in range(n):
            for col in range(n):
                u0, v0 = col / n, row / n
                u1, v1 = (col + 1) / n, (row + 1) / n

                p00 = bilinear_point(quad, u0, v0).as_tuple()
                p10 = bilinear_point(quad, u1, v0).as_tuple()
                p01 = bilinear_point(quad, u0, v1).as_tuple()
                p11 = bilinear_point(quad, u1, v1).as_tuple()

                sx0, sy0 = u0 * src_w, v0 * src_h
                sx1, sy1 = u1 * src_w, v1 * src_h

                self._draw_triangle(
                    patch, image, origin,
                    np.array([(sx0, sy0), (sx1, sy0), (sx0, sy1)]),
                    np.array([p00, p10, p01]),
                )
                self._draw_triangle(
                    patch, image, origin,
                    np.array([(sx1, sy0), (sx1, sy1), (sx0, sy1)]),
                    np.array([p10, p11, p01]),
                )
        return patch

    def _draw_triangle(
        self,
        patch: np.ndarray,
        image: np.ndarray,
        origin: np.ndarray,
        src_tri: np.ndarray,
        dst_tri: np.ndarray,
    ) -> bool:
        affine = solve_affine(src_tri, dst_tri)
        if affine is None:
            self.skipped_triangles += 1
            return False

        local_tri = dst_tri - origin
        patch_h, patch_w = patch.shape[:2]
        bx0 = max(0, int(math.floor(local_tri[:, 0].min())))
        by0 = max(0, int(math.floor(local_tri[:, 1].min())))
        bx1 = min(patch_w, int(math.ceil(local_tri[:, 0].max())) + 1)
        by1 = min(patch_h, int(math.ceil(local_tri[:, 1].max())) + 1)
        if bx1 <= bx0 or by1 <= by0:
            return False

        # Shift into the triangle's box and move to pixel-centre coordinates
        linear = affine[:, :2]
        offset = affine[:, 2] + linear @ np.array([0.5, 0.5]) - 0.5 - origin - (bx0, by0)
        local_affine = np.hstack([linear, offset.reshape(2, 1)])

        box_w, box_h = bx1 - bx0, by1 - by0
        warped = cv2.warpAffine(
            image,
            local_affine,
            (box_w, box_h),
            flags=self.interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0, 0),
        )

        shift = 4
        pts = np.round((local_tri - (bx0, by0) - 0.5) * (1 << shift)).astype(np.int32)
        tri_mask = np.zeros((box_h, box_w), dtype=np.uint8)
        cv2.fillConvexPoly(tri_mask, pts.reshape(-1, 1, 2), 255, cv2.LINE_8, shift)

        box = patch[by0:by1, bx0:bx1]
        np.copyto(box, np.clip(warped, 0.0, 1.0), where=(tri_mask > 0)[..., np.newaxis])
        return True


def create_drawer(
    backend: str = "homography",
    subdivisions: int = 8,
    use_opencl: bool = False,
    interpolation: str = "linear",
) -> PerspectiveDrawer:
    """Build the drawer for ``backend`` ("homography" or "subdivision")."""
    if backend == HomographyDrawer.name:
        return HomographyDrawer(interpolation=interpolation, use_opencl=use_opencl)
    if backend == SubdivisionDrawer.name:
        return SubdivisionDrawer(subdivisions=subdivisions, interpolation=interpolation)
    raise ValueError(f"Unknown perspective backend '{backend}'")
