"""
Homography solver.

Builds, combines and inverts 3x3 projective matrices that map the unit
square, or a ``w`` x ``h`` rectangle, onto an arbitrary quadrilateral.

Operations that can fail return a :class:`Degenerate` value instead of a
matrix. Callers are expected to check with :func:`is_degenerate` at every
use site; no function here raises for singular geometry or returns NaN.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np

from .geometry import Point2D, Quad

DETERMINANT_EPSILON = 1e-10
DIVISOR_EPSILON = 1e-10

Matrix3x3 = np.ndarray


@dataclass(frozen=True)
class Degenerate:
    """Marker result for a matrix that cannot be built or inverted."""

    reason: str

    def __bool__(self) -> bool:
        return False


HomographyResult = Union[Matrix3x3, Degenerate]


def is_degenerate(result: HomographyResult) -> bool:
    return isinstance(result, Degenerate)


def identity() -> Matrix3x3:
    return np.eye(3, dtype=np.float64)


def determinant(m: Matrix3x3) -> float:
    return float(
        m[0, 0] * (m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1])
        - m[0, 1] * (m[1, 0] * m[2, 2] - m[1, 2] * m[2, 0])
        + m[0, 2] * (m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0])
    )


def adjugate(m: Matrix3x3) -> Matrix3x3:
    return np.array(
        [
            [
                m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1],
                m[0, 2] * m[2, 1] - m[0, 1] * m[2, 2],
                m[0, 1] * m[1, 2] - m[0, 2] * m[1, 1],
            ],
            [
                m[1, 2] * m[2, 0] - m[1, 0] * m[2, 2],
                m[0, 0] * m[2, 2] - m[0, 2] * m[2, 0],
                m[0, 2] * m[1, 0] - m[0, 0] * m[1, 2],
            ],
            [
                m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0],
                m[0, 1] * m[2, 0] - m[0, 0] * m[2, 1],
                m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0],
            ],
        ],
        dtype=np.float64,
    )


def validate_matrix(m: Matrix3x3) -> HomographyResult:
    """Return ``m`` if it is finite and invertible, else a Degenerate."""
    if not np.all(np.isfinite(m)):
        return Degenerate("matrix has non-finite entries")
    if abs(determinant(m)) < DETERMINANT_EPSILON:
        return Degenerate("matrix is singular")
    return m


def invert(m: Matrix3x3) -> HomographyResult:
    """Closed-form 3x3 inverse via the adjugate."""
    det = determinant(m)
    if not np.isfinite(det) or abs(det) < DETERMINANT_EPSILON:
        return Degenerate(f"determinant {det:.3g} is too close to zero")
    return adjugate(m) / det


def multiply(a: Matrix3x3, b: Matrix3x3) -> Matrix3x3:
    return np.asarray(a, dtype=np.float64) @ np.asarray(b, dtype=np.float64)


def unit_square_to_quad(quad: Quad) -> HomographyResult:
    """Matrix mapping (0,0),(1,0),(1,1),(0,1) onto TL, TR, BR, BL of ``quad``."""
    if quad.is_degenerate():
        return Degenerate("quad encloses no area or has three collinear corners")
    p0, p1, p2, p3 = quad.corners

    dx1 = p1.x - p2.x
    dy1 = p1.y - p2.y
    dx2 = p3.x - p2.x
    dy2 = p3.y - p2.y
    dx3 = p0.x - p1.x + p2.x - p3.x
    dy3 = p0.y - p1.y + p2.y - p3.y

    det = dx1 * dy2 - dx2 * dy1
    if abs(det) < DETERMINANT_EPSILON:
        return Degenerate("quad edges are parallel or collapsed")

    a13 = (dx3 * dy2 - dx2 * dy3) / det
    a23 = (dx1 * dy3 - dx3 * dy1) / det

    matrix = np.array(
        [
            [p1.x - p0.x + a13 * p1.x, p3.x - p0.x + a23 * p3.x, p0.x],
            [p1.y - p0.y + a13 * p1.y, p3.y - p0.y + a23 * p3.y, p0.y],
            [a13, a23, 1.0],
        ],
        dtype=np.float64,
    )
    return validate_matrix(matrix)


def quad_to_quad_matrix(src: Quad, dst: Quad) -> HomographyResult:
    """Map ``src`` onto ``dst`` through the unit square (src -> unit -> dst)."""
    src_matrix = unit_square_to_quad(src)
    if is_degenerate(src_matrix):
        return src_matrix

    dst_matrix = unit_square_to_quad(dst)
    if is_degenerate(dst_matrix):
        return dst_matrix

    src_inverse = invert(src_matrix)
    if is_degenerate(src_inverse):
        return src_inverse

    return validate_matrix(multiply(dst_matrix, src_inverse))


def rect_to_quad_matrix(width: float, height: float, dst: Quad) -> HomographyResult:
    """Map the rectangle ``[0, 0, width, height]`` onto ``dst``."""
    if width <= 0 or height <= 0:
        return Degenerate(f"source rectangle {width}x{height} has no area")
    return quad_to_quad_matrix(Quad.from_rect(width, height), dst)


def transform_point(point: Point2D, matrix: Matrix3x3) -> Point2D:
    """Apply ``matrix`` to ``point`` with homogeneous division.

    If the homogeneous divisor is numerically zero the input point is
    returned unchanged.
    """
    w = matrix[2, 0] * point.x + matrix[2, 1] * point.y + matrix[2, 2]
    if abs(w) < DIVISOR_EPSILON:
        return point
    return Point2D(
        float((matrix[0, 0] * point.x + matrix[0, 1] * point.y + matrix[0, 2]) / w),
        float((matrix[1, 0] * point.x + matrix[1, 1] * point.y + matrix[1, 2]) / w),
    )


def transform_points(points: np.ndarray, matrix: Matrix3x3) -> np.ndarray:
    """Vectorised :func:`transform_point` for an Nx2 array."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    homogeneous = np.hstack([pts, np.ones((len(pts), 1))]) @ matrix.T
    w = homogeneous[:, 2:3]
    safe = np.abs(w) >= DIVISOR_EPSILON
    projected = np.where(safe, homogeneous[:, :2] / np.where(safe, w, 1.0), pts)
    return projected
