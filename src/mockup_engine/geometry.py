"""
Planar geometry primitives.

Points, bounds and the four-corner quadrilaterals that describe where a
design lands in scene space.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

import numpy as np

COLLINEAR_EPSILON = 1e-6


@dataclass(frozen=True)
class Point2D:
    """A point in scene coordinates."""

    x: float
    y: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Size:
    width: float
    height: float


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle as (left, top, right, bottom)."""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @staticmethod
    def from_tuple(values: Sequence[float]) -> "Bounds":
        left, top, right, bottom = values
        return Bounds(float(left), float(top), float(right), float(bottom))


@dataclass(frozen=True)
class Quad:
    """
    Destination surface patch.

    Corners are always ordered top-left, top-right, bottom-right,
    bottom-left; the same order the layered-scene transforms store them in.
    """

    top_left: Point2D
    top_right: Point2D
    bottom_right: Point2D
    bottom_left: Point2D

    @property
    def corners(self) -> Tuple[Point2D, Point2D, Point2D, Point2D]:
        return (self.top_left, self.top_right, self.bottom_right, self.bottom_left)

    @staticmethod
    def from_flat(values: Sequence[float]) -> "Quad":
        """Build a quad from ``[x0, y0, x1, y1, x2, y2, x3, y3]``."""
        if len(values) < 8:
            raise ValueError(f"Quad needs 8 values, got {len(values)}")
        v = [float(value) for value in values[:8]]
        return Quad(
            top_left=Point2D(v[0], v[1]),
            top_right=Point2D(v[2], v[3]),
            bottom_right=Point2D(v[4], v[5]),
            bottom_left=Point2D(v[6], v[7]),
        )

    @staticmethod
    def from_points(points: Iterable[Sequence[float]]) -> "Quad":
        flat = [float(c) for point in points for c in point]
        return Quad.from_flat(flat)

    @staticmethod
    def from_rect(width: float, height: float, left: float = 0.0, top: float = 0.0) -> "Quad":
        return Quad(
            top_left=Point2D(left, top),
            top_right=Point2D(left + width, top),
            bottom_right=Point2D(left + width, top + height),
            bottom_left=Point2D(left, top + height),
        )

    @staticmethod
    def from_bounds(bounds: Bounds) -> "Quad":
        return Quad.from_rect(bounds.width, bounds.height, bounds.left, bounds.top)

    def to_flat(self) -> Tuple[float, ...]:
        return tuple(c for corner in self.corners for c in corner.as_tuple())

    def to_array(self) -> np.ndarray:
        """Return the corners as a 4x2 float64 array."""
        return np.array([corner.as_tuple() for corner in self.corners], dtype=np.float64)

    def scaled(self, factor: float) -> "Quad":
        return Quad.from_flat([c * factor for c in self.to_flat()])

    def translated(self, dx: float, dy: float) -> "Quad":
        return Quad.from_points((p.x + dx, p.y + dy) for p in self.corners)

    def bounding_box(self) -> Bounds:
        pts = self.to_array()
        return Bounds(
            float(pts[:, 0].min()),
            float(pts[:, 1].min()),
            float(pts[:, 0].max()),
            float(pts[:, 1].max()),
        )

    def area(self) -> float:
        """Signed shoelace area; sign follows the winding direction."""
        pts = self.to_array()
        x, y = pts[:, 0], pts[:, 1]
        return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))

    def is_degenerate(self, epsilon: float = COLLINEAR_EPSILON) -> bool:
        """True when a corner is not finite, the quad encloses no area, or
        any three corners are collinear."""
        pts = self.to_array()
        if not np.all(np.isfinite(pts)):
            return True
        # Catches symmetric bow-ties, whose lobes cancel out
        if abs(self.area()) < epsilon:
            return True
        for i in range(4):
            a, b, c = pts[i], pts[(i + 1) % 4], pts[(i + 2) % 4]
            if abs(_cross(b - a, c - a)) < epsilon:
                return True
        return False


def _cross(u: np.ndarray, v: np.ndarray) -> float:
    return float(u[0] * v[1] - u[1] * v[0])


def lerp(a: Point2D, b: Point2D, t: float) -> Point2D:
    return Point2D(a.x + (b.x - a.x) * t, a.y + (b.y - a.y) * t)


def bilinear_point(quad: Quad, u: float, v: float) -> Point2D:
    """Interpolate a point inside ``quad`` from unit-square coordinates.

    The top and bottom edges are interpolated along ``u`` first, then the
    result is interpolated vertically along ``v``.
    """
    top = lerp(quad.top_left, quad.top_right, u)
    bottom = lerp(quad.bottom_left, quad.bottom_right, u)
    return lerp(top, bottom, v)
