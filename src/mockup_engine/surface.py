"""
Render target owned by a renderer instance.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .images import to_straight_bgra8

LOGGER = logging.getLogger(__name__)


class Surface:
    """
    Premultiplied float32 BGRA pixel buffer.

    Drawing code works in scene (canvas) coordinates; ``scale`` maps scene
    coordinates to surface pixels, so a 0.5 scale renders a half-size
    preview of the same template.
    """

    def __init__(self, width: int, height: int, scale: float = 1.0):
        if width <= 0 or height <= 0:
            raise ValueError(f"Surface size must be positive, got {width}x{height}")
        self.width = int(width)
        self.height = int(height)
        self.scale = float(scale)
        self.pixels = np.zeros((self.height, self.width, 4), dtype=np.float32)

    @classmethod
    def for_canvas(cls, canvas_width: float, canvas_height: float, scale: float = 1.0) -> "Surface":
        width = max(1, int(round(canvas_width * scale)))
        height = max(1, int(round(canvas_height * scale)))
        return cls(width, height, scale)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    def clear(self):
        self.pixels.fill(0.0)

    def new_layer(self) -> np.ndarray:
        """Transparent buffer the size of the surface (an off-screen layer)."""
        return np.zeros_like(self.pixels)

    def to_bgra(self) -> np.ndarray:
        """Straight-alpha uint8 BGRA copy of the surface."""
        return to_straight_bgra8(self.pixels)

    def to_bgr(self, background: Optional[Tuple[int, int, int]] = None) -> np.ndarray:
        """Flatten onto an opaque ``background`` colour (BGR, default black)."""
        bg = np.array(background or (0, 0, 0), dtype=np.float32) / 255.0
        alpha = self.pixels[:, :, 3:4]
        flat = self.pixels[:, :, :3] + bg * (1.0 - alpha)
        return (np.clip(flat, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)

    def pixel(self, x: int, y: int) -> Tuple[int, int, int, int]:
        """Straight BGRA uint8 value at surface pixel ``(x, y)``."""
        value = to_straight_bgra8(self.pixels[y:y + 1, x:x + 1])[0, 0]
        return tuple(int(v) for v in value)
