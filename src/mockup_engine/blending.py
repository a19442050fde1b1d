"""
Blend modes and Porter-Duff compositing on premultiplied BGRA buffers.

Buffers are float32 HxWx4 arrays in BGRA order with colour premultiplied by
alpha. Colour blending uses psd-tools' blend function table, which works on
straight RGB, so colour channels are reversed on the way in and out.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
from psd_tools.composite.blend import BLEND_FUNC
from psd_tools.constants import BlendMode as PsdBlendMode

from .layers import BlendMode

LOGGER = logging.getLogger(__name__)


def blend_function(mode: BlendMode) -> Optional[Callable[[np.ndarray, np.ndarray], np.ndarray]]:
    """psd-tools blend function for ``mode``, or None if it has none."""
    psd_mode = getattr(PsdBlendMode, mode.name, None)
    if psd_mode is None:
        return None
    return BLEND_FUNC.get(psd_mode)


def blend_colors(mode: BlendMode, backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    """Apply blend ``mode`` to straight BGR colours in [0, 1].

    Both arrays share any ``...x3`` shape.
    """
    if mode is BlendMode.NORMAL:
        return source
    func = blend_function(mode)
    if func is None:
        LOGGER.debug("No blend function for %s, using normal", mode.value)
        return source

    shape = source.shape
    # Non-separable modes need HxWx3 input
    cb = np.ascontiguousarray(backdrop.reshape(-1, 1, 3)[..., ::-1], dtype=np.float32)
    cs = np.ascontiguousarray(source.reshape(-1, 1, 3)[..., ::-1], dtype=np.float32)
    blended = np.asarray(func(cb, cs), dtype=np.float32)
    blended = np.nan_to_num(blended, nan=0.0, posinf=1.0, neginf=0.0)
    return np.clip(blended[..., ::-1].reshape(shape), 0.0, 1.0)


# ---------------------------------------------------------------------- #
# Compositing
# ---------------------------------------------------------------------- #
def _unpremultiply(pixels: np.ndarray) -> np.ndarray:
    alpha = pixels[..., 3:4]
    with np.errstate(divide="ignore", invalid="ignore"):
        color = np.where(alpha > 0.0, pixels[..., :3] / np.maximum(alpha, 1e-6), 0.0)
    return np.clip(color, 0.0, 1.0)


def composite(
    dst: np.ndarray,
    src: np.ndarray,
    opacity: float = 1.0,
    blend_mode: BlendMode = BlendMode.NORMAL,
    coverage: Optional[np.ndarray] = None,
) -> None:
    """Composite ``src`` over ``dst`` in place (same shape).

    Args:
        dst: premultiplied BGRA destination, modified in place
        src: premultiplied BGRA source
        opacity: extra opacity applied to the source
        blend_mode: how source colour combines with the backdrop
        coverage: optional HxW coverage (clip) in [0, 1]
    """
    weight = float(np.clip(opacity, 0.0, 1.0))
    if weight <= 0.0:
        return

    source = src * weight if weight < 1.0 else src
    if coverage is not None:
        source = source * coverage[..., np.newaxis]

    src_alpha = source[..., 3:4]
    inv_src_alpha = 1.0 - src_alpha

    if blend_mode is BlendMode.NORMAL:
        dst *= inv_src_alpha
        dst += source
        return

    dst_alpha = dst[..., 3:4]
    backdrop = _unpremultiply(dst)
    blended = blend_colors(blend_mode, backdrop, _unpremultiply(source))

    color = source[..., :3] * (1.0 - dst_alpha) + dst[..., :3] * inv_src_alpha + src_alpha * dst_alpha * blended
    dst[..., 3:4] = src_alpha + dst_alpha * inv_src_alpha
    dst[..., :3] = color


def composite_at(
    dst: np.ndarray,
    src: np.ndarray,
    x: int,
    y: int,
    opacity: float = 1.0,
    blend_mode: BlendMode = BlendMode.NORMAL,
    coverage: Optional[np.ndarray] = None,
) -> bool:
    """Composite ``src`` with its top-left corner at ``(x, y)`` in ``dst``.

    Parts of ``src`` falling outside ``dst`` are clipped.

    Returns:
        False if nothing overlapped.
    """
    h, w = dst.shape[:2]
    sh, sw = src.shape[:2]

    sx0 = max(0, -x)
    sy0 = max(0, -y)
    dx0 = max(0, x)
    dy0 = max(0, y)
    cw = min(sw - sx0, w - dx0)
    ch = min(sh - sy0, h - dy0)
    if cw <= 0 or ch <= 0:
        return False

    region_cov = None
    if coverage is not None:
        region_cov = coverage[sy0:sy0 + ch, sx0:sx0 + cw]
    composite(
        dst[dy0:dy0 + ch, dx0:dx0 + cw],
        src[sy0:sy0 + ch, sx0:sx0 + cw],
        opacity,
        blend_mode,
        region_cov,
    )
    return True


def destination_in(buffer: np.ndarray, mask: np.ndarray) -> None:
    """Keep ``buffer`` only where ``mask`` is opaque (in place)."""
    buffer *= mask[..., np.newaxis]
