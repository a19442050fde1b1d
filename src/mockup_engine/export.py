"""
Encoding finished surfaces to image files.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

import cv2

from .surface import Surface

LOGGER = logging.getLogger(__name__)

EXTENSIONS = {"png": ".png", "jpeg": ".jpg", "webp": ".webp"}
ALIASES = {"jpg": "jpeg"}


class ExportError(RuntimeError):
    """Raised when a surface cannot be encoded or written."""


def normalize_format(fmt: str) -> str:
    """Canonical format name ('png', 'jpeg' or 'webp')."""
    key = str(fmt).lower().lstrip(".")
    key = ALIASES.get(key, key)
    if key not in EXTENSIONS:
        raise ExportError(f"Unsupported output format '{fmt}'")
    return key


def _quality_percent(quality: float) -> int:
    return int(round(min(max(float(quality), 0.0), 1.0) * 100)) or 1


def encode_surface(surface: Surface, fmt: str = "png", quality: float = 0.92) -> bytes:
    """Encode ``surface`` as PNG, JPEG or WEBP bytes.

    Args:
        surface: rendered surface
        fmt: output format
        quality: lossy quality in [0, 1]; ignored for PNG

    Returns:
        Encoded image bytes.
    """
    key = normalize_format(fmt)
    params: List[int] = []
    if key == "png":
        image = surface.to_bgra()
        params = [cv2.IMWRITE_PNG_COMPRESSION, 3]
    elif key == "jpeg":
        # JPEG has no alpha channel
        image = surface.to_bgr()
        params = [cv2.IMWRITE_JPEG_QUALITY, _quality_percent(quality)]
    else:
        image = surface.to_bgra()
        params = [cv2.IMWRITE_WEBP_QUALITY, _quality_percent(quality)]

    ok, buffer = cv2.imencode(EXTENSIONS[key], image, params)
    if not ok:
        raise ExportError(f"OpenCV could not encode a {surface.width}x{surface.height} {key} image")
    return buffer.tobytes()


def save_surface(
    surface: Surface,
    path: Union[str, Path],
    quality: float = 0.92,
    fmt: Optional[str] = None,
) -> Path:
    """Encode ``surface`` and write it to ``path``.

    The format follows the file extension unless ``fmt`` is given.
    """
    path = Path(path)
    key = normalize_format(fmt or path.suffix or "png")
    data = encode_surface(surface, key, quality)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        raise ExportError(f"Could not write {path}: {e}") from e
    LOGGER.info("Saved %s (%d bytes)", path, len(data))
    return path
