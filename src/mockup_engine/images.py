"""
Image sources and the per-renderer decode cache.

Every image that reaches the compositor (design inputs, layer snapshots,
masks) goes through :func:`decode_image`, which accepts decoded arrays,
PIL images, raw pixel buffers and encoded blobs, and returns an 8-bit BGRA
array. :class:`ImageCache` memoizes the premultiplied float version used for
drawing, keyed by a stable content key.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

LOGGER = logging.getLogger(__name__)


class ImageDecodeError(ValueError):
    """Raised when an image source cannot be turned into pixels."""


@dataclass(frozen=True)
class RawPixels:
    """Interleaved 8-bit pixels with explicit dimensions (RGBA by default)."""

    width: int
    height: int
    data: bytes
    channels: int = 4


# ---------------------------------------------------------------------- #
# Decoding
# ---------------------------------------------------------------------- #
def decode_image(source: Any) -> np.ndarray:
    """Decode ``source`` into a straight-alpha BGRA uint8 array.

    Args:
        source: numpy array (gray, BGR or BGRA), PIL image, RawPixels,
            encoded bytes, a ``data:`` URL, a base64 string or a file path.

    Returns:
        HxWx4 uint8 array in BGRA order.

    Raises:
        ImageDecodeError: if the source cannot be decoded.
    """
    if source is None:
        raise ImageDecodeError("image source is None")

    if isinstance(source, np.ndarray):
        return _array_to_bgra(source)

    if isinstance(source, Image.Image):
        rgba = np.array(source.convert("RGBA"))
        return cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA)

    if isinstance(source, RawPixels):
        return _raw_to_bgra(source)

    if isinstance(source, (bytes, bytearray, memoryview)):
        return _decode_bytes(bytes(source))

    if isinstance(source, Path):
        return _decode_bytes(_read_file(source))

    if isinstance(source, str):
        if source.startswith("data:"):
            _, _, payload = source.partition(",")
            return _decode_bytes(_b64decode(payload))
        if len(source) < 1024 and os.path.isfile(source):
            return _decode_bytes(_read_file(Path(source)))
        return _decode_bytes(_b64decode(source))

    raise ImageDecodeError(f"Unsupported image source type: {type(source).__name__}")


def _array_to_bgra(array: np.ndarray) -> np.ndarray:
    img = array
    if img.dtype == np.uint16:
        img = (img >> 8).astype(np.uint8)
    elif img.dtype != np.uint8:
        img = (np.clip(img.astype(np.float32), 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)

    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    if img.ndim != 3:
        raise ImageDecodeError(f"Unsupported array shape {array.shape}")

    channels = img.shape[2]
    if channels == 1:
        return cv2.cvtColor(img[:, :, 0], cv2.COLOR_GRAY2BGRA)
    if channels == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    if channels == 4:
        return np.ascontiguousarray(img)
    raise ImageDecodeError(f"Unsupported channel count {channels}")


def _raw_to_bgra(raw: RawPixels) -> np.ndarray:
    expected = raw.width * raw.height * raw.channels
    if raw.width <= 0 or raw.height <= 0 or len(raw.data) < expected:
        raise ImageDecodeError(
            f"Raw buffer of {len(raw.data)} bytes does not hold {raw.width}x{raw.height}x{raw.channels}"
        )
    pixels = np.frombuffer(raw.data, dtype=np.uint8, count=expected)
    pixels = pixels.reshape(raw.height, raw.width, raw.channels)
    if raw.channels == 4:
        return cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA)
    if raw.channels == 3:
        return cv2.cvtColor(pixels, cv2.COLOR_RGB2BGRA)
    if raw.channels == 1:
        return cv2.cvtColor(pixels[:, :, 0], cv2.COLOR_GRAY2BGRA)
    raise ImageDecodeError(f"Unsupported channel count {raw.channels}")


def _decode_bytes(data: bytes) -> np.ndarray:
    if not data:
        raise ImageDecodeError("empty image data")
    buffer = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise ImageDecodeError(f"could not decode {len(data)} bytes of image data")
    return _array_to_bgra(img)


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"invalid base64 image data: {e}") from e


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ImageDecodeError(f"could not read {path}: {e}") from e


# ---------------------------------------------------------------------- #
# Pixel format helpers
# ---------------------------------------------------------------------- #
def to_premultiplied(bgra: np.ndarray) -> np.ndarray:
    """uint8 straight BGRA -> float32 premultiplied BGRA in [0, 1]."""
    pixels = bgra.astype(np.float32) / 255.0
    pixels[:, :, :3] *= pixels[:, :, 3:4]
    return pixels


def to_straight_bgra8(premultiplied: np.ndarray) -> np.ndarray:
    """float32 premultiplied BGRA -> uint8 straight BGRA."""
    alpha = premultiplied[:, :, 3:4]
    safe_alpha = np.where(alpha > 0.0, alpha, 1.0)
    color = np.where(alpha > 0.0, premultiplied[:, :, :3] / safe_alpha, 0.0)
    out = np.concatenate([color, alpha], axis=2)
    return (np.clip(out, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)


def to_grayscale(source: Any) -> np.ndarray:
    """Decode ``source`` and return a float32 single-channel map in [0, 1].

    Grayscale masks are stored as opaque gray pixels; for those the gray
    level is the mask value. Sources with real transparency use alpha.
    """
    bgra = decode_image(source)
    alpha = bgra[:, :, 3]
    if np.all(alpha == 255):
        gray = cv2.cvtColor(bgra, cv2.COLOR_BGRA2GRAY)
        return gray.astype(np.float32) / 255.0
    return alpha.astype(np.float32) / 255.0


def content_key(source: Any) -> Optional[str]:
    """Stable cache key for ``source`` or None when it should not be cached.

    Encoded data is keyed by its SHA-1 digest. Read-only numpy arrays are
    keyed by identity; writable arrays are never cached.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        return "sha1:" + hashlib.sha1(bytes(source)).hexdigest()
    if isinstance(source, str):
        return "sha1:" + hashlib.sha1(source.encode("utf-8")).hexdigest()
    if isinstance(source, Path):
        try:
            stat = source.stat()
        except OSError:
            return None
        return f"path:{source.resolve()}:{stat.st_mtime_ns}:{stat.st_size}"
    if isinstance(source, RawPixels):
        digest = hashlib.sha1(source.data).hexdigest()
        return f"raw:{source.width}x{source.height}x{source.channels}:{digest}"
    if isinstance(source, np.ndarray) and not source.flags.writeable:
        return f"array:{id(source)}:{source.shape}:{source.dtype}"
    return None


# ---------------------------------------------------------------------- #
# Cache
# ---------------------------------------------------------------------- #
class ImageCache:
    """LRU cache of decoded, premultiplied images owned by one renderer."""

    def __init__(self, max_entries: int = 64):
        self.max_entries = max(1, int(max_entries))
        self._entries: "OrderedDict[str, Tuple[Any, np.ndarray]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, source: Any) -> bool:
        key = content_key(source)
        return key is not None and key in self._entries

    def get(self, source: Any) -> np.ndarray:
        """Return the premultiplied float32 BGRA pixels for ``source``.

        Raises:
            ImageDecodeError: if the source cannot be decoded.
        """
        return self._memoize(content_key(source), source, lambda: to_premultiplied(decode_image(source)))

    def get_mask(self, source: Any) -> np.ndarray:
        """Return a float32 grayscale map in [0, 1] for a mask ``source``."""
        key = content_key(source)
        return self._memoize(key and "mask:" + key, source, lambda: to_grayscale(source))

    def _memoize(self, key: Optional[str], source: Any, loader) -> np.ndarray:
        if key is not None:
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None:
                    self._entries.move_to_end(key)
                    self.hits += 1
                    return entry[1]

        pixels = loader()
        pixels.setflags(write=False)

        with self._lock:
            self.misses += 1
            if key is not None:
                # The source is kept alive so identity keys stay valid.
                self._entries[key] = (source, pixels)
                self._entries.move_to_end(key)
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)
        return pixels

    def preload(self, sources: Iterable[Any], workers: int = 4) -> int:
        """Decode ``sources`` ahead of time on a thread pool.

        Returns:
            Number of sources successfully decoded.
        """
        pending = [source for source in sources if source not in self]
        if not pending:
            return 0

        def load(source: Any) -> bool:
            try:
                self.get(source)
                return True
            except ImageDecodeError as e:
                LOGGER.warning("Preload skipped an image: %s", e)
                return False

        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            loaded = sum(pool.map(load, pending))
        LOGGER.debug("Preloaded %d/%d images", loaded, len(pending))
        return loaded

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
