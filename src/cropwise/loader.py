"""Decode image files, bytes or stdin into RGB arrays for analysis."""

import sys
from pathlib import Path
from typing import Union

import cv2
import numpy as np

from cropwise.errors import InvalidImageError

STDIO_MARKER = "-"

# Pixels are analysed in stored orientation; auto-orient runs after the crop.
_DECODE_FLAGS = cv2.IMREAD_COLOR | cv2.IMREAD_IGNORE_ORIENTATION


def read_source_bytes(source: Union[str, Path]) -> bytes:
    """Raw bytes of a file path, or of stdin when source is '-'."""
    if str(source) == STDIO_MARKER:
        return sys.stdin.buffer.read()
    try:
        return Path(source).read_bytes()
    except OSError as e:
        raise InvalidImageError(f"Cannot read image {source}: {e}") from e


def decode_image(data: bytes, name: str = "<bytes>") -> np.ndarray:
    """Decode encoded image bytes into an HxWx3 uint8 RGB array."""
    if not data:
        raise InvalidImageError(f"Image {name} is empty")
    buf = np.frombuffer(data, dtype=np.uint8)
    bgr = cv2.imdecode(buf, _DECODE_FLAGS)
    if bgr is None:
        raise InvalidImageError(f"Could not decode image {name}")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def load_image(source: Union[str, Path]) -> tuple[np.ndarray, bytes]:
    """Return (rgb pixels, original bytes); the bytes feed the renderer."""
    data = read_source_bytes(source)
    name = "stdin" if str(source) == STDIO_MARKER else str(source)
    return decode_image(data, name), data
