"""Raster sampler: validate the decoded source and build the analysis copy."""

from dataclasses import dataclass

import cv2
import numpy as np

from cropwise.errors import InvalidImageError

DEFAULT_ANALYSIS_MAX_DIMENSION = 256


@dataclass(frozen=True)
class AnalysisBuffer:
    """Low-resolution float RGB working copy of a source image."""

    pixels: np.ndarray
    source_width: int
    source_height: int

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def scale_x(self) -> float:
        """Source pixels per analysis pixel, horizontally."""
        return self.source_width / self.width

    @property
    def scale_y(self) -> float:
        return self.source_height / self.height


def image_size(image: np.ndarray) -> tuple[int, int]:
    """Return (width, height) after checking the layout is one we analyse."""
    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"Expected a numpy array, got {type(image).__name__}")
    if image.ndim not in (2, 3):
        raise InvalidImageError(f"Unsupported image shape {image.shape}: expected HxW or HxWxC")
    if image.ndim == 3 and image.shape[2] not in (1, 3, 4):
        raise InvalidImageError(
            f"Unsupported channel count {image.shape[2]}: expected 1 (gray), 3 (RGB) or 4 (RGBA)"
        )
    if image.dtype not in (np.uint8, np.uint16) and image.dtype.kind not in ("b", "f"):
        raise InvalidImageError(
            f"Unsupported pixel dtype {image.dtype}: expected uint8, uint16, bool or float"
        )

    h, w = image.shape[:2]
    if w <= 0 or h <= 0:
        raise InvalidImageError(f"Image has zero size ({w}x{h})")
    return int(w), int(h)


def to_float_rgb(image: np.ndarray) -> np.ndarray:
    """Normalize any accepted layout to float32 HxWx3 in [0, 1]; alpha is dropped."""
    image_size(image)
    if image.dtype == np.uint8:
        rgb = image.astype(np.float32) / 255.0
    elif image.dtype == np.uint16:
        rgb = image.astype(np.float32) / 65535.0
    elif image.dtype == np.bool_:
        rgb = image.astype(np.float32)
    else:
        rgb = image.astype(np.float32)
        if not np.isfinite(rgb).all():
            raise InvalidImageError("Image contains NaN or infinite samples")
        rgb = np.clip(rgb, 0.0, 1.0)

    if rgb.ndim == 2:
        rgb = rgb[:, :, None]
    if rgb.shape[2] == 1:
        rgb = np.repeat(rgb, 3, axis=2)
    elif rgb.shape[2] == 4:
        rgb = rgb[:, :, :3]
    return np.ascontiguousarray(rgb)


def analysis_size(width: int, height: int, target_max_dimension: int) -> tuple[int, int]:
    """Analysis (width, height): longest side capped, aspect preserved, never upscaled."""
    longest = max(width, height)
    if longest <= target_max_dimension:
        return width, height
    scale = target_max_dimension / longest
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def downsample(
    image: np.ndarray, target_max_dimension: int = DEFAULT_ANALYSIS_MAX_DIMENSION
) -> AnalysisBuffer:
    """Produce the read-only analysis copy of a decoded source image."""
    src_w, src_h = image_size(image)
    rgb = to_float_rgb(image)

    new_w, new_h = analysis_size(src_w, src_h, target_max_dimension)
    if (new_w, new_h) != (src_w, src_h):
        rgb = cv2.resize(rgb, (new_w, new_h), interpolation=cv2.INTER_AREA)

    pixels = np.ascontiguousarray(rgb, dtype=np.float32)
    pixels.setflags(write=False)
    return AnalysisBuffer(pixels=pixels, source_width=src_w, source_height=src_h)
