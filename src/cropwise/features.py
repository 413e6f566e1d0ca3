"""Per-pixel saliency channels: edge detail, skin likelihood and saturation."""

from dataclasses import dataclass

import cv2
import numpy as np

from cropwise.options import CropOptions
from cropwise.sampler import AnalysisBuffer

_EPS = 1e-6

# Below one 16-bit quantization step; resampling round-off on flat areas.
EDGE_NOISE_FLOOR = 1e-5


@dataclass(frozen=True)
class FeatureChannels:
    edge: np.ndarray
    skin: np.ndarray
    saturation: np.ndarray

    @property
    def shape(self) -> tuple[int, int]:
        return self.edge.shape


def luma(rgb: np.ndarray) -> np.ndarray:
    """Rec.709 luma of a float RGB array."""
    return (0.2126 * rgb[:, :, 0] + 0.7152 * rgb[:, :, 1] + 0.0722 * rgb[:, :, 2]).astype(np.float32)


def edge_channel(lum: np.ndarray) -> np.ndarray:
    """Magnitude of the 4-neighbour Laplacian, clipped to [0, 1]."""
    lap = cv2.Laplacian(lum, cv2.CV_32F, ksize=1, borderType=cv2.BORDER_REPLICATE)
    mag = np.abs(lap)
    mag[mag < EDGE_NOISE_FLOOR] = 0.0
    return np.clip(mag, 0.0, 1.0)


def skin_channel(rgb: np.ndarray, lum: np.ndarray, options: CropOptions) -> np.ndarray:
    """Skin likelihood from chromaticity distance to a reference skin tone."""
    ref = np.asarray(options.skin_color, dtype=np.float32)
    ref = ref / float(np.linalg.norm(ref))

    mag = np.sqrt((rgb * rgb).sum(axis=2))
    chroma = rgb / np.maximum(mag, _EPS)[:, :, None]
    distance = np.sqrt(((chroma - ref) ** 2).sum(axis=2))
    similarity = 1.0 - distance

    thr = options.skin_threshold
    accepted = (
        (mag > _EPS)
        & (similarity > thr)
        & (lum >= options.skin_brightness_min)
        & (lum <= options.skin_brightness_max)
    )
    out = np.where(accepted, (similarity - thr) / (1.0 - thr), 0.0)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


def saturation_channel(rgb: np.ndarray, lum: np.ndarray, options: CropOptions) -> np.ndarray:
    """HSL saturation above threshold, gated to mid brightness."""
    mx = rgb.max(axis=2)
    mn = rgb.min(axis=2)
    spread = mx - mn
    lightness = (mx + mn) / 2.0
    denom = np.where(lightness > 0.5, 2.0 - mx - mn, mx + mn)
    sat = np.where(spread > 0, spread / np.maximum(denom, _EPS), 0.0)

    thr = options.saturation_threshold
    accepted = (
        (sat > thr)
        & (lum >= options.saturation_brightness_min)
        & (lum <= options.saturation_brightness_max)
    )
    out = np.where(accepted, (sat - thr) / (1.0 - thr), 0.0)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


def _frozen(channel: np.ndarray) -> np.ndarray:
    channel = np.ascontiguousarray(channel, dtype=np.float32)
    channel.setflags(write=False)
    return channel


def extract_channels(buffer: AnalysisBuffer, options: CropOptions) -> FeatureChannels:
    """Compute edge, skin and saturation channels at analysis resolution."""
    rgb = buffer.pixels
    lum = luma(rgb)
    return FeatureChannels(
        edge=_frozen(edge_channel(lum)),
        skin=_frozen(skin_channel(rgb, lum, options)),
        saturation=_frozen(saturation_channel(rgb, lum, options)),
    )
