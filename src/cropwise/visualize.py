"""Debug overlay: saliency channels, boost regions and the chosen crop."""

from pathlib import Path
from typing import Sequence

import cv2
import numpy as np

from cropwise.assembler import CropResult
from cropwise.boost import BoostRegion
from cropwise.errors import RenderError
from cropwise.features import FeatureChannels, luma
from cropwise.sampler import AnalysisBuffer


def render_debug_overlay(
    buffer: AnalysisBuffer,
    channels: FeatureChannels,
    result: CropResult,
    boosts: Sequence[BoostRegion] = (),
) -> np.ndarray:
    """BGR uint8 image at analysis resolution.

    Red is skin, green is edge detail and blue is saturation, drawn over a
    dimmed grayscale copy of the picture.
    """
    base = 0.4 * luma(buffer.pixels)
    bgr = np.stack(
        [
            np.clip(base + channels.saturation, 0.0, 1.0),
            np.clip(base + channels.edge, 0.0, 1.0),
            np.clip(base + channels.skin, 0.0, 1.0),
        ],
        axis=2,
    )
    debug_img = np.ascontiguousarray((bgr * 255.0).round().astype(np.uint8))

    sx, sy = buffer.scale_x, buffer.scale_y
    for b in boosts:
        x1 = int(round(b.x / sx))
        y1 = int(round(b.y / sy))
        x2 = int(round((b.x + b.width) / sx))
        y2 = int(round((b.y + b.height) / sy))
        cv2.rectangle(debug_img, (x1, y1), (x2, y2), (0, 140, 255), 1)

    crop = result.analysis_crop
    cx2 = crop.x + crop.width - 1
    cy2 = crop.y + crop.height - 1
    # Rule-of-thirds grid inside the crop
    for frac in (1 / 3, 2 / 3):
        gx = crop.x + int(crop.width * frac)
        gy = crop.y + int(crop.height * frac)
        cv2.line(debug_img, (gx, crop.y), (gx, cy2), (255, 255, 0), 1)
        cv2.line(debug_img, (crop.x, gy), (cx2, gy), (255, 255, 0), 1)
    cv2.rectangle(debug_img, (crop.x, crop.y), (cx2, cy2), (255, 0, 255), 1)
    return debug_img


def save_debug_image(path: Path, debug_img: np.ndarray) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), debug_img):
        raise RenderError(f"Could not write debug image to {path}")
    return path
