import numpy as np

from cropwise.assembler import CropRect, finalize
from cropwise.features import extract_channels
from cropwise.options import CropOptions
from cropwise.sampler import downsample
from cropwise.scoring import CropCandidate, ScoreBreakdown
from cropwise.visualize import render_debug_overlay, save_debug_image

_SCORE = ScoreBreakdown(0.1, 0.2, 0.3, 0.0, 0.05, 0.01, 0.64)


def test_finalize_maps_candidate_to_source_pixels() -> None:
    best = CropCandidate(64, 0, 128, 128, 1.0, _SCORE)

    result = finalize(best, (1000, 500), (256, 128), 1.0)

    assert result.top_crop == CropRect(250, 0, 500, 500)
    assert result.analysis_crop == CropRect(64, 0, 128, 128)
    assert result.score == _SCORE
    assert result.to_dict() == {
        "topCrop": {"x": 250, "y": 0, "width": 500, "height": 500},
        "score": _SCORE.to_dict(),
    }


def test_finalize_clamps_instead_of_wrapping() -> None:
    # Rounding up would push the rectangle past the right and bottom edges.
    best = CropCandidate(200, 90, 57, 39, 1.0, _SCORE)

    result = finalize(best, (1023, 511), (256, 128), 1023 / 511 * 0.45)

    crop = result.top_crop
    assert crop.x + crop.width <= 1023
    assert crop.y + crop.height <= 511
    assert crop.x >= 0 and crop.y >= 0


def test_finalize_derives_smaller_side_from_aspect() -> None:
    best = CropCandidate(0, 0, 100, 57, 1.0, _SCORE)

    result = finalize(best, (640, 360), (256, 144), 16 / 9)

    assert result.top_crop.width == 250
    assert abs(result.top_crop.height - 250 * 9 / 16) <= 1


def test_finalize_handles_portrait_targets() -> None:
    best = CropCandidate(10, 0, 108, 192, 1.0, _SCORE)

    result = finalize(best, (1920, 1080), (256, 144), 9 / 16)

    crop = result.top_crop
    assert crop.height <= 1080
    assert abs(crop.width - crop.height * 9 / 16) <= 1


def test_debug_overlay_draws_on_analysis_raster(tmp_path) -> None:
    image = np.full((160, 240, 3), 90, dtype=np.uint8)
    image[40:120, 80:160] = (200, 40, 40)
    options = CropOptions()
    buffer = downsample(image, options.analysis_max_dimension)
    channels = extract_channels(buffer, options)
    result = finalize(CropCandidate(0, 0, 160, 160, 1.0, _SCORE), (240, 160), (240, 160), 1.0)

    overlay = render_debug_overlay(buffer, channels, result)

    assert overlay.shape == (160, 240, 3)
    assert overlay.dtype == np.uint8
    # Crop outline is drawn in magenta.
    assert tuple(overlay[0, 100]) == (255, 0, 255)
    path = save_debug_image(tmp_path / "nested" / "overlay.png", overlay)
    assert path.exists()
