import numpy as np
import pytest

from cropwise.features import extract_channels, luma
from cropwise.options import CropOptions
from cropwise.sampler import downsample


def _channels(image: np.ndarray, options: CropOptions = CropOptions()):
    return extract_channels(downsample(image, options.analysis_max_dimension), options)


def test_flat_gray_image_has_no_saliency() -> None:
    image = np.full((500, 1000, 3), 128, dtype=np.uint8)

    channels = _channels(image)

    assert channels.shape == (128, 256)
    assert not channels.edge.any()
    assert not channels.skin.any()
    assert not channels.saturation.any()


def test_step_edge_lights_up_detail_channel_only_at_boundary() -> None:
    image = np.zeros((64, 64, 3), dtype=np.uint8)
    image[:, 32:] = 255

    edge = _channels(image).edge

    assert edge[:, 31].min() > 0.5
    assert edge[:, 32].min() > 0.5
    assert not edge[:, :30].any()
    assert not edge[:, 34:].any()


def test_reference_skin_tone_scores_full_skin() -> None:
    image = np.empty((20, 20, 3), dtype=np.float32)
    image[:] = CropOptions().skin_color

    skin = _channels(image).skin

    assert skin.min() == pytest.approx(1.0, abs=1e-3)


def test_skin_is_gated_by_brightness() -> None:
    image = np.empty((20, 20, 3), dtype=np.float32)
    image[:] = np.asarray(CropOptions().skin_color) * 0.2

    assert not _channels(image).skin.any()


def test_saturated_red_scores_saturation_but_not_skin() -> None:
    image = np.zeros((20, 20, 3), dtype=np.uint8)
    image[:, :, 0] = 255

    channels = _channels(image)

    assert channels.saturation.min() == pytest.approx(1.0)
    assert not channels.skin.any()


def test_channels_are_read_only_and_in_unit_range() -> None:
    rng = np.random.default_rng(3)
    image = rng.integers(0, 256, size=(90, 120, 3), dtype=np.uint8)

    channels = _channels(image)

    for channel in (channels.edge, channels.skin, channels.saturation):
        assert channel.dtype == np.float32
        assert not channel.flags.writeable
        assert channel.min() >= 0.0
        assert channel.max() <= 1.0


def test_luma_uses_rec709_weights() -> None:
    rgb = np.array([[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]], dtype=np.float32)

    assert luma(rgb)[0] == pytest.approx([0.2126, 0.7152, 0.0722], abs=1e-6)
