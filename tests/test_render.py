import io
import subprocess

import numpy as np
import pytest
from PIL import Image, ImageCms

import cropwise.render as render
from cropwise.assembler import CropRect, CropResult
from cropwise.errors import InvalidConfigError, RenderError
from cropwise.options import RenderOptions
from cropwise.render import MagickRenderer, PillowRenderer, _unsharp_params, get_renderer
from cropwise.scoring import ScoreBreakdown


def _result(x: int, y: int, width: int, height: int) -> CropResult:
    return CropResult(
        top_crop=CropRect(x, y, width, height),
        score=ScoreBreakdown(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0),
        analysis_crop=CropRect(x, y, width, height),
        analysis_size=(200, 100),
    )


def _jpeg_bytes(width: int = 200, height: int = 100, **save_kwargs) -> bytes:
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[:, width // 2 :] = (255, 0, 0)
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="JPEG", **save_kwargs)
    return buf.getvalue()


def test_unsharp_setting_maps_to_pillow_parameters() -> None:
    assert _unsharp_params("2x0.5+1+0.008") == (0.5, 100, 2)
    with pytest.raises(InvalidConfigError):
        _unsharp_params("bogus")


def test_pillow_renderer_crops_and_resizes() -> None:
    out = PillowRenderer().render(_jpeg_bytes(), _result(100, 0, 100, 100), RenderOptions(40, 40))

    img = Image.open(io.BytesIO(out))
    assert img.format == "JPEG"
    assert img.size == (40, 40)
    # The crop is the red right half.
    r, g, b = img.convert("RGB").getpixel((20, 20))
    assert r > 200 and g < 60 and b < 60


def test_pillow_renderer_auto_orients_after_resize_and_strips_metadata() -> None:
    exif = Image.Exif()
    exif[0x0112] = 6
    icc = ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB")).tobytes()
    source = _jpeg_bytes(exif=exif.tobytes(), icc_profile=icc)

    out = PillowRenderer().render(source, _result(0, 0, 150, 100), RenderOptions(60, 40))

    img = Image.open(io.BytesIO(out))
    assert img.size == (40, 60)
    assert img.getexif().get(0x0112) is None
    assert "icc_profile" not in img.info


def test_pillow_renderer_writes_requested_format() -> None:
    out = PillowRenderer().render(
        _jpeg_bytes(), _result(0, 0, 100, 100), RenderOptions(32, 32, quality=None, output_format="png")
    )

    assert Image.open(io.BytesIO(out)).format == "PNG"


def test_pillow_renderer_rejects_undecodable_source() -> None:
    with pytest.raises(RenderError):
        PillowRenderer().render(b"not an image", _result(0, 0, 10, 10), RenderOptions(5, 5))


def test_magick_command_follows_pipeline_order() -> None:
    cmd = MagickRenderer(command=["magick"]).build_command(_result(10, 20, 300, 200), RenderOptions(150, 100))

    assert cmd == [
        "magick",
        "-",
        "-crop",
        "300x200+10+20",
        "+repage",
        "-resize",
        "150x100!",
        "-unsharp",
        "2x0.5+1+0.008",
        "-colorspace",
        "sRGB",
        "-auto-orient",
        "-strip",
        "-quality",
        "90",
        "jpg:-",
    ]


def test_magick_command_skips_quality_when_unset() -> None:
    cmd = MagickRenderer(command=["convert"]).build_command(
        _result(0, 0, 10, 10), RenderOptions(5, 5, quality=None, output_format="png")
    )

    assert "-quality" not in cmd
    assert cmd[-1] == "png:-"


def test_magick_renderer_streams_stdin_to_stdout(monkeypatch) -> None:
    seen = {}

    def fake_run(cmd, input=None, capture_output=False):
        seen["cmd"] = cmd
        seen["input"] = input
        return subprocess.CompletedProcess(cmd, 0, stdout=b"rendered", stderr=b"")

    monkeypatch.setattr(render.subprocess, "run", fake_run)

    out = MagickRenderer(command=["magick"]).render(b"source", _result(0, 0, 10, 10), RenderOptions(5, 5))

    assert out == b"rendered"
    assert seen["input"] == b"source"
    assert seen["cmd"][0] == "magick"


def test_magick_renderer_raises_on_failure(monkeypatch) -> None:
    monkeypatch.setattr(
        render.subprocess,
        "run",
        lambda cmd, input=None, capture_output=False: subprocess.CompletedProcess(
            cmd, 1, stdout=b"", stderr=b"convert: no decode delegate"
        ),
    )

    with pytest.raises(RenderError, match="no decode delegate"):
        MagickRenderer(command=["magick"]).render(b"x", _result(0, 0, 10, 10), RenderOptions(5, 5))


def test_missing_imagemagick_is_a_render_error(monkeypatch) -> None:
    monkeypatch.setattr(render.shutil, "which", lambda name: None)

    with pytest.raises(RenderError, match="ImageMagick"):
        MagickRenderer().render(b"x", _result(0, 0, 10, 10), RenderOptions(5, 5))


def test_get_renderer_rejects_unknown_backend() -> None:
    assert isinstance(get_renderer("pillow"), PillowRenderer)
    with pytest.raises(InvalidConfigError):
        get_renderer("gimp")
