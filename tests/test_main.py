import io
import json
import sys

import cv2
import numpy as np
import pytest
from PIL import Image

import cropwise.cli as cli
from cropwise import __version__
from cropwise.boost import BoostRegion
from cropwise.errors import InvalidConfigError
from cropwise.options import CropOptions


def _write_test_image(path, width: int = 320, height: int = 240) -> None:
    """Noise background with a bright subject box."""
    rng = np.random.default_rng(0)
    img = rng.integers(0, 60, size=(height, width, 3), dtype=np.uint8)
    cv2.rectangle(img, (40, 60), (140, 200), (255, 255, 255), -1)
    cv2.imwrite(str(path), img)


def test_version() -> None:
    assert __version__ == "1.0.0"


def test_main_parses_cli_and_invokes_run_crop(monkeypatch, tmp_path) -> None:
    captured = {}

    def fake_run_crop(**kwargs):
        captured.update(kwargs)
        return {}

    monkeypatch.delenv("CROPWISE_WORKERS", raising=False)
    monkeypatch.setattr(cli, "run_crop", fake_run_crop)
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "cropwise",
            "in.jpg",
            "out.jpg",
            "--width",
            "300",
            "--height",
            "200",
            "--boost",
            "10,20,30,40,2",
            "--face-detection",
            "--model",
            "yunet",
            "--quality",
            "80",
            "--output-format",
            "png",
            "--renderer",
            "magick",
            "--min-scale",
            "0.8",
            "--step",
            "4",
            "--debug",
        ],
    )

    cli.main()

    assert captured == {
        "input_path": "in.jpg",
        "output_path": "out.jpg",
        "width": 300,
        "height": 200,
        "aspect": None,
        "options": CropOptions(min_scale=0.8, step=4, debug=True),
        "boosts": [BoostRegion(10, 20, 30, 40, 2.0)],
        "face_detection": True,
        "model": "yunet",
        "quality": 80,
        "output_format": "png",
        "renderer": "magick",
        "debug_file": None,
    }


def test_cli_flags_override_config_file(monkeypatch, tmp_path) -> None:
    config = tmp_path / "config.json"
    config.write_text(
        json.dumps(
            {
                "width": 100,
                "height": 50,
                "aspect": "4:3",
                "quality": 70,
                "minScale": 0.85,
                "step": 16,
                "faceDetection": True,
                "boost": [{"x": 1, "y": 2, "width": 3, "height": 4}],
            }
        ),
        encoding="utf-8",
    )
    captured = {}
    monkeypatch.setenv("CROPWISE_WORKERS", "3")
    monkeypatch.setattr(cli, "run_crop", lambda **kwargs: captured.update(kwargs))

    cli.main(["in.jpg", "--config", str(config), "--step", "4", "--width", "120"])

    assert captured["width"] == 120
    assert captured["height"] == 50
    assert captured["aspect"] == pytest.approx(4 / 3)
    assert captured["quality"] == 70
    assert captured["face_detection"] is True
    assert captured["boosts"] == [BoostRegion(1, 2, 3, 4, 1.0)]
    assert captured["options"].min_scale == 0.85
    assert captured["options"].step == 4
    assert captured["options"].workers == 3


def test_unknown_config_key_exits_with_error(tmp_path, capsys) -> None:
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"ruleOfThirds": True}), encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        cli.main(["in.jpg", "--config", str(config)])

    assert exc.value.code == 1
    assert "❌" in capsys.readouterr().err


def test_main_unrecognized_argument_prints_full_help(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["cropwise", "in.jpg", "--bogus"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 2
    stderr = capsys.readouterr().err
    assert "options:" in stderr
    assert "--face-detection" in stderr
    assert "--outside-penalty" in stderr
    assert "error: unrecognized arguments: --bogus" in stderr


def test_main_missing_input_prints_full_help(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["cropwise"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 2
    stderr = capsys.readouterr().err
    assert "usage:" in stderr
    assert "error: the following arguments are required: input" in stderr


@pytest.mark.parametrize("text, expected", [("16:9", 16 / 9), ("1.5", 1.5), (2, 2.0), (" 4:3 ", 4 / 3)])
def test_parse_aspect(text, expected) -> None:
    assert cli.parse_aspect(text) == pytest.approx(expected)


def test_parse_aspect_passes_through_missing_value() -> None:
    assert cli.parse_aspect(None) is None


@pytest.mark.parametrize("text", ["wide", "0:1", "16:-9", "1:2:3"])
def test_parse_aspect_rejects_bad_ratios(text) -> None:
    with pytest.raises(InvalidConfigError):
        cli.parse_aspect(text)


def test_main_prints_json_for_image_file(tmp_path, capsys) -> None:
    src = tmp_path / "source.png"
    _write_test_image(src)

    cli.main([str(src), "--width", "100", "--height", "100"])

    data = json.loads(capsys.readouterr().out)
    crop = data["topCrop"]
    assert crop["width"] == crop["height"] <= 240
    assert crop["x"] + crop["width"] <= 320
    assert set(data["score"]) >= {"detail", "boost", "total"}


def test_main_streams_stdin_to_stdout_without_json(monkeypatch, tmp_path) -> None:
    src = tmp_path / "source.png"
    _write_test_image(src)
    stdin = io.TextIOWrapper(io.BytesIO(src.read_bytes()))
    stdout = io.TextIOWrapper(io.BytesIO())
    monkeypatch.setattr(sys, "stdin", stdin)
    monkeypatch.setattr(sys, "stdout", stdout)

    cli.main(["-", "-", "--width", "64", "--height", "36"])

    stdout.flush()
    written = stdout.buffer.getvalue()
    assert written.startswith(b"\xff\xd8")
    assert b"topCrop" not in written
    assert Image.open(io.BytesIO(written)).size == (64, 36)


def test_main_renders_output_and_debug_overlay(tmp_path, capsys) -> None:
    src = tmp_path / "source.png"
    out = tmp_path / "thumb.jpg"
    overlay = tmp_path / "debug" / "overlay.png"
    _write_test_image(src)

    cli.main([str(src), str(out), "--width", "64", "--height", "48", "--debug", "--debug-file", str(overlay)])

    captured = capsys.readouterr()
    assert "debugGrid" in json.loads(captured.out)
    assert out.exists()
    assert Image.open(out).size == (64, 48)
    assert cv2.imread(str(overlay)) is not None
    assert "Debug overlay saved" in captured.err


def test_main_detector_failure_continues_without_boosts(monkeypatch, tmp_path, capsys) -> None:
    src = tmp_path / "source.png"
    _write_test_image(src)

    def broken_provider(name, **kwargs):
        raise RuntimeError("model download blocked")

    monkeypatch.setattr(cli, "get_provider", broken_provider)

    cli.main([str(src), "--width", "1", "--height", "1", "--face-detection", "--model", "yolo"])

    captured = capsys.readouterr()
    assert "model download blocked" in captured.err
    assert json.loads(captured.out)["score"]["boost"] == 0.0


def test_main_undecodable_input_exits_with_error(tmp_path, capsys) -> None:
    src = tmp_path / "broken.jpg"
    src.write_bytes(b"definitely not an image")

    with pytest.raises(SystemExit) as exc:
        cli.main([str(src), "--width", "10", "--height", "10"])

    assert exc.value.code == 1
    assert "Could not decode" in capsys.readouterr().err
