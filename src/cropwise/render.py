"""Renderers: crop -> resize -> unsharp -> sRGB -> auto-orient -> strip -> quality."""

import io
import shutil
import subprocess
import sys
from typing import Optional, Protocol

from PIL import Image, ImageCms, ImageFilter

from cropwise.assembler import CropResult
from cropwise.errors import InvalidConfigError, RenderError
from cropwise.options import RenderOptions

_PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "tif": "TIFF",
    "tiff": "TIFF",
    "bmp": "BMP",
    "gif": "GIF",
}

_QUALITY_FORMATS = {"JPEG", "WEBP"}

_EXIF_ORIENTATION_TAG = 0x0112
_ORIENTATION_TRANSPOSE = {
    2: Image.Transpose.FLIP_LEFT_RIGHT,
    3: Image.Transpose.ROTATE_180,
    4: Image.Transpose.FLIP_TOP_BOTTOM,
    5: Image.Transpose.TRANSPOSE,
    6: Image.Transpose.ROTATE_270,
    7: Image.Transpose.TRANSVERSE,
    8: Image.Transpose.ROTATE_90,
}


class Renderer(Protocol):
    name: str

    def render(self, source_bytes: bytes, result: CropResult, options: RenderOptions) -> bytes: ...


def _unsharp_params(setting: str) -> tuple[float, int, int]:
    """ImageMagick 'RxS+gain+threshold' to Pillow UnsharpMask(radius, percent, threshold)."""
    try:
        geometry, gain, threshold = setting.split("+")
        _, sigma = geometry.split("x")
        return float(sigma), int(round(float(gain) * 100)), int(round(float(threshold) * 255))
    except ValueError as e:
        raise InvalidConfigError(f"Invalid unsharp setting {setting!r}", "unsharp", setting) from e


class PillowRenderer:
    """In-process rendering with Pillow."""

    name = "pillow"

    def render(self, source_bytes: bytes, result: CropResult, options: RenderOptions) -> bytes:
        fmt = _PIL_FORMATS.get(options.output_format.lower(), options.output_format.upper())
        try:
            img = Image.open(io.BytesIO(source_bytes))
            img.load()
        except (OSError, Image.DecompressionBombError) as e:
            raise RenderError(f"Could not open source image: {e}") from e

        orientation = img.getexif().get(_EXIF_ORIENTATION_TAG, 1)
        icc_profile = img.info.get("icc_profile")
        if img.mode not in ("RGB", "L", "CMYK"):
            img = img.convert("RGB")

        crop = result.top_crop
        img = img.crop((crop.x, crop.y, crop.x + crop.width, crop.y + crop.height))
        img = img.resize((options.width, options.height), Image.Resampling.LANCZOS)

        radius, percent, threshold = _unsharp_params(options.unsharp)
        if img.mode != "CMYK":
            img = img.filter(ImageFilter.UnsharpMask(radius=radius, percent=percent, threshold=threshold))

        img = self._to_srgb(img, icc_profile)

        transpose = _ORIENTATION_TRANSPOSE.get(orientation)
        if transpose is not None:
            img = img.transpose(transpose)

        img.info = {}
        save_kwargs = {}
        if options.quality is not None and fmt in _QUALITY_FORMATS:
            save_kwargs["quality"] = int(options.quality)

        out = io.BytesIO()
        try:
            img.save(out, format=fmt, **save_kwargs)
        except (KeyError, OSError, ValueError) as e:
            raise RenderError(f"Could not encode {options.output_format}: {e}") from e
        return out.getvalue()

    @staticmethod
    def _to_srgb(img: Image.Image, icc_profile: Optional[bytes]) -> Image.Image:
        if icc_profile:
            try:
                src = ImageCms.ImageCmsProfile(io.BytesIO(icc_profile))
                dst = ImageCms.createProfile("sRGB")
                return ImageCms.profileToProfile(img, src, dst, outputMode="RGB")
            except ImageCms.PyCMSError as e:
                print(f"  ⚠ Ignoring unusable ICC profile: {e}", file=sys.stderr)
        return img.convert("RGB")


def detect_magick() -> list[str]:
    magick = shutil.which("magick")
    if magick:
        return [magick]
    convert = shutil.which("convert")
    if convert:
        return [convert]
    raise RenderError("missing ImageMagick (need `magick` or `convert` on PATH)")


class MagickRenderer:
    """Stream the source through ImageMagick, stdin to stdout."""

    name = "magick"

    def __init__(self, command: Optional[list[str]] = None):
        self.command = command

    def build_command(self, result: CropResult, options: RenderOptions) -> list[str]:
        crop = result.top_crop
        cmd = list(self.command or detect_magick())
        cmd += [
            "-",
            "-crop",
            f"{crop.width}x{crop.height}+{crop.x}+{crop.y}",
            "+repage",
            "-resize",
            f"{options.width}x{options.height}!",
            "-unsharp",
            options.unsharp,
            "-colorspace",
            "sRGB",
            "-auto-orient",
            "-strip",
        ]
        if options.quality is not None:
            cmd += ["-quality", str(int(options.quality))]
        cmd.append(f"{options.output_format}:-")
        return cmd

    def render(self, source_bytes: bytes, result: CropResult, options: RenderOptions) -> bytes:
        cmd = self.build_command(result, options)
        try:
            proc = subprocess.run(cmd, input=source_bytes, capture_output=True)
        except OSError as e:
            raise RenderError(f"Could not run {cmd[0]}: {e}") from e
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise RenderError(f"{cmd[0]} exited with status {proc.returncode}: {stderr}")
        return proc.stdout


RENDERERS = {
    PillowRenderer.name: PillowRenderer,
    MagickRenderer.name: MagickRenderer,
}


def get_renderer(name: str) -> Renderer:
    try:
        return RENDERERS[name]()
    except KeyError:
        raise InvalidConfigError(
            f"Unknown renderer {name!r}; choose from {', '.join(sorted(RENDERERS))}",
            "renderer",
            name,
        ) from None
