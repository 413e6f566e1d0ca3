#!/usr/bin/env python3
"""
cropwise - content-aware cropping from the command line.

Analyses FILE, prints the chosen crop as JSON and, when OUTPUT plus a target
width and height are given, renders the thumbnail:

    crop -> resize -> unsharp -> sRGB -> auto-orient -> strip -> quality

FILE and OUTPUT may be '-' for stdin/stdout (the JSON is not printed when the
image goes to stdout).

Usage:
    cropwise photo.jpg --width 300 --height 300
    cropwise photo.jpg thumb.jpg --width 300 --height 300 --face-detection
    cat photo.jpg | cropwise - - --width 640 --height 360 > thumb.jpg
    cropwise photo.jpg --aspect 16:9 --debug --debug-file overlay.png
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from cropwise import __version__
from cropwise.boost import BoostRegion, PROVIDERS, get_provider, parse_boost
from cropwise.engine import smart_crop
from cropwise.errors import CropError, InvalidConfigError, RenderError
from cropwise.features import extract_channels
from cropwise.loader import STDIO_MARKER, load_image
from cropwise.options import (
    CropOptions,
    RenderOptions,
    load_config_file,
    options_from_mapping,
    resolve_workers,
)
from cropwise.render import RENDERERS, get_renderer
from cropwise.sampler import downsample
from cropwise.visualize import render_debug_overlay, save_debug_image

# CLI flag -> CropOptions field
ENGINE_FLAGS = {
    "analysis_size": "analysis_max_dimension",
    "min_scale": "min_scale",
    "max_scale": "max_scale",
    "scale_step": "scale_step",
    "step": "step",
    "detail_weight": "detail_weight",
    "skin_weight": "skin_weight",
    "saturation_weight": "saturation_weight",
    "boost_weight": "boost_weight",
    "outside_penalty": "outside_penalty",
    "thirds_weight": "thirds_weight",
    "center_weight": "center_weight",
    "boring_weight": "boring_weight",
    "edge_weight": "edge_weight",
    "workers": "workers",
}


def parse_aspect(value) -> Optional[float]:
    """'16:9', '1.5' or a number -> width / height."""
    if value is None:
        return None
    text = str(value).strip()
    try:
        if ":" in text:
            w_str, h_str = text.split(":")
            w, h = float(w_str), float(h_str)
        else:
            w, h = float(text), 1.0
    except ValueError:
        raise InvalidConfigError(f"Invalid aspect ratio {text!r}; use W:H or a number", "aspect", value) from None
    if w <= 0 or h <= 0:
        raise InvalidConfigError(f"Aspect ratio must be positive, got {text!r}", "aspect", value)
    return w / h


def _pop(config: dict, *keys, default=None):
    """Remove the first present key (camelCase or snake_case) and return its value."""
    value = default
    found = False
    for key in keys:
        if key in config:
            v = config.pop(key)
            if not found:
                value, found = v, True
    return value


def _as_int(name: str, value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"{name} must be an integer, got {value!r}", name, value) from None


def _config_boosts(raw) -> list[BoostRegion]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidConfigError("Config 'boost' must be a list of regions", "boost", raw)
    boosts = []
    for item in raw:
        if isinstance(item, dict):
            boosts.append(BoostRegion.from_mapping(item))
        else:
            boosts.append(parse_boost(str(item)))
    return boosts


def detect_boosts(image, model: str) -> list[BoostRegion]:
    """Run a detector; a failing detector only costs its boosts."""
    if model not in PROVIDERS:
        raise InvalidConfigError(
            f"Unknown detector model {model!r}; choose from {', '.join(sorted(PROVIDERS))}",
            "model",
            model,
        )
    try:
        provider = get_provider(model)
        found = provider.detect(image)
    except Exception as e:
        print(f"  ⚠ {model} detection failed, continuing without boosts: {e}", file=sys.stderr)
        return []
    print(f"  👤 {model}: {len(found)} region(s) detected", file=sys.stderr)
    return found


def run_crop(
    *,
    input_path: str,
    output_path: Optional[str],
    width: Optional[int],
    height: Optional[int],
    aspect: Optional[float],
    options: CropOptions,
    boosts: Sequence[BoostRegion],
    face_detection: bool,
    model: str,
    quality: Optional[int],
    output_format: str,
    renderer: str,
    debug_file: Optional[str],
) -> dict:
    """Analyse one image, print the JSON result and render OUTPUT if asked."""
    image, source_bytes = load_image(input_path)

    boosts = list(boosts)
    if face_detection:
        boosts += detect_boosts(image, model)

    result = smart_crop(image, width, height, aspect=aspect, boosts=boosts, options=options)
    data = result.to_dict()

    if output_path != STDIO_MARKER:
        print(json.dumps(data, indent=2))

    if debug_file:
        buffer = downsample(image, options.analysis_max_dimension)
        channels = extract_channels(buffer, options)
        path = save_debug_image(Path(debug_file), render_debug_overlay(buffer, channels, result, boosts))
        print(f"  🖼️  Debug overlay saved to {path}", file=sys.stderr)

    if output_path and width and height:
        render_opts = RenderOptions(
            width=int(width), height=int(height), quality=quality, output_format=output_format
        )
        rendered = get_renderer(renderer).render(source_bytes, result, render_opts)
        if output_path == STDIO_MARKER:
            sys.stdout.buffer.write(rendered)
            sys.stdout.buffer.flush()
        else:
            Path(output_path).write_bytes(rendered)
            print(f"  💾 Saved {output_path}", file=sys.stderr)

    return data


class _HelpOnErrorArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help text on parse errors."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(2, f"\n{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _HelpOnErrorArgumentParser(
        prog="cropwise",
        description="Find the best crop of an image and optionally render a thumbnail.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s photo.jpg --width 300 --height 300
  %(prog)s photo.jpg thumb.jpg --width 300 --height 300 --face-detection
  %(prog)s - - --width 640 --height 360 < photo.jpg > thumb.jpg
  %(prog)s photo.jpg --aspect 16:9 --boost 120,40,200,200,2.0
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("input", help="Input image path, or '-' for stdin")
    parser.add_argument("output", nargs="?", help="Output image path, or '-' for stdout")
    parser.add_argument("--config", help="JSON file with options (CLI flags take precedence)")
    parser.add_argument("--width", type=int, help="Target width")
    parser.add_argument("--height", type=int, help="Target height")
    parser.add_argument("--aspect", help="Target aspect ratio as W:H or a number (instead of a size)")
    parser.add_argument(
        "--face-detection",
        dest="face_detection",
        action="store_true",
        default=None,
        help="Detect faces/subjects and boost them",
    )
    parser.add_argument(
        "--model",
        choices=sorted(PROVIDERS),
        default=None,
        help="Detector for --face-detection (default: haar)",
    )
    parser.add_argument(
        "--boost",
        action="append",
        default=[],
        metavar="X,Y,W,H[,WEIGHT]",
        help="Region to keep in the crop, in source pixels (repeatable)",
    )
    parser.add_argument("--quality", type=int, help="Output quality (default: 90)")
    parser.add_argument("--output-format", dest="output_format", help="Output format (default: jpg)")
    parser.add_argument(
        "--renderer",
        choices=sorted(RENDERERS),
        default=None,
        help="Rendering backend (default: pillow)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Include the score grid in the JSON and print diagnostics to stderr",
    )
    parser.add_argument("--debug-file", dest="debug_file", help="Write a channel overlay image here")

    engine = parser.add_argument_group("engine options")
    engine.add_argument("--analysis-size", type=int, help="Longest side of the analysis copy (default: 256)")
    engine.add_argument("--min-scale", type=float, help="Smallest crop scale (default: 0.9)")
    engine.add_argument("--max-scale", type=float, help="Largest crop scale (default: 1.0)")
    engine.add_argument("--scale-step", type=float, help="Scale multiplier between sizes (default: 0.95)")
    engine.add_argument("--step", type=int, help="Position step in analysis pixels (default: 8)")
    engine.add_argument("--detail-weight", type=float, help="Edge detail weight (default: 1.0)")
    engine.add_argument("--skin-weight", type=float, help="Skin weight (default: 0.6)")
    engine.add_argument("--saturation-weight", type=float, help="Saturation weight (default: 0.3)")
    engine.add_argument("--boost-weight", type=float, help="Boost region weight (default: 10.0)")
    engine.add_argument("--outside-penalty", type=float, help="Penalty for content left out (default: 0.5)")
    engine.add_argument("--thirds-weight", type=float, help="Rule-of-thirds weight (default: 0.1)")
    engine.add_argument("--center-weight", type=float, help="Centering weight (default: 0.02)")
    engine.add_argument("--boring-weight", type=float, help="Low-detail area penalty (default: 0.15)")
    engine.add_argument("--edge-weight", type=float, help="Cut-through-content penalty (default: 0.3)")
    engine.add_argument(
        "--workers",
        type=int,
        help="Threads for candidate scoring (default from CROPWISE_WORKERS or 1)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = dict(load_config_file(Path(args.config))) if args.config else {}

        width = args.width if args.width is not None else _pop(config, "width")
        height = args.height if args.height is not None else _pop(config, "height")
        aspect = args.aspect if args.aspect is not None else _pop(config, "aspect")
        quality = args.quality if args.quality is not None else _pop(config, "quality", default=90)
        output_format = args.output_format or _pop(config, "outputFormat", "output_format", default="jpg")
        face_detection = args.face_detection or bool(
            _pop(config, "faceDetection", "face_detection", default=False)
        )
        model = args.model or _pop(config, "model", default="haar")
        renderer = args.renderer or _pop(config, "renderer", default="pillow")
        debug_file = args.debug_file or _pop(config, "debugFile", "debug_file")
        config_boosts = _config_boosts(_pop(config, "boost", "boosts"))
        for key in (
            "width",
            "height",
            "aspect",
            "quality",
            "outputFormat",
            "output_format",
            "faceDetection",
            "face_detection",
            "model",
            "renderer",
            "debugFile",
            "debug_file",
        ):
            config.pop(key, None)

        if "workers" not in config:
            config["workers"] = resolve_workers()
        options = options_from_mapping(config)
        overrides = {field: getattr(args, flag) for flag, field in ENGINE_FLAGS.items()}
        if args.debug:
            overrides["debug"] = True
        options = options_from_mapping(overrides, base=options).validate()

        run_crop(
            input_path=args.input,
            output_path=args.output,
            width=_as_int("width", width),
            height=_as_int("height", height),
            aspect=parse_aspect(aspect),
            options=options,
            boosts=config_boosts + [parse_boost(b) for b in args.boost],
            face_detection=face_detection,
            model=model,
            quality=_as_int("quality", quality),
            output_format=str(output_format),
            renderer=renderer,
            debug_file=debug_file,
        )
    except (CropError, RenderError) as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
