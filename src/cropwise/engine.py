"""Public entry points: smart_crop for one image, crop_many for a batch."""

import math
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

import numpy as np
from tqdm.auto import tqdm

from cropwise.assembler import CropResult, finalize
from cropwise.boost import BoostRegion
from cropwise.errors import InvalidConfigError
from cropwise.features import extract_channels
from cropwise.options import CropOptions
from cropwise.sampler import analysis_size, downsample, image_size
from cropwise.scoring import SpatialPrior, boosts_to_array, build_context
from cropwise.selector import candidate_sizes, largest_source_crop, search


def _positive_dimension(name: str, value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"{name} must be a number, got {value!r}", name, value) from None
    if not math.isfinite(number) or number <= 0:
        raise InvalidConfigError(f"{name} must be a positive number, got {value!r}", name, value)
    return number


def resolve_aspect(width=None, height=None, aspect=None) -> float:
    """Target aspect ratio (width / height) from a size or an explicit ratio."""
    if width is not None or height is not None:
        if width is None or height is None:
            raise InvalidConfigError(
                "width and height must be given together",
                "width" if width is None else "height",
                None,
            )
        w = _positive_dimension("width", width)
        h = _positive_dimension("height", height)
        return w / h
    if aspect is None:
        raise InvalidConfigError("Either width and height or an aspect ratio is required", "aspect", None)
    return _positive_dimension("aspect", aspect)


def _check_feasible(src_w: int, src_h: int, aspect_ratio: float, options: CropOptions) -> None:
    crop_w, crop_h = largest_source_crop(src_w, src_h, aspect_ratio)
    if crop_w < 1 or crop_h < 1:
        raise InvalidConfigError(
            f"Aspect ratio {aspect_ratio:.4g} leaves no pixel in a {src_w}x{src_h} image "
            f"(largest crop {crop_w}x{crop_h})",
            "aspect",
            aspect_ratio,
        )
    min_w = int(round(crop_w * options.min_scale))
    min_h = int(round(crop_h * options.min_scale))
    if min_w < 1 or min_h < 1:
        raise InvalidConfigError(
            f"min_scale={options.min_scale} shrinks the {crop_w}x{crop_h} crop below one pixel",
            "min_scale",
            options.min_scale,
        )


def smart_crop(
    image: np.ndarray,
    width: Optional[float] = None,
    height: Optional[float] = None,
    *,
    aspect: Optional[float] = None,
    boosts: Sequence[BoostRegion] = (),
    options: Optional[CropOptions] = None,
    debug: Optional[bool] = None,
    prior: Optional[SpatialPrior] = None,
) -> CropResult:
    """
    Choose the crop of `image` that best matches the target aspect ratio.

    `image` is an HxW, HxWx1, HxWx3 (RGB) or HxWx4 (RGBA) array.  The target
    is either width and height (only their ratio matters) or `aspect`.
    Boost regions are in source pixel coordinates.

    Raises InvalidConfigError before touching any pixels when the request is
    inconsistent, InvalidImageError for unusable input and NoValidCropError
    when no candidate fits the analysis raster.
    """
    options = (options or CropOptions()).validate()
    if debug is None:
        debug = options.debug
    aspect_ratio = resolve_aspect(width, height, aspect)
    boosts = list(boosts)
    for b in boosts:
        if not isinstance(b, BoostRegion):
            raise InvalidConfigError(f"Boosts must be BoostRegion instances, got {b!r}", "boost", b)

    src_w, src_h = image_size(image)
    _check_feasible(src_w, src_h, aspect_ratio, options)
    # Analysis-raster infeasibility surfaces here, before downsampling.
    candidate_sizes(
        analysis_size(src_w, src_h, options.analysis_max_dimension), aspect_ratio, options, (src_w, src_h)
    )

    buffer = downsample(image, options.analysis_max_dimension)
    channels = extract_channels(buffer, options)
    boost_array = boosts_to_array(boosts, buffer.scale_x, buffer.scale_y, buffer.width, buffer.height)
    context = build_context(channels, boost_array, options, prior=prior)
    outcome = search(context, aspect_ratio, options, (src_w, src_h), debug=debug)

    result = finalize(
        outcome.best,
        (src_w, src_h),
        (buffer.width, buffer.height),
        aspect_ratio,
        grid=outcome.grid,
    )
    if debug:
        crop = result.top_crop
        print(
            f"  🔍 {src_w}x{src_h} -> analysis {buffer.width}x{buffer.height}, "
            f"{outcome.evaluated} candidates, {len(boosts)} boost(s); "
            f"crop {crop.width}x{crop.height}+{crop.x}+{crop.y} "
            f"(scale={outcome.best.scale:.4f}, score={result.score.total:.4f})",
            file=sys.stderr,
        )
    return result


def crop_many(
    images: Sequence[np.ndarray],
    width: Optional[float] = None,
    height: Optional[float] = None,
    *,
    aspect: Optional[float] = None,
    boosts: Optional[Sequence[Sequence[BoostRegion]]] = None,
    options: Optional[CropOptions] = None,
    workers: int = 1,
    progress: bool = False,
) -> list[CropResult]:
    """Run smart_crop over many images; results keep the input order."""
    images = list(images)
    if boosts is None:
        boosts = [()] * len(images)
    if len(boosts) != len(images):
        raise InvalidConfigError(
            f"Got {len(boosts)} boost lists for {len(images)} images", "boost", len(boosts)
        )

    def run(args):
        img, img_boosts = args
        return smart_crop(img, width, height, aspect=aspect, boosts=img_boosts, options=options)

    jobs = list(zip(images, boosts))
    bar = tqdm(total=len(jobs), desc="  Cropping", unit="img", disable=not progress)
    try:
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = []
                for result in executor.map(run, jobs):
                    results.append(result)
                    bar.update(1)
        else:
            results = []
            for job in jobs:
                results.append(run(job))
                bar.update(1)
    finally:
        bar.close()
    return results
