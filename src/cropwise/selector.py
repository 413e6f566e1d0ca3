"""Candidate selector: sweep scales and positions, keep the best candidate."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np

from cropwise.errors import NoValidCropError
from cropwise.options import CropOptions
from cropwise.scoring import CropCandidate, ScoreBreakdown, ScoringContext, breakdown_at, evaluate


@dataclass(frozen=True)
class ScoreGrid:
    """Total score of every position evaluated at one scale."""

    scale: float
    xs: np.ndarray
    ys: np.ndarray
    scores: np.ndarray  # shape (len(ys), len(xs))

    def to_dict(self) -> dict:
        return {
            "scale": self.scale,
            "x": [int(v) for v in self.xs],
            "y": [int(v) for v in self.ys],
            "scores": [[float(v) for v in row] for row in self.scores],
        }


@dataclass(frozen=True)
class SearchOutcome:
    best: CropCandidate
    grid: Optional[ScoreGrid]
    evaluated: int


@dataclass(frozen=True)
class _ScaleResult:
    scale: float
    width: int
    height: int
    x: int
    y: int
    total: float
    breakdown: ScoreBreakdown
    grid: ScoreGrid


def candidate_scales(options: CropOptions) -> list[float]:
    """max_scale, then geometric steps down while still >= min_scale."""
    scales = [options.max_scale]
    if options.min_scale < options.max_scale:
        s = options.max_scale * options.scale_step
        while s >= options.min_scale:
            scales.append(s)
            s *= options.scale_step
    return scales


def largest_source_crop(source_width: int, source_height: int, aspect_ratio: float) -> tuple[int, int]:
    """Largest (width, height) with the target aspect that fits the source."""
    if source_width / source_height > aspect_ratio:
        return int(round(source_height * aspect_ratio)), source_height
    return source_width, int(round(source_width / aspect_ratio))


def positions(slack: int, step: int) -> np.ndarray:
    """0, step, 2*step, ... plus the last feasible offset."""
    pos = list(range(0, slack + 1, step))
    if pos[-1] != slack:
        pos.append(slack)
    return np.asarray(pos, dtype=np.int64)


def candidate_sizes(
    bounds: tuple[int, int],
    aspect_ratio: float,
    options: CropOptions,
    source_size: tuple[int, int],
) -> list[tuple[float, int, int]]:
    """(scale, width, height) in analysis pixels for every feasible scale.

    `bounds` is the analysis raster size; it is known before any pixel work.
    """
    bound_w, bound_h = bounds
    src_w, src_h = source_size
    crop_w, crop_h = largest_source_crop(src_w, src_h, aspect_ratio)
    scale_x = src_w / bound_w
    scale_y = src_h / bound_h

    sizes = []
    attempted = []
    for s in candidate_scales(options):
        w = min(bound_w, int(round(crop_w * s / scale_x)))
        h = min(bound_h, int(round(crop_h * s / scale_y)))
        attempted.append((w, h))
        if w >= 1 and h >= 1:
            sizes.append((s, w, h))

    if not sizes:
        raise NoValidCropError(
            f"No crop of aspect {aspect_ratio:.4g} fits the {bound_w}x{bound_h} "
            f"analysis raster (attempted {attempted})",
            attempted=attempted,
            bounds=(bound_w, bound_h),
        )
    return sizes


def iter_candidates(
    context: ScoringContext,
    aspect_ratio: float,
    options: CropOptions,
    source_size: tuple[int, int],
) -> Iterator[CropCandidate]:
    """Yield unscored candidates in sweep order (scale, then y, then x)."""
    for s, w, h in candidate_sizes((context.width, context.height), aspect_ratio, options, source_size):
        for y in positions(context.height - h, options.step):
            for x in positions(context.width - w, options.step):
                yield CropCandidate(int(x), int(y), w, h, s)


def _evaluate_scale(context: ScoringContext, scale: float, width: int, height: int) -> _ScaleResult:
    xs = positions(context.width - width, context.options.step)
    ys = positions(context.height - height, context.options.step)
    gx, gy = np.meshgrid(xs, ys, indexing="xy")
    scores = evaluate(gx.ravel(), gy.ravel(), width, height, context)

    totals = scores["total"]
    idx = int(np.argmax(totals))
    return _ScaleResult(
        scale=scale,
        width=width,
        height=height,
        x=int(gx.ravel()[idx]),
        y=int(gy.ravel()[idx]),
        total=float(totals[idx]),
        breakdown=breakdown_at(scores, idx),
        grid=ScoreGrid(scale=scale, xs=xs, ys=ys, scores=totals.reshape(len(ys), len(xs))),
    )


def search(
    context: ScoringContext,
    aspect_ratio: float,
    options: CropOptions,
    source_size: tuple[int, int],
    debug: bool = False,
) -> SearchOutcome:
    """Evaluate every candidate and return the best one.

    Scales are reduced in generation order with a strict comparison, and
    np.argmax keeps the first maximum inside a scale, so ties go to the larger
    scale, then the smaller y, then the smaller x.  Running the scales on a
    thread pool does not change the outcome.
    """
    sizes = candidate_sizes((context.width, context.height), aspect_ratio, options, source_size)

    def run(size):
        return _evaluate_scale(context, *size)

    if options.workers > 1 and len(sizes) > 1:
        with ThreadPoolExecutor(max_workers=min(options.workers, len(sizes))) as pool:
            results = list(pool.map(run, sizes))
    else:
        results = [run(size) for size in sizes]

    best: Optional[_ScaleResult] = None
    for result in results:
        if best is None or result.total > best.total:
            best = result

    return SearchOutcome(
        best=CropCandidate(best.x, best.y, best.width, best.height, best.scale, best.breakdown),
        grid=results[-1].grid if debug else None,
        evaluated=sum(r.grid.scores.size for r in results),
    )


def select_best(
    context: ScoringContext,
    aspect_ratio: float,
    options: CropOptions,
    source_size: tuple[int, int],
) -> CropCandidate:
    return search(context, aspect_ratio, options, source_size).best
