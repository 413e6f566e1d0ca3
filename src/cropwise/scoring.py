"""Region scorer.

Every channel the scorer looks at is turned into a summed-area table once per
image, so a candidate rectangle is scored in constant time (plus one overlap
test per boost region) no matter how large it is.

Score of a candidate:

    total = detail_weight     * detail
          + skin_weight       * skin
          + saturation_weight * saturation
          + boost_weight      * boost
          + prior                                   (rule of thirds, centering)
          - boring_weight * boring - edge_weight * edge

where each channel term is ``kept - outside_penalty * (1 - kept)`` with
``kept`` the fraction of that channel's mass inside the candidate.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import cv2
import numpy as np

from cropwise.boost import BoostRegion
from cropwise.features import FeatureChannels
from cropwise.options import CropOptions

_EPS = 1e-9


@dataclass(frozen=True)
class ScoreBreakdown:
    detail: float
    saturation: float
    skin: float
    boost: float
    prior: float
    penalty: float
    total: float

    def to_dict(self) -> dict[str, float]:
        return {
            "detail": self.detail,
            "saturation": self.saturation,
            "skin": self.skin,
            "boost": self.boost,
            "prior": self.prior,
            "penalty": self.penalty,
            "total": self.total,
        }


@dataclass(frozen=True)
class CropCandidate:
    """A crop rectangle in analysis-pixel coordinates."""

    x: int
    y: int
    width: int
    height: int
    scale: float
    score: Optional[ScoreBreakdown] = None


class SummedAreaTable:
    """Prefix sums over a 2D channel for O(1) rectangle sums."""

    def __init__(self, values: np.ndarray):
        table = cv2.integral(np.ascontiguousarray(values, dtype=np.float64), sdepth=cv2.CV_64F)
        table.setflags(write=False)
        self.table = table

    @property
    def total(self) -> float:
        return float(self.table[-1, -1])

    def region_sum(self, x0, y0, x1, y1):
        """Sum over [x0, x1) x [y0, y1); accepts scalars or index arrays."""
        t = self.table
        return t[y1, x1] - t[y0, x1] - t[y1, x0] + t[y0, x0]


class SpatialPrior(Protocol):
    def __call__(
        self,
        centroid_u: np.ndarray,
        centroid_v: np.ndarray,
        has_mass: np.ndarray,
        x0: np.ndarray,
        y0: np.ndarray,
        width: int,
        height: int,
        frame_width: int,
        frame_height: int,
    ) -> np.ndarray: ...


@dataclass(frozen=True)
class RuleOfThirdsPrior:
    """Reward saliency centred on a third line, plus a small centering term.

    The thirds term uses a Gaussian falloff on the distance between the
    saliency centroid (normalized to the candidate) and the nearest third line,
    averaged over both axes.  The centering term measures the candidate-centre
    offset from the frame centre in whole position steps, so equally centred
    candidates at different scales tie exactly.
    """

    thirds_weight: float = 0.1
    sigma: float = 0.12
    center_weight: float = 0.02
    step: int = 8

    def thirds(self, t: np.ndarray) -> np.ndarray:
        d = np.minimum(np.abs(t - 1.0 / 3.0), np.abs(t - 2.0 / 3.0))
        return np.exp(-0.5 * (d / self.sigma) ** 2)

    def __call__(self, centroid_u, centroid_v, has_mass, x0, y0, width, height, frame_width, frame_height):
        thirds = np.where(has_mass, (self.thirds(centroid_u) + self.thirds(centroid_v)) / 2.0, 0.0)

        qx = np.round(np.abs(x0 + width / 2.0 - frame_width / 2.0) / self.step)
        qy = np.round(np.abs(y0 + height / 2.0 - frame_height / 2.0) / self.step)
        center = np.clip(1.0 - (qx * self.step / frame_width + qy * self.step / frame_height), 0.0, 1.0)

        return self.thirds_weight * thirds + self.center_weight * center


@dataclass(frozen=True)
class ScoringContext:
    """Read-only tables shared by every candidate of one analysis call."""

    width: int
    height: int
    detail: SummedAreaTable
    skin: SummedAreaTable
    saturation: SummedAreaTable
    boring: SummedAreaTable
    saliency: SummedAreaTable
    saliency_x: SummedAreaTable
    saliency_y: SummedAreaTable
    boosts: np.ndarray
    options: CropOptions
    prior: SpatialPrior

    @property
    def frame_area(self) -> float:
        return float(self.width * self.height)


def boosts_to_array(
    boosts: Sequence[BoostRegion],
    scale_x: float,
    scale_y: float,
    width: int,
    height: int,
) -> np.ndarray:
    """Map source-space boosts to an (n, 5) array [x0, y0, x1, y1, weight] in analysis space."""
    rows = []
    for b in boosts:
        x0 = min(max(b.x / scale_x, 0.0), float(width))
        y0 = min(max(b.y / scale_y, 0.0), float(height))
        x1 = min(max((b.x + b.width) / scale_x, 0.0), float(width))
        y1 = min(max((b.y + b.height) / scale_y, 0.0), float(height))
        if x1 > x0 and y1 > y0:
            rows.append((x0, y0, x1, y1, float(b.weight)))
    if not rows:
        return np.zeros((0, 5), dtype=np.float64)
    arr = np.asarray(rows, dtype=np.float64)
    arr.setflags(write=False)
    return arr


def build_context(
    channels: FeatureChannels,
    boosts: np.ndarray,
    options: CropOptions,
    prior: Optional[SpatialPrior] = None,
) -> ScoringContext:
    """One linear pass over the channels; everything after this is O(1) per candidate."""
    h, w = channels.shape
    detail = channels.edge.astype(np.float64)
    saliency = np.maximum(
        0.0,
        options.detail_weight * detail
        + options.skin_weight * channels.skin
        + options.saturation_weight * channels.saturation,
    )
    xs = np.arange(w, dtype=np.float64) + 0.5
    ys = np.arange(h, dtype=np.float64) + 0.5

    if prior is None:
        prior = RuleOfThirdsPrior(
            thirds_weight=options.thirds_weight,
            sigma=options.thirds_sigma,
            center_weight=options.center_weight,
            step=options.step,
        )

    return ScoringContext(
        width=w,
        height=h,
        detail=SummedAreaTable(detail),
        skin=SummedAreaTable(channels.skin),
        saturation=SummedAreaTable(channels.saturation),
        boring=SummedAreaTable((detail < options.boring_threshold).astype(np.float64)),
        saliency=SummedAreaTable(saliency),
        saliency_x=SummedAreaTable(saliency * xs[None, :]),
        saliency_y=SummedAreaTable(saliency * ys[:, None]),
        boosts=np.asarray(boosts, dtype=np.float64).reshape(-1, 5),
        options=options,
        prior=prior,
    )


def _kept_component(table: SummedAreaTable, x0, y0, x1, y1, outside_penalty: float) -> np.ndarray:
    total = table.total
    if total <= _EPS:
        return np.zeros(x0.shape, dtype=np.float64)
    kept = np.clip(table.region_sum(x0, y0, x1, y1) / total, 0.0, 1.0)
    return kept - outside_penalty * (1.0 - kept)


def _edge_fraction(context: ScoringContext, x0, y0, x1, y1, width: int, height: int) -> np.ndarray:
    """Share of detail mass in the candidate's inner border band.

    Sides lying on the frame border do not cut anything and carry no band.
    """
    band = context.options.edge_band
    total = context.detail.total
    if total <= _EPS or band <= 0:
        return np.zeros(x0.shape, dtype=np.float64)

    bx = max(1, int(round(width * band)))
    by = max(1, int(round(height * band)))
    ix0 = np.clip(x0 + bx * (x0 > 0), 0, context.width)
    iy0 = np.clip(y0 + by * (y0 > 0), 0, context.height)
    ix1 = np.clip(x1 - bx * (x1 < context.width), 0, context.width)
    iy1 = np.clip(y1 - by * (y1 < context.height), 0, context.height)
    valid = (ix1 > ix0) & (iy1 > iy0)

    outer = context.detail.region_sum(x0, y0, x1, y1)
    inner = np.where(valid, context.detail.region_sum(ix0, iy0, ix1, iy1), 0.0)
    return np.clip((outer - inner) / total, 0.0, 1.0)


def _boost_overlap(boosts: np.ndarray, x0, y0, x1, y1) -> np.ndarray:
    """Sum of weight * overlap area (analysis pixels) per candidate."""
    if boosts.shape[0] == 0:
        return np.zeros(x0.shape, dtype=np.float64)
    bx0, by0, bx1, by1, weight = (boosts[:, i][:, None] for i in range(5))
    ow = np.clip(np.minimum(x1[None, :], bx1) - np.maximum(x0[None, :], bx0), 0.0, None)
    oh = np.clip(np.minimum(y1[None, :], by1) - np.maximum(y0[None, :], by0), 0.0, None)
    return (ow * oh * weight).sum(axis=0)


def evaluate(x0, y0, width: int, height: int, context: ScoringContext) -> dict[str, np.ndarray]:
    """Score many same-sized candidates at once; x0 and y0 are equal-length 1D arrays."""
    x0 = np.asarray(x0, dtype=np.int64).ravel()
    y0 = np.asarray(y0, dtype=np.int64).ravel()
    x1 = x0 + width
    y1 = y0 + height
    opts = context.options

    detail = _kept_component(context.detail, x0, y0, x1, y1, opts.outside_penalty)
    skin = _kept_component(context.skin, x0, y0, x1, y1, opts.outside_penalty)
    saturation = _kept_component(context.saturation, x0, y0, x1, y1, opts.outside_penalty)
    boost = _boost_overlap(context.boosts, x0, y0, x1, y1) / context.frame_area

    boring = context.boring.region_sum(x0, y0, x1, y1) / float(width * height)
    edge = _edge_fraction(context, x0, y0, x1, y1, width, height)
    penalty = opts.boring_weight * boring + opts.edge_weight * edge

    mass = context.saliency.region_sum(x0, y0, x1, y1)
    has_mass = mass > _EPS
    safe_mass = np.where(has_mass, mass, 1.0)
    centroid_u = (context.saliency_x.region_sum(x0, y0, x1, y1) / safe_mass - x0) / width
    centroid_v = (context.saliency_y.region_sum(x0, y0, x1, y1) / safe_mass - y0) / height
    prior = context.prior(
        centroid_u, centroid_v, has_mass, x0, y0, width, height, context.width, context.height
    )

    total = (
        opts.detail_weight * detail
        + opts.skin_weight * skin
        + opts.saturation_weight * saturation
        + opts.boost_weight * boost
        + prior
        - penalty
    )
    return {
        "detail": detail,
        "saturation": saturation,
        "skin": skin,
        "boost": boost,
        "prior": prior,
        "penalty": penalty,
        "total": total,
    }


def breakdown_at(scores: dict[str, np.ndarray], index: int) -> ScoreBreakdown:
    return ScoreBreakdown(**{name: float(values[index]) for name, values in scores.items()})


def score(candidate: CropCandidate, context: ScoringContext) -> ScoreBreakdown:
    """Score a single candidate (same arithmetic as the vectorised sweep)."""
    scores = evaluate([candidate.x], [candidate.y], candidate.width, candidate.height, context)
    return breakdown_at(scores, 0)
