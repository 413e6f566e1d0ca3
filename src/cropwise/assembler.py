"""Map the winning analysis-space candidate back to source pixels."""

from dataclasses import dataclass
from typing import Optional

from cropwise.scoring import CropCandidate, ScoreBreakdown
from cropwise.selector import ScoreGrid


@dataclass(frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class CropResult:
    top_crop: CropRect
    score: ScoreBreakdown
    analysis_crop: CropRect
    analysis_size: tuple[int, int]
    debug_grid: Optional[ScoreGrid] = None

    def to_dict(self) -> dict:
        """JSON shape printed by the CLI: topCrop, score and optional debugGrid."""
        data = {"topCrop": self.top_crop.to_dict(), "score": self.score.to_dict()}
        if self.debug_grid is not None:
            data["debugGrid"] = self.debug_grid.to_dict()
        return data


def _fit_aspect(width: int, height: int, aspect_ratio: float, src_w: int, src_h: int) -> tuple[int, int]:
    """Derive the smaller side from the larger one, then clamp to the source."""
    if aspect_ratio >= 1.0:
        height = int(round(width / aspect_ratio))
    else:
        width = int(round(height * aspect_ratio))

    if width > src_w:
        width = src_w
        height = int(round(width / aspect_ratio))
    if height > src_h:
        height = src_h
        width = min(src_w, int(round(height * aspect_ratio)))
    return max(1, width), max(1, height)


def finalize(
    best: CropCandidate,
    source_size: tuple[int, int],
    analysis_size: tuple[int, int],
    aspect_ratio: float,
    grid: Optional[ScoreGrid] = None,
) -> CropResult:
    src_w, src_h = source_size
    an_w, an_h = analysis_size
    sx = src_w / an_w
    sy = src_h / an_h

    width, height = _fit_aspect(
        int(round(best.width * sx)), int(round(best.height * sy)), aspect_ratio, src_w, src_h
    )
    x = min(max(int(round(best.x * sx)), 0), src_w - width)
    y = min(max(int(round(best.y * sy)), 0), src_h - height)

    return CropResult(
        top_crop=CropRect(x, y, width, height),
        score=best.score,
        analysis_crop=CropRect(best.x, best.y, best.width, best.height),
        analysis_size=(an_w, an_h),
        debug_grid=grid,
    )
