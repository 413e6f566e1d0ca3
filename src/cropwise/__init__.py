"""cropwise: saliency-based smart cropping."""

__version__ = "1.0.0"

from cropwise.assembler import CropRect, CropResult
from cropwise.boost import BoostRegion
from cropwise.engine import crop_many, smart_crop
from cropwise.errors import (
    CropError,
    InvalidConfigError,
    InvalidImageError,
    NoValidCropError,
    RenderError,
)
from cropwise.options import CropOptions, RenderOptions

__all__ = [
    "__version__",
    "BoostRegion",
    "CropError",
    "CropOptions",
    "CropRect",
    "CropResult",
    "InvalidConfigError",
    "InvalidImageError",
    "NoValidCropError",
    "RenderError",
    "RenderOptions",
    "crop_many",
    "smart_crop",
]
