"""Error taxonomy shared by the engine, the renderers and the CLI."""

from typing import Optional


class CropError(ValueError):
    """Base class for every error the crop engine raises."""


class InvalidImageError(CropError):
    """Source image is empty, malformed or in an unsupported layout."""


class InvalidConfigError(CropError):
    """Caller-supplied parameters are inconsistent or out of range."""

    def __init__(self, message: str, parameter: Optional[str] = None, value: object = None):
        super().__init__(message)
        self.parameter = parameter
        self.value = value


class NoValidCropError(CropError):
    """The candidate search space was empty."""

    def __init__(
        self,
        message: str,
        attempted: Optional[list[tuple[int, int]]] = None,
        bounds: Optional[tuple[int, int]] = None,
    ):
        super().__init__(message)
        self.attempted = attempted or []
        self.bounds = bounds


class RenderError(RuntimeError):
    """The final crop/resize/encode pipeline failed."""
