"""
Error taxonomy for the drafting engine.

Only ConfigurationError is meant to reach callers of generate_article.
Everything else is absorbed somewhere in the pipeline and only shows up
as reduced content quality (no cover image, a generic category, ...).
"""
from typing import Optional


class DraftingError(Exception):
    """Base class for all drafting engine errors."""


class ConfigurationError(DraftingError):
    """A required credential or setting is missing. Never recovered."""


class ModelUnavailable(DraftingError):
    """The generation endpoint rejected the model as unknown or unsupported."""

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class NoModelAvailable(ModelUnavailable):
    """Fallback resolution found no callable model."""


class UpstreamError(DraftingError):
    """Any other failed upstream call (network, timeout, 5xx, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedOutput(DraftingError):
    """Model output could not be interpreted. Absorbed by the parser."""


class ImageGenerationFailure(DraftingError):
    """A single image could not be generated or uploaded."""
