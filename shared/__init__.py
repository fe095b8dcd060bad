"""
Shared infrastructure: execution context, errors, object storage.
"""
from .context import NodeContext
from .errors import (
    DraftingError,
    ConfigurationError,
    ModelUnavailable,
    NoModelAvailable,
    UpstreamError,
    MalformedOutput,
    ImageGenerationFailure,
)
from .storage import InlineStorage, LocalStorage, generate_file_name, get_storage

__all__ = [
    "NodeContext",
    "DraftingError",
    "ConfigurationError",
    "ModelUnavailable",
    "NoModelAvailable",
    "UpstreamError",
    "MalformedOutput",
    "ImageGenerationFailure",
    "InlineStorage",
    "LocalStorage",
    "generate_file_name",
    "get_storage",
]
