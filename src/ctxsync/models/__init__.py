"""Convenience exports for ctxsync model client implementations."""

from .client import (
    GenerateOptions,
    ModelClient,
    ModelError,
    ModelResponseFormatError,
    ModelRetryError,
    ModelTransportError,
    parse_json_payload,
)
from .offline import OfflineModelClient
from .responses import ResponsesClient

__all__ = [
    "GenerateOptions",
    "ModelClient",
    "ModelError",
    "ModelResponseFormatError",
    "ModelRetryError",
    "ModelTransportError",
    "OfflineModelClient",
    "ResponsesClient",
    "parse_json_payload",
]
