"""Engine-side support: exceptions and the template-globals registry."""

from sitebridge.environment.exceptions import (
    AwaitableRejectedError,
    BridgeError,
    ErrorCode,
    Passthrough,
    PlaceholderResolutionError,
    SourceSnippet,
    TemplateRenderError,
    Wrapped,
    build_source_snippet,
    classify_error,
    original_error,
)
from sitebridge.environment.registry import GlobalRegistry

__all__ = [
    "AwaitableRejectedError",
    "BridgeError",
    "ErrorCode",
    "GlobalRegistry",
    "Passthrough",
    "PlaceholderResolutionError",
    "SourceSnippet",
    "TemplateRenderError",
    "Wrapped",
    "build_source_snippet",
    "classify_error",
    "original_error",
]
