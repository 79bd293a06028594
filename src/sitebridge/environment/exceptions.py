"""Exceptions for the sitebridge rendering layer.

Exception Hierarchy:
BridgeError (base)
├── TemplateRenderError           # Engine failure wrapped with template context
│   └── AwaitableRejectedError    # An awaitable captured during render raised
└── PlaceholderResolutionError    # Placeholders could not be resolved

Jinja2's own ``TemplateSyntaxError`` and ``TemplateNotFound`` are never
wrapped. They already carry location metadata and pass through unchanged.

Error Preservation:
When normalization substitutes a new error object for the one raised by the
template, the original is kept on ``.original`` and as ``__cause__``. Host
generators that defer templates to a second pass (e.g. when a template reads
content that is not rendered yet) type-check the original via
``original_error()``:

    ```python
    try:
        html = await render(data)
    except Exception as exc:
        if isinstance(original_error(exc), ContentNotReadyError):
            queue_for_second_pass(page)
        else:
            raise
    ```

"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import NoReturn

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------


class ErrorCode(Enum):
    """Searchable error codes for sitebridge errors.

    Format: SB-{CATEGORY}-{NUMBER}
    Categories: RUN (runtime)
    """

    RENDER_ERROR = "SB-RUN-001"
    RESOLUTION_DID_NOT_CONVERGE = "SB-RUN-002"
    INCLUDE_DEPTH = "SB-RUN-003"
    ASYNC_IN_SYNC_RENDER = "SB-RUN-004"
    ORPHAN_PLACEHOLDER = "SB-RUN-005"
    AWAITABLE_REJECTED = "SB-RUN-006"

    @property
    def category(self) -> str:
        """Error category (e.g., 'runtime')."""
        prefix = self.value.split("-")[1]
        return {"RUN": "runtime"}.get(prefix, "unknown")


# ---------------------------------------------------------------------------
# Source snippets
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SourceSnippet:
    """Template source context around an error line.

    Attributes:
        lines: Tuple of (line_number, line_content) pairs around the error.
        error_line: The 1-based line number where the error occurred.
    """

    lines: tuple[tuple[int, str], ...]
    error_line: int

    def format(self) -> str:
        """Format snippet with line numbers, marking the error line with ``>``."""
        parts: list[str] = ["   |"]
        for lineno, content in self.lines:
            marker = ">" if lineno == self.error_line else " "
            parts.append(f"{marker}{lineno:>3} | {content}")
        parts.append("   |")
        return "\n".join(parts)


def build_source_snippet(
    source: str,
    error_line: int,
    *,
    context_lines: int = 2,
) -> SourceSnippet:
    """Build a SourceSnippet from template source.

    Args:
        source: Full template source text.
        error_line: 1-based line number of the error.
        context_lines: Number of lines to show before/after the error line.

    Returns:
        SourceSnippet with surrounding context lines.
    """
    all_lines = source.splitlines()
    start = max(0, error_line - 1 - context_lines)
    end = min(len(all_lines), error_line + context_lines)
    lines = tuple((i + 1, all_lines[i]) for i in range(start, end))
    return SourceSnippet(lines=lines, error_line=error_line)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BridgeError(Exception):
    """Base exception for all sitebridge errors.

    Attributes:
        code: Optional ErrorCode for searchable error identification.
    """

    code: ErrorCode | None = None

    def format_compact(self) -> str:
        """Format error as a one-line-per-fact summary without traceback noise."""
        header = str(self)
        if self.code and self.code.value not in header:
            header = f"{self.code.value}: {header}"
        return header


class TemplateRenderError(BridgeError):
    """Render-time error with template context.

    Raised when the engine fails while evaluating a template, or when the
    render entry point is misused. When it stands in for another error,
    ``original`` references the error that was actually raised.

    Output Format:
            ```
            Render Error: ZeroDivisionError: integer division or modulo by zero
              Location: page.jinja:2
               |
               1 | <h1>{{ title }}</h1>
            >  2 | <p>{{ total // count }}</p>
               |
            ```

    Attributes:
        message: Error description
        template_name: Name of the template
        lineno: Line number in template source
        source_snippet: Surrounding template lines
        original: The error this one wraps, if any
    """

    code: ErrorCode | None = ErrorCode.RENDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        template_name: str | None = None,
        lineno: int | None = None,
        source_snippet: SourceSnippet | None = None,
        original: BaseException | None = None,
        code: ErrorCode | None = None,
    ):
        self.message = message
        self.template_name = template_name
        self.lineno = lineno
        self.source_snippet = source_snippet
        self.original = original
        if code is not None:
            self.code = code
        super().__init__(self._format_message())

    def _location(self) -> str:
        loc = self.template_name or "<template>"
        if self.lineno:
            loc += f":{self.lineno}"
        return loc

    def _format_message(self) -> str:
        parts = [f"Render Error: {self.message}"]

        if self.template_name or self.lineno:
            parts.append(f"  Location: {self._location()}")

        if self.source_snippet:
            parts.append(self.source_snippet.format())

        if self.original is not None:
            parts.append(f"  Caused by: {type(self.original).__name__}")

        return "\n".join(parts)

    def format_compact(self) -> str:
        code_prefix = f"{self.code.value}: " if self.code else ""
        return f"{code_prefix}{self.message} ({self._location()})"


class AwaitableRejectedError(TemplateRenderError):
    """An awaitable captured during rendering raised instead of resolving.

    The failure is attributed to the callable that produced the awaitable,
    e.g. an async shortcode:

            ```
            Render Error: awaitable 'fetch_avatar' failed: ConnectionError: timed out
              Location: profile.jinja
              Caused by: ConnectionError
            ```

    Attributes:
        label: Name of the awaitable (usually the coroutine function)
    """

    code: ErrorCode | None = ErrorCode.AWAITABLE_REJECTED

    def __init__(
        self,
        label: str,
        original: BaseException,
        *,
        template_name: str | None = None,
    ):
        self.label = label
        detail = str(original).strip() or "(no details available)"
        super().__init__(
            f"awaitable '{label}' failed: {type(original).__name__}: {detail}",
            template_name=template_name,
            original=original,
        )


class PlaceholderResolutionError(BridgeError):
    """Deferred placeholders could not be resolved into final output.

    Raised when resolution keeps producing new awaitables past the round
    limit, or when tokens remain that no pending awaitable accounts for.
    """

    code: ErrorCode | None = ErrorCode.RESOLUTION_DID_NOT_CONVERGE

    def __init__(
        self,
        message: str,
        *,
        template_name: str | None = None,
        rounds: int = 0,
        code: ErrorCode | None = None,
    ):
        self.message = message
        self.template_name = template_name
        self.rounds = rounds
        if code is not None:
            self.code = code
        location = template_name or "<template>"
        super().__init__(f"{message} in {location} after {rounds} round(s)")


# ---------------------------------------------------------------------------
# Normalization outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Passthrough:
    """Normalization re-raised the original error object unchanged."""

    error: BaseException

    def reraise(self) -> NoReturn:
        raise self.error


@dataclass(frozen=True, slots=True)
class Wrapped:
    """Normalization substituted ``error`` for ``original``."""

    error: BaseException
    original: BaseException

    def reraise(self) -> NoReturn:
        self.error.original = self.original  # type: ignore[attr-defined]
        raise self.error from self.original


def classify_error(original: BaseException, raised: BaseException) -> Passthrough | Wrapped:
    """Tag a normalization result as a passthrough or a wrap of ``original``."""
    if raised is original:
        return Passthrough(raised)
    return Wrapped(raised, original)


def original_error(error: BaseException) -> BaseException:
    """Return the innermost error preserved through ``.original`` links.

    Example:
        >>> err = TemplateRenderError("boom", original=KeyError("x"))
        >>> original_error(err)
        KeyError('x')
    """
    seen: set[int] = set()
    while id(error) not in seen:
        seen.add(id(error))
        inner = getattr(error, "original", None)
        if not isinstance(inner, BaseException):
            break
        error = inner
    return error
