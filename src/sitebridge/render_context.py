"""sitebridge RenderContext — per-render state for deferred async values.

Each invocation of the render entry point owns one RenderContext. The
context carries the pending list: awaitables captured by the escape hook
during the synchronous template pass, each standing behind a sentinel
token in the output until the placeholder resolver splices its value in.

Benefits:
    - Clean user context (no bookkeeping keys injected into template data)
    - No leakage between renders: nested invocations get a child context
      with a fresh pending list
    - Async-safe: ContextVars are task-local, so concurrent renders in
      separate tasks never see each other's lists

"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import Any

from sitebridge.placeholders import make_token, new_nonce


@dataclass(frozen=True, slots=True)
class PendingValue:
    """An awaitable deferred behind a sentinel token.

    Attributes:
        index: Token index, unique within the owning RenderContext
        awaitable: The deferred value
        raw: True if the token was embedded in a raw (unescaped) position
        label: Name of the awaitable, used in error messages
    """

    index: int
    awaitable: Any
    raw: bool
    label: str

    def discard(self) -> None:
        """Close the awaitable if it is a coroutine nobody will await."""
        if inspect.iscoroutine(self.awaitable):
            self.awaitable.close()


def _label(awaitable: Any) -> str:
    return getattr(awaitable, "__name__", None) or type(awaitable).__name__


@dataclass
class RenderContext:
    """Per-render state isolated from user context.

    Attributes:
        template_name: Current template name for error messages
        source: Template source for error snippets
        include_depth: Nesting depth of render invocations
        max_include_depth: Maximum allowed nesting depth
        pending: Awaitables waiting to be resolved, in token order
        next_index: Next token index; never reused within this context
        nonce: Token nonce owned by this context
        outer_nonces: Nonces of the enclosing renders, outermost first
        template_stack: Names of the enclosing renders, outermost first
    """

    template_name: str | None = None
    source: str | None = None

    # Nested render invocations (shortcodes rendering templates)
    include_depth: int = 0
    max_include_depth: int = 50

    pending: list[PendingValue] = field(default_factory=list)
    next_index: int = 0
    nonce: str = field(default_factory=new_nonce)
    outer_nonces: tuple[str, ...] = ()

    template_stack: list[str] = field(default_factory=list)

    def defer(self, awaitable: Any, *, raw: bool = False) -> str:
        """Record an awaitable and return the token that stands in for it."""
        index = self.next_index
        self.next_index += 1
        self.pending.append(PendingValue(index, awaitable, raw, _label(awaitable)))
        return make_token(index, self.nonce, raw=raw)

    @property
    def known_nonces(self) -> tuple[str, ...]:
        """Nonces whose tokens may legitimately appear in this render's output."""
        return (*self.outer_nonces, self.nonce)

    def drain(self) -> list[PendingValue]:
        """Remove and return every pending value, leaving the list empty."""
        batch, self.pending = self.pending, []
        return batch

    def discard_pending(self) -> None:
        """Drop every pending value, closing its awaitable."""
        for item in self.drain():
            item.discard()

    def check_include_depth(self, template_name: str | None) -> None:
        """Check if the nesting limit is exceeded.

        Raises:
            TemplateRenderError: If depth > max_include_depth
        """
        if self.include_depth > self.max_include_depth:
            from sitebridge.environment.exceptions import ErrorCode, TemplateRenderError

            chain = " -> ".join([*self.template_stack, template_name or "<template>"])
            raise TemplateRenderError(
                f"Maximum include depth exceeded ({self.max_include_depth}): {chain}",
                template_name=template_name,
                code=ErrorCode.INCLUDE_DEPTH,
            )

    def child_context(
        self,
        template_name: str | None = None,
        source: str | None = None,
    ) -> RenderContext:
        """Create the context for a nested render invocation.

        The child gets its own pending list, index counter and nonce. Depth
        bookkeeping is inherited, and the parent's tokens stay recognizable
        through ``outer_nonces``.
        """
        return RenderContext(
            template_name=template_name,
            source=source,
            include_depth=self.include_depth + 1,
            max_include_depth=self.max_include_depth,
            outer_nonces=self.known_nonces,
            template_stack=[*self.template_stack, self.template_name or "<template>"],
        )


# Module-level ContextVar
_render_context: ContextVar[RenderContext | None] = ContextVar(
    "render_context",
    default=None,
)


def get_render_context() -> RenderContext | None:
    """Get current render context (None if not in render)."""
    return _render_context.get()


def get_render_context_required() -> RenderContext:
    """Get current render context, raise if not in render.

    Raises:
        RuntimeError: If not in a render context
    """
    ctx = _render_context.get()
    if ctx is None:
        raise RuntimeError("Not in a render context")
    return ctx


def _new_context(
    template_name: str | None,
    source: str | None,
    max_include_depth: int | None,
) -> RenderContext:
    parent = _render_context.get()
    if parent is None:
        ctx = RenderContext(template_name=template_name, source=source)
        if max_include_depth is not None:
            ctx.max_include_depth = max_include_depth
        return ctx
    ctx = parent.child_context(template_name, source)
    ctx.check_include_depth(template_name)
    return ctx


@contextmanager
def render_context(
    template_name: str | None = None,
    source: str | None = None,
    max_include_depth: int | None = None,
) -> Iterator[RenderContext]:
    """Context manager for render-scoped state.

    Creates a top-level RenderContext, or a child of the active one when
    called during another render, and sets it as current for the duration
    of the with block. Pending awaitables left over on exit are closed.

    Example:
        with render_context(template_name="page.jinja") as ctx:
            html = template.render(data)
            if ctx.pending:
                ...
    """
    ctx = _new_context(template_name, source, max_include_depth)
    token: Token[RenderContext | None] = _render_context.set(ctx)
    try:
        yield ctx
    finally:
        ctx.discard_pending()
        _render_context.reset(token)


@asynccontextmanager
async def async_render_context(
    template_name: str | None = None,
    source: str | None = None,
    max_include_depth: int | None = None,
) -> AsyncIterator[RenderContext]:
    """Async context manager for render-scoped state.

    Identical to render_context() but for use with ``async with``.
    The ContextVar reset itself is synchronous.
    """
    ctx = _new_context(template_name, source, max_include_depth)
    token: Token[RenderContext | None] = _render_context.set(ctx)
    try:
        yield ctx
    finally:
        ctx.discard_pending()
        _render_context.reset(token)
