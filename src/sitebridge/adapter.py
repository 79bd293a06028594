"""EngineAdapter — the interposition layer between host and Jinja2.

The adapter owns an overlay of a Jinja2 environment and is the only way the
host reaches the engine. It contributes three things on top of plain Jinja2:

- ``escape()`` — installed as the environment's ``finalize`` hook. Renders
  ``None`` as ``""`` and defers awaitables behind sentinel tokens.
- ``render_async()`` / ``render()`` — open a per-invocation RenderContext,
  run the template, then resolve deferred placeholders.
- ``normalize_error()`` — wraps non-template exceptions in
  ``TemplateRenderError`` while keeping the original reachable.

Architecture:
    ```
    host compile(source) → render(data)
        → EngineAdapter.render_async
            → Template.render               (Jinja2, synchronous)
                → finalize → escape()       (per {{ }} output)
            → resolve_placeholders()        (await + splice)
        → str
    ```

Escaped vs Raw:
Under autoescape, ``{{ shortcode() }}`` of an async shortcode is escaped
once resolved, exactly as a sync value would be. ``{{ shortcode() | safe }}``
marks the awaitable raw, so its resolved markup is inserted verbatim.

Example:
    >>> adapter = EngineAdapter()
    >>> async def greet(name):
    ...     return f"Hi, {name}!"
    >>> adapter.globals.register("greet", greet)
    >>> await adapter.render_async("<p>{{ greet(name) }}</p>", {"name": "David"})
    '<p>Hi, David!</p>'

"""

from __future__ import annotations

import inspect
import logging
import traceback
import weakref
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, NoReturn

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    Template,
    TemplateError,
    pass_context,
)
from jinja2.runtime import Context
from jinja2.utils import _PassArg
from markupsafe import Markup
from markupsafe import escape as html_escape

from sitebridge.environment.exceptions import (
    BridgeError,
    ErrorCode,
    TemplateRenderError,
    build_source_snippet,
    classify_error,
)
from sitebridge.environment.registry import GlobalRegistry
from sitebridge.host import RenderFunc
from sitebridge.placeholders import DEFAULT_MAX_ROUNDS, resolve_placeholders, strip_forged
from sitebridge.render_context import (
    async_render_context,
    get_render_context,
    get_render_context_required,
    render_context,
)

logger = logging.getLogger(__name__)

# Jinja2's default cache size, used when caching is on.
_CACHE_SIZE = 400


class RawAwaitable:
    """An awaitable whose resolved value is inserted without escaping."""

    __slots__ = ("awaitable",)

    def __init__(self, awaitable: Any):
        self.awaitable = awaitable

    def __await__(self):
        return self.awaitable.__await__()

    def __repr__(self) -> str:
        return f"<RawAwaitable {self.awaitable!r}>"


def mark_safe(value: Any) -> Any:
    """Replacement for Jinja2's ``safe`` filter that also accepts awaitables."""
    if value is None or isinstance(value, RawAwaitable):
        return value
    if inspect.isawaitable(value):
        return RawAwaitable(value)
    return Markup(value)


def create_environment(*, cache: bool = False) -> Environment:
    """Create the default HTML environment: autoescape on, cache per ``cache``."""
    return Environment(autoescape=True, cache_size=_CACHE_SIZE if cache else 0)


def _is_deferred(value: Any) -> bool:
    return isinstance(value, RawAwaitable) or inspect.isawaitable(value)


def _bind_finalize(func: Callable[..., Any] | None) -> Callable[[Context, Any], Any] | None:
    """Adapt an environment's own ``finalize`` to a ``(context, value)`` call.

    Honors the ``pass_context``, ``pass_eval_context`` and
    ``pass_environment`` decorators the way Jinja2 does.
    """
    if func is None:
        return None
    kind = _PassArg.from_obj(func)
    if kind is _PassArg.context:
        return func
    if kind is _PassArg.eval_context:
        return lambda context, value: func(context.eval_ctx, value)
    if kind is _PassArg.environment:
        return lambda context, value: func(context.environment, value)
    return lambda context, value: func(value)


def _template_lineno(error: BaseException, filename: str) -> int | None:
    """Line of the innermost traceback frame inside ``filename``.

    Jinja2 rewrites tracebacks so template frames carry the template's
    filename and source line numbers.
    """
    lineno = None
    for frame in traceback.extract_tb(error.__traceback__):
        if frame.filename == filename:
            lineno = frame.lineno
    return lineno


class EngineAdapter:
    """Jinja2 environment wrapper with deferred async output.

    Attributes:
        environment: Overlay environment the adapter renders with
        globals: Registry of template globals
        cache: True if compiled templates are memoized by source
        max_resolution_rounds: Upper bound on placeholder resolution rounds
        max_include_depth: Upper bound on nested render invocations
    """

    def __init__(
        self,
        environment: Environment | None = None,
        *,
        cache: bool = False,
        max_resolution_rounds: int = DEFAULT_MAX_ROUNDS,
        max_include_depth: int = 50,
    ):
        base = environment if environment is not None else create_environment(cache=cache)

        # The overlay shares globals with ``base`` but gets its own finalize
        # hook and filter table, so ``base`` keeps working as before.
        env = base.overlay(finalize=self._make_finalize(base.finalize))
        env.is_async = base.is_async
        env.filters = dict(base.filters)
        env.filters["safe"] = mark_safe

        self.environment = env
        self.globals = GlobalRegistry(env)
        self.cache = cache
        self.max_resolution_rounds = max_resolution_rounds
        self.max_include_depth = max_include_depth
        self._compiled: dict[str, Template] = {}
        self._sources: weakref.WeakKeyDictionary[Template, str] = weakref.WeakKeyDictionary()
        self._mounted: FileSystemLoader | None = None

    # ------------------------------------------------------------------
    # Escape interceptor
    # ------------------------------------------------------------------

    def _make_finalize(self, base_finalize: Callable[..., Any] | None) -> Callable[..., Any]:
        escape = self.escape
        outer = _bind_finalize(base_finalize)

        @pass_context
        def finalize(context: Context, value: Any) -> Any:
            if outer is not None and value is not None and not _is_deferred(value):
                value = outer(context, value)
            return escape(value, raw=not context.eval_ctx.autoescape)

        return finalize

    def escape(self, value: Any, *, raw: bool = False) -> Any:
        """Prepare one interpolated value for output.

        Args:
            value: The value of a ``{{ }}`` expression
            raw: True if the value lands in an unescaped position

        Returns:
            ``""`` for None, a sentinel token for awaitables, strings with
            forged token framing removed, otherwise ``value`` unchanged
            (Jinja2 applies its own escaping after).

        Raises:
            RuntimeError: If an awaitable is seen outside a render context
        """
        if value is None:
            return ""
        if isinstance(value, RawAwaitable):
            value, raw = value.awaitable, True
        if inspect.isawaitable(value):
            token = get_render_context_required().defer(value, raw=raw)
            return Markup(token) if raw else token
        if isinstance(value, str):
            ctx = get_render_context()
            return strip_forged(value, ctx.known_nonces if ctx is not None else ())
        return value

    def _fragment(self, value: Any, raw: bool) -> str:
        value = self.escape(value, raw=raw)
        if raw:
            return str(value)
        return str(html_escape(value))

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def load(self, source: str) -> Template:
        """Compile template source, normalizing syntax errors."""
        if self.cache:
            cached = self._compiled.get(source)
            if cached is not None:
                return cached
        try:
            template = self.environment.from_string(source)
        except Exception as exc:
            self.normalize_error(exc, source=source)
        logger.debug("Compiled template (%d chars)", len(source))
        self._sources[template] = source
        if self.cache:
            self._compiled[source] = template
        return template

    def get_template(self, name: str) -> Template:
        """Load a template by name from the mounted search path."""
        try:
            return self.environment.get_template(name)
        except Exception as exc:
            self.normalize_error(exc, template_name=name)

    def _coerce(self, template: Template | str) -> Template:
        if isinstance(template, str):
            return self.load(template)
        return template

    def mount(self, directory: str | Path) -> None:
        """Add ``directory`` to the search path used by include/import/extends."""
        path = str(directory)
        if self._mounted is None:
            self._mounted = FileSystemLoader([path])
            base = self.environment.loader
            self.environment.loader = (
                self._mounted if base is None else ChoiceLoader([base, self._mounted])
            )
        elif path not in self._mounted.searchpath:
            self._mounted.searchpath.append(path)
        logger.debug("Mounted template directory %s", path)

    def register_filter(self, name: str, func: Callable[..., Any]) -> None:
        self.environment.filters[name] = func

    # ------------------------------------------------------------------
    # Render orchestrator
    # ------------------------------------------------------------------

    async def render_async(
        self,
        template: Template | str,
        data: Mapping[str, Any] | None = None,
        *,
        name: str | None = None,
    ) -> str:
        """Render a template and resolve every deferred async value.

        Args:
            template: Compiled template or template source
            data: Template variables
            name: Template name for error messages

        Returns:
            Final output with no placeholders left

        Raises:
            TemplateRenderError: Rendering failed (``.original`` holds the cause)
            PlaceholderResolutionError: Deferred values did not resolve
        """
        template = self._coerce(template)

        async with async_render_context(
            template_name=name or template.name,
            source=self._sources.get(template),
            max_include_depth=self.max_include_depth,
        ) as ctx:
            try:
                if self.environment.is_async:
                    output = await template.render_async(dict(data or {}))
                else:
                    output = template.render(dict(data or {}))
            except Exception as exc:
                ctx.discard_pending()
                self.normalize_error(
                    exc,
                    template_name=ctx.template_name,
                    filename=template.filename,
                    source=ctx.source,
                )

            return await resolve_placeholders(
                ctx,
                output,
                self._fragment,
                max_rounds=self.max_resolution_rounds,
            )

    def render(
        self,
        template: Template | str,
        data: Mapping[str, Any] | None = None,
        *,
        name: str | None = None,
    ) -> str:
        """Render a template synchronously.

        Only valid for templates that produce no awaitable output; anything
        async must go through ``render_async()``.

        Raises:
            TemplateRenderError: Rendering failed, or produced awaitables
        """
        template = self._coerce(template)

        with render_context(
            template_name=name or template.name,
            source=self._sources.get(template),
            max_include_depth=self.max_include_depth,
        ) as ctx:
            try:
                output = template.render(dict(data or {}))
            except Exception as exc:
                ctx.discard_pending()
                self.normalize_error(
                    exc,
                    template_name=ctx.template_name,
                    filename=template.filename,
                    source=ctx.source,
                )

            if ctx.pending:
                labels = ", ".join(item.label for item in ctx.pending)
                raise TemplateRenderError(
                    f"Template produced awaitable output ({labels}); use render_async()",
                    template_name=ctx.template_name,
                    code=ErrorCode.ASYNC_IN_SYNC_RENDER,
                )
            return output

    def compile(self, source: str) -> RenderFunc:
        """Return ``async render(data) -> str`` for ``source``.

        Compilation happens on each call (or once, with caching on), so
        syntax errors surface from the render function, not from here.
        """

        async def render(data: Mapping[str, Any] | None = None) -> str:
            return await self.render_async(self.load(source), data)

        return render

    # ------------------------------------------------------------------
    # Error rewrap guard
    # ------------------------------------------------------------------

    def _normalize(
        self,
        error: Exception,
        template_name: str | None,
        filename: str | None,
        source: str | None,
    ) -> NoReturn:
        if isinstance(error, (TemplateError, BridgeError)):
            raise error

        lineno = _template_lineno(error, filename or "<template>")
        snippet = None
        if source and lineno:
            snippet = build_source_snippet(source, lineno)

        detail = str(error).strip()
        if detail:
            message = f"{type(error).__name__}: {detail}"
        else:
            message = f"{type(error).__name__} (no details available)"

        raise TemplateRenderError(
            message,
            template_name=template_name,
            lineno=lineno,
            source_snippet=snippet,
        )

    def normalize_error(
        self,
        error: Exception,
        *,
        template_name: str | None = None,
        filename: str | None = None,
        source: str | None = None,
    ) -> NoReturn:
        """Raise the normalized form of ``error``.

        Template errors from Jinja2 and sitebridge's own errors are re-raised
        as the same object. Anything else is replaced by a
        ``TemplateRenderError`` whose ``original`` and ``__cause__`` are
        ``error``.
        """
        try:
            self._normalize(error, template_name, filename, source)
        except Exception as raised:
            outcome = classify_error(error, raised)
        else:
            raise AssertionError("error normalization returned normally")
        outcome.reraise()

    def __repr__(self) -> str:
        mode = "async" if self.environment.is_async else "sync"
        return f"<EngineAdapter {mode} globals={len(self.globals)}>"
