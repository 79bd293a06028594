"""sitebridge — Jinja2 templates for static-site generators, with async shortcodes.

Registers a ``.jinja`` template format with a host generator, exposes the
host's filters and shortcodes as Jinja2 globals, and lets async shortcodes
be called from ordinary synchronous templates.

Quickstart:
    >>> from sitebridge import plugin
    >>> config.add_plugin(plugin, globals={"site_name": "My Site"})

Direct use:
    >>> from sitebridge import EngineAdapter
    >>> adapter = EngineAdapter()
    >>> adapter.render("<p>{{ name }}</p>", {"name": None})
    '<p></p>'

Deferred Async Output:
Jinja2 renders synchronously. When an expression evaluates to an awaitable
(say, the coroutine returned by an async shortcode), the output hook does
not await it in place. It records the awaitable in the current
RenderContext and emits a sentinel token. After the synchronous pass,
``render_async()`` awaits everything pending at once and replaces each
token with its value, escaped or raw like the position it came from.
Values that resolve to further awaitables are handled in later rounds.

    ```
    Template.render ──► "<p>␂␚e0:nonce␚␃</p>"  pending = [greet("David")]
    gather          ──► ["Hi, David!"]
    splice          ──► "<p>Hi, David!</p>"
    ```

Errors:
Engine failures surface as ``TemplateRenderError`` with ``.original`` set
to the exception actually raised; ``original_error()`` unwraps it for
generators that retry templates in a second pass.

"""

from sitebridge.adapter import EngineAdapter, RawAwaitable, create_environment, mark_safe
from sitebridge.environment import (
    AwaitableRejectedError,
    BridgeError,
    ErrorCode,
    GlobalRegistry,
    PlaceholderResolutionError,
    TemplateRenderError,
    original_error,
)
from sitebridge.host import CompileOptions, HostConfig, HostProject, TemplateExtension
from sitebridge.placeholders import resolve_placeholders
from sitebridge.registrar import TEMPLATE_FORMAT, PluginOptions, plugin
from sitebridge.render_context import (
    PendingValue,
    RenderContext,
    async_render_context,
    get_render_context,
    get_render_context_required,
    render_context,
)

__version__ = "0.1.0"

__all__ = [
    "AwaitableRejectedError",
    "BridgeError",
    "CompileOptions",
    "EngineAdapter",
    "ErrorCode",
    "GlobalRegistry",
    "HostConfig",
    "HostProject",
    "PendingValue",
    "PlaceholderResolutionError",
    "PluginOptions",
    "RawAwaitable",
    "RenderContext",
    "TEMPLATE_FORMAT",
    "TemplateExtension",
    "TemplateRenderError",
    "__version__",
    "async_render_context",
    "create_environment",
    "get_render_context",
    "get_render_context_required",
    "mark_safe",
    "original_error",
    "plugin",
    "render_context",
    "resolve_placeholders",
]
