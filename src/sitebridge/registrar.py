"""Host generator plugin: registers Jinja2 as the ``.jinja`` template format.

Usage:
    ```python
    from sitebridge import plugin

    def configure(config):
        config.add_filter("upcase", str.upper)
        config.add_plugin(plugin, globals={"site_name": "My Site"})
    ```

Options:
- ``cache`` (bool, default False): memoize compiled templates
- ``library_override`` (jinja2.Environment): render with this environment
  instead of a fresh one
- ``globals`` (mapping): extra template globals
- ``max_resolution_rounds`` (int): cap on async placeholder rounds

Bridging:
Host filters, shortcodes and paired shortcodes become Jinja2 globals of the
same name, registered in that order, then ``globals``. Later names shadow
earlier ones. Filters are also registered as Jinja2 filters, so both
``{{ upcase(name) }}`` and ``{{ name | upcase }}`` work.

"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import Environment

from sitebridge.adapter import EngineAdapter
from sitebridge.host import CompileOptions, HostConfig, HostProject, TemplateExtension
from sitebridge.placeholders import DEFAULT_MAX_ROUNDS

logger = logging.getLogger(__name__)

TEMPLATE_FORMAT = "jinja"
REQUIRED_HOST_VERSION = ">=3.0.0"


@dataclass(frozen=True, slots=True)
class PluginOptions:
    """Plugin configuration.

    Attributes:
        cache: Memoize compiled templates
        library_override: Pre-built environment to render with
        globals: Extra template globals
        max_resolution_rounds: Cap on async placeholder resolution rounds
    """

    cache: bool = False
    library_override: Environment | None = None
    globals: Mapping[str, Any] = field(default_factory=dict)
    max_resolution_rounds: int = DEFAULT_MAX_ROUNDS


def plugin(config: HostConfig, **options: Any) -> EngineAdapter:
    """Register the Jinja2 template format with the host.

    Args:
        config: Host plugin configuration API
        **options: PluginOptions fields

    Returns:
        The adapter backing the new format

    Raises:
        TypeError: Unknown option
    """
    opts = PluginOptions(**options)
    config.version_check(REQUIRED_HOST_VERSION)
    config.add_template_formats(TEMPLATE_FORMAT)

    # Created eagerly so permalink compilation works before init runs
    adapter = EngineAdapter(
        opts.library_override,
        cache=opts.cache,
        max_resolution_rounds=opts.max_resolution_rounds,
    )

    filters = config.get_filters()
    adapter.globals.update(filters, source="filter")
    for name, func in filters.items():
        adapter.register_filter(name, func)
    adapter.globals.update(config.get_shortcodes(), source="shortcode")
    adapter.globals.update(config.get_paired_shortcodes(), source="paired shortcode")
    adapter.globals.update(opts.globals, source="option")
    logger.debug("Bridged %d template global(s)", len(adapter.globals))

    async def init(project: HostProject) -> None:
        includes = project.directories.get("includes")
        if includes:
            adapter.mount(Path.cwd() / includes)

    def permalink(contents: Any) -> Any:
        if isinstance(contents, str):
            return adapter.compile(contents)
        return contents

    config.add_extension(
        TEMPLATE_FORMAT,
        TemplateExtension(
            compile=adapter.compile,
            init=init,
            compile_options=CompileOptions(permalink=permalink),
        ),
    )
    return adapter
