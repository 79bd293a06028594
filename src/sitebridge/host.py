"""Host generator contract.

sitebridge plugs into a static-site generator through the call contract
below. Any object with these methods works; nothing here is imported from
a particular generator.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

RenderFunc = Callable[..., Awaitable[str]]


class HostConfig(Protocol):
    """Plugin-time configuration API of the host generator."""

    def version_check(self, requirement: str) -> None:
        """Raise if the host does not satisfy ``requirement`` (e.g. ``">=3.0.0"``)."""

    def add_template_formats(self, *formats: str) -> None: ...

    def add_extension(self, name: str, extension: TemplateExtension) -> None: ...

    def get_filters(self) -> Mapping[str, Callable[..., Any]]: ...

    def get_shortcodes(self) -> Mapping[str, Callable[..., Any]]: ...

    def get_paired_shortcodes(self) -> Mapping[str, Callable[..., Any]]:
        """Block shortcodes; they take the enclosed content as first argument."""


class HostProject(Protocol):
    """Resolved project configuration handed to an extension's ``init``."""

    directories: Mapping[str, str]


@dataclass(frozen=True, slots=True)
class CompileOptions:
    """Per-feature compile hooks.

    Attributes:
        permalink: Compiles a front-matter ``permalink`` value. Returns a
            render function for template strings, anything else unchanged.
    """

    permalink: Callable[[Any], Any] | None = None


@dataclass(frozen=True, slots=True)
class TemplateExtension:
    """What the host needs to render one template file extension.

    Attributes:
        compile: ``compile(source) -> async render(data) -> str``
        init: Async hook run once the host's project config is resolved
        compile_options: Additional compile hooks
    """

    compile: Callable[[str], RenderFunc]
    init: Callable[[HostProject], Awaitable[None]] | None = None
    compile_options: CompileOptions = field(default_factory=CompileOptions)
