"""Pytest configuration and fixtures for sitebridge tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from sitebridge import EngineAdapter, TEMPLATE_FORMAT, TemplateExtension, plugin


class FakeHost:
    """In-memory stand-in for a host generator's plugin configuration API."""

    def __init__(self) -> None:
        self.version_checks: list[str] = []
        self.formats: list[str] = []
        self.extensions: dict[str, TemplateExtension] = {}
        self.filters: dict = {}
        self.shortcodes: dict = {}
        self.paired_shortcodes: dict = {}

    # Host API consumed by the plugin
    def version_check(self, requirement: str) -> None:
        self.version_checks.append(requirement)

    def add_template_formats(self, *formats: str) -> None:
        self.formats.extend(formats)

    def add_extension(self, name: str, extension: TemplateExtension) -> None:
        self.extensions[name] = extension

    def get_filters(self) -> dict:
        return dict(self.filters)

    def get_shortcodes(self) -> dict:
        return dict(self.shortcodes)

    def get_paired_shortcodes(self) -> dict:
        return dict(self.paired_shortcodes)

    # User-facing registration
    def add_filter(self, name: str, func) -> None:
        self.filters[name] = func

    def add_shortcode(self, name: str, func) -> None:
        self.shortcodes[name] = func

    def add_paired_shortcode(self, name: str, func) -> None:
        self.paired_shortcodes[name] = func

    @property
    def extension(self) -> TemplateExtension:
        return self.extensions[TEMPLATE_FORMAT]


@dataclass
class FakeProject:
    """Resolved project config passed to the extension's init hook."""

    directories: dict[str, str] = field(default_factory=dict)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def adapter() -> EngineAdapter:
    """A default adapter: autoescape on, no caching."""
    return EngineAdapter()


@pytest.fixture
def includes_dir(tmp_path: Path) -> Path:
    """A project directory with an ``_includes`` tree of partials."""
    includes = tmp_path / "_includes"
    (includes / "subfolder").mkdir(parents=True)
    (includes / "components").mkdir()
    (includes / "included.jinja").write_text("This is an include.")
    (includes / "subfolder" / "nested.jinja").write_text("This is a nested include.")
    (includes / "components" / "button.jinja").write_text(
        '<button class="{{ type }}">{{ text }}</button>'
    )
    (includes / "async_include.jinja").write_text("<span>{{ greet('include') }}</span>")
    return includes


async def _render_with_plugin(host: FakeHost, source: str, data: dict | None = None, **options) -> str:
    """Register the plugin on ``host`` and render ``source`` through its compile hook."""
    plugin(host, **options)
    render = host.extension.compile(source)
    return await render(data or {})


@pytest.fixture
def render_with_plugin():
    """``await render_with_plugin(host, source, data, **options)``."""
    return _render_with_plugin


@pytest.fixture
def make_project():
    """Build the project object the extension's init hook receives."""
    return FakeProject
