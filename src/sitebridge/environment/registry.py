"""Global-function registry for the bridged Jinja2 environment.

Provides a dict-like view over ``Environment.globals`` that remembers where
each name came from (host filter, shortcode, paired shortcode, plugin
option) so shadowing between them can be reported.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from jinja2 import Environment

logger = logging.getLogger(__name__)


class GlobalRegistry:
    """Dict-like interface over a Jinja2 environment's globals.

    Supports:
        - registry['name'] = func
        - registry.register('name', func, source='shortcode')
        - registry.update({'name': func}, source='option')
        - func = registry['name']
        - 'name' in registry

    Mutates ``Environment.globals`` in place. Compiled templates hold a
    reference to that dict, so replacing it would leave them stale.
    """

    __slots__ = ("_env", "_sources")

    def __init__(self, env: Environment):
        self._env = env
        self._sources: dict[str, str] = {}

    def register(self, name: str, value: Any, source: str = "global") -> None:
        """Expose ``value`` to templates as ``name``; later calls win."""
        previous = self._sources.get(name)
        if previous is not None:
            logger.debug("Template global %r from %s shadows %s", name, source, previous)
        self._env.globals[name] = value
        self._sources[name] = source

    def update(self, mapping: Mapping[str, Any], source: str = "global") -> None:
        """Batch register, in mapping order."""
        for name, value in mapping.items():
            self.register(name, value, source)

    def source_of(self, name: str) -> str | None:
        """Where ``name`` was registered from, or None if not registered here."""
        return self._sources.get(name)

    def __getitem__(self, name: str) -> Any:
        return self._env.globals[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self.register(name, value)

    def __contains__(self, name: object) -> bool:
        return name in self._env.globals

    def __iter__(self) -> Iterator[str]:
        return iter(self._sources)

    def __len__(self) -> int:
        return len(self._sources)

    def get(self, name: str, default: Any = None) -> Any:
        return self._env.globals.get(name, default)

    def items(self):
        return [(name, self._env.globals[name]) for name in self._sources]
