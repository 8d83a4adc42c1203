"""Module layer — Module registry.

The registry holds the module descriptors for one caller.  It is a plain
object constructed and passed around explicitly; nothing in the core keeps
a process-wide registry.

It handles:
  - Descriptor registration (replacing a same-named descriptor logs a warning)
  - Lookup by name
  - Resolution into a load order via :class:`DependencyGraphResolver`
"""

from __future__ import annotations

from typing import Iterable, Iterator

from orchestra_core.exceptions import ModuleNotRegisteredError
from orchestra_core.logging import get_logger
from orchestra_core.orchestration.dag import DependencyGraphResolver, LoadOrderResult
from orchestra_core.protocol.models import ModuleDescriptor

log = get_logger(__name__)


class ModuleRegistry:
    """Caller-owned collection of :class:`ModuleDescriptor`.

    Usage::

        registry = ModuleRegistry()
        registry.register(ModuleDescriptor(name="core"))
        registry.register(ModuleDescriptor(name="infra", dependencies={"core"}))
        result = registry.resolve()
    """

    def __init__(self, descriptors: Iterable[ModuleDescriptor] = ()) -> None:
        self._descriptors: dict[str, ModuleDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ModuleDescriptor) -> None:
        if descriptor.name in self._descriptors:
            log.warning("module_already_registered", module=descriptor.name)
        self._descriptors[descriptor.name] = descriptor
        log.debug("module_registered", module=descriptor.name, version=descriptor.version)

    def unregister(self, name: str) -> None:
        self._descriptors.pop(name, None)

    def get(self, name: str) -> ModuleDescriptor:
        """Return the descriptor for *name*.

        Raises:
            ModuleNotRegisteredError: No module with this name is registered.
        """
        try:
            return self._descriptors[name]
        except KeyError:
            raise ModuleNotRegisteredError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[ModuleDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    def descriptors(self) -> list[ModuleDescriptor]:
        """Return descriptors in registration order."""
        return list(self._descriptors.values())

    def required(self) -> list[str]:
        return [d.name for d in self._descriptors.values() if d.required]

    def resolve(self, resolver: DependencyGraphResolver | None = None) -> LoadOrderResult:
        """Resolve the registered descriptors into a load order."""
        return (resolver or DependencyGraphResolver()).resolve(self.descriptors())
