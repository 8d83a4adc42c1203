"""Protocol — Module version compatibility checker.

When a module descriptor declares ``version_requirements``, this module
checks that the registered versions of its dependencies satisfy those
constraints.

Version specifiers follow PEP-440 (e.g. ``">=1.2.0"``, ``"==2.0.0"``,
``">=1.0.0,<2.0.0"``).  Syntax is already validated on the descriptor
models, so this checker only compares.

Dependencies that are not registered at all are *not* reported here: the
resolver reports them as missing dependencies, a distinct error class.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from packaging.specifiers import SpecifierSet
from packaging.version import Version

from orchestra_core.exceptions import VersionConflictError
from orchestra_core.protocol.models import ModuleDescriptor


@dataclass(frozen=True)
class VersionConflict:
    """A single dependency version constraint that was not satisfied."""

    module: str
    dependency: str
    required_specifier: str
    found_version: str

    def to_error(self) -> VersionConflictError:
        return VersionConflictError(
            self.module, self.dependency, self.required_specifier, self.found_version
        )


class ModuleVersionChecker:
    """Validates descriptor ``version_requirements`` against registered versions.

    Usage::

        checker = ModuleVersionChecker(available_versions={"core": "1.3.0"})
        conflicts = checker.check(descriptors)
    """

    def __init__(self, available_versions: Mapping[str, str]) -> None:
        self._versions = available_versions

    @classmethod
    def for_descriptors(cls, descriptors: Iterable[ModuleDescriptor]) -> "ModuleVersionChecker":
        return cls({d.name: d.version for d in descriptors})

    def check(self, descriptors: Iterable[ModuleDescriptor]) -> list[VersionConflict]:
        """Return every unsatisfied requirement, in descriptor order."""
        conflicts: list[VersionConflict] = []
        for descriptor in descriptors:
            for dep in sorted(descriptor.version_requirements):
                installed = self._versions.get(dep)
                if installed is None:
                    continue
                specifier = descriptor.version_requirements[dep]
                if Version(installed) not in SpecifierSet(specifier, prereleases=True):
                    conflicts.append(
                        VersionConflict(
                            module=descriptor.name,
                            dependency=dep,
                            required_specifier=specifier,
                            found_version=installed,
                        )
                    )
        return conflicts
