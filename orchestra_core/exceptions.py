"""orchestra-core — Exception hierarchy.

All exceptions raised by the orchestration core inherit from OrchestraError
so that callers can catch the full family with a single except clause when
needed.

Hierarchy:
    OrchestraError
    ├── ProtocolError
    │   ├── PlaybookParseError
    │   ├── PlaybookValidationError
    │   └── TemplateResolutionError
    ├── ResolutionError
    │   ├── CycleDetectedError
    │   ├── MissingDependencyError
    │   ├── VersionConflictError
    │   └── ModuleNotRegisteredError
    ├── ExecutionError
    │   ├── StepTimeoutError
    │   ├── StepFailedError
    │   └── UnknownTargetError
    └── RollbackFailedError

Resolution errors are never raised by the resolver itself.  They are built
as data by ``LoadOrderResult.errors()`` so that callers decide how to react.
"""

from __future__ import annotations

from typing import Any


class OrchestraError(Exception):
    """Base exception for all orchestra-core errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Protocol layer
# ---------------------------------------------------------------------------


class ProtocolError(OrchestraError):
    """Base for all playbook / manifest input errors."""


class PlaybookParseError(ProtocolError):
    """The payload could not be deserialised into a mapping."""

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message, context={"source": source})
        self.source = source


class PlaybookValidationError(ProtocolError):
    """The playbook or module manifest failed Pydantic validation."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, context={"validation_errors": errors or []})
        self.errors = errors or []


class TemplateResolutionError(ProtocolError):
    """A ``{{var.NAME}}`` template reference could not be resolved."""

    def __init__(self, template: str, reason: str) -> None:
        super().__init__(
            f"Cannot resolve template '{template}': {reason}",
            context={"template": template, "reason": reason},
        )
        self.template = template


# ---------------------------------------------------------------------------
# Dependency resolution
# ---------------------------------------------------------------------------


class ResolutionError(OrchestraError):
    """Base for module dependency graph problems."""


class CycleDetectedError(ResolutionError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        path = [*cycle, cycle[0]] if cycle else []
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(path)}",
            context={"cycle": cycle},
        )
        self.cycle = cycle


class MissingDependencyError(ResolutionError):
    """A module declares a dependency that is not present in the registry."""

    def __init__(self, module: str, dependency: str) -> None:
        super().__init__(
            f"Module '{module}' depends on '{dependency}', which is not registered",
            context={"module": module, "dependency": dependency},
        )
        self.module = module
        self.dependency = dependency


class VersionConflictError(ResolutionError):
    """A dependency is present but its version violates the declared specifier."""

    def __init__(self, module: str, dependency: str, specifier: str, version: str) -> None:
        super().__init__(
            f"Module '{module}' requires {dependency}{specifier}, found {version}",
            context={
                "module": module,
                "dependency": dependency,
                "specifier": specifier,
                "version": version,
            },
        )
        self.module = module
        self.dependency = dependency
        self.specifier = specifier
        self.version = version


class ModuleNotRegisteredError(ResolutionError):
    """Lookup of a module name the registry does not hold."""

    def __init__(self, module: str) -> None:
        super().__init__(f"Module '{module}' is not registered", context={"module": module})
        self.module = module


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


class ExecutionError(OrchestraError):
    """Base for step execution errors."""


class StepTimeoutError(ExecutionError):
    """A step attempt exceeded its configured timeout."""

    def __init__(self, target: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Step '{target}' timed out after {timeout_seconds}s",
            context={"target": target, "timeout_seconds": timeout_seconds},
        )
        self.target = target
        self.timeout_seconds = timeout_seconds


class StepFailedError(ExecutionError):
    """The executor reported failure for a step attempt."""

    def __init__(self, target: str, reason: str, attempts: int = 1) -> None:
        super().__init__(
            f"Step '{target}' failed after {attempts} attempt(s): {reason}",
            context={"target": target, "reason": reason, "attempts": attempts},
        )
        self.target = target
        self.reason = reason
        self.attempts = attempts


class UnknownTargetError(ExecutionError):
    """One or more step targets have no registered handler."""

    def __init__(self, targets: list[str]) -> None:
        super().__init__(
            f"No handler registered for target(s): {', '.join(targets)}",
            context={"targets": targets},
        )
        self.targets = targets


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class RollbackFailedError(OrchestraError):
    """An undo callback raised or returned failure during unwind."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(
            f"Rollback of step '{target}' failed: {reason}",
            context={"target": target, "reason": reason},
        )
        self.target = target
        self.reason = reason
