"""Module layer — caller-owned registry of module descriptors."""

from orchestra_core.exceptions import ModuleNotRegisteredError
from orchestra_core.modules.registry import ModuleRegistry

__all__ = ["ModuleNotRegisteredError", "ModuleRegistry"]
