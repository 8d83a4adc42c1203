"""Protocol layer — playbook / module models, parser, templates, version checks."""

from orchestra_core.protocol.models import (
    ErrorKind,
    ModuleDescriptor,
    PlaybookDefinition,
    PlaybookOptions,
    Stage,
    StepDefinition,
    StepStatus,
    SuccessCriteria,
)
from orchestra_core.protocol.parser import PlaybookParser, parse_module_manifest

__all__ = [
    "ErrorKind",
    "ModuleDescriptor",
    "PlaybookDefinition",
    "PlaybookOptions",
    "PlaybookParser",
    "Stage",
    "StepDefinition",
    "StepStatus",
    "SuccessCriteria",
    "parse_module_manifest",
]
