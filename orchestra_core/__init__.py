"""orchestra-core — Orchestration core for module load ordering and playbook runs.

Resolves the dependency graph between modules into a safe load order, and
executes declarative multi-stage playbooks with parallel groups, per-step
timeouts and retries, partial-failure tolerance, rollback and configurable
success criteria.

Architecture layers (bottom to top):
    1. Protocol:      Pydantic models, playbook / manifest parser, templates
    2. Modules:       caller-owned registry of module descriptors
    3. Orchestration: dependency resolver, concurrency scheduler,
                       result aggregator, rollback coordinator
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from orchestra_core.modules.registry import ModuleRegistry
from orchestra_core.orchestration.dag import DependencyGraphResolver, LoadOrderResult
from orchestra_core.orchestration.dispatch import DispatchTable, StepExecutor, StepOutcome
from orchestra_core.orchestration.scheduler import ConcurrencyScheduler
from orchestra_core.orchestration.state import OrchestrationResult, StepResult
from orchestra_core.protocol.models import (
    ModuleDescriptor,
    PlaybookDefinition,
    Stage,
    StepDefinition,
    SuccessCriteria,
)

__all__ = [
    "__version__",
    "ConcurrencyScheduler",
    "DependencyGraphResolver",
    "DispatchTable",
    "LoadOrderResult",
    "ModuleDescriptor",
    "ModuleRegistry",
    "OrchestrationResult",
    "PlaybookDefinition",
    "Stage",
    "StepDefinition",
    "StepExecutor",
    "StepOutcome",
    "StepResult",
    "SuccessCriteria",
]
