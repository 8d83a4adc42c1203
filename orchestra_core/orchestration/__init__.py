"""Orchestration layer — dependency resolver, scheduler, aggregator, rollback, resource manager."""

from orchestra_core.orchestration.aggregator import (
    ResultAggregator,
    SuccessCriteriaEvaluator,
    evaluate_success,
)
from orchestra_core.orchestration.dag import (
    DependencyGraphResolver,
    LoadOrderResult,
    resolve_load_order,
    stages_from_levels,
)
from orchestra_core.orchestration.dispatch import DispatchTable, StepExecutor, StepOutcome
from orchestra_core.orchestration.resource_manager import ResourceManager
from orchestra_core.orchestration.rollback import RollbackCoordinator, RollbackReport
from orchestra_core.orchestration.scheduler import (
    ConcurrencyScheduler,
    ExecutionBatch,
    ExecutionPlan,
    partition_batches,
)
from orchestra_core.orchestration.state import (
    OrchestrationResult,
    SkippedStep,
    StepAttempt,
    StepResult,
)

__all__ = [
    "ConcurrencyScheduler",
    "DependencyGraphResolver",
    "DispatchTable",
    "ExecutionBatch",
    "ExecutionPlan",
    "LoadOrderResult",
    "OrchestrationResult",
    "ResourceManager",
    "ResultAggregator",
    "RollbackCoordinator",
    "RollbackReport",
    "SkippedStep",
    "StepAttempt",
    "StepExecutor",
    "StepOutcome",
    "StepResult",
    "SuccessCriteriaEvaluator",
    "evaluate_success",
    "partition_batches",
    "resolve_load_order",
    "stages_from_levels",
]
