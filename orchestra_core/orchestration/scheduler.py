"""Orchestration layer — Concurrency scheduler.

The ConcurrencyScheduler drives the full lifecycle of a playbook run:
  1. Check that the executor can dispatch every target (load-time check)
  2. For each stage, strictly in order:
     a. Partition steps into batches (one per parallel group, one per
        ungrouped step)
     b. Run each batch to completion before starting the next one
     c. For each step: resolve {{var.X}} templates, then attempt up to
        ``retry_count + 1`` times, each attempt bounded by ``timeout``
  3. Halt on a terminal failure the step does not tolerate
  4. Evaluate the success criteria
  5. Roll back completed steps if the run halted and rollback is enabled
  6. Freeze and return the OrchestrationResult

Batching:
  Steps sharing a ``parallel_group`` inside a stage form one batch,
  positioned where the group's first member appears.  A grouped batch runs
  on a worker pool of ``min(max_concurrency, len(batch))`` slots.
  Ungrouped steps run one at a time in declaration order.

Halt semantics:
  A step that fails terminally with ``continue_on_error=False`` halts the
  run unless the global override is set.  Siblings already running in the
  same batch are awaited and recorded; no further batch or stage starts.
  Every step that never started is recorded as skipped.

Result collection:
  Workers return their StepResult through their task.  Only the
  coordinator (the task running ``execute``) writes to the
  ResultAggregator, in completion order.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from orchestra_core.config import Settings, get_settings
from orchestra_core.exceptions import (
    StepTimeoutError,
    TemplateResolutionError,
)
from orchestra_core.logging import bind_run_context, clear_run_context, get_logger
from orchestra_core.orchestration.aggregator import ResultAggregator, SuccessCriteriaEvaluator
from orchestra_core.orchestration.dispatch import StepExecutor, coerce_outcome
from orchestra_core.orchestration.resource_manager import ResourceManager
from orchestra_core.orchestration.rollback import RollbackCoordinator, RollbackReport, UndoCallback
from orchestra_core.orchestration.state import OrchestrationResult, StepAttempt, StepResult
from orchestra_core.protocol.constants import DEFAULT_MAX_CONCURRENCY
from orchestra_core.protocol.models import (
    ErrorKind,
    PlaybookDefinition,
    Stage,
    StepDefinition,
    SuccessCriteria,
)
from orchestra_core.protocol.template import TemplateResolver

log = get_logger(__name__)

_SKIP_REASON = "Skipped: run halted after a failed step."


@dataclass
class ExecutionBatch:
    """Steps of one stage that start together."""

    index: int
    steps: list[StepDefinition]
    group: str | None = None

    @property
    def is_parallel(self) -> bool:
        return self.group is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "group": self.group,
            "targets": [s.target for s in self.steps],
        }


@dataclass
class StagePlan:
    name: str
    batches: list[ExecutionBatch] = field(default_factory=list)


@dataclass
class ExecutionPlan:
    """What a run would do, without doing it."""

    playbook: str
    max_concurrency: int
    stages: list[StagePlan] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "playbook": self.playbook,
            "max_concurrency": self.max_concurrency,
            "stages": [
                {"name": s.name, "batches": [b.to_dict() for b in s.batches]}
                for s in self.stages
            ],
        }


def partition_batches(stage: Stage) -> list[ExecutionBatch]:
    """Split a stage's steps into batches, preserving declaration order."""
    batches: list[ExecutionBatch] = []
    groups: dict[str, ExecutionBatch] = {}
    for step in stage.steps:
        group = step.parallel_group
        if group is None:
            batches.append(ExecutionBatch(index=len(batches), steps=[step]))
        elif group in groups:
            groups[group].steps.append(step)
        else:
            batch = ExecutionBatch(index=len(batches), steps=[step], group=group)
            groups[group] = batch
            batches.append(batch)
    return batches


class ConcurrencyScheduler:
    """Executes a PlaybookDefinition end-to-end.

    Usage::

        scheduler = ConcurrencyScheduler(max_concurrency=4, rollback_enabled=True)
        result = await scheduler.execute(playbook, executor, variables={"env": "lab"}, undo=undo)
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        continue_on_error: bool = False,
        rollback_enabled: bool = False,
        resource_manager: ResourceManager | None = None,
        evaluator: SuccessCriteriaEvaluator | None = None,
        rollback_coordinator: RollbackCoordinator | None = None,
        allow_env: bool = True,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._continue_on_error = continue_on_error
        self._rollback_enabled = rollback_enabled
        self._resources = resource_manager or ResourceManager()
        self._evaluator = evaluator or SuccessCriteriaEvaluator()
        self._rollback = rollback_coordinator or RollbackCoordinator()
        self._allow_env = allow_env

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ConcurrencyScheduler":
        settings = settings or get_settings()
        return cls(
            max_concurrency=settings.scheduler.max_concurrency,
            continue_on_error=settings.scheduler.continue_on_error,
            rollback_enabled=settings.scheduler.rollback_enabled,
            resource_manager=ResourceManager.from_config(settings.resources),
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def plan(
        self, playbook: PlaybookDefinition, max_concurrency: int | None = None
    ) -> ExecutionPlan:
        """Return the stages and batches *playbook* would run, without running them."""
        return ExecutionPlan(
            playbook=playbook.name,
            max_concurrency=self._effective_concurrency(playbook, max_concurrency),
            stages=[
                StagePlan(name=stage.name, batches=partition_batches(stage))
                for stage in playbook.stages
            ],
        )

    async def execute(
        self,
        playbook: PlaybookDefinition,
        executor: StepExecutor,
        variables: Mapping[str, Any] | None = None,
        max_concurrency: int | None = None,
        undo: UndoCallback | None = None,
        criteria: SuccessCriteria | None = None,
        execution_id: str | None = None,
    ) -> OrchestrationResult:
        """Run *playbook* and return the final :class:`OrchestrationResult`.

        Args:
            playbook:        The validated playbook.
            executor:        Invoked once per step attempt.
            variables:       Run variables, layered over ``playbook.variables``.
                             Read-only for the duration of the run.
            max_concurrency: Overrides the playbook's and the scheduler's bound.
            undo:            Compensating callback used when rolling back.
            criteria:        Overrides ``playbook.success_criteria``.
            execution_id:    Caller-chosen run ID.  Generated when omitted.

        Raises:
            UnknownTargetError: The executor cannot dispatch some target.
                Raised before any step runs.
        """
        validate = getattr(executor, "validate", None)
        if callable(validate):
            validate(playbook)

        bound = self._effective_concurrency(playbook, max_concurrency)
        options = playbook.options
        continue_all = (
            self._continue_on_error if options.continue_on_error is None else options.continue_on_error
        )
        rollback_enabled = self._rollback_enabled if options.rollback is None else options.rollback
        run_variables: Mapping[str, Any] = MappingProxyType(
            {**playbook.variables, **(variables or {})}
        )

        aggregator = ResultAggregator(playbook=playbook.name, execution_id=execution_id)
        bind_run_context(execution_id=aggregator.execution_id)
        try:
            log.info(
                "run_started",
                playbook=playbook.name,
                stages=len(playbook.stages),
                steps=playbook.step_count,
                max_concurrency=bound,
            )

            for stage in playbook.stages:
                if aggregator.halted:
                    for step in stage.steps:
                        aggregator.skip(stage.name, step.target, _SKIP_REASON)
                    continue
                await self._run_stage(
                    stage, executor, run_variables, bound, continue_all, aggregator
                )

            overall_success = self._evaluator.evaluate(
                aggregator.results,
                criteria if criteria is not None else playbook.success_criteria,
            )

            report: RollbackReport | None = None
            if aggregator.halted and rollback_enabled:
                if undo is None:
                    log.warning("rollback_skipped", reason="no undo callback supplied")
                else:
                    report = await self._rollback.rollback(aggregator.completed, undo)

            result = aggregator.finalize(overall_success=overall_success, rollback=report)
            log.info(
                "run_finished",
                playbook=playbook.name,
                overall_success=result.overall_success,
                halted=result.halted,
                rollback_performed=result.rollback_performed,
                duration=round(result.duration, 3),
                **result.summary(),
            )
            return result
        finally:
            clear_run_context()

    # ------------------------------------------------------------------
    # Stages and batches
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        stage: Stage,
        executor: StepExecutor,
        variables: Mapping[str, Any],
        bound: int,
        continue_all: bool,
        aggregator: ResultAggregator,
    ) -> None:
        bind_run_context(stage=stage.name)
        batches = partition_batches(stage)
        log.info("stage_started", stage=stage.name, batches=len(batches), steps=len(stage.steps))

        for batch in batches:
            if aggregator.halted:
                for step in batch.steps:
                    aggregator.skip(stage.name, step.target, _SKIP_REASON)
                continue

            if batch.is_parallel and len(batch.steps) > 1:
                await self._run_parallel_batch(
                    stage, batch, executor, variables, bound, continue_all, aggregator
                )
            else:
                for step in batch.steps:
                    result = await self._run_step(stage, step, executor, variables)
                    self._collect(aggregator, result, continue_all)

        log.info("stage_finished", stage=stage.name, halted=aggregator.halted)

    async def _run_parallel_batch(
        self,
        stage: Stage,
        batch: ExecutionBatch,
        executor: StepExecutor,
        variables: Mapping[str, Any],
        bound: int,
        continue_all: bool,
        aggregator: ResultAggregator,
    ) -> None:
        workers = min(bound, len(batch.steps))
        pool = asyncio.Semaphore(workers)
        log.debug(
            "batch_started",
            group=batch.group,
            size=len(batch.steps),
            workers=workers,
        )

        async def _worker(step: StepDefinition) -> StepResult:
            async with pool:
                return await self._run_step(stage, step, executor, variables)

        tasks = [
            asyncio.create_task(_worker(step), name=f"step_{stage.name}_{step.target}")
            for step in batch.steps
        ]
        try:
            for finished in asyncio.as_completed(tasks):
                self._collect(aggregator, await finished, continue_all)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    def _collect(
        self, aggregator: ResultAggregator, result: StepResult, continue_all: bool
    ) -> None:
        aggregator.record(result)
        if result.succeeded or result.continue_on_error or continue_all:
            return
        aggregator.halt(result.step_target)
        log.warning("run_halting", target=result.step_target, error=result.error)

    # ------------------------------------------------------------------
    # Steps and attempts
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        stage: Stage,
        step: StepDefinition,
        executor: StepExecutor,
        variables: Mapping[str, Any],
    ) -> StepResult:
        bind_run_context(stage=stage.name, step=step.target)
        attempts: list[StepAttempt] = []

        try:
            parameters = TemplateResolver(variables, allow_env=self._allow_env).resolve(
                step.parameters
            )
        except TemplateResolutionError as exc:
            now = time.time()
            attempts.append(
                StepAttempt(
                    step_target=step.target,
                    attempt_number=1,
                    started_at=now,
                    finished_at=now,
                    succeeded=False,
                    error=exc.message,
                    error_kind=ErrorKind.TEMPLATE,
                )
            )
            log.error("step_parameters_unresolved", target=step.target, error=exc.message)
            return StepResult.from_attempts(stage.name, attempts, step.continue_on_error)

        max_attempts = step.retry_count + 1
        for attempt_number in range(1, max_attempts + 1):
            log.info("step_started", target=step.target, attempt=attempt_number)
            attempt = await self._attempt(step, attempt_number, parameters, executor, variables)
            attempts.append(attempt)

            if attempt.succeeded:
                log.info(
                    "step_completed",
                    target=step.target,
                    attempt=attempt_number,
                    duration=round(attempt.duration, 3),
                )
                break

            if attempt_number < max_attempts:
                delay = step.delay_for_attempt(attempt_number)
                log.warning(
                    "step_retry",
                    target=step.target,
                    attempt=attempt_number,
                    delay=delay,
                    error_kind=attempt.error_kind.value if attempt.error_kind else None,
                    error=attempt.error,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
        else:
            log.error(
                "step_failed",
                target=step.target,
                attempts=len(attempts),
                error_kind=attempts[-1].error_kind.value if attempts[-1].error_kind else None,
                error=attempts[-1].error,
                continue_on_error=step.continue_on_error,
            )

        return StepResult.from_attempts(stage.name, attempts, step.continue_on_error)

    async def _attempt(
        self,
        step: StepDefinition,
        attempt_number: int,
        parameters: dict[str, Any],
        executor: StepExecutor,
        variables: Mapping[str, Any],
    ) -> StepAttempt:
        async with self._resources.acquire(step.target):
            started_at = time.time()
            try:
                raw = await asyncio.wait_for(
                    executor.invoke(step.target, parameters, variables),
                    timeout=step.timeout,
                )
            except asyncio.TimeoutError:
                err = StepTimeoutError(step.target, step.timeout)
                return self._failed_attempt(
                    step, attempt_number, started_at, err.message, ErrorKind.TIMEOUT
                )
            except Exception as exc:
                return self._failed_attempt(
                    step,
                    attempt_number,
                    started_at,
                    str(exc) or type(exc).__name__,
                    ErrorKind.EXCEPTION,
                )

        outcome = coerce_outcome(step.target, raw, strict=True)
        return StepAttempt(
            step_target=step.target,
            attempt_number=attempt_number,
            started_at=started_at,
            finished_at=time.time(),
            succeeded=outcome.succeeded,
            output=outcome.output,
            error=None if outcome.succeeded else (outcome.error or "Executor reported failure"),
            error_kind=None if outcome.succeeded else ErrorKind.FAILED,
        )

    @staticmethod
    def _failed_attempt(
        step: StepDefinition,
        attempt_number: int,
        started_at: float,
        error: str,
        kind: ErrorKind,
    ) -> StepAttempt:
        return StepAttempt(
            step_target=step.target,
            attempt_number=attempt_number,
            started_at=started_at,
            finished_at=time.time(),
            succeeded=False,
            error=error,
            error_kind=kind,
        )

    def _effective_concurrency(
        self, playbook: PlaybookDefinition, override: int | None
    ) -> int:
        if override is not None:
            bound = override
        else:
            bound = playbook.options.max_concurrency or self._max_concurrency
        if bound < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {bound}")
        return bound
