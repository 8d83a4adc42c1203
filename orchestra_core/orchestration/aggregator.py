"""Orchestration layer — Result aggregation and success criteria.

``ResultAggregator`` is the only state shared across a run.  It is written
exclusively by the scheduler's coordinator task: workers hand their
:class:`StepResult` back through their task result and never touch the
aggregator themselves.

``SuccessCriteriaEvaluator`` is a pure function over recorded results:

  * ``require_all_success``  -> no step may have failed.
  * otherwise
      1. a failed critical step fails the run outright;
      2. failures of steps in ``allowed_failures`` are not counted;
      3. with ``minimum_success_count`` set, at least that many steps must
         have succeeded; without it, no uncounted failure may remain.

With nothing configured this reduces to "no step failed".
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING, Iterable

from orchestra_core.logging import get_logger
from orchestra_core.orchestration.state import OrchestrationResult, SkippedStep, StepResult
from orchestra_core.protocol.models import SuccessCriteria

if TYPE_CHECKING:
    from orchestra_core.orchestration.rollback import RollbackReport

log = get_logger(__name__)


class SuccessCriteriaEvaluator:
    """Decides a run's overall verdict from its step results."""

    def evaluate(self, results: Iterable[StepResult], criteria: SuccessCriteria) -> bool:
        results = list(results)
        failed = {r.step_target for r in results if not r.succeeded}
        succeeded_count = sum(1 for r in results if r.succeeded)

        if criteria.require_all_success:
            return not failed

        critical_failures = failed & criteria.critical_steps
        if critical_failures:
            log.info("critical_step_failed", steps=sorted(critical_failures))
            return False

        counted_failures = failed - criteria.allowed_failures

        if criteria.minimum_success_count is not None:
            if succeeded_count < criteria.minimum_success_count:
                log.info(
                    "minimum_success_not_met",
                    succeeded=succeeded_count,
                    required=criteria.minimum_success_count,
                )
                return False
            return True

        return not counted_failures


def evaluate_success(results: Iterable[StepResult], criteria: SuccessCriteria) -> bool:
    """Convenience wrapper around :meth:`SuccessCriteriaEvaluator.evaluate`."""
    return SuccessCriteriaEvaluator().evaluate(results, criteria)


class ResultAggregator:
    """Accumulates step results for one run, then freezes them.

    Usage::

        agg = ResultAggregator(playbook="lab-setup")
        agg.record(result)
        ...
        final = agg.finalize(overall_success=True)
    """

    def __init__(self, playbook: str, execution_id: str | None = None) -> None:
        self.execution_id = execution_id or uuid.uuid4().hex
        self.playbook = playbook
        self.started_at = time.time()
        self.halted_by: str | None = None
        self._results: list[StepResult] = []
        self._skipped: list[SkippedStep] = []
        self._final: OrchestrationResult | None = None

    @property
    def results(self) -> list[StepResult]:
        """All recorded results, in completion order."""
        return list(self._results)

    @property
    def completed(self) -> list[StepResult]:
        return [r for r in self._results if r.succeeded]

    @property
    def failed(self) -> list[StepResult]:
        return [r for r in self._results if not r.succeeded]

    @property
    def halted(self) -> bool:
        return self.halted_by is not None

    def record(self, result: StepResult) -> None:
        self._ensure_open()
        self._results.append(result)

    def skip(self, stage: str, target: str, reason: str) -> None:
        self._ensure_open()
        self._skipped.append(SkippedStep(step_target=target, stage=stage, reason=reason))

    def halt(self, target: str) -> None:
        """Mark the run as halted by *target*.  The first halting step wins."""
        self._ensure_open()
        if self.halted_by is None:
            self.halted_by = target

    def finalize(
        self,
        overall_success: bool,
        rollback: "RollbackReport | None" = None,
    ) -> OrchestrationResult:
        self._ensure_open()
        self._final = OrchestrationResult(
            execution_id=self.execution_id,
            playbook=self.playbook,
            started_at=self.started_at,
            finished_at=time.time(),
            completed_steps=tuple(self.completed),
            failed_steps=tuple(self.failed),
            skipped_steps=tuple(self._skipped),
            results=tuple(self._results),
            overall_success=overall_success,
            halted=self.halted,
            halted_by=self.halted_by,
            rollback_performed=rollback is not None and rollback.success,
            rollback=rollback,
        )
        return self._final

    def _ensure_open(self) -> None:
        if self._final is not None:
            raise RuntimeError(f"Run '{self.execution_id}' is already finalized.")
