"""Orchestration layer — Rollback coordinator.

When a run halts on a failure it does not tolerate and rollback is enabled,
the coordinator unwinds the steps that completed, most recent first, by
calling the caller-supplied undo callback once per step.

Rollback is best-effort: a failing undo is recorded and the walk carries
on with the next step.  Rollback failures never change the run's verdict,
which is decided before rollback starts.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence, Union

from orchestra_core.exceptions import RollbackFailedError
from orchestra_core.logging import get_logger
from orchestra_core.orchestration.state import StepResult

log = get_logger(__name__)

UndoCallback = Callable[[StepResult], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True)
class RollbackError:
    target: str
    error: str


@dataclass
class RollbackReport:
    """Per-step outcome of an unwind."""

    rolled_back: list[str] = field(default_factory=list)
    errors: list[RollbackError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "rolled_back": list(self.rolled_back),
            "errors": [{"target": e.target, "error": e.error} for e in self.errors],
        }


class RollbackCoordinator:
    """Unwinds completed steps in reverse chronological order.

    Usage::

        coordinator = RollbackCoordinator()
        report = await coordinator.rollback(result.completed_steps, undo)
    """

    async def rollback(
        self,
        completed_steps: Sequence[StepResult],
        undo: UndoCallback,
    ) -> RollbackReport:
        """Invoke *undo* for each step in *completed_steps*, most recent first.

        Args:
            completed_steps: Successful steps in the order they completed.
            undo:            Sync or async callable returning True on success.
        """
        report = RollbackReport()
        log.info("rollback_started", steps=len(completed_steps))

        for step in reversed(completed_steps):
            try:
                outcome = undo(step)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception as exc:
                error = RollbackFailedError(step.step_target, str(exc) or type(exc).__name__)
                report.errors.append(RollbackError(step.step_target, error.message))
                log.error("rollback_step_failed", target=step.step_target, error=error.message)
                continue

            if outcome:
                report.rolled_back.append(step.step_target)
                log.info("rollback_step_completed", target=step.step_target)
            else:
                error = RollbackFailedError(step.step_target, "undo callback returned failure")
                report.errors.append(RollbackError(step.step_target, error.message))
                log.error("rollback_step_failed", target=step.step_target, error=error.message)

        log.info(
            "rollback_finished",
            success=report.success,
            rolled_back=len(report.rolled_back),
            failed=len(report.errors),
        )
        return report
