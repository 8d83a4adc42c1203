"""Orchestration layer — Run state.

Plain dataclasses describing what happened during a run.  Everything here
is frozen: results are produced by the scheduler's coordinator task and the
:class:`~orchestra_core.orchestration.aggregator.ResultAggregator`, then
handed to the caller as-is.

Timestamps are ``time.time()`` floats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from orchestra_core.exceptions import StepFailedError
from orchestra_core.protocol.models import ErrorKind, StepStatus

if TYPE_CHECKING:
    from orchestra_core.orchestration.rollback import RollbackReport


@dataclass(frozen=True)
class StepAttempt:
    """One invocation of the executor for a step."""

    step_target: str
    attempt_number: int
    started_at: float
    finished_at: float
    succeeded: bool
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_target": self.step_target,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "succeeded": self.succeeded,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(frozen=True)
class StepResult:
    """Outcome of a step: its last attempt, plus the superseded ones."""

    step_target: str
    stage: str
    attempt_number: int
    started_at: float
    finished_at: float
    succeeded: bool
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    continue_on_error: bool = False
    attempts: tuple[StepAttempt, ...] = ()

    @classmethod
    def from_attempts(
        cls, stage: str, attempts: list[StepAttempt], continue_on_error: bool = False
    ) -> "StepResult":
        last = attempts[-1]
        return cls(
            step_target=last.step_target,
            stage=stage,
            attempt_number=last.attempt_number,
            started_at=attempts[0].started_at,
            finished_at=last.finished_at,
            succeeded=last.succeeded,
            output=last.output,
            error=last.error,
            error_kind=last.error_kind,
            continue_on_error=continue_on_error,
            attempts=tuple(attempts),
        )

    @property
    def status(self) -> StepStatus:
        return StepStatus.SUCCEEDED if self.succeeded else StepStatus.FAILED

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def to_error(self) -> StepFailedError | None:
        """Return the terminal failure as an exception instance (not raised), or None."""
        if self.succeeded:
            return None
        return StepFailedError(
            self.step_target, self.error or "unknown error", attempts=self.attempt_number
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_target": self.step_target,
            "stage": self.stage,
            "status": self.status.value,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "continue_on_error": self.continue_on_error,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass(frozen=True)
class SkippedStep:
    """A step that was never started because the run halted first."""

    step_target: str
    stage: str
    reason: str


@dataclass(frozen=True)
class OrchestrationResult:
    """Final, immutable record of one playbook run."""

    execution_id: str
    playbook: str
    started_at: float
    finished_at: float
    completed_steps: tuple[StepResult, ...] = ()
    failed_steps: tuple[StepResult, ...] = ()
    skipped_steps: tuple[SkippedStep, ...] = ()
    results: tuple[StepResult, ...] = field(default=(), repr=False)
    overall_success: bool = True
    halted: bool = False
    halted_by: str | None = None
    rollback_performed: bool = False
    rollback: "RollbackReport | None" = None

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def get_step(self, target: str) -> StepResult | None:
        """Return the last recorded result for *target*, or None."""
        for result in reversed(self.results):
            if result.step_target == target:
                return result
        return None

    def errors(self) -> list[StepFailedError]:
        """Return every terminal step failure as an exception instance (not raised)."""
        return [error for error in (r.to_error() for r in self.failed_steps) if error is not None]

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results) + len(self.skipped_steps),
            "succeeded": len(self.completed_steps),
            "failed": len(self.failed_steps),
            "skipped": len(self.skipped_steps),
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "execution_id": self.execution_id,
            "playbook": self.playbook,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "overall_success": self.overall_success,
            "halted": self.halted,
            "halted_by": self.halted_by,
            "rollback_performed": self.rollback_performed,
            "summary": self.summary(),
            "completed_steps": [r.to_dict() for r in self.completed_steps],
            "failed_steps": [r.to_dict() for r in self.failed_steps],
            "skipped_steps": [
                {"step_target": s.step_target, "stage": s.stage, "reason": s.reason}
                for s in self.skipped_steps
            ],
        }
        if self.rollback is not None:
            data["rollback"] = self.rollback.to_dict()
        return data
