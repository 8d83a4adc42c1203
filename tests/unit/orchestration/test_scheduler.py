"""Unit tests — ConcurrencyScheduler (batching, retries, timeouts, halt, rollback)."""

from __future__ import annotations

import time

import pytest

from orchestra_core.config import Settings
from orchestra_core.exceptions import UnknownTargetError
from orchestra_core.orchestration.dispatch import DispatchTable, StepOutcome
from orchestra_core.orchestration.resource_manager import ResourceManager
from orchestra_core.orchestration.scheduler import ConcurrencyScheduler, partition_batches
from orchestra_core.protocol.models import ErrorKind, Stage, StepDefinition, SuccessCriteria


@pytest.fixture
def scheduler() -> ConcurrencyScheduler:
    return ConcurrencyScheduler(max_concurrency=4)


# ---------------------------------------------------------------------------
# Batch partitioning and planning
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestPartitionBatches:
    def test_ungrouped_steps_are_singletons(self) -> None:
        stage = Stage(name="s", steps=[StepDefinition(target="a"), StepDefinition(target="b")])
        batches = partition_batches(stage)
        assert [[s.target for s in b.steps] for b in batches] == [["a"], ["b"]]
        assert not any(b.is_parallel for b in batches)

    def test_group_positioned_at_first_member(self) -> None:
        stage = Stage(
            name="s",
            steps=[
                StepDefinition(target="a"),
                StepDefinition(target="g1", parallel_group="g"),
                StepDefinition(target="b"),
                StepDefinition(target="g2", parallel_group="g"),
            ],
        )
        batches = partition_batches(stage)
        assert [[s.target for s in b.steps] for b in batches] == [["a"], ["g1", "g2"], ["b"]]
        assert batches[1].group == "g"

    def test_plan_reports_effective_concurrency(self, scheduler, build_playbook) -> None:
        playbook = build_playbook(
            {"s": [{"target": "a", "parallel_group": "g"}, {"target": "b", "parallel_group": "g"}]},
            options={"max_concurrency": 2},
        )
        plan = scheduler.plan(playbook)
        assert plan.max_concurrency == 2
        assert plan.to_dict()["stages"][0]["batches"][0]["targets"] == ["a", "b"]
        assert scheduler.plan(playbook, max_concurrency=1).max_concurrency == 1

    def test_invalid_concurrency_rejected(self, build_playbook) -> None:
        with pytest.raises(ValueError):
            ConcurrencyScheduler(max_concurrency=0)
        with pytest.raises(ValueError):
            ConcurrencyScheduler().plan(build_playbook({}), max_concurrency=0)


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestExecuteSuccess:
    async def test_empty_playbook_succeeds(self, scheduler, executor, build_playbook) -> None:
        result = await scheduler.execute(build_playbook({}), executor)
        assert result.overall_success is True
        assert result.completed_steps == ()
        assert result.failed_steps == ()
        assert executor.calls == []

    async def test_empty_stage_is_valid(self, scheduler, executor, build_playbook) -> None:
        playbook = build_playbook({"empty": [], "work": [{"target": "a"}]})
        result = await scheduler.execute(playbook, executor)
        assert result.overall_success is True
        assert [r.step_target for r in result.completed_steps] == ["a"]

    async def test_stages_and_steps_run_in_order(self, scheduler, executor, build_playbook) -> None:
        playbook = build_playbook(
            {"one": [{"target": "a"}, {"target": "b"}], "two": [{"target": "c"}]}
        )
        result = await scheduler.execute(playbook, executor)
        assert executor.calls == ["a", "b", "c"]
        assert result.summary() == {"total": 3, "succeeded": 3, "failed": 0, "skipped": 0}
        assert result.get_step("b").stage == "one"

    async def test_caller_chosen_execution_id(self, scheduler, executor, build_playbook) -> None:
        result = await scheduler.execute(
            build_playbook({"s": [{"target": "a"}]}), executor, execution_id="run-42"
        )
        assert result.execution_id == "run-42"

    async def test_grouped_batch_bounded_by_max_concurrency(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(delays={"a": 0.1, "b": 0.1, "c": 0.1})
        playbook = build_playbook(
            {"s": [{"target": t, "parallel_group": "g"} for t in ("a", "b", "c")]}
        )
        started = time.monotonic()
        result = await scheduler.execute(playbook, executor, max_concurrency=2)
        elapsed = time.monotonic() - started

        assert result.overall_success is True
        assert len(result.completed_steps) == 3
        assert executor.max_in_flight == 2
        # Two waves of 0.1s each.
        assert elapsed >= 0.19

    async def test_grouped_batch_runs_concurrently(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(delays={"a": 0.05, "b": 0.05, "c": 0.05})
        playbook = build_playbook(
            {"s": [{"target": t, "parallel_group": "g"} for t in ("a", "b", "c")]}
        )
        await scheduler.execute(playbook, executor)
        assert executor.max_in_flight == 3

    async def test_ungrouped_steps_never_overlap(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(delays={"a": 0.02, "b": 0.02})
        await scheduler.execute(build_playbook({"s": [{"target": "a"}, {"target": "b"}]}), executor)
        assert executor.max_in_flight == 1

    async def test_templates_resolved_from_run_variables(
        self, scheduler, executor, build_playbook
    ) -> None:
        playbook = build_playbook(
            {"s": [{"target": "a", "parameters": {"ws": "{{var.env_name}}", "n": "{{var.count}}"}}]},
            variables={"env_name": "prod", "count": 1},
        )
        await scheduler.execute(playbook, executor, variables={"env_name": "lab"})
        assert executor.parameters["a"] == {"ws": "lab", "n": 1}

    async def test_variables_are_read_only(self, scheduler, build_playbook) -> None:
        table = DispatchTable()

        @table.register("mutate")
        async def mutate(params, variables):
            variables["x"] = 2

        result = await scheduler.execute(
            build_playbook({"s": [{"target": "mutate"}]}), table, variables={"x": 1}
        )
        assert result.failed_steps[0].error_kind is ErrorKind.EXCEPTION


# ---------------------------------------------------------------------------
# Retries and timeouts
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestRetriesAndTimeouts:
    async def test_retry_succeeds_on_third_attempt(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"a": [False, False, True]})
        playbook = build_playbook({"s": [{"target": "a", "retry_count": 2}]})
        result = await scheduler.execute(playbook, executor)

        step = result.get_step("a")
        assert step.succeeded is True
        assert step.attempt_number == 3
        assert len(step.attempts) == 3
        assert [a.succeeded for a in step.attempts] == [False, False, True]
        assert result.overall_success is True

    async def test_retries_exhausted(self, scheduler, make_executor, build_playbook) -> None:
        executor = make_executor(script={"a": [False]})
        playbook = build_playbook({"s": [{"target": "a", "retry_count": 1}]})
        result = await scheduler.execute(playbook, executor)

        assert executor.call_count("a") == 2
        step = result.failed_steps[0]
        assert step.attempt_number == 2
        assert step.error_kind is ErrorKind.FAILED
        assert result.overall_success is False

    async def test_exception_is_a_failed_attempt(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"a": [RuntimeError("boom"), True]})
        playbook = build_playbook({"s": [{"target": "a", "retry_count": 1}]})
        result = await scheduler.execute(playbook, executor)

        step = result.get_step("a")
        assert step.succeeded is True
        assert step.attempts[0].error == "boom"
        assert step.attempts[0].error_kind is ErrorKind.EXCEPTION

    async def test_timeout_cancels_attempt(self, scheduler, make_executor, build_playbook) -> None:
        executor = make_executor(delays={"slow": 5.0})
        playbook = build_playbook({"s": [{"target": "slow", "timeout": 0.05}]})
        started = time.monotonic()
        result = await scheduler.execute(playbook, executor)

        assert time.monotonic() - started < 2.0
        step = result.failed_steps[0]
        assert step.error_kind is ErrorKind.TIMEOUT
        assert "timed out" in step.error
        assert executor.in_flight == 0

    async def test_retry_delay_applied(self, scheduler, make_executor, build_playbook) -> None:
        executor = make_executor(script={"a": [False, True]})
        playbook = build_playbook({"s": [{"target": "a", "retry_count": 1, "retry_delay": 0.1}]})
        started = time.monotonic()
        result = await scheduler.execute(playbook, executor)
        assert result.overall_success is True
        assert time.monotonic() - started >= 0.09

    async def test_unresolvable_template_is_not_retried(
        self, scheduler, executor, build_playbook
    ) -> None:
        playbook = build_playbook(
            {"s": [{"target": "a", "retry_count": 3, "parameters": {"x": "{{var.missing}}"}}]}
        )
        result = await scheduler.execute(playbook, executor)
        assert executor.calls == []
        step = result.failed_steps[0]
        assert step.error_kind is ErrorKind.TEMPLATE
        assert step.attempt_number == 1


# ---------------------------------------------------------------------------
# Halt semantics
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestHalt:
    async def test_failure_stops_later_stages(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"bad": [False]})
        playbook = build_playbook(
            {
                "one": [{"target": "ok"}, {"target": "bad"}, {"target": "after"}],
                "two": [{"target": "later"}],
            }
        )
        result = await scheduler.execute(playbook, executor)

        assert executor.call_count("after") == 0
        assert executor.call_count("later") == 0
        assert result.halted is True
        assert result.halted_by == "bad"
        assert {s.step_target for s in result.skipped_steps} == {"after", "later"}
        assert [r.step_target for r in result.completed_steps] == ["ok"]
        assert result.overall_success is False

    async def test_continue_on_error_step_does_not_halt(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"flaky": [False]})
        playbook = build_playbook(
            {"one": [{"target": "flaky", "continue_on_error": True}], "two": [{"target": "b"}]}
        )
        result = await scheduler.execute(playbook, executor)
        assert executor.call_count("b") == 1
        assert result.halted is False
        assert [r.step_target for r in result.failed_steps] == ["flaky"]

    async def test_global_override_never_halts(self, make_executor, build_playbook) -> None:
        executor = make_executor(script={"bad": [False]})
        scheduler = ConcurrencyScheduler(continue_on_error=True)
        playbook = build_playbook({"one": [{"target": "bad"}], "two": [{"target": "b"}]})
        result = await scheduler.execute(playbook, executor)
        assert executor.call_count("b") == 1
        assert result.halted is False

    async def test_mapping_failure_halts(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"bad": [{"succeeded": False, "error": "boom"}]})
        playbook = build_playbook({"one": [{"target": "bad"}], "two": [{"target": "later"}]})
        result = await scheduler.execute(playbook, executor)

        assert executor.call_count("later") == 0
        assert result.halted is True
        assert result.overall_success is False
        assert result.failed_steps[0].error == "boom"

    async def test_unrecognised_result_fails_step(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"odd": [42]})
        playbook = build_playbook({"one": [{"target": "odd"}]})
        result = await scheduler.execute(playbook, executor)

        failed = result.get_step("odd")
        assert failed.succeeded is False
        assert "int" in failed.error
        assert result.overall_success is False

    async def test_playbook_option_overrides_scheduler(
        self, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"bad": [False]})
        scheduler = ConcurrencyScheduler(continue_on_error=True)
        playbook = build_playbook(
            {"one": [{"target": "bad"}], "two": [{"target": "b"}]},
            options={"continue_on_error": False},
        )
        result = await scheduler.execute(playbook, executor)
        assert executor.call_count("b") == 0
        assert result.halted is True

    async def test_in_flight_siblings_finish_after_halt(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"fast_bad": [False]}, delays={"slow_ok": 0.1})
        playbook = build_playbook(
            {
                "one": [
                    {"target": "fast_bad", "parallel_group": "g"},
                    {"target": "slow_ok", "parallel_group": "g"},
                    {"target": "next"},
                ],
                "two": [{"target": "later"}],
            }
        )
        result = await scheduler.execute(playbook, executor)

        assert result.halted_by == "fast_bad"
        assert [r.step_target for r in result.completed_steps] == ["slow_ok"]
        assert executor.call_count("next") == 0
        assert executor.call_count("later") == 0

    async def test_mixed_group_halts_only_on_strict_member(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"soft": [False]})
        playbook = build_playbook(
            {
                "one": [
                    {"target": "soft", "parallel_group": "g", "continue_on_error": True},
                    {"target": "strict", "parallel_group": "g"},
                ],
                "two": [{"target": "later"}],
            }
        )
        result = await scheduler.execute(playbook, executor)
        assert result.halted is False
        assert executor.call_count("later") == 1
        assert {r.step_target for r in result.completed_steps} == {"strict", "later"}


# ---------------------------------------------------------------------------
# Success criteria
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestCriteriaIntegration:
    async def test_allowed_failure_keeps_run_successful(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"optional": [False]})
        playbook = build_playbook(
            {"s": [{"target": "optional", "continue_on_error": True}, {"target": "b"}]},
            success_criteria={"allowed_failures": {"optional"}},
        )
        result = await scheduler.execute(playbook, executor)
        assert result.overall_success is True

    async def test_explicit_criteria_override_playbook(
        self, scheduler, make_executor, build_playbook
    ) -> None:
        executor = make_executor(script={"x": [False]})
        playbook = build_playbook(
            {"s": [{"target": "x", "continue_on_error": True}, {"target": "b"}, {"target": "c"}]}
        )
        result = await scheduler.execute(
            playbook, executor, criteria=SuccessCriteria(minimum_success_count=2)
        )
        assert result.overall_success is True


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestRollbackIntegration:
    async def test_rollback_in_reverse_order(self, make_executor, build_playbook) -> None:
        executor = make_executor(script={"S3": [False]})
        undone: list[str] = []

        def undo(step) -> bool:
            undone.append(step.step_target)
            return True

        scheduler = ConcurrencyScheduler(rollback_enabled=True)
        playbook = build_playbook({"s": [{"target": "S1"}, {"target": "S2"}, {"target": "S3"}]})
        result = await scheduler.execute(playbook, executor, undo=undo)

        assert undone == ["S2", "S1"]
        assert result.rollback_performed is True
        assert result.rollback.rolled_back == ["S2", "S1"]
        assert result.overall_success is False

    async def test_partial_rollback_not_performed(self, make_executor, build_playbook) -> None:
        executor = make_executor(script={"S3": [False]})

        async def undo(step) -> bool:
            if step.step_target == "S2":
                raise RuntimeError("cannot undo")
            return True

        scheduler = ConcurrencyScheduler(rollback_enabled=True)
        playbook = build_playbook({"s": [{"target": "S1"}, {"target": "S2"}, {"target": "S3"}]})
        result = await scheduler.execute(playbook, executor, undo=undo)

        assert result.rollback_performed is False
        assert result.rollback.rolled_back == ["S1"]
        assert result.rollback.errors[0].target == "S2"

    async def test_no_rollback_when_disabled(self, scheduler, make_executor, build_playbook) -> None:
        executor = make_executor(script={"S2": [False]})
        undone: list[str] = []
        playbook = build_playbook({"s": [{"target": "S1"}, {"target": "S2"}]})
        result = await scheduler.execute(playbook, executor, undo=lambda s: undone.append(s) or True)
        assert undone == []
        assert result.rollback is None
        assert result.rollback_performed is False

    async def test_no_rollback_without_halt(self, make_executor, build_playbook) -> None:
        executor = make_executor(script={"S2": [False]})
        undone: list[str] = []
        scheduler = ConcurrencyScheduler(rollback_enabled=True)
        playbook = build_playbook(
            {"s": [{"target": "S1"}, {"target": "S2", "continue_on_error": True}]}
        )
        result = await scheduler.execute(playbook, executor, undo=lambda s: undone.append(s) or True)
        assert undone == []
        assert result.rollback_performed is False

    async def test_rollback_enabled_without_undo(self, make_executor, build_playbook) -> None:
        executor = make_executor(script={"S2": [False]})
        scheduler = ConcurrencyScheduler(rollback_enabled=True)
        result = await scheduler.execute(
            build_playbook({"s": [{"target": "S1"}, {"target": "S2"}]}), executor
        )
        assert result.rollback is None
        assert result.rollback_performed is False


# ---------------------------------------------------------------------------
# Dispatch table, resources and settings
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestCollaborators:
    async def test_unknown_target_rejected_before_running(
        self, scheduler, build_playbook
    ) -> None:
        calls: list[str] = []
        table = DispatchTable({"a": lambda p, v: calls.append("a")})
        playbook = build_playbook({"s": [{"target": "a"}, {"target": "nope"}]})
        with pytest.raises(UnknownTargetError) as exc_info:
            await scheduler.execute(playbook, table)
        assert exc_info.value.targets == ["nope"]
        assert calls == []

    async def test_dispatch_table_handlers(self, scheduler, build_playbook) -> None:
        table = DispatchTable()

        @table.register("sync_step")
        def sync_step(params, variables):
            return {"echo": params["value"]}

        @table.register("async_step")
        async def async_step(params, variables):
            return StepOutcome.fail("nope")

        playbook = build_playbook(
            {"s": [
                {"target": "sync_step", "parameters": {"value": 3}},
                {"target": "async_step", "continue_on_error": True},
            ]}
        )
        result = await scheduler.execute(playbook, table)
        assert result.get_step("sync_step").output == {"echo": 3}
        assert result.get_step("async_step").error == "nope"

    async def test_resource_limit_serialises_target(self, make_executor, build_playbook) -> None:
        executor = make_executor(delays={"apply": 0.02})
        scheduler = ConcurrencyScheduler(resource_manager=ResourceManager({"apply": 1}))
        playbook = build_playbook(
            {"s": [
                {"target": "apply", "parallel_group": "g"},
                {"target": "apply", "parallel_group": "g"},
            ]}
        )
        result = await scheduler.execute(playbook, executor)
        assert executor.max_in_flight == 1
        assert len(result.completed_steps) == 2

    def test_from_settings(self) -> None:
        settings = Settings(
            scheduler={"max_concurrency": 3, "continue_on_error": True, "rollback_enabled": True},
            resources={"target_limits": {"apply": 1}},
        )
        scheduler = ConcurrencyScheduler.from_settings(settings)
        assert scheduler._max_concurrency == 3
        assert scheduler._continue_on_error is True
        assert scheduler._rollback_enabled is True

    async def test_run_context_cleared(self, scheduler, executor, build_playbook) -> None:
        from orchestra_core.logging import _ctx_execution_id, _ctx_step

        await scheduler.execute(build_playbook({"s": [{"target": "a"}]}), executor)
        assert _ctx_execution_id.get() is None
        assert _ctx_step.get() is None
