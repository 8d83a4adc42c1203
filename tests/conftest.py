"""Shared pytest fixtures for the orchestra-core test suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Iterator, Mapping

import pytest

from orchestra_core import config
from orchestra_core.config import Settings, override_settings
from orchestra_core.orchestration.dispatch import StepExecutor, StepOutcome
from orchestra_core.protocol.models import (
    ModuleDescriptor,
    PlaybookDefinition,
    Stage,
    StepDefinition,
)
from orchestra_core.protocol.parser import PlaybookParser


# ---------------------------------------------------------------------------
# Executor stub
# ---------------------------------------------------------------------------


class RecordingExecutor(StepExecutor):
    """Scripted executor that counts calls and tracks concurrency.

    ``script[target]`` is a list of outcomes consumed one per attempt; the
    last entry repeats.  A bool or an Exception instance (raised) is translated;
    anything else is returned as-is.  ``delays[target]`` sleeps before returning.
    """

    def __init__(
        self,
        script: Mapping[str, list[Any]] | None = None,
        delays: Mapping[str, float] | None = None,
    ) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delays = dict(delays or {})
        self.calls: list[str] = []
        self.parameters: dict[str, Mapping[str, Any]] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def call_count(self, target: str) -> int:
        return self.calls.count(target)

    async def invoke(
        self,
        target: str,
        parameters: Mapping[str, Any],
        variables: Mapping[str, Any],
    ) -> StepOutcome:
        self.calls.append(target)
        self.parameters[target] = parameters
        attempt = self.call_count(target)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(target, 0.0)
            if delay:
                await asyncio.sleep(delay)
            outcomes = self.script.get(target, [True])
            outcome = outcomes[min(attempt, len(outcomes)) - 1]
        finally:
            self.in_flight -= 1

        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, bool):
            return StepOutcome.ok(target) if outcome else StepOutcome.fail(f"{target} failed")
        return outcome


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def make_executor() -> type[RecordingExecutor]:
    return RecordingExecutor


def make_playbook(stages: dict[str, list[dict[str, Any]]], **kwargs: Any) -> PlaybookDefinition:
    return PlaybookDefinition(
        name=kwargs.pop("name", "test-playbook"),
        stages=[
            Stage(name=name, steps=[StepDefinition(**s) for s in steps])
            for name, steps in stages.items()
        ],
        **kwargs,
    )


@pytest.fixture
def build_playbook():
    return make_playbook


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Iterator[Settings]:
    previous = config._settings
    settings = Settings(
        scheduler={"max_concurrency": 2, "default_step_timeout": 5},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    yield settings
    override_settings(previous)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@pytest.fixture
def parser() -> PlaybookParser:
    return PlaybookParser()


@pytest.fixture
def abc_descriptors() -> list[ModuleDescriptor]:
    return [
        ModuleDescriptor(name="A"),
        ModuleDescriptor(name="B", dependencies={"A"}),
        ModuleDescriptor(name="C", dependencies={"A"}),
    ]


@pytest.fixture
def playbook_file(tmp_path: Path) -> Path:
    path = tmp_path / "lab-setup.yaml"
    path.write_text(
        "variables:\n"
        "  env_name: lab\n"
        "stages:\n"
        "  - name: prepare\n"
        "    steps:\n"
        "      - target: 0201_install_node\n"
        "        retryCount: 2\n"
        "        params:\n"
        "          workspace: '{{var.env_name}}'\n"
        "  - name: provision\n"
        "    steps:\n"
        "      - target: tofu_plan\n"
        "        parallelGroup: infra\n"
        "        timeout: 60\n"
        "      - target: image_build\n"
        "        parallelGroup: infra\n"
        "        continueOnError: true\n",
        encoding="utf-8",
    )
    return path
