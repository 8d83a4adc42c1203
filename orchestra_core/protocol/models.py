"""Protocol — Canonical data models.

Module descriptors, playbooks, stages, steps and success criteria are
defined here and validated through Pydantic v2.  Instances are frozen once
validated: the orchestration layer only ever reads them.
Do not add business logic here, only data shapes and their invariants.

Field names are snake_case.  Playbooks authored with camelCase keys
(``retryCount``, ``continueOnError``, ``parallelGroup``, ...) are accepted
through validation aliases.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Iterator

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from orchestra_core.protocol.constants import (
    DEFAULT_MODULE_VERSION,
    DEFAULT_RETRY_BACKOFF_FACTOR,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    MAX_CONCURRENCY,
    MAX_RETRY_COUNT,
    MAX_RETRY_DELAY_SECONDS,
    MAX_STEP_TIMEOUT_SECONDS,
    NAME_MAX_LEN,
    TARGET_MAX_LEN,
)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    """Terminal status of a step within a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    """Why a step attempt failed."""

    FAILED = "failed"        # executor reported failure
    TIMEOUT = "timeout"      # attempt exceeded its timeout and was cancelled
    EXCEPTION = "exception"  # executor raised
    TEMPLATE = "template"    # parameters could not be resolved; never retried


# ---------------------------------------------------------------------------
# Module descriptors
# ---------------------------------------------------------------------------


class ModuleDescriptor(BaseModel):
    """A named unit with declared dependencies on other modules."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    version: str = DEFAULT_MODULE_VERSION
    dependencies: frozenset[str] = Field(
        default_factory=frozenset,
        validation_alias=_alias("dependencies", "depends_on", "requires"),
        description="Names of the modules this module depends on.",
    )
    required: bool = True
    version_requirements: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=_alias("version_requirements", "versionRequirements"),
        description=(
            "Optional PEP-440 specifiers keyed by dependency name "
            "(e.g. {'core': '>=1.2,<2'})."
        ),
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        try:
            Version(v)
        except InvalidVersion:
            raise ValueError(f"Version '{v}' is not a valid PEP-440 version.")
        return v

    @model_validator(mode="after")
    def validate_requirements(self) -> "ModuleDescriptor":
        for dep, specifier in self.version_requirements.items():
            if dep not in self.dependencies:
                raise ValueError(
                    f"Module '{self.name}' has a version requirement for "
                    f"'{dep}' but does not declare it as a dependency."
                )
            try:
                SpecifierSet(specifier, prereleases=True)
            except InvalidSpecifier:
                raise ValueError(
                    f"Module '{self.name}': invalid version specifier '{specifier}' "
                    f"for dependency '{dep}'."
                )
        return self


# ---------------------------------------------------------------------------
# Playbooks
# ---------------------------------------------------------------------------


class StepDefinition(BaseModel):
    """The smallest unit of work in a playbook."""

    model_config = ConfigDict(frozen=True)

    target: str = Field(
        min_length=1,
        max_length=TARGET_MAX_LEN,
        description="Identifier the executor dispatches on (e.g. '0201_install_node').",
    )
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=_alias("parameters", "params"),
        description="Step parameters.  String values may contain {{var.X}} / {{env.X}}.",
    )
    timeout: Annotated[float, Field(gt=0, le=MAX_STEP_TIMEOUT_SECONDS)] = (
        DEFAULT_STEP_TIMEOUT_SECONDS
    )
    retry_count: Annotated[int, Field(ge=0, le=MAX_RETRY_COUNT)] = Field(
        default=0, validation_alias=_alias("retry_count", "retryCount", "retries")
    )
    retry_delay: Annotated[float, Field(ge=0, le=MAX_RETRY_DELAY_SECONDS)] = Field(
        default=0.0,
        validation_alias=_alias("retry_delay", "retryDelay"),
        description="Seconds to wait before the first retry.  0 retries immediately.",
    )
    backoff_factor: Annotated[float, Field(ge=1.0, le=10.0)] = Field(
        default=DEFAULT_RETRY_BACKOFF_FACTOR,
        validation_alias=_alias("backoff_factor", "backoffFactor"),
    )
    continue_on_error: bool = Field(
        default=False, validation_alias=_alias("continue_on_error", "continueOnError")
    )
    parallel_group: str | None = Field(
        default=None,
        validation_alias=_alias("parallel_group", "parallelGroup", "group"),
        description="Steps of the same stage sharing this tag may run concurrently.",
    )
    description: str | None = None

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        if not v.strip() or v != v.strip():
            raise ValueError(f"Step target '{v}' must be non-blank without surrounding spaces.")
        return v

    def delay_for_attempt(self, attempt: int) -> float:
        """Return the delay in seconds before retrying after *attempt* (1-indexed)."""
        return self.retry_delay * (self.backoff_factor ** (attempt - 1))


class Stage(BaseModel):
    """An ordered phase of a playbook."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    steps: list[StepDefinition] = Field(default_factory=list)


class SuccessCriteria(BaseModel):
    """Rule set deciding whether a run with partial failures still succeeds."""

    model_config = ConfigDict(frozen=True)

    require_all_success: bool = Field(
        default=False, validation_alias=_alias("require_all_success", "requireAllSuccess")
    )
    minimum_success_count: Annotated[int | None, Field(ge=0)] = Field(
        default=None,
        validation_alias=_alias("minimum_success_count", "minimumSuccessCount"),
    )
    critical_steps: frozenset[str] = Field(
        default_factory=frozenset,
        validation_alias=_alias("critical_steps", "criticalSteps"),
    )
    allowed_failures: frozenset[str] = Field(
        default_factory=frozenset,
        validation_alias=_alias("allowed_failures", "allowedFailures"),
    )

    @model_validator(mode="after")
    def validate_disjoint(self) -> "SuccessCriteria":
        overlap = self.critical_steps & self.allowed_failures
        if overlap:
            raise ValueError(
                f"Step(s) {sorted(overlap)} cannot be both critical and allowed to fail."
            )
        return self

    @property
    def is_configured(self) -> bool:
        return bool(
            self.require_all_success
            or self.minimum_success_count is not None
            or self.critical_steps
            or self.allowed_failures
        )


class PlaybookOptions(BaseModel):
    """Per-playbook overrides of scheduler settings.  None = use the scheduler's."""

    model_config = ConfigDict(frozen=True)

    max_concurrency: Annotated[int | None, Field(ge=1, le=MAX_CONCURRENCY)] = Field(
        default=None, validation_alias=_alias("max_concurrency", "maxConcurrency")
    )
    continue_on_error: bool | None = Field(
        default=None, validation_alias=_alias("continue_on_error", "continueOnError")
    )
    rollback: bool | None = Field(
        default=None, validation_alias=_alias("rollback", "rollback_enabled", "rollbackEnabled")
    )


class PlaybookDefinition(BaseModel):
    """A declarative, multi-stage workflow of steps."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    description: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)
    stages: list[Stage] = Field(default_factory=list)
    success_criteria: SuccessCriteria = Field(
        default_factory=SuccessCriteria,
        validation_alias=_alias("success_criteria", "successCriteria"),
    )
    options: PlaybookOptions = Field(default_factory=PlaybookOptions)

    @model_validator(mode="after")
    def validate_stage_names_unique(self) -> "PlaybookDefinition":
        seen: set[str] = set()
        duplicates: list[str] = []
        for stage in self.stages:
            if stage.name in seen:
                duplicates.append(stage.name)
            seen.add(stage.name)
        if duplicates:
            raise ValueError(f"Duplicate stage names: {sorted(set(duplicates))}")
        return self

    def iter_steps(self) -> Iterator[tuple[Stage, StepDefinition]]:
        """Yield ``(stage, step)`` pairs in execution order."""
        for stage in self.stages:
            for step in stage.steps:
                yield stage, step

    def targets(self) -> set[str]:
        return {step.target for _, step in self.iter_steps()}

    @property
    def step_count(self) -> int:
        return sum(len(stage.steps) for stage in self.stages)
