"""orchestra-core — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. User config:   ~/.orchestra/config.yaml
    3. An explicit config file passed to ``Settings.load()``
    4. Environment variables prefixed with ORCHESTRA_

All settings are immutable after load.  Call ``Settings.load()`` once at
startup and hand the instance to ``ConcurrencyScheduler.from_settings``.
"""

from __future__ import annotations

from contextvars import ContextVar
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from orchestra_core.protocol.constants import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    MAX_CONCURRENCY,
    MAX_STEP_TIMEOUT_SECONDS,
)


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class SchedulerConfig(BaseModel):
    max_concurrency: Annotated[int, Field(ge=1, le=MAX_CONCURRENCY)] = Field(
        default=DEFAULT_MAX_CONCURRENCY,
        description="Upper bound on concurrently running attempts in a parallel group.",
    )
    default_step_timeout: Annotated[float, Field(gt=0, le=MAX_STEP_TIMEOUT_SECONDS)] = Field(
        default=DEFAULT_STEP_TIMEOUT_SECONDS,
        description="Timeout applied by the parser to steps that do not declare one.",
    )
    continue_on_error: bool = Field(
        default=False,
        description="Global override: never halt the run on a terminal step failure.",
    )
    rollback_enabled: bool = Field(
        default=False,
        description="Unwind completed steps when the run halts on a non-tolerated failure.",
    )


class ResourceConfig(BaseModel):
    """Per-target concurrency limits, applied on top of the batch worker pool."""

    default_concurrency: Annotated[int, Field(ge=1, le=1000)] = 100
    target_limits: dict[str, int] = Field(
        default_factory=dict,
        description="Maximum concurrent attempts per step target (e.g. {'tofu.apply': 1}).",
    )


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------

# Config files picked up by the YAML source for the duration of one ``load()``.
_config_files: ContextVar[tuple[Path, ...]] = ContextVar("orchestra_config_files", default=())


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRA_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources win: environment variables override config files.
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=list(_config_files.get()))
        return (init_settings, env_settings, dotenv_settings, yaml_settings, file_secret_settings)

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from file + environment variables."""
        candidates = [Path.home() / ".orchestra" / "config.yaml"]
        if config_file:
            candidates.append(config_file)

        token = _config_files.set(tuple(path for path in candidates if path.exists()))
        try:
            return cls()
        finally:
            _config_files.reset(token)


# Module-level singleton, replaced by ``Settings.load()`` at startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings | None) -> None:
    """Replace the module-level singleton. Used in tests.

    Passing None clears it so the next ``get_settings()`` reloads from disk.
    """
    global _settings
    _settings = settings
