"""orchestra-core — Structured logging configuration.

Uses structlog for structured, levelled logging with consistent key names
across all layers.  All log entries include:
    - timestamp (ISO-8601)
    - level
    - logger (Python logger name)
    - execution_id / stage / step (bound via context variables when available)

The core never decides where records go.  Hosts call ``configure_logging``
once; libraries embedding the core can skip it and let their own stdlib
logging setup receive the records.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variables, injected into log records when set.
# asyncio copies the context into each task, so a step bound inside its own
# task never leaks into a sibling.
_ctx_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)
_ctx_stage: ContextVar[str | None] = ContextVar("stage", default=None)
_ctx_step: ContextVar[str | None] = ContextVar("step", default=None)


def bind_run_context(
    execution_id: str | None = None,
    stage: str | None = None,
    step: str | None = None,
) -> None:
    """Bind orchestration context to the current async task / thread."""
    if execution_id is not None:
        _ctx_execution_id.set(execution_id)
    if stage is not None:
        _ctx_stage.set(stage)
    if step is not None:
        _ctx_step.set(step)


def clear_run_context() -> None:
    _ctx_execution_id.set(None)
    _ctx_stage.set(None)
    _ctx_step.set(None)


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


def _inject_context_vars(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Add ContextVar values to every log record."""
    if (execution_id := _ctx_execution_id.get()) is not None:
        event_dict.setdefault("execution_id", execution_id)
    if (stage := _ctx_stage.get()) is not None:
        event_dict.setdefault("stage", stage)
    if (step := _ctx_step.get()) is not None:
        event_dict.setdefault("step", step)
    return event_dict


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Call once at process startup, before any log statements.

    Args:
        level:    One of debug, info, warning, error, critical.
        format:   ``"console"`` for human-readable output, ``"json"`` for
                  machine-readable structured logs.
        log_file: Optional path to write logs to in addition to stdout.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(level.upper())

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger for *name*.

    Usage::

        log = get_logger(__name__)
        log.info("stage_started", stage="provision", batch_count=3)
    """
    return structlog.get_logger(name)
