"""Orchestration layer — Step executor interface and dispatch table.

The scheduler treats the executor as opaque: it calls
:meth:`StepExecutor.invoke` once per attempt and interprets the returned
:class:`StepOutcome`.  Timeouts, retries and cancellation are owned by the
scheduler, so executors stay plain success/failure functions.

:class:`DispatchTable` is the stock executor: a ``target -> handler`` map
built by the caller and checked against a playbook with :meth:`validate`
before the run starts, so an unknown target is reported up front instead of
failing halfway through.

Handlers receive ``(parameters, variables)`` and may be ``async def`` or
plain functions.  Plain functions run in a worker thread via
``asyncio.to_thread``; a timed-out thread cannot be interrupted, only
abandoned, so long-running blocking handlers should poll for their own
deadline.  A handler may return:

  * a :class:`StepOutcome`: used as-is
  * ``True`` / ``False``: success / failure with no output
  * a mapping with a ``succeeded`` key: read as ``{succeeded, output, error}``
  * anything else (or None): success, value used as output

Executors called directly by the scheduler must return one of the first
three shapes; any other value fails the attempt.

Raising is treated by the scheduler as a failed attempt.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Union

from orchestra_core.exceptions import UnknownTargetError
from orchestra_core.logging import get_logger
from orchestra_core.protocol.models import PlaybookDefinition

log = get_logger(__name__)

StepHandler = Callable[[Mapping[str, Any], Mapping[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class StepOutcome:
    """What the executor reports for a single attempt."""

    succeeded: bool
    output: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, output: Any = None) -> "StepOutcome":
        return cls(succeeded=True, output=output)

    @classmethod
    def fail(cls, error: str, output: Any = None) -> "StepOutcome":
        return cls(succeeded=False, output=output, error=error)


class StepExecutor(ABC):
    """Runs one attempt of one step.

    Implementations must be safe to call concurrently for different steps
    and must tolerate being called several times for the same step.
    """

    @abstractmethod
    async def invoke(
        self,
        target: str,
        parameters: Mapping[str, Any],
        variables: Mapping[str, Any],
    ) -> StepOutcome:
        """Execute *target* once and report the outcome."""

    def validate(self, playbook: PlaybookDefinition) -> None:
        """Raise :class:`UnknownTargetError` if the playbook cannot be dispatched.

        The default accepts every target.
        """


class DispatchTable(StepExecutor):
    """Executor backed by a ``target -> handler`` mapping.

    Usage::

        table = DispatchTable()

        @table.register("0201_install_node")
        async def install_node(params, variables):
            ...
            return StepOutcome.ok({"version": "20.11"})

        table.validate(playbook)
    """

    def __init__(self, handlers: Mapping[str, StepHandler] | None = None) -> None:
        self._handlers: dict[str, StepHandler] = dict(handlers or {})

    def register(
        self, target: str, handler: StepHandler | None = None
    ) -> Callable[[StepHandler], StepHandler] | StepHandler:
        """Register *handler* for *target*.  Usable as a decorator."""

        def _add(fn: StepHandler) -> StepHandler:
            if target in self._handlers:
                log.warning("handler_replaced", target=target)
            self._handlers[target] = fn
            return fn

        if handler is not None:
            return _add(handler)
        return _add

    def __contains__(self, target: object) -> bool:
        return target in self._handlers

    def targets(self) -> list[str]:
        return sorted(self._handlers)

    def validate(self, playbook: PlaybookDefinition) -> None:
        unknown = sorted(playbook.targets() - self._handlers.keys())
        if unknown:
            raise UnknownTargetError(unknown)

    async def invoke(
        self,
        target: str,
        parameters: Mapping[str, Any],
        variables: Mapping[str, Any],
    ) -> StepOutcome:
        handler = self._handlers.get(target)
        if handler is None:
            raise UnknownTargetError([target])

        if inspect.iscoroutinefunction(handler):
            value = await handler(parameters, variables)
        else:
            value = await asyncio.to_thread(handler, parameters, variables)
            if inspect.isawaitable(value):
                value = await value
        return coerce_outcome(target, value)


def coerce_outcome(target: str, value: Any, strict: bool = False) -> StepOutcome:
    """Normalise whatever a handler or executor returned into a :class:`StepOutcome`.

    A mapping carrying a ``succeeded`` key is read as
    ``{succeeded, output, error}``.  With *strict* set, any other
    unrecognised value is a failed outcome rather than a successful output.
    """
    if isinstance(value, StepOutcome):
        return value
    if isinstance(value, bool):
        return StepOutcome(
            succeeded=value, error=None if value else f"Handler for '{target}' returned False"
        )
    if isinstance(value, Mapping) and "succeeded" in value:
        succeeded = bool(value["succeeded"])
        error = value.get("error")
        if not succeeded and not error:
            error = f"Executor for '{target}' reported failure"
        return StepOutcome(
            succeeded=succeeded,
            output=value.get("output"),
            error=None if succeeded else str(error),
        )
    if strict:
        return StepOutcome.fail(
            f"Executor for '{target}' returned an unrecognised result of type "
            f"{type(value).__name__}"
        )
    return StepOutcome.ok(value)
