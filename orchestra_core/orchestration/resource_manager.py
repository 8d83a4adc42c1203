"""Resource Manager — per-target concurrency limiter.

Caps how many attempts against the same step target may run at once,
independently of the batch worker pool (e.g. at most one ``tofu_apply``
at a time even if several parallel groups call it).

Usage::

    rm = ResourceManager({"tofu_apply": 1, "image_build": 2})
    async with rm.acquire("tofu_apply"):
        outcome = await executor.invoke(...)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from orchestra_core.config import ResourceConfig


class ResourceManager:
    """Per-target asyncio.Semaphore pool for concurrency control."""

    def __init__(
        self,
        limits: dict[str, int] | None = None,
        default_limit: int = 100,
    ) -> None:
        self._limits = limits or {}
        self._default = default_limit
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    @classmethod
    def from_config(cls, config: ResourceConfig) -> "ResourceManager":
        return cls(limits=dict(config.target_limits), default_limit=config.default_concurrency)

    def _get_semaphore(self, target: str) -> asyncio.Semaphore:
        """Return (or lazily create) the semaphore for *target*."""
        if target not in self._semaphores:
            limit = self._limits.get(target, self._default)
            self._semaphores[target] = asyncio.Semaphore(limit)
        return self._semaphores[target]

    @asynccontextmanager
    async def acquire(self, target: str) -> AsyncIterator[None]:
        """Async context manager that blocks while the target is at capacity."""
        sem = self._get_semaphore(target)
        await sem.acquire()
        try:
            yield
        finally:
            sem.release()

    def status(self) -> dict[str, dict[str, int]]:
        """Return current semaphore state for monitoring."""
        result: dict[str, dict[str, int]] = {}
        for target, sem in self._semaphores.items():
            limit = self._limits.get(target, self._default)
            result[target] = {
                "limit": limit,
                "available": sem._value,
                "in_use": limit - sem._value,
            }
        return result
