"""Shared utility functions.

Small helpers used across multiple modules: id and timestamp generation,
fire-and-forget task creation, and per-key single-flight coalescing.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from labsessions.logger import logger

T = TypeVar("T")


def generate_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (pool refills, session initialization) where the caller returns
    immediately but failures still need to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(_log_task_exception)
    return task


# The event loop only keeps weak references to tasks
_background_tasks: set[asyncio.Task[Any]] = set()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks; logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            err=str(exc),
            exc_info=exc,
        )


class SingleFlight(Generic[T]):
    """Coalesce concurrent calls for the same key into one running task.

    While a task for *key* is in flight, further ``run`` calls await that
    same task and receive its result (or exception). The entry is dropped
    once the task finishes, so the next call starts a fresh run.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._in_flight: dict[str, asyncio.Task[T]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def run(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._in_flight[key] = task
            task.add_done_callback(lambda _t: self._forget(key, _t))
        else:
            logger.debug("Joining in-flight run", registry=self._name, key=key)
        # shield: one caller being cancelled must not cancel the shared run
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[T]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def wait_all(self) -> None:
        """Wait for every in-flight run to settle (used at shutdown and in tests)."""
        tasks = list(self._in_flight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
