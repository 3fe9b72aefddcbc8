"""Utilities for running and monitoring asyncio tasks."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Coroutine

Logger = logging.Logger


def monitor_task(task: asyncio.Task, *, name: str, logger: Logger, on_error: Callable[[BaseException], None] | None = None) -> asyncio.Task:
    """Attach a callback to log unexpected task termination."""

    def _callback(finished: asyncio.Task) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            exc = finished.exception()
            if exc is None:
                return
            logger.error("Background task %s crashed: %s", name, exc, exc_info=exc)
            if on_error:
                on_error(exc)

    task.add_done_callback(_callback)
    return task


class BackgroundTasks:
    """Fire-and-forget tasks that must not block caller-visible completion."""

    def __init__(self, *, name: str, logger: Logger) -> None:
        self._name = name
        self._logger = logger
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return monitor_task(task, name=f"{self._name}:{name}", logger=self._logger)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if not self._tasks:
            return
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        if not self._tasks:
            return
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class FanOut:
    """Wait group over a set of tasks that may keep spawning siblings.

    The first failure cancels every other task and is raised once from ``wait``.
    """

    def __init__(self, *, name: str, logger: Logger) -> None:
        self._name = name
        self._logger = logger
        self._pending: set[asyncio.Task] = set()
        self._failed = False

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._failed:
            coro.close()
            return
        self._pending.add(asyncio.ensure_future(coro))

    async def wait(self) -> None:
        try:
            while self._pending:
                done, _ = await asyncio.wait(self._pending, return_when=asyncio.FIRST_EXCEPTION)
                self._pending -= done
                for task in done:
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        self._failed = True
                        self._logger.debug("%s: branch failed: %s", self._name, exc)
                        raise exc
        finally:
            await self.cancel()

    async def cancel(self) -> None:
        if not self._pending:
            return
        pending = list(self._pending)
        self._pending.clear()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def run_concurrently(*aws: Awaitable[Any]) -> list[Any]:
    """Run awaitables together; the first failure cancels the rest and propagates."""

    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]
    finally:
        leftovers = [task for task in tasks if not task.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)
