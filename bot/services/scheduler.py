from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class Scheduler(Protocol):
    def every(self, name: str, interval_seconds: float, job: Job, *, run_immediately: bool = False) -> Any: ...
    def call_later(self, name: str, delay_seconds: float, job: Job) -> Any: ...
    def cancel(self, name: str) -> bool: ...


class TaskScheduler:
    """Named, cancellable asyncio jobs.

    Scheduling a name that is already pending replaces the earlier job.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def pending(self) -> list[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    def every(
        self, name: str, interval_seconds: float, job: Job, *, run_immediately: bool = False
    ) -> asyncio.Task[None]:
        async def runner() -> None:
            if not run_immediately:
                await asyncio.sleep(interval_seconds)
            while True:
                await self._run(name, job)
                await asyncio.sleep(interval_seconds)

        return self._start(name, runner())

    def call_later(self, name: str, delay_seconds: float, job: Job) -> asyncio.Task[None]:
        async def runner() -> None:
            await asyncio.sleep(max(0.0, delay_seconds))
            await self._run(name, job)

        return self._start(name, runner())

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        LOGGER.info("Scheduler stopped (%s jobs cancelled)", len(tasks))

    def _start(self, name: str, coro: Awaitable[None]) -> asyncio.Task[None]:
        self.cancel(name)
        task = asyncio.create_task(coro, name=name)  # type: ignore[arg-type]
        self._tasks[name] = task
        task.add_done_callback(lambda done: self._forget(name, done))
        return task

    def _forget(self, name: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(name) is task:
            self._tasks.pop(name, None)

    @staticmethod
    async def _run(name: str, job: Job) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Scheduled job %s failed", name)
