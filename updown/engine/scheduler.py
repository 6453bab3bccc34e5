"""Periodic asyncio tasks.

Each task runs its body, then sleeps for whatever is left of the interval,
so two runs of the same task never overlap. A body that raises is logged
and the schedule continues.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from updown.observability.logger import get_logger
from updown.observability.metrics import metrics

log = get_logger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        body: Callable[[], Awaitable[None]],
        interval_secs: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self._body = body
        self.interval_secs = interval_secs
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self) -> None:
        started = time.monotonic()
        try:
            await self._body()
        except Exception as e:
            log.error("scheduler.task_failed", task=self.name, error=str(e))
            metrics.incr(f"cycles.{self.name}.errors")
        finally:
            self.runs += 1
            metrics.incr(f"cycles.{self.name}")
            metrics.timing(f"cycles.{self.name}", time.monotonic() - started)

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_secs)
        while True:
            started = time.monotonic()
            await self.run_once()
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.interval_secs - elapsed))
