"""asyncio task scheduler for the background jobs.

Two task kinds share one loop:
  - RecurringTask: fixed interval (metrics ingestion, every 60s)
  - DailyTask: wall-clock time in a named timezone (settlement, 00:00 Asia/Jakarta)

A handler exception is logged and counted, and the task keeps its schedule.
Intervals are measured from the end of the previous run, so a slow run never
overlaps the next one.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from settlement.utils import get_logger
from settlement.utils.time import next_local_time, utc_now

logger = get_logger(__name__)

Handler = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class TaskStats:
    runs: int = 0
    failures: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None


@dataclass
class RecurringTask:
    name: str
    interval_seconds: float
    handler: Handler
    run_immediately: bool = False
    stats: TaskStats = field(default_factory=TaskStats)

    def delay_until_next(self, now: datetime, first: bool) -> float:
        return 0.0 if first and self.run_immediately else self.interval_seconds


@dataclass
class DailyTask:
    name: str
    hour: int
    minute: int
    timezone: str
    handler: Handler
    stats: TaskStats = field(default_factory=TaskStats)

    def next_run_after(self, now: datetime) -> datetime:
        return next_local_time(now, self.hour, self.minute, self.timezone)

    def delay_until_next(self, now: datetime, first: bool) -> float:
        return max(0.0, (self.next_run_after(now) - now).total_seconds())


Task = Union[RecurringTask, DailyTask]


class Scheduler:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now, sleep: Sleep = asyncio.sleep) -> None:
        self._clock = clock
        self._sleep = sleep
        self.tasks: Dict[str, Task] = {}
        self._running: List[asyncio.Task] = []

    def add(self, task: Task) -> Task:
        if task.name in self.tasks:
            raise ValueError(f"task {task.name!r} already registered")
        self.tasks[task.name] = task
        return task

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._running)

    async def run_task(self, task: Task) -> bool:
        """Run a task's handler once; False if it raised."""
        stats = task.stats
        stats.runs += 1
        stats.last_started_at = self._clock()
        try:
            await task.handler()
            return True
        except Exception as e:
            stats.failures += 1
            stats.last_error = f"{type(e).__name__}: {e}"
            logger.error("Scheduled task failed", task=task.name, error=str(e), exc_info=True)
            return False
        finally:
            stats.last_finished_at = self._clock()

    async def _loop(self, task: Task) -> None:
        first = True
        while True:
            now = self._clock()
            delay = task.delay_until_next(now, first)
            first = False
            task.stats.next_run_at = now + timedelta(seconds=delay)
            await self._sleep(delay)
            await self.run_task(task)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._running = [loop.create_task(self._loop(t), name=f"scheduler:{t.name}") for t in self.tasks.values()]
        logger.info("Scheduler started", tasks=list(self.tasks))

    async def stop(self) -> None:
        for t in self._running:
            t.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        self._running = []
        logger.info("Scheduler stopped")

    def state(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "tasks": {
                name: {
                    "runs": t.stats.runs,
                    "failures": t.stats.failures,
                    "last_error": t.stats.last_error,
                    "last_finished_at": t.stats.last_finished_at.isoformat() if t.stats.last_finished_at else None,
                    "next_run_at": t.stats.next_run_at.isoformat() if t.stats.next_run_at else None,
                }
                for name, t in self.tasks.items()
            },
        }


__all__ = ["Scheduler", "RecurringTask", "DailyTask", "TaskStats"]
