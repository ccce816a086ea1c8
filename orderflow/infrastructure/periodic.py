"""
In-process periodic task runner.

Each task is an asyncio loop started from the app lifespan. The job
itself is synchronous (database + SMTP) and runs in a worker thread.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, List, Optional
from zoneinfo import ZoneInfo

from shared.core import get_logger, set_job_context

logger = get_logger(__name__)


def parse_time_of_day(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


@dataclass
class PeriodicTask:
    name: str
    job: Callable[[], Any]
    interval: Optional[timedelta] = None
    daily_at: Optional[time] = None
    tz: ZoneInfo = ZoneInfo("UTC")
    run_at_startup: bool = False

    def __post_init__(self):
        if (self.interval is None) == (self.daily_at is None):
            raise ValueError(f"Task {self.name} needs exactly one of interval or daily_at")

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        if self.interval is not None:
            return self.interval.total_seconds()
        local_now = now.astimezone(self.tz)
        target = datetime.combine(local_now.date(), self.daily_at, tzinfo=self.tz)
        if target <= local_now:
            target = datetime.combine(local_now.date() + timedelta(days=1), self.daily_at, tzinfo=self.tz)
        return (target - local_now).total_seconds()


class PeriodicScheduler:
    def __init__(self, tasks: List[PeriodicTask]):
        self.tasks = tasks
        self._running: List[asyncio.Task] = []

    def start(self) -> None:
        for task in self.tasks:
            self._running.append(asyncio.create_task(self._loop(task), name=f"periodic:{task.name}"))
        logger.info(f"Started {len(self.tasks)} periodic task(s)",
                    extra={'extra_fields': {'tasks': [t.name for t in self.tasks]}})

    async def stop(self) -> None:
        for running in self._running:
            running.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()
        logger.info("Periodic tasks stopped")

    async def run_once(self, task: PeriodicTask) -> Any:
        token = set_job_context(task.name)
        try:
            return await asyncio.to_thread(task.job)
        except Exception as e:
            logger.error(f"Periodic task {task.name} failed: {e}", exc_info=True)
            return None
        finally:
            token.var.reset(token)

    async def _loop(self, task: PeriodicTask) -> None:
        if task.run_at_startup:
            await self.run_once(task)
        while True:
            delay = task.seconds_until_next()
            logger.debug(f"Next run of {task.name} in {delay:.0f}s")
            await asyncio.sleep(delay)
            await self.run_once(task)
