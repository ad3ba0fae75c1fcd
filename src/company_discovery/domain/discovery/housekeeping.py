"""
Periodic background tasks driven by the injected clock.

Tasks run from ``run_due()`` (tests call it after advancing a ManualClock)
or from ``run_forever()`` in production. A failing task is logged and
rescheduled; it never raises into the loop or the request path.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    action: Callable[[], Any]
    next_run_at: Optional[datetime] = None
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None


class Housekeeper:
    """
    Registry of periodic tasks.

    Examples:
        >>> keeper = Housekeeper(clock)
        >>> keeper.register("memory_sweep", 300, cache.sweep_memory)
        >>> clock.advance(300)
        >>> await keeper.run_due()
        ['memory_sweep']
    """

    def __init__(self, clock: Clock, poll_interval_seconds: float = 1.0):
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self._tasks: Dict[str, PeriodicTask] = {}
        self._runner: Optional["asyncio.Task[None]"] = None

    def register(
        self, name: str, interval_seconds: float, action: Callable[[], Any], run_immediately: bool = False
    ) -> PeriodicTask:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        now = self.clock.now()
        task = PeriodicTask(
            name=name,
            interval_seconds=interval_seconds,
            action=action,
            next_run_at=now if run_immediately else now + timedelta(seconds=interval_seconds),
        )
        self._tasks[name] = task
        return task

    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    async def run_task(self, task: PeriodicTask) -> bool:
        """Run one task now and schedule its next run. Returns False on failure."""
        task.next_run_at = self.clock.now() + timedelta(seconds=task.interval_seconds)
        try:
            result = task.action()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            task.failures += 1
            task.last_error = str(e)
            logger.warning("housekeeping.task_failed", task=task.name, error=str(e))
            return False
        task.runs += 1
        logger.debug("housekeeping.task_completed", task=task.name, result=result)
        return True

    async def run_due(self) -> List[str]:
        """Run every task whose time has come; returns their names."""
        now = self.clock.now()
        due = [t for t in self._tasks.values() if t.next_run_at is None or t.next_run_at <= now]
        for task in due:
            await self.run_task(task)
        return [t.name for t in due]

    async def run_forever(self) -> None:
        while True:
            await self.run_due()
            await self.clock.sleep(self.poll_interval_seconds)

    def start(self) -> None:
        """Run ``run_forever`` as a background task of the running loop."""
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self.run_forever())

    async def stop(self) -> None:
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None
