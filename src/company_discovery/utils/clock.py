"""Injectable time source.

All governance components read time through a ``Clock`` and wait through
``Clock.sleep`` so tests can drive window rollovers, cooldown expiry and
backoff delays with ``ManualClock`` instead of sleeping.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Time source used by every time-dependent component."""

    def now(self) -> datetime:
        """Return the current UTC time (timezone-aware)."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock:
    """Wall-clock time with real asyncio sleeps."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Virtual clock for tests and simulations.

    ``sleep`` advances virtual time immediately and yields once to the event
    loop, so awaiting code observes the elapsed time without real waiting.

    Example:
        >>> clock = ManualClock()
        >>> start = clock.now()
        >>> clock.advance(60)
        >>> (clock.now() - start).total_seconds()
        60.0
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now = self._now + timedelta(seconds=seconds)

    def set(self, moment: datetime) -> None:
        if moment < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = moment

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.slept.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
