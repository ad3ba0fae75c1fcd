"""Tests for the injectable clocks."""

from datetime import datetime, timedelta, timezone

import pytest

from company_discovery.utils.clock import Clock, ManualClock, SystemClock


class TestManualClock:
    def test_advance(self) -> None:
        clock = ManualClock()
        start = clock.now()
        clock.advance(90)
        assert clock.now() - start == timedelta(seconds=90)

    def test_cannot_move_backwards(self) -> None:
        clock = ManualClock()
        with pytest.raises(ValueError):
            clock.advance(-1)
        with pytest.raises(ValueError):
            clock.set(clock.now() - timedelta(seconds=1))

    @pytest.mark.asyncio
    async def test_sleep_advances_virtual_time(self) -> None:
        clock = ManualClock(datetime(2024, 6, 1, tzinfo=timezone.utc))
        await clock.sleep(2.5)
        await clock.sleep(-1)

        assert clock.slept == [2.5, 0.0]
        assert clock.now() == datetime(2024, 6, 1, 0, 0, 2, 500000, tzinfo=timezone.utc)


def test_clocks_satisfy_protocol() -> None:
    assert isinstance(ManualClock(), Clock)
    assert isinstance(SystemClock(), Clock)
    assert SystemClock().now().tzinfo is not None
