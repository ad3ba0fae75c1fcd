"""
Unit tests for the priority scheduler.

The scheduler is exercised with a ManualClock, so pacing gaps and retry
backoff delays advance virtual time instead of sleeping.
"""

import asyncio

import pytest

from company_discovery.domain.discovery.cache import DiscoveryCache
from company_discovery.domain.discovery.exceptions import (
    Cancelled,
    FallbackExhausted,
    LookupValidationError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitExceeded,
)
from company_discovery.domain.discovery.models import (
    FallbackMode,
    FallbackSignal,
    Priority,
)
from company_discovery.domain.discovery.observability import TelemetryRecorder
from company_discovery.domain.discovery.quota import QuotaGovernor, QuotaLimits
from company_discovery.domain.discovery.resilience import (
    FallbackStrategy,
    ResilienceController,
    RetryPolicy,
)
from company_discovery.domain.discovery.scheduler import (
    BackoffPolicy,
    DiscoveryScheduler,
    PacingPolicy,
)
from tests.conftest import FakeProvider, make_candidate

ROOMY = QuotaLimits(monthly=10000, daily=1000, per_minute=100, burst=100)


def build_scheduler(clock, store, provider, limits=ROOMY, max_retries=0, **kwargs):
    telemetry = TelemetryRecorder(clock)
    resilience = ResilienceController(
        clock, retry_policy=RetryPolicy(max_retries=0), telemetry=telemetry
    )
    return DiscoveryScheduler(
        DiscoveryCache(store, clock),
        QuotaGovernor(clock, limits),
        resilience,
        provider,
        clock,
        telemetry=telemetry,
        backoff=BackoffPolicy(base_seconds=1.0, max_seconds=30.0, jitter_ratio=0.0),
        default_max_retries=max_retries,
        **kwargs,
    )


class TestPacingPolicy:
    def test_gap_grows_with_queue_up_to_cap(self) -> None:
        pacing = PacingPolicy()
        assert pacing.delay(0, False) == pytest.approx(0.1)
        assert pacing.delay(4, False) == pytest.approx(0.3)
        assert pacing.delay(50, False) == pytest.approx(0.6)

    def test_extra_gap_near_ceiling(self) -> None:
        assert PacingPolicy().delay(0, True) == pytest.approx(0.3)


@pytest.mark.unit
class TestDiscoveryScheduler:
    @pytest.mark.asyncio
    async def test_priority_tiers_fifo_within_tier(self, clock, store) -> None:
        provider = FakeProvider()
        scheduler = build_scheduler(clock, store, provider)

        futures = [
            scheduler.enqueue("low-1", Priority.LOW),
            scheduler.enqueue("high-1", Priority.HIGH),
            scheduler.enqueue("normal-1", Priority.NORMAL),
            scheduler.enqueue("high-2", "high"),
        ]
        await asyncio.gather(*futures)

        assert provider.calls == ["high-1", "high-2", "normal-1", "low-1"]
        stats = scheduler.get_stats()
        assert stats["processed"] == 4
        assert stats["success_rate"] == 1.0
        assert stats["queue_length"] == 0

    @pytest.mark.asyncio
    async def test_results_sorted_by_confidence_and_cached(self, clock, store) -> None:
        provider = FakeProvider(
            results={"Acme": [make_candidate("Acme Labs", 0.61), make_candidate("Acme", 0.92)]}
        )
        scheduler = build_scheduler(clock, store, provider)

        result = await scheduler.enqueue("Acme")

        assert [c.confidence for c in result] == [0.92, 0.61]
        assert await scheduler.cache.get("acme") == result

    @pytest.mark.asyncio
    async def test_paces_between_dispatches(self, clock, store) -> None:
        scheduler = build_scheduler(clock, store, FakeProvider())

        await asyncio.gather(scheduler.enqueue("a"), scheduler.enqueue("b"))

        assert clock.slept == [pytest.approx(0.15)]

    @pytest.mark.asyncio
    async def test_late_cache_hit_skips_provider(self, clock, store) -> None:
        provider = FakeProvider()
        scheduler = build_scheduler(clock, store, provider)
        await scheduler.cache.set("Acme", [make_candidate("Acme")])

        await scheduler.enqueue("acme")

        assert provider.calls == []
        assert scheduler.get_stats()["cache_served"] == 1
        assert scheduler.quota.get_status()["current"]["burst"] == 0

    @pytest.mark.asyncio
    async def test_quota_denial_rejects_without_provider_call(self, clock, store) -> None:
        provider = FakeProvider()
        scheduler = build_scheduler(
            clock, store, provider, limits=QuotaLimits(monthly=100, daily=100, per_minute=100, burst=1)
        )

        first = scheduler.enqueue("a")
        second = scheduler.enqueue("b")
        await first
        with pytest.raises(RateLimitExceeded) as exc_info:
            await second

        assert exc_info.value.window == "burst"
        assert exc_info.value.retry_after_seconds == 10
        assert provider.calls == ["a"]
        assert scheduler.get_stats()["rate_limited"] == 1

    @pytest.mark.asyncio
    async def test_failed_request_retried_after_backoff(self, clock, store) -> None:
        provider = FakeProvider(script=[ProviderServerError(503), ProviderServerError(502)])
        scheduler = build_scheduler(clock, store, provider, max_retries=2)

        result = await scheduler.enqueue("Acme")

        assert result[0].display_name == "Acme"
        assert provider.calls == ["Acme"] * 3
        assert 2.0 in clock.slept
        assert 4.0 in clock.slept
        assert scheduler.get_stats()["retried"] == 2
        assert scheduler.quota.get_status()["current"]["burst"] == 3

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, clock, store) -> None:
        provider = FakeProvider(script=[ProviderServerError(503)] * 3)
        scheduler = build_scheduler(clock, store, provider, max_retries=1)

        with pytest.raises(FallbackExhausted) as exc_info:
            await scheduler.enqueue("Acme")

        assert isinstance(exc_info.value.original_error, ProviderServerError)
        assert len(provider.calls) == 2
        assert scheduler.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_validation_error_never_retried(self, clock, store) -> None:
        provider = FakeProvider(script=[LookupValidationError("bad name")])
        scheduler = build_scheduler(clock, store, provider, max_retries=3)

        with pytest.raises(FallbackExhausted):
            await scheduler.enqueue("???")

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_delayed_retry_does_not_block_other_requests(self, clock, store) -> None:
        provider = FakeProvider(script=[ProviderServerError(503)])
        scheduler = build_scheduler(clock, store, provider, max_retries=1)

        failing_first = scheduler.enqueue("first")
        second = scheduler.enqueue("second")
        await asyncio.gather(failing_first, second)

        assert provider.calls == ["first", "second", "first"]

    @pytest.mark.asyncio
    async def test_provider_timeout_is_retryable_error(self, clock, store) -> None:
        provider = FakeProvider(delay_seconds=0.5)
        scheduler = build_scheduler(clock, store, provider, provider_timeout_seconds=0.01)

        with pytest.raises(FallbackExhausted) as exc_info:
            await scheduler.enqueue("slow")

        assert isinstance(exc_info.value.original_error, ProviderTimeoutError)

    @pytest.mark.asyncio
    async def test_fallback_signal_resolves_without_caching(self, clock, store) -> None:
        provider = FakeProvider(script=[ProviderServerError(503)])
        scheduler = build_scheduler(clock, store, provider)
        signal = FallbackSignal(mode=FallbackMode.MANUAL, strategy="manual", message="enter it")
        scheduler.resilience.add_strategy(FallbackStrategy("manual", 1, lambda ctx: signal))

        result = await scheduler.enqueue("Acme")

        assert result == signal
        assert await scheduler.cache.get("Acme") is None
        assert scheduler.get_stats()["fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_clear_cancels_pending_requests(self, clock, store) -> None:
        provider = FakeProvider()
        scheduler = build_scheduler(clock, store, provider)
        scheduler.pause()

        futures = [scheduler.enqueue("a"), scheduler.enqueue("b", Priority.HIGH)]
        await asyncio.sleep(0)
        assert scheduler.is_responsive() is False

        assert scheduler.clear() == 2
        for future in futures:
            with pytest.raises(Cancelled):
                await future
        assert provider.calls == []
        assert scheduler.get_stats()["cancelled"] == 2
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, clock, store) -> None:
        provider = FakeProvider()
        scheduler = build_scheduler(clock, store, provider)
        scheduler.pause()

        future = scheduler.enqueue("Acme")
        for _ in range(3):
            await asyncio.sleep(0)
        assert provider.calls == []
        assert scheduler.get_stats()["paused"] is True

        scheduler.resume()
        await future
        assert provider.calls == ["Acme"]

    @pytest.mark.asyncio
    async def test_batch_maps_failures_to_empty_lists(self, clock, store) -> None:
        provider = FakeProvider(errors={"Broken": ProviderServerError(500)})
        scheduler = build_scheduler(clock, store, provider)

        results = await scheduler.batch(["Acme", "Broken", "Acme"])

        assert list(results) == ["Acme", "Broken"]
        assert results["Acme"][0].display_name == "Acme"
        assert results["Broken"] == []

    @pytest.mark.asyncio
    async def test_join_waits_for_worker(self, clock, store) -> None:
        scheduler = build_scheduler(clock, store, FakeProvider())
        futures = [scheduler.enqueue(name) for name in ("a", "b", "c")]

        await scheduler.join()

        assert all(f.done() for f in futures)
        assert scheduler.get_stats()["worker_running"] is False

    @pytest.mark.asyncio
    async def test_stop_rejects_in_flight_and_queued_requests(self, clock, store) -> None:
        """Stopping mid-call settles every future instead of leaving callers waiting."""
        provider = FakeProvider(delay_seconds=0.2)
        scheduler = build_scheduler(clock, store, provider)

        in_flight = scheduler.enqueue("Acme", Priority.HIGH)
        queued = scheduler.enqueue("Beta", Priority.LOW)
        await asyncio.sleep(0.05)
        assert provider.calls == ["Acme"]

        assert await scheduler.stop() == 2

        for future in (in_flight, queued):
            assert future.done()
            with pytest.raises(Cancelled):
                await future
        stats = scheduler.get_stats()
        assert stats["queue_length"] == 0
        assert stats["cancelled"] == 2
        assert stats["worker_running"] is False

