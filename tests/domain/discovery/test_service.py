"""
End-to-end tests of DiscoveryService with a fake provider.

Every component runs for real: cache, quota, scheduler, resilience, rollout
and telemetry, all on a ManualClock and an in-memory durable store.
"""

import pytest

from company_discovery.config.settings import Settings
from company_discovery.domain.discovery.exceptions import (
    FeatureDisabled,
    LookupValidationError,
    ManualInputRequired,
    NetworkError,
    OfflineModeActive,
    ProviderServerError,
    RateLimitExceeded,
)
from company_discovery.domain.discovery.models import FeatureFlag, IdentityContext
from company_discovery.domain.discovery.service import DiscoveryService
from tests.conftest import FakeProvider, make_candidate


@pytest.fixture
async def service_factory(clock, store, settings):
    started = []

    async def factory(provider=None, **kwargs):
        kwargs.setdefault("settings", settings)
        service = DiscoveryService(provider or FakeProvider(), store, clock=clock, **kwargs)
        await service.start(run_housekeeping=False)
        started.append(service)
        return service

    yield factory
    for service in started:
        await service.stop()


@pytest.mark.unit
class TestDiscover:
    @pytest.mark.asyncio
    async def test_lookup_then_cache_hit(self, service_factory) -> None:
        provider = FakeProvider(
            results={"Acme": [make_candidate("Acme Labs", 0.61), make_candidate("Acme", 0.92)]}
        )
        service = await service_factory(provider)

        first = await service.discover("Acme")
        second = await service.discover("  ACME ")

        assert [c.confidence for c in first] == [0.92, 0.61]
        assert second == first
        assert provider.calls == ["Acme"]
        metrics = service.get_metrics()
        assert metrics["cache_hits"] == 1
        assert metrics["cache_misses"] == 1
        assert service.get_quota_status()["current"]["minute"] == 1

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, service_factory) -> None:
        service = await service_factory()
        with pytest.raises(LookupValidationError):
            await service.discover("   ")

    @pytest.mark.asyncio
    async def test_disabled_flag_blocks_lookup(self, service_factory) -> None:
        provider = FakeProvider()
        service = await service_factory(
            provider, flags=[FeatureFlag(key="company_discovery", enabled=False)]
        )

        with pytest.raises(FeatureDisabled) as exc_info:
            await service.discover("Acme", identity=IdentityContext(user_id="u-1"))

        assert exc_info.value.reason == "flag disabled"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_exhausted_quota_raises_rate_limit(self, clock, store, service_factory) -> None:
        provider = FakeProvider()
        service = await service_factory(
            provider,
            settings=Settings(_env_file=None, quota_burst_limit=1, scheduler_max_retries=0),
        )

        await service.discover("Acme")
        with pytest.raises(RateLimitExceeded) as exc_info:
            await service.discover("Globex")

        assert exc_info.value.window == "burst"
        assert exc_info.value.retry_after_seconds == 10
        assert provider.calls == ["Acme"]
        assert service.get_metrics()["rate_limit_hits"] == 1

    @pytest.mark.asyncio
    async def test_network_loss_enters_offline_mode(self, service_factory) -> None:
        provider = FakeProvider(errors={"Acme": NetworkError("connection refused")})
        service = await service_factory(provider)

        with pytest.raises(OfflineModeActive):
            await service.discover("Acme", interactive=False)
        calls_after_failure = len(provider.calls)

        with pytest.raises(OfflineModeActive):
            await service.discover("Globex", interactive=False)
        assert len(provider.calls) == calls_after_failure

        await service.exit_offline_mode()
        assert (await service.discover("Globex"))[0].display_name == "Globex"

    @pytest.mark.asyncio
    async def test_interactive_caller_asked_for_manual_entry(self, service_factory) -> None:
        service = await service_factory(FakeProvider(errors={"Acme": ProviderServerError(503)}))

        with pytest.raises(ManualInputRequired) as exc_info:
            await service.discover("Acme", interactive=True)
        assert exc_info.value.signal.strategy == "manual_entry"

    @pytest.mark.asyncio
    async def test_batch_caller_gets_heuristic_guess(self, service_factory) -> None:
        service = await service_factory(FakeProvider(errors={"Acme Corp": ProviderServerError(503)}))

        [candidate] = await service.discover("Acme Corp", interactive=False)

        assert candidate.source == "heuristic"
        assert candidate.slug == "acme-corp"
        assert candidate.confidence == 0.5
        assert service.get_metrics()["fallbacks_by_strategy"] == {"heuristic_guess": 1}


@pytest.mark.unit
class TestOperations:
    @pytest.mark.asyncio
    async def test_batch(self, service_factory) -> None:
        provider = FakeProvider(errors={"Broken": ProviderServerError(500)})
        service = await service_factory(provider)

        results = await service.batch(["Acme", "Broken"])

        assert results["Acme"][0].display_name == "Acme"
        assert results["Broken"] == []

    @pytest.mark.asyncio
    async def test_warm_up_skips_cached_names(self, service_factory) -> None:
        provider = FakeProvider()
        service = await service_factory(provider)
        await service.cache.set("Acme", [make_candidate("Acme")])

        warmed = await service.warm_up(["Acme", "Globex", "Initech"])

        assert warmed == 2
        assert sorted(provider.calls) == ["Globex", "Initech"]
        assert await service.cache.get("Initech") is not None

    @pytest.mark.asyncio
    async def test_health_status(self, service_factory) -> None:
        provider = FakeProvider()
        service = await service_factory(provider)

        health = await service.get_health_status()
        assert health["status"] == "healthy"
        assert set(health["checks"]) == {"durable_store", "provider", "cache", "scheduler"}
        assert health["resilience"]["healthy"] is True

        provider.reachable = False
        service.force_open_circuit()
        health = await service.get_health_status()
        assert health["checks"]["provider"] is False
        assert health["status"] == "degraded"
        assert health["resilience"]["open_circuits"] == ["company-search"]

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, clock, store, settings, service_factory) -> None:
        service = await service_factory()
        await service.discover("Acme")
        service.force_open_circuit()
        assert await service.persist_state() is True

        restarted = DiscoveryService(FakeProvider(), store, clock=clock, settings=settings)
        await restarted.start(run_housekeeping=False)
        try:
            assert restarted.get_quota_status()["current"]["minute"] == 1
            assert restarted.resilience.get_health_status()["open_circuits"] == ["company-search"]
        finally:
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_pause_resume_and_clear(self, service_factory) -> None:
        service = await service_factory()
        service.pause()
        assert service.get_queue_stats()["paused"] is True
        assert service.clear() == 0
        service.resume()
        assert service.get_queue_stats()["paused"] is False

    @pytest.mark.asyncio
    async def test_export_metrics_and_alerts(self, service_factory) -> None:
        service = await service_factory()
        await service.discover("Acme")

        assert "discovery_requests_total 1" in service.export_metrics()
        assert service.check_alerts() == []
        assert service.is_enabled("company_discovery").enabled is True

    @pytest.mark.asyncio
    async def test_configured_retries_mean_one_extra_attempt_each(self, service_factory) -> None:
        provider = FakeProvider(errors={"Acme": ProviderServerError(503)})
        service = await service_factory(
            provider,
            settings=Settings(
                _env_file=None, retry_max_retries=2, scheduler_max_retries=0, quota_burst_limit=50
            ),
        )

        with pytest.raises(ManualInputRequired):
            await service.discover("Acme")

        assert service.resilience.retry_policy.max_retries == 2
        assert provider.calls == ["Acme"] * 3
