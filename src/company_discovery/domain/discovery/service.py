"""
Discovery service: the single entry point used by the application.

A lookup flows through the components in this order:

    RolloutGate -> DiscoveryCache -> QuotaGovernor (peek) -> DiscoveryScheduler
        -> ResilienceController (breaker, retries, fallback chain) -> provider

Each component owns its state; this module only wires them together and
exposes the operational surface (quota, health, queue, circuits, flags).
"""

import asyncio
import random
from typing import Any, Dict, Iterable, List, Optional, Union

from company_discovery.config.settings import Settings, get_settings
from company_discovery.domain.discovery.cache import COMMON_COMPANIES, DiscoveryCache
from company_discovery.domain.discovery.exceptions import (
    DiscoverySkipped,
    FallbackSignalled,
    FeatureDisabled,
    LookupValidationError,
    ManualInputRequired,
    OfflineModeActive,
    RateLimitExceeded,
)
from company_discovery.domain.discovery.fallbacks import build_default_strategies
from company_discovery.domain.discovery.housekeeping import Housekeeper
from company_discovery.domain.discovery.models import (
    Candidate,
    FallbackMode,
    FallbackSignal,
    FeatureFlag,
    FlagEvaluation,
    IdentityContext,
    Priority,
)
from company_discovery.domain.discovery.observability import Alert, TelemetryRecorder
from company_discovery.domain.discovery.protocols import DurableStore, SearchProvider
from company_discovery.domain.discovery.quota import QuotaGovernor, QuotaLimits
from company_discovery.domain.discovery.resilience import (
    SEARCH_OPERATION,
    CircuitBreakerConfig,
    ResilienceController,
    RetryPolicy,
)
from company_discovery.domain.discovery.rollout import DISCOVERY_FLAG, RolloutGate
from company_discovery.domain.discovery.scheduler import (
    BackoffPolicy,
    DiscoveryScheduler,
    LookupResult,
    PacingPolicy,
)
from company_discovery.utils.clock import Clock, SystemClock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

_SIGNAL_ERRORS = {
    FallbackMode.MANUAL: ManualInputRequired,
    FallbackMode.SKIP: DiscoverySkipped,
    FallbackMode.OFFLINE: OfflineModeActive,
}


class DiscoveryService:
    """
    Company discovery behind cache, quota, scheduling and resilience.

    Examples:
        >>> service = DiscoveryService(provider, InMemoryDurableStore())
        >>> await service.start(run_housekeeping=False)
        >>> candidates = await service.discover("Acme Corp")
        >>> service.get_quota_status()["remaining"]["minute"]
        9
    """

    def __init__(
        self,
        provider: SearchProvider,
        store: DurableStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        flags: Optional[Iterable[FeatureFlag]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.provider = provider
        self.store = store
        s = self.settings
        rng = rng or random.Random()

        self.telemetry = TelemetryRecorder(self.clock)
        self.cache = DiscoveryCache(
            store,
            self.clock,
            memory_ttl_seconds=s.cache_memory_ttl_seconds,
            max_memory_items=s.cache_memory_max_items,
            durable_ttl_seconds=s.cache_durable_ttl_seconds,
        )
        self.quota = QuotaGovernor(self.clock, QuotaLimits.from_settings(s), store)
        self.resilience = ResilienceController(
            self.clock,
            retry_policy=RetryPolicy(
                max_retries=s.retry_max_retries,
                base_delay_seconds=s.retry_base_delay_seconds,
                max_delay_seconds=s.retry_max_delay_seconds,
            ),
            breaker_config=CircuitBreakerConfig(
                failure_threshold=s.circuit_failure_threshold,
                cooldown_seconds=s.circuit_cooldown_seconds,
                half_open_successes=s.circuit_half_open_successes,
            ),
            telemetry=self.telemetry,
            store=store,
            rng=rng,
        )
        for strategy in build_default_strategies(
            self.resilience,
            self.cache.get_fresh,
            fresh_window_seconds=s.fallback_fresh_window_seconds,
            enabled=s.fallback_enabled_strategies,
            url_template=s.heuristic_url_template,
        ):
            self.resilience.add_strategy(strategy)

        self.scheduler = DiscoveryScheduler(
            self.cache,
            self.quota,
            self.resilience,
            provider,
            self.clock,
            telemetry=self.telemetry,
            pacing=PacingPolicy(
                base_seconds=s.pacing_base_seconds,
                per_item_seconds=s.pacing_per_item_seconds,
                queue_cap_seconds=s.pacing_queue_cap_seconds,
                near_ceiling_seconds=s.pacing_near_ceiling_seconds,
            ),
            backoff=BackoffPolicy(
                base_seconds=s.scheduler_backoff_base_seconds,
                max_seconds=s.retry_max_delay_seconds,
            ),
            provider_timeout_seconds=s.provider_timeout_seconds,
            default_max_retries=s.scheduler_max_retries,
            rng=rng,
        )

        self.rollout = RolloutGate(
            self.clock, flags=flags or [], store=store, cache_ttl_seconds=s.flag_cache_ttl_seconds
        )
        if self.rollout.get_flag(DISCOVERY_FLAG) is None:
            self.rollout.add_flag(
                FeatureFlag(
                    key=DISCOVERY_FLAG,
                    name="Company discovery",
                    rollout_percentage=s.discovery_rollout_percentage,
                )
            )
        elif s.discovery_rollout_percentage != 100:
            self.rollout.update_flag(
                DISCOVERY_FLAG, rollout_percentage=s.discovery_rollout_percentage
            )

        self.telemetry.register_probe("durable_store", store.ping)
        self.telemetry.register_probe("provider", provider.ping)
        self.telemetry.register_probe("cache", self.cache.probe)
        self.telemetry.register_probe("scheduler", self._probe_scheduler)

        self.housekeeper = Housekeeper(self.clock)
        self.housekeeper.register(
            "memory_sweep", s.cache_memory_sweep_interval_seconds, self.cache.sweep_memory
        )
        self.housekeeper.register(
            "durable_cleanup", s.cache_durable_cleanup_interval_seconds, self.cache.cleanup
        )
        self.housekeeper.register(
            "state_persist", s.quota_persist_interval_seconds, self.persist_state
        )
        self.housekeeper.register(
            "health_check", s.health_check_interval_seconds, self._scheduled_health_check
        )

    async def _probe_scheduler(self) -> bool:
        return self.scheduler.is_responsive()

    async def _scheduled_health_check(self) -> str:
        result = await self.telemetry.perform_health_check()
        self.telemetry.check_alerts()
        return result.status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, run_housekeeping: bool = True) -> None:
        """Restore persisted state and optionally start background housekeeping."""
        await self.quota.load()
        await self.resilience.load()
        await self.rollout.load()
        if run_housekeeping:
            self.housekeeper.start()
        logger.info(
            "discovery_service.started",
            offline_mode=self.resilience.offline_mode,
            housekeeping=run_housekeeping,
        )

    async def stop(self) -> None:
        await self.housekeeper.stop()
        await self.scheduler.stop()
        await self.persist_state()
        logger.info("discovery_service.stopped")

    async def persist_state(self) -> bool:
        """Best-effort save of quota counters, breaker states and flags."""
        results = await asyncio.gather(
            self.quota.save(), self.resilience.save(), self.rollout.save()
        )
        return all(results)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def discover(
        self,
        name: str,
        priority: Union[Priority, str] = Priority.NORMAL,
        identity: Optional[IdentityContext] = None,
        interactive: bool = True,
    ) -> List[Candidate]:
        """
        Find company pages for ``name``.

        Returns:
            Candidates sorted by confidence (possibly from a fallback).

        Raises:
            LookupValidationError: empty name
            FeatureDisabled: discovery is not rolled out to ``identity``
            RateLimitExceeded: a quota window is exhausted
            ManualInputRequired, DiscoverySkipped, OfflineModeActive:
                a signalling fallback strategy won
            FallbackExhausted: the provider failed and no fallback applied
        """
        name = (name or "").strip()
        if not name:
            raise LookupValidationError("Company name must not be empty")

        gate = self.rollout.is_enabled(DISCOVERY_FLAG, identity)
        if not gate.enabled:
            raise FeatureDisabled(DISCOVERY_FLAG, gate.reason)

        if self.resilience.offline_mode:
            raise OfflineModeActive(
                FallbackSignal(
                    mode=FallbackMode.OFFLINE,
                    strategy="offline_mode",
                    message="Company lookup is offline",
                )
            )

        cached = await self.cache.get(name)
        self.telemetry.record_cache_hit(cached is not None)
        if cached is not None:
            return cached

        decision = self.quota.check()
        if not decision.allowed:
            self.telemetry.record_rate_limit_hit()
            raise RateLimitExceeded(
                decision.window.value if decision.window else "unknown",
                decision.retry_after_seconds or 0,
                decision.reason or "",
            )

        result = await self.scheduler.enqueue(name, priority, context={"interactive": interactive})
        return self._unwrap(result)

    @staticmethod
    def _unwrap(result: LookupResult) -> List[Candidate]:
        if not isinstance(result, FallbackSignal):
            return list(result)
        if result.candidates:
            return list(result.candidates)
        error_cls = _SIGNAL_ERRORS.get(result.mode, FallbackSignalled)
        raise error_cls(result)

    async def batch(self, names: Iterable[str]) -> Dict[str, List[Candidate]]:
        """High-priority lookups for many names; failures map to empty lists."""
        if not self.rollout.is_enabled(DISCOVERY_FLAG).enabled or self.resilience.offline_mode:
            return {name: [] for name in names}
        return await self.scheduler.batch(names, Priority.HIGH)

    async def warm_up(self, names: Optional[Iterable[str]] = None) -> int:
        """
        Pre-fetch names (default: well-known companies) at low priority.

        Returns:
            Number of names that now have provider results cached.
        """
        pending = self.cache.missing(names if names is not None else COMMON_COMPANIES)
        futures = [
            self.scheduler.enqueue(name, Priority.LOW, context={"skippable": True})
            for name in pending
        ]
        results = await asyncio.gather(*futures, return_exceptions=True)
        warmed = sum(1 for r in results if isinstance(r, list))
        logger.info("discovery_service.warmed_up", requested=len(pending), warmed=warmed)
        return warmed

    async def cleanup(self) -> int:
        return await self.cache.cleanup()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_quota_status(self) -> Dict[str, Any]:
        status = self.quota.get_status()
        status["warnings"] = self.quota.get_warning_levels()
        return status

    async def get_health_status(self) -> Dict[str, Any]:
        result = await self.telemetry.perform_health_check()
        health = result.to_dict()
        health["resilience"] = self.resilience.get_health_status()
        health["quota_warnings"] = self.quota.get_warning_levels()
        return health

    def get_queue_stats(self) -> Dict[str, Any]:
        return self.scheduler.get_stats()

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.telemetry.get_metrics().to_dict()
        metrics["cache"] = self.cache.get_stats()
        return metrics

    def check_alerts(self) -> List[Alert]:
        return self.telemetry.check_alerts()

    def export_metrics(self) -> str:
        return self.telemetry.export_metrics()

    def is_enabled(self, flag_key: str, identity: Optional[IdentityContext] = None) -> FlagEvaluation:
        return self.rollout.is_enabled(flag_key, identity)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self) -> None:
        self.scheduler.pause()

    def resume(self) -> None:
        self.scheduler.resume()

    def clear(self) -> int:
        return self.scheduler.clear()

    def force_open_circuit(self, operation_key: str = SEARCH_OPERATION) -> None:
        self.resilience.force_open(operation_key)

    def reset_circuit(self, operation_key: str = SEARCH_OPERATION) -> None:
        self.resilience.reset_circuit(operation_key)

    async def exit_offline_mode(self) -> None:
        await self.resilience.exit_offline_mode()
