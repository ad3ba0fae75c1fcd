"""
Telemetry for the discovery layer: outcome history, derived rates, health
probes and alert thresholds.

Rolling windows are bounded: the last 100 latencies, the last 50 errors and
the last 1000 outcome records. Counters are lifetime totals until ``reset()``.
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from company_discovery.domain.discovery.models import OutcomeRecord
from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

LATENCY_HISTORY = 100
ERROR_HISTORY = 50
OUTCOME_HISTORY = 1000

ERROR_RATE_CRITICAL = 0.10
ERROR_RATE_WARNING = 0.05
CACHE_HIT_RATE_WARNING = 0.5
CACHE_SAMPLE_MINIMUM = 100
LATENCY_CRITICAL_MS = 5000.0
LATENCY_WARNING_MS = 3000.0

HealthProbe = Callable[[], Awaitable[bool]]


@dataclass
class ErrorRecord:
    """One recorded error."""

    timestamp: str
    error_type: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TelemetryStats:
    """
    Snapshot of discovery metrics.

    Examples:
        >>> stats = TelemetryStats(total_requests=20, failed_requests=1)
        >>> stats.error_rate
        0.05
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_latency_ms: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    rate_limit_hits: int = 0
    requests_by_endpoint: Dict[str, int] = field(default_factory=dict)
    errors_by_type: Dict[str, int] = field(default_factory=dict)
    fallbacks_by_strategy: Dict[str, int] = field(default_factory=dict)
    recent_errors: List[ErrorRecord] = field(default_factory=list)

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    @property
    def cache_samples(self) -> int:
        return self.cache_hits + self.cache_misses

    @property
    def cache_hit_rate(self) -> float:
        if self.cache_samples == 0:
            return 0.0
        return self.cache_hits / self.cache_samples

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "error_rate": round(self.error_rate, 4),
            "average_latency_ms": round(self.average_latency_ms, 2),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "rate_limit_hits": self.rate_limit_hits,
            "requests_by_endpoint": dict(self.requests_by_endpoint),
            "errors_by_type": dict(self.errors_by_type),
            "fallbacks_by_strategy": dict(self.fallbacks_by_strategy),
            "recent_errors": [vars(e) for e in self.recent_errors],
        }


@dataclass
class HealthCheckResult:
    """Aggregated probe results: healthy, degraded or unhealthy."""

    status: str
    checks: Dict[str, bool]
    errors: Dict[str, str]
    checked_at: str
    duration_ms: float

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "checks": dict(self.checks),
            "errors": dict(self.errors),
            "checked_at": self.checked_at,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class Alert:
    level: str
    metric: str
    message: str
    value: float
    threshold: float


def aggregate_health(checks: Dict[str, bool]) -> str:
    """healthy if every probe passed, degraded if at least half did, else unhealthy."""
    if not checks:
        return "healthy"
    passed = sum(1 for ok in checks.values() if ok)
    if passed == len(checks):
        return "healthy"
    if passed / len(checks) >= 0.5:
        return "degraded"
    return "unhealthy"


class TelemetryRecorder:
    """
    Aggregates discovery outcomes into rates, health and alert signals.

    Examples:
        >>> telemetry = TelemetryRecorder(clock)
        >>> telemetry.record_request(success=True, latency_ms=120.0)
        >>> telemetry.record_cache_hit(False)
        >>> telemetry.get_metrics().total_requests
        1
    """

    def __init__(self, clock: Clock, probe_timeout_seconds: float = 5.0) -> None:
        self.clock = clock
        self.probe_timeout_seconds = probe_timeout_seconds
        self._lock = threading.Lock()
        self._probes: Dict[str, HealthProbe] = {}
        self.last_health: Optional[HealthCheckResult] = None
        self._init_state()

    def _init_state(self) -> None:
        self._stats = TelemetryStats()
        self._latencies: Deque[float] = deque(maxlen=LATENCY_HISTORY)
        self._errors: Deque[ErrorRecord] = deque(maxlen=ERROR_HISTORY)
        self._outcomes: Deque[OutcomeRecord] = deque(maxlen=OUTCOME_HISTORY)

    def record_request(self, success: bool, latency_ms: float, endpoint: str = "search") -> None:
        """Record one completed provider call."""
        latency_ms = max(0.0, latency_ms)
        with self._lock:
            self._stats.total_requests += 1
            if success:
                self._stats.successful_requests += 1
            else:
                self._stats.failed_requests += 1
            self._stats.requests_by_endpoint[endpoint] = (
                self._stats.requests_by_endpoint.get(endpoint, 0) + 1
            )
            self._latencies.append(latency_ms)
            self._outcomes.append(
                OutcomeRecord(
                    timestamp=self.clock.now(),
                    success=success,
                    latency_ms=latency_ms,
                    endpoint=endpoint,
                )
            )

    def record_cache_hit(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._stats.cache_hits += 1
            else:
                self._stats.cache_misses += 1

    def record_rate_limit_hit(self) -> None:
        with self._lock:
            self._stats.rate_limit_hits += 1

    def record_fallback(self, strategy: str) -> None:
        with self._lock:
            self._stats.fallbacks_by_strategy[strategy] = (
                self._stats.fallbacks_by_strategy.get(strategy, 0) + 1
            )

    def record_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        """Record an error with its context; keeps the most recent 50."""
        error_type = type(error).__name__
        with self._lock:
            self._stats.errors_by_type[error_type] = (
                self._stats.errors_by_type.get(error_type, 0) + 1
            )
            self._errors.append(
                ErrorRecord(
                    timestamp=self.clock.now().isoformat(),
                    error_type=error_type,
                    message=str(error),
                    context=dict(context or {}),
                )
            )

    def outcomes(self) -> List[OutcomeRecord]:
        with self._lock:
            return list(self._outcomes)

    def get_metrics(self) -> TelemetryStats:
        """Copy of the current metrics."""
        with self._lock:
            stats = self._stats
            average = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
            return TelemetryStats(
                total_requests=stats.total_requests,
                successful_requests=stats.successful_requests,
                failed_requests=stats.failed_requests,
                average_latency_ms=average,
                cache_hits=stats.cache_hits,
                cache_misses=stats.cache_misses,
                rate_limit_hits=stats.rate_limit_hits,
                requests_by_endpoint=stats.requests_by_endpoint.copy(),
                errors_by_type=stats.errors_by_type.copy(),
                fallbacks_by_strategy=stats.fallbacks_by_strategy.copy(),
                recent_errors=list(self._errors),
            )

    def register_probe(self, name: str, probe: HealthProbe) -> None:
        self._probes[name] = probe

    async def _run_probe(self, name: str, probe: HealthProbe) -> tuple[bool, Optional[str]]:
        try:
            ok = await asyncio.wait_for(probe(), timeout=self.probe_timeout_seconds)
        except asyncio.TimeoutError:
            return False, f"probe timed out after {self.probe_timeout_seconds}s"
        except Exception as e:
            return False, f"{type(e).__name__}: {e}"
        return bool(ok), None if ok else "probe reported failure"

    async def perform_health_check(self) -> HealthCheckResult:
        """
        Run every registered probe independently and aggregate the results.

        A probe that raises or times out counts as failed without affecting
        the other probes.
        """
        started = time.perf_counter()
        names = list(self._probes)
        results = await asyncio.gather(
            *(self._run_probe(name, self._probes[name]) for name in names)
        )
        checks: Dict[str, bool] = {}
        errors: Dict[str, str] = {}
        for name, (ok, error) in zip(names, results):
            checks[name] = ok
            if error:
                errors[name] = error

        result = HealthCheckResult(
            status=aggregate_health(checks),
            checks=checks,
            errors=errors,
            checked_at=self.clock.now().isoformat(),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        self.last_health = result
        log = logger.info if result.healthy else logger.warning
        log("telemetry.health_checked", status=result.status, failed=sorted(errors))
        return result

    def check_alerts(self) -> List[Alert]:
        """Evaluate alert thresholds against the current metrics."""
        stats = self.get_metrics()
        alerts: List[Alert] = []

        if stats.error_rate > ERROR_RATE_CRITICAL:
            alerts.append(
                Alert("critical", "error_rate", f"Error rate {stats.error_rate:.1%}",
                      stats.error_rate, ERROR_RATE_CRITICAL)
            )
        elif stats.error_rate > ERROR_RATE_WARNING:
            alerts.append(
                Alert("warning", "error_rate", f"Error rate {stats.error_rate:.1%}",
                      stats.error_rate, ERROR_RATE_WARNING)
            )

        if stats.cache_samples > CACHE_SAMPLE_MINIMUM and stats.cache_hit_rate < CACHE_HIT_RATE_WARNING:
            alerts.append(
                Alert("warning", "cache_hit_rate", f"Cache hit rate {stats.cache_hit_rate:.1%}",
                      stats.cache_hit_rate, CACHE_HIT_RATE_WARNING)
            )

        if stats.average_latency_ms > LATENCY_CRITICAL_MS:
            alerts.append(
                Alert("critical", "average_latency_ms",
                      f"Average latency {stats.average_latency_ms:.0f}ms",
                      stats.average_latency_ms, LATENCY_CRITICAL_MS)
            )
        elif stats.average_latency_ms > LATENCY_WARNING_MS:
            alerts.append(
                Alert("warning", "average_latency_ms",
                      f"Average latency {stats.average_latency_ms:.0f}ms",
                      stats.average_latency_ms, LATENCY_WARNING_MS)
            )

        if stats.rate_limit_hits > 0:
            alerts.append(
                Alert("warning", "rate_limit_hits",
                      f"{stats.rate_limit_hits} requests hit the rate limit",
                      float(stats.rate_limit_hits), 0.0)
            )

        for alert in alerts:
            logger.warning("telemetry.alert", level=alert.level, metric=alert.metric,
                           value=alert.value, threshold=alert.threshold)
        return alerts

    def export_metrics(self) -> str:
        """Metrics in Prometheus text exposition format."""
        stats = self.get_metrics()
        lines = [
            f"discovery_requests_total {stats.total_requests}",
            f"discovery_requests_failed_total {stats.failed_requests}",
            f"discovery_error_rate {stats.error_rate:.4f}",
            f"discovery_average_latency_ms {stats.average_latency_ms:.2f}",
            f"discovery_cache_hits_total {stats.cache_hits}",
            f"discovery_cache_misses_total {stats.cache_misses}",
            f"discovery_cache_hit_rate {stats.cache_hit_rate:.4f}",
            f"discovery_rate_limit_hits_total {stats.rate_limit_hits}",
        ]
        for endpoint, count in sorted(stats.requests_by_endpoint.items()):
            lines.append(f'discovery_endpoint_requests_total{{endpoint="{endpoint}"}} {count}')
        for error_type, count in sorted(stats.errors_by_type.items()):
            lines.append(f'discovery_errors_total{{type="{error_type}"}} {count}')
        for strategy, count in sorted(stats.fallbacks_by_strategy.items()):
            lines.append(f'discovery_fallbacks_total{{strategy="{strategy}"}} {count}')
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Reset all statistics; registered probes are kept."""
        with self._lock:
            self._init_state()
