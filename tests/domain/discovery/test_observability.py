"""
Unit tests for the telemetry recorder.

Tests cover TelemetryStats rates, alert thresholds, health probe aggregation
and the metrics export.
"""

import asyncio
import threading

import pytest

from company_discovery.domain.discovery.exceptions import NetworkError
from company_discovery.domain.discovery.observability import (
    ERROR_HISTORY,
    LATENCY_HISTORY,
    TelemetryRecorder,
    TelemetryStats,
    aggregate_health,
)


def alerts_by_metric(recorder):
    return {alert.metric: alert.level for alert in recorder.check_alerts()}


class TestTelemetryStats:
    def test_default_values(self) -> None:
        stats = TelemetryStats()
        assert stats.total_requests == 0
        assert stats.error_rate == 0.0
        assert stats.cache_hit_rate == 0.0

    def test_rates(self) -> None:
        stats = TelemetryStats(total_requests=20, failed_requests=1, cache_hits=3, cache_misses=1)
        assert stats.error_rate == 0.05
        assert stats.cache_hit_rate == 0.75
        assert stats.to_dict()["cache_hit_rate"] == 0.75


class TestAggregateHealth:
    @pytest.mark.parametrize(
        "checks,expected",
        [
            ({"a": True, "b": True, "c": True, "d": True}, "healthy"),
            ({"a": True, "b": True, "c": False, "d": False}, "degraded"),
            ({"a": True, "b": False, "c": False, "d": False}, "unhealthy"),
            ({}, "healthy"),
        ],
    )
    def test_thresholds(self, checks, expected) -> None:
        assert aggregate_health(checks) == expected


@pytest.mark.unit
class TestTelemetryRecorder:
    def test_request_counters(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        recorder.record_request(True, 100.0)
        recorder.record_request(False, 300.0, endpoint="ping")

        metrics = recorder.get_metrics()
        assert metrics.total_requests == 2
        assert metrics.failed_requests == 1
        assert metrics.average_latency_ms == 200.0
        assert metrics.requests_by_endpoint == {"search": 1, "ping": 1}
        assert [o.success for o in recorder.outcomes()] == [True, False]

    def test_latency_history_is_bounded(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        for _ in range(LATENCY_HISTORY):
            recorder.record_request(True, 10_000.0)
        for _ in range(LATENCY_HISTORY):
            recorder.record_request(True, 100.0)

        assert recorder.get_metrics().average_latency_ms == 100.0

    def test_error_history_is_bounded(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        for n in range(ERROR_HISTORY + 10):
            recorder.record_error(NetworkError(f"down {n}"), {"attempt": n})

        metrics = recorder.get_metrics()
        assert len(metrics.recent_errors) == ERROR_HISTORY
        assert metrics.recent_errors[-1].message == f"down {ERROR_HISTORY + 9}"
        assert metrics.errors_by_type == {"NetworkError": ERROR_HISTORY + 10}

    def test_concurrent_recording(self, clock) -> None:
        recorder = TelemetryRecorder(clock)

        def record() -> None:
            for _ in range(200):
                recorder.record_request(True, 1.0)
                recorder.record_cache_hit(True)

        threads = [threading.Thread(target=record) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        metrics = recorder.get_metrics()
        assert metrics.total_requests == 800
        assert metrics.cache_hits == 800

    def test_no_alerts_when_healthy(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        for _ in range(20):
            recorder.record_request(True, 200.0)
        assert recorder.check_alerts() == []

    @pytest.mark.parametrize("failures,level", [(1, None), (2, "warning"), (3, "critical")])
    def test_error_rate_alerts(self, clock, failures, level) -> None:
        recorder = TelemetryRecorder(clock)
        for n in range(20):
            recorder.record_request(n >= failures, 100.0)
        assert alerts_by_metric(recorder).get("error_rate") == level

    @pytest.mark.parametrize("latency,level", [(2999.0, None), (3500.0, "warning"), (6000.0, "critical")])
    def test_latency_alerts(self, clock, latency, level) -> None:
        recorder = TelemetryRecorder(clock)
        recorder.record_request(True, latency)
        assert alerts_by_metric(recorder).get("average_latency_ms") == level

    def test_cache_hit_rate_alert_needs_samples(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        for n in range(100):
            recorder.record_cache_hit(n < 10)
        assert "cache_hit_rate" not in alerts_by_metric(recorder)

        recorder.record_cache_hit(False)
        assert alerts_by_metric(recorder)["cache_hit_rate"] == "warning"

    def test_rate_limit_hit_alert(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        recorder.record_rate_limit_hit()
        assert alerts_by_metric(recorder) == {"rate_limit_hits": "warning"}

    @pytest.mark.asyncio
    async def test_health_check_isolates_failing_probes(self, clock) -> None:
        recorder = TelemetryRecorder(clock, probe_timeout_seconds=0.05)

        async def ok():
            return True

        async def broken():
            raise ConnectionError("refused")

        async def hangs():
            await asyncio.sleep(1)
            return True

        recorder.register_probe("store", ok)
        recorder.register_probe("provider", broken)
        recorder.register_probe("cache", ok)
        recorder.register_probe("scheduler", hangs)

        result = await recorder.perform_health_check()

        assert result.status == "degraded"
        assert result.checks == {"store": True, "provider": False, "cache": True, "scheduler": False}
        assert result.errors["provider"] == "ConnectionError: refused"
        assert "timed out" in result.errors["scheduler"]
        assert recorder.last_health is result

    @pytest.mark.asyncio
    async def test_probe_returning_false(self, clock) -> None:
        recorder = TelemetryRecorder(clock)

        async def down():
            return False

        recorder.register_probe("provider", down)
        result = await recorder.perform_health_check()

        assert result.status == "unhealthy"
        assert result.to_dict()["errors"] == {"provider": "probe reported failure"}

    def test_export_metrics(self, clock) -> None:
        recorder = TelemetryRecorder(clock)
        recorder.record_request(False, 50.0)
        recorder.record_error(NetworkError("down"))
        recorder.record_fallback("heuristic_guess")

        text = recorder.export_metrics()

        assert "discovery_requests_total 1\n" in text
        assert 'discovery_errors_total{type="NetworkError"} 1' in text
        assert 'discovery_fallbacks_total{strategy="heuristic_guess"} 1' in text
        assert text.endswith("\n")

    @pytest.mark.asyncio
    async def test_reset_keeps_probes(self, clock) -> None:
        recorder = TelemetryRecorder(clock)

        async def ok():
            return True

        recorder.register_probe("store", ok)
        recorder.record_request(True, 10.0)
        recorder.reset()

        assert recorder.get_metrics().total_requests == 0
        assert (await recorder.perform_health_check()).checks == {"store": True}
