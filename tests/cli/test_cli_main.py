"""
Tests for the company discovery CLI.

The composition root is patched so every command runs against a service
built from fakes.
"""

from unittest.mock import patch

import pytest

from company_discovery.cli.__main__ import main
from company_discovery.config.flag_loader import load_default_flags
from company_discovery.domain.discovery.exceptions import ProviderServerError
from company_discovery.domain.discovery.service import DiscoveryService
from company_discovery.infrastructure.store.memory import InMemoryDurableStore
from company_discovery.utils.clock import ManualClock
from tests.conftest import FakeProvider

FACTORY_PATH = "company_discovery.cli.__main__.build_discovery_service"


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def patched_factory(provider, settings):
    store = InMemoryDurableStore()
    clock = ManualClock()

    def build():
        return DiscoveryService(
            provider, store, clock=clock, settings=settings, flags=load_default_flags()
        )

    with patch(FACTORY_PATH, side_effect=build) as factory:
        yield factory


@pytest.mark.unit
class TestCliMain:
    def test_requires_command(self) -> None:
        with pytest.raises(SystemExit):
            main([])

    def test_discover_prints_candidates(self, patched_factory, capsys) -> None:
        assert main(["discover", "Acme", "--priority", "high"]) == 0

        out = capsys.readouterr().out
        assert "Discovery results for: Acme" in out
        assert "1. Acme (0.90)" in out
        assert "https://example.com/company/acme" in out

    def test_discover_failure_returns_nonzero(self, patched_factory, provider, capsys) -> None:
        provider.errors = {"!!!": ProviderServerError(503)}

        assert main(["discover", "!!!"]) == 1
        assert "FallbackExhausted" in capsys.readouterr().out

    def test_quota_table(self, patched_factory, capsys) -> None:
        assert main(["quota"]) == 0

        out = capsys.readouterr().out
        assert "Quota Status" in out
        for window in ("month", "day", "minute", "burst"):
            assert window in out
        assert "Denied calls: 0" in out

    def test_health_healthy(self, patched_factory, capsys) -> None:
        assert main(["health"]) == 0
        out = capsys.readouterr().out
        assert "Overall: ✅ healthy" in out
        assert "Open circuits: none" in out

    def test_health_unhealthy_provider(self, patched_factory, provider, capsys) -> None:
        provider.reachable = False

        assert main(["health"]) == 1
        assert "❌ provider" in capsys.readouterr().out

    def test_flags(self, patched_factory, capsys) -> None:
        assert main(["flags", "--user-id", "u-42"]) == 0

        out = capsys.readouterr().out
        assert "company_discovery" in out
        assert "queue_system" in out

    def test_cleanup(self, patched_factory, capsys) -> None:
        assert main(["cleanup"]) == 0
        assert "Removed 0 expired durable entries" in capsys.readouterr().out
        patched_factory.assert_called_once_with()
