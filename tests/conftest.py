"""Shared fixtures for the company discovery test suite.

Every time-dependent test drives a ManualClock; durable state lives in an
InMemoryDurableStore unless a test needs the SQL store explicitly.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from company_discovery.config.settings import Settings
from company_discovery.domain.discovery.models import Candidate
from company_discovery.domain.discovery.normalizer import normalize_key, slugify
from company_discovery.infrastructure.store.memory import InMemoryDurableStore
from company_discovery.utils.clock import ManualClock


def make_candidate(name: str, confidence: float = 0.9, **extra: Any) -> Candidate:
    slug = extra.pop("slug", slugify(name))
    return Candidate(
        url=f"https://example.com/company/{slug}",
        display_name=name,
        slug=slug,
        confidence=confidence,
        **extra,
    )


class FakeProvider:
    """
    Scriptable SearchProvider.

    ``script`` outcomes (candidate lists or exceptions) are consumed in call
    order; ``errors`` fail every call for a name; otherwise ``results`` or a
    single generated candidate is returned.
    """

    def __init__(
        self,
        results: Optional[Dict[str, List[Candidate]]] = None,
        script: Optional[List[Any]] = None,
        errors: Optional[Dict[str, Exception]] = None,
        delay_seconds: float = 0.0,
    ):
        self.results = {normalize_key(k): v for k, v in (results or {}).items()}
        self.script = list(script or [])
        self.errors = {normalize_key(k): v for k, v in (errors or {}).items()}
        self.delay_seconds = delay_seconds
        self.calls: List[str] = []
        self.reachable = True

    async def search(self, name: str) -> List[Candidate]:
        self.calls.append(name)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        key = normalize_key(name)
        if key in self.errors:
            raise self.errors[key]
        if key in self.results:
            return list(self.results[key])
        return [make_candidate(name)]

    async def ping(self) -> bool:
        return self.reachable


class FailingStore(InMemoryDurableStore):
    """DurableStore whose every operation raises, as during a database outage."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise ConnectionError("store unavailable")

    async def set(self, key: str, value: Dict[str, Any], expires_at: Any = None) -> None:
        raise ConnectionError("store unavailable")

    async def delete(self, key: str) -> bool:
        raise ConnectionError("store unavailable")

    async def delete_where(self, prefix: str = "", expires_before: Any = None) -> int:
        raise ConnectionError("store unavailable")

    async def ping(self) -> bool:
        raise ConnectionError("store unavailable")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from .env files, with generous quota ceilings."""
    return Settings(
        _env_file=None,
        quota_burst_limit=50,
        quota_minute_limit=100,
        quota_monthly_limit=30000,
        retry_max_retries=1,
        retry_base_delay_seconds=0.5,
        scheduler_max_retries=0,
        provider_timeout_seconds=1.0,
    )
