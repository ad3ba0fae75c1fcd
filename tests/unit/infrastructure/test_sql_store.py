"""
Tests for the SQLAlchemy durable store, run against a SQLite file.
"""

from datetime import datetime, timedelta, timezone

import pytest

from company_discovery.domain.discovery.cache import DiscoveryCache
from company_discovery.infrastructure.store.sql import SqlAlchemyDurableStore
from tests.conftest import make_candidate

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def sql_store(tmp_path):
    store = SqlAlchemyDurableStore(f"sqlite:///{tmp_path / 'discovery.db'}")
    yield store
    store.dispose()


@pytest.mark.unit
class TestSqlAlchemyDurableStore:
    def test_rejects_unsafe_table_name(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            SqlAlchemyDurableStore(f"sqlite:///{tmp_path / 'x.db'}", table="t; DROP TABLE x")

    @pytest.mark.asyncio
    async def test_set_get_overwrite(self, sql_store) -> None:
        assert await sql_store.get("quota:windows") is None

        await sql_store.set("quota:windows", {"month": {"count": 3}, "flags": [1, 2]})
        assert await sql_store.get("quota:windows") == {"month": {"count": 3}, "flags": [1, 2]}

        await sql_store.set("quota:windows", {"month": {"count": 4}})
        assert await sql_store.get("quota:windows") == {"month": {"count": 4}}

    @pytest.mark.asyncio
    async def test_delete(self, sql_store) -> None:
        await sql_store.set("cache:acme", {"v": 1})
        assert await sql_store.delete("cache:acme") is True
        assert await sql_store.delete("cache:acme") is False

    @pytest.mark.asyncio
    async def test_delete_where_by_prefix_and_expiry(self, sql_store) -> None:
        await sql_store.set("cache:old", {"v": 1}, expires_at=NOW - timedelta(hours=1))
        await sql_store.set("cache:new", {"v": 2}, expires_at=NOW + timedelta(hours=1))
        await sql_store.set("cache:forever", {"v": 3})
        await sql_store.set("quota:windows", {"v": 4}, expires_at=NOW - timedelta(hours=1))

        assert await sql_store.delete_where("cache:", expires_before=NOW) == 1
        assert await sql_store.get("cache:new") == {"v": 2}
        assert await sql_store.get("cache:forever") == {"v": 3}
        assert await sql_store.get("quota:windows") == {"v": 4}

    @pytest.mark.asyncio
    async def test_prefix_wildcards_are_literal(self, sql_store) -> None:
        await sql_store.set("flag_a", {"v": 1})
        await sql_store.set("flagXa", {"v": 2})

        assert await sql_store.delete_where("flag_") == 1
        assert await sql_store.get("flagXa") == {"v": 2}

    @pytest.mark.asyncio
    async def test_state_survives_new_instance(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path / 'shared.db'}"
        first = SqlAlchemyDurableStore(url)
        await first.set("circuits", {"company-search": "OPEN"})
        first.dispose()

        second = SqlAlchemyDurableStore(url)
        assert await second.get("circuits") == {"company-search": "OPEN"}
        assert await second.ping() is True
        second.dispose()

    @pytest.mark.asyncio
    async def test_backs_the_durable_cache_tier(self, sql_store, clock) -> None:
        writer = DiscoveryCache(sql_store, clock)
        await writer.set("Acme Corp", [make_candidate("Acme Corp", 0.9)])

        reader = DiscoveryCache(sql_store, clock)
        cached = await reader.get("acme corp")

        assert cached is not None
        assert cached[0].display_name == "Acme Corp"
        assert reader.get_stats()["durable_hits"] == 1
