"""
SQLAlchemy-backed DurableStore.

One table holds every durable record of the discovery layer (cache entries,
quota counters, circuit state, feature flags), keyed by a namespaced string
such as ``cache:acme corp`` or ``quota:windows``:

    key TEXT PRIMARY KEY, value TEXT (JSON), expires_at REAL (epoch seconds),
    updated_at REAL

SQLAlchemy calls are synchronous; each operation runs in a worker thread via
``asyncio.to_thread`` so the event loop never blocks on the database.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Engine, create_engine, text

from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _to_epoch(moment: Optional[datetime]) -> Optional[float]:
    return moment.timestamp() if moment is not None else None


class SqlAlchemyDurableStore:
    """
    Durable key-value store on any SQLAlchemy-supported database.

    Example:
        >>> store = SqlAlchemyDurableStore("sqlite:///company_discovery.db")
        >>> await store.set("quota:windows", {"month": 3})
        >>> await store.get("quota:windows")
        {'month': 3}
    """

    def __init__(self, url_or_engine: str | Engine, table: str = "discovery_store") -> None:
        if not _TABLE_NAME_RE.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        if isinstance(url_or_engine, str):
            self.engine = create_engine(url_or_engine, future=True)
        else:
            self.engine = url_or_engine
        self.table = table
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self.engine.begin() as conn:
            conn.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        key VARCHAR(512) PRIMARY KEY,
                        value TEXT NOT NULL,
                        expires_at REAL NULL,
                        updated_at REAL NOT NULL
                    )
                """)
            )
        self._schema_ready = True
        logger.debug("durable_store.schema_ready", table=self.table)

    def _get_sync(self, key: str) -> Optional[Dict[str, Any]]:
        self._ensure_schema()
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT value FROM {self.table} WHERE key = :key"),
                {"key": key},
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _set_sync(
        self, key: str, value: Dict[str, Any], expires_at: Optional[datetime]
    ) -> None:
        self._ensure_schema()
        query = text(f"""
            INSERT INTO {self.table} (key, value, expires_at, updated_at)
            VALUES (:key, :value, :expires_at, :updated_at)
            ON CONFLICT (key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
        """)
        with self.engine.begin() as conn:
            conn.execute(
                query,
                {
                    "key": key,
                    "value": json.dumps(value, default=str),
                    "expires_at": _to_epoch(expires_at),
                    "updated_at": time.time(),
                },
            )

    def _delete_sync(self, key: str) -> bool:
        self._ensure_schema()
        with self.engine.begin() as conn:
            result = conn.execute(
                text(f"DELETE FROM {self.table} WHERE key = :key"), {"key": key}
            )
        return result.rowcount > 0

    def _delete_where_sync(self, prefix: str, expires_before: Optional[datetime]) -> int:
        self._ensure_schema()
        clauses = ["key LIKE :pattern ESCAPE '\\'"]
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        params: Dict[str, Any] = {"pattern": f"{escaped}%"}
        if expires_before is not None:
            clauses.append("expires_at IS NOT NULL AND expires_at < :expires_before")
            params["expires_before"] = _to_epoch(expires_before)
        query = text(f"DELETE FROM {self.table} WHERE {' AND '.join(clauses)}")
        with self.engine.begin() as conn:
            result = conn.execute(query, params)
        return result.rowcount

    def _ping_sync(self) -> bool:
        self._ensure_schema()
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(
        self, key: str, value: Dict[str, Any], expires_at: Optional[datetime] = None
    ) -> None:
        await asyncio.to_thread(self._set_sync, key, value, expires_at)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    async def delete_where(
        self, prefix: str = "", expires_before: Optional[datetime] = None
    ) -> int:
        deleted = await asyncio.to_thread(self._delete_where_sync, prefix, expires_before)
        logger.debug("durable_store.deleted", prefix=prefix, count=deleted)
        return deleted

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._ping_sync)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
