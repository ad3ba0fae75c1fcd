"""In-process DurableStore implementation.

Used by tests and by deployments without a database; state does not survive
a restart.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Dict, Optional, Tuple


class InMemoryDurableStore:
    """Dictionary-backed key-value store with optional per-entry expiry."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[Dict[str, Any], Optional[datetime]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return sorted(self._entries)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return copy.deepcopy(entry[0])

    async def set(
        self, key: str, value: Dict[str, Any], expires_at: Optional[datetime] = None
    ) -> None:
        self._entries[key] = (copy.deepcopy(value), expires_at)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_where(
        self, prefix: str = "", expires_before: Optional[datetime] = None
    ) -> int:
        doomed = [
            key
            for key, (_, expires_at) in self._entries.items()
            if key.startswith(prefix)
            and (
                expires_before is None
                or (expires_at is not None and expires_at < expires_before)
            )
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def ping(self) -> bool:
        return True
