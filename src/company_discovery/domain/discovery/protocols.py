"""Collaborator contracts consumed by the discovery layer.

Location: domain/discovery/protocols.py

The governance components depend on these protocols only; concrete
implementations live under ``company_discovery.infrastructure``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from company_discovery.domain.discovery.models import Candidate


@runtime_checkable
class SearchProvider(Protocol):
    """
    Company-name to company-page search.

    ``search`` may raise NetworkError, ProviderTimeoutError,
    ProviderRateLimited (the provider's quota signal) or LookupValidationError.
    """

    async def search(self, name: str) -> List[Candidate]:
        ...

    async def ping(self) -> bool:
        ...


@runtime_checkable
class DurableStore(Protocol):
    """Key-value store whose entries may carry an expiry timestamp."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored value, or None when absent."""
        ...

    async def set(
        self, key: str, value: Dict[str, Any], expires_at: Optional[datetime] = None
    ) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def delete_where(
        self, prefix: str = "", expires_before: Optional[datetime] = None
    ) -> int:
        """Delete entries under ``prefix`` (optionally only those expiring before a time)."""
        ...

    async def ping(self) -> bool:
        ...
