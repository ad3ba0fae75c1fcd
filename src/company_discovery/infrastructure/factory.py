"""DiscoveryServiceFactory - composition root for the production stack.

Builds a ``DiscoveryService`` wired to the SQLAlchemy durable store, the HTTP
provider, the system clock and the YAML flag catalogue. Every collaborator can
be overridden, which is how the CLI tests substitute fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from company_discovery.config.flag_loader import load_default_flags
from company_discovery.config.settings import Settings, get_settings
from company_discovery.domain.discovery.protocols import DurableStore, SearchProvider
from company_discovery.domain.discovery.service import DiscoveryService
from company_discovery.infrastructure.provider.http_provider import HttpSearchProvider
from company_discovery.infrastructure.store.sql import SqlAlchemyDurableStore
from company_discovery.utils.clock import Clock, SystemClock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)


def build_discovery_service(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[SearchProvider] = None,
    store: Optional[DurableStore] = None,
    clock: Optional[Clock] = None,
) -> DiscoveryService:
    """
    Create a fully wired discovery service.

    Args:
        settings: Configuration; defaults to ``get_settings()``
        provider: Lookup provider; defaults to ``HttpSearchProvider``
        store: Durable store; defaults to ``SqlAlchemyDurableStore(settings.store_url)``
        clock: Time source; defaults to ``SystemClock``

    Returns:
        DiscoveryService (call ``await service.start()`` before use)
    """
    settings = settings or get_settings()

    if provider is None:
        provider = HttpSearchProvider(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
            max_results=settings.provider_max_results,
        )
    if store is None:
        store = SqlAlchemyDurableStore(settings.store_url, table=settings.store_table)

    flags_file = Path(settings.feature_flags_file) if settings.feature_flags_file else None
    flags = load_default_flags(flags_file)

    logger.info(
        "discovery_factory.created",
        provider=type(provider).__name__,
        store=type(store).__name__,
        flag_count=len(flags),
    )
    return DiscoveryService(
        provider,
        store,
        clock=clock or SystemClock(),
        settings=settings,
        flags=flags,
    )
