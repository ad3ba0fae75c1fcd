"""DurableStore implementations."""

from company_discovery.infrastructure.store.memory import InMemoryDurableStore
from company_discovery.infrastructure.store.sql import SqlAlchemyDurableStore

__all__ = ["InMemoryDurableStore", "SqlAlchemyDurableStore"]
