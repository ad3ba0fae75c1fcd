"""Lookup provider clients."""

from company_discovery.infrastructure.provider.http_provider import (
    HttpSearchProvider,
    score_candidate,
)

__all__ = ["HttpSearchProvider", "score_candidate"]
