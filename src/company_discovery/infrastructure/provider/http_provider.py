"""
HTTP client for the company lookup provider.

The provider is queried with ``GET <base_url>?q=<name>&limit=<n>`` and
answers JSON, either a list of results or ``{"results": [...]}``. Each result
may carry ``url``, ``name``/``title``, ``slug``, ``snippet``/``description``
and ``confidence``; results without a confidence are scored locally.

Retries, rate limiting and timeouts around this client are the job of the
governance layer, so every call here is a single HTTP request. HTTP failures
are translated into the discovery exception hierarchy.
"""

import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from company_discovery.domain.discovery.exceptions import (
    LookupValidationError,
    NetworkError,
    ProviderAuthenticationError,
    ProviderRateLimited,
    ProviderServerError,
    ProviderTimeoutError,
    ProviderUnavailable,
)
from company_discovery.domain.discovery.models import Candidate
from company_discovery.domain.discovery.normalizer import normalize_key, slugify
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

BASE_CONFIDENCE = 0.6
NAME_MATCH_BONUS = 0.25
FIRST_RESULT_BONUS = 0.10
SLUG_MATCH_BONUS = 0.05
MAX_SCORED_CONFIDENCE = 0.95


def score_candidate(query: str, display_name: str, slug: str, position: int) -> float:
    """
    Confidence for a result that arrived without one.

    Examples:
        >>> score_candidate("Acme", "Acme Corp", "acme", 0)
        0.95
        >>> score_candidate("Acme", "Other Inc", "other", 2)
        0.6
    """
    query_key = normalize_key(query)
    score = BASE_CONFIDENCE
    if query_key and query_key in normalize_key(display_name):
        score += NAME_MATCH_BONUS
    if position == 0:
        score += FIRST_RESULT_BONUS
    query_slug = slugify(query)
    if query_slug and query_slug in slug:
        score += SLUG_MATCH_BONUS
    return round(min(score, MAX_SCORED_CONFIDENCE), 2)


def _slug_from_url(url: str) -> str:
    path = urlparse(url).path.rstrip("/")
    return path.rsplit("/", 1)[-1] if path else ""


class HttpSearchProvider:
    """
    ``SearchProvider`` backed by ``requests``.

    A 401 disables the provider for the rest of the process, since every
    later call would be rejected the same way.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        max_results: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.max_results = max_results
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"
        self._disabled = False
        logger.info(
            "http_provider.initialized",
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            has_api_key=bool(api_key),
        )

    @property
    def is_available(self) -> bool:
        return not self._disabled

    def reset_disabled(self) -> None:
        self._disabled = False

    def _request(self, name: str) -> requests.Response:
        if self._disabled:
            raise ProviderAuthenticationError("Provider disabled after authentication failure")
        try:
            response = self.session.get(
                self.base_url,
                params={"q": name, "limit": self.max_results},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            raise ProviderTimeoutError(self.timeout_seconds) from e
        except requests.ConnectionError as e:
            raise NetworkError(f"Cannot reach provider: {e}") from e
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Provider request failed: {e}") from e

        status = response.status_code
        if status == 200:
            return response
        if status == 401:
            self._disabled = True
            logger.error("http_provider.disabled", reason="unauthorized")
            raise ProviderAuthenticationError("Provider rejected credentials (HTTP 401)")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderRateLimited(
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if status in (400, 422):
            raise LookupValidationError(f"Provider rejected query (HTTP {status})")
        if status >= 500:
            raise ProviderServerError(status)
        raise ProviderUnavailable(f"Unexpected provider response: HTTP {status}")

    def _parse(self, name: str, payload: Any) -> List[Candidate]:
        items = payload.get("results", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ProviderUnavailable("Malformed provider response")

        candidates: List[Candidate] = []
        for position, item in enumerate(items[: self.max_results]):
            if not isinstance(item, dict) or not item.get("url"):
                continue
            url = str(item["url"])
            display_name = str(item.get("name") or item.get("title") or name)
            slug = str(item.get("slug") or _slug_from_url(url))
            confidence = item.get("confidence")
            if confidence is None:
                confidence = score_candidate(name, display_name, slug, position)
            candidates.append(
                Candidate(
                    url=url,
                    display_name=display_name,
                    slug=slug,
                    snippet=item.get("snippet") or item.get("description") or "",
                    confidence=max(0.0, min(1.0, float(confidence))),
                )
            )
        return sorted(candidates, key=lambda c: c.confidence, reverse=True)

    def search_sync(self, name: str) -> List[Candidate]:
        if not name or not name.strip():
            raise LookupValidationError("Company name must not be empty")
        response = self._request(name.strip())
        try:
            payload: Dict[str, Any] = response.json()
        except ValueError as e:
            raise ProviderUnavailable("Provider returned invalid JSON") from e
        candidates = self._parse(name.strip(), payload)
        logger.debug("http_provider.search_completed", result_count=len(candidates))
        return candidates

    async def search(self, name: str) -> List[Candidate]:
        return await asyncio.to_thread(self.search_sync, name)

    async def ping(self) -> bool:
        """Reachability check that does not spend lookup quota."""

        def _head() -> bool:
            try:
                response = self.session.head(self.base_url, timeout=self.timeout_seconds)
            except requests.RequestException as e:
                logger.warning("http_provider.ping_failed", error=str(e))
                return False
            return response.status_code < 500 and response.status_code != 401

        if self._disabled:
            return False
        return await asyncio.to_thread(_head)

    def close(self) -> None:
        self.session.close()
