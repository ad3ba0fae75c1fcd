"""
Default fallback chain for company search.

Priority order:
1. cached_results  - a cached result younger than the fresh window
2. manual_entry    - ask an interactive caller to enter details by hand
3. skip_discovery  - let a batch caller skip the item
4. offline_mode    - disable discovery after connectivity loss
5. heuristic_guess - low-confidence guess from a static table or a slug
                     (never for rejected input)

Handlers receive the ``ErrorContext``; ``user_context["name"]`` carries the
looked-up name. Every handler returns a ``FallbackSignal``.
"""

import re
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from company_discovery.domain.discovery.exceptions import (
    CircuitOpen,
    FallbackUnavailable,
    LookupValidationError,
    NetworkError,
    is_retryable,
)
from company_discovery.domain.discovery.models import Candidate, FallbackMode, FallbackSignal
from company_discovery.domain.discovery.normalizer import slugify
from company_discovery.domain.discovery.resilience import (
    ErrorContext,
    FallbackStrategy,
    ResilienceController,
)

CachedLookup = Callable[[str, float], Awaitable[Optional[List[Candidate]]]]

DEFAULT_URL_TEMPLATE = "https://www.linkedin.com/company/{slug}"

# (pattern, vanity name) pairs for well-known companies.
KNOWN_COMPANIES: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"\bmicrosoft\b", re.IGNORECASE), "microsoft"),
    (re.compile(r"\bgoogle\b", re.IGNORECASE), "google"),
    (re.compile(r"\bapple\b", re.IGNORECASE), "apple"),
    (re.compile(r"\bamazon\b", re.IGNORECASE), "amazon"),
    (re.compile(r"\bmeta\b", re.IGNORECASE), "meta"),
    (re.compile(r"\btesla\b", re.IGNORECASE), "tesla-motors"),
    (re.compile(r"\bnetflix\b", re.IGNORECASE), "netflix"),
)

KNOWN_COMPANY_CONFIDENCE = 0.8
SLUG_GUESS_CONFIDENCE = 0.5


def _lookup_name(context: ErrorContext) -> str:
    name = str(context.user_context.get("name") or "").strip()
    if not name:
        raise FallbackUnavailable("no company name in context")
    return name


def heuristic_candidates(name: str, url_template: str = DEFAULT_URL_TEMPLATE) -> List[Candidate]:
    """
    Deterministic low-confidence guess for ``name``.

    Examples:
        >>> heuristic_candidates("Google LLC")[0].slug
        'google'
        >>> heuristic_candidates("Acme Corp")[0].confidence
        0.5
    """
    for pattern, slug in KNOWN_COMPANIES:
        if pattern.search(name):
            return [
                Candidate(
                    url=url_template.format(slug=slug),
                    display_name=name,
                    slug=slug,
                    snippet=f"{name} - company page",
                    confidence=KNOWN_COMPANY_CONFIDENCE,
                    source="heuristic",
                )
            ]

    slug = slugify(name)
    if not slug:
        raise FallbackUnavailable(f"cannot derive a slug from {name!r}")
    return [
        Candidate(
            url=url_template.format(slug=slug),
            display_name=name,
            slug=slug,
            snippet=f"Suggested company page for {name}",
            confidence=SLUG_GUESS_CONFIDENCE,
            source="heuristic",
        )
    ]


def build_default_strategies(
    controller: ResilienceController,
    cached_lookup: CachedLookup,
    fresh_window_seconds: float = 1800,
    enabled: Optional[Iterable[str]] = None,
    url_template: str = DEFAULT_URL_TEMPLATE,
) -> List[FallbackStrategy]:
    """
    Create the five default strategies.

    Args:
        controller: Controller whose offline mode the offline strategy sets
        cached_lookup: ``(name, max_age_seconds) -> candidates | None``
        fresh_window_seconds: Maximum age of a cached fallback result
        enabled: Names of strategies to enable (default: all)
        url_template: Page URL pattern for heuristic guesses
    """

    async def cached_results(context: ErrorContext) -> FallbackSignal:
        name = _lookup_name(context)
        candidates = await cached_lookup(name, fresh_window_seconds)
        if candidates is None:
            raise FallbackUnavailable("no fresh cached result")
        return FallbackSignal(
            mode=FallbackMode.CACHED,
            strategy="cached_results",
            message="Serving a recently cached result",
            candidates=candidates,
        )

    def manual_entry(context: ErrorContext) -> FallbackSignal:
        return FallbackSignal(
            mode=FallbackMode.MANUAL,
            strategy="manual_entry",
            message="Company lookup is unavailable; please enter the company details manually",
        )

    def skip_discovery(context: ErrorContext) -> FallbackSignal:
        return FallbackSignal(
            mode=FallbackMode.SKIP,
            strategy="skip_discovery",
            message="Company lookup skipped for this item",
        )

    async def offline_mode(context: ErrorContext) -> FallbackSignal:
        await controller.enter_offline_mode(reason=str(context.error))
        return FallbackSignal(
            mode=FallbackMode.OFFLINE,
            strategy="offline_mode",
            message="Company lookup is offline until connectivity is restored",
        )

    def heuristic_guess(context: ErrorContext) -> FallbackSignal:
        return FallbackSignal(
            mode=FallbackMode.HEURISTIC,
            strategy="heuristic_guess",
            message="Showing a best-guess company page",
            candidates=heuristic_candidates(_lookup_name(context), url_template),
        )

    strategies = [
        FallbackStrategy(
            name="cached_results",
            priority=1,
            handler=cached_results,
            condition=lambda error, ctx: is_retryable(error) or isinstance(error, CircuitOpen),
            description="Serve a cached result younger than the fresh window",
        ),
        FallbackStrategy(
            name="manual_entry",
            priority=2,
            handler=manual_entry,
            condition=lambda error, ctx: bool(ctx.user_context.get("interactive")),
            description="Ask an interactive caller for manual input",
        ),
        FallbackStrategy(
            name="skip_discovery",
            priority=3,
            handler=skip_discovery,
            condition=lambda error, ctx: bool(ctx.user_context.get("skippable")),
            description="Skip discovery for batch items",
        ),
        FallbackStrategy(
            name="offline_mode",
            priority=4,
            handler=offline_mode,
            condition=lambda error, ctx: isinstance(error, NetworkError),
            description="Disable discovery after connectivity loss",
        ),
        FallbackStrategy(
            name="heuristic_guess",
            priority=5,
            handler=heuristic_guess,
            condition=lambda error, ctx: not isinstance(error, LookupValidationError),
            description="Low-confidence guess as a last resort",
        ),
    ]

    if enabled is not None:
        enabled_names = set(enabled)
        for strategy in strategies:
            strategy.enabled = strategy.name in enabled_names
    return strategies
