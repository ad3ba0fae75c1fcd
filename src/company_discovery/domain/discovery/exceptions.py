"""
Exception hierarchy for the company discovery layer.

Every failure a caller of ``DiscoveryService.discover`` can observe derives from
``DiscoveryError``. Transient provider failures derive from
``ProviderUnavailable`` and are the only errors eligible for retry; see
``is_retryable``.
"""

import math
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from company_discovery.domain.discovery.models import FallbackSignal


class DiscoveryError(Exception):
    """Base exception for all discovery-related errors."""

    pass


class RateLimitExceeded(DiscoveryError):
    """
    Raised when a local quota window is exhausted.

    Args:
        window: Name of the exhausted window (month, day, minute, burst)
        retry_after_seconds: Whole seconds until the window resets
    """

    def __init__(self, window: str, retry_after_seconds: int, reason: str = ""):
        self.window = window
        self.retry_after_seconds = retry_after_seconds
        message = reason or f"{window} quota exceeded"
        super().__init__(f"{message} (retry after {retry_after_seconds}s)")


class ProviderUnavailable(DiscoveryError):
    """Base for transient provider failures (network, timeout, 5xx, throttling)."""

    pass


class NetworkError(ProviderUnavailable):
    """The provider could not be reached."""

    pass


class ProviderTimeoutError(ProviderUnavailable, TimeoutError):
    """A provider call exceeded its timeout."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Provider call timed out after {timeout_seconds}s")


class ProviderServerError(ProviderUnavailable):
    """The provider answered with a 5xx status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(message or f"Provider returned HTTP {status_code}")


class ProviderRateLimited(ProviderUnavailable):
    """The provider signalled that its own quota is exhausted (HTTP 429)."""

    def __init__(self, message: str = "Provider rate limit exceeded", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ProviderAuthenticationError(DiscoveryError):
    """The provider rejected our credentials; further calls are pointless."""

    pass


class LookupValidationError(DiscoveryError):
    """Bad lookup input. Never retried."""

    pass


class CircuitOpen(DiscoveryError):
    """
    Raised when a circuit breaker fast-fails a call.

    Args:
        operation_key: Guarded operation whose breaker is open
        retry_at: When the breaker admits a trial call
    """

    def __init__(self, operation_key: str, retry_at: Optional[datetime] = None):
        self.operation_key = operation_key
        self.retry_at = retry_at
        message = f"Circuit open for '{operation_key}'"
        if retry_at is not None:
            message += f" until {retry_at.isoformat()}"
        super().__init__(message)


class FallbackUnavailable(DiscoveryError):
    """A fallback strategy has nothing to offer for this failure."""

    pass


class FallbackExhausted(DiscoveryError):
    """
    Raised when no fallback strategy produced a result.

    The original error is kept on ``original_error`` and chained as
    ``__cause__`` by the raiser.
    """

    def __init__(self, original_error: BaseException, attempted: Optional[List[str]] = None):
        self.original_error = original_error
        self.attempted = list(attempted or [])
        tried = ", ".join(self.attempted) if self.attempted else "none applicable"
        super().__init__(
            f"All fallback strategies failed ({tried}): "
            f"{type(original_error).__name__}: {original_error}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to structured dict for logging."""
        return {
            "error_type": "FallbackExhausted",
            "attempted": self.attempted,
            "original_error_type": type(self.original_error).__name__,
            "original_error_message": str(self.original_error),
        }


class Cancelled(DiscoveryError):
    """A queued request was dropped before it ran."""

    pass


class FeatureDisabled(DiscoveryError):
    """The rollout gate denied the feature for this identity."""

    def __init__(self, flag_key: str, reason: str):
        self.flag_key = flag_key
        self.reason = reason
        super().__init__(f"Feature '{flag_key}' is disabled: {reason}")


class FallbackSignalled(DiscoveryError):
    """A signalling fallback strategy won; the caller must act on ``signal``."""

    def __init__(self, signal: "FallbackSignal"):
        self.signal = signal
        super().__init__(signal.message)


class ManualInputRequired(FallbackSignalled):
    """The caller should ask the user to enter company details by hand."""

    pass


class DiscoverySkipped(FallbackSignalled):
    """Discovery was skipped for this item."""

    pass


class OfflineModeActive(FallbackSignalled):
    """Discovery is disabled until offline mode is cleared."""

    pass


def is_retryable(error: BaseException) -> bool:
    """
    Classify an error as transient.

    Timeouts, network failures, 5xx answers and explicit provider throttling
    are retried; everything else goes straight to the fallback chain.
    """
    if isinstance(error, (LookupValidationError, ProviderAuthenticationError, CircuitOpen)):
        return False
    return isinstance(error, (ProviderUnavailable, TimeoutError, ConnectionError))


def retry_after_seconds(delta_seconds: float) -> int:
    """Round a remaining duration up to whole seconds, never below zero."""
    return max(0, math.ceil(delta_seconds))
