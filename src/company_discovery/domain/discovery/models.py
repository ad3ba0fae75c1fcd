"""
Pydantic v2 data models for the company discovery domain.

This module defines the data contracts shared by the governance components:
1. Lookup results (Candidate, CacheEntry)
2. Admission control state (QuotaWindow, QuotaDecision)
3. Circuit breaker state (CircuitState)
4. Feature rollout (FeatureFlag, FlagCondition, IdentityContext, FlagEvaluation)
5. Telemetry (OutcomeRecord) and fallback signalling (FallbackSignal)

Models that are persisted to the durable store round-trip through
``model_dump(mode="json")`` / ``model_validate``.
"""

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Priority(str, Enum):
    """Scheduler priority tiers."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Dequeue order; lower ranks are served first."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class WindowKind(str, Enum):
    """Quota windows, declared in evaluation order (month first)."""

    MONTH = "month"
    DAY = "day"
    MINUTE = "minute"
    BURST = "burst"


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class FallbackMode(str, Enum):
    """What a winning fallback strategy asks the caller to do."""

    CACHED = "cached"
    MANUAL = "manual"
    SKIP = "skip"
    OFFLINE = "offline"
    HEURISTIC = "heuristic"


class Candidate(BaseModel):
    """One lookup hit. Immutable once produced."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    url: str = Field(..., min_length=1, description="Company page URL")
    display_name: str = Field(..., description="Company name as shown by the provider")
    slug: str = Field(default="", description="URL vanity name")
    snippet: str = Field(default="", max_length=200, description="Short description")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Match confidence")
    source: str = Field(default="provider", description="Producer of the candidate")

    @field_validator("snippet", mode="before")
    @classmethod
    def truncate_snippet(cls, v: Any) -> str:
        """Keep the first 200 characters of long descriptions."""
        if v is None:
            return ""
        return str(v)[:200]


class CacheEntry(BaseModel):
    """A stored lookup result."""

    normalized_key: str = Field(..., min_length=1)
    candidates: List[Candidate] = Field(default_factory=list)
    cached_at: datetime
    expires_at: datetime
    hit_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_expiry_after_creation(self) -> "CacheEntry":
        if self.expires_at <= self.cached_at:
            raise ValueError("expires_at must be later than cached_at")
        return self

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def age_seconds(self, now: datetime) -> float:
        return (now - self.cached_at).total_seconds()


class QuotaWindow(BaseModel):
    """A rate ceiling over a fixed-length window."""

    kind: WindowKind
    limit: int = Field(..., ge=0)
    duration_seconds: int = Field(..., gt=0)
    count: int = Field(default=0, ge=0)
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit

    @property
    def utilization(self) -> float:
        """Share of the window consumed, in percent."""
        if self.limit == 0:
            return 100.0
        return min(100.0, self.count / self.limit * 100.0)

    def rolled_over(self, now: datetime) -> "QuotaWindow":
        return rolled_over(self, now)


def rolled_over(window: QuotaWindow, now: datetime) -> QuotaWindow:
    """
    Return the window as it stands at ``now``.

    A window whose ``reset_at`` has been reached starts over with a zero count
    and a reset time one duration from ``now``; any other window is returned
    unchanged. The input is never mutated.

    Examples:
        >>> w = QuotaWindow(kind="burst", limit=5, duration_seconds=10,
        ...                 count=5, reset_at=t0)
        >>> rolled_over(w, t0).count
        0
    """
    if now < window.reset_at:
        return window
    return window.model_copy(
        update={
            "count": 0,
            "reset_at": now + timedelta(seconds=window.duration_seconds),
        }
    )


class QuotaDecision(BaseModel):
    """Outcome of one admission check."""

    allowed: bool
    reason: Optional[str] = None
    window: Optional[WindowKind] = None
    retry_after_seconds: Optional[int] = None
    remaining: Dict[str, int] = Field(default_factory=dict)


class CircuitState(BaseModel):
    """Breaker status for one operation key."""

    operation_key: str
    state: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    total_failures: int = Field(default=0, ge=0)
    last_failure_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"


class FlagCondition(BaseModel):
    """
    One attribute test of a feature flag.

    ``attribute`` is one of user_id, email_domain, session_age (seconds),
    client_type or custom; ``key`` names the custom attribute.
    """

    attribute: str
    operator: ConditionOperator
    value: Any = None
    key: Optional[str] = None

    @field_validator("attribute")
    @classmethod
    def validate_attribute(cls, v: str) -> str:
        allowed = {"user_id", "email_domain", "session_age", "client_type", "custom"}
        if v not in allowed:
            raise ValueError(f"attribute must be one of {sorted(allowed)}")
        return v

    @model_validator(mode="after")
    def require_custom_key(self) -> "FlagCondition":
        if self.attribute == "custom" and not self.key:
            raise ValueError("custom conditions require a key")
        return self


class FeatureFlag(BaseModel):
    """A rollout toggle. ``version`` increases on every mutation."""

    key: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    enabled: bool = True
    rollout_percentage: int = Field(default=100, ge=0, le=100)
    conditions: List[FlagCondition] = Field(default_factory=list)
    variant: Optional[str] = None
    version: int = Field(default=1, ge=1)
    updated_at: Optional[datetime] = None


class IdentityContext(BaseModel):
    """Attributes of the caller that flags are evaluated against."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    email: Optional[str] = None
    session_id: Optional[str] = None
    session_started_at: Optional[datetime] = None
    client_type: Optional[str] = None
    custom: Dict[str, Any] = Field(default_factory=dict)

    @property
    def email_domain(self) -> Optional[str]:
        if not self.email or "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[1].lower()

    @property
    def bucket_identity(self) -> str:
        """Identity used for percentage bucketing."""
        return self.user_id or self.session_id or "anonymous"

    def snapshot(self) -> str:
        """Stable text form used as an evaluation cache key."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, default=str)


class FlagEvaluation(BaseModel):
    """Result of evaluating one flag for one identity."""

    flag_key: str
    enabled: bool
    reason: str
    variant: Optional[str] = None
    version: Optional[int] = None


class OutcomeRecord(BaseModel):
    """One completed provider call."""

    timestamp: datetime
    success: bool
    latency_ms: float = Field(..., ge=0)
    endpoint: str = "search"


class FallbackSignal(BaseModel):
    """Result produced by a fallback strategy."""

    mode: FallbackMode
    strategy: str
    message: str
    candidates: List[Candidate] = Field(default_factory=list)
