"""
Multi-window admission control for outbound provider calls.

Four independent windows (month, day, minute, burst) each hold a count and a
reset time. Every operation first applies ``rolled_over`` to each window, then
evaluates month -> day -> minute -> burst; the first exhausted window denies
the call.

``check_and_consume`` never awaits: the check and the increment of all four
counters form one critical section under cooperative scheduling. Persistence
to the durable store is a separate, best-effort ``save()``; the in-memory
counters stay authoritative when the store is down.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

from company_discovery.domain.discovery.exceptions import retry_after_seconds
from company_discovery.domain.discovery.models import (
    QuotaDecision,
    QuotaWindow,
    WindowKind,
    rolled_over,
)
from company_discovery.domain.discovery.protocols import DurableStore
from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

QUOTA_STATE_KEY = "quota:windows"
HISTORY_LIMIT = 1000

DENIAL_REASONS = {
    WindowKind.MONTH: "Monthly quota exceeded",
    WindowKind.DAY: "Daily quota exceeded",
    WindowKind.MINUTE: "Per-minute rate limit exceeded",
    WindowKind.BURST: "Burst rate limit exceeded",
}

# Evaluation order: month first, burst last.
EVALUATION_ORDER = (WindowKind.MONTH, WindowKind.DAY, WindowKind.MINUTE, WindowKind.BURST)

WARNING_THRESHOLDS = {
    WindowKind.MONTH: (75.0, 90.0),
    WindowKind.DAY: (75.0, 90.0),
    WindowKind.MINUTE: (80.0, None),
}


@dataclass(frozen=True)
class QuotaLimits:
    """
    Ceilings and durations of the four windows.

    Examples:
        >>> QuotaLimits(monthly=2000).daily
        66
    """

    monthly: int = 2000
    daily: Optional[int] = None
    per_minute: int = 10
    burst: int = 5
    burst_window_seconds: int = 10

    def __post_init__(self) -> None:
        if self.daily is None:
            object.__setattr__(self, "daily", self.monthly // 30)
        for name in ("monthly", "daily", "per_minute", "burst"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} limit must not be negative")
        if self.burst_window_seconds <= 0:
            raise ValueError("burst_window_seconds must be positive")

    @classmethod
    def from_settings(cls, settings: Any) -> "QuotaLimits":
        return cls(
            monthly=settings.quota_monthly_limit,
            daily=settings.quota_daily_limit,
            per_minute=settings.quota_minute_limit,
            burst=settings.quota_burst_limit,
            burst_window_seconds=settings.quota_burst_window_seconds,
        )

    def limit_for(self, kind: WindowKind) -> int:
        return {
            WindowKind.MONTH: self.monthly,
            WindowKind.DAY: self.daily,
            WindowKind.MINUTE: self.per_minute,
            WindowKind.BURST: self.burst,
        }[kind]

    def duration_for(self, kind: WindowKind) -> int:
        return {
            WindowKind.MONTH: 30 * 86400,
            WindowKind.DAY: 86400,
            WindowKind.MINUTE: 60,
            WindowKind.BURST: self.burst_window_seconds,
        }[kind]


class QuotaGovernor:
    """
    Admission control over provider calls.

    Example:
        >>> governor = QuotaGovernor(clock, QuotaLimits(burst=2))
        >>> governor.check_and_consume().allowed
        True
    """

    def __init__(
        self,
        clock: Clock,
        limits: Optional[QuotaLimits] = None,
        store: Optional[DurableStore] = None,
    ):
        self.clock = clock
        self.limits = limits or QuotaLimits()
        self.store = store
        self._windows: Dict[WindowKind, QuotaWindow] = {}
        self._history: Deque[datetime] = deque(maxlen=HISTORY_LIMIT)
        self.denials = 0

    def _new_window(self, kind: WindowKind, now: datetime) -> QuotaWindow:
        duration = self.limits.duration_for(kind)
        return QuotaWindow(
            kind=kind,
            limit=self.limits.limit_for(kind),
            duration_seconds=duration,
            count=0,
            reset_at=now + timedelta(seconds=duration),
        )

    def _roll_all(self, now: datetime) -> Dict[WindowKind, QuotaWindow]:
        """Create missing windows and roll over expired ones."""
        for kind in EVALUATION_ORDER:
            window = self._windows.get(kind)
            if window is None:
                window = self._new_window(kind, now)
            self._windows[kind] = rolled_over(window, now)
        return self._windows

    def _remaining(self) -> Dict[str, int]:
        return {kind.value: self._windows[kind].remaining for kind in EVALUATION_ORDER}

    def _evaluate(self, now: datetime) -> QuotaDecision:
        windows = self._roll_all(now)
        for kind in EVALUATION_ORDER:
            window = windows[kind]
            if window.exhausted:
                return QuotaDecision(
                    allowed=False,
                    reason=DENIAL_REASONS[kind],
                    window=kind,
                    retry_after_seconds=retry_after_seconds(
                        (window.reset_at - now).total_seconds()
                    ),
                    remaining=self._remaining(),
                )
        return QuotaDecision(allowed=True, remaining=self._remaining())

    def check(self) -> QuotaDecision:
        """Evaluate admission without consuming quota."""
        return self._evaluate(self.clock.now())

    def check_and_consume(self) -> QuotaDecision:
        """
        Admit one provider call, consuming one unit of every window.

        Returns:
            QuotaDecision; on denial ``window`` names the first exhausted
            window and ``retry_after_seconds`` the whole seconds to its reset.
        """
        now = self.clock.now()
        decision = self._evaluate(now)
        if not decision.allowed:
            self.denials += 1
            logger.info(
                "quota.denied",
                window=decision.window.value if decision.window else None,
                reason=decision.reason,
                retry_after_seconds=decision.retry_after_seconds,
            )
            return decision

        for kind in EVALUATION_ORDER:
            window = self._windows[kind]
            self._windows[kind] = window.model_copy(update={"count": window.count + 1})
        self._history.append(now)
        return QuotaDecision(allowed=True, remaining=self._remaining())

    def remaining(self) -> Dict[str, int]:
        self._roll_all(self.clock.now())
        return self._remaining()

    def utilization(self, kind: WindowKind) -> float:
        self._roll_all(self.clock.now())
        return self._windows[kind].utilization

    def near_ceiling(self, kind: WindowKind = WindowKind.MINUTE, fraction: float = 0.5) -> bool:
        """True when ``kind`` has used more than ``fraction`` of its limit."""
        return self.utilization(kind) > fraction * 100.0

    def get_status(self) -> Dict[str, Any]:
        """Limits, usage, remaining and reset times of every window."""
        windows = self._roll_all(self.clock.now())
        return {
            "limits": {k.value: windows[k].limit for k in EVALUATION_ORDER},
            "current": {k.value: windows[k].count for k in EVALUATION_ORDER},
            "remaining": {k.value: windows[k].remaining for k in EVALUATION_ORDER},
            "reset_times": {k.value: windows[k].reset_at.isoformat() for k in EVALUATION_ORDER},
            "utilization": {
                k.value: round(windows[k].utilization, 2) for k in EVALUATION_ORDER
            },
            "denials": self.denials,
            "admitted_recently": len(self._history),
        }

    def get_warning_levels(self) -> List[Dict[str, Any]]:
        """
        Usage warnings for the long windows.

        Month and day warn above 75% and are critical above 90%; the minute
        window warns above 80%.
        """
        windows = self._roll_all(self.clock.now())
        warnings: List[Dict[str, Any]] = []
        for kind, (warn_at, critical_at) in WARNING_THRESHOLDS.items():
            usage = windows[kind].utilization
            if critical_at is not None and usage > critical_at:
                level = "critical"
            elif usage > warn_at:
                level = "warning"
            else:
                continue
            warnings.append(
                {
                    "window": kind.value,
                    "level": level,
                    "utilization": round(usage, 2),
                    "message": f"{kind.value} quota at {usage:.0f}%",
                }
            )
        return warnings

    def reset_quota(self, kind: Optional[WindowKind] = None) -> None:
        """Start one window (or all of them) over from zero."""
        now = self.clock.now()
        kinds = [WindowKind(kind)] if kind is not None else list(EVALUATION_ORDER)
        for each in kinds:
            self._windows[each] = self._new_window(each, now)
        logger.info("quota.reset", windows=[k.value for k in kinds])

    def recent_admissions(self, seconds: float) -> int:
        """Number of admissions within the last ``seconds``."""
        cutoff = self.clock.now() - timedelta(seconds=seconds)
        return sum(1 for moment in self._history if moment > cutoff)

    async def save(self) -> bool:
        """Persist window counters. Returns False if the store is unavailable."""
        if self.store is None:
            return False
        self._roll_all(self.clock.now())
        payload = {
            kind.value: window.model_dump(mode="json") for kind, window in self._windows.items()
        }
        try:
            await self.store.set(QUOTA_STATE_KEY, payload)
        except Exception as e:
            logger.warning("quota.persist_failed", error=str(e))
            return False
        return True

    async def load(self) -> bool:
        """
        Restore persisted counters.

        Stored counts are merged by taking the larger count per window so a
        restart never forgets admissions; limits always come from configuration.
        """
        if self.store is None:
            return False
        try:
            payload = await self.store.get(QUOTA_STATE_KEY)
        except Exception as e:
            logger.warning("quota.load_failed", error=str(e))
            return False
        if not payload:
            return False

        now = self.clock.now()
        self._roll_all(now)
        for kind in EVALUATION_ORDER:
            raw = payload.get(kind.value)
            if not raw:
                continue
            try:
                stored = rolled_over(QuotaWindow.model_validate(raw), now)
            except ValueError as e:
                logger.warning("quota.stored_window_invalid", window=kind.value, error=str(e))
                continue
            current = self._windows[kind]
            if stored.count > current.count:
                self._windows[kind] = current.model_copy(
                    update={"count": stored.count, "reset_at": stored.reset_at}
                )
        logger.info("quota.loaded", current={k.value: w.count for k, w in self._windows.items()})
        return True
