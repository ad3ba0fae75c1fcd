"""
Circuit breaker with retry and an ordered fallback chain.

Each operation key (e.g. ``company-search``) owns one breaker:

    CLOSED --threshold failures--> OPEN --cooldown elapsed--> HALF_OPEN
    HALF_OPEN --N successes--> CLOSED
    HALF_OPEN --any failure--> OPEN (fresh cooldown)

``execute_with_recovery`` retries transient errors with exponential backoff
and jitter, then hands an ``ErrorContext`` to the fallback chain. The first
applicable strategy whose handler does not raise provides the result.
"""

import inspect
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from company_discovery.domain.discovery.exceptions import (
    CircuitOpen,
    FallbackExhausted,
    LookupValidationError,
    is_retryable,
)
from company_discovery.domain.discovery.models import CircuitState, CircuitStatus
from company_discovery.domain.discovery.observability import TelemetryRecorder
from company_discovery.domain.discovery.protocols import DurableStore
from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import bind_context, get_logger

logger = get_logger(__name__)

SEARCH_OPERATION = "company-search"
CIRCUITS_STATE_KEY = "resilience:circuits"
OFFLINE_STATE_KEY = "resilience:offline_mode"


def compute_backoff(
    base_seconds: float,
    exponent: int,
    cap_seconds: float,
    rng: Optional[random.Random] = None,
    jitter_ratio: float = 0.1,
) -> float:
    """
    Exponential backoff with proportional jitter, capped.

    ``base * 2**exponent`` plus up to ``jitter_ratio`` of that delay.

    Examples:
        >>> compute_backoff(1.0, 3, 30.0, jitter_ratio=0.0)
        8.0
        >>> compute_backoff(1.0, 10, 30.0)
        30.0
    """
    delay = base_seconds * (2 ** max(0, exponent))
    jitter = (rng or random).random() * jitter_ratio * delay
    return min(delay + jitter, cap_seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget of one guarded call: ``max_retries + 1`` attempts."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.1

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay after failed attempt ``attempt`` (1-based)."""
        return compute_backoff(
            self.base_delay_seconds, attempt - 1, self.max_delay_seconds, rng, self.jitter_ratio
        )


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0
    half_open_successes: int = 2

    def __post_init__(self) -> None:
        if self.failure_threshold < 1 or self.half_open_successes < 1:
            raise ValueError("circuit thresholds must be positive")


@dataclass
class ErrorContext:
    """Failure handed to the fallback chain."""

    operation: str
    attempt: int
    error: BaseException
    timestamp: datetime
    user_context: Dict[str, Any] = field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "attempt": self.attempt,
            "error_type": type(self.error).__name__,
            "error_message": str(self.error),
            "timestamp": self.timestamp.isoformat(),
        }


FallbackHandler = Callable[[ErrorContext], Any]
FallbackCondition = Callable[[BaseException, ErrorContext], bool]


@dataclass
class FallbackStrategy:
    """
    One entry of the fallback chain.

    ``handler`` may be sync or async; raising means "nothing to offer" and
    the next strategy is tried.
    """

    name: str
    priority: int
    handler: FallbackHandler
    enabled: bool = True
    condition: Optional[FallbackCondition] = None
    description: str = ""

    def applies(self, context: ErrorContext) -> bool:
        if not self.enabled:
            return False
        return self.condition is None or self.condition(context.error, context)


class ResilienceController:
    """
    Per-operation circuit breakers plus the fallback chain.

    Examples:
        >>> controller = ResilienceController(clock)
        >>> result = await controller.execute_with_recovery(
        ...     lambda: provider.search("Acme"), "company-search", {"name": "Acme"}
        ... )
    """

    def __init__(
        self,
        clock: Clock,
        retry_policy: Optional[RetryPolicy] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        telemetry: Optional[TelemetryRecorder] = None,
        store: Optional[DurableStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.telemetry = telemetry
        self.store = store
        self.rng = rng or random.Random()
        self._circuits: Dict[str, CircuitState] = {}
        self._strategies: Dict[str, FallbackStrategy] = {}
        self.offline_mode = False

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def get_circuit_status(self, operation_key: str) -> CircuitState:
        """Current breaker state; CLOSED for keys that never failed."""
        state = self._circuits.get(operation_key)
        if state is None:
            return CircuitState(operation_key=operation_key)
        return state.model_copy()

    def get_all_circuits(self) -> Dict[str, CircuitState]:
        return {key: state.model_copy() for key, state in self._circuits.items()}

    def allow_request(self, operation_key: str) -> bool:
        """
        Whether a call may go out now.

        An OPEN breaker whose cooldown has elapsed moves to HALF_OPEN here.
        """
        state = self._circuits.get(operation_key)
        if state is None or state.state is CircuitStatus.CLOSED:
            return True
        if state.state is CircuitStatus.HALF_OPEN:
            return True
        if state.next_retry_at is not None and self.clock.now() >= state.next_retry_at:
            state.state = CircuitStatus.HALF_OPEN
            state.consecutive_successes = 0
            logger.info("resilience.circuit_half_open", operation_key=operation_key)
            return True
        return False

    def _open(self, state: CircuitState, now: datetime) -> None:
        state.state = CircuitStatus.OPEN
        state.consecutive_successes = 0
        state.next_retry_at = now + timedelta(seconds=self.breaker_config.cooldown_seconds)
        logger.warning(
            "resilience.circuit_opened",
            operation_key=state.operation_key,
            consecutive_failures=state.consecutive_failures,
            next_retry_at=state.next_retry_at.isoformat(),
        )

    def record_success(self, operation_key: str) -> None:
        state = self._circuits.get(operation_key)
        if state is None:
            return
        if state.state is CircuitStatus.HALF_OPEN:
            state.consecutive_successes += 1
            if state.consecutive_successes >= self.breaker_config.half_open_successes:
                state.state = CircuitStatus.CLOSED
                state.consecutive_failures = 0
                state.consecutive_successes = 0
                state.next_retry_at = None
                logger.info("resilience.circuit_closed", operation_key=operation_key)
        elif state.state is CircuitStatus.CLOSED:
            state.consecutive_failures = 0

    def record_failure(self, operation_key: str) -> None:
        now = self.clock.now()
        state = self._circuits.setdefault(operation_key, CircuitState(operation_key=operation_key))
        state.consecutive_failures += 1
        state.total_failures += 1
        state.last_failure_at = now
        if state.state is CircuitStatus.HALF_OPEN:
            self._open(state, now)
        elif (
            state.state is CircuitStatus.CLOSED
            and state.consecutive_failures >= self.breaker_config.failure_threshold
        ):
            self._open(state, now)

    def force_open(self, operation_key: str) -> None:
        """Trip the breaker immediately, e.g. to simulate an outage."""
        state = self._circuits.setdefault(operation_key, CircuitState(operation_key=operation_key))
        self._open(state, self.clock.now())

    def reset_circuit(self, operation_key: str) -> None:
        """Return the breaker to CLOSED with cleared counters."""
        self._circuits.pop(operation_key, None)
        logger.info("resilience.circuit_reset", operation_key=operation_key)

    # ------------------------------------------------------------------
    # Guarded execution
    # ------------------------------------------------------------------

    async def execute_with_recovery(
        self,
        operation: Callable[[], Awaitable[Any]],
        operation_key: str = SEARCH_OPERATION,
        user_context: Optional[Dict[str, Any]] = None,
        endpoint: str = "search",
    ) -> Any:
        """
        Run ``operation`` under the breaker for ``operation_key``.

        Raises:
            FallbackExhausted: every applicable fallback strategy failed
        """
        log = bind_context(operation_key=operation_key)
        last_error: Optional[BaseException] = None
        attempt = 0
        max_attempts = self.retry_policy.max_retries + 1

        while attempt < max_attempts:
            if not self.allow_request(operation_key):
                state = self._circuits[operation_key]
                if last_error is None:
                    last_error = CircuitOpen(operation_key, state.next_retry_at)
                log.info("resilience.fast_fail", next_retry_at=str(state.next_retry_at))
                break

            attempt += 1
            started = time.perf_counter()
            try:
                result = await operation()
            except Exception as error:
                latency_ms = (time.perf_counter() - started) * 1000
                last_error = error
                if not isinstance(error, LookupValidationError):
                    self.record_failure(operation_key)
                if self.telemetry is not None:
                    self.telemetry.record_request(False, latency_ms, endpoint)
                    self.telemetry.record_error(
                        error, {"operation": operation_key, "attempt": attempt}
                    )
                log.warning(
                    "resilience.attempt_failed",
                    attempt=attempt,
                    error_type=type(error).__name__,
                    error=str(error),
                )
                if not is_retryable(error) or attempt >= max_attempts:
                    break
                if self._circuits[operation_key].state is CircuitStatus.OPEN:
                    break
                await self.clock.sleep(self.retry_policy.delay_for(attempt, self.rng))
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            self.record_success(operation_key)
            if self.telemetry is not None:
                self.telemetry.record_request(True, latency_ms, endpoint)
            return result

        context = ErrorContext(
            operation=operation_key,
            attempt=attempt,
            error=last_error,
            timestamp=self.clock.now(),
            user_context=dict(user_context or {}),
        )
        return await self.run_fallbacks(context)

    # ------------------------------------------------------------------
    # Fallback chain
    # ------------------------------------------------------------------

    def add_strategy(self, strategy: FallbackStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def remove_strategy(self, name: str) -> bool:
        return self._strategies.pop(name, None) is not None

    def update_strategy(self, name: str, **updates: Any) -> bool:
        strategy = self._strategies.get(name)
        if strategy is None:
            return False
        for attr, value in updates.items():
            if not hasattr(strategy, attr):
                raise AttributeError(f"FallbackStrategy has no attribute '{attr}'")
            setattr(strategy, attr, value)
        return True

    def strategies(self) -> List[FallbackStrategy]:
        """All strategies in priority order."""
        return sorted(self._strategies.values(), key=lambda s: s.priority)

    async def run_fallbacks(self, context: ErrorContext) -> Any:
        """Try applicable strategies in priority order; first success wins."""
        attempted: List[str] = []
        for strategy in self.strategies():
            if not strategy.applies(context):
                continue
            attempted.append(strategy.name)
            try:
                result = strategy.handler(context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                logger.debug(
                    "resilience.fallback_declined", strategy=strategy.name, reason=str(e)
                )
                continue

            if self.telemetry is not None:
                self.telemetry.record_fallback(strategy.name)
            logger.info("resilience.fallback_used", strategy=strategy.name, **context.to_log_dict())
            return result

        logger.error("resilience.fallbacks_exhausted", attempted=attempted, **context.to_log_dict())
        raise FallbackExhausted(context.error, attempted) from context.error

    # ------------------------------------------------------------------
    # Offline mode and persistence
    # ------------------------------------------------------------------

    async def enter_offline_mode(self, reason: str = "") -> None:
        self.offline_mode = True
        logger.warning("resilience.offline_mode_entered", reason=reason)
        await self._persist_offline()

    async def exit_offline_mode(self) -> None:
        self.offline_mode = False
        logger.info("resilience.offline_mode_cleared")
        await self._persist_offline()

    async def _persist_offline(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(
                OFFLINE_STATE_KEY,
                {"offline": self.offline_mode, "changed_at": self.clock.now().isoformat()},
            )
        except Exception as e:
            logger.warning("resilience.offline_persist_failed", error=str(e))

    async def save(self) -> bool:
        """Persist breaker states. Returns False if the store is unavailable."""
        if self.store is None:
            return False
        payload = {key: state.model_dump(mode="json") for key, state in self._circuits.items()}
        try:
            await self.store.set(CIRCUITS_STATE_KEY, payload)
        except Exception as e:
            logger.warning("resilience.persist_failed", error=str(e))
            return False
        return True

    async def load(self) -> bool:
        """Restore breaker states and offline mode from the store."""
        if self.store is None:
            return False
        try:
            circuits = await self.store.get(CIRCUITS_STATE_KEY)
            offline = await self.store.get(OFFLINE_STATE_KEY)
        except Exception as e:
            logger.warning("resilience.load_failed", error=str(e))
            return False
        for key, raw in (circuits or {}).items():
            try:
                self._circuits[key] = CircuitState.model_validate(raw)
            except ValueError as e:
                logger.warning("resilience.stored_circuit_invalid", operation_key=key, error=str(e))
        if offline:
            self.offline_mode = bool(offline.get("offline", False))
        return True

    # ------------------------------------------------------------------
    # Reporting and configuration
    # ------------------------------------------------------------------

    def get_health_status(self) -> Dict[str, Any]:
        open_circuits = [
            key for key, state in self._circuits.items() if state.state is not CircuitStatus.CLOSED
        ]
        return {
            "healthy": not open_circuits and not self.offline_mode,
            "open_circuits": sorted(open_circuits),
            "total_failures": sum(s.total_failures for s in self._circuits.values()),
            "active_strategies": [s.name for s in self.strategies() if s.enabled],
            "offline_mode": self.offline_mode,
        }

    def export_config(self) -> Dict[str, Any]:
        return {
            "retry": {
                "max_retries": self.retry_policy.max_retries,
                "base_delay_seconds": self.retry_policy.base_delay_seconds,
                "max_delay_seconds": self.retry_policy.max_delay_seconds,
            },
            "circuit_breaker": {
                "failure_threshold": self.breaker_config.failure_threshold,
                "cooldown_seconds": self.breaker_config.cooldown_seconds,
                "half_open_successes": self.breaker_config.half_open_successes,
            },
            "strategies": {
                s.name: {"enabled": s.enabled, "priority": s.priority} for s in self.strategies()
            },
        }

    def import_config(self, config: Dict[str, Any]) -> None:
        """Apply an exported configuration; unknown strategy names are ignored."""
        if "retry" in config:
            self.retry_policy = RetryPolicy(**config["retry"])
        if "circuit_breaker" in config:
            self.breaker_config = CircuitBreakerConfig(**config["circuit_breaker"])
        for name, values in config.get("strategies", {}).items():
            if name in self._strategies:
                self.update_strategy(name, **values)
