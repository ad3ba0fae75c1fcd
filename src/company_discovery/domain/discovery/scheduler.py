"""
Priority scheduler serializing provider calls.

One worker task drains three FIFO tiers (high, then normal, then low). Each
queued request carries the ``asyncio.Future`` its caller awaits. Before a
request is dispatched the worker re-checks the cache (late hits are served
without a provider call) and asks the quota governor for admission (denials
reject with ``RateLimitExceeded`` without consuming a retry).

Retries are parked in a delayed list with a ``not_before`` time; only the
worker loop moves them back into their tier once due.
"""

import asyncio
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional, Union

from company_discovery.domain.discovery.cache import DiscoveryCache
from company_discovery.domain.discovery.exceptions import (
    Cancelled,
    FallbackExhausted,
    LookupValidationError,
    ProviderAuthenticationError,
    ProviderTimeoutError,
    RateLimitExceeded,
)
from company_discovery.domain.discovery.models import (
    Candidate,
    FallbackSignal,
    Priority,
    WindowKind,
)
from company_discovery.domain.discovery.observability import TelemetryRecorder
from company_discovery.domain.discovery.protocols import SearchProvider
from company_discovery.domain.discovery.quota import QuotaGovernor
from company_discovery.domain.discovery.resilience import (
    SEARCH_OPERATION,
    ResilienceController,
    compute_backoff,
)
from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 2

LookupResult = Union[List[Candidate], FallbackSignal]


@dataclass
class QueueRequest:
    """A pending provider call and the future its caller awaits."""

    id: str
    name: str
    priority: Priority
    enqueued_at: datetime
    future: "asyncio.Future[LookupResult]"
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_count: int = 0
    not_before: Optional[datetime] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PacingPolicy:
    """
    Gap between dispatches.

    ``base + min(queue_length * per_item, queue_cap)`` plus ``near_ceiling``
    when more than half of the minute quota is used.
    """

    base_seconds: float = 0.1
    per_item_seconds: float = 0.05
    queue_cap_seconds: float = 0.5
    near_ceiling_seconds: float = 0.2

    def delay(self, queue_length: int, near_ceiling: bool) -> float:
        gap = self.base_seconds + min(queue_length * self.per_item_seconds, self.queue_cap_seconds)
        if near_ceiling:
            gap += self.near_ceiling_seconds
        return gap


@dataclass(frozen=True)
class BackoffPolicy:
    """Queue-level retry delay: ``base * 2**retry_count + jitter``, capped."""

    base_seconds: float = 1.0
    max_seconds: float = 30.0
    jitter_ratio: float = 0.1


@dataclass
class SchedulerStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    fallbacks: int = 0
    cache_served: int = 0
    rate_limited: int = 0
    retried: int = 0
    cancelled: int = 0
    total_processing_ms: float = 0.0

    @property
    def average_processing_ms(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.total_processing_ms / self.processed

    @property
    def success_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.succeeded / self.processed


class DiscoveryScheduler:
    """
    Single-worker priority queue in front of the resilience controller.

    Examples:
        >>> future = scheduler.enqueue("Acme Corp", Priority.HIGH)
        >>> candidates = await future
    """

    def __init__(
        self,
        cache: DiscoveryCache,
        quota: QuotaGovernor,
        resilience: ResilienceController,
        provider: SearchProvider,
        clock: Clock,
        telemetry: Optional[TelemetryRecorder] = None,
        pacing: Optional[PacingPolicy] = None,
        backoff: Optional[BackoffPolicy] = None,
        provider_timeout_seconds: float = 10.0,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        operation_key: str = SEARCH_OPERATION,
        rng: Optional[random.Random] = None,
    ):
        self.cache = cache
        self.quota = quota
        self.resilience = resilience
        self.provider = provider
        self.clock = clock
        self.telemetry = telemetry
        self.pacing = pacing or PacingPolicy()
        self.backoff = backoff or BackoffPolicy()
        self.provider_timeout_seconds = provider_timeout_seconds
        self.default_max_retries = default_max_retries
        self.operation_key = operation_key
        self.rng = rng or random.Random()

        self._tiers: Dict[Priority, Deque[QueueRequest]] = {p: deque() for p in Priority}
        self._delayed: List[QueueRequest] = []
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional["asyncio.Task[None]"] = None
        self._paused = False
        self._processing = False
        self._current: Optional[QueueRequest] = None
        self.stats = SchedulerStats()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @property
    def queue_length(self) -> int:
        return sum(len(tier) for tier in self._tiers.values())

    @property
    def paused(self) -> bool:
        return self._paused

    def enqueue(
        self,
        name: str,
        priority: Union[Priority, str] = Priority.NORMAL,
        max_retries: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Future[LookupResult]":
        """
        Queue a lookup and return the future resolved by the worker.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        request = QueueRequest(
            id=uuid.uuid4().hex[:12],
            name=name,
            priority=Priority(priority),
            enqueued_at=self.clock.now(),
            future=loop.create_future(),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            context=dict(context or {}),
        )
        self._tiers[request.priority].append(request)
        logger.debug(
            "scheduler.enqueued",
            request_id=request.id,
            priority=request.priority.value,
            queue_length=self.queue_length,
        )
        self._ensure_worker()
        return request.future

    async def batch(
        self, names: Iterable[str], priority: Union[Priority, str] = Priority.HIGH
    ) -> Dict[str, List[Candidate]]:
        """
        Look up many names; never raises per entry.

        Failures and candidate-less fallback signals map to an empty list.
        """
        futures: Dict[str, "asyncio.Future[LookupResult]"] = {}
        for name in names:
            if name not in futures:
                futures[name] = self.enqueue(name, priority, context={"skippable": True})

        results: Dict[str, List[Candidate]] = {}
        for name, future in futures.items():
            try:
                value = await future
            except Exception as e:
                logger.info("scheduler.batch_item_failed", error_type=type(e).__name__)
                results[name] = []
                continue
            results[name] = list(value.candidates) if isinstance(value, FallbackSignal) else list(value)
        return results

    def pause(self) -> None:
        self._paused = True
        logger.info("scheduler.paused", queue_length=self.queue_length)

    def resume(self) -> None:
        self._paused = False
        logger.info("scheduler.resumed", queue_length=self.queue_length)
        self._signal()
        if self.queue_length or self._delayed:
            self._ensure_worker()

    def clear(self) -> int:
        """Reject every pending request with ``Cancelled``. Returns the count."""
        cancelled = self._cancel_pending("Queue cleared")
        logger.warning("scheduler.cleared", cancelled=cancelled)
        self._signal()
        return cancelled

    def _cancel_pending(self, reason: str) -> int:
        pending: List[QueueRequest] = list(self._delayed)
        for tier in self._tiers.values():
            pending.extend(tier)
            tier.clear()
        self._delayed.clear()
        pending = [r for r in pending if not r.future.done()]
        for request in pending:
            self._settle(request, error=Cancelled(reason))
        self.stats.cancelled += len(pending)
        return len(pending)

    async def join(self) -> None:
        """Wait until the worker has drained every queued and delayed request."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def stop(self) -> int:
        """
        Cancel the worker task and reject every unfinished request with ``Cancelled``.

        Returns:
            Number of requests rejected, the in-flight one included.
        """
        in_flight = self._current
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        cancelled = 0
        if in_flight is not None and not in_flight.future.done():
            self._settle(in_flight, error=Cancelled("Scheduler stopped"))
            self.stats.cancelled += 1
            cancelled += 1
        cancelled += self._cancel_pending("Scheduler stopped")
        if cancelled:
            logger.warning("scheduler.stopped", cancelled=cancelled)
        return cancelled

    def is_responsive(self) -> bool:
        """False if the worker died or a paused queue holds work."""
        if self._worker is not None and self._worker.done() and not self._worker.cancelled():
            if self._worker.exception() is not None:
                return False
        if self._paused and (self.queue_length or self._delayed):
            return False
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "by_priority": {p.value: len(self._tiers[p]) for p in Priority},
            "delayed_retries": len(self._delayed),
            "processing": self._processing,
            "paused": self._paused,
            "worker_running": self._worker is not None and not self._worker.done(),
            "processed": self.stats.processed,
            "succeeded": self.stats.succeeded,
            "failed": self.stats.failed,
            "fallbacks": self.stats.fallbacks,
            "cache_served": self.stats.cache_served,
            "rate_limited": self.stats.rate_limited,
            "retried": self.stats.retried,
            "cancelled": self.stats.cancelled,
            "average_processing_ms": round(self.stats.average_processing_ms, 2),
            "success_rate": round(self.stats.success_rate, 4),
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _signal(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _ensure_worker(self) -> None:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        self._signal()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def _promote_due(self) -> None:
        """Move retries whose delay has elapsed back to the tail of their tier."""
        if not self._delayed:
            return
        now = self.clock.now()
        due = [r for r in self._delayed if r.not_before is None or r.not_before <= now]
        for request in sorted(due, key=lambda r: r.not_before or now):
            self._delayed.remove(request)
            request.not_before = None
            self._tiers[request.priority].append(request)

    def _next_request(self) -> Optional[QueueRequest]:
        for priority in sorted(Priority, key=lambda p: p.rank):
            tier = self._tiers[priority]
            while tier:
                request = tier.popleft()
                if not request.future.done():
                    return request
        return None

    async def _idle_wait(self, timeout: Optional[float]) -> None:
        """Wait for an enqueue/resume signal or, if given, for ``timeout`` seconds."""
        assert self._wakeup is not None
        self._wakeup.clear()
        tasks = {asyncio.ensure_future(self._wakeup.wait())}
        if timeout is not None:
            tasks.add(asyncio.ensure_future(self.clock.sleep(timeout)))
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()

    async def _run(self) -> None:
        logger.debug("scheduler.worker_started")
        while True:
            self._promote_due()
            if self._paused:
                if not self.queue_length and not self._delayed:
                    break
                await self._idle_wait(None)
                continue

            request = self._next_request()
            if request is None:
                if not self._delayed:
                    break
                earliest = min(r.not_before for r in self._delayed if r.not_before is not None)
                wait = max(0.0, (earliest - self.clock.now()).total_seconds())
                await self._idle_wait(wait)
                continue

            await self._process(request)

            if self.queue_length:
                near_ceiling = self.quota.near_ceiling(WindowKind.MINUTE)
                await self.clock.sleep(self.pacing.delay(self.queue_length, near_ceiling))
        logger.debug("scheduler.worker_idle")

    async def _call_provider(self, name: str) -> List[Candidate]:
        try:
            return await asyncio.wait_for(
                self.provider.search(name), timeout=self.provider_timeout_seconds
            )
        except ProviderTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.provider_timeout_seconds) from e

    async def _process(self, request: QueueRequest) -> None:
        self._processing = True
        self._current = request
        started = time.perf_counter()
        try:
            await self._dispatch(request)
        except Exception as e:
            logger.error("scheduler.dispatch_crashed", request_id=request.id, error=str(e))
            self._settle(request, error=e)
            self.stats.failed += 1
        finally:
            self._processing = False
            self._current = None
            self.stats.processed += 1
            self.stats.total_processing_ms += (time.perf_counter() - started) * 1000

    async def _dispatch(self, request: QueueRequest) -> None:
        cached = await self.cache.get(request.name)
        if cached is not None:
            self.stats.cache_served += 1
            self.stats.succeeded += 1
            self._settle(request, result=cached)
            return

        decision = self.quota.check_and_consume()
        if not decision.allowed:
            self.stats.rate_limited += 1
            self.stats.failed += 1
            if self.telemetry is not None:
                self.telemetry.record_rate_limit_hit()
            self._settle(
                request,
                error=RateLimitExceeded(
                    decision.window.value if decision.window else "unknown",
                    decision.retry_after_seconds or 0,
                    decision.reason or "",
                ),
            )
            return

        user_context = {"name": request.name, "request_id": request.id, **request.context}
        try:
            result = await self.resilience.execute_with_recovery(
                lambda: self._call_provider(request.name),
                self.operation_key,
                user_context,
            )
        except Exception as error:
            self._handle_failure(request, error)
            return

        if isinstance(result, FallbackSignal):
            self.stats.fallbacks += 1
            self.stats.succeeded += 1
            self._settle(request, result=result)
            return

        candidates = sorted(result, key=lambda c: c.confidence, reverse=True)
        await self.cache.set(request.name, candidates)
        self.stats.succeeded += 1
        self._settle(request, result=candidates)

    def _handle_failure(self, request: QueueRequest, error: Exception) -> None:
        root = error.original_error if isinstance(error, FallbackExhausted) else error
        permanent = isinstance(root, (LookupValidationError, ProviderAuthenticationError))
        if not permanent and request.retry_count < request.max_retries:
            request.retry_count += 1
            delay = compute_backoff(
                self.backoff.base_seconds,
                request.retry_count,
                self.backoff.max_seconds,
                self.rng,
                self.backoff.jitter_ratio,
            )
            request.not_before = self.clock.now() + timedelta(seconds=delay)
            self._delayed.append(request)
            self.stats.retried += 1
            logger.info(
                "scheduler.retry_scheduled",
                request_id=request.id,
                retry_count=request.retry_count,
                delay_seconds=round(delay, 3),
            )
            return

        self.stats.failed += 1
        logger.warning(
            "scheduler.request_failed",
            request_id=request.id,
            retry_count=request.retry_count,
            error_type=type(root).__name__,
        )
        self._settle(request, error=error)

    @staticmethod
    def _settle(
        request: QueueRequest,
        result: Optional[LookupResult] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if request.future.done():
            return
        if error is not None:
            request.future.set_exception(error)
        else:
            request.future.set_result(result)
