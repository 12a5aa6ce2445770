"""Rate limiter, circuit breaker and retry wrapper for outbound AI/service calls."""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

from .exceptions import CircuitBreakerOpen, FlowEngineError, RateLimitExceeded
from .logging import get_logger, GuardLogger

logger = get_logger(__name__)

T = TypeVar("T")

RATE_LIMITS = "rate_limits"
CIRCUIT_BREAKERS = "circuit_breakers"


class GuardConfig(BaseModel):
    """Tunables of the invocation guard; all durations in milliseconds."""
    rate_limit_window_ms: int = Field(default=60000, ge=1)
    default_rate_limit: int = Field(default=60, ge=1)
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_timeout_ms: int = Field(default=300000, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    cleanup_interval_ms: int = Field(default=300000, ge=1)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RateWindow:
    """Fixed-window counter for one provider."""
    count: int
    reset_time: float


@dataclass
class BreakerRecord:
    """Circuit breaker state for one model."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    reset_time: Optional[float] = None
    trial_in_flight: bool = False


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: float
    limit: int


@dataclass
class BreakerCheck:
    """Result of a circuit breaker check."""
    is_open: bool
    state: CircuitState
    reset_time: Optional[float] = None


@dataclass
class RetryOptions:
    """Per-call overrides of the guard's retry policy."""
    max_retries: Optional[int] = None
    retry_delay_ms: Optional[int] = None
    backoff_multiplier: Optional[float] = None
    should_retry: Optional[Callable[[Exception], bool]] = None
    operation: str = "guarded call"


Mutation = Callable[[Optional[Any]], Tuple[Optional[Any], Any]]


class CounterStore(ABC):
    """Atomic keyed storage for guard counters.

    ``update`` applies ``mutate`` as one read-modify-write step: it receives
    the current record (or None) and returns ``(new_record, result)``; a
    ``None`` record deletes the key. A store shared between workers must make
    that step atomic across processes (e.g. optimistic transactions).
    """

    @abstractmethod
    async def update(self, namespace: str, key: str, mutate: Mutation) -> Any:
        """Atomically transform one record and return the mutation result."""

    @abstractmethod
    async def purge(self, namespace: str, expired: Callable[[Any], bool]) -> int:
        """Delete every record for which ``expired`` is true; return the count."""

    @abstractmethod
    async def snapshot(self, namespace: str) -> Dict[str, Any]:
        """Copy of all records in a namespace."""


class InMemoryCounterStore(CounterStore):
    """Process-local store; a lock keeps updates atomic across threads."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    async def update(self, namespace: str, key: str, mutate: Mutation) -> Any:
        with self._lock:
            bucket = self._data.setdefault(namespace, {})
            record, result = mutate(bucket.get(key))
            if record is None:
                bucket.pop(key, None)
            else:
                bucket[key] = record
            return result

    async def purge(self, namespace: str, expired: Callable[[Any], bool]) -> int:
        with self._lock:
            bucket = self._data.get(namespace, {})
            stale = [key for key, record in bucket.items() if expired(record)]
            for key in stale:
                del bucket[key]
            return len(stale)

    async def snapshot(self, namespace: str) -> Dict[str, Any]:
        with self._lock:
            return {key: replace(record) for key, record in self._data.get(namespace, {}).items()}


def _default_clock() -> float:
    return time.time() * 1000


def default_should_retry(error: Exception) -> bool:
    """Engine errors carry their own verdict; anything else is assumed transient."""
    if isinstance(error, FlowEngineError):
        return error.recoverable
    return True


class InvocationGuard:
    """Composes a per-provider rate limiter, a per-model circuit breaker and retry with backoff."""

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = _default_clock,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the guard.

        Args:
            config: Guard tunables
            store: Counter store; defaults to a process-local store
            clock: Returns the current time in epoch milliseconds
            sleep: Awaitable sleep taking seconds
        """
        self.config = config or GuardConfig()
        self.store = store or InMemoryCounterStore()
        self._clock = clock
        self._sleep = sleep
        self._cleanup_task: Optional[asyncio.Task] = None
        self.guard_logger = GuardLogger("invocation_guard")

    def now(self) -> float:
        return self._clock()

    # Rate limiting

    async def check_rate_limit(self, provider_id: str, limit: Optional[int] = None) -> RateLimitResult:
        """Count one call against the provider's fixed window."""
        limit = limit or self.config.default_rate_limit
        now = self.now()
        window_ms = self.config.rate_limit_window_ms

        def mutate(window: Optional[RateWindow]):
            if window is None or now > window.reset_time:
                window = RateWindow(count=0, reset_time=now + window_ms)
            if window.count >= limit:
                return window, RateLimitResult(False, 0, window.reset_time, limit)
            window = RateWindow(count=window.count + 1, reset_time=window.reset_time)
            return window, RateLimitResult(True, limit - window.count, window.reset_time, limit)

        result = await self.store.update(RATE_LIMITS, provider_id, mutate)
        if not result.allowed:
            self.guard_logger.log_rate_limited(provider_id, limit, result.reset_time)
        return result

    # Circuit breaker

    async def check_circuit_breaker(self, model_id: str) -> BreakerCheck:
        """Check the breaker; after cooldown the first caller becomes the half-open trial."""
        now = self.now()
        transitions = []

        def mutate(record: Optional[BreakerRecord]):
            if record is None or record.state == CircuitState.CLOSED:
                return record, BreakerCheck(False, CircuitState.CLOSED)
            if record.state == CircuitState.OPEN:
                if now < record.reset_time:
                    return record, BreakerCheck(True, CircuitState.OPEN, record.reset_time)
                transitions.append((CircuitState.OPEN, CircuitState.HALF_OPEN, record.failure_count))
                record = replace(record, state=CircuitState.HALF_OPEN, trial_in_flight=True)
                return record, BreakerCheck(False, CircuitState.HALF_OPEN, record.reset_time)
            if record.trial_in_flight:
                return record, BreakerCheck(True, CircuitState.HALF_OPEN, record.reset_time)
            record = replace(record, trial_in_flight=True)
            return record, BreakerCheck(False, CircuitState.HALF_OPEN, record.reset_time)

        check = await self.store.update(CIRCUIT_BREAKERS, model_id, mutate)
        self._log_transitions(model_id, transitions)
        if check.is_open:
            self.guard_logger.log_circuit_rejected(model_id, check.reset_time)
        return check

    async def record_success(self, model_id: str) -> None:
        """Reset the failure count and close the breaker."""
        transitions = []

        def mutate(record: Optional[BreakerRecord]):
            if record is None:
                return None, None
            if record.state != CircuitState.CLOSED:
                transitions.append((record.state, CircuitState.CLOSED, record.failure_count))
            return replace(record, state=CircuitState.CLOSED, failure_count=0, reset_time=None,
                           trial_in_flight=False), None

        await self.store.update(CIRCUIT_BREAKERS, model_id, mutate)
        self._log_transitions(model_id, transitions)

    async def record_failure(self, model_id: str) -> None:
        """Count a failure; opens the breaker at the threshold or when a half-open trial fails."""
        now = self.now()
        threshold = self.config.circuit_breaker_threshold
        cooldown = self.config.circuit_breaker_timeout_ms
        transitions = []

        def mutate(record: Optional[BreakerRecord]):
            record = record or BreakerRecord()
            failures = record.failure_count + 1
            if record.state == CircuitState.HALF_OPEN or (
                    record.state == CircuitState.CLOSED and failures >= threshold):
                transitions.append((record.state, CircuitState.OPEN, failures))
                return BreakerRecord(CircuitState.OPEN, failures, now, now + cooldown, False), None
            return replace(record, failure_count=failures, last_failure_time=now), None

        await self.store.update(CIRCUIT_BREAKERS, model_id, mutate)
        self._log_transitions(model_id, transitions)

    async def _release_trial(self, model_id: str) -> None:
        def mutate(record: Optional[BreakerRecord]):
            if record is None:
                return None, None
            return replace(record, trial_in_flight=False), None

        await self.store.update(CIRCUIT_BREAKERS, model_id, mutate)

    def _log_transitions(self, model_id: str, transitions) -> None:
        for old_state, new_state, failures in transitions:
            self.guard_logger.log_circuit_transition(model_id, old_state.value, new_state.value, failures)

    # Retry

    async def execute_with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        options: Optional[RetryOptions] = None,
    ) -> T:
        """Run ``fn`` once plus up to ``max_retries`` retries with multiplicative backoff."""
        options = options or RetryOptions()
        max_retries = self.config.max_retries if options.max_retries is None else options.max_retries
        delay = self.config.retry_delay_ms if options.retry_delay_ms is None else options.retry_delay_ms
        multiplier = options.backoff_multiplier or self.config.retry_backoff_multiplier
        should_retry = options.should_retry or default_should_retry
        total_attempts = max_retries + 1

        for attempt in range(1, total_attempts + 1):
            try:
                result = await fn()
            except Exception as e:
                if attempt >= total_attempts or not should_retry(e):
                    self.guard_logger.log_retry_failure(options.operation, e, attempt)
                    raise
                self.guard_logger.log_retry_attempt(options.operation, e, attempt, total_attempts, delay)
                await self._sleep(delay / 1000)
                delay *= multiplier
            else:
                if attempt > 1:
                    self.guard_logger.log_retry_success(options.operation, attempt)
                return result

    async def execute_with_protection(
        self,
        provider_id: str,
        model_id: str,
        fn: Callable[[], Awaitable[T]],
        options: Optional[RetryOptions] = None,
        rate_limit: Optional[int] = None,
    ) -> T:
        """Rate limit, then circuit breaker, then retry; failures are recorded and re-raised."""
        rate = await self.check_rate_limit(provider_id, rate_limit)
        if not rate.allowed:
            raise RateLimitExceeded(provider_id, rate.reset_time, rate.limit,
                                    retry_after=max(0.0, (rate.reset_time - self.now()) / 1000))

        breaker = await self.check_circuit_breaker(model_id)
        if breaker.is_open:
            raise CircuitBreakerOpen(model_id, breaker.reset_time,
                                     retry_after=max(0.0, (breaker.reset_time - self.now()) / 1000))

        try:
            result = await self.execute_with_retry(fn, options)
        except asyncio.CancelledError:
            await self._release_trial(model_id)
            raise
        except Exception:
            await self.record_failure(model_id)
            raise
        await self.record_success(model_id)
        return result

    # Maintenance

    async def cleanup(self) -> Dict[str, int]:
        """Purge expired rate windows and healthy breaker entries past their cooldown."""
        now = self.now()
        cooldown = self.config.circuit_breaker_timeout_ms

        def breaker_expired(record: BreakerRecord) -> bool:
            if record.state != CircuitState.CLOSED:
                return False
            return record.last_failure_time is None or now - record.last_failure_time > cooldown

        removed = {
            RATE_LIMITS: await self.store.purge(RATE_LIMITS, lambda window: now > window.reset_time),
            CIRCUIT_BREAKERS: await self.store.purge(CIRCUIT_BREAKERS, breaker_expired),
        }
        if any(removed.values()):
            logger.debug(f"Guard cleanup removed {removed}")
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        """Snapshot of all counters."""
        windows = await self.store.snapshot(RATE_LIMITS)
        breakers = await self.store.snapshot(CIRCUIT_BREAKERS)
        return {
            RATE_LIMITS: {
                key: {"count": window.count, "reset_time": window.reset_time}
                for key, window in windows.items()
            },
            CIRCUIT_BREAKERS: {
                key: {
                    "state": record.state.value,
                    "is_open": record.state == CircuitState.OPEN,
                    "failure_count": record.failure_count,
                    "last_failure_time": record.last_failure_time,
                    "reset_time": record.reset_time,
                }
                for key, record in breakers.items()
            },
        }

    def start_cleanup_task(self, interval_ms: Optional[int] = None) -> asyncio.Task:
        """Run ``cleanup`` periodically on the running event loop."""
        if self._cleanup_task and not self._cleanup_task.done():
            return self._cleanup_task
        interval = (interval_ms or self.config.cleanup_interval_ms) / 1000

        async def sweep():
            while True:
                await self._sleep(interval)
                try:
                    await self.cleanup()
                except Exception as e:
                    logger.error(f"Guard cleanup failed: {e}", exc_info=True)

        self._cleanup_task = asyncio.get_running_loop().create_task(sweep())
        logger.info(f"Guard cleanup task started with interval {interval}s")
        return self._cleanup_task

    async def stop_cleanup_task(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
        logger.info("Guard cleanup task stopped")
