"""Concurrency guard for order mutations.

Four pieces, applied by the order service around every mutation:

- ``OrderLockManager``: in-process striped re-entrant locks, one stripe
  per ``hash(order_id) % N``.  Inside the transaction the service also
  takes the database row lock (``SELECT ... FOR UPDATE``), which is what
  serialises writers across processes.
- ``InFlightLimiter``: caps concurrent mutations (backpressure).
- ``OperationContext``: actor, correlation id, deadline and cancellation.
- ``RetryPolicy``: bounded exponential backoff with jitter for conflicts.
"""

from __future__ import annotations

import random
import threading
import time
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Iterator, Optional, Tuple, Type, TypeVar
from uuid import UUID, uuid4

import structlog
from django.conf import settings

from modules.orders.exceptions import (
    DeadlineExceeded,
    LockTimeout,
    OperationCancelled,
    ServiceOverloaded,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _orders_setting(name: str, default: Any) -> Any:
    return getattr(settings, "ORDERS", {}).get(name, default)


# ---------------------------------------------------------------------------
# Operation context (deadline + cancellation)
# ---------------------------------------------------------------------------


@dataclass
class OperationContext:
    """Per-request execution context.

    ``deadline`` is a ``time.monotonic()`` timestamp; ``None`` means no
    deadline.  ``check()`` is called at every suspension point (lock
    acquisition, collaborator calls, before commit).
    """

    actor_id: str = ""
    deadline: Optional[float] = None
    correlation_id: str = field(default_factory=lambda: uuid4().hex)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(
        cls, seconds: Optional[float] = None, actor_id: str = "", **kwargs: Any
    ) -> OperationContext:
        if seconds is None:
            seconds = _orders_setting("DEFAULT_DEADLINE_SECONDS", 30.0)
        return cls(actor_id=actor_id, deadline=time.monotonic() + seconds, **kwargs)

    def derive(self, seconds: Optional[float] = None) -> OperationContext:
        """A context with a fresh deadline that shares this one's cancellation."""
        child = OperationContext.with_timeout(
            seconds, actor_id=self.actor_id, correlation_id=self.correlation_id
        )
        child._cancelled = self._cancelled
        return child

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def check(self) -> None:
        """Raise if the operation should stop.

        Raises:
            OperationCancelled: ``cancel()`` was called.
            DeadlineExceeded: the deadline has passed.
        """
        if self.cancelled:
            raise OperationCancelled(correlation_id=self.correlation_id)
        if self.expired:
            raise DeadlineExceeded(correlation_id=self.correlation_id)

    def bounded_timeout(self, timeout: float) -> float:
        """Shrink *timeout* so waiting never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return max(min(timeout, remaining), 0.0)


# ---------------------------------------------------------------------------
# Striped per-order locks
# ---------------------------------------------------------------------------


class OrderLockManager:
    """Mutual exclusion per order id, striped over a fixed pool of RLocks.

    Two orders may share a stripe, which only costs throughput.  Locks are
    re-entrant for the owning thread, and a Django thread owns exactly one
    transaction, so nested service calls on the same order do not block.
    """

    def __init__(self, stripes: int = 256, timeout: float = 5.0) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.RLock() for _ in range(stripes)]
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> OrderLockManager:
        return cls(
            stripes=_orders_setting("LOCK_STRIPES", 256),
            timeout=_orders_setting("LOCK_TIMEOUT_SECONDS", 5.0),
        )

    @property
    def stripes(self) -> int:
        return len(self._locks)

    def stripe_for(self, order_id: Any) -> int:
        """The same order maps to the same stripe whether given as UUID or str."""
        try:
            key = order_id if isinstance(order_id, UUID) else UUID(str(order_id))
        except ValueError:
            return zlib.crc32(str(order_id).encode()) % len(self._locks)
        return key.int % len(self._locks)

    @contextmanager
    def hold(self, order_id: Any, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the order's lock for the duration of the block.

        Raises:
            LockTimeout: the lock was not acquired within *timeout* seconds.
        """
        wait = self.timeout if timeout is None else timeout
        lock = self._locks[self.stripe_for(order_id)]
        if not lock.acquire(timeout=wait):
            logger.warning("order.lock_timeout", order_id=str(order_id), timeout=wait)
            raise LockTimeout(order_id=str(order_id))
        try:
            yield
        finally:
            lock.release()


# ---------------------------------------------------------------------------
# Backpressure
# ---------------------------------------------------------------------------


class InFlightLimiter:
    """Bounded admission for concurrent mutations.

    A thread already inside an admitted operation (e.g. a bulk operation
    calling single-order operations) is not counted twice.
    """

    def __init__(self, limit: int = 64, timeout: float = 5.0) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.timeout = timeout
        self._semaphore = threading.BoundedSemaphore(limit)
        self._local = threading.local()
        self._count_lock = threading.Lock()
        self._in_flight = 0

    @classmethod
    def from_settings(cls) -> InFlightLimiter:
        return cls(
            limit=_orders_setting("MAX_IN_FLIGHT", 64),
            timeout=_orders_setting("ADMISSION_TIMEOUT_SECONDS", 5.0),
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @contextmanager
    def admit(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Wait for a free slot, up to *timeout* seconds.

        Raises:
            ServiceOverloaded: no slot freed up in time.
        """
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        wait = self.timeout if timeout is None else timeout
        if not self._semaphore.acquire(timeout=wait):
            logger.warning("order.admission_rejected", limit=self.limit)
            raise ServiceOverloaded(limit=self.limit)
        with self._count_lock:
            self._in_flight += 1
        self._local.depth = 1
        try:
            yield
        finally:
            self._local.depth = 0
            with self._count_lock:
                self._in_flight -= 1
            self._semaphore.release()


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base * multiplier**(n-1)`` +/- jitter."""

    attempts: int = 3
    base_delay: float = 0.05
    multiplier: float = 2.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            attempts=_orders_setting("RETRY_ATTEMPTS", 3),
            base_delay=_orders_setting("RETRY_BASE_DELAY_SECONDS", 0.05),
            jitter=_orders_setting("RETRY_JITTER", 0.25),
        )

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before retry number *attempt* (1-based)."""
        nominal = self.base_delay * (self.multiplier ** (attempt - 1))
        spread = nominal * self.jitter * (2 * rand() - 1)
        return max(nominal + spread, 0.0)

    def run(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...],
        context: Optional[OperationContext] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Call *fn*, retrying on *retry_on* until attempts or deadline run out."""
        attempt = 1
        while True:
            try:
                return fn()
            except retry_on as exc:
                if attempt >= self.attempts:
                    raise
                delay = self.delay_for(attempt)
                remaining = context.remaining() if context else None
                if remaining is not None and remaining <= delay:
                    raise
                logger.warning(
                    "order.retry_scheduled",
                    attempt=attempt,
                    delay=round(delay, 4),
                    error=type(exc).__name__,
                )
                sleep(delay)
                attempt += 1


# ---------------------------------------------------------------------------
# Process-wide defaults
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def default_lock_manager() -> OrderLockManager:
    return OrderLockManager.from_settings()


@lru_cache(maxsize=1)
def default_limiter() -> InFlightLimiter:
    return InFlightLimiter.from_settings()
