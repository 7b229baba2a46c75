"""Admission, locking, deadlines, retries and error mapping around operations."""

from __future__ import annotations

import threading
import time

import pytest

from modules.inventory.exceptions import InventoryConflict
from modules.inventory.services import InventoryCoordinator
from modules.orders.concurrency import (
    InFlightLimiter,
    OperationContext,
    OrderLockManager,
    RetryPolicy,
)
from modules.orders.constants import OrderStatus
from modules.orders.exceptions import (
    DeadlineExceeded,
    InternalError,
    LockTimeout,
    OperationCancelled,
    ServiceOverloaded,
)
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.services import OrderService

pytestmark = pytest.mark.integration


class FlakyInventory(InventoryCoordinator):
    """Reports a write conflict on the first ``failures`` reservations."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def reserve(self, order_id, lines, actor_id=""):
        self.calls += 1
        if self.calls <= self.failures:
            raise InventoryConflict()
        return super().reserve(order_id, lines, actor_id=actor_id)


class BrokenHistoryRepository(OrderDjangoRepository):
    def add_history(self, *args, **kwargs):
        raise KeyError("history table unavailable")


def _in_other_thread(cm_factory):
    entered, release = threading.Event(), threading.Event()

    def run():
        with cm_factory():
            entered.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=run)
    thread.start()
    entered.wait(timeout=5)
    return thread, release


def test_busy_order_times_out_with_lock_timeout(bus, draft_order):
    locks = OrderLockManager(stripes=4, timeout=0.05)
    service = OrderService(lock_manager=locks, event_bus=bus)
    thread, release = _in_other_thread(lambda: locks.hold(draft_order.id))
    try:
        with pytest.raises(LockTimeout):
            service.update_status(draft_order.id, OrderStatus.PENDING)
    finally:
        release.set()
        thread.join()
    assert service.get_order(draft_order.id).status == OrderStatus.DRAFT


def test_full_limiter_rejects_with_overloaded(bus, draft_order):
    limiter = InFlightLimiter(limit=1, timeout=0.05)
    service = OrderService(limiter=limiter, event_bus=bus)
    thread, release = _in_other_thread(limiter.admit)
    try:
        with pytest.raises(ServiceOverloaded):
            service.update_status(draft_order.id, OrderStatus.PENDING)
    finally:
        release.set()
        thread.join()


def test_expired_deadline_changes_nothing(service, draft_order):
    context = OperationContext(deadline=time.monotonic() - 1)
    with pytest.raises(DeadlineExceeded):
        service.update_status(draft_order.id, OrderStatus.PENDING, context)
    assert service.get_order(draft_order.id).status == OrderStatus.DRAFT


def test_cancelled_context(service, draft_order):
    context = OperationContext()
    context.cancel()
    with pytest.raises(OperationCancelled):
        service.cancel_order(draft_order.id, context=context)
    assert service.get_order(draft_order.id).status == OrderStatus.DRAFT


def test_write_conflicts_are_retried(bus, order_dto, stock):
    inventory = FlakyInventory(failures=2)
    service = OrderService(
        inventory=inventory,
        retry_policy=RetryPolicy(attempts=3, base_delay=0.001),
        event_bus=bus,
    )

    order = service.create_order(order_dto)

    assert inventory.calls == 3
    assert order.status == OrderStatus.DRAFT
    stock.refresh_from_db()
    assert stock.reserved == 2


def test_retries_give_up_after_attempts(bus, order_dto, stock):
    inventory = FlakyInventory(failures=10)
    service = OrderService(
        inventory=inventory,
        retry_policy=RetryPolicy(attempts=3, base_delay=0.001),
        event_bus=bus,
    )

    with pytest.raises(InventoryConflict) as exc_info:
        service.create_order(order_dto)

    assert exc_info.value.retryable
    assert inventory.calls == 3


def test_unexpected_errors_become_internal_error(bus, draft_order):
    service = OrderService(order_repository=BrokenHistoryRepository(), event_bus=bus)
    context = OperationContext(correlation_id="corr-123")

    with pytest.raises(InternalError) as exc_info:
        service.update_status(draft_order.id, OrderStatus.PENDING, context)

    assert exc_info.value.correlation_id == "corr-123"
    assert "history table" not in exc_info.value.message
    assert exc_info.value.to_dict()["kind"] == "INTERNAL"
    assert service.get_order(draft_order.id).status == OrderStatus.DRAFT
