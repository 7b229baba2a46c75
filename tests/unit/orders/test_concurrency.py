"""Unit tests for the concurrency guard primitives."""

from __future__ import annotations

import threading
import time
from uuid import uuid4

import pytest

from modules.inventory.exceptions import InventoryConflict
from modules.orders.concurrency import (
    InFlightLimiter,
    OperationContext,
    OrderLockManager,
    RetryPolicy,
)
from modules.orders.exceptions import (
    DeadlineExceeded,
    LockTimeout,
    OperationCancelled,
    ServiceOverloaded,
)

pytestmark = pytest.mark.unit


def _hold_in_other_thread(enter_cm, released: threading.Event, entered: threading.Event):
    def run():
        with enter_cm():
            entered.set()
            released.wait(timeout=5)

    thread = threading.Thread(target=run)
    thread.start()
    entered.wait(timeout=5)
    return thread


class TestOrderLockManager:
    def test_same_order_maps_to_same_stripe(self):
        manager = OrderLockManager(stripes=8)
        order_id = uuid4()
        assert manager.stripe_for(order_id) == manager.stripe_for(order_id)
        assert 0 <= manager.stripe_for("not-a-uuid") < 8

    def test_uuid_and_string_forms_share_a_stripe(self):
        manager = OrderLockManager(stripes=64)
        order_id = uuid4()
        assert manager.stripe_for(order_id) == manager.stripe_for(str(order_id))

    def test_reentrant_for_owner(self):
        manager = OrderLockManager(stripes=4, timeout=0.1)
        order_id = uuid4()
        with manager.hold(order_id):
            with manager.hold(order_id):
                pass

    def test_times_out_when_held_elsewhere(self):
        manager = OrderLockManager(stripes=1, timeout=0.05)
        order_id = uuid4()
        released, entered = threading.Event(), threading.Event()
        thread = _hold_in_other_thread(lambda: manager.hold(order_id), released, entered)
        try:
            started = time.monotonic()
            with pytest.raises(LockTimeout):
                with manager.hold(order_id):
                    pass
            assert time.monotonic() - started < 1.0
        finally:
            released.set()
            thread.join()

    def test_rejects_zero_stripes(self):
        with pytest.raises(ValueError):
            OrderLockManager(stripes=0)


class TestInFlightLimiter:
    def test_counts_admitted_operations(self):
        limiter = InFlightLimiter(limit=2, timeout=0.05)
        with limiter.admit():
            assert limiter.in_flight == 1
        assert limiter.in_flight == 0

    def test_nested_admission_counts_once(self):
        limiter = InFlightLimiter(limit=1, timeout=0.05)
        with limiter.admit():
            with limiter.admit():
                assert limiter.in_flight == 1

    def test_overloaded_when_full(self):
        limiter = InFlightLimiter(limit=1, timeout=0.05)
        released, entered = threading.Event(), threading.Event()
        thread = _hold_in_other_thread(limiter.admit, released, entered)
        try:
            with pytest.raises(ServiceOverloaded):
                with limiter.admit():
                    pass
        finally:
            released.set()
            thread.join()
        assert limiter.in_flight == 0


class TestOperationContext:
    def test_without_deadline_never_expires(self):
        context = OperationContext()
        assert context.remaining() is None
        context.check()

    def test_expired_deadline(self):
        context = OperationContext(deadline=time.monotonic() - 1)
        with pytest.raises(DeadlineExceeded):
            context.check()

    def test_cancellation_wins(self):
        context = OperationContext.with_timeout(10)
        context.cancel()
        with pytest.raises(OperationCancelled):
            context.check()

    def test_bounded_timeout(self):
        context = OperationContext.with_timeout(0.5)
        assert context.bounded_timeout(5.0) <= 0.5
        assert OperationContext().bounded_timeout(5.0) == 5.0

    def test_derive_resets_deadline_and_shares_cancellation(self):
        parent = OperationContext(actor_id="ops", deadline=time.monotonic() - 1)
        child = parent.derive(10)

        child.check()
        assert (child.actor_id, child.correlation_id) == ("ops", parent.correlation_id)
        parent.cancel()
        with pytest.raises(OperationCancelled):
            child.check()


class TestRetryPolicy:
    def test_delay_grows_with_jitter_bounds(self):
        policy = RetryPolicy(base_delay=0.05, jitter=0.25)
        assert policy.delay_for(1, rand=lambda: 0.5) == pytest.approx(0.05)
        assert policy.delay_for(2, rand=lambda: 0.5) == pytest.approx(0.10)
        assert policy.delay_for(1, rand=lambda: 1.0) == pytest.approx(0.0625)
        assert policy.delay_for(1, rand=lambda: 0.0) == pytest.approx(0.0375)

    def test_retries_until_success(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise InventoryConflict()
            return "ok"

        result = RetryPolicy(attempts=3).run(flaky, (InventoryConflict,), sleep=sleeps.append)
        assert result == "ok"
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_gives_up_after_attempts(self):
        calls = []

        def always_conflicts():
            calls.append(1)
            raise InventoryConflict()

        with pytest.raises(InventoryConflict):
            RetryPolicy(attempts=3).run(
                always_conflicts, (InventoryConflict,), sleep=lambda _: None
            )
        assert len(calls) == 3

    def test_stops_at_deadline(self):
        calls = []

        def always_conflicts():
            calls.append(1)
            raise InventoryConflict()

        context = OperationContext(deadline=time.monotonic() + 0.001)
        with pytest.raises(InventoryConflict):
            RetryPolicy(attempts=5, base_delay=1.0).run(
                always_conflicts, (InventoryConflict,), context, sleep=lambda _: None
            )
        assert len(calls) == 1

    def test_other_errors_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            RetryPolicy().run(broken, (InventoryConflict,), sleep=lambda _: None)
        assert len(calls) == 1
