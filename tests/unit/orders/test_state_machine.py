"""Unit tests for the order state machine (pure, no persistence)."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

import pytest

from modules.orders.constants import TERMINAL_STATES, VALID_TRANSITIONS, OrderStatus
from modules.orders.exceptions import (
    InvalidStatusTransition,
    OrderNotPaid,
    PreconditionViolation,
)
from modules.orders.state_machine import (
    allowed_targets,
    can_transition,
    is_frozen,
    is_terminal,
    transition,
)

pytestmark = pytest.mark.unit


@dataclass
class Snapshot:
    status: str
    paid_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("100.00")


@dataclass
class Item:
    quantity: int
    shipped_qty: int = 0


ALL_STATUSES = list(OrderStatus)
ALL_PAIRS = [(a, b) for a in ALL_STATUSES for b in ALL_STATUSES]


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(OrderStatus)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATES:
            assert allowed_targets(status) == frozenset()
            assert is_terminal(status)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OrderStatus.DRAFT, OrderStatus.PENDING),
            (OrderStatus.PENDING, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING, OrderStatus.ON_HOLD),
            (OrderStatus.ON_HOLD, OrderStatus.CONFIRMED),
            (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.PARTIALLY_SHIPPED),
            (OrderStatus.PARTIALLY_SHIPPED, OrderStatus.PARTIALLY_SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.SHIPPED, OrderStatus.REFUNDED),
            (OrderStatus.DELIVERED, OrderStatus.REFUNDED),
        ],
    )
    def test_valid_edges(self, current, target):
        assert can_transition(current, target)
        assert transition(Snapshot(status=current), target) == target

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OrderStatus.DRAFT, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING, OrderStatus.DELIVERED),
            (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
            (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
            (OrderStatus.CANCELLED, OrderStatus.PENDING),
            (OrderStatus.REFUNDED, OrderStatus.DELIVERED),
        ],
    )
    def test_invalid_edges_raise(self, current, target):
        with pytest.raises(InvalidStatusTransition) as exc_info:
            transition(Snapshot(status=current), target)
        assert exc_info.value.from_status == current
        assert exc_info.value.to_status == target

    def test_every_pair_agrees_with_table(self):
        for current, target in ALL_PAIRS:
            expected = target in VALID_TRANSITIONS[current]
            assert can_transition(current, target) is expected

    def test_transition_does_not_mutate_snapshot(self):
        snapshot = Snapshot(status=OrderStatus.PENDING)
        transition(snapshot, OrderStatus.CONFIRMED)
        assert snapshot.status == OrderStatus.PENDING


class TestEdgePreconditions:
    def test_shipped_requires_full_payment(self):
        snapshot = Snapshot(
            status=OrderStatus.PROCESSING,
            paid_amount=Decimal("99.99"),
            total_amount=Decimal("100.00"),
        )
        with pytest.raises(OrderNotPaid):
            transition(snapshot, OrderStatus.SHIPPED)

    def test_shipped_allowed_when_paid(self):
        snapshot = Snapshot(
            status=OrderStatus.PROCESSING,
            paid_amount=Decimal("100.00"),
            total_amount=Decimal("100.00"),
        )
        assert transition(snapshot, OrderStatus.SHIPPED) == OrderStatus.SHIPPED

    def test_partial_shipment_does_not_require_payment(self):
        snapshot = Snapshot(status=OrderStatus.PROCESSING)
        assert (
            transition(snapshot, OrderStatus.PARTIALLY_SHIPPED)
            == OrderStatus.PARTIALLY_SHIPPED
        )

    def test_delivered_requires_everything_shipped(self):
        items = [Item(quantity=2, shipped_qty=2), Item(quantity=3, shipped_qty=1)]
        with pytest.raises(PreconditionViolation):
            transition(Snapshot(status=OrderStatus.SHIPPED), OrderStatus.DELIVERED, items)

    def test_submit_requires_items(self):
        with pytest.raises(PreconditionViolation):
            transition(Snapshot(status=OrderStatus.DRAFT), OrderStatus.PENDING, items=[])

    def test_precondition_errors_are_precondition_kind(self):
        snapshot = Snapshot(status=OrderStatus.PROCESSING)
        with pytest.raises(PreconditionViolation) as exc_info:
            transition(snapshot, OrderStatus.SHIPPED)
        assert exc_info.value.to_dict()["kind"] == "PRECONDITION"


class TestFrozenStates:
    @pytest.mark.parametrize(
        "status",
        [OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED],
    )
    def test_frozen(self, status):
        assert is_frozen(status)

    def test_pending_is_not_frozen(self):
        assert not is_frozen(OrderStatus.PENDING)
