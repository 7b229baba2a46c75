"""Unit tests for domain events registration on entities."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from modules.orders.constants import OrderStatus
from modules.orders.events import ORDER_EVENTS, OrderCreated, OrderUpdated
from modules.orders.models import Order

pytestmark = pytest.mark.unit


def test_order_registers_and_clears_domain_events():
    order = Order(
        customer_id=uuid4(),
        order_number="2026-000001",
        status=OrderStatus.PENDING,
        total_amount=Decimal("0.00"),
    )

    assert order.domain_events == []

    event = OrderCreated(aggregate_id=order.id)
    order.add_domain_event(event)

    assert order.domain_events == [event]
    assert event.event_name == "OrderCreated"

    order.clear_domain_events()
    assert order.domain_events == []


def test_payload_is_json_safe():
    aggregate_id = uuid4()
    payload = OrderUpdated(
        aggregate_id=aggregate_id, changed_fields=("notes", "priority")
    ).to_payload()

    assert payload["aggregate_id"] == str(aggregate_id)
    assert payload["event_name"] == "OrderUpdated"
    assert payload["changed_fields"] == ["notes", "priority"]
    assert isinstance(payload["occurred_on"], str)
    UUID(payload["event_id"])


def test_every_event_has_a_distinct_name():
    names = [cls(aggregate_id=uuid4()).event_name for cls in ORDER_EVENTS]
    assert len(names) == len(set(names))
