"""Stock and money invariants after a mixed sequence of operations."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

import pytest
from django.db.models import Sum

from modules.inventory.constants import TransactionType
from modules.inventory.models import Inventory, InventoryTransaction
from modules.inventory.services import InventoryCoordinator
from modules.orders.constants import OrderStatus
from modules.orders.dtos import (
    PaymentDTO,
    ReturnItemDTO,
    ReturnItemsDTO,
    ShipItemDTO,
    ShipOrderDTO,
    UpdateItemDTO,
)
from modules.orders.models import Order

pytestmark = pytest.mark.integration

INITIAL_ON_HAND = 100


@pytest.fixture()
def busy_inventory(service, order_dto):
    """Five orders left in different stages."""
    kept = service.create_order(order_dto)

    cancelled = service.create_order(order_dto)
    service.cancel_order(cancelled.id)

    edited = service.create_order(order_dto)
    item = edited.items.get()
    service.update_item(edited.id, item.id, UpdateItemDTO(quantity=7))
    service.update_item(edited.id, item.id, UpdateItemDTO(quantity=4))

    partial = service.create_order(order_dto)
    service.update_status(partial.id, OrderStatus.PENDING)
    service.confirm_order(partial.id)
    service.ship_order(
        partial.id,
        ShipOrderDTO(items=[ShipItemDTO(item_id=partial.items.get().id, quantity=1)]),
    )

    returned = service.create_order(order_dto)
    service.update_status(returned.id, OrderStatus.PENDING)
    service.confirm_order(returned.id)
    service.process_payment(returned.id, PaymentDTO(amount=returned.total_amount))
    service.ship_order(returned.id, ShipOrderDTO())
    service.return_items(
        returned.id,
        ReturnItemsDTO(items=[ReturnItemDTO(item_id=returned.items.get().id, quantity=1)]),
    )
    return [kept, cancelled, edited, partial, returned]


def test_reserved_equals_sum_of_order_footprints(busy_inventory, stock):
    coordinator = InventoryCoordinator()
    held = defaultdict(int)
    for order in busy_inventory:
        for (product_id, warehouse_id, _item), qty in coordinator.reservation_footprint(
            order.id
        ).items():
            held[(product_id, warehouse_id)] += qty

    stock.refresh_from_db()
    assert stock.reserved == held[(stock.product_id, stock.warehouse_id)]
    # kept 2 + edited 4 + partial 1 left to ship
    assert stock.reserved == 7


def test_on_hand_follows_ledger(busy_inventory, stock):
    movements = InventoryTransaction.objects.filter(
        product_id=stock.product_id,
        warehouse_id=stock.warehouse_id,
        transaction_type__in=[TransactionType.DEDUCT, TransactionType.RETURN],
    ).aggregate(net=Sum("quantity"))["net"]

    stock.refresh_from_db()
    assert stock.on_hand == INITIAL_ON_HAND + movements
    assert stock.on_hand == 98
    assert 0 <= stock.reserved <= stock.on_hand


def test_cancelled_orders_hold_nothing(busy_inventory):
    cancelled = busy_inventory[1]
    assert InventoryCoordinator().reservation_footprint(cancelled.id) == {}


def test_totals_identity_for_every_order(busy_inventory):
    for order in Order.objects.all():
        assert order.total_amount == (
            order.subtotal - order.discount_amount + order.tax_amount + order.shipping_amount
        )
        assert order.subtotal == sum(
            (item.line_total for item in order.items.all()), Decimal("0")
        )
        assert Decimal("0") <= order.paid_amount


def test_shipped_quantities_never_exceed_ordered(busy_inventory):
    for order in Order.objects.prefetch_related("items"):
        for item in order.items.all():
            assert 0 <= item.returned_qty <= item.shipped_qty <= item.quantity


def test_inventory_rows_never_negative(busy_inventory):
    for row in Inventory.objects.all():
        assert row.on_hand >= 0
        assert 0 <= row.reserved <= row.on_hand
