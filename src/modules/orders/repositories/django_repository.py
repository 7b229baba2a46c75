"""Django ORM implementation of the Order repository.

Satisfies ``IOrderRepository`` using Django's QuerySet API.  Nothing here
opens its own transaction: the service wraps each operation in
``transaction.atomic()`` and every write below joins it.

Concurrency control uses ``select_for_update()`` on the order row (there
is no ``version`` column) and on the per-year order number counter.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from modules.orders.constants import CREDIT_EXEMPT_STATES, ORDER_NUMBER_SEQUENCE_DIGITS
from modules.orders.models import (
    Order,
    OrderAddress,
    OrderItem,
    OrderNumberSequence,
    OrderPayment,
    OrderReturn,
    OrderShipment,
    OrderShipmentLine,
    OrderStatusHistory,
)
from modules.orders.repositories.interfaces import IOrderRepository

logger = structlog.get_logger(__name__)

_PREFETCH = ("items__product", "addresses", "status_history")


class OrderDjangoRepository(IOrderRepository):
    """Concrete Order repository backed by Django ORM."""

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order with eager-loaded relations.

        Uses ``select_related`` for the customer FK (single JOIN) and
        ``prefetch_related`` for items, addresses and status history
        (separate batched queries).  Prevents N+1.

        Returns ``None`` for non-existent or invalid IDs.
        """
        try:
            return (
                Order.objects.select_related("customer")
                .prefetch_related(*_PREFETCH)
                .filter(id=id)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    def get_for_update(self, id: str) -> Optional[Order]:
        """Retrieve an order with a row-level lock (SELECT FOR UPDATE).

        Only the order row is locked (``of=("self",)``); items are
        prefetched afterwards so the caller can iterate over them while
        the lock is held.
        """
        try:
            return (
                Order.objects.select_for_update(of=("self",))
                .select_related("customer")
                .prefetch_related("items__product")
                .filter(id=id)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    def get_by_number(self, order_number: str) -> Optional[Order]:
        return (
            Order.objects.select_related("customer")
            .prefetch_related(*_PREFETCH)
            .filter(order_number=order_number.strip())
            .first()
        )

    def list(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        """List orders with optional filters and eager-loaded relations.

        Typical filter keys: ``status``, ``status__in``, ``customer_id``,
        ``payment_status``, ``created_at__range``.
        """
        queryset = Order.objects.select_related("customer").prefetch_related(*_PREFETCH)
        if filters:
            queryset = queryset.filter(**filters)
        if limit is not None:
            return list(queryset[offset : offset + limit])
        return list(queryset[offset:]) if offset else list(queryset)

    def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return Order.objects.filter(**(filters or {})).count()

    def history(self, order_id: UUID) -> List[OrderStatusHistory]:
        return list(OrderStatusHistory.objects.filter(order_id=order_id))

    def outstanding_balance(
        self, customer_id: UUID, exclude_order_id: Optional[UUID] = None
    ) -> Decimal:
        queryset = Order.objects.filter(customer_id=customer_id).exclude(
            status__in=CREDIT_EXEMPT_STATES
        )
        if exclude_order_id is not None:
            queryset = queryset.exclude(id=exclude_order_id)
        sums = queryset.aggregate(total=Sum("total_amount"), paid=Sum("paid_amount"))
        total = sums["total"] or Decimal("0")
        paid = sums["paid"] or Decimal("0")
        return max(total - paid, Decimal("0"))

    def find_payment(
        self, order_id: UUID, kind: str, client_nonce: str
    ) -> Optional[OrderPayment]:
        if not client_nonce:
            return None
        return OrderPayment.objects.filter(
            order_id=order_id, kind=kind, client_nonce=client_nonce
        ).first()

    def find_return(self, order_id: UUID, client_nonce: str) -> Optional[OrderReturn]:
        if not client_nonce:
            return None
        return OrderReturn.objects.filter(order_id=order_id, client_nonce=client_nonce).first()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def next_order_number(self, year: int) -> str:
        sequence = OrderNumberSequence.objects.select_for_update().filter(year=year).first()
        if sequence is None:
            try:
                with transaction.atomic():
                    sequence = OrderNumberSequence.objects.create(year=year)
            except IntegrityError:
                # Another transaction created the row first; wait for its lock.
                sequence = OrderNumberSequence.objects.select_for_update().get(year=year)
        sequence.last_value += 1
        sequence.save(update_fields=["last_value"])
        return f"{year:04d}-{sequence.last_value:0{ORDER_NUMBER_SEQUENCE_DIGITS}d}"

    def save(self, order: Order, update_fields: Optional[Sequence[str]] = None) -> Order:
        if update_fields is None:
            order.save()
        else:
            order.save(update_fields=list(update_fields))
        return order

    def save_items(self, items: Iterable[OrderItem]) -> None:
        for item in items:
            item.save()

    def delete_item(self, item: OrderItem) -> None:
        item.delete()

    def replace_addresses(self, order: Order, addresses: Iterable[OrderAddress]) -> None:
        addresses = list(addresses)
        types = [address.address_type for address in addresses]
        OrderAddress.objects.filter(order_id=order.id, address_type__in=types).delete()
        for address in addresses:
            address.order = order
            address.save()

    def lock_addresses(self, order_id: UUID) -> int:
        return OrderAddress.objects.filter(order_id=order_id, locked_at__isnull=True).update(
            locked_at=timezone.now(), updated_at=timezone.now()
        )

    def add_history(
        self,
        order_id: UUID,
        new_status: str,
        old_status: Optional[str] = None,
        actor_id: str = "",
        notes: str = "",
    ) -> OrderStatusHistory:
        """Record a status change in the order's audit trail."""
        history = OrderStatusHistory.objects.create(
            order_id=order_id,
            old_status=old_status,
            new_status=new_status,
            actor_id=actor_id or "",
            notes=notes,
        )
        logger.info(
            "order.history_added",
            order_id=str(order_id),
            old_status=old_status,
            new_status=new_status,
        )
        return history

    def add_shipment(
        self,
        order_id: UUID,
        lines: Sequence[Tuple[OrderItem, int]],
        tracking_number: str = "",
        carrier: str = "",
        actor_id: str = "",
    ) -> OrderShipment:
        shipment = OrderShipment.objects.create(
            order_id=order_id,
            tracking_number=tracking_number,
            carrier=carrier,
            shipped_at=timezone.now(),
            actor_id=actor_id or "",
        )
        OrderShipmentLine.objects.bulk_create(
            [
                OrderShipmentLine(shipment=shipment, order_item=item, quantity=quantity)
                for item, quantity in lines
            ]
        )
        return shipment

    def add_payment(self, payment: OrderPayment) -> OrderPayment:
        payment.save()
        return payment

    def add_return(self, order_return: OrderReturn) -> OrderReturn:
        order_return.save()
        return order_return
