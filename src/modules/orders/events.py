"""Domain events for the Orders bounded context.

Events are collected on the ``Order`` aggregate while an operation runs
and published on the in-process bus only after the transaction commits.
"""

from __future__ import annotations

from dataclasses import dataclass

from shared.domain.events import DomainEvent


@dataclass(frozen=True)
class OrderEvent(DomainEvent):
    order_number: str = ""
    actor_id: str = ""


@dataclass(frozen=True)
class OrderCreated(OrderEvent):
    """Raised when an order is created (status DRAFT)."""

    customer_id: str = ""
    total_amount: str = ""
    currency: str = ""


@dataclass(frozen=True)
class OrderUpdated(OrderEvent):
    """Raised when order metadata or items change."""

    changed_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderStatusChanged(OrderEvent):
    """Raised when an order status changes."""

    old_status: str = ""
    new_status: str = ""


@dataclass(frozen=True)
class OrderCancelled(OrderEvent):
    """Raised when an order is cancelled."""

    reason: str = ""
    refunded_amount: str = ""


@dataclass(frozen=True)
class OrderShipped(OrderEvent):
    """Raised for every shipment, partial or complete."""

    tracking_number: str = ""
    carrier: str = ""
    complete: bool = False


@dataclass(frozen=True)
class OrderDelivered(OrderEvent):
    """Raised when an order is delivered."""


@dataclass(frozen=True)
class PaymentReceived(OrderEvent):
    amount: str = ""
    method: str = ""
    payment_status: str = ""


@dataclass(frozen=True)
class PaymentDeclined(OrderEvent):
    amount: str = ""
    method: str = ""


@dataclass(frozen=True)
class OrderRefunded(OrderEvent):
    amount: str = ""
    payment_status: str = ""


@dataclass(frozen=True)
class ItemsReturned(OrderEvent):
    quantity: int = 0
    condition: str = ""


ORDER_EVENTS: tuple[type[OrderEvent], ...] = (
    OrderCreated,
    OrderUpdated,
    OrderStatusChanged,
    OrderCancelled,
    OrderShipped,
    OrderDelivered,
    PaymentReceived,
    PaymentDeclined,
    OrderRefunded,
    ItemsReturned,
)
