"""Order aggregate models.

Business rules implemented:
- RN-PED-001: Invalid status transitions rejected (``state_machine``).
- RN-PED-002: Each status change generates a history record.
- RN-PED-003: History contains old/new status, timestamp, actor and notes.
- RN-PED-004: ``order_number`` is ``YYYY-NNNNNN``, allocated from a per-year
  counter inside the insert transaction (``OrderNumberSequence``).
- RN-PED-005: Monetary fields are written only by the pricing engine;
  ``total_amount = subtotal - discount_amount + tax_amount + shipping_amount``.
- RN-PED-006: ``0 <= returned_qty <= shipped_qty <= quantity`` per item
  (database check constraints).
- RN-PED-007: Address snapshots are copied at creation and locked on
  confirmation.
- Customer and product FKs use PROTECT to preserve financial history.
  Orders are never deleted.
"""

from __future__ import annotations

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models

from modules.core.models import BaseModel
from modules.orders.constants import (
    TERMINAL_STATES,
    OrderAddressType,
    OrderStatus,
    OrderType,
    PaymentKind,
    PaymentRecordStatus,
    PaymentStatus,
    Priority,
    ShippingMethod,
)
from modules.orders.state_machine import can_transition, is_frozen
from shared.domain.events import DomainEventMixin

MONEY = {"max_digits": 14, "decimal_places": 3}


def _money_field(**kwargs) -> models.DecimalField:
    return models.DecimalField(default=Decimal("0"), **MONEY, **kwargs)


class Order(DomainEventMixin, BaseModel):
    """Order aggregate root.

    ``order_number`` is the human-readable business key; the UUIDv7 ``id``
    is used for all internal references.  ``shipping_address`` and
    ``billing_address`` point at the customer's address book entries the
    order was created from; the frozen copies live in ``OrderAddress``.
    """

    order_number: models.CharField = models.CharField(
        max_length=20, unique=True, editable=False
    )
    customer: models.ForeignKey = models.ForeignKey(
        "customers.Customer",
        on_delete=models.PROTECT,
        related_name="orders",
    )
    status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.DRAFT,
    )
    previous_status: models.CharField = models.CharField(
        max_length=20, choices=OrderStatus.choices, blank=True, default=""
    )
    payment_status: models.CharField = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.UNPAID,
    )
    order_type: models.CharField = models.CharField(
        max_length=10, choices=OrderType.choices, default=OrderType.SALES
    )
    priority: models.CharField = models.CharField(
        max_length=10, choices=Priority.choices, default=Priority.NORMAL
    )
    shipping_method: models.CharField = models.CharField(
        max_length=20,
        choices=ShippingMethod.choices,
        default=ShippingMethod.STANDARD,
    )
    currency: models.CharField = models.CharField(max_length=3, default="USD")
    shipping_address: models.ForeignKey = models.ForeignKey(
        "customers.CustomerAddress",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    billing_address: models.ForeignKey = models.ForeignKey(
        "customers.CustomerAddress",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    subtotal: models.DecimalField = _money_field()
    discount_amount: models.DecimalField = _money_field()
    tax_amount: models.DecimalField = _money_field()
    shipping_amount: models.DecimalField = _money_field()
    total_amount: models.DecimalField = _money_field()
    paid_amount: models.DecimalField = _money_field()
    refunded_amount: models.DecimalField = _money_field()
    discount_code: models.CharField = models.CharField(
        max_length=50, blank=True, default=""
    )
    payment_method: models.CharField = models.CharField(
        max_length=30, blank=True, default=""
    )

    required_date: models.DateField = models.DateField(null=True, blank=True)
    confirmed_date: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    shipped_date: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    delivered_date: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    cancelled_date: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    tracking_number: models.CharField = models.CharField(
        max_length=100, blank=True, default=""
    )
    carrier: models.CharField = models.CharField(max_length=100, blank=True, default="")

    notes: models.TextField = models.TextField(blank=True, default="")
    internal_notes: models.TextField = models.TextField(blank=True, default="")
    customer_notes: models.TextField = models.TextField(blank=True, default="")
    cancellation_reason: models.TextField = models.TextField(blank=True, default="")
    created_by: models.CharField = models.CharField(max_length=64, blank=True, default="")
    updated_by: models.CharField = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["customer"], name="orders_customer_idx"),
            models.Index(fields=["status"], name="orders_status_idx"),
            models.Index(fields=["-created_at"], name="orders_created_idx"),
        ]

    # ------------------------------------------------------------------
    # State Machine helpers
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` if the order is in a terminal state."""
        return self.status in TERMINAL_STATES

    @property
    def is_frozen(self) -> bool:
        return is_frozen(self.status)

    def can_transition_to(self, new_status: str) -> bool:
        """Check whether transitioning to *new_status* is valid."""
        return can_transition(self.status, new_status)

    # ------------------------------------------------------------------
    # Money helpers
    # ------------------------------------------------------------------

    @property
    def balance_due(self) -> Decimal:
        return max(self.total_amount - self.paid_amount, Decimal("0"))

    @property
    def is_fully_paid(self) -> bool:
        return self.paid_amount >= self.total_amount

    def __str__(self) -> str:
        return f"{self.order_number} ({self.status})"


class OrderItem(BaseModel):
    """Line item linking an Order to a Product at a Warehouse.

    ``unit_price`` is a snapshot taken at creation (or an explicit
    override).  ``line_total`` is ``unit_price * quantity - discount_amount``
    and is written by the pricing engine, never by callers.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="items",
    )
    product: models.ForeignKey = models.ForeignKey(
        "products.Product",
        on_delete=models.PROTECT,
        related_name="order_items",
    )
    warehouse: models.ForeignKey = models.ForeignKey(
        "inventory.Warehouse",
        on_delete=models.PROTECT,
        related_name="order_items",
    )
    product_sku: models.CharField = models.CharField(max_length=64)
    product_name: models.CharField = models.CharField(max_length=255)
    currency: models.CharField = models.CharField(max_length=3)
    quantity: models.PositiveIntegerField = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
    )
    unit_price: models.DecimalField = models.DecimalField(**MONEY)
    discount_amount: models.DecimalField = _money_field()
    # NULL means "no rate of its own": the default tax rate applies.
    tax_rate: models.DecimalField = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True
    )
    line_total: models.DecimalField = _money_field(editable=False)
    unit_cost: models.DecimalField = _money_field()
    shipped_qty: models.PositiveIntegerField = models.PositiveIntegerField(default=0)
    returned_qty: models.PositiveIntegerField = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_items"
        ordering = ["created_at", "id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity__gte=1),
                name="order_items_quantity_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(shipped_qty__lte=models.F("quantity")),
                name="order_items_shipped_le_quantity",
            ),
            models.CheckConstraint(
                condition=models.Q(returned_qty__lte=models.F("shipped_qty")),
                name="order_items_returned_le_shipped",
            ),
        ]

    @property
    def remaining_to_ship(self) -> int:
        return self.quantity - self.shipped_qty

    @property
    def returnable_qty(self) -> int:
        return self.shipped_qty - self.returned_qty

    def __str__(self) -> str:
        return f"{self.product_sku} x{self.quantity} ({self.line_total} {self.currency})"


class OrderAddress(BaseModel):
    """Shipping or billing address copied onto the order.

    Editable (replaced wholesale) only while the order is a DRAFT;
    ``locked_at`` is stamped when the order is confirmed.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="addresses",
    )
    address_type: models.CharField = models.CharField(
        max_length=10, choices=OrderAddressType.choices
    )
    source_address_id: models.UUIDField = models.UUIDField(null=True, blank=True)
    recipient_name: models.CharField = models.CharField(
        max_length=255, blank=True, default=""
    )
    line1: models.CharField = models.CharField(max_length=255)
    line2: models.CharField = models.CharField(max_length=255, blank=True, default="")
    city: models.CharField = models.CharField(max_length=100)
    state: models.CharField = models.CharField(max_length=100, blank=True, default="")
    postal_code: models.CharField = models.CharField(max_length=20)
    country: models.CharField = models.CharField(max_length=2)
    locked_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "order_addresses"
        ordering = ["address_type"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "address_type"],
                name="order_addresses_one_per_type",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.address_type}: {self.line1}, {self.city}"


class OrderStatusHistory(BaseModel):
    """Append-only audit trail for order status transitions.

    Audit records are immutable; ``actor_id`` is empty when the change was
    made by the system.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="status_history",
    )
    old_status: models.CharField = models.CharField(  # noqa: DJ01
        max_length=20,
        choices=OrderStatus.choices,
        null=True,
        blank=True,
    )
    new_status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
    )
    actor_id: models.CharField = models.CharField(max_length=64, blank=True, default="")
    notes: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_status_history"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(
                fields=["order", "-created_at"],
                name="osh_order_created_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} : {self.old_status} -> {self.new_status}"


class OrderShipment(BaseModel):
    """One physical shipment; an order may ship in several."""

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="shipments",
    )
    tracking_number: models.CharField = models.CharField(
        max_length=100, blank=True, default=""
    )
    carrier: models.CharField = models.CharField(max_length=100, blank=True, default="")
    shipped_at: models.DateTimeField = models.DateTimeField()
    actor_id: models.CharField = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        db_table = "order_shipments"
        ordering = ["shipped_at", "id"]

    def __str__(self) -> str:
        return f"{self.order_id} via {self.carrier or '?'} ({self.tracking_number})"


class OrderShipmentLine(BaseModel):
    shipment: models.ForeignKey = models.ForeignKey(
        OrderShipment,
        on_delete=models.CASCADE,
        related_name="lines",
    )
    order_item: models.ForeignKey = models.ForeignKey(
        OrderItem,
        on_delete=models.CASCADE,
        related_name="shipment_lines",
    )
    quantity: models.PositiveIntegerField = models.PositiveIntegerField(
        validators=[MinValueValidator(1)]
    )

    class Meta:
        db_table = "order_shipment_lines"
        ordering = ["created_at", "id"]


class OrderReturn(BaseModel):
    """One accepted return request.

    ``client_nonce`` makes a retried request a no-op: stock, item counters
    and refunds are applied once.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="returns",
    )
    units: models.PositiveIntegerField = models.PositiveIntegerField()
    conditions: models.CharField = models.CharField(max_length=100, blank=True, default="")
    refunded_amount: models.DecimalField = models.DecimalField(**MONEY)
    client_nonce: models.CharField = models.CharField(
        max_length=100, blank=True, default=""
    )
    reason: models.TextField = models.TextField(blank=True, default="")
    actor_id: models.CharField = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        db_table = "order_returns"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "client_nonce"],
                condition=~models.Q(client_nonce=""),
                name="order_returns_nonce_uniq",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} returned {self.units} unit(s)"


class OrderPayment(BaseModel):
    """A payment or refund attempt as reported by the payment collaborator.

    ``client_nonce`` makes retries of the same request idempotent.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="payments",
    )
    kind: models.CharField = models.CharField(max_length=10, choices=PaymentKind.choices)
    status: models.CharField = models.CharField(
        max_length=10, choices=PaymentRecordStatus.choices
    )
    amount: models.DecimalField = models.DecimalField(**MONEY)
    method: models.CharField = models.CharField(max_length=30, blank=True, default="")
    transaction_id: models.CharField = models.CharField(
        max_length=100, blank=True, default=""
    )
    client_nonce: models.CharField = models.CharField(
        max_length=100, blank=True, default=""
    )
    reason: models.TextField = models.TextField(blank=True, default="")
    actor_id: models.CharField = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        db_table = "order_payments"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "kind", "client_nonce"],
                condition=~models.Q(client_nonce=""),
                name="order_payments_nonce_uniq",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.kind} {self.amount} [{self.status}]"


class OrderNumberSequence(models.Model):
    """Per-year counter behind ``YYYY-NNNNNN`` order numbers."""

    year: models.PositiveIntegerField = models.PositiveIntegerField(primary_key=True)
    last_value: models.PositiveIntegerField = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_number_sequences"

    def __str__(self) -> str:
        return f"{self.year}: {self.last_value}"
