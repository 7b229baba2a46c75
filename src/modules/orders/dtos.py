"""Order DTOs for the Service Layer.

Framework-agnostic data transfer objects using Pydantic v2.  Inputs are
immutable (``frozen=True``) and already shape-validated when they reach
the service; business validation (customer standing, stock, currency
support) happens in the service and raises domain errors.

Partial updates (``UpdateOrderDTO``, ``UpdateItemDTO``) distinguish
"leave unchanged" from "replace with this value, possibly None" through
``model_fields_set``: only fields the caller actually passed are applied.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from modules.inventory.constants import ReturnCondition
from modules.orders.constants import OrderType, Priority, ShippingMethod
from modules.orders.money import format_money

if TYPE_CHECKING:
    from modules.orders.models import (
        Order,
        OrderAddress,
        OrderItem,
        OrderStatusHistory,
    )


def _positive(value: Optional[Decimal], name: str) -> Optional[Decimal]:
    if value is not None and value <= 0:
        raise ValueError(f"{name} must be greater than zero.")
    return value


def _non_negative(value: Optional[Decimal], name: str) -> Optional[Decimal]:
    if value is not None and value < 0:
        raise ValueError(f"{name} cannot be negative.")
    return value


# ---------------------------------------------------------------------------
# Input DTOs - creation and items
# ---------------------------------------------------------------------------


class CreateOrderItemDTO(BaseModel):
    """A single line in a creation (or add-item) request.

    ``unit_price`` overrides the catalog price when given; otherwise the
    service snapshots the product price.
    """

    model_config = ConfigDict(frozen=True)

    product_id: UUID
    quantity: int
    unit_price: Optional[Decimal] = None
    discount_amount: Decimal = Decimal("0")
    warehouse_id: Optional[UUID] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v

    @field_validator("unit_price")
    @classmethod
    def unit_price_must_be_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _positive(v, "Unit price")

    @field_validator("discount_amount")
    @classmethod
    def discount_not_negative(cls, v: Decimal) -> Decimal:
        return _non_negative(v, "Discount")


class CreateOrderDTO(BaseModel):
    """Immutable DTO for order creation requests.

    ``billing_address_id`` defaults to the shipping address.
    """

    model_config = ConfigDict(frozen=True)

    customer_id: UUID
    items: List[CreateOrderItemDTO]
    shipping_address_id: UUID
    billing_address_id: Optional[UUID] = None
    currency: str = "USD"
    order_type: OrderType = OrderType.SALES
    priority: Priority = Priority.NORMAL
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    discount_code: Optional[str] = None
    required_date: Optional[date] = None
    notes: str = ""
    customer_notes: str = ""
    internal_notes: str = ""

    @field_validator("currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(
        cls, v: List[CreateOrderItemDTO]
    ) -> List[CreateOrderItemDTO]:
        if not v:
            raise ValueError("Order must have at least one item.")
        return v

    @model_validator(mode="after")
    def no_duplicate_products(self):
        """Prevent the same product/warehouse pair appearing twice."""
        keys = [(item.product_id, item.warehouse_id) for item in self.items]
        if len(keys) != len(set(keys)):
            raise ValueError("Duplicate product IDs are not allowed in the same order.")
        return self


class UpdateOrderDTO(BaseModel):
    """Partial update of order metadata.

    Every field is optional; omitted fields stay unchanged.  Passing
    ``None`` explicitly clears a nullable field (``required_date``,
    ``discount_code``).
    """

    model_config = ConfigDict(frozen=True)

    shipping_method: Optional[ShippingMethod] = None
    priority: Optional[Priority] = None
    order_type: Optional[OrderType] = None
    required_date: Optional[date] = None
    discount_code: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    shipping_address_id: Optional[UUID] = None
    billing_address_id: Optional[UUID] = None
    notes: Optional[str] = None
    customer_notes: Optional[str] = None
    internal_notes: Optional[str] = None

    NOT_NULLABLE: ClassVar[frozenset[str]] = frozenset(
        {
            "shipping_method",
            "priority",
            "order_type",
            "discount_amount",
            "shipping_address_id",
            "billing_address_id",
            "notes",
            "customer_notes",
            "internal_notes",
        }
    )

    @field_validator("discount_amount")
    @classmethod
    def discount_not_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _non_negative(v, "Discount")

    @model_validator(mode="after")
    def required_fields_not_cleared(self):
        cleared = [
            name
            for name in self.model_fields_set & self.NOT_NULLABLE
            if getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {', '.join(sorted(cleared))}.")
        if {"discount_code", "discount_amount"} <= self.model_fields_set and (
            self.discount_code and self.discount_amount
        ):
            raise ValueError("Set either discount_code or discount_amount, not both.")
        return self

    def changes(self) -> Dict[str, Any]:
        """Only the fields the caller explicitly set."""
        return {name: getattr(self, name) for name in sorted(self.model_fields_set)}


class UpdateItemDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v

    @field_validator("unit_price")
    @classmethod
    def unit_price_must_be_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _positive(v, "Unit price")

    @field_validator("discount_amount")
    @classmethod
    def discount_not_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _non_negative(v, "Discount")

    @model_validator(mode="after")
    def nothing_cleared(self):
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"Field cannot be cleared: {name}.")
        return self

    def changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in sorted(self.model_fields_set)}


class CloneOrderDTO(BaseModel):
    """Options for ``clone_order``.

    Lines are always copied (quantities, prices and warehouses).  The
    addresses default to the source order's unless ``shipping_address_id``
    is given, which is required when cloning for another customer.
    """

    model_config = ConfigDict(frozen=True)

    copy_notes: bool = False
    copy_discounts: bool = False
    new_customer_id: Optional[UUID] = None
    shipping_address_id: Optional[UUID] = None
    billing_address_id: Optional[UUID] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def new_customer_needs_address(self):
        if self.new_customer_id is not None and self.shipping_address_id is None:
            raise ValueError("A clone for another customer needs a shipping_address_id.")
        return self


# ---------------------------------------------------------------------------
# Input DTOs - fulfilment and money
# ---------------------------------------------------------------------------


class ShipItemDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: UUID
    quantity: int = Field(ge=1)


class ShipOrderDTO(BaseModel):
    """Ship some or all remaining units.

    An empty ``items`` list ships everything that has not shipped yet.
    """

    model_config = ConfigDict(frozen=True)

    items: List[ShipItemDTO] = Field(default_factory=list)
    tracking_number: str = ""
    carrier: str = ""

    @model_validator(mode="after")
    def no_duplicate_items(self):
        ids = [item.item_id for item in self.items]
        if len(ids) != len(set(ids)):
            raise ValueError("Each item may appear only once per shipment.")
        return self


class ReturnItemDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: UUID
    quantity: int = Field(ge=1)
    condition: ReturnCondition = ReturnCondition.RESTOCKABLE


class ReturnItemsDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: List[ReturnItemDTO]
    refund: bool = False
    reason: str = ""
    client_nonce: Optional[str] = None

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(cls, v: List[ReturnItemDTO]) -> List[ReturnItemDTO]:
        if not v:
            raise ValueError("At least one item must be returned.")
        return v


class PaymentDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal
    method: str = "MANUAL"
    client_nonce: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v, "Amount")


class RefundDTO(BaseModel):
    """Refund ``amount``, or everything still paid when ``amount`` is None."""

    model_config = ConfigDict(frozen=True)

    amount: Optional[Decimal] = None
    reason: str = ""
    client_nonce: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _positive(v, "Amount")


class PartialRefundItemDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: UUID
    quantity: int = Field(ge=1)
    amount: Optional[Decimal] = None

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _positive(v, "Amount")


class PartialRefundDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: List[PartialRefundItemDTO]
    reason: str = ""
    client_nonce: Optional[str] = None

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(
        cls, v: List[PartialRefundItemDTO]
    ) -> List[PartialRefundItemDTO]:
        if not v:
            raise ValueError("At least one item is required.")
        return v


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


class OrderItemOutputDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    product_id: UUID
    warehouse_id: UUID
    product_sku: str
    product_name: str
    quantity: int
    shipped_qty: int
    returned_qty: int
    unit_price: str
    discount_amount: str
    tax_rate: Optional[str]
    line_total: str

    @classmethod
    def from_entity(cls, item: OrderItem, currency: str) -> OrderItemOutputDTO:
        return cls(
            id=item.id,
            product_id=item.product_id,
            warehouse_id=item.warehouse_id,
            product_sku=item.product_sku,
            product_name=item.product_name,
            quantity=item.quantity,
            shipped_qty=item.shipped_qty,
            returned_qty=item.returned_qty,
            unit_price=format_money(item.unit_price, currency),
            discount_amount=format_money(item.discount_amount, currency),
            tax_rate=None if item.tax_rate is None else f"{item.tax_rate:f}",
            line_total=format_money(item.line_total, currency),
        )


class OrderAddressOutputDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    address_type: str
    recipient_name: str
    line1: str
    line2: str
    city: str
    state: str
    postal_code: str
    country: str
    locked: bool

    @classmethod
    def from_entity(cls, address: OrderAddress) -> OrderAddressOutputDTO:
        return cls(
            address_type=address.address_type,
            recipient_name=address.recipient_name,
            line1=address.line1,
            line2=address.line2,
            city=address.city,
            state=address.state,
            postal_code=address.postal_code,
            country=address.country,
            locked=address.locked_at is not None,
        )


class StatusHistoryDTO(BaseModel):
    """Immutable DTO for order status history records."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    old_status: Optional[str]
    new_status: str
    actor_id: str
    notes: str
    created_at: datetime

    @classmethod
    def from_entity(cls, history: OrderStatusHistory) -> StatusHistoryDTO:
        return cls(
            id=history.id,
            old_status=history.old_status,
            new_status=history.new_status,
            actor_id=history.actor_id,
            notes=history.notes,
            created_at=history.created_at,
        )


class OrderOutputDTO(BaseModel):
    """Order with canonical money strings ("118.00", never "118")."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    order_number: str
    customer_id: UUID
    status: str
    payment_status: str
    order_type: str
    priority: str
    shipping_method: str
    currency: str
    subtotal: str
    discount_amount: str
    tax_amount: str
    shipping_amount: str
    total_amount: str
    paid_amount: str
    refunded_amount: str
    tracking_number: str
    carrier: str
    required_date: Optional[date]
    shipped_date: Optional[datetime]
    delivered_date: Optional[datetime]
    cancelled_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemOutputDTO]
    addresses: List[OrderAddressOutputDTO]
    history: List[StatusHistoryDTO]

    @classmethod
    def from_entity(cls, order: Order) -> OrderOutputDTO:
        """Build an output DTO from an Order model instance.

        Assumes ``items``, ``addresses`` and ``status_history`` are prefetched.
        """
        currency = order.currency
        return cls(
            id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            status=order.status,
            payment_status=order.payment_status,
            order_type=order.order_type,
            priority=order.priority,
            shipping_method=order.shipping_method,
            currency=currency,
            subtotal=format_money(order.subtotal, currency),
            discount_amount=format_money(order.discount_amount, currency),
            tax_amount=format_money(order.tax_amount, currency),
            shipping_amount=format_money(order.shipping_amount, currency),
            total_amount=format_money(order.total_amount, currency),
            paid_amount=format_money(order.paid_amount, currency),
            refunded_amount=format_money(order.refunded_amount, currency),
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            required_date=order.required_date,
            shipped_date=order.shipped_date,
            delivered_date=order.delivered_date,
            cancelled_date=order.cancelled_date,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[
                OrderItemOutputDTO.from_entity(item, currency)
                for item in order.items.all()
            ],
            addresses=[
                OrderAddressOutputDTO.from_entity(a) for a in order.addresses.all()
            ],
            history=[
                StatusHistoryDTO.from_entity(h) for h in order.status_history.all()
            ],
        )


class BulkItemResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    ok: bool
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class BulkResult(BaseModel):
    """``{succeeded_count, failed_count, results[]}`` for bulk operations."""

    model_config = ConfigDict(frozen=True)

    succeeded_count: int
    failed_count: int
    results: List[BulkItemResult]

    @classmethod
    def from_results(cls, results: List[BulkItemResult]) -> BulkResult:
        succeeded = sum(1 for r in results if r.ok)
        return cls(
            succeeded_count=succeeded,
            failed_count=len(results) - succeeded,
            results=results,
        )


class OrderValidationDTO(BaseModel):
    """Result of ``validate_order``: errors make an order invalid, warnings do not."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class TaxBreakdownDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    tax_name: str
    tax_rate: str
    taxable_amount: str
    tax_amount: str


class DiscountBreakdownDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    discount_type: str
    amount: str
    description: str


class OrderCalculationDTO(BaseModel):
    """Totals preview from ``calculate_order_totals``; nothing is saved."""

    model_config = ConfigDict(frozen=True)

    currency: str
    subtotal: str
    discount_amount: str
    tax_amount: str
    shipping_amount: str
    total_amount: str
    tax_breakdown: List[TaxBreakdownDTO]
    discount_breakdown: List[DiscountBreakdownDTO]
