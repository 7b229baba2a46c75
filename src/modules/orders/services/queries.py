"""Read-only order queries. No locks, no transactions."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from uuid import UUID

from django.conf import settings
from django.utils import timezone

from modules.inventory.dtos import StockLine
from modules.orders.concurrency import OperationContext
from modules.orders.constants import DiscountType, OrderStatus
from modules.orders.dtos import (
    DiscountBreakdownDTO,
    OrderCalculationDTO,
    OrderOutputDTO,
    OrderValidationDTO,
    StatusHistoryDTO,
    TaxBreakdownDTO,
)
from modules.orders.exceptions import CustomerNotFound, InvalidOrderRequest, OrderNotFound
from modules.orders.models import Order
from modules.orders.money import format_money
from modules.orders.pricing import tax_bands
from modules.orders.services.base import OrderServiceBase
from modules.orders.state_machine import can_transition, is_terminal

if TYPE_CHECKING:
    from modules.inventory.dtos import AvailabilityRecord
    from modules.inventory.models import InventoryTransaction
    from modules.orders.dtos import CreateOrderItemDTO


class QueryOps(OrderServiceBase):
    def get_order(self, order_id: UUID | str) -> Order:
        order = self._order_repo.get_by_id(str(order_id))
        if order is None:
            raise OrderNotFound(order_id=str(order_id))
        return order

    def get_order_by_number(self, order_number: str) -> Order:
        order = self._order_repo.get_by_number(order_number)
        if order is None:
            raise OrderNotFound(order_number=order_number)
        return order

    def list_orders(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        return self._order_repo.list(filters, limit=limit, offset=offset)

    def count_orders(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return self._order_repo.count(filters)

    def get_customer_orders(
        self,
        customer_id: UUID | str,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        """The customer's order history, newest first.

        Raises:
            CustomerNotFound: no such customer.
            InvalidOrderRequest: *status* is not an order status.
        """
        customer = self._customer_repo.get_by_id(str(customer_id))
        if customer is None:
            raise CustomerNotFound(customer_id=str(customer_id))
        filters: Dict[str, Any] = {"customer_id": customer.id}
        if status is not None:
            filters["status"] = self._parse_status(status)
        return self._order_repo.list(filters, limit=limit, offset=offset)

    def get_status_history(self, order_id: UUID | str) -> List[StatusHistoryDTO]:
        """Status changes oldest first; the first row is the creation."""
        order = self.get_order(order_id)
        return [StatusHistoryDTO.from_entity(row) for row in self._order_repo.history(order.id)]

    def get_inventory_ledger(self, order_id: UUID | str) -> List[InventoryTransaction]:
        order = self.get_order(order_id)
        return self._inventory.ledger(order.id)

    def check_availability(
        self, items: List[CreateOrderItemDTO]
    ) -> List[AvailabilityRecord]:
        """Whether current stock covers *items*, line by line. Reserves nothing.

        Warehouses are resolved exactly as ``create_order`` would.
        """
        products = self._products_for(items)
        lines = []
        prices = {}
        for item in items:
            product = products[item.product_id]
            lines.append(
                StockLine(
                    product_id=product.id,
                    warehouse_id=self._inventory.resolve_warehouse(product, item.warehouse_id),
                    quantity=item.quantity,
                )
            )
            prices[product.id] = item.unit_price if item.unit_price is not None else product.price
        return self._inventory.check_availability(lines, prices)

    def validate_order(self, order_id: UUID | str) -> OrderValidationDTO:
        """Check a stored order against the rules the service enforces.

        Errors mean the stored data is inconsistent; warnings flag orders
        that need a human look (late, or above the approval threshold).
        """
        order = self.get_order(order_id)
        items = self._items(order)
        currency = order.currency
        errors: List[str] = []
        warnings: List[str] = []

        if not items:
            errors.append("Order must have at least one item.")
        for position, item in enumerate(items, start=1):
            label = f"Item {position} ({item.product_sku})"
            if item.quantity < 1:
                errors.append(f"{label}: quantity must be at least 1.")
            if item.shipped_qty > item.quantity:
                errors.append(f"{label}: shipped quantity exceeds the ordered quantity.")
            if item.returned_qty > item.shipped_qty:
                errors.append(f"{label}: returned quantity exceeds the shipped quantity.")
        if items and order.subtotal <= 0:
            errors.append("Order subtotal must be greater than zero.")
        expected = order.subtotal - order.discount_amount + order.tax_amount + order.shipping_amount
        if expected != order.total_amount:
            errors.append(
                f"Order total {format_money(order.total_amount, currency)} does not match "
                f"its components ({format_money(expected, currency)})."
            )
        if order.paid_amount > order.total_amount:
            errors.append("Paid amount exceeds the order total.")
        if order.previous_status and not can_transition(order.previous_status, order.status):
            errors.append(
                f"Invalid status transition from {order.previous_status} to {order.status}."
            )

        open_order = not is_terminal(order.status) and order.status != OrderStatus.DELIVERED
        if open_order and order.required_date and order.required_date < timezone.now().date():
            warnings.append("Order required date has passed.")
        threshold = Decimal(
            str(getattr(settings, "ORDERS", {}).get("APPROVAL_THRESHOLD", "10000"))
        )
        if order.total_amount > threshold:
            warnings.append(
                f"Order total exceeds {format_money(threshold, currency)} {currency}; "
                "additional approval may be required."
            )

        return OrderValidationDTO(is_valid=not errors, errors=errors, warnings=warnings)

    def calculate_order_totals(
        self, order_id: UUID | str, context: Optional[OperationContext] = None
    ) -> OrderCalculationDTO:
        """Re-quote the order's totals with a tax and discount breakdown.

        Uses the current tax, shipping and coupon collaborators over the
        stored lines.  Nothing is saved; ``recalculate_order`` applies a
        new quote.

        Raises:
            InvalidOrderRequest: the order has no items.
        """
        order = self.get_order(order_id)
        items = self._items(order)
        if not items:
            raise InvalidOrderRequest(
                "The order has no items to calculate.", order_id=str(order.id)
            )
        totals = self._price(order, items, context or OperationContext.with_timeout())
        currency = totals.currency

        discounts = [
            DiscountBreakdownDTO(
                discount_type=DiscountType.ITEM_DISCOUNT,
                amount=format_money(item.discount_amount, currency),
                description=f"Discount on {item.product_name}",
            )
            for item in items
            if item.discount_amount > 0
        ]
        if totals.discount_amount > 0:
            discounts.append(
                DiscountBreakdownDTO(
                    discount_type=DiscountType.COUPON
                    if order.discount_code
                    else DiscountType.ORDER_DISCOUNT,
                    amount=format_money(totals.discount_amount, currency),
                    description=f"Coupon {order.discount_code}"
                    if order.discount_code
                    else "Order level discount",
                )
            )

        return OrderCalculationDTO(
            currency=currency,
            subtotal=format_money(totals.subtotal, currency),
            discount_amount=format_money(totals.discount_amount, currency),
            tax_amount=format_money(totals.tax_amount, currency),
            shipping_amount=format_money(totals.shipping_amount, currency),
            total_amount=format_money(totals.total_amount, currency),
            tax_breakdown=[
                TaxBreakdownDTO(
                    tax_name=f"Tax @ {band.rate.normalize():f}%",
                    tax_rate=f"{band.rate:f}",
                    taxable_amount=format_money(band.taxable_amount, currency),
                    tax_amount=format_money(band.tax_amount, currency),
                )
                for band in tax_bands(totals, self._tax.rate_for)
                if band.rate > 0
            ],
            discount_breakdown=discounts,
        )

    @staticmethod
    def to_output(order: Order) -> OrderOutputDTO:
        return OrderOutputDTO.from_entity(order)
