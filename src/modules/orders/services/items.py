"""Line item editing while an order is DRAFT or PENDING.

Every change adjusts the stock reservation by the quantity delta and
reprices the whole order in the same transaction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

import structlog

from modules.orders.concurrency import OperationContext
from modules.orders.constants import ITEM_EDITABLE_STATES
from modules.orders.events import OrderUpdated
from modules.orders.exceptions import InvalidOrderRequest, OrderItemNotFound
from modules.orders.models import Order, OrderItem
from modules.orders.money import quantize
from modules.orders.services.base import OrderServiceBase, stock_line

if TYPE_CHECKING:
    from modules.orders.dtos import CreateOrderItemDTO, UpdateItemDTO

logger = structlog.get_logger(__name__)


class ItemOps(OrderServiceBase):
    def add_item(
        self,
        order_id: UUID,
        dto: CreateOrderItemDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Add a line, reserving its stock.

        Raises:
            OrderNotEditable: the order is past PENDING.
            InvalidOrderRequest: the product is already on the order at
                that warehouse (update the existing line instead).
            InsufficientInventory: not enough stock for the new line.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_editable(order, ITEM_EDITABLE_STATES)
            items = self._items(order)
            products = self._products_for([dto])
            item = self._build_item(order, products[dto.product_id], dto)
            if any(
                existing.product_id == item.product_id
                and existing.warehouse_id == item.warehouse_id
                for existing in items
            ):
                raise InvalidOrderRequest(
                    "The product is already on the order; change that line's quantity.",
                    product_id=str(item.product_id),
                )
            self._reserve(order, [(item, item.quantity)], ctx)
            items.append(item)
            self._after_items_changed(order, items, ctx)
            logger.info(
                "order.item_added",
                order_id=str(order.id),
                item_id=str(item.id),
                quantity=item.quantity,
            )

        return self._mutate("add_item", order_id, body, context)

    def update_item(
        self,
        order_id: UUID,
        item_id: UUID,
        dto: UpdateItemDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Change quantity, unit price or line discount of one item.

        A higher quantity reserves the difference (all or nothing); a lower
        one releases it.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_editable(order, ITEM_EDITABLE_STATES)
            items = self._items(order)
            item = _find(items, item_id)
            changes = dto.changes()
            if not changes:
                return

            if "quantity" in changes:
                delta = changes["quantity"] - item.quantity
                if delta > 0:
                    self._reserve(order, [(item, delta)], ctx)
                elif delta < 0:
                    self._inventory.release(
                        order.id,
                        [stock_line(item, -delta)],
                        actor_id=ctx.actor_id,
                        notes="Item quantity reduced",
                    )
                item.quantity = changes["quantity"]
            if "unit_price" in changes:
                item.unit_price = quantize(changes["unit_price"], order.currency)
                item.currency = order.currency
            if "discount_amount" in changes:
                item.discount_amount = changes["discount_amount"]

            self._after_items_changed(order, items, ctx)
            logger.info(
                "order.item_updated",
                order_id=str(order.id),
                item_id=str(item.id),
                changed_fields=sorted(changes),
            )

        return self._mutate("update_item", order_id, body, context)

    def remove_item(
        self,
        order_id: UUID,
        item_id: UUID,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Drop a line and release its reservation.

        Raises:
            InvalidOrderRequest: it is the only line; cancel the order instead.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_editable(order, ITEM_EDITABLE_STATES)
            items = self._items(order)
            item = _find(items, item_id)
            if len(items) == 1:
                raise InvalidOrderRequest(
                    "An order needs at least one item; cancel the order instead.",
                    item_id=str(item.id),
                )
            self._inventory.release(
                order.id,
                [stock_line(item, item.quantity)],
                actor_id=ctx.actor_id,
                notes="Item removed",
            )
            self._order_repo.delete_item(item)
            remaining = [other for other in items if other.id != item.id]
            self._after_items_changed(order, remaining, ctx)
            logger.info("order.item_removed", order_id=str(order.id), item_id=str(item.id))

        return self._mutate("remove_item", order_id, body, context)

    def _after_items_changed(
        self, order: Order, items: List[OrderItem], ctx: OperationContext
    ) -> None:
        self._reprice(order, items, ctx)
        self._ensure_total_covers_paid(order)
        self._check_credit(order)
        self._order_repo.save_items(items)
        order.payment_status = self._payment_status(order)
        order.add_domain_event(
            OrderUpdated(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=ctx.actor_id,
                changed_fields=("items",),
            )
        )


def _find(items: List[OrderItem], item_id: UUID) -> OrderItem:
    for item in items:
        if str(item.id) == str(item_id):
            return item
    raise OrderItemNotFound(item_id=str(item_id))

