"""Fulfilment use cases: ship (partially or fully), deliver, return."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog

from modules.inventory.dtos import StockLine
from modules.orders.concurrency import OperationContext
from modules.orders.constants import RETURNABLE_STATES, SHIPPABLE_STATES, OrderStatus
from modules.orders.events import ItemsReturned, OrderDelivered, OrderShipped
from modules.orders.exceptions import (
    InvalidQuantity,
    InvalidStatusTransition,
    OrderItemNotFound,
    PreconditionViolation,
)
from modules.orders.models import Order, OrderItem, OrderReturn
from modules.orders.money import zero
from modules.orders.pricing import unit_refund_value
from modules.orders.services.base import OrderServiceBase, stock_line

if TYPE_CHECKING:
    from modules.orders.dtos import ReturnItemsDTO, ShipItemDTO, ShipOrderDTO

logger = structlog.get_logger(__name__)


class FulfillmentOps(OrderServiceBase):
    def ship_order(
        self,
        order_id: UUID,
        dto: ShipOrderDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Ship the given quantities, or everything left when ``dto.items`` is empty.

        Each call records one ``OrderShipment``; item rows are never split,
        ``shipped_qty`` accumulates instead.  The order ends up SHIPPED when
        every unit has shipped, PARTIALLY_SHIPPED otherwise.  A CONFIRMED
        order passes through PROCESSING first.

        Raises:
            InvalidStatusTransition: the order is not in a shippable status.
            OrderItemNotFound: an item id does not belong to the order.
            InvalidQuantity: more units than are left to ship.
            OrderNotPaid: shipping the last units of an unpaid order.
        """
        return self._mutate(
            "ship_order",
            order_id,
            lambda order, ctx: self._ship(
                order, ctx, dto.items, dto.tracking_number, dto.carrier
            ),
            context,
        )

    def _ship(
        self,
        order: Order,
        ctx: OperationContext,
        lines: Optional[Sequence[ShipItemDTO]],
        tracking_number: str = "",
        carrier: str = "",
        notes: str = "",
    ) -> None:
        if order.status not in SHIPPABLE_STATES:
            raise InvalidStatusTransition(order.status, OrderStatus.SHIPPED)

        items = self._items(order)
        plan = self._shipment_plan(items, lines)
        planned = {item.id: quantity for item, quantity in plan}
        complete = all(
            item.shipped_qty + planned.get(item.id, 0) == item.quantity for item in items
        )
        target = OrderStatus.SHIPPED if complete else OrderStatus.PARTIALLY_SHIPPED

        if order.status == OrderStatus.CONFIRMED:
            self._transition(order, OrderStatus.PROCESSING, ctx, "Processing for shipment")

        self._inventory.deduct(
            order.id,
            [stock_line(item, quantity) for item, quantity in plan],
            actor_id=ctx.actor_id,
        )
        for item, quantity in plan:
            item.shipped_qty += quantity
        self._order_repo.save_items(item for item, _quantity in plan)
        self._order_repo.add_shipment(
            order.id,
            plan,
            tracking_number=tracking_number,
            carrier=carrier,
            actor_id=ctx.actor_id,
        )
        self._transition(order, target, ctx, notes, items=items)

        if tracking_number:
            order.tracking_number = tracking_number
        if carrier:
            order.carrier = carrier
        if order.shipped_date is None:
            order.shipped_date = self._now()

        order.add_domain_event(
            OrderShipped(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=ctx.actor_id,
                tracking_number=tracking_number,
                carrier=carrier,
                complete=complete,
            )
        )
        logger.info(
            "order.shipped",
            order_id=str(order.id),
            units=sum(planned.values()),
            complete=complete,
        )

    @staticmethod
    def _shipment_plan(
        items: List[OrderItem], lines: Optional[Sequence[ShipItemDTO]]
    ) -> List[Tuple[OrderItem, int]]:
        if not lines:
            plan = [(item, item.remaining_to_ship) for item in items if item.remaining_to_ship]
        else:
            by_id = {item.id: item for item in items}
            plan = []
            for line in lines:
                item = by_id.get(line.item_id)
                if item is None:
                    raise OrderItemNotFound(item_id=str(line.item_id))
                if line.quantity > item.remaining_to_ship:
                    raise InvalidQuantity(
                        "Cannot ship more units than remain.",
                        item_id=str(item.id),
                        quantity=line.quantity,
                        remaining=item.remaining_to_ship,
                    )
                plan.append((item, line.quantity))
        if not plan:
            raise PreconditionViolation("Every item has already shipped.")
        return plan

    def deliver_order(
        self,
        order_id: UUID,
        context: Optional[OperationContext] = None,
        notes: str = "",
    ) -> Order:
        """Mark a SHIPPED order DELIVERED and stamp ``delivered_date``."""
        return self._mutate(
            "deliver_order",
            order_id,
            lambda order, ctx: self._deliver(order, ctx, notes),
            context,
        )

    def _deliver(self, order: Order, ctx: OperationContext, notes: str = "") -> None:
        self._transition(order, OrderStatus.DELIVERED, ctx, notes, items=self._items(order))
        order.delivered_date = self._now()
        order.add_domain_event(
            OrderDelivered(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=ctx.actor_id,
            )
        )

    def return_items(
        self,
        order_id: UUID,
        dto: ReturnItemsDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Take back shipped units.

        NEW and RESTOCKABLE units go back on hand; DAMAGED and DEFECTIVE
        units are recorded on the item only.  With ``dto.refund`` the line
        value of the returned units is refunded (capped at what is paid).
        Each processed request is recorded; a request whose ``client_nonce``
        was already processed leaves the order unchanged.

        Raises:
            PreconditionViolation: the order has not shipped.
            OrderItemNotFound: an item id does not belong to the order.
            InvalidQuantity: more units than were shipped and not yet returned.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            nonce = dto.client_nonce or ""
            if self._order_repo.find_return(order.id, nonce):
                logger.info("order.return_replayed", order_id=str(order.id), client_nonce=nonce)
                return
            if order.status not in RETURNABLE_STATES:
                raise PreconditionViolation(
                    "Items can only be returned once the order has shipped.",
                    order_id=str(order.id),
                    status=order.status,
                )
            by_id = {item.id: item for item in self._items(order)}
            requested: Dict[UUID, int] = defaultdict(int)
            by_condition: Dict[str, List[StockLine]] = defaultdict(list)
            for line in dto.items:
                item = by_id.get(line.item_id)
                if item is None:
                    raise OrderItemNotFound(item_id=str(line.item_id))
                requested[item.id] += line.quantity
                if requested[item.id] > item.returnable_qty:
                    raise InvalidQuantity(
                        "Cannot return more units than were shipped.",
                        item_id=str(item.id),
                        quantity=requested[item.id],
                        returnable=item.returnable_qty,
                    )
                by_condition[line.condition].append(stock_line(item, line.quantity))

            for condition, stock_lines in sorted(by_condition.items()):
                self._inventory.return_stock(
                    order.id, stock_lines, condition, actor_id=ctx.actor_id
                )

            refund_value = zero(order.currency)
            for item_id, quantity in requested.items():
                item = by_id[item_id]
                item.returned_qty += quantity
                refund_value += unit_refund_value(
                    item.line_total, item.quantity, quantity, order.currency
                )
            self._order_repo.save_items(by_id[item_id] for item_id in requested)

            order.add_domain_event(
                ItemsReturned(
                    aggregate_id=order.id,
                    order_number=order.order_number,
                    actor_id=ctx.actor_id,
                    quantity=sum(requested.values()),
                    condition=",".join(sorted(by_condition)),
                )
            )
            logger.info(
                "order.items_returned",
                order_id=str(order.id),
                units=sum(requested.values()),
            )

            amount = min(refund_value, order.paid_amount)
            refunded = zero(order.currency)
            if dto.refund and amount > Decimal("0"):
                refunded = self._refund_money(
                    order,
                    amount,
                    ctx,
                    reason=dto.reason or "Items returned",
                    client_nonce=nonce,
                )
            self._order_repo.add_return(
                OrderReturn(
                    order=order,
                    units=sum(requested.values()),
                    conditions=",".join(sorted(by_condition)),
                    refunded_amount=refunded,
                    client_nonce=nonce,
                    reason=dto.reason,
                    actor_id=ctx.actor_id,
                )
            )

        return self._mutate("return_items", order_id, body, context)
