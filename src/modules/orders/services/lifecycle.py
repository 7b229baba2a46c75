"""Order lifecycle use cases: create, edit, status changes, cancellation.

Business rules enforced:
- RN-CLI-003: Customer must be active.
- RN-PRO-002: Product must be active.
- RN-EST-004: Stock is reserved for every line or none (shortfalls listed).
- RN-EST-005: Cancellation releases whatever the order still holds.
- RN-PED-001: Status transitions validated against the state machine.
- RN-PED-002/003: History recorded on every status change.
- RN-PED-004: ``order_number`` allocated inside the insert transaction.
- RN-PED-007: Address snapshots locked on confirmation.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Optional
from uuid import UUID

import structlog
import uuid6

from modules.orders.concurrency import OperationContext
from modules.orders.constants import (
    METADATA_EDITABLE_STATES,
    OrderAddressType,
    OrderStatus,
    PaymentStatus,
)
from modules.orders.dtos import CreateOrderDTO, CreateOrderItemDTO
from modules.orders.events import OrderCancelled, OrderCreated, OrderUpdated
from modules.orders.exceptions import (
    AddressInvalid,
    AlreadyCancelled,
    CustomerNotFound,
    InactiveCustomer,
    InvalidOrderRequest,
    OrderNotEditable,
    OrderNotFound,
    PreconditionViolation,
)
from modules.orders.models import Order
from modules.orders.money import format_money, normalize_currency
from modules.orders.services.base import OrderServiceBase
from modules.orders.state_machine import transition

if TYPE_CHECKING:
    from modules.orders.dtos import CloneOrderDTO, UpdateOrderDTO

logger = structlog.get_logger(__name__)

# Fields an UpdateOrderDTO may copy straight onto the order.
PLAIN_FIELDS = (
    "priority",
    "order_type",
    "required_date",
    "notes",
    "customer_notes",
    "internal_notes",
)

# Changing any of these means the totals have to be recomputed.
REPRICING_FIELDS = frozenset(
    {"shipping_method", "discount_code", "discount_amount", "shipping_address_id"}
)


class LifecycleOps(OrderServiceBase):
    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_order(
        self, dto: CreateOrderDTO, context: Optional[OperationContext] = None
    ) -> Order:
        """Create a DRAFT order with atomic stock reservation.

        Steps:
        1. Validate customer exists and is active, and that both addresses
           belong to it.
        2. Validate products, resolve a warehouse per line and snapshot
           prices.
        3. Reserve stock for every line (all or nothing).
        4. Price the order (tax and shipping quotes).
        5. Check the customer's credit limit.
        6. Allocate the order number and persist order, items, address
           snapshots and the initial history row in one transaction.

        Raises:
            CustomerNotFound: customer does not exist.
            InactiveCustomer: customer is suspended or inactive (RN-CLI-003).
            AddressInvalid: an address is missing or not the customer's.
            ProductNotFound / InactiveProduct: a line's product is unusable.
            InsufficientInventory: not enough stock; lists every shortfall.
            CreditLimitExceeded: the order would exceed the credit limit.
            InvalidCurrency / PricingError: totals cannot be computed.
        """
        context = context or OperationContext.with_timeout()
        order_id = uuid6.uuid7()

        def work() -> Order:
            return self._create(order_id, dto, context)

        return self._execute("create_order", order_id, work, context)

    def _create(self, order_id: UUID, dto: CreateOrderDTO, context: OperationContext) -> Order:
        log = logger.bind(order_id=str(order_id), customer_id=str(dto.customer_id))
        log.info("order.creation_started", item_count=len(dto.items))

        customer = self._customer_repo.get_by_id(str(dto.customer_id))
        if customer is None:
            raise CustomerNotFound(customer_id=str(dto.customer_id))
        if not customer.is_active:
            raise InactiveCustomer(customer_id=str(customer.id), status=customer.status)

        currency = normalize_currency(dto.currency)
        shipping_address = self._customer_address(
            customer, dto.shipping_address_id, OrderAddressType.SHIPPING
        )
        billing_address = self._customer_address(
            customer,
            dto.billing_address_id or dto.shipping_address_id,
            OrderAddressType.BILLING,
        )

        order = Order(
            id=order_id,
            customer=customer,
            status=OrderStatus.DRAFT,
            payment_status=PaymentStatus.UNPAID,
            order_type=dto.order_type,
            priority=dto.priority,
            shipping_method=dto.shipping_method,
            currency=currency,
            shipping_address=shipping_address,
            billing_address=billing_address,
            discount_code=(dto.discount_code or "").strip().upper(),
            required_date=dto.required_date,
            notes=dto.notes,
            customer_notes=dto.customer_notes,
            internal_notes=dto.internal_notes,
            created_by=context.actor_id,
            updated_by=context.actor_id,
        )

        products = self._products_for(dto.items)
        items = [
            self._build_item(order, products[line.product_id], line) for line in dto.items
        ]
        self._reserve(order, [(item, item.quantity) for item in items], context)
        self._reprice(order, items, context, destination_country=shipping_address.country)
        self._check_credit(order)

        order.order_number = self._order_repo.next_order_number(self._now().year)
        self._order_repo.save(order)
        self._order_repo.save_items(items)
        self._order_repo.replace_addresses(
            order,
            [
                self._snapshot_address(customer, shipping_address, OrderAddressType.SHIPPING),
                self._snapshot_address(customer, billing_address, OrderAddressType.BILLING),
            ],
        )
        self._order_repo.add_history(
            order.id,
            new_status=OrderStatus.DRAFT,
            old_status=None,
            actor_id=context.actor_id,
            notes="Order created",
        )
        order.add_domain_event(
            OrderCreated(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=context.actor_id,
                customer_id=str(customer.id),
                total_amount=format_money(order.total_amount, currency),
                currency=currency,
            )
        )
        log.info(
            "order.created",
            order_number=order.order_number,
            total_amount=format_money(order.total_amount, currency),
        )
        return order

    def clone_order(
        self,
        order_id: UUID,
        dto: CloneOrderDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Start a new DRAFT from an existing order's lines.

        The copy goes through ``create_order``: stock is reserved afresh,
        tax and shipping are re-quoted and credit is re-checked.  Item
        discounts and the coupon are copied only with ``copy_discounts``.

        Raises:
            OrderNotFound: the source order does not exist.
            AddressInvalid: no usable shipping address for the copy.
            Any error ``create_order`` raises for the copied request.
        """
        source = self._order_repo.get_by_id(str(order_id))
        if source is None:
            raise OrderNotFound(order_id=str(order_id))

        if dto.shipping_address_id is not None:
            shipping_address_id = dto.shipping_address_id
            billing_address_id = dto.billing_address_id
        else:
            shipping_address_id = source.shipping_address_id
            billing_address_id = dto.billing_address_id or source.billing_address_id
        if shipping_address_id is None:
            raise AddressInvalid(
                "The source order has no shipping address; pass shipping_address_id.",
                order_id=str(source.id),
            )

        request = CreateOrderDTO(
            customer_id=dto.new_customer_id or source.customer_id,
            items=[
                CreateOrderItemDTO(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount_amount=item.discount_amount if dto.copy_discounts else Decimal("0"),
                    warehouse_id=item.warehouse_id,
                )
                for item in self._items(source)
            ],
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            currency=source.currency,
            order_type=source.order_type,
            priority=source.priority,
            shipping_method=source.shipping_method,
            discount_code=source.discount_code if dto.copy_discounts else None,
            notes=dto.notes if dto.notes is not None else (source.notes if dto.copy_notes else ""),
            customer_notes=source.customer_notes if dto.copy_notes else "",
            internal_notes=source.internal_notes if dto.copy_notes else "",
        )
        clone = self.create_order(request, context)
        logger.info(
            "order.cloned",
            order_id=str(clone.id),
            source_order_id=str(source.id),
            order_number=clone.order_number,
        )
        return clone

    # ------------------------------------------------------------------
    # Edit
    # ------------------------------------------------------------------

    def update_order(
        self,
        order_id: UUID,
        dto: UpdateOrderDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Edit order metadata in DRAFT, PENDING or ON_HOLD.

        Addresses can change only while the order is a DRAFT.  Shipping
        method, discount or address changes recompute the totals and
        re-check credit.

        Raises:
            OrderNotEditable: the order is past the editable states.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_editable(order, METADATA_EDITABLE_STATES)
            changes = dto.changes()
            if not changes:
                return

            address_fields = {"shipping_address_id", "billing_address_id"} & changes.keys()
            if address_fields and order.status != OrderStatus.DRAFT:
                raise OrderNotEditable(
                    "Addresses can only change while the order is a draft.",
                    order_id=str(order.id),
                    status=order.status,
                )
            if address_fields:
                self._apply_address_changes(order, changes)

            for name in PLAIN_FIELDS:
                if name in changes:
                    setattr(order, name, changes[name])
            if "shipping_method" in changes:
                order.shipping_method = changes["shipping_method"]
            if "discount_code" in changes:
                order.discount_code = (changes["discount_code"] or "").strip().upper()
                if not order.discount_code:
                    order.discount_amount = Decimal("0")
            if "discount_amount" in changes:
                order.discount_code = ""
                order.discount_amount = changes["discount_amount"]

            if REPRICING_FIELDS & changes.keys():
                items = self._items(order)
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
                    changed_fields=tuple(sorted(changes)),
                )
            )
            logger.info(
                "order.updated", order_id=str(order.id), changed_fields=sorted(changes)
            )

        return self._mutate("update_order", order_id, body, context)

    def _apply_address_changes(self, order: Order, changes: dict) -> None:
        customer = order.customer
        snapshots = []
        if "shipping_address_id" in changes:
            address = self._customer_address(
                customer, changes["shipping_address_id"], OrderAddressType.SHIPPING
            )
            order.shipping_address = address
            snapshots.append(
                self._snapshot_address(customer, address, OrderAddressType.SHIPPING)
            )
        if "billing_address_id" in changes:
            address = self._customer_address(
                customer, changes["billing_address_id"], OrderAddressType.BILLING
            )
            order.billing_address = address
            snapshots.append(
                self._snapshot_address(customer, address, OrderAddressType.BILLING)
            )
        self._order_repo.replace_addresses(order, snapshots)

    def recalculate_order(
        self, order_id: UUID, context: Optional[OperationContext] = None
    ) -> Order:
        """Re-run pricing against the current collaborators and settings."""

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_editable(order, METADATA_EDITABLE_STATES)
            before = order.total_amount
            items = self._items(order)
            self._reprice(order, items, ctx)
            self._ensure_total_covers_paid(order)
            self._order_repo.save_items(items)
            order.payment_status = self._payment_status(order)
            if order.total_amount != before:
                order.add_domain_event(
                    OrderUpdated(
                        aggregate_id=order.id,
                        order_number=order.order_number,
                        actor_id=ctx.actor_id,
                        changed_fields=("total_amount",),
                    )
                )

        return self._mutate("recalculate_order", order_id, body, context)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def update_status(
        self,
        order_id: UUID,
        new_status: str,
        context: Optional[OperationContext] = None,
        notes: str = "",
        tracking_number: str = "",
        carrier: str = "",
        refund: bool = False,
    ) -> Order:
        """Transition an order and apply the side effects of the target status.

        - CONFIRMED locks the address snapshots.
        - ON_HOLD remembers the status to resume to.
        - CANCELLED releases reservations (and refunds when *refund*).
        - SHIPPED ships every remaining unit (via PROCESSING if needed).
        - DELIVERED stamps ``delivered_date``.
        - REFUNDED refunds whatever is still paid.

        PARTIALLY_SHIPPED needs item quantities, so it is only reachable
        through ``ship_order``.

        Raises:
            InvalidStatusTransition: the transition is not allowed.
            PreconditionViolation: a precondition of the target failed.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            target = self._parse_status(new_status)
            if target == OrderStatus.CANCELLED:
                self._cancel(order, ctx, reason=notes, refund=refund)
            elif target == OrderStatus.SHIPPED:
                self._ship(order, ctx, None, tracking_number, carrier, notes)
            elif target == OrderStatus.PARTIALLY_SHIPPED:
                transition(order, target, actor_id=ctx.actor_id)
                raise InvalidOrderRequest(
                    "Partial shipments need item quantities; use ship_order."
                )
            elif target == OrderStatus.DELIVERED:
                self._deliver(order, ctx, notes)
            elif target == OrderStatus.REFUNDED:
                self._refund_everything(order, ctx, notes)
            elif target == OrderStatus.CONFIRMED:
                self._confirm(order, ctx, notes)
            elif target == OrderStatus.ON_HOLD:
                self._hold(order, ctx, notes)
            else:
                self._transition(order, target, ctx, notes, items=self._items(order))
                if order.previous_status:
                    order.previous_status = ""

        return self._mutate("update_status", order_id, body, context)

    def confirm_order(
        self, order_id: UUID, context: Optional[OperationContext] = None, notes: str = ""
    ) -> Order:
        return self._mutate(
            "confirm_order",
            order_id,
            lambda order, ctx: self._confirm(order, ctx, notes),
            context,
        )

    def hold_order(
        self, order_id: UUID, context: Optional[OperationContext] = None, notes: str = ""
    ) -> Order:
        return self._mutate(
            "hold_order",
            order_id,
            lambda order, ctx: self._hold(order, ctx, notes),
            context,
        )

    def release_hold(
        self, order_id: UUID, context: Optional[OperationContext] = None, notes: str = ""
    ) -> Order:
        """Resume an ON_HOLD order to the status it was held from."""

        def body(order: Order, ctx: OperationContext) -> None:
            if order.status != OrderStatus.ON_HOLD:
                raise PreconditionViolation(
                    "The order is not on hold.", order_id=str(order.id), status=order.status
                )
            target = (
                order.previous_status
                if order.previous_status in (OrderStatus.PENDING, OrderStatus.CONFIRMED)
                else OrderStatus.PENDING
            )
            if target == OrderStatus.CONFIRMED:
                self._confirm(order, ctx, notes or "Hold released")
            else:
                self._transition(order, target, ctx, notes or "Hold released")
            order.previous_status = ""

        return self._mutate("release_hold", order_id, body, context)

    def _confirm(self, order: Order, ctx: OperationContext, notes: str = "") -> None:
        self._transition(order, OrderStatus.CONFIRMED, ctx, notes)
        order.previous_status = ""
        if order.confirmed_date is None:
            order.confirmed_date = self._now()
        self._order_repo.lock_addresses(order.id)

    def _hold(self, order: Order, ctx: OperationContext, notes: str = "") -> None:
        held_from = order.status
        self._transition(order, OrderStatus.ON_HOLD, ctx, notes)
        order.previous_status = held_from

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel_order(
        self,
        order_id: UUID,
        reason: str = "",
        refund: bool = False,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Cancel an order and release reserved stock (RN-EST-005/006).

        Raises:
            AlreadyCancelled: the order is already cancelled (nothing changes).
            InvalidStatusTransition: cancellation not allowed from current status.
        """
        return self._mutate(
            "cancel_order",
            order_id,
            lambda order, ctx: self._cancel(order, ctx, reason=reason, refund=refund),
            context,
        )

    def _cancel(
        self, order: Order, ctx: OperationContext, reason: str = "", refund: bool = False
    ) -> None:
        if order.status == OrderStatus.CANCELLED:
            raise AlreadyCancelled(order_id=str(order.id))

        self._transition(order, OrderStatus.CANCELLED, ctx, reason or "Order cancelled")
        self._inventory.release(order.id, actor_id=ctx.actor_id, notes=reason)
        order.cancelled_date = self._now()
        order.cancellation_reason = reason
        order.previous_status = ""

        refunded = Decimal("0")
        if refund and order.paid_amount > 0:
            refunded = self._refund_money(order, order.paid_amount, ctx, reason=reason)

        order.add_domain_event(
            OrderCancelled(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=ctx.actor_id,
                reason=reason,
                refunded_amount=format_money(refunded, order.currency),
            )
        )
        logger.info(
            "order.cancelled",
            order_id=str(order.id),
            refunded_amount=format_money(refunded, order.currency),
        )
