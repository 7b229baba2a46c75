"""Shared plumbing for the order service capabilities.

Every mutating operation runs through ``_execute``:

1. admission through the ``InFlightLimiter`` (backpressure);
2. the striped per-order lock (``OrderLockManager``);
3. ``transaction.atomic()`` with the order row locked
   (``SELECT ... FOR UPDATE``), retried as a whole on conflicts;
4. a deadline/cancellation check right before commit;
5. domain events published on the in-process bus after commit.

Domain errors propagate unchanged; anything else is logged with its
traceback and re-raised as ``InternalError`` carrying the correlation id.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Sequence
from uuid import UUID

import structlog
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from modules.core.exceptions import DomainError
from modules.customers.repositories.django_repository import CustomerDjangoRepository
from modules.inventory.dtos import StockLine
from modules.inventory.exceptions import InventoryConflict
from modules.inventory.services import InventoryCoordinator
from modules.orders.collaborators import (
    CouponDiscountPolicy,
    FlatRateShippingCalculator,
    ManualPaymentService,
    RateTaxCalculator,
)
from modules.orders.concurrency import (
    OperationContext,
    RetryPolicy,
    default_limiter,
    default_lock_manager,
)
from modules.orders.constants import (
    METADATA_EDITABLE_STATES,
    OrderAddressType,
    OrderStatus,
    PaymentStatus,
)
from modules.orders.events import OrderStatusChanged
from modules.orders.exceptions import (
    AddressInvalid,
    ConcurrentModification,
    CreditLimitExceeded,
    CustomerNotFound,
    InactiveProduct,
    InternalError,
    InvalidOrderRequest,
    OrderNotEditable,
    OrderNotFound,
    PreconditionViolation,
    ProductNotFound,
    ShippingQuoteFailed,
    TaxCalculationFailed,
)
from modules.orders.models import Order, OrderAddress, OrderItem
from modules.orders.pricing import (
    PricingLine,
    TotalsBreakdown,
    build_snapshot,
    compute_totals,
    price_lines,
)
from modules.orders.money import zero
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.state_machine import transition
from modules.products.repositories.django_repository import ProductDjangoRepository
from shared.infrastructure.bus import event_bus as default_event_bus

if TYPE_CHECKING:
    from modules.customers.models import Customer, CustomerAddress
    from modules.customers.repositories.interfaces import ICustomerRepository
    from modules.orders.collaborators import (
        DiscountPolicy,
        PaymentService,
        ShippingCalculator,
        TaxCalculator,
    )
    from modules.orders.concurrency import InFlightLimiter, OrderLockManager
    from modules.orders.dtos import CreateOrderItemDTO
    from modules.orders.repositories.interfaces import IOrderRepository
    from modules.products.models import Product
    from modules.products.repositories.interfaces import IProductRepository
    from shared.domain.bus import IEventBus
    from shared.domain.events import DomainEvent

logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS = (InventoryConflict, ConcurrentModification)

OrderBody = Callable[[Order, OperationContext], None]


def stock_line(item: OrderItem, quantity: int) -> StockLine:
    return StockLine(
        product_id=item.product_id,
        warehouse_id=item.warehouse_id,
        quantity=quantity,
        order_item_id=item.id,
    )


class OrderServiceBase:
    """Dependencies and envelope shared by every capability.

    Receives repositories and collaborators via constructor injection
    (DIP); each defaults to the Django/settings-backed implementation.
    """

    def __init__(
        self,
        order_repository: Optional[IOrderRepository] = None,
        customer_repository: Optional[ICustomerRepository] = None,
        product_repository: Optional[IProductRepository] = None,
        inventory: Optional[InventoryCoordinator] = None,
        tax_calculator: Optional[TaxCalculator] = None,
        shipping_calculator: Optional[ShippingCalculator] = None,
        discount_policy: Optional[DiscountPolicy] = None,
        payment_service: Optional[PaymentService] = None,
        lock_manager: Optional[OrderLockManager] = None,
        limiter: Optional[InFlightLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        event_bus: Optional[IEventBus] = None,
    ) -> None:
        self._order_repo = order_repository or OrderDjangoRepository()
        self._customer_repo = customer_repository or CustomerDjangoRepository()
        self._product_repo = product_repository or ProductDjangoRepository()
        self._inventory = inventory or InventoryCoordinator()
        self._tax = tax_calculator or RateTaxCalculator()
        self._shipping = shipping_calculator or FlatRateShippingCalculator()
        self._discounts = discount_policy or CouponDiscountPolicy()
        self._payments = payment_service or ManualPaymentService()
        self._locks = lock_manager or default_lock_manager()
        self._limiter = limiter or default_limiter()
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._bus = event_bus or default_event_bus

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def _mutate(
        self,
        operation: str,
        order_id: UUID | str,
        body: OrderBody,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Run *body* against the locked order and persist it."""
        context = context or OperationContext.with_timeout()

        def work() -> Order:
            order = self._order_repo.get_for_update(str(order_id))
            if order is None:
                raise OrderNotFound(order_id=str(order_id))
            body(order, context)
            if context.actor_id:
                order.updated_by = context.actor_id
            self._order_repo.save(order)
            return order

        return self._execute(operation, order_id, work, context)

    def _execute(
        self,
        operation: str,
        lock_key: UUID | str,
        work: Callable[[], Order],
        context: OperationContext,
    ) -> Order:
        log = logger.bind(
            operation=operation,
            order_id=str(lock_key),
            actor_id=context.actor_id,
        )

        def attempt() -> Order:
            with transaction.atomic():
                try:
                    order = work()
                except (OperationalError, IntegrityError) as exc:
                    log.warning("order.write_conflict", error=type(exc).__name__)
                    raise ConcurrentModification() from exc
                context.check()
                self._publish_on_commit(order)
            return order

        with structlog.contextvars.bound_contextvars(
            correlation_id=context.correlation_id
        ):
            try:
                context.check()
                with self._limiter.admit(
                    timeout=context.bounded_timeout(self._limiter.timeout)
                ):
                    context.check()
                    with self._locks.hold(
                        lock_key, timeout=context.bounded_timeout(self._locks.timeout)
                    ):
                        context.check()
                        order = self._retry.run(attempt, RETRYABLE_ERRORS, context)
                        return self._order_repo.get_by_id(str(order.id)) or order
            except DomainError as exc:
                log.info(
                    "order.operation_rejected",
                    kind=exc.kind.value,
                    error=type(exc).__name__,
                )
                raise
            except Exception as exc:
                log.exception("order.internal_error")
                raise InternalError(context.correlation_id) from exc

    def _publish_on_commit(self, order: Order) -> None:
        events = order.domain_events
        order.clear_domain_events()
        if events:
            transaction.on_commit(lambda: self._publish(events))

    def _publish(self, events: Sequence[DomainEvent]) -> None:
        for event in events:
            try:
                self._bus.publish(event)
            except Exception:
                logger.exception(
                    "order.notification_failed",
                    order_id=str(event.aggregate_id),
                    event_name=event.event_name,
                )

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    @staticmethod
    def _items(order: Order) -> List[OrderItem]:
        return list(order.items.all())

    @staticmethod
    def _parse_status(value: str) -> OrderStatus:
        try:
            return OrderStatus(str(value).upper())
        except ValueError:
            raise InvalidOrderRequest(f"Unknown order status {value!r}.", status=value)

    def _transition(
        self,
        order: Order,
        target: str,
        context: OperationContext,
        notes: str = "",
        items: Optional[Iterable[OrderItem]] = None,
    ) -> None:
        """Apply an OSM transition, record it and queue the event."""
        old_status = order.status
        order.status = transition(order, target, items=items, actor_id=context.actor_id)
        self._order_repo.add_history(
            order.id,
            new_status=order.status,
            old_status=old_status,
            actor_id=context.actor_id,
            notes=notes,
        )
        order.add_domain_event(
            OrderStatusChanged(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=context.actor_id,
                old_status=old_status,
                new_status=order.status,
            )
        )
        logger.info(
            "order.status_changed",
            order_id=str(order.id),
            old_status=old_status,
            new_status=order.status,
            actor_id=context.actor_id,
        )

    def _ensure_editable(
        self, order: Order, allowed: Iterable[str] = METADATA_EDITABLE_STATES
    ) -> None:
        if order.status not in set(allowed):
            raise OrderNotEditable(order_id=str(order.id), status=order.status)

    def _customer_address(
        self, customer: Customer, address_id: UUID, purpose: str
    ) -> CustomerAddress:
        address = self._customer_repo.get_address(str(customer.id), str(address_id))
        usable = address is not None and (
            address.can_ship_to()
            if purpose == OrderAddressType.SHIPPING
            else address.can_bill_to()
        )
        if not usable:
            raise AddressInvalid(address_id=str(address_id), purpose=str(purpose))
        return address

    @staticmethod
    def _snapshot_address(
        customer: Customer, address: CustomerAddress, purpose: str
    ) -> OrderAddress:
        return OrderAddress(
            address_type=purpose,
            source_address_id=address.id,
            recipient_name=address.recipient_name or customer.name,
            line1=address.line1,
            line2=address.line2,
            city=address.city,
            state=address.state,
            postal_code=address.postal_code,
            country=address.country,
        )

    @staticmethod
    def _destination_country(order: Order) -> str:
        shipping = order.addresses.filter(address_type=OrderAddressType.SHIPPING).first()
        return shipping.country if shipping else ""

    def _products_for(self, lines: Sequence[CreateOrderItemDTO]) -> dict:
        products = self._product_repo.get_many(line.product_id for line in lines)
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise ProductNotFound(product_id=str(line.product_id))
            if not product.is_active:
                raise InactiveProduct(product_id=str(product.id), sku=product.sku)
        return products

    def _build_item(
        self, order: Order, product: Product, line: CreateOrderItemDTO
    ) -> OrderItem:
        """New item priced from the catalog unless the line overrides the price.

        The warehouse is the line's, else the product's default, else the
        one with the most stock available.
        """
        warehouse_id = self._inventory.resolve_warehouse(product, line.warehouse_id)
        return OrderItem(
            order=order,
            product=product,
            warehouse_id=warehouse_id,
            product_sku=product.sku,
            product_name=product.name,
            currency=order.currency if line.unit_price is not None else product.currency,
            quantity=line.quantity,
            unit_price=line.unit_price if line.unit_price is not None else product.price,
            discount_amount=line.discount_amount,
            tax_rate=product.tax_rate,
            unit_cost=product.unit_cost,
        )

    def _reserve(
        self, order: Order, items: Sequence[tuple[OrderItem, int]], context: OperationContext
    ) -> None:
        """Reserve ``quantity`` units for each item; records the reservation cost."""
        entries = self._inventory.reserve(
            order.id,
            [stock_line(item, quantity) for item, quantity in items],
            actor_id=context.actor_id,
        )
        costs = {entry.order_item_id: entry.unit_cost for entry in entries}
        for item, _quantity in items:
            if costs.get(item.id):
                item.unit_cost = costs[item.id]

    def _reprice(
        self,
        order: Order,
        items: Sequence[OrderItem],
        context: OperationContext,
        destination_country: Optional[str] = None,
    ) -> TotalsBreakdown:
        """Recompute every monetary field of *order* and its *items*."""
        totals = self._price(order, items, context, destination_country)
        for item in items:
            item.line_total = totals.line_for(item.id).net
        for name, value in totals.as_order_fields().items():
            setattr(order, name, value)
        order.currency = totals.currency
        return totals

    def _price(
        self,
        order: Order,
        items: Sequence[OrderItem],
        context: OperationContext,
        destination_country: Optional[str] = None,
    ) -> TotalsBreakdown:
        """Totals for *order* and *items* with fresh quotes. Changes nothing."""
        currency = order.currency
        lines = [
            PricingLine(
                key=item.id,
                unit_price=item.unit_price,
                quantity=item.quantity,
                currency=item.currency,
                discount=item.discount_amount,
                tax_rate=item.tax_rate,
            )
            for item in items
        ]
        discount = order.discount_amount
        if order.discount_code:
            subtotal = sum((line.net for line in price_lines(lines, currency)), zero(currency))
            discount = self._discounts.discount_for(order.discount_code, subtotal, currency)

        if destination_country is None:
            destination_country = self._destination_country(order)
        snapshot = build_snapshot(
            lines,
            currency,
            discount_amount=discount,
            shipping_method=order.shipping_method,
            destination_country=destination_country,
        )

        context.check()
        tax = self._quote(self._tax.calculate, snapshot, TaxCalculationFailed)
        context.check()
        shipping = self._quote(self._shipping.calculate, snapshot, ShippingQuoteFailed)

        return compute_totals(snapshot, tax, shipping)

    @staticmethod
    def _quote(calculate, snapshot, failure: type[DomainError]) -> Decimal:
        try:
            return calculate(snapshot)
        except DomainError:
            raise
        except Exception as exc:
            logger.exception("order.collaborator_failed", collaborator=failure.__name__)
            raise failure() from exc

    def _check_credit(self, order: Order) -> None:
        """Credit customers may not owe more than their limit.

        ``credit_used`` is the unpaid balance of the customer's other open
        orders; the customer row stays locked so concurrent orders of the
        same customer are checked one at a time.
        """
        customer = self._customer_repo.get_for_update(str(order.customer_id))
        if customer is None:
            raise CustomerNotFound(customer_id=str(order.customer_id))
        if not customer.is_credit_customer:
            return
        used = self._order_repo.outstanding_balance(customer.id, exclude_order_id=order.id)
        exposure = order.total_amount - order.paid_amount
        if used + exposure > customer.credit_limit:
            logger.warning(
                "order.credit_limit_exceeded",
                order_id=str(order.id),
                customer_id=str(customer.id),
            )
            raise CreditLimitExceeded(
                credit_limit=customer.credit_limit,
                credit_used=used,
                order_total=order.total_amount,
            )

    @staticmethod
    def _ensure_total_covers_paid(order: Order) -> None:
        if order.total_amount < order.paid_amount:
            raise PreconditionViolation(
                "The new total is below what was already paid; refund the difference first.",
                total_amount=order.total_amount,
                paid_amount=order.paid_amount,
            )

    @staticmethod
    def _payment_status(order: Order) -> str:
        if order.refunded_amount > 0:
            if order.paid_amount <= 0:
                return PaymentStatus.REFUNDED
            return PaymentStatus.PARTIALLY_REFUNDED
        if order.paid_amount <= 0:
            return PaymentStatus.UNPAID
        if order.paid_amount >= order.total_amount:
            return PaymentStatus.PAID
        return PaymentStatus.PARTIALLY_PAID

    @staticmethod
    def _now():
        return timezone.now()

