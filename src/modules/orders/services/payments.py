"""Payment and refund use cases.

Payments never advance the order status.  A full refund of a SHIPPED or
DELIVERED order moves it to REFUNDED; a cancelled order is refunded
through ``cancel_order(refund=True)`` instead.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Optional
from uuid import UUID

import structlog

from modules.core.exceptions import DomainError
from modules.orders.concurrency import OperationContext
from modules.orders.constants import (
    PAYABLE_STATES,
    RETURNABLE_STATES,
    TERMINAL_STATES,
    OrderStatus,
    PaymentKind,
    PaymentRecordStatus,
    PaymentStatus,
)
from modules.orders.events import OrderRefunded, PaymentDeclined, PaymentReceived
from modules.orders.exceptions import (
    InvalidOrderRequest,
    InvalidPaymentAmount,
    InvalidRefundAmount,
    OrderItemNotFound,
    PaymentFailed,
    PreconditionViolation,
)
from modules.orders.models import Order, OrderPayment
from modules.orders.money import format_money, quantize, zero
from modules.orders.pricing import unit_refund_value
from modules.orders.services.base import OrderServiceBase
from modules.orders.state_machine import transition

if TYPE_CHECKING:
    from modules.orders.dtos import PartialRefundDTO, PaymentDTO, RefundDTO

logger = structlog.get_logger(__name__)


class PaymentOps(OrderServiceBase):
    def process_payment(
        self,
        order_id: UUID,
        dto: PaymentDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Record a payment against the outstanding balance.

        Replaying a ``client_nonce`` with the same amount and method returns
        the order unchanged.  A declined payment is recorded (and flags
        ``payment_status`` FAILED when nothing has been paid yet) without
        moving money.

        Raises:
            PreconditionViolation: the order is cancelled or refunded.
            InvalidOrderRequest: the ``client_nonce`` belongs to a different payment.
            InvalidPaymentAmount: zero, sub-minor-unit or above the balance.
            PaymentFailed: the payment provider errored; nothing is recorded.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            log = logger.bind(order_id=str(order.id), method=dto.method)
            if order.status not in PAYABLE_STATES:
                raise PreconditionViolation(
                    f"Payments are not accepted while the order is {order.status}.",
                    order_id=str(order.id),
                    status=order.status,
                )
            nonce = dto.client_nonce or ""
            existing = self._order_repo.find_payment(order.id, PaymentKind.PAYMENT, nonce)
            if existing is not None:
                if existing.amount != dto.amount or existing.method != dto.method:
                    raise InvalidOrderRequest(
                        "client_nonce was already used for a different payment.",
                        client_nonce=nonce,
                    )
                log.info("order.payment_replayed", client_nonce=nonce)
                return

            amount = quantize(dto.amount, order.currency)
            if amount != dto.amount or amount <= 0 or amount > order.balance_due:
                raise InvalidPaymentAmount(
                    amount=dto.amount, balance_due=order.balance_due
                )

            ctx.check()
            try:
                result = self._payments.process(order.id, amount, dto.method, nonce)
            except DomainError:
                raise
            except Exception as exc:
                log.exception("order.payment_gateway_error")
                raise PaymentFailed() from exc

            self._order_repo.add_payment(
                OrderPayment(
                    order=order,
                    kind=PaymentKind.PAYMENT,
                    status=result.status,
                    amount=amount,
                    method=dto.method,
                    transaction_id=result.transaction_id,
                    client_nonce=nonce,
                    reason=result.message,
                    actor_id=ctx.actor_id,
                )
            )

            if not result.approved:
                if order.paid_amount <= 0:
                    order.payment_status = PaymentStatus.FAILED
                order.add_domain_event(
                    PaymentDeclined(
                        aggregate_id=order.id,
                        order_number=order.order_number,
                        actor_id=ctx.actor_id,
                        amount=format_money(amount, order.currency),
                        method=dto.method,
                    )
                )
                log.warning("order.payment_declined", amount=format_money(amount, order.currency))
                return

            order.paid_amount += amount
            order.payment_method = dto.method
            order.payment_status = self._payment_status(order)
            order.add_domain_event(
                PaymentReceived(
                    aggregate_id=order.id,
                    order_number=order.order_number,
                    actor_id=ctx.actor_id,
                    amount=format_money(amount, order.currency),
                    method=dto.method,
                    payment_status=order.payment_status,
                )
            )
            log.info(
                "order.payment_received",
                amount=format_money(amount, order.currency),
                payment_status=order.payment_status,
            )

        return self._mutate("process_payment", order_id, body, context)

    def refund_order(
        self,
        order_id: UUID,
        dto: RefundDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Refund ``dto.amount``, or everything paid when no amount is given.

        Raises:
            PreconditionViolation: the order is cancelled or already refunded.
            InvalidRefundAmount: nothing paid, or more than was paid.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_refundable(order)
            amount = dto.amount if dto.amount is not None else order.paid_amount
            self._refund_money(
                order, amount, ctx, reason=dto.reason, client_nonce=dto.client_nonce
            )

        return self._mutate("refund_order", order_id, body, context)

    def partial_refund(
        self,
        order_id: UUID,
        dto: PartialRefundDTO,
        context: Optional[OperationContext] = None,
    ) -> Order:
        """Refund the value of specific item quantities (no stock movement).

        Each line refunds its explicit ``amount`` or, by default, the
        per-unit value of the item's line total.
        """

        def body(order: Order, ctx: OperationContext) -> None:
            self._ensure_refundable(order)
            by_id = {item.id: item for item in self._items(order)}
            total = zero(order.currency)
            for line in dto.items:
                item = by_id.get(line.item_id)
                if item is None:
                    raise OrderItemNotFound(item_id=str(line.item_id))
                if line.quantity > item.quantity:
                    raise InvalidRefundAmount(
                        "Cannot refund more units than were ordered.",
                        item_id=str(item.id),
                        quantity=line.quantity,
                    )
                if line.amount is not None:
                    total += quantize(line.amount, order.currency)
                else:
                    total += unit_refund_value(
                        item.line_total, item.quantity, line.quantity, order.currency
                    )
            self._refund_money(
                order, total, ctx, reason=dto.reason, client_nonce=dto.client_nonce
            )

        return self._mutate("partial_refund", order_id, body, context)

    # ------------------------------------------------------------------
    # Shared refund path
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_refundable(order: Order) -> None:
        if order.status in TERMINAL_STATES:
            raise PreconditionViolation(
                f"Refunds are not accepted while the order is {order.status}.",
                order_id=str(order.id),
                status=order.status,
            )

    def _refund_everything(self, order: Order, ctx: OperationContext, notes: str = "") -> None:
        """Move to REFUNDED, refunding whatever is still paid."""
        transition(order, OrderStatus.REFUNDED, actor_id=ctx.actor_id)
        if order.paid_amount > 0:
            self._refund_money(order, order.paid_amount, ctx, reason=notes)
        if order.status != OrderStatus.REFUNDED:
            self._transition(order, OrderStatus.REFUNDED, ctx, notes)

    def _refund_money(
        self,
        order: Order,
        amount: Decimal,
        ctx: OperationContext,
        reason: str = "",
        client_nonce: Optional[str] = None,
    ) -> Decimal:
        """Return *amount* to the customer and update the payment fields.

        Returns the amount refunded (zero for a replayed nonce).
        """
        log = logger.bind(order_id=str(order.id))
        nonce = client_nonce or ""
        if self._order_repo.find_payment(order.id, PaymentKind.REFUND, nonce):
            log.info("order.refund_replayed", client_nonce=nonce)
            return zero(order.currency)

        refund = quantize(amount, order.currency)
        if refund <= 0 or refund > order.paid_amount:
            raise InvalidRefundAmount(amount=amount, paid_amount=order.paid_amount)

        ctx.check()
        try:
            result = self._payments.refund(order.id, refund, nonce)
        except DomainError:
            raise
        except Exception as exc:
            log.exception("order.payment_gateway_error")
            raise PaymentFailed() from exc
        if not result.approved:
            raise PaymentFailed("The refund was declined.", reason=result.message)

        self._order_repo.add_payment(
            OrderPayment(
                order=order,
                kind=PaymentKind.REFUND,
                status=PaymentRecordStatus.APPROVED,
                amount=refund,
                method=order.payment_method,
                transaction_id=result.transaction_id,
                client_nonce=nonce,
                reason=reason,
                actor_id=ctx.actor_id,
            )
        )
        order.paid_amount -= refund
        order.refunded_amount += refund
        order.payment_status = self._payment_status(order)

        if order.paid_amount <= 0 and order.status in RETURNABLE_STATES:
            self._transition(order, OrderStatus.REFUNDED, ctx, reason or "Fully refunded")

        order.add_domain_event(
            OrderRefunded(
                aggregate_id=order.id,
                order_number=order.order_number,
                actor_id=ctx.actor_id,
                amount=format_money(refund, order.currency),
                payment_status=order.payment_status,
            )
        )
        log.info(
            "order.refunded",
            amount=format_money(refund, order.currency),
            payment_status=order.payment_status,
        )
        return refund
