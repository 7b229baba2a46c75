"""Payments, refunds and their idempotency."""

from __future__ import annotations

from decimal import Decimal

import pytest

from modules.orders.collaborators import ManualPaymentService, PaymentResult
from modules.orders.constants import (
    OrderStatus,
    PaymentKind,
    PaymentRecordStatus,
    PaymentStatus,
)
from modules.orders.dtos import (
    PartialRefundDTO,
    PartialRefundItemDTO,
    PaymentDTO,
    RefundDTO,
)
from modules.orders.exceptions import (
    InvalidOrderRequest,
    InvalidPaymentAmount,
    InvalidRefundAmount,
    PaymentFailed,
    PreconditionViolation,
)
from modules.orders.models import OrderPayment
from modules.orders.services import OrderService

pytestmark = pytest.mark.integration


class DecliningPayments(ManualPaymentService):
    def process(self, order_id, amount, method, client_nonce):
        return PaymentResult(transaction_id="tx-declined", status=PaymentRecordStatus.DECLINED)


class BrokenPayments(ManualPaymentService):
    def process(self, order_id, amount, method, client_nonce):
        raise ConnectionError("gateway unreachable")

    def refund(self, order_id, amount, client_nonce):
        raise ConnectionError("gateway unreachable")


class TestProcessPayment:
    def test_partial_payment(self, service, pending_order):
        order = service.process_payment(
            pending_order.id, PaymentDTO(amount=Decimal("50.00"), method="PIX")
        )
        assert order.paid_amount == Decimal("50.00")
        assert order.payment_status == PaymentStatus.PARTIALLY_PAID
        assert order.payment_method == "PIX"
        assert order.status == OrderStatus.PENDING

    def test_full_payment_does_not_move_status(self, service, pending_order):
        order = service.process_payment(
            pending_order.id, PaymentDTO(amount=Decimal("118.00"))
        )
        assert order.payment_status == PaymentStatus.PAID
        assert order.status == OrderStatus.PENDING

    def test_replayed_nonce_is_applied_once(self, service, pending_order):
        dto = PaymentDTO(amount=Decimal("50.00"), client_nonce="pay-1")
        service.process_payment(pending_order.id, dto)
        order = service.process_payment(pending_order.id, dto)

        assert order.paid_amount == Decimal("50.00")
        assert OrderPayment.objects.filter(order_id=order.id).count() == 1

    @pytest.mark.parametrize("amount", ["118.01", "10.005"])
    def test_invalid_amounts(self, service, pending_order, amount):
        with pytest.raises(InvalidPaymentAmount):
            service.process_payment(pending_order.id, PaymentDTO(amount=Decimal(amount)))

    def test_draft_order_takes_payment_and_stays_draft(self, service, draft_order):
        order = service.process_payment(draft_order.id, PaymentDTO(amount=Decimal("118.00")))

        assert order.status == OrderStatus.DRAFT
        assert order.paid_amount == Decimal("118.00")
        assert order.payment_status == PaymentStatus.PAID

    def test_cancelled_orders_do_not_take_payments(self, service, pending_order):
        service.cancel_order(pending_order.id)
        with pytest.raises(PreconditionViolation):
            service.process_payment(pending_order.id, PaymentDTO(amount=Decimal("10.00")))

    @pytest.mark.parametrize(
        "replay", [{"amount": Decimal("60.00")}, {"method": "PIX"}], ids=["amount", "method"]
    )
    def test_nonce_reused_for_a_different_payment(self, service, pending_order, replay):
        service.process_payment(
            pending_order.id, PaymentDTO(amount=Decimal("50.00"), client_nonce="pay-1")
        )
        changed = {"amount": Decimal("50.00"), "client_nonce": "pay-1", **replay}

        with pytest.raises(InvalidOrderRequest):
            service.process_payment(pending_order.id, PaymentDTO(**changed))
        assert OrderPayment.objects.filter(order_id=pending_order.id).count() == 1
        assert service.get_order(pending_order.id).paid_amount == Decimal("50.00")

    def test_declined_payment_is_recorded(self, bus, pending_order):
        service = OrderService(payment_service=DecliningPayments(), event_bus=bus)
        order = service.process_payment(pending_order.id, PaymentDTO(amount=Decimal("10.00")))

        assert order.paid_amount == Decimal("0")
        assert order.payment_status == PaymentStatus.FAILED
        (payment,) = order.payments.all()
        assert payment.status == PaymentRecordStatus.DECLINED

    def test_gateway_error(self, bus, pending_order):
        service = OrderService(payment_service=BrokenPayments(), event_bus=bus)
        with pytest.raises(PaymentFailed):
            service.process_payment(pending_order.id, PaymentDTO(amount=Decimal("10.00")))
        assert not OrderPayment.objects.filter(order_id=pending_order.id).exists()


class TestRefunds:
    def test_partial_refund_amount(self, service, paid_order):
        order = service.refund_order(paid_order.id, RefundDTO(amount=Decimal("18.00")))
        assert order.paid_amount == Decimal("100.00")
        assert order.refunded_amount == Decimal("18.00")
        assert order.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert order.status == OrderStatus.CONFIRMED

    def test_refund_above_paid(self, service, paid_order):
        with pytest.raises(InvalidRefundAmount):
            service.refund_order(paid_order.id, RefundDTO(amount=Decimal("118.01")))

    def test_refund_without_payment(self, service, pending_order):
        with pytest.raises(InvalidRefundAmount):
            service.refund_order(pending_order.id, RefundDTO())

    def test_full_refund_of_shipped_order(self, service, shipped_order):
        order = service.refund_order(shipped_order.id, RefundDTO(reason="lost in transit"))
        assert order.status == OrderStatus.REFUNDED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.refunded_amount == Decimal("118.00")

    def test_refund_status_on_delivered_order(self, service, shipped_order):
        service.deliver_order(shipped_order.id)
        order = service.update_status(shipped_order.id, OrderStatus.REFUNDED)
        assert order.status == OrderStatus.REFUNDED
        assert order.paid_amount == Decimal("0")

    def test_cancelled_orders_cannot_be_refunded_directly(self, service, paid_order):
        service.cancel_order(paid_order.id)
        with pytest.raises(PreconditionViolation):
            service.refund_order(paid_order.id, RefundDTO())

    def test_refund_nonce_replay(self, service, paid_order):
        dto = RefundDTO(amount=Decimal("10.00"), client_nonce="refund-1")
        service.refund_order(paid_order.id, dto)
        order = service.refund_order(paid_order.id, dto)
        assert order.refunded_amount == Decimal("10.00")
        assert order.payments.filter(kind=PaymentKind.REFUND).count() == 1

    def test_refund_gateway_error_changes_nothing(self, bus, paid_order):
        service = OrderService(payment_service=BrokenPayments(), event_bus=bus)
        with pytest.raises(PaymentFailed):
            service.refund_order(paid_order.id, RefundDTO(amount=Decimal("5.00")))
        assert service.get_order(paid_order.id).paid_amount == Decimal("118.00")

    def test_partial_refund_by_item(self, service, paid_order):
        item = paid_order.items.get()
        order = service.partial_refund(
            paid_order.id,
            PartialRefundDTO(items=[PartialRefundItemDTO(item_id=item.id, quantity=1)]),
        )
        assert order.refunded_amount == Decimal("50.00")

    def test_partial_refund_explicit_amount(self, service, paid_order):
        item = paid_order.items.get()
        order = service.partial_refund(
            paid_order.id,
            PartialRefundDTO(
                items=[
                    PartialRefundItemDTO(item_id=item.id, quantity=1, amount=Decimal("12.50"))
                ]
            ),
        )
        assert order.refunded_amount == Decimal("12.50")

    def test_partial_refund_too_many_units(self, service, paid_order):
        item = paid_order.items.get()
        with pytest.raises(InvalidRefundAmount):
            service.partial_refund(
                paid_order.id,
                PartialRefundDTO(items=[PartialRefundItemDTO(item_id=item.id, quantity=3)]),
            )
