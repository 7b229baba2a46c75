"""Integration tests for OrderDjangoRepository.

Covers:
- get_by_id / get_by_number, including malformed ids.
- Order number sequence per year.
- Outstanding balance used by the credit check.
- Payment lookup by client nonce.
- Address locking and history rows.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from django.db import transaction

from modules.orders.constants import OrderStatus, PaymentKind, PaymentRecordStatus
from modules.orders.dtos import PaymentDTO
from modules.orders.models import OrderAddress, OrderPayment, OrderStatusHistory
from modules.orders.repositories.django_repository import OrderDjangoRepository

pytestmark = pytest.mark.integration


@pytest.fixture()
def repo():
    return OrderDjangoRepository()


class TestReads:
    def test_get_by_id(self, repo, draft_order):
        order = repo.get_by_id(draft_order.id)
        assert order.order_number == draft_order.order_number
        assert len(order.items.all()) == 1

    def test_get_by_id_malformed_returns_none(self, repo):
        assert repo.get_by_id("not-a-uuid") is None
        assert repo.get_by_id(str(uuid4())) is None

    def test_get_by_number_strips_whitespace(self, repo, draft_order):
        order = repo.get_by_number(f"  {draft_order.order_number} ")
        assert order.id == draft_order.id

    def test_get_for_update_inside_transaction(self, repo, draft_order):
        with transaction.atomic():
            order = repo.get_for_update(draft_order.id)
        assert order.id == draft_order.id

    def test_list_with_filters(self, repo, draft_order, customer):
        assert [o.id for o in repo.list({"customer_id": customer.id})] == [draft_order.id]
        assert repo.list({"status": OrderStatus.SHIPPED}) == []
        assert repo.count({"status": OrderStatus.DRAFT}) == 1


class TestOrderNumbers:
    def test_sequence_per_year(self, repo):
        with transaction.atomic():
            first = repo.next_order_number(2031)
            second = repo.next_order_number(2031)
            other_year = repo.next_order_number(2032)
        assert first == "2031-000001"
        assert second == "2031-000002"
        assert other_year == "2032-000001"


class TestOutstandingBalance:
    def test_open_orders_count_in_full(self, repo, draft_order, customer):
        assert repo.outstanding_balance(customer.id) == Decimal("118.00")

    def test_excluded_order(self, repo, draft_order, customer):
        assert repo.outstanding_balance(customer.id, exclude_order_id=draft_order.id) == 0

    def test_payments_reduce_balance(self, repo, service, pending_order, customer):
        service.process_payment(pending_order.id, PaymentDTO(amount=Decimal("18.00")))
        assert repo.outstanding_balance(customer.id) == Decimal("100.00")

    def test_cancelled_orders_ignored(self, repo, service, pending_order, customer):
        service.cancel_order(pending_order.id, reason="changed mind")
        assert repo.outstanding_balance(customer.id) == 0


class TestPayments:
    def test_find_payment_by_nonce(self, repo, draft_order):
        payment = repo.add_payment(
            OrderPayment(
                order_id=draft_order.id,
                kind=PaymentKind.PAYMENT,
                status=PaymentRecordStatus.APPROVED,
                amount=Decimal("10.00"),
                client_nonce="abc",
            )
        )
        assert repo.find_payment(draft_order.id, PaymentKind.PAYMENT, "abc").id == payment.id
        assert repo.find_payment(draft_order.id, PaymentKind.REFUND, "abc") is None

    def test_empty_nonce_never_matches(self, repo, draft_order):
        repo.add_payment(
            OrderPayment(
                order_id=draft_order.id,
                kind=PaymentKind.PAYMENT,
                status=PaymentRecordStatus.APPROVED,
                amount=Decimal("10.00"),
            )
        )
        assert repo.find_payment(draft_order.id, PaymentKind.PAYMENT, "") is None


class TestWrites:
    def test_lock_addresses_is_idempotent(self, repo, draft_order):
        assert repo.lock_addresses(draft_order.id) == 2
        assert repo.lock_addresses(draft_order.id) == 0
        assert not OrderAddress.objects.filter(
            order_id=draft_order.id, locked_at__isnull=True
        ).exists()

    def test_add_history(self, repo, draft_order):
        repo.add_history(
            draft_order.id,
            OrderStatus.PENDING,
            old_status=OrderStatus.DRAFT,
            actor_id="clerk-1",
            notes="submitted",
        )
        last = OrderStatusHistory.objects.filter(order_id=draft_order.id).last()
        assert last.old_status == OrderStatus.DRAFT
        assert last.new_status == OrderStatus.PENDING
        assert last.actor_id == "clerk-1"
        assert [h.id for h in repo.history(draft_order.id)][-1] == last.id
