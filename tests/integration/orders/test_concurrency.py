"""Concurrent reservations against a database with row locks.

Several threads create orders for the same product at once.  With
``SELECT ... FOR UPDATE`` on the inventory rows exactly as many orders
succeed as the stock allows and ``reserved`` never exceeds ``on_hand``.

Uses ``TransactionTestCase`` so each thread sees committed data.  SQLite
has no row locks; the test settings open ``IMMEDIATE`` transactions on a
file database instead, which serializes the same transactions.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal

import pytest
from django.db import connection, connections
from django.test import TransactionTestCase

from modules.customers.models import Customer, CustomerAddress, DocumentType
from modules.inventory.exceptions import InsufficientInventory
from modules.inventory.models import Inventory, Warehouse
from modules.orders.concurrency import InFlightLimiter, OrderLockManager, RetryPolicy
from modules.orders.dtos import CreateOrderDTO, CreateOrderItemDTO
from modules.orders.models import Order
from modules.orders.services import OrderService
from modules.products.models import Product
from shared.infrastructure.bus import InMemoryEventBus

logger = logging.getLogger(__name__)

VALID_CPF = "59860184275"
INITIAL_STOCK = 10
NUM_WORKERS = 6


def _serializes_writers() -> bool:
    if connection.features.has_select_for_update:
        return True
    options = connection.settings_dict.get("OPTIONS", {})
    return (
        connection.vendor == "sqlite"
        and options.get("transaction_mode") == "IMMEDIATE"
        and not connection.is_in_memory_db()
    )


@pytest.mark.integration
@pytest.mark.skipif(
    not _serializes_writers(),
    reason="needs row locks or SQLite IMMEDIATE transactions on a file database",
)
class TestConcurrentReservations(TransactionTestCase):
    def setUp(self):
        self.customer = Customer.objects.create(
            name="Concurrency Customer",
            document=VALID_CPF,
            document_type=DocumentType.CPF,
            email="concurrency@example.com",
        )
        self.address = CustomerAddress.objects.create(
            customer=self.customer,
            line1="1 Lock St",
            city="Boston",
            postal_code="02101",
            country="US",
        )
        warehouse = Warehouse.objects.create(code="MAIN", name="Main")
        self.product = Product.objects.create(
            sku="GAMER-PC",
            name="Gamer PC",
            price=Decimal("2999.99"),
            default_warehouse=warehouse,
        )
        self.stock = Inventory.objects.create(
            product=self.product, warehouse=warehouse, on_hand=INITIAL_STOCK
        )
        self.service = OrderService(
            lock_manager=OrderLockManager(timeout=5.0),
            limiter=InFlightLimiter(limit=NUM_WORKERS, timeout=5.0),
            retry_policy=RetryPolicy(attempts=5, base_delay=0.01),
            event_bus=InMemoryEventBus(),
        )

    def _create(self, quantity: int) -> str:
        try:
            self.service.create_order(
                CreateOrderDTO(
                    customer_id=self.customer.id,
                    shipping_address_id=self.address.id,
                    items=[CreateOrderItemDTO(product_id=self.product.id, quantity=quantity)],
                )
            )
            return "success"
        except InsufficientInventory as exc:
            logger.info("rejected: shortfall %s", exc.shortfalls[0].shortfall)
            return f"short:{exc.shortfalls[0].shortfall}"
        finally:
            connections.close_all()

    def _run(self, quantity: int, workers: int):
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._create, quantity) for _ in range(workers)]
            return [future.result() for future in as_completed(futures)]

    def test_two_orders_for_most_of_the_stock(self):
        results = self._run(quantity=8, workers=2)

        self.assertEqual(sorted(results), ["short:6", "success"])
        self.stock.refresh_from_db()
        self.assertEqual(self.stock.reserved, 8)
        self.assertEqual(Order.objects.count(), 1)

    def test_many_small_orders_exhaust_stock_exactly(self):
        results = self._run(quantity=2, workers=NUM_WORKERS)

        self.assertEqual(results.count("success"), INITIAL_STOCK // 2)
        self.stock.refresh_from_db()
        self.assertEqual(self.stock.reserved, INITIAL_STOCK)
        self.assertLessEqual(self.stock.reserved, self.stock.on_hand)

    def test_order_numbers_are_unique(self):
        self._run(quantity=1, workers=NUM_WORKERS)
        numbers = list(Order.objects.values_list("order_number", flat=True))
        self.assertEqual(len(numbers), len(set(numbers)))
