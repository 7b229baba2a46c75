from __future__ import annotations

from decimal import Decimal

import pytest

from modules.customers.models import Customer, CustomerAddress, DocumentType
from modules.inventory.models import Inventory, Warehouse
from modules.orders.concurrency import InFlightLimiter, OrderLockManager, RetryPolicy
from modules.orders.constants import OrderStatus
from modules.orders.dtos import CreateOrderDTO, CreateOrderItemDTO, PaymentDTO
from modules.orders.services import OrderService
from modules.products.models import Product
from shared.infrastructure.bus import InMemoryEventBus

VALID_CPF = "59860184275"


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture()
def customer():
    return Customer.objects.create(
        name="Order Test Customer",
        document=VALID_CPF,
        document_type=DocumentType.CPF,
        email="orders@example.com",
    )


@pytest.fixture()
def address(customer):
    return CustomerAddress.objects.create(
        customer=customer,
        line1="500 Market St",
        city="San Francisco",
        state="CA",
        postal_code="94105",
        country="US",
    )


@pytest.fixture()
def warehouse():
    return Warehouse.objects.create(code="MAIN", name="Main warehouse")


@pytest.fixture()
def product(warehouse):
    """$50.00, 8 % tax, stocked in ``warehouse`` (see ``stock``)."""
    return Product.objects.create(
        sku="WIDGET-1",
        name="Widget",
        price=Decimal("50.00"),
        currency="USD",
        tax_rate=Decimal("8.00"),
        unit_cost=Decimal("20.00"),
        default_warehouse=warehouse,
    )


@pytest.fixture()
def stock(product, warehouse):
    return Inventory.objects.create(
        product=product,
        warehouse=warehouse,
        on_hand=100,
        average_cost=Decimal("20.00"),
    )


@pytest.fixture()
def bus():
    return InMemoryEventBus()


@pytest.fixture()
def service(bus):
    return OrderService(
        lock_manager=OrderLockManager(stripes=16, timeout=1.0),
        limiter=InFlightLimiter(limit=8, timeout=1.0),
        retry_policy=RetryPolicy(base_delay=0.001),
        event_bus=bus,
    )


@pytest.fixture()
def order_dto(customer, address, product, stock):
    return CreateOrderDTO(
        customer_id=customer.id,
        shipping_address_id=address.id,
        items=[CreateOrderItemDTO(product_id=product.id, quantity=2)],
    )


@pytest.fixture()
def draft_order(service, order_dto):
    return service.create_order(order_dto)


@pytest.fixture()
def pending_order(service, draft_order):
    return service.update_status(draft_order.id, OrderStatus.PENDING)


@pytest.fixture()
def paid_order(service, pending_order):
    """CONFIRMED and fully paid (118.00)."""
    service.confirm_order(pending_order.id)
    return service.process_payment(
        pending_order.id, PaymentDTO(amount=pending_order.total_amount)
    )


@pytest.fixture()
def shipped_order(service, paid_order):
    from modules.orders.dtos import ShipOrderDTO

    return service.ship_order(paid_order.id, ShipOrderDTO(tracking_number="Z123"))
