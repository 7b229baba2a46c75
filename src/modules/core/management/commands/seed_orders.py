from __future__ import annotations

import random
from decimal import Decimal

from django.core.management.base import BaseCommand

from modules.core.exceptions import DomainError
from modules.customers.models import (
    AddressType,
    Customer,
    CustomerAddress,
    DocumentType,
    PaymentTerms,
)
from modules.inventory.models import Inventory, Warehouse
from modules.orders.dtos import CreateOrderDTO, CreateOrderItemDTO, PaymentDTO, ShipOrderDTO
from modules.orders.services import OrderService
from modules.products.models import Product, ProductStatus


class Command(BaseCommand):
    help = "Seed database with warehouses, stock, customers and sample orders."

    def add_arguments(self, parser):
        parser.add_argument("--orders", type=int, default=30)

    def handle(self, *args, **options):
        random.seed(42)
        self.stdout.write("Seeding development data...")

        warehouses = self._seed_warehouses()
        products = self._seed_products(warehouses)
        addresses = self._seed_customers()
        orders_created, failures = self._seed_orders(addresses, products, options["orders"])

        self.stdout.write(
            self.style.SUCCESS(
                "Seed completed: "
                f"warehouses={len(warehouses)}, "
                f"products={len(products)}, "
                f"customers={len(addresses)}, "
                f"orders={orders_created}, "
                f"rejected={failures}"
            )
        )

    def _seed_warehouses(self) -> list[Warehouse]:
        warehouses = []
        for code, name in [("SP-01", "São Paulo DC"), ("RJ-01", "Rio de Janeiro DC")]:
            warehouse, _ = Warehouse.objects.get_or_create(code=code, defaults={"name": name})
            warehouses.append(warehouse)
        return warehouses

    def _seed_products(self, warehouses: list[Warehouse]) -> list[Product]:
        self.stdout.write("Creating products and stock...")
        catalog = [
            ("ELET-001", "Monitor 27\"", Decimal("1299.90"), Decimal("8.00")),
            ("ELET-002", "Teclado Mecânico", Decimal("399.90"), Decimal("8.00")),
            ("ELET-003", "Mouse Gamer", Decimal("249.90"), Decimal("8.00")),
            ("MOV-001", "Mesa Escritório", Decimal("899.00"), Decimal("5.00")),
            ("MOV-002", "Cadeira Ergonômica", Decimal("1499.00"), Decimal("5.00")),
            ("OFF-001", "Papel A4", Decimal("29.90"), Decimal("0")),
            ("OFF-002", "Caneta Azul", Decimal("4.90"), Decimal("0")),
            ("OFF-003", "Caderno", Decimal("19.90"), Decimal("0")),
        ]
        products: list[Product] = []
        for sku, name, price, tax_rate in catalog:
            product, _ = Product.objects.get_or_create(
                sku=sku,
                defaults={
                    "name": name,
                    "price": price,
                    "currency": "USD",
                    "tax_rate": tax_rate,
                    "unit_cost": (price * Decimal("0.6")).quantize(Decimal("0.01")),
                    "default_warehouse": warehouses[0],
                    "status": ProductStatus.ACTIVE,
                },
            )
            for warehouse in warehouses:
                Inventory.objects.get_or_create(
                    product=product,
                    warehouse=warehouse,
                    defaults={
                        "on_hand": random.randint(20, 200),
                        "reorder_level": 10,
                        "average_cost": product.unit_cost,
                    },
                )
            products.append(product)
        self.stdout.write(self.style.SUCCESS("Creating products and stock... Done!"))
        return products

    def _seed_customers(self) -> list[CustomerAddress]:
        self.stdout.write("Creating customers...")
        seed_customers = [
            ("Ana Souza", "39053344705", DocumentType.CPF, "ana@example.com", PaymentTerms.PREPAID),
            ("Bruno Lima", "11222333000181", DocumentType.CNPJ, "bruno@example.com", PaymentTerms.NET30),
            ("Carla Mendes", "98765432100", DocumentType.CPF, "carla@example.com", PaymentTerms.PREPAID),
            ("Eduardo Alves", "98765432000155", DocumentType.CNPJ, "eduardo@example.com", PaymentTerms.NET60),
        ]
        addresses: list[CustomerAddress] = []
        for name, document, doc_type, email, terms in seed_customers:
            customer, _ = Customer.objects.get_or_create(
                document=document,
                defaults={
                    "name": name,
                    "document_type": doc_type,
                    "email": email,
                    "payment_terms": terms,
                    "credit_limit": Decimal("20000") if terms != PaymentTerms.PREPAID else 0,
                },
            )
            address, _ = CustomerAddress.objects.get_or_create(
                customer=customer,
                line1="Av. Paulista, 1000",
                defaults={
                    "address_type": AddressType.BOTH,
                    "city": "São Paulo",
                    "state": "SP",
                    "postal_code": "01310-100",
                    "country": "BR",
                },
            )
            addresses.append(address)
        self.stdout.write(self.style.SUCCESS("Creating customers... Done!"))
        return addresses

    def _seed_orders(
        self, addresses: list[CustomerAddress], products: list[Product], count: int
    ) -> tuple[int, int]:
        """Create orders through the service and walk some of them forward."""
        self.stdout.write("Creating orders...")
        service = OrderService()
        created = failures = 0
        for _ in range(count):
            address = random.choice(addresses)
            picked = random.sample(products, k=random.randint(1, 3))
            dto = CreateOrderDTO(
                customer_id=address.customer_id,
                shipping_address_id=address.id,
                items=[
                    CreateOrderItemDTO(product_id=product.id, quantity=random.randint(1, 3))
                    for product in picked
                ],
            )
            try:
                order = service.create_order(dto)
                created += 1
                stage = random.random()
                if stage < 0.3:
                    continue
                service.update_status(order.id, "PENDING")
                if stage < 0.5:
                    continue
                service.confirm_order(order.id)
                if stage < 0.65:
                    service.cancel_order(order.id, reason="Seed cancellation")
                    continue
                service.process_payment(order.id, PaymentDTO(amount=order.total_amount))
                service.ship_order(order.id, ShipOrderDTO(carrier="Correios"))
                if stage > 0.85:
                    service.deliver_order(order.id)
            except DomainError as exc:
                failures += 1
                self.stdout.write(self.style.WARNING(f"Order skipped: {exc.message}"))
        self.stdout.write(self.style.SUCCESS("Creating orders... Done!"))
        return created, failures
