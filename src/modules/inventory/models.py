"""Warehouse, Inventory and InventoryTransaction models.

Business rules implemented:
- RN-EST-001: Stock is tracked per ``(product, warehouse)`` pair.
- RN-EST-002: ``on_hand >= 0``, ``reserved >= 0`` and ``reserved <= on_hand``
  (``available >= 0``), enforced by database check constraints as well as
  by the coordinator.
- RN-EST-003: Every stock movement is recorded in an append-only ledger
  (``InventoryTransaction``) referencing the order that caused it.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from django.db import models

from modules.core.models import BaseModel
from modules.inventory.constants import REFERENCE_ORDER, TransactionType


class Warehouse(BaseModel):
    code = models.CharField(max_length=20, unique=True)
    name = models.CharField(max_length=255)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "warehouses"
        ordering = ["code"]

    def __str__(self) -> str:
        return f"{self.code} - {self.name}"


class Inventory(BaseModel):
    """Stock position of one product in one warehouse.

    Mutated only by ``InventoryCoordinator`` while holding a row lock.
    """

    product = models.ForeignKey(
        "products.Product",
        on_delete=models.PROTECT,
        related_name="inventory_rows",
    )
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name="inventory_rows",
    )
    on_hand = models.IntegerField(default=0)
    reserved = models.IntegerField(default=0)
    reorder_level = models.IntegerField(default=0)
    average_cost = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=Decimal("0"),
    )

    class Meta:
        db_table = "inventory"
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["product", "warehouse"],
                name="inventory_product_warehouse_uniq",
            ),
            models.CheckConstraint(
                condition=models.Q(on_hand__gte=0),
                name="inventory_on_hand_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(reserved__gte=0),
                name="inventory_reserved_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(reserved__lte=models.F("on_hand")),
                name="inventory_available_non_negative",
            ),
        ]

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    @property
    def needs_reorder(self) -> bool:
        return self.available <= self.reorder_level

    def __str__(self) -> str:
        return (
            f"{self.product_id}@{self.warehouse_id} "
            f"(on_hand={self.on_hand}, reserved={self.reserved})"
        )


class InventoryTransaction(BaseModel):
    """Append-only ledger row.

    ``quantity`` is signed from the point of view of the order's
    footprint: RESERVE is positive, RELEASE and DEDUCT are negative, and
    RETURN is positive (it restores ``on_hand``).
    """

    product = models.ForeignKey(
        "products.Product",
        on_delete=models.PROTECT,
        related_name="inventory_transactions",
    )
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name="inventory_transactions",
    )
    transaction_type = models.CharField(
        max_length=10,
        choices=TransactionType.choices,
    )
    quantity = models.IntegerField()
    unit_cost = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=Decimal("0"),
    )
    reference_type = models.CharField(max_length=20, default=REFERENCE_ORDER)
    reference_id = models.UUIDField()
    order_item_id = models.UUIDField(null=True, blank=True)
    actor_id = models.CharField(max_length=64, blank=True, default="")
    notes = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        db_table = "inventory_transactions"
        ordering = ["created_at"]
        indexes = [
            models.Index(
                fields=["reference_type", "reference_id"],
                name="inv_tx_reference_idx",
            ),
            models.Index(
                fields=["product", "warehouse"],
                name="inv_tx_product_wh_idx",
            ),
        ]

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Inventory ledger entries are append-only.")
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.transaction_type} {self.quantity:+d} ({self.reference_type} {self.reference_id})"
