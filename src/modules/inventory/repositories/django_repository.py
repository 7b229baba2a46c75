"""Django ORM implementation of the Inventory repository.

Row locks are acquired one row per query, in the order the caller
supplies, so that the lock order is deterministic regardless of how the
database scans a multi-row ``IN (...)`` predicate.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from django.db.models import F, Q, Sum

from modules.inventory.constants import FOOTPRINT_TYPES, REFERENCE_ORDER
from modules.inventory.models import Inventory, InventoryTransaction, Warehouse
from modules.inventory.repositories.interfaces import (
    FootprintKey,
    IInventoryRepository,
    StockKey,
)


class InventoryDjangoRepository(IInventoryRepository):
    def get_warehouse(self, id: UUID) -> Optional[Warehouse]:
        return Warehouse.objects.filter(id=id, is_active=True).first()

    def best_warehouse_for(self, product_id: UUID) -> Optional[UUID]:
        row = (
            Inventory.objects.filter(product_id=product_id, warehouse__is_active=True)
            .annotate(free=F("on_hand") - F("reserved"))
            .order_by("-free", "warehouse__code")
            .values_list("warehouse_id", flat=True)
            .first()
        )
        return row

    def get_rows(self, keys: Iterable[StockKey]) -> Dict[StockKey, Inventory]:
        keys = list(keys)
        if not keys:
            return {}
        predicate = Q()
        for product_id, warehouse_id in keys:
            predicate |= Q(product_id=product_id, warehouse_id=warehouse_id)
        return {
            (row.product_id, row.warehouse_id): row
            for row in Inventory.objects.filter(predicate)
        }

    def lock_rows(self, keys: Sequence[StockKey]) -> Dict[StockKey, Inventory]:
        rows: Dict[StockKey, Inventory] = {}
        for product_id, warehouse_id in keys:
            row = (
                Inventory.objects.select_for_update()
                .filter(product_id=product_id, warehouse_id=warehouse_id)
                .first()
            )
            if row is not None:
                rows[(product_id, warehouse_id)] = row
        return rows

    def save_row(self, row: Inventory, fields: List[str]) -> None:
        row.save(update_fields=fields)

    def append(self, entries: List[InventoryTransaction]) -> List[InventoryTransaction]:
        return InventoryTransaction.objects.bulk_create(entries)

    def footprint(self, reference_id: UUID) -> Dict[FootprintKey, int]:
        rows = (
            InventoryTransaction.objects.filter(
                reference_type=REFERENCE_ORDER,
                reference_id=reference_id,
                transaction_type__in=FOOTPRINT_TYPES,
            )
            .order_by()
            .values("product_id", "warehouse_id", "order_item_id")
            .annotate(outstanding=Sum("quantity"))
        )
        return {
            (row["product_id"], row["warehouse_id"], row["order_item_id"]): row[
                "outstanding"
            ]
            for row in rows
            if row["outstanding"]
        }

    def ledger(self, reference_id: UUID) -> List[InventoryTransaction]:
        return list(
            InventoryTransaction.objects.filter(
                reference_type=REFERENCE_ORDER, reference_id=reference_id
            ).order_by("created_at", "id")
        )
