"""Inventory repository interface.

The coordinator needs four capabilities from the store: row-level locks
taken in a caller-supplied order, plain reads for availability checks,
an append-only ledger, and an aggregate over that ledger per order.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

if TYPE_CHECKING:
    from modules.inventory.models import Inventory, InventoryTransaction, Warehouse

StockKey = Tuple[UUID, UUID]
FootprintKey = Tuple[UUID, UUID, Optional[UUID]]


class IInventoryRepository(ABC):
    @abstractmethod
    def get_warehouse(self, id: UUID) -> Optional[Warehouse]:
        """Return an active warehouse, or ``None``."""

    @abstractmethod
    def best_warehouse_for(self, product_id: UUID) -> Optional[UUID]:
        """Active warehouse holding the most available stock of *product_id*."""

    @abstractmethod
    def get_rows(self, keys: Iterable[StockKey]) -> Dict[StockKey, Inventory]:
        """Read inventory rows without locking."""

    @abstractmethod
    def lock_rows(self, keys: Sequence[StockKey]) -> Dict[StockKey, Inventory]:
        """Lock inventory rows (``SELECT ... FOR UPDATE``) in the given order."""

    @abstractmethod
    def save_row(self, row: Inventory, fields: List[str]) -> None:
        """Persist the given fields of a locked row."""

    @abstractmethod
    def append(self, entries: List[InventoryTransaction]) -> List[InventoryTransaction]:
        """Append ledger entries."""

    @abstractmethod
    def footprint(self, reference_id: UUID) -> Dict[FootprintKey, int]:
        """Outstanding reserved quantity per (product, warehouse, order item)."""

    @abstractmethod
    def ledger(self, reference_id: UUID) -> List[InventoryTransaction]:
        """Every ledger entry for *reference_id*, oldest first."""
