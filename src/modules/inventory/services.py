"""Inventory Coordinator.

Reserves, releases, deducts and returns stock on behalf of orders.  All
methods must be called inside the caller's ``transaction.atomic()`` block:
the coordinator locks the inventory rows it touches and writes ledger
entries, but the commit boundary belongs to the order service.

Business rules enforced:
- RN-EST-002: ``available = on_hand - reserved`` never goes negative.
- RN-EST-003: every movement appends a ledger row referencing the order.
- RN-EST-004: a reservation batch either succeeds entirely or changes
  nothing; the error lists every line that fell short.
- RN-EST-005: release only returns what the order still holds according
  to its ledger, so calling it twice is harmless.
- RN-EST-007: rows are locked in ``(warehouse_id, product_id)`` order.
"""

from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Optional, Sequence
from uuid import UUID

import structlog
from django.db import IntegrityError, OperationalError

from modules.inventory.constants import (
    REFERENCE_ORDER,
    RESTOCKABLE_CONDITIONS,
    TransactionType,
)
from modules.inventory.dtos import AvailabilityRecord, Shortfall, StockLine
from modules.inventory.exceptions import (
    InsufficientInventory,
    InventoryConflict,
    InventoryStateError,
    WarehouseNotFound,
)
from modules.inventory.models import InventoryTransaction
from modules.inventory.repositories.django_repository import InventoryDjangoRepository

if TYPE_CHECKING:
    from modules.inventory.models import Inventory
    from modules.inventory.repositories.interfaces import (
        FootprintKey,
        IInventoryRepository,
        StockKey,
    )
    from modules.products.models import Product

logger = structlog.get_logger(__name__)


def lock_order(keys: Iterable[StockKey]) -> List[StockKey]:
    """Deterministic lock order: by warehouse, then product."""
    return sorted(set(keys), key=lambda key: (str(key[1]), str(key[0])))


class InventoryCoordinator:
    """Stock operations scoped to the caller's transaction."""

    def __init__(self, repository: Optional[IInventoryRepository] = None) -> None:
        self._repo = repository or InventoryDjangoRepository()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve_warehouse(
        self, product: Product, warehouse_id: Optional[UUID] = None
    ) -> Optional[UUID]:
        """Pick the warehouse a line should be fulfilled from.

        An explicit warehouse wins, then the product's default warehouse,
        then whichever active warehouse has the most stock available.

        Raises:
            WarehouseNotFound: the explicit warehouse is unknown or inactive.
        """
        if warehouse_id is not None:
            if self._repo.get_warehouse(warehouse_id) is None:
                raise WarehouseNotFound(warehouse_id=warehouse_id)
            return warehouse_id
        if product.default_warehouse_id is not None:
            return product.default_warehouse_id
        return self._repo.best_warehouse_for(product.id)

    def check_availability(
        self,
        lines: Sequence[StockLine],
        prices: Optional[Dict[UUID, object]] = None,
    ) -> List[AvailabilityRecord]:
        """Report, per line, whether current stock can cover it. No mutation."""
        rows = self._repo.get_rows(
            line.key for line in lines if line.warehouse_id is not None
        )
        report = []
        for line in lines:
            row = rows.get(line.key) if line.warehouse_id is not None else None
            on_hand = row.on_hand if row else 0
            reserved = row.reserved if row else 0
            available = on_hand - reserved
            report.append(
                AvailabilityRecord(
                    product_id=line.product_id,
                    warehouse_id=line.warehouse_id,
                    requested=line.quantity,
                    on_hand=on_hand,
                    reserved=reserved,
                    available=available,
                    can_fulfill=available >= line.quantity,
                    shortfall=max(line.quantity - available, 0),
                    unit_price=(prices or {}).get(line.product_id),
                )
            )
        return report

    def reservation_footprint(self, order_id: UUID) -> Dict[FootprintKey, int]:
        """Stock the order still holds in reserve, per (product, warehouse, item)."""
        return self._repo.footprint(order_id)

    def ledger(self, order_id: UUID) -> List[InventoryTransaction]:
        return self._repo.ledger(order_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reserve(
        self,
        order_id: UUID,
        lines: Sequence[StockLine],
        actor_id: str = "",
    ) -> List[InventoryTransaction]:
        """Reserve every line or none of them.

        Raises:
            InsufficientInventory: at least one line exceeds available stock;
                ``shortfalls`` lists all of them.
            InventoryConflict: the store rejected a concurrent write.
        """
        log = logger.bind(order_id=str(order_id), line_count=len(lines))
        requested: Dict[StockKey, int] = defaultdict(int)
        for line in lines:
            requested[line.key] += line.quantity

        with _conflicts_as_retryable(log):
            rows = self._repo.lock_rows(lock_order(k for k in requested if k[1]))

            shortfalls = []
            for key in lock_order(requested):
                row = rows.get(key)
                available = row.available if row else 0
                if available < requested[key]:
                    shortfalls.append(
                        Shortfall(
                            product_id=key[0],
                            warehouse_id=key[1],
                            requested=requested[key],
                            available=available,
                        )
                    )
            if shortfalls:
                log.warning(
                    "inventory.insufficient",
                    shortfalls=[s.model_dump(mode="json") for s in shortfalls],
                )
                raise InsufficientInventory(shortfalls)

            for key in lock_order(requested):
                row = rows[key]
                row.reserved += requested[key]
                self._repo.save_row(row, ["reserved", "updated_at"])

            entries = self._repo.append(
                [
                    self._entry(
                        order_id,
                        line,
                        TransactionType.RESERVE,
                        line.quantity,
                        rows[line.key],
                        actor_id,
                    )
                    for line in lines
                ]
            )

        log.info("inventory.reserved", quantity=sum(requested.values()))
        return entries

    def release(
        self,
        order_id: UUID,
        lines: Optional[Sequence[StockLine]] = None,
        actor_id: str = "",
        notes: str = "",
    ) -> List[InventoryTransaction]:
        """Give back reserved stock the order still holds.

        With no *lines*, everything outstanding is released.  With *lines*,
        each is capped at what the order holds for that item, so a repeated
        call releases nothing.
        """
        log = logger.bind(order_id=str(order_id))
        footprint = self._repo.footprint(order_id)
        plan = _plan_against_footprint(footprint, lines)
        if not plan:
            log.info("inventory.release_noop")
            return []

        with _conflicts_as_retryable(log):
            rows = self._repo.lock_rows(lock_order((p, w) for p, w, _ in plan))
            totals: Dict[StockKey, int] = defaultdict(int)
            for (product_id, warehouse_id, _item), qty in plan.items():
                totals[(product_id, warehouse_id)] += qty

            for key in lock_order(totals):
                row = rows.get(key)
                if row is None or row.reserved < totals[key]:
                    raise InventoryStateError(
                        product_id=key[0], warehouse_id=key[1], quantity=totals[key]
                    )
                row.reserved -= totals[key]
                self._repo.save_row(row, ["reserved", "updated_at"])

            entries = self._repo.append(
                [
                    InventoryTransaction(
                        product_id=product_id,
                        warehouse_id=warehouse_id,
                        order_item_id=item_id,
                        transaction_type=TransactionType.RELEASE,
                        quantity=-qty,
                        unit_cost=rows[(product_id, warehouse_id)].average_cost,
                        reference_type=REFERENCE_ORDER,
                        reference_id=order_id,
                        actor_id=actor_id or "",
                        notes=notes[:255],
                    )
                    for (product_id, warehouse_id, item_id), qty in plan.items()
                ]
            )

        log.info("inventory.released", quantity=sum(plan.values()))
        return entries

    def deduct(
        self,
        order_id: UUID,
        lines: Sequence[StockLine],
        actor_id: str = "",
    ) -> List[InventoryTransaction]:
        """Turn reserved stock into shipped stock (``reserved`` and ``on_hand`` drop).

        Raises:
            InventoryStateError: the order does not hold enough reservation
                for one of the lines.
        """
        log = logger.bind(order_id=str(order_id))
        footprint = self._repo.footprint(order_id)
        held: Dict[FootprintKey, int] = dict(footprint)
        for line in lines:
            fkey = (line.product_id, line.warehouse_id, line.order_item_id)
            if held.get(fkey, 0) < line.quantity:
                raise InventoryStateError(
                    order_item_id=line.order_item_id,
                    requested=line.quantity,
                    reserved=held.get(fkey, 0),
                )
            held[fkey] -= line.quantity

        with _conflicts_as_retryable(log):
            rows = self._repo.lock_rows(lock_order(line.key for line in lines))
            totals: Dict[StockKey, int] = defaultdict(int)
            for line in lines:
                totals[line.key] += line.quantity
            for key in lock_order(totals):
                row = rows.get(key)
                if row is None or row.reserved < totals[key] or row.on_hand < totals[key]:
                    raise InventoryStateError(
                        product_id=key[0], warehouse_id=key[1], quantity=totals[key]
                    )
                row.reserved -= totals[key]
                row.on_hand -= totals[key]
                self._repo.save_row(row, ["reserved", "on_hand", "updated_at"])

            entries = self._repo.append(
                [
                    self._entry(
                        order_id,
                        line,
                        TransactionType.DEDUCT,
                        -line.quantity,
                        rows[line.key],
                        actor_id,
                    )
                    for line in lines
                ]
            )

        log.info("inventory.deducted", quantity=sum(totals.values()))
        return entries

    def return_stock(
        self,
        order_id: UUID,
        lines: Sequence[StockLine],
        condition: str,
        actor_id: str = "",
    ) -> List[InventoryTransaction]:
        """Put returned goods back on hand when they can be resold.

        Damaged or defective returns do not move stock.
        """
        log = logger.bind(order_id=str(order_id), condition=condition)
        if condition not in RESTOCKABLE_CONDITIONS:
            log.info("inventory.return_not_restocked")
            return []

        with _conflicts_as_retryable(log):
            rows = self._repo.lock_rows(lock_order(line.key for line in lines))
            totals: Dict[StockKey, int] = defaultdict(int)
            for line in lines:
                totals[line.key] += line.quantity
            for key in lock_order(totals):
                row = rows.get(key)
                if row is None:
                    raise InventoryStateError(product_id=key[0], warehouse_id=key[1])
                row.on_hand += totals[key]
                self._repo.save_row(row, ["on_hand", "updated_at"])

            entries = self._repo.append(
                [
                    self._entry(
                        order_id,
                        line,
                        TransactionType.RETURN,
                        line.quantity,
                        rows[line.key],
                        actor_id,
                        notes=f"condition={condition}",
                    )
                    for line in lines
                ]
            )

        log.info("inventory.returned", quantity=sum(totals.values()))
        return entries

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _entry(
        order_id: UUID,
        line: StockLine,
        transaction_type: str,
        quantity: int,
        row: Inventory,
        actor_id: str,
        notes: str = "",
    ) -> InventoryTransaction:
        return InventoryTransaction(
            product_id=line.product_id,
            warehouse_id=line.warehouse_id,
            order_item_id=line.order_item_id,
            transaction_type=transaction_type,
            quantity=quantity,
            unit_cost=row.average_cost,
            reference_type=REFERENCE_ORDER,
            reference_id=order_id,
            actor_id=actor_id or "",
            notes=notes,
        )


def _plan_against_footprint(
    footprint: Dict[FootprintKey, int],
    lines: Optional[Sequence[StockLine]],
) -> Dict[FootprintKey, int]:
    """Quantities to release, capped at what each footprint entry still holds."""
    if lines is None:
        return {key: qty for key, qty in footprint.items() if qty > 0}

    remaining = dict(footprint)
    plan: Dict[FootprintKey, int] = defaultdict(int)
    for line in lines:
        candidates = [
            key
            for key in remaining
            if key[0] == line.product_id
            and (line.warehouse_id is None or key[1] == line.warehouse_id)
            and (line.order_item_id is None or key[2] == line.order_item_id)
        ]
        wanted = line.quantity
        for key in sorted(candidates, key=lambda k: (str(k[1]), str(k[2]))):
            take = min(wanted, remaining[key])
            if take <= 0:
                continue
            plan[key] += take
            remaining[key] -= take
            wanted -= take
            if not wanted:
                break
    return {key: qty for key, qty in plan.items() if qty > 0}


@contextmanager
def _conflicts_as_retryable(log) -> Iterator[None]:
    """Translate store-level write conflicts into ``InventoryConflict``.

    Deadlock victims, serialization failures and lock-wait timeouts surface
    as ``OperationalError``; a check-constraint hit means another writer got
    in between, which the retry loop handles the same way.
    """
    try:
        yield
    except (OperationalError, IntegrityError) as exc:
        log.warning("inventory.write_conflict", error=type(exc).__name__)
        raise InventoryConflict() from exc
