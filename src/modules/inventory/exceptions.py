"""Inventory domain exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING, List

from modules.core.exceptions import DomainError, ErrorKind

if TYPE_CHECKING:
    from modules.inventory.dtos import Shortfall


class InventoryError(DomainError):
    """Base for errors raised by the inventory coordinator."""


class InsufficientInventory(InventoryError):
    """One or more lines cannot be covered by available stock.

    ``shortfalls`` lists every failing line, not just the first one, so
    callers can report the whole request back at once.
    """

    kind = ErrorKind.INSUFFICIENT_INVENTORY

    def __init__(self, shortfalls: List[Shortfall]) -> None:
        self.shortfalls = list(shortfalls)
        super().__init__(
            f"Insufficient inventory for {len(self.shortfalls)} item(s).",
            shortfalls=[s.model_dump(mode="json") for s in self.shortfalls],
        )


class InventoryConflict(InventoryError):
    """The store rejected a concurrent write; the whole operation may be retried."""

    kind = ErrorKind.CONFLICT
    default_message = "Inventory was modified concurrently. Please retry."
    retryable = True


class WarehouseNotFound(InventoryError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Warehouse not found or inactive."


class InventoryStateError(InventoryError):
    """A release/deduct does not match what the order actually holds."""

    kind = ErrorKind.PRECONDITION
    default_message = "The order does not hold enough reserved stock for this operation."
