"""Inventory DTOs.

Immutable Pydantic v2 models exchanged between the order service and the
inventory coordinator.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict, computed_field, field_validator


class StockLine(BaseModel):
    """A quantity of one product at one warehouse, optionally tied to an order item."""

    model_config = ConfigDict(frozen=True)

    product_id: UUID
    warehouse_id: Optional[UUID] = None
    quantity: int
    order_item_id: Optional[UUID] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v

    @property
    def key(self) -> Tuple[UUID, Optional[UUID]]:
        return (self.product_id, self.warehouse_id)


class AvailabilityRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: UUID
    warehouse_id: Optional[UUID]
    requested: int
    on_hand: int
    reserved: int
    available: int
    can_fulfill: bool
    shortfall: int
    unit_price: Optional[Decimal] = None


class Shortfall(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: UUID
    warehouse_id: Optional[UUID]
    requested: int
    available: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def shortfall(self) -> int:
        return max(self.requested - self.available, 0)
