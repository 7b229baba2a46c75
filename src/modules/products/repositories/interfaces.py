"""Product repository interface (read-only lookups for the order core)."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Dict, Iterable

from modules.core.repositories.interfaces import IRepository

if TYPE_CHECKING:
    from uuid import UUID

    from modules.products.models import Product


class IProductRepository(IRepository["Product"]):
    """Repository contract for the Product aggregate."""

    @abstractmethod
    def get_many(self, ids: Iterable[UUID]) -> Dict[UUID, Product]:
        """Fetch several products in one query, keyed by id."""
