"""Generic repository interface (Dependency Inversion Principle).

Provides ``IRepository[T]``, the base abstract class that every
domain-specific repository interface extends.  Service-layer code
depends on this abstraction, never on the Django ORM directly, so the
order core can be backed by any transactional store that honours the
same contract (row locks, counters, append-only ledgers).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class IRepository(ABC, Generic[T]):
    """Base generic repository contract.

    Type parameter ``T`` represents the domain entity managed by the
    repository (e.g. ``Customer``, ``Order``).
    """

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an entity by its primary key, or ``None``."""

    @abstractmethod
    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[T]:
        """List entities with optional filters."""

    def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count entities matching *filters*."""
        return len(self.list(filters))
