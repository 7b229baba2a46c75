"""Customer repository interface.

The order core consumes customers as read-only lookups: the customer
itself and the addresses it may ship or bill to.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Optional

from modules.core.repositories.interfaces import IRepository

if TYPE_CHECKING:
    from modules.customers.models import Customer, CustomerAddress


class ICustomerRepository(IRepository["Customer"]):
    """Repository contract for the Customer aggregate."""

    @abstractmethod
    def get_for_update(self, id: str) -> Optional[Customer]:
        """Retrieve a customer holding its row lock until the transaction ends.

        Serialises credit checks for the same customer.
        """

    @abstractmethod
    def get_address(self, customer_id: str, address_id: str) -> Optional[CustomerAddress]:
        """Retrieve an address only if it belongs to *customer_id*."""
