"""Django ORM implementation of the Customer repository.

Error handling follows the Null Object pattern: methods return ``None``
instead of raising, and the Service Layer decides how to translate a
missing entity into a domain error.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError

from modules.customers.models import Customer, CustomerAddress
from modules.customers.repositories.interfaces import ICustomerRepository


class CustomerDjangoRepository(ICustomerRepository):
    """Concrete Customer repository backed by Django ORM."""

    def get_by_id(self, id: str) -> Optional[Customer]:
        """Retrieve a customer by primary key.

        Returns ``None`` for non-existent or invalid IDs (e.g. malformed UUID).
        """
        try:
            return Customer.objects.filter(id=id).first()
        except (ValueError, ValidationError):
            return None

    def get_for_update(self, id: str) -> Optional[Customer]:
        try:
            return Customer.objects.select_for_update().filter(id=id).first()
        except (ValueError, ValidationError):
            return None

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Customer]:
        queryset = Customer.objects.all()
        if filters:
            queryset = queryset.filter(**filters)
        return list(queryset)

    def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return Customer.objects.filter(**(filters or {})).count()

    def get_address(
        self, customer_id: str, address_id: str
    ) -> Optional[CustomerAddress]:
        try:
            return CustomerAddress.objects.filter(
                id=address_id, customer_id=customer_id
            ).first()
        except (ValueError, ValidationError):
            return None
