"""Inventory domain constants."""

from django.db import models


class TransactionType(models.TextChoices):
    RESERVE = "RESERVE", "Reserve"
    RELEASE = "RELEASE", "Release"
    DEDUCT = "DEDUCT", "Deduct"
    RETURN = "RETURN", "Return"


class ReturnCondition(models.TextChoices):
    NEW = "NEW", "New"
    RESTOCKABLE = "RESTOCKABLE", "Restockable"
    DAMAGED = "DAMAGED", "Damaged"
    DEFECTIVE = "DEFECTIVE", "Defective"


RESTOCKABLE_CONDITIONS: set[str] = {ReturnCondition.NEW, ReturnCondition.RESTOCKABLE}

# Ledger types whose signed quantities add up to an order's outstanding
# reservation.  Returns restore on_hand and are tracked separately.
FOOTPRINT_TYPES: tuple[str, ...] = (
    TransactionType.RESERVE,
    TransactionType.RELEASE,
    TransactionType.DEDUCT,
)

REFERENCE_ORDER = "ORDER"
