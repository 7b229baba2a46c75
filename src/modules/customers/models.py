"""Customer and CustomerAddress models.

The order core only reads customers: it needs their standing (active or
suspended), their credit terms, and the addresses they may ship or bill to.

Business rules implemented:
- RN-CLI-001: CPF/CNPJ must be unique in the system.
- RN-CLI-002: Email must be unique in the system.
- RN-CLI-003: Only ACTIVE customers can place orders (enforced at service layer).
- RN-CLI-005: Sensitive data (CPF/CNPJ) masked in ``__str__`` and logs.
- RN-CLI-006: Credit customers (terms other than PREPAID) are bounded by
  ``credit_limit``.
"""

from __future__ import annotations

import re
from decimal import Decimal

import structlog
from validate_docbr import CNPJ, CPF

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models

from modules.core.models import BaseModel

logger = structlog.get_logger(__name__)


class DocumentType(models.TextChoices):
    CPF = "CPF", "CPF"
    CNPJ = "CNPJ", "CNPJ"


class CustomerStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    SUSPENDED = "SUSPENDED", "Suspended"
    INACTIVE = "INACTIVE", "Inactive"


class PaymentTerms(models.TextChoices):
    PREPAID = "PREPAID", "Prepaid"
    NET15 = "NET15", "Net 15"
    NET30 = "NET30", "Net 30"
    NET60 = "NET60", "Net 60"


class AddressType(models.TextChoices):
    SHIPPING = "SHIPPING", "Shipping"
    BILLING = "BILLING", "Billing"
    BOTH = "BOTH", "Shipping and billing"


class Customer(BaseModel):
    """Customer aggregate root (read-only from the order core's viewpoint).

    ``document`` stores only digits (sanitised on save).
    """

    name = models.CharField(max_length=255)
    document = models.CharField(max_length=14, unique=True)
    document_type = models.CharField(max_length=4, choices=DocumentType.choices)
    email = models.EmailField(max_length=254, unique=True)
    phone = models.CharField(max_length=20, blank=True, default="")
    status = models.CharField(
        max_length=20,
        choices=CustomerStatus.choices,
        default=CustomerStatus.ACTIVE,
    )
    payment_terms = models.CharField(
        max_length=10,
        choices=PaymentTerms.choices,
        default=PaymentTerms.PREPAID,
    )
    credit_limit = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=Decimal("0"),
        validators=[MinValueValidator(Decimal("0"))],
    )

    class Meta:
        db_table = "customers"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["-created_at"], name="customers_created_idx"),
            models.Index(fields=["status"], name="customers_status_idx"),
        ]

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE

    @property
    def is_credit_customer(self) -> bool:
        """Customers buying on terms are subject to the credit limit check."""
        return self.payment_terms != PaymentTerms.PREPAID

    # ------------------------------------------------------------------
    # Sanitisation
    # ------------------------------------------------------------------

    @staticmethod
    def _sanitize_document(value: str) -> str:
        """Strip all non-digit characters from a document string."""
        return re.sub(r"\D", "", value)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def clean(self) -> None:
        super().clean()
        if self.document:
            self.document = self._sanitize_document(self.document)
        self._validate_document()

    def _validate_document(self) -> None:
        """Validate CPF or CNPJ using *validate-docbr*."""
        if self.document_type == DocumentType.CPF:
            validator = CPF()
        elif self.document_type == DocumentType.CNPJ:
            validator = CNPJ()
        else:
            raise ValidationError({"document_type": "Invalid document type."})

        if not validator.validate(self.document):
            logger.warning(
                "customer.invalid_document",
                document_type=self.document_type,
                document_suffix=self.document[-4:] if self.document else "",
            )
            raise ValidationError({"document": f"Invalid {self.document_type} number."})

    def save(self, *args, **kwargs) -> None:
        if self.document:
            self.document = self._sanitize_document(self.document)
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        suffix = self.document[-4:] if self.document else "????"
        return f"{self.name} ({self.document_type}: ***{suffix})"


class CustomerAddress(BaseModel):
    """An address on file for a customer.

    Orders never reference these rows after creation: the relevant fields
    are copied into ``orders.OrderAddress`` snapshots.
    """

    customer = models.ForeignKey(
        Customer,
        on_delete=models.CASCADE,
        related_name="addresses",
    )
    address_type = models.CharField(
        max_length=10,
        choices=AddressType.choices,
        default=AddressType.BOTH,
    )
    recipient_name = models.CharField(max_length=255, blank=True, default="")
    line1 = models.CharField(max_length=255)
    line2 = models.CharField(max_length=255, blank=True, default="")
    city = models.CharField(max_length=100)
    state = models.CharField(max_length=100, blank=True, default="")
    postal_code = models.CharField(max_length=20)
    country = models.CharField(max_length=2, default="BR")
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "customer_addresses"
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["customer"], name="cust_addr_customer_idx"),
        ]

    def can_ship_to(self) -> bool:
        return self.is_active and self.address_type in (
            AddressType.SHIPPING,
            AddressType.BOTH,
        )

    def can_bill_to(self) -> bool:
        return self.is_active and self.address_type in (
            AddressType.BILLING,
            AddressType.BOTH,
        )

    def __str__(self) -> str:
        return f"{self.line1}, {self.city} ({self.address_type})"
