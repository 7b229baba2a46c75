"""External collaborators consumed by the order core.

Each collaborator is a ``Protocol`` (the port the service depends on)
plus a default implementation configured from ``settings.ORDERS``.
Production deployments swap the defaults for real tax, shipping and
payment providers through ``OrderService``'s constructor.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Protocol
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

import structlog
from django.conf import settings

from modules.orders.constants import PaymentRecordStatus
from modules.orders.exceptions import InvalidDiscountCode, ShippingQuoteFailed
from modules.orders.money import quantize, to_decimal, zero

if TYPE_CHECKING:
    from modules.orders.events import OrderEvent
    from modules.orders.pricing import LineTotal, PricingSnapshot

logger = structlog.get_logger(__name__)


def _orders_setting(name: str, default: Any) -> Any:
    return getattr(settings, "ORDERS", {}).get(name, default)


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


class TaxCalculator(Protocol):
    """Idempotent over identical snapshots."""

    def calculate(self, snapshot: PricingSnapshot) -> Decimal: ...

    def rate_for(self, line: LineTotal) -> Decimal:
        """Effective percentage for *line*; used for tax breakdowns."""
        ...


class ShippingCalculator(Protocol):
    def calculate(self, snapshot: PricingSnapshot) -> Decimal: ...


class DiscountPolicy(Protocol):
    def discount_for(self, code: str, subtotal: Decimal, currency: str) -> Decimal: ...


@dataclass(frozen=True)
class PaymentResult:
    transaction_id: str
    status: str
    message: str = ""

    @property
    def approved(self) -> bool:
        return self.status == PaymentRecordStatus.APPROVED


class PaymentService(Protocol):
    """Must be idempotent by ``(order_id, amount, method, client_nonce)``."""

    def process(
        self, order_id: UUID, amount: Decimal, method: str, client_nonce: str
    ) -> PaymentResult: ...

    def refund(self, order_id: UUID, amount: Decimal, client_nonce: str) -> PaymentResult: ...


class NotificationService(Protocol):
    """Fire-and-forget; only ever called after commit."""

    def notify(self, event: OrderEvent) -> None: ...


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------


class RateTaxCalculator:
    """Applies each line's ``tax_rate`` (a percentage) to its net amount.

    Lines without a rate use ``ORDERS["DEFAULT_TAX_RATE"]``; a rate of 0 is
    tax-exempt.  An order-level discount reduces the taxable base
    proportionally across lines.
    """

    def __init__(self, default_rate: Optional[Decimal] = None) -> None:
        self.default_rate = to_decimal(
            default_rate
            if default_rate is not None
            else _orders_setting("DEFAULT_TAX_RATE", Decimal("0"))
        )

    def rate_for(self, line: LineTotal) -> Decimal:
        return self.default_rate if line.tax_rate is None else line.tax_rate

    def calculate(self, snapshot: PricingSnapshot) -> Decimal:
        if not snapshot.subtotal:
            return zero(snapshot.currency)
        gross_tax = sum(
            (line.net * self.rate_for(line) / 100 for line in snapshot.lines),
            Decimal("0"),
        )
        return quantize(
            gross_tax * snapshot.taxable_amount / snapshot.subtotal, snapshot.currency
        )


class FlatRateShippingCalculator:
    """One flat fee per shipping method, optionally free above a threshold."""

    def __init__(
        self,
        rates: Optional[Mapping[str, Decimal]] = None,
        free_threshold: Optional[Decimal] = None,
    ) -> None:
        self.rates = dict(rates if rates is not None else _orders_setting("SHIPPING_RATES", {}))
        self.free_threshold = (
            free_threshold
            if free_threshold is not None
            else _orders_setting("FREE_SHIPPING_THRESHOLD", None)
        )

    def calculate(self, snapshot: PricingSnapshot) -> Decimal:
        if snapshot.shipping_method not in self.rates:
            raise ShippingQuoteFailed(
                f"No shipping rate for method {snapshot.shipping_method!r}.",
                shipping_method=snapshot.shipping_method,
            )
        if self.free_threshold is not None and snapshot.taxable_amount >= to_decimal(
            self.free_threshold
        ):
            return zero(snapshot.currency)
        return quantize(to_decimal(self.rates[snapshot.shipping_method]), snapshot.currency)


class CouponDiscountPolicy:
    """Discount codes from ``ORDERS["DISCOUNT_CODES"]``.

    Each code maps to ``{"type": "PERCENT" | "FIXED", "value": "..."}``.
    Fixed coupons never discount more than the subtotal.
    """

    def __init__(self, codes: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        source = codes if codes is not None else _orders_setting("DISCOUNT_CODES", {})
        self.codes: Dict[str, Mapping[str, Any]] = {
            code.strip().upper(): rule for code, rule in source.items()
        }

    def discount_for(self, code: str, subtotal: Decimal, currency: str) -> Decimal:
        rule = self.codes.get((code or "").strip().upper())
        if rule is None:
            raise InvalidDiscountCode(discount_code=code)
        value = to_decimal(str(rule.get("value", "0")))
        if rule.get("type", "FIXED").upper() == "PERCENT":
            amount = subtotal * value / 100
        else:
            amount = min(value, subtotal)
        return quantize(amount, currency)


class ManualPaymentService:
    """Records payments taken outside the system (cash, bank transfer).

    Always approves.  The transaction id is derived from the request, so
    replaying the same request yields the same id.
    """

    def process(
        self, order_id: UUID, amount: Decimal, method: str, client_nonce: str
    ) -> PaymentResult:
        return PaymentResult(
            transaction_id=self._transaction_id("pay", order_id, amount, method, client_nonce),
            status=PaymentRecordStatus.APPROVED,
        )

    def refund(self, order_id: UUID, amount: Decimal, client_nonce: str) -> PaymentResult:
        return PaymentResult(
            transaction_id=self._transaction_id("refund", order_id, amount, "", client_nonce),
            status=PaymentRecordStatus.APPROVED,
        )

    @staticmethod
    def _transaction_id(
        kind: str, order_id: UUID, amount: Decimal, method: str, client_nonce: str
    ) -> str:
        nonce = client_nonce or uuid4().hex
        return uuid5(NAMESPACE_URL, f"{kind}:{order_id}:{amount}:{method}:{nonce}").hex


class CeleryNotificationService:
    """Enqueues ``orders.send_order_notification`` for every event."""

    def notify(self, event: OrderEvent) -> None:
        from modules.orders.tasks import send_order_notification

        send_order_notification.delay(event.to_payload())
        logger.info(
            "order.notification_enqueued",
            order_id=str(event.aggregate_id),
            event_name=event.event_name,
        )
