"""Pricing & Totals Engine.

Pure recomputation of an order's monetary fields:

1. ``line_subtotal = unit_price * quantity - line_discount`` (per item)
2. ``subtotal = sum(line_subtotal)``
3. ``tax_amount`` from the tax quote, rounded half-to-even
4. ``shipping_amount`` from the shipping quote
5. ``discount_amount`` at order level (coupon or manual)
6. ``total_amount = subtotal - discount_amount + tax_amount + shipping_amount``

Nothing here touches the database or calls collaborators: the service
fetches quotes for a ``PricingSnapshot`` and hands them to
``compute_totals``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from modules.orders.exceptions import CurrencyMismatch, InvalidDiscount, InvalidQuantity
from modules.orders.money import Amount, normalize_currency, quantize, to_decimal, zero


@dataclass(frozen=True)
class PricingLine:
    """Raw inputs for one order line."""

    key: Any
    unit_price: Decimal
    quantity: int
    currency: str
    discount: Decimal = Decimal("0")
    tax_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class LineTotal:
    key: Any
    quantity: int
    gross: Decimal
    discount: Decimal
    net: Decimal
    tax_rate: Optional[Decimal]


@dataclass(frozen=True)
class PricingSnapshot:
    """What tax and shipping calculators get to see."""

    currency: str
    lines: Tuple[LineTotal, ...]
    subtotal: Decimal
    discount_amount: Decimal
    shipping_method: str = ""
    destination_country: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def taxable_amount(self) -> Decimal:
        return self.subtotal - self.discount_amount

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)


@dataclass(frozen=True)
class TotalsBreakdown:
    currency: str
    lines: Tuple[LineTotal, ...]
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal

    def as_order_fields(self) -> Dict[str, Decimal]:
        return {
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "tax_amount": self.tax_amount,
            "shipping_amount": self.shipping_amount,
            "total_amount": self.total_amount,
        }

    def line_for(self, key: Any) -> Optional[LineTotal]:
        return next((line for line in self.lines if line.key == key), None)


@dataclass(frozen=True)
class TaxBand:
    """Taxable base and tax at one effective rate, for reporting."""

    rate: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal


def price_lines(lines: Iterable[PricingLine], currency: str) -> Tuple[LineTotal, ...]:
    """Compute per-line subtotals.

    Raises:
        CurrencyMismatch: a line is priced in another currency.
        InvalidQuantity: a line has a non-positive quantity.
        InvalidDiscount: a line discount is negative or exceeds the line gross.
    """
    currency = normalize_currency(currency)
    priced = []
    for line in lines:
        if normalize_currency(line.currency) != currency:
            raise CurrencyMismatch(
                order_currency=currency, item_currency=line.currency
            )
        if line.quantity < 1:
            raise InvalidQuantity(quantity=line.quantity)
        gross = quantize(to_decimal(line.unit_price) * line.quantity, currency)
        discount = quantize(line.discount or 0, currency)
        if discount < 0 or discount > gross:
            raise InvalidDiscount(
                "Line discount must be between zero and the line amount.",
                discount=discount,
                gross=gross,
            )
        priced.append(
            LineTotal(
                key=line.key,
                quantity=line.quantity,
                gross=gross,
                discount=discount,
                net=gross - discount,
                tax_rate=None if line.tax_rate is None else to_decimal(line.tax_rate),
            )
        )
    return tuple(priced)


def build_snapshot(
    lines: Iterable[PricingLine],
    currency: str,
    discount_amount: Amount = Decimal("0"),
    shipping_method: str = "",
    destination_country: str = "",
) -> PricingSnapshot:
    """Price the lines and attach the order-level discount.

    Raises:
        InvalidDiscount: the order discount is negative or larger than the
            subtotal it applies to.
    """
    currency = normalize_currency(currency)
    priced = price_lines(lines, currency)
    subtotal = sum((line.net for line in priced), zero(currency))
    discount = quantize(discount_amount or 0, currency)
    if discount < 0 or discount > subtotal:
        raise InvalidDiscount(discount=discount, subtotal=subtotal)
    return PricingSnapshot(
        currency=currency,
        lines=priced,
        subtotal=subtotal,
        discount_amount=discount,
        shipping_method=shipping_method,
        destination_country=destination_country,
    )


def compute_totals(
    snapshot: PricingSnapshot,
    tax_quote: Amount,
    shipping_quote: Amount,
) -> TotalsBreakdown:
    """Combine a snapshot with its quotes into the authoritative totals.

    Raises:
        InvalidDiscount: the resulting total would be negative.
    """
    currency = snapshot.currency
    tax_amount = quantize(tax_quote, currency)
    shipping_amount = quantize(shipping_quote, currency)
    total = snapshot.subtotal - snapshot.discount_amount + tax_amount + shipping_amount
    if total < 0:
        raise InvalidDiscount(
            "Discounts would make the order total negative.", total=total
        )
    return TotalsBreakdown(
        currency=currency,
        lines=snapshot.lines,
        subtotal=snapshot.subtotal,
        discount_amount=snapshot.discount_amount,
        tax_amount=tax_amount,
        shipping_amount=shipping_amount,
        total_amount=total,
    )


def unit_refund_value(line_total: Decimal, quantity: int, units: int, currency: str) -> Decimal:
    """Value of *units* out of a line of *quantity*, rounded to the currency."""
    if quantity < 1:
        return zero(currency)
    return quantize(to_decimal(line_total) * units / quantity, currency)


def tax_bands(
    totals: TotalsBreakdown, rate_for: Callable[[LineTotal], Decimal]
) -> List[TaxBand]:
    """Group the taxable base of *totals* by effective rate, lowest rate first.

    The order-level discount reduces every band proportionally, the same
    way it reduces the tax base.  Bands are rounded on their own, so their
    tax may differ from ``totals.tax_amount`` by a minor unit.
    """
    currency = totals.currency
    if not totals.subtotal:
        return []
    share = (totals.subtotal - totals.discount_amount) / totals.subtotal
    bases: Dict[Decimal, Decimal] = {}
    for line in totals.lines:
        rate = to_decimal(rate_for(line))
        bases[rate] = bases.get(rate, Decimal("0")) + line.net * share
    return [
        TaxBand(
            rate=rate,
            taxable_amount=quantize(base, currency),
            tax_amount=quantize(base * rate / 100, currency),
        )
        for rate, base in sorted(bases.items())
    ]
