"""Fixed-point money helpers.

Every amount is a ``Decimal``; floats are rejected.  Amounts are rounded
half-to-even at the currency's ISO-4217 minor-unit exponent and
serialized as canonical strings that always show that many decimals
("118.00", never "118").
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Union

from modules.orders.exceptions import InvalidCurrency, PricingError

CURRENCY_SCALES: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "BRL": 2,
    "CAD": 2,
    "AUD": 2,
    "CHF": 2,
    "CNY": 2,
    "MXN": 2,
    "INR": 2,
    "JPY": 0,
    "KRW": 0,
    "CLP": 0,
    "VND": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}

Amount = Union[Decimal, int, str]


def normalize_currency(code: str) -> str:
    """Upper-case and validate an ISO-4217 code.

    Raises:
        InvalidCurrency: the code is not a supported currency.
    """
    normalized = (code or "").strip().upper()
    if normalized not in CURRENCY_SCALES:
        raise InvalidCurrency(currency=code)
    return normalized


def currency_scale(currency: str) -> int:
    return CURRENCY_SCALES[normalize_currency(currency)]


def to_decimal(value: Amount) -> Decimal:
    if isinstance(value, float):
        raise PricingError("Monetary values must not be floats.")
    try:
        return value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise PricingError("Monetary value is not a valid decimal.") from exc


def quantize(value: Amount, currency: str) -> Decimal:
    """Round half-to-even to the currency's minor unit."""
    exponent = Decimal(1).scaleb(-currency_scale(currency))
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_EVEN)


def zero(currency: str) -> Decimal:
    return quantize(0, currency)


def format_money(value: Amount, currency: str) -> str:
    """Canonical string form, e.g. ``format_money(118, "USD") == "118.00"``."""
    return f"{quantize(value, currency):f}"
