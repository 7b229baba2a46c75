"""Unit tests for money helpers and the pricing engine."""

from __future__ import annotations

from decimal import Decimal

import pytest

from modules.orders.collaborators import (
    CouponDiscountPolicy,
    FlatRateShippingCalculator,
    RateTaxCalculator,
)
from modules.orders.exceptions import (
    CurrencyMismatch,
    InvalidCurrency,
    InvalidDiscount,
    InvalidDiscountCode,
    PricingError,
    ShippingQuoteFailed,
)
from modules.orders.money import format_money, normalize_currency, quantize
from modules.orders.pricing import (
    PricingLine,
    build_snapshot,
    compute_totals,
    price_lines,
    tax_bands,
    unit_refund_value,
)

pytestmark = pytest.mark.unit


def line(key="a", price="50.00", qty=2, currency="USD", discount="0", rate="8"):
    return PricingLine(
        key=key,
        unit_price=Decimal(price),
        quantity=qty,
        currency=currency,
        discount=Decimal(discount),
        tax_rate=Decimal(rate),
    )


class TestMoney:
    def test_rounds_half_to_even(self):
        assert quantize(Decimal("0.125"), "USD") == Decimal("0.12")
        assert quantize(Decimal("0.135"), "USD") == Decimal("0.14")

    def test_zero_decimal_currency(self):
        assert quantize(Decimal("1250.5"), "JPY") == Decimal("1250")
        assert format_money(Decimal("1251.5"), "JPY") == "1252"

    def test_three_decimal_currency(self):
        assert format_money(Decimal("1.2345"), "KWD") == "1.234"

    def test_format_always_shows_minor_units(self):
        assert format_money(118, "USD") == "118.00"

    def test_floats_rejected(self):
        with pytest.raises(PricingError):
            quantize(0.1, "USD")

    def test_unknown_currency(self):
        with pytest.raises(InvalidCurrency):
            normalize_currency("XXX")

    def test_currency_normalized(self):
        assert normalize_currency(" usd ") == "USD"


class TestPriceLines:
    def test_line_net_is_gross_minus_discount(self):
        (priced,) = price_lines([line(discount="5.00")], "USD")
        assert priced.gross == Decimal("100.00")
        assert priced.net == Decimal("95.00")

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatch):
            price_lines([line(currency="EUR")], "USD")

    def test_discount_above_gross(self):
        with pytest.raises(InvalidDiscount):
            price_lines([line(discount="100.01")], "USD")


class TestTotals:
    def test_happy_path_totals(self):
        snapshot = build_snapshot([line()], "USD", shipping_method="STANDARD")
        tax = RateTaxCalculator().calculate(snapshot)
        shipping = FlatRateShippingCalculator(rates={"STANDARD": Decimal("10.00")}).calculate(
            snapshot
        )
        totals = compute_totals(snapshot, tax, shipping)

        assert totals.subtotal == Decimal("100.00")
        assert totals.tax_amount == Decimal("8.00")
        assert totals.shipping_amount == Decimal("10.00")
        assert totals.total_amount == Decimal("118.00")

    def test_total_identity(self):
        snapshot = build_snapshot(
            [line(), line(key="b", price="19.99", qty=3, rate="5")],
            "USD",
            discount_amount=Decimal("7.50"),
        )
        totals = compute_totals(snapshot, Decimal("3.333"), Decimal("4.995"))
        assert totals.total_amount == (
            totals.subtotal
            - totals.discount_amount
            + totals.tax_amount
            + totals.shipping_amount
        )
        assert totals.tax_amount == Decimal("3.33")
        assert totals.shipping_amount == Decimal("5.00")

    def test_order_discount_above_subtotal(self):
        with pytest.raises(InvalidDiscount):
            build_snapshot([line()], "USD", discount_amount=Decimal("100.01"))

    def test_tax_base_reduced_by_order_discount(self):
        snapshot = build_snapshot([line()], "USD", discount_amount=Decimal("50.00"))
        assert RateTaxCalculator().calculate(snapshot) == Decimal("4.00")

    def test_zero_rate_line_is_exempt_from_default_rate(self):
        snapshot = build_snapshot([line(rate="0")], "USD")
        assert RateTaxCalculator(default_rate=Decimal("10")).calculate(snapshot) == Decimal(
            "0.00"
        )

    def test_line_without_rate_uses_default_rate(self):
        unrated = PricingLine(
            key="a", unit_price=Decimal("50.00"), quantity=2, currency="USD", tax_rate=None
        )
        snapshot = build_snapshot([unrated, line(key="b", rate="0")], "USD")
        assert RateTaxCalculator(default_rate=Decimal("10")).calculate(snapshot) == Decimal(
            "10.00"
        )

    def test_tax_bands_share_the_order_discount(self):
        snapshot = build_snapshot(
            [line(key="a", rate="8"), line(key="b", price="25.00", rate="0")],
            "USD",
            discount_amount=Decimal("15.00"),
        )
        totals = compute_totals(snapshot, 0, 0)

        bands = tax_bands(totals, RateTaxCalculator().rate_for)

        assert [(b.rate, b.taxable_amount, b.tax_amount) for b in bands] == [
            (Decimal("0"), Decimal("45.00"), Decimal("0.00")),
            (Decimal("8"), Decimal("90.00"), Decimal("7.20")),
        ]

    def test_line_for(self):
        snapshot = build_snapshot([line(key="x")], "USD")
        totals = compute_totals(snapshot, 0, 0)
        assert totals.line_for("x").net == Decimal("100.00")
        assert totals.line_for("missing") is None


class TestUnitRefundValue:
    def test_proportional_share(self):
        assert unit_refund_value(Decimal("100.00"), 3, 1, "USD") == Decimal("33.33")

    def test_whole_line(self):
        assert unit_refund_value(Decimal("100.00"), 3, 3, "USD") == Decimal("100.00")


class TestCollaboratorDefaults:
    def test_unknown_shipping_method(self):
        snapshot = build_snapshot([line()], "USD", shipping_method="TELEPORT")
        with pytest.raises(ShippingQuoteFailed):
            FlatRateShippingCalculator(rates={"STANDARD": Decimal("10")}).calculate(snapshot)

    def test_free_shipping_threshold(self):
        snapshot = build_snapshot([line()], "USD", shipping_method="STANDARD")
        calculator = FlatRateShippingCalculator(
            rates={"STANDARD": Decimal("10")}, free_threshold=Decimal("100")
        )
        assert calculator.calculate(snapshot) == Decimal("0.00")

    def test_percent_coupon(self):
        policy = CouponDiscountPolicy({"save10": {"type": "PERCENT", "value": "10"}})
        assert policy.discount_for("SAVE10", Decimal("80.00"), "USD") == Decimal("8.00")

    def test_fixed_coupon_capped_at_subtotal(self):
        policy = CouponDiscountPolicy({"BIG": {"type": "FIXED", "value": "500"}})
        assert policy.discount_for("big", Decimal("80.00"), "USD") == Decimal("80.00")

    def test_unknown_coupon(self):
        with pytest.raises(InvalidDiscountCode):
            CouponDiscountPolicy({}).discount_for("NOPE", Decimal("80.00"), "USD")
