"""Order domain constants.

Defines the status, payment and classification choices plus the valid
status transitions for the order state machine.
"""

from django.db import models


class OrderStatus(models.TextChoices):
    DRAFT = "DRAFT", "Draft"
    PENDING = "PENDING", "Pending"
    CONFIRMED = "CONFIRMED", "Confirmed"
    ON_HOLD = "ON_HOLD", "On hold"
    PROCESSING = "PROCESSING", "Processing"
    PARTIALLY_SHIPPED = "PARTIALLY_SHIPPED", "Partially shipped"
    SHIPPED = "SHIPPED", "Shipped"
    DELIVERED = "DELIVERED", "Delivered"
    CANCELLED = "CANCELLED", "Cancelled"
    REFUNDED = "REFUNDED", "Refunded"


class PaymentStatus(models.TextChoices):
    UNPAID = "UNPAID", "Unpaid"
    PARTIALLY_PAID = "PARTIALLY_PAID", "Partially paid"
    PAID = "PAID", "Paid"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED", "Partially refunded"
    REFUNDED = "REFUNDED", "Refunded"
    FAILED = "FAILED", "Failed"


class OrderType(models.TextChoices):
    SALES = "SALES", "Sales"
    RETURN = "RETURN", "Return"
    EXCHANGE = "EXCHANGE", "Exchange"


class Priority(models.TextChoices):
    LOW = "LOW", "Low"
    NORMAL = "NORMAL", "Normal"
    HIGH = "HIGH", "High"
    URGENT = "URGENT", "Urgent"


class ShippingMethod(models.TextChoices):
    STANDARD = "STANDARD", "Standard"
    EXPRESS = "EXPRESS", "Express"
    OVERNIGHT = "OVERNIGHT", "Overnight"
    INTERNATIONAL = "INTERNATIONAL", "International"
    PICKUP = "PICKUP", "Pickup"
    DIGITAL = "DIGITAL", "Digital"


class OrderAddressType(models.TextChoices):
    SHIPPING = "SHIPPING", "Shipping"
    BILLING = "BILLING", "Billing"


class PaymentKind(models.TextChoices):
    PAYMENT = "PAYMENT", "Payment"
    REFUND = "REFUND", "Refund"


class DiscountType(models.TextChoices):
    ITEM_DISCOUNT = "ITEM_DISCOUNT", "Item discount"
    ORDER_DISCOUNT = "ORDER_DISCOUNT", "Order discount"
    COUPON = "COUPON", "Coupon"


class PaymentRecordStatus(models.TextChoices):
    APPROVED = "APPROVED", "Approved"
    DECLINED = "DECLINED", "Declined"


VALID_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.DRAFT: {OrderStatus.PENDING, OrderStatus.CANCELLED},
    OrderStatus.PENDING: {
        OrderStatus.CONFIRMED,
        OrderStatus.ON_HOLD,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.ON_HOLD,
        OrderStatus.CANCELLED,
    },
    OrderStatus.ON_HOLD: {
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.PARTIALLY_SHIPPED,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PARTIALLY_SHIPPED: {
        OrderStatus.PARTIALLY_SHIPPED,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

TERMINAL_STATES: set[str] = {OrderStatus.CANCELLED, OrderStatus.REFUNDED}

# Monetary and item fields may not change once an order reaches one of
# these.  Delivered still accepts refunds (Delivered -> Refunded).
FROZEN_STATES: set[str] = {
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
}

ITEM_EDITABLE_STATES: set[str] = {OrderStatus.DRAFT, OrderStatus.PENDING}

METADATA_EDITABLE_STATES: set[str] = {
    OrderStatus.DRAFT,
    OrderStatus.PENDING,
    OrderStatus.ON_HOLD,
}

SHIPPABLE_STATES: set[str] = {
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PARTIALLY_SHIPPED,
}

RETURNABLE_STATES: set[str] = {OrderStatus.SHIPPED, OrderStatus.DELIVERED}

PAYABLE_STATES: set[str] = {
    OrderStatus.DRAFT,
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.ON_HOLD,
    OrderStatus.PROCESSING,
    OrderStatus.PARTIALLY_SHIPPED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
}

# Orders in these states do not count towards a customer's used credit.
CREDIT_EXEMPT_STATES: set[str] = {OrderStatus.CANCELLED, OrderStatus.REFUNDED}

ORDER_NUMBER_SEQUENCE_DIGITS = 6
