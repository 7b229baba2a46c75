"""Order domain exceptions.

Raised by the Service Layer when business rules are violated.  Every
exception derives from ``OrderError`` and carries an ``ErrorKind`` so
callers (HTTP layer, bulk operations, Celery tasks) can translate them
without inspecting concrete types.
"""

from __future__ import annotations

from typing import Any, Optional

from modules.core.exceptions import DomainError, ErrorKind


class OrderError(DomainError):
    """Base for every error raised by the order core."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class InvalidOrderRequest(OrderError):
    kind = ErrorKind.VALIDATION
    default_message = "The order request is invalid."


class AddressInvalid(InvalidOrderRequest):
    """Address missing, inactive, or not owned by the ordering customer."""

    default_message = "The address does not belong to the customer or cannot be used."


class InvalidQuantity(InvalidOrderRequest):
    default_message = "Quantity must be a positive integer."


class InvalidPaymentAmount(InvalidOrderRequest):
    default_message = "Payment amount is not valid for this order."


class InvalidRefundAmount(InvalidOrderRequest):
    default_message = "Refund amount exceeds the amount paid."


class PricingError(InvalidOrderRequest):
    """Totals could not be computed from the given inputs."""

    default_message = "Order totals could not be computed."


class InvalidCurrency(PricingError):
    default_message = "Unsupported currency code."


class CurrencyMismatch(PricingError):
    default_message = "All items must be priced in the order currency."


class InvalidDiscount(PricingError):
    default_message = "Discount exceeds the amount it applies to."


class InvalidDiscountCode(PricingError):
    default_message = "Unknown discount code."


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class OrderNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Order not found."


class OrderItemNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Order item not found."


class CustomerNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Customer not found."


class ProductNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Product not found."


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class PreconditionViolation(OrderError):
    kind = ErrorKind.PRECONDITION
    default_message = "The order is not in a state that allows this operation."


class InvalidStatusTransition(PreconditionViolation):
    """The state machine has no edge from ``from_status`` to ``to_status``."""

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        self.from_status = str(from_status)
        self.to_status = str(to_status)
        super().__init__(
            message or f"Cannot transition from {self.from_status} to {self.to_status}.",
            from_status=self.from_status,
            to_status=self.to_status,
        )


class AlreadyCancelled(PreconditionViolation):
    default_message = "The order is already cancelled."


class OrderNotEditable(PreconditionViolation):
    default_message = "The order can no longer be modified."


class OrderNotPaid(PreconditionViolation):
    default_message = "The order must be fully paid before it can ship."


class InactiveCustomer(PreconditionViolation):
    """The customer is inactive or suspended and cannot place orders (RN-CLI-003)."""

    default_message = "The customer cannot place orders."


class InactiveProduct(PreconditionViolation):
    """A product referenced by an order item is inactive (RN-PRO-002)."""

    default_message = "The product is not available for sale."


# ---------------------------------------------------------------------------
# Credit / conflict / collaborators / time
# ---------------------------------------------------------------------------


class CreditLimitExceeded(OrderError):
    kind = ErrorKind.CREDIT_LIMIT_EXCEEDED
    default_message = "The order exceeds the customer's available credit."


class ConcurrentModification(OrderError):
    kind = ErrorKind.CONFLICT
    default_message = "The order was modified concurrently. Please retry."
    retryable = True


class CollaboratorFailure(OrderError):
    kind = ErrorKind.COLLABORATOR_FAILURE
    default_message = "An external service failed."


class TaxCalculationFailed(CollaboratorFailure):
    default_message = "Tax could not be calculated."


class ShippingQuoteFailed(CollaboratorFailure):
    default_message = "Shipping could not be quoted."


class PaymentFailed(CollaboratorFailure):
    default_message = "The payment provider could not process the request."


class LockTimeout(OrderError):
    kind = ErrorKind.TIMEOUT
    default_message = "The order is busy. Please retry."
    retryable = True


class DeadlineExceeded(OrderError):
    kind = ErrorKind.TIMEOUT
    default_message = "The operation did not complete before its deadline."
    retryable = True


class OperationCancelled(OrderError):
    kind = ErrorKind.TIMEOUT
    default_message = "The operation was cancelled."


class ServiceOverloaded(OrderError):
    kind = ErrorKind.TIMEOUT
    default_message = "Too many concurrent order operations. Please retry."
    retryable = True


class InternalError(OrderError):
    """Unexpected failure; only the correlation id is exposed."""

    kind = ErrorKind.INTERNAL
    default_message = "An internal error occurred."

    def __init__(self, correlation_id: str, **details: Any) -> None:
        self.correlation_id = correlation_id
        super().__init__(
            f"An internal error occurred (reference {correlation_id}).",
            correlation_id=correlation_id,
            **details,
        )
