"""Order state machine.

``transition()`` is a pure function of the order snapshot and the target
status: it either returns the target status or raises.  It never writes;
the service applies the side effects and persists.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional, Protocol

import structlog

from modules.orders.constants import (
    FROZEN_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OrderStatus,
)
from modules.orders.exceptions import (
    InvalidStatusTransition,
    OrderNotPaid,
    PreconditionViolation,
)

logger = structlog.get_logger(__name__)


class ItemProgress(Protocol):
    quantity: int
    shipped_qty: int


class OrderSnapshot(Protocol):
    status: str
    paid_amount: Decimal
    total_amount: Decimal


def allowed_targets(status: str) -> frozenset[str]:
    return frozenset(VALID_TRANSITIONS.get(status, set()))


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def is_frozen(status: str) -> bool:
    """Monetary and item fields are read-only in this status."""
    return status in FROZEN_STATES


def transition(
    order: OrderSnapshot,
    target: str,
    items: Optional[Iterable[ItemProgress]] = None,
    actor_id: str = "",
) -> str:
    """Validate moving *order* to *target* and return the new status.

    Raises:
        InvalidStatusTransition: the graph has no edge current -> target.
        OrderNotPaid: shipping in full before the order is fully paid.
        PreconditionViolation: delivering before every unit shipped, or
            submitting a draft with no items.
    """
    current = order.status
    if not can_transition(current, target):
        logger.warning(
            "order.invalid_transition",
            from_status=current,
            to_status=target,
            actor_id=actor_id,
        )
        raise InvalidStatusTransition(current, target)

    if target == OrderStatus.SHIPPED and order.paid_amount < order.total_amount:
        raise OrderNotPaid(
            paid_amount=order.paid_amount, total_amount=order.total_amount
        )

    if target == OrderStatus.DELIVERED and items is not None:
        pending = [item for item in items if item.shipped_qty != item.quantity]
        if pending:
            raise PreconditionViolation(
                "Every item must be shipped before the order is delivered.",
                unshipped_items=len(pending),
            )

    if (
        current == OrderStatus.DRAFT
        and target == OrderStatus.PENDING
        and items is not None
        and not list(items)
    ):
        raise PreconditionViolation("An order needs at least one item to be submitted.")

    return target
