"""Order repository interface.

Extends ``IRepository[Order]`` with what the order core needs from a
transactional store: row locks on the order, a per-year order number
counter, the status audit trail, shipments and payment records.

Every method is called inside the caller's ``transaction.atomic()``
block; the service owns the unit of work.
"""

from __future__ import annotations

from abc import abstractmethod
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from modules.core.repositories.interfaces import IRepository

if TYPE_CHECKING:
    from modules.orders.models import (
        Order,
        OrderAddress,
        OrderItem,
        OrderPayment,
        OrderReturn,
        OrderShipment,
        OrderStatusHistory,
    )


class IOrderRepository(IRepository["Order"]):
    """Repository contract for the Order aggregate root.

    The aggregate includes OrderItem, OrderAddress, OrderShipment and
    OrderPayment children plus OrderStatusHistory records.
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order with prefetched items, addresses and history."""

    @abstractmethod
    def get_for_update(self, id: str) -> Optional[Order]:
        """Retrieve an order holding its row lock until the transaction ends."""

    @abstractmethod
    def get_by_number(self, order_number: str) -> Optional[Order]:
        """Retrieve an order by its ``YYYY-NNNNNN`` business key."""

    @abstractmethod
    def list(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        """List orders with optional filters, newest first."""

    @abstractmethod
    def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count orders matching *filters*."""

    @abstractmethod
    def history(self, order_id: UUID) -> List[OrderStatusHistory]:
        """Status audit trail, oldest first."""

    @abstractmethod
    def outstanding_balance(
        self, customer_id: UUID, exclude_order_id: Optional[UUID] = None
    ) -> Decimal:
        """Unpaid total over the customer's open orders (credit in use)."""

    @abstractmethod
    def find_payment(
        self, order_id: UUID, kind: str, client_nonce: str
    ) -> Optional[OrderPayment]:
        """Previously recorded payment/refund with the same nonce, if any."""

    @abstractmethod
    def find_return(self, order_id: UUID, client_nonce: str) -> Optional[OrderReturn]:
        """Previously recorded return with the same nonce, if any."""

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @abstractmethod
    def next_order_number(self, year: int) -> str:
        """Allocate the next ``YYYY-NNNNNN`` number for *year*.

        The counter row stays locked until the surrounding transaction
        ends, so two concurrent creates never get the same number.
        """

    @abstractmethod
    def save(self, order: Order, update_fields: Optional[Sequence[str]] = None) -> Order:
        """Insert or update the order row."""

    @abstractmethod
    def save_items(self, items: Iterable[OrderItem]) -> None:
        """Insert or update item rows."""

    @abstractmethod
    def delete_item(self, item: OrderItem) -> None:
        """Remove an item row (only while the order is still editable)."""

    @abstractmethod
    def replace_addresses(self, order: Order, addresses: Iterable[OrderAddress]) -> None:
        """Replace the order's address snapshots."""

    @abstractmethod
    def lock_addresses(self, order_id: UUID) -> int:
        """Stamp ``locked_at`` on every address snapshot; returns the count."""

    @abstractmethod
    def add_history(
        self,
        order_id: UUID,
        new_status: str,
        old_status: Optional[str] = None,
        actor_id: str = "",
        notes: str = "",
    ) -> OrderStatusHistory:
        """Record a status change in the order's audit trail."""

    @abstractmethod
    def add_shipment(
        self,
        order_id: UUID,
        lines: Sequence[Tuple[OrderItem, int]],
        tracking_number: str = "",
        carrier: str = "",
        actor_id: str = "",
    ) -> OrderShipment:
        """Record one shipment and its lines."""

    @abstractmethod
    def add_payment(self, payment: OrderPayment) -> OrderPayment:
        """Append a payment or refund record."""

    @abstractmethod
    def add_return(self, order_return: OrderReturn) -> OrderReturn:
        """Record one processed return request."""
