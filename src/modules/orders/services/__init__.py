"""Order Service Layer.

``OrderService`` is the single entry point for order operations.  Each
capability lives in its own mixin over ``OrderServiceBase``, which owns
the injected repositories and collaborators and the mutation envelope
(limiter, striped lock, row lock, retry, deadline, post-commit events).
"""

from modules.orders.services.base import OrderServiceBase
from modules.orders.services.bulk import BulkOps
from modules.orders.services.fulfillment import FulfillmentOps
from modules.orders.services.items import ItemOps
from modules.orders.services.lifecycle import LifecycleOps
from modules.orders.services.payments import PaymentOps
from modules.orders.services.queries import QueryOps


class OrderService(LifecycleOps, FulfillmentOps, PaymentOps, ItemOps, BulkOps, QueryOps):
    """Order orchestration: lifecycle, fulfilment, payments, items, bulk, queries."""


__all__ = ["OrderService", "OrderServiceBase"]
