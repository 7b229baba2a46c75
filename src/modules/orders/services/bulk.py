"""Bulk status changes.

Orders are processed one at a time in ascending id order, each in its own
transaction, so one failure never rolls back another and two bulk calls
over overlapping sets always lock in the same order.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional
from uuid import UUID

import structlog

from modules.core.exceptions import DomainError, ErrorKind
from modules.orders.concurrency import OperationContext
from modules.orders.dtos import BulkItemResult, BulkResult
from modules.orders.services.base import OrderServiceBase

logger = structlog.get_logger(__name__)


class BulkOps(OrderServiceBase):
    def bulk_update_status(
        self,
        order_ids: Iterable[UUID | str],
        new_status: str,
        context: Optional[OperationContext] = None,
        notes: str = "",
    ) -> BulkResult:
        """Apply ``update_status`` to every order; failures are reported, not raised.

        Each order gets its own deadline derived from *context*; cancelling
        *context* stops the orders not yet processed.
        """
        self._parse_status(new_status)
        return self._bulk(
            "bulk_update_status",
            order_ids,
            lambda order_id, ctx: self.update_status(order_id, new_status, ctx, notes=notes),
            context,
        )

    def bulk_cancel(
        self,
        order_ids: Iterable[UUID | str],
        reason: str = "",
        refund: bool = False,
        context: Optional[OperationContext] = None,
    ) -> BulkResult:
        return self._bulk(
            "bulk_cancel",
            order_ids,
            lambda order_id, ctx: self.cancel_order(
                order_id, reason=reason, refund=refund, context=ctx
            ),
            context,
        )

    def _bulk(
        self,
        operation: str,
        order_ids: Iterable[UUID | str],
        apply: Callable[[UUID, OperationContext], object],
        context: Optional[OperationContext],
    ) -> BulkResult:
        context = context or OperationContext.with_timeout()
        log = logger.bind(operation=operation, correlation_id=context.correlation_id)

        results: List[BulkItemResult] = []
        valid: List[UUID] = []
        for raw in dict.fromkeys(str(order_id) for order_id in order_ids):
            try:
                valid.append(UUID(raw))
            except ValueError:
                results.append(
                    BulkItemResult(
                        order_id=raw,
                        ok=False,
                        error_kind=ErrorKind.VALIDATION.value,
                        error_message="Not a valid order id.",
                    )
                )

        for order_id in sorted(valid, key=str):
            try:
                apply(order_id, context.derive())
            except DomainError as exc:
                results.append(
                    BulkItemResult(
                        order_id=str(order_id),
                        ok=False,
                        error_kind=exc.kind.value,
                        error_message=exc.message,
                    )
                )
            else:
                results.append(BulkItemResult(order_id=str(order_id), ok=True))

        result = BulkResult.from_results(results)
        log.info(
            "order.bulk_completed",
            succeeded_count=result.succeeded_count,
            failed_count=result.failed_count,
        )
        return result
