"""Background tasks of the orders module."""

from __future__ import annotations

from typing import Any, Dict

import structlog
from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail

logger = structlog.get_logger(__name__)

SUBJECTS = {
    "OrderCreated": "Order {order_number} received",
    "OrderUpdated": "Order {order_number} updated",
    "OrderStatusChanged": "Order {order_number} is now {new_status}",
    "OrderCancelled": "Order {order_number} cancelled",
    "OrderShipped": "Order {order_number} shipped",
    "OrderDelivered": "Order {order_number} delivered",
    "PaymentReceived": "Payment received for order {order_number}",
    "PaymentDeclined": "Payment declined for order {order_number}",
    "OrderRefunded": "Refund issued for order {order_number}",
    "ItemsReturned": "Return recorded for order {order_number}",
}


@shared_task(
    name="orders.send_order_notification",
    autoretry_for=(OSError,),
    retry_backoff=True,
    max_retries=3,
)
def send_order_notification(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Email the customer about an order event.

    ``payload`` is ``OrderEvent.to_payload()``.  Runs after the producing
    transaction committed; the order may have changed again since.
    """
    from modules.orders.models import Order
    from modules.orders.money import format_money

    event_name = payload.get("event_name", "")
    log = logger.bind(order_id=payload.get("aggregate_id"), event_name=event_name)

    order = Order.objects.select_related("customer").filter(id=payload.get("aggregate_id")).first()
    if order is None:
        log.warning("order.notification_skipped", reason="order_not_found")
        return {"status": "skipped"}

    template = SUBJECTS.get(event_name, "Order {order_number} update")
    subject = template.format(
        order_number=order.order_number,
        new_status=payload.get("new_status", order.status),
    )
    body = (
        f"Order {order.order_number}\n"
        f"Status: {order.status}\n"
        f"Total: {format_money(order.total_amount, order.currency)} {order.currency}\n"
    )
    send_mail(
        subject,
        body,
        settings.DEFAULT_FROM_EMAIL,
        [order.customer.email],
    )
    log.info("order.notification_sent")
    return {"status": "sent", "subject": subject}
