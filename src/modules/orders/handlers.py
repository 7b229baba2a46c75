"""Event handlers for Orders domain events."""

from __future__ import annotations

from typing import Optional

import structlog

from modules.orders.collaborators import CeleryNotificationService, NotificationService
from modules.orders.events import OrderEvent
from shared.domain.bus import IEventHandler

logger = structlog.get_logger(__name__)


class OrderNotificationHandler(IEventHandler[OrderEvent]):
    """Forwards committed order events to the notification service.

    Notification is best-effort: a failure here is logged and never
    reaches the caller whose transaction already committed.
    """

    def __init__(self, notifier: Optional[NotificationService] = None) -> None:
        self.notifier = notifier or CeleryNotificationService()

    def handle(self, event: OrderEvent) -> None:
        try:
            self.notifier.notify(event)
        except Exception:
            logger.exception(
                "order.notification_failed",
                order_id=str(event.aggregate_id),
                event_name=event.event_name,
            )


order_notification_handler = OrderNotificationHandler()
