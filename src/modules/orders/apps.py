from django.apps import AppConfig


class OrdersConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.orders"
    label = "orders"

    def ready(self) -> None:
        from modules.orders.events import ORDER_EVENTS
        from modules.orders.handlers import order_notification_handler
        from shared.infrastructure.bus import event_bus

        for event_class in ORDER_EVENTS:
            event_bus.subscribe(event_class, order_notification_handler)
