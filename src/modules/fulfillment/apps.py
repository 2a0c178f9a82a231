from django.apps import AppConfig


class FulfillmentConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.fulfillment"
    label = "fulfillment"

    def ready(self) -> None:
        from modules.fulfillment.handlers import order_delivered_handler
        from modules.orders.events import OrderDelivered
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(OrderDelivered, order_delivered_handler)
