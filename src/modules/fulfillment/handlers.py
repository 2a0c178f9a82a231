"""Event handlers that feed the fulfillment queue."""

from __future__ import annotations

import structlog
from django.conf import settings
from kombu.exceptions import OperationalError

from modules.fulfillment.exceptions import QueueStorageError
from modules.fulfillment.repositories import FulfillmentQueueDjangoRepository
from modules.fulfillment.tasks import drain_queue
from modules.orders.events import OrderDelivered
from shared.domain.bus import IEventHandler

logger = structlog.get_logger(__name__)


class OrderDeliveredHandler(IEventHandler[OrderDelivered]):
    """Queue a delivered order for Shopify sync.

    The event fires after the delivery transaction commits, so a failing
    queue or an unreachable broker must not fail the driver's request.
    A lost enqueue is logged and the periodic sweep picks the order up
    again (its ``sync_status`` is still ``PENDING``); a drain that could not
    be scheduled is logged and left to the beat schedule.
    """

    def handle(self, event: OrderDelivered) -> None:
        log = logger.bind(
            order_id=str(event.aggregate_id), order_number=event.order_number
        )
        conf = settings.FULFILLMENT_SYNC
        queue = FulfillmentQueueDjangoRepository(
            requeue_delay=conf.get("REQUEUE_DELAY", 60.0)
        )
        try:
            result = queue.enqueue(event.aggregate_id)
        except QueueStorageError as exc:
            log.error("fulfillment.enqueue_lost", error=str(exc))
            return

        log.info("fulfillment.order_delivered_queued", queued=result.queued)
        if result.queued and conf.get("DRAIN_ON_EVENT", False):
            try:
                drain_queue.delay()
            except OperationalError as exc:
                # Broker down; the scheduled drain picks the order up
                log.error("fulfillment.drain_schedule_failed", error=str(exc))


order_delivered_handler = OrderDeliveredHandler()
