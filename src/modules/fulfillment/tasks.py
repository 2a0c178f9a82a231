"""Celery tasks of the fulfillment module.

``drain_queue`` and ``sweep_unsynced`` run on the beat schedule
(``CELERY_BEAT_SCHEDULE``); ``enqueue_order`` lets other processes hand an
order over without touching the queue table themselves.
"""

from uuid import UUID

import structlog
from celery import shared_task

from modules.core.middleware import bind_correlation_id
from modules.fulfillment.exceptions import QueueStorageError
from modules.fulfillment.services import build_fulfillment_service
from modules.orders.exceptions import OrderNotFound

logger = structlog.get_logger(__name__)


@shared_task(name="fulfillment.drain_queue")
def drain_queue(batch_size=None):
    """Release stale claims, then drain one batch through the orchestrator."""
    bind_correlation_id(task="fulfillment.drain_queue")
    service = build_fulfillment_service()
    released = service.release_stale()
    summary = service.trigger_drain(batch_size)
    return {**summary.as_report(), "released_stale": released}


@shared_task(name="fulfillment.sweep_unsynced")
def sweep_unsynced(limit=None):
    """Re-queue delivered Shopify orders whose sync never completed."""
    bind_correlation_id(task="fulfillment.sweep_unsynced")
    results = build_fulfillment_service().sweep_unsynced_orders(limit)
    return {
        "found": len(results),
        "queued": sum(1 for result in results if result.queued),
    }


@shared_task(
    name="fulfillment.enqueue_order",
    autoretry_for=(QueueStorageError,),
    retry_backoff=True,
    max_retries=5,
)
def enqueue_order(order_id):
    bind_correlation_id(task="fulfillment.enqueue_order", order_id=str(order_id))
    try:
        result = build_fulfillment_service().enqueue_order_for_sync(UUID(str(order_id)))
    except OrderNotFound as exc:
        logger.warning("fulfillment.enqueue_unknown_order", error=str(exc))
        return {"order_id": str(order_id), "queued": False, "error": str(exc)}
    return result.model_dump(mode="json")
