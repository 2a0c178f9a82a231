"""Fulfillment sync services.

``FulfillmentOrchestrator`` processes one claimed queue item end to end:
load the order and its connection, call Shopify through the gateway, then
turn whatever happened into durable state (order outcome columns first,
queue state second).  It never raises a client error across the queue
boundary.

``FulfillmentSyncService`` is the inbound facade used by the event
handler, the Celery tasks and the API views.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Union
from uuid import UUID

import requests
import structlog
from django.conf import settings
from django.db import connections
from django.utils import timezone

from modules.fulfillment.client import ResilientClient
from modules.fulfillment.constants import RequestState
from modules.fulfillment.dtos import (
    DrainSummary,
    EnqueueResult,
    FulfillmentOutcome,
    OrderSyncStatus,
    QueueStatus,
    RetryPolicy,
)
from modules.fulfillment.exceptions import (
    ClientError,
    QueueStorageError,
    RetriesExhausted,
)
from modules.fulfillment.gateway import ShopifyFulfillmentGateway, tracking_number_for
from modules.fulfillment.repositories import FulfillmentQueueDjangoRepository
from modules.orders.constants import OrderStatus
from modules.orders.exceptions import OrderNotFound
from modules.orders.repositories import OrderDjangoRepository
from modules.shopify.repositories import ConnectionDjangoRepository

if TYPE_CHECKING:
    from modules.fulfillment.models import FulfillmentRequest
    from modules.fulfillment.repositories.interfaces import IFulfillmentQueue
    from modules.orders.repositories.interfaces import IOrderRepository
    from modules.shopify.repositories.interfaces import IConnectionRepository

logger = structlog.get_logger(__name__)


class FulfillmentOrchestrator:
    def __init__(
        self,
        queue: IFulfillmentQueue,
        order_repository: IOrderRepository,
        connection_repository: IConnectionRepository,
        gateway: ShopifyFulfillmentGateway,
        max_drain_cycles: int = 5,
        max_workers: int = 5,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        self._queue = queue
        self._order_repo = order_repository
        self._connection_repo = connection_repository
        self._gateway = gateway
        self._max_drain_cycles = max_drain_cycles
        self._max_workers = max_workers
        self._clock = clock

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    def process(self, request: FulfillmentRequest) -> FulfillmentOutcome:
        """Sync one claimed (``IN_FLIGHT``) request and complete it.

        Raises:
            QueueStorageError: the queue could not record the outcome.
        """
        order_id = request.order_id
        cycle = request.attempts + 1
        log = logger.bind(order_id=str(order_id), cycle=cycle)
        log.info("fulfillment.processing")

        order = self._order_repo.get_by_id(order_id)
        if order is None:
            return self._fail(order_id, cycle, "order missing", record=False)
        if not order.is_shopify_order:
            return self._skip(order_id, cycle, "order is not linked to Shopify")
        if order.status != OrderStatus.DELIVERED:
            return self._skip(order_id, cycle, f"order is {order.status}")

        credentials = self._connection_repo.get_credentials(order.shopify_connection_id)
        if credentials is None:
            return self._fail(order_id, cycle, "connection missing")
        if not credentials.is_active:
            return self._skip(order_id, cycle, "connection inactive")

        tracking_number = tracking_number_for(
            order.order_number, order.tracking_number
        )
        try:
            confirmation = self._gateway.fulfill(
                credentials, order.shopify_order_id, tracking_number
            )
        except RetriesExhausted as exc:
            if cycle < self._max_drain_cycles:
                self._queue.complete(order_id, RequestState.PENDING, str(exc))
                log.warning("fulfillment.requeued", reason=str(exc))
                return FulfillmentOutcome(
                    order_id=order_id,
                    state=RequestState.PENDING,
                    reason=str(exc),
                    attempts=cycle,
                )
            return self._fail(
                order_id, cycle, f"{exc} (gave up after {cycle} sync cycles)"
            )
        except ClientError as exc:
            return self._fail(order_id, cycle, str(exc))

        fulfilled_at = self._clock()
        fulfillment_id = confirmation.fulfillment_id or None
        self._order_repo.record_fulfillment(order_id, fulfillment_id, fulfilled_at)
        self._queue.complete(order_id, RequestState.SUCCEEDED)
        log.info(
            "fulfillment.succeeded",
            fulfillment_id=fulfillment_id,
            tracking_number=tracking_number,
            already_fulfilled=confirmation.already_fulfilled,
        )
        return FulfillmentOutcome(
            order_id=order_id,
            state=RequestState.SUCCEEDED,
            fulfillment_id=fulfillment_id,
            fulfilled_at=fulfilled_at,
            reason="already fulfilled" if confirmation.already_fulfilled else "",
            attempts=cycle,
        )

    def _fail(
        self, order_id: UUID, cycle: int, reason: str, record: bool = True
    ) -> FulfillmentOutcome:
        if record:
            self._order_repo.record_sync_failure(order_id, reason)
        self._queue.complete(order_id, RequestState.FAILED, reason)
        logger.error("fulfillment.failed", order_id=str(order_id), reason=reason)
        return FulfillmentOutcome(
            order_id=order_id, state=RequestState.FAILED, reason=reason, attempts=cycle
        )

    def _skip(self, order_id: UUID, cycle: int, reason: str) -> FulfillmentOutcome:
        self._order_repo.record_sync_skipped(order_id, reason)
        self._queue.complete(order_id, RequestState.SKIPPED, reason)
        logger.info("fulfillment.skipped", order_id=str(order_id), reason=reason)
        return FulfillmentOutcome(
            order_id=order_id, state=RequestState.SKIPPED, reason=reason, attempts=cycle
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def run(self, items: Iterable[FulfillmentRequest]) -> DrainSummary:
        """Process a drained batch on a bounded worker pool.

        One failing item never aborts the others: an unexpected exception
        is logged and the item is completed as ``FAILED``.  A queue storage
        failure does not stop the batch either; the remaining items are
        still processed and the first such error is raised afterwards.
        """
        batch = list(items)
        if not batch:
            return DrainSummary()

        if self._max_workers <= 1 or len(batch) == 1:
            results = [self._attempt(request) for request in batch]
        else:
            workers = min(self._max_workers, len(batch))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="fulfillment"
            ) as pool:
                results = list(pool.map(self._attempt_in_worker, batch))

        outcomes = [r for r in results if isinstance(r, FulfillmentOutcome)]
        storage_errors = [r for r in results if isinstance(r, QueueStorageError)]
        if storage_errors:
            logger.error(
                "fulfillment.batch_storage_errors",
                errors=len(storage_errors),
                processed=len(outcomes),
            )
            raise storage_errors[0]
        return DrainSummary(outcomes=outcomes)

    def _attempt_in_worker(
        self, request: FulfillmentRequest
    ) -> Union[FulfillmentOutcome, QueueStorageError]:
        try:
            return self._attempt(request)
        finally:
            connections.close_all()

    def _attempt(
        self, request: FulfillmentRequest
    ) -> Union[FulfillmentOutcome, QueueStorageError]:
        try:
            return self._process_safely(request)
        except QueueStorageError as exc:
            return exc

    def _process_safely(self, request: FulfillmentRequest) -> FulfillmentOutcome:
        try:
            return self.process(request)
        except QueueStorageError:
            raise
        except Exception as exc:
            logger.exception(
                "fulfillment.unexpected_error", order_id=str(request.order_id)
            )
            reason = f"Unexpected error: {exc}"
            try:
                self._order_repo.record_sync_failure(request.order_id, reason)
            except Exception:
                logger.exception(
                    "fulfillment.outcome_write_failed", order_id=str(request.order_id)
                )
            self._queue.complete(request.order_id, RequestState.FAILED, reason)
            return FulfillmentOutcome(
                order_id=request.order_id,
                state=RequestState.FAILED,
                reason=reason,
                attempts=request.attempts + 1,
            )


class FulfillmentSyncService:
    def __init__(
        self,
        queue: IFulfillmentQueue,
        orchestrator: FulfillmentOrchestrator,
        order_repository: IOrderRepository,
        batch_size: int = 10,
        sweep_limit: int = 50,
        stale_after: float = 600.0,
    ) -> None:
        self._queue = queue
        self._orchestrator = orchestrator
        self._order_repo = order_repository
        self._batch_size = batch_size
        self._sweep_limit = sweep_limit
        self._stale_after = stale_after

    def enqueue_order_for_sync(self, order_id: UUID) -> EnqueueResult:
        """Queue one order for Shopify sync.

        Raises:
            OrderNotFound: order does not exist.
            QueueStorageError: the queue's backing store failed.
        """
        if self._order_repo.get_by_id(order_id) is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        return self._queue.enqueue(order_id)

    def enqueue_orders(self, order_ids: Iterable[UUID]) -> List[EnqueueResult]:
        """Queue several orders; unknown orders are reported per item."""
        results = []
        for order_id in order_ids:
            try:
                results.append(self.enqueue_order_for_sync(order_id))
            except OrderNotFound as exc:
                results.append(
                    EnqueueResult(order_id=order_id, success=False, error=str(exc))
                )
        return results

    def trigger_drain(self, batch_size: Optional[int] = None) -> DrainSummary:
        size = batch_size or self._batch_size
        logger.info("fulfillment.drain_started", batch_size=size)
        summary = self._orchestrator.run(self._queue.drain(size))
        logger.info(
            "fulfillment.drain_finished",
            processed=summary.processed,
            succeeded=summary.count(RequestState.SUCCEEDED),
            failed=summary.count(RequestState.FAILED),
            skipped=summary.count(RequestState.SKIPPED),
            requeued=summary.count(RequestState.PENDING),
        )
        return summary

    def get_queue_status(self) -> QueueStatus:
        return self._queue.status()

    def get_order_sync_status(self, order_id: UUID) -> OrderSyncStatus:
        """Raises ``OrderNotFound`` for unknown orders."""
        order = self._order_repo.get_by_id(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        request = self._queue.get(order_id)
        return OrderSyncStatus(
            order_id=order.id,
            order_number=order.order_number,
            sync_status=order.sync_status,
            sync_error=order.sync_error,
            shopify_order_id=order.shopify_order_id,
            shopify_fulfillment_id=order.shopify_fulfillment_id,
            shopify_fulfilled_at=order.shopify_fulfilled_at,
            request_state=request.state if request else None,
            attempts=request.attempts if request else 0,
            enqueued_at=request.enqueued_at if request else None,
            last_attempt_at=request.last_attempt_at if request else None,
            failure_reason=request.failure_reason if request else "",
        )

    def sweep_unsynced_orders(self, limit: Optional[int] = None) -> List[EnqueueResult]:
        """Queue delivered Shopify orders whose sync never completed."""
        order_ids = self._order_repo.list_pending_sync(limit or self._sweep_limit)
        results = [self._queue.enqueue(order_id) for order_id in order_ids]
        logger.info(
            "fulfillment.sweep_finished",
            found=len(order_ids),
            queued=sum(1 for result in results if result.queued),
        )
        return results

    def release_stale(self) -> int:
        """Return requests stuck ``IN_FLIGHT`` (crashed worker) to the queue."""
        return self._queue.requeue_stale(self._stale_after)


def build_fulfillment_service(
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FulfillmentSyncService:
    """Wire the sync service from Django repositories and ``FULFILLMENT_SYNC``."""
    conf = settings.FULFILLMENT_SYNC
    client = ResilientClient(
        session=session,
        sleep=sleep,
        user_agent=conf.get("USER_AGENT", "DeliveryOS/1.0"),
    )
    gateway = ShopifyFulfillmentGateway(
        client=client,
        policy=RetryPolicy.from_settings(conf),
        api_version=conf.get("API_VERSION", "2023-10"),
        tracking_company=conf.get("TRACKING_COMPANY", "DeliveryOS Local Delivery"),
        notify_customer=conf.get("NOTIFY_CUSTOMER", True),
    )
    queue = FulfillmentQueueDjangoRepository(
        requeue_delay=conf.get("REQUEUE_DELAY", 60.0)
    )
    order_repository = OrderDjangoRepository()
    orchestrator = FulfillmentOrchestrator(
        queue=queue,
        order_repository=order_repository,
        connection_repository=ConnectionDjangoRepository(),
        gateway=gateway,
        max_drain_cycles=conf.get("MAX_DRAIN_CYCLES", 5),
        max_workers=conf.get("WORKERS", 5),
    )
    return FulfillmentSyncService(
        queue=queue,
        orchestrator=orchestrator,
        order_repository=order_repository,
        batch_size=conf.get("BATCH_SIZE", 10),
        sweep_limit=conf.get("SWEEP_LIMIT", 50),
        stale_after=conf.get("STALE_AFTER", 600.0),
    )
