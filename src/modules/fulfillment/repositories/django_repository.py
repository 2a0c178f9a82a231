"""Django ORM implementation of the fulfillment work queue.

Every state change is a conditional ``UPDATE ... WHERE state = <expected>``
(compare-and-swap) inside ``transaction.atomic``.  ``drain`` additionally
locks its candidate rows with ``SELECT ... FOR UPDATE SKIP LOCKED`` where
the backend supports it, so concurrent drains skip each other's rows
instead of blocking on them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count, Min
from django.utils import timezone

from modules.fulfillment.constants import (
    COMPLETION_STATES,
    OUTSTANDING_STATES,
    TERMINAL_STATES,
    RequestState,
)
from modules.fulfillment.dtos import EnqueueResult, QueueStatus
from modules.fulfillment.exceptions import QueueStorageError
from modules.fulfillment.models import FulfillmentRequest
from modules.fulfillment.repositories.interfaces import IFulfillmentQueue

logger = structlog.get_logger(__name__)


class FulfillmentQueueDjangoRepository(IFulfillmentQueue):
    """Concrete fulfillment queue backed by the ``fulfillment_requests`` table."""

    def __init__(
        self,
        requeue_delay: float = 60.0,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        self._requeue_delay = requeue_delay
        self._clock = clock

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def enqueue(self, order_id: UUID) -> EnqueueResult:
        now = self._clock()
        log = logger.bind(order_id=str(order_id))
        try:
            with transaction.atomic():
                existing = (
                    FulfillmentRequest.objects.select_for_update()
                    .filter(order_id=order_id)
                    .first()
                )
                if existing is None:
                    return self._insert(order_id, now, log)

                if existing.state in OUTSTANDING_STATES:
                    log.debug("fulfillment_queue.already_queued", state=existing.state)
                    return EnqueueResult(
                        order_id=order_id, queued=False, state=existing.state
                    )

                reopened = FulfillmentRequest.objects.filter(
                    pk=existing.pk, state=existing.state
                ).update(
                    state=RequestState.PENDING,
                    attempts=0,
                    enqueued_at=now,
                    scheduled_at=now,
                    last_attempt_at=None,
                    completed_at=None,
                    failure_reason="",
                    updated_at=now,
                )
        except DatabaseError as exc:
            log.error("fulfillment_queue.storage_error", op="enqueue", error=str(exc))
            raise QueueStorageError(
                f"Could not enqueue order {order_id}: {exc}"
            ) from exc

        if not reopened:
            # Someone else moved the row between our read and our update
            return EnqueueResult(order_id=order_id, queued=False, state=None)

        log.info("fulfillment_queue.reopened", previous_state=existing.state)
        return EnqueueResult(order_id=order_id, queued=True, state=RequestState.PENDING)

    def _insert(self, order_id: UUID, now: datetime, log) -> EnqueueResult:
        try:
            with transaction.atomic():
                FulfillmentRequest.objects.create(
                    order_id=order_id,
                    state=RequestState.PENDING,
                    enqueued_at=now,
                    scheduled_at=now,
                )
        except IntegrityError:
            # Lost an insert race: the winner's row is the one outstanding request
            current = (
                FulfillmentRequest.objects.filter(order_id=order_id)
                .values_list("state", flat=True)
                .first()
            )
            if current is None:
                raise
            log.debug("fulfillment_queue.insert_race", state=current)
            return EnqueueResult(order_id=order_id, queued=False, state=current)

        log.info("fulfillment_queue.enqueued")
        return EnqueueResult(order_id=order_id, queued=True, state=RequestState.PENDING)

    def drain(self, batch_size: int) -> Iterator[FulfillmentRequest]:
        if batch_size <= 0:
            return iter(())

        now = self._clock()
        try:
            with transaction.atomic():
                candidates = list(
                    FulfillmentRequest.objects.select_for_update(skip_locked=True)
                    .filter(state=RequestState.PENDING, scheduled_at__lte=now)
                    .order_by("enqueued_at", "id")
                    .values_list("pk", flat=True)[:batch_size]
                )
                claimed_ids = [pk for pk in candidates if self._claim(pk, now)]
                claimed = list(
                    FulfillmentRequest.objects.filter(pk__in=claimed_ids).order_by(
                        "enqueued_at", "id"
                    )
                )
        except DatabaseError as exc:
            logger.error("fulfillment_queue.storage_error", op="drain", error=str(exc))
            raise QueueStorageError(f"Could not drain the queue: {exc}") from exc

        logger.info(
            "fulfillment_queue.drained",
            requested=batch_size,
            candidates=len(candidates),
            claimed=len(claimed),
        )
        return iter(claimed)

    def _claim(self, pk: UUID, now: datetime) -> bool:
        """Flip one row PENDING -> IN_FLIGHT; ``False`` if another drain won."""
        return bool(
            FulfillmentRequest.objects.filter(pk=pk, state=RequestState.PENDING).update(
                state=RequestState.IN_FLIGHT, last_attempt_at=now, updated_at=now
            )
        )

    def complete(
        self, order_id: UUID, state: str, reason: Optional[str] = None
    ) -> bool:
        if state not in COMPLETION_STATES:
            raise ValueError(f"Cannot complete a request as {state!r}")

        now = self._clock()
        log = logger.bind(order_id=str(order_id), target_state=state)
        try:
            with transaction.atomic():
                request = (
                    FulfillmentRequest.objects.select_for_update()
                    .filter(order_id=order_id)
                    .first()
                )
                if request is None:
                    log.warning("fulfillment_queue.complete_unknown")
                    return False

                if request.state != RequestState.IN_FLIGHT:
                    if request.state == state and state in TERMINAL_STATES:
                        log.debug("fulfillment_queue.complete_replayed")
                    else:
                        log.warning(
                            "fulfillment_queue.complete_ignored",
                            current_state=request.state,
                        )
                    return False

                attempts = request.attempts + 1
                fields = {
                    "state": state,
                    "attempts": attempts,
                    "failure_reason": reason or "",
                    "updated_at": now,
                }
                if state == RequestState.PENDING:
                    backoff = self._requeue_delay * 2 ** (attempts - 1)
                    fields["scheduled_at"] = now + timedelta(seconds=backoff)
                    fields["completed_at"] = None
                else:
                    fields["completed_at"] = now

                updated = FulfillmentRequest.objects.filter(
                    pk=request.pk, state=RequestState.IN_FLIGHT
                ).update(**fields)
        except DatabaseError as exc:
            log.error("fulfillment_queue.storage_error", op="complete", error=str(exc))
            raise QueueStorageError(
                f"Could not complete request for order {order_id}: {exc}"
            ) from exc

        if updated:
            log.info("fulfillment_queue.completed", attempts=attempts, reason=reason)
        return bool(updated)

    def requeue_stale(self, older_than_seconds: float) -> int:
        now = self._clock()
        cutoff = now - timedelta(seconds=older_than_seconds)
        try:
            with transaction.atomic():
                released = FulfillmentRequest.objects.filter(
                    state=RequestState.IN_FLIGHT, last_attempt_at__lt=cutoff
                ).update(state=RequestState.PENDING, scheduled_at=now, updated_at=now)
        except DatabaseError as exc:
            logger.error(
                "fulfillment_queue.storage_error", op="requeue_stale", error=str(exc)
            )
            raise QueueStorageError(f"Could not release stale requests: {exc}") from exc

        if released:
            logger.warning("fulfillment_queue.stale_released", count=released)
        return released

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def status(self) -> QueueStatus:
        now = self._clock()
        try:
            rows = (
                FulfillmentRequest.objects.values("state")
                .annotate(total=Count("id"))
                .order_by()
            )
            counts = {row["state"]: row["total"] for row in rows}
            oldest = FulfillmentRequest.objects.filter(
                state=RequestState.PENDING
            ).aggregate(oldest=Min("enqueued_at"))["oldest"]
        except DatabaseError as exc:
            raise QueueStorageError(f"Could not read queue status: {exc}") from exc

        return QueueStatus(
            pending=counts.get(RequestState.PENDING, 0),
            in_flight=counts.get(RequestState.IN_FLIGHT, 0),
            succeeded=counts.get(RequestState.SUCCEEDED, 0),
            failed=counts.get(RequestState.FAILED, 0),
            skipped=counts.get(RequestState.SKIPPED, 0),
            oldest_pending_age_seconds=(
                max((now - oldest).total_seconds(), 0.0) if oldest else None
            ),
        )

    def get(self, order_id: UUID) -> Optional[FulfillmentRequest]:
        """Returns ``None`` for unknown or malformed IDs."""
        try:
            return FulfillmentRequest.objects.filter(order_id=order_id).first()
        except (ValueError, ValidationError):
            return None
        except DatabaseError as exc:
            raise QueueStorageError(
                f"Could not read request for order {order_id}: {exc}"
            ) from exc
