"""Django ORM implementation of the Order repository.

Outcome writes use ``QuerySet.update`` so they touch only the sync
columns and never race with a concurrent save of delivery fields.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from modules.orders.constants import OrderStatus, SyncStatus
from modules.orders.models import Order
from modules.orders.repositories.interfaces import IOrderRepository

logger = structlog.get_logger(__name__)


class OrderDjangoRepository(IOrderRepository):
    """Concrete Order repository backed by Django ORM."""

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, id: UUID) -> Optional[Order]:
        """Returns ``None`` for non-existent or malformed IDs."""
        try:
            return (
                Order.objects.select_related("shopify_connection")
                .filter(id=id)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    def get_for_update(self, id: UUID) -> Optional[Order]:
        try:
            return Order.objects.select_for_update().filter(id=id).first()
        except (ValueError, ValidationError):
            return None

    def list_pending_sync(self, limit: int) -> List[UUID]:
        queryset = (
            Order.objects.filter(
                status=OrderStatus.DELIVERED,
                sync_status=SyncStatus.PENDING,
                shopify_order_id__isnull=False,
                shopify_connection__isnull=False,
            )
            .exclude(shopify_order_id="")
            .order_by("completed_at", "id")
            .values_list("id", flat=True)
        )
        return list(queryset[:limit])

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    @transaction.atomic
    def save(self, entity: Order) -> Order:
        entity.save()
        logger.info("order.saved", order_id=str(entity.id), status=entity.status)
        return entity

    def record_fulfillment(
        self, id: UUID, fulfillment_id: Optional[str], fulfilled_at: datetime
    ) -> None:
        Order.objects.filter(id=id).update(
            shopify_fulfillment_id=fulfillment_id,
            shopify_fulfilled_at=fulfilled_at,
            sync_status=SyncStatus.SYNCED,
            sync_error="",
            updated_at=timezone.now(),
        )
        logger.info(
            "order.fulfillment_recorded",
            order_id=str(id),
            fulfillment_id=fulfillment_id,
        )

    def record_sync_failure(self, id: UUID, reason: str) -> None:
        Order.objects.filter(id=id).update(
            sync_status=SyncStatus.FAILED,
            sync_error=reason,
            updated_at=timezone.now(),
        )
        logger.info("order.sync_failed", order_id=str(id), reason=reason)

    def record_sync_skipped(self, id: UUID, reason: str) -> None:
        Order.objects.filter(id=id).update(
            sync_status=SyncStatus.SKIPPED,
            sync_error=reason,
            updated_at=timezone.now(),
        )
        logger.info("order.sync_skipped", order_id=str(id), reason=reason)
