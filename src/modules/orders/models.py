"""Delivery order model.

Only the columns the fulfillment sync reads or writes are modelled here:
delivery status, the Shopify order reference and connection, and the
outcome fields (``shopify_fulfillment_id``, ``shopify_fulfilled_at``,
``sync_status``, ``sync_error``) that only the fulfillment orchestrator
writes.
"""

from __future__ import annotations

import secrets
from typing import Any

from django.db import models
from django.utils import timezone

from modules.core.models import BaseModel
from modules.orders.constants import (
    ORDER_NUMBER_MAX_RETRIES,
    VALID_TRANSITIONS,
    OrderStatus,
    SyncStatus,
)


class Order(BaseModel):
    """Delivery order.

    ``order_number`` is human readable (``ORD-YYYYMMDD-XXXXXX``) and is the
    seed of the deterministic fallback tracking number sent to Shopify.
    """

    order_number: models.CharField = models.CharField(
        max_length=32, unique=True, editable=False
    )
    status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
    )
    driver_id: models.UUIDField = models.UUIDField(null=True, blank=True)
    completed_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    tracking_number: models.CharField = models.CharField(
        max_length=64, blank=True, default=""
    )

    # Shopify link
    shopify_order_id: models.CharField = models.CharField(  # noqa: DJ01
        max_length=64, null=True, blank=True
    )
    shopify_connection: models.ForeignKey = models.ForeignKey(
        "shopify.ShopifyConnection",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )

    # Fulfillment outcome
    shopify_fulfillment_id: models.CharField = models.CharField(  # noqa: DJ01
        max_length=64, null=True, blank=True
    )
    shopify_fulfilled_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    sync_status: models.CharField = models.CharField(
        max_length=20,
        choices=SyncStatus.choices,
        default=SyncStatus.PENDING,
    )
    sync_error: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="orders_status_idx"),
            models.Index(
                fields=["status", "sync_status"], name="orders_sync_status_idx"
            ),
        ]

    @property
    def is_shopify_order(self) -> bool:
        return bool(self.shopify_order_id) and self.shopify_connection_id is not None

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    @staticmethod
    def generate_order_number() -> str:
        now = timezone.now()
        suffix = secrets.token_hex(3).upper()
        return f"ORD-{now:%Y%m%d}-{suffix}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self.order_number:
            for _ in range(ORDER_NUMBER_MAX_RETRIES):
                candidate = self.generate_order_number()
                if not Order.objects.filter(order_number=candidate).exists():
                    self.order_number = candidate
                    break
            else:
                raise RuntimeError(
                    f"Failed to generate unique order_number after "
                    f"{ORDER_NUMBER_MAX_RETRIES} attempts"
                )
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.order_number} ({self.status})"
