"""Fulfillment work queue model.

One ``FulfillmentRequest`` row per order.  The one-to-one key plus the
conditional state updates in the queue repository guarantee that an
order never has two outstanding requests, and never two ``IN_FLIGHT``.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from modules.core.models import BaseModel
from modules.fulfillment.constants import RequestState


class FulfillmentRequest(BaseModel):
    """A queued "sync this order's fulfillment to Shopify" request.

    ``attempts`` counts completed drain cycles (each cycle may itself make
    several HTTP attempts).  ``scheduled_at`` holds a re-queued request
    back until its backoff has elapsed.
    """

    order: models.OneToOneField = models.OneToOneField(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="fulfillment_request",
    )
    state: models.CharField = models.CharField(
        max_length=20,
        choices=RequestState.choices,
        default=RequestState.PENDING,
    )
    attempts: models.PositiveIntegerField = models.PositiveIntegerField(default=0)
    enqueued_at: models.DateTimeField = models.DateTimeField(default=timezone.now)
    scheduled_at: models.DateTimeField = models.DateTimeField(default=timezone.now)
    last_attempt_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    completed_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    failure_reason: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "fulfillment_requests"
        ordering = ["enqueued_at"]
        indexes = [
            models.Index(
                fields=["state", "scheduled_at"], name="fulfillment_req_drain_idx"
            ),
            models.Index(fields=["enqueued_at"], name="fulfillment_req_enq_idx"),
        ]

    @property
    def is_outstanding(self) -> bool:
        return self.state in (RequestState.PENDING, RequestState.IN_FLIGHT)

    def __str__(self) -> str:
        return f"FulfillmentRequest({self.order_id}, {self.state})"
