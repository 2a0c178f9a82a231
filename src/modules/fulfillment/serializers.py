"""Fulfillment sync DRF serializers (API input only).

Responses are built from the pydantic DTOs returned by
``FulfillmentSyncService``.
"""

from __future__ import annotations

from rest_framework import serializers

MAX_ORDERS_PER_SYNC = 100


class SyncRequestSerializer(serializers.Serializer):
    """Validates ``POST /api/v1/fulfillment/sync/``.

    Without ``order_ids`` the request sweeps delivered orders whose sync is
    still pending.
    """

    order_ids = serializers.ListField(
        child=serializers.UUIDField(),
        required=False,
        allow_empty=True,
        max_length=MAX_ORDERS_PER_SYNC,
    )
    enqueue_only = serializers.BooleanField(required=False, default=False)

    def validate_order_ids(self, value):
        # Keep first-seen order, drop duplicates
        return list(dict.fromkeys(value))
