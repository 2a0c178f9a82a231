"""Fulfillment sync API views.

Manual trigger and introspection for the Shopify fulfillment sync.
Domain exceptions are translated into HTTP status codes; anything else
propagates to DRF.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from rest_framework import status
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from modules.fulfillment.exceptions import QueueStorageError
from modules.fulfillment.serializers import SyncRequestSerializer
from modules.fulfillment.services import build_fulfillment_service
from modules.orders.exceptions import OrderNotFound

logger = structlog.get_logger(__name__)

QUEUE_UNAVAILABLE = {"detail": "Fulfillment queue is unavailable, try again later."}


class FulfillmentSyncView(APIView):
    """``/api/v1/fulfillment/sync/``

    ``POST`` queues the given orders (or sweeps unsynced ones) and, unless
    ``enqueue_only`` is set, drains one batch right away.  ``GET`` returns
    the queue status.
    """

    throttle_scope = "fulfillment_sync"

    def get(self, request: Request) -> Response:
        try:
            queue_status = build_fulfillment_service().get_queue_status()
        except QueueStorageError:
            return Response(
                QUEUE_UNAVAILABLE, status=status.HTTP_503_SERVICE_UNAVAILABLE
            )
        return Response(queue_status.as_report())

    def post(self, request: Request) -> Response:
        serializer = SyncRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order_ids = serializer.validated_data.get("order_ids") or []
        enqueue_only = serializer.validated_data["enqueue_only"]

        service = build_fulfillment_service()
        try:
            if order_ids:
                results = service.enqueue_orders(order_ids)
            else:
                results = service.sweep_unsynced_orders()
            summary = None if enqueue_only else service.trigger_drain()
        except QueueStorageError as exc:
            logger.error("fulfillment.manual_sync_failed", error=str(exc))
            return Response(
                QUEUE_UNAVAILABLE, status=status.HTTP_503_SERVICE_UNAVAILABLE
            )

        logger.info(
            "fulfillment.manual_sync",
            mode="orders" if order_ids else "sweep",
            requested=len(results),
            enqueue_only=enqueue_only,
        )
        body = {
            "mode": "orders" if order_ids else "sweep",
            "requested": len(results),
            "queued": sum(1 for result in results if result.queued),
            "errors": sum(1 for result in results if not result.success),
            "results": [result.model_dump(mode="json") for result in results],
            "drain": summary.as_report() if summary is not None else None,
        }
        return Response(
            body,
            status=status.HTTP_202_ACCEPTED if enqueue_only else status.HTTP_200_OK,
        )


class OrderSyncStatusView(APIView):
    """``GET /api/v1/fulfillment/orders/{order_id}/``"""

    def get(self, request: Request, order_id: UUID) -> Response:
        try:
            sync_status = build_fulfillment_service().get_order_sync_status(order_id)
        except OrderNotFound:
            return Response(
                {"detail": "Order not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except QueueStorageError:
            return Response(
                QUEUE_UNAVAILABLE, status=status.HTTP_503_SERVICE_UNAVAILABLE
            )
        return Response(sync_status.model_dump(mode="json"))
