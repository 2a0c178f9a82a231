"""Fulfillment URL configuration."""

from __future__ import annotations

from django.urls import path

from modules.fulfillment.views import FulfillmentSyncView, OrderSyncStatusView

urlpatterns = [
    path("fulfillment/sync/", FulfillmentSyncView.as_view(), name="fulfillment-sync"),
    path(
        "fulfillment/orders/<uuid:order_id>/",
        OrderSyncStatusView.as_view(),
        name="fulfillment-order-status",
    ),
]
