"""Shopify storefront connection model.

One row per tenant storefront.  The fulfillment sync only ever *reads*
these rows: credentials are managed by the integrations screens, and an
inactive connection means "do not talk to this shop".
"""

from __future__ import annotations

from django.db import models

from modules.core.models import BaseModel


class ShopifyConnection(BaseModel):
    """Credentials and tracking metadata for one Shopify shop."""

    shop_domain: models.CharField = models.CharField(max_length=255)
    access_token: models.CharField = models.CharField(
        max_length=255, blank=True, default=""
    )
    is_active: models.BooleanField = models.BooleanField(default=True)
    settings: models.JSONField = models.JSONField(default=dict, blank=True)
    last_sync_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "shopify_connections"
        ordering = ["shop_domain"]
        indexes = [
            models.Index(fields=["is_active"], name="shopify_conn_active_idx"),
        ]

    def __str__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"{self.shop_domain} ({state})"
