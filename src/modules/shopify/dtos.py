"""Shopify connection DTOs.

``ConnectionCredentials`` is a frozen, per-attempt snapshot of a connection
row.  The access token is a ``SecretStr`` so it stays out of reprs and
log lines.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, SecretStr

if TYPE_CHECKING:
    from modules.shopify.models import ShopifyConnection


class ConnectionCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    connection_id: UUID
    shop_domain: str
    access_token: Optional[SecretStr] = None
    is_active: bool = True
    last_sync_at: Optional[datetime] = None

    @property
    def has_token(self) -> bool:
        return bool(self.token.strip())

    @property
    def token(self) -> str:
        if self.access_token is None:
            return ""
        return self.access_token.get_secret_value()

    @classmethod
    def from_entity(cls, connection: ShopifyConnection) -> ConnectionCredentials:
        return cls(
            connection_id=connection.id,
            shop_domain=connection.shop_domain,
            access_token=connection.access_token or None,
            is_active=connection.is_active,
            last_sync_at=connection.last_sync_at,
        )
