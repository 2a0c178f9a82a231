"""Django ORM implementation of the connection repository."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from django.core.exceptions import ValidationError

from modules.shopify.dtos import ConnectionCredentials
from modules.shopify.models import ShopifyConnection
from modules.shopify.repositories.interfaces import IConnectionRepository


class ConnectionDjangoRepository(IConnectionRepository):
    def get_credentials(self, connection_id: UUID) -> Optional[ConnectionCredentials]:
        try:
            connection = ShopifyConnection.objects.filter(id=connection_id).first()
        except (ValueError, ValidationError):
            return None
        if connection is None:
            return None
        return ConnectionCredentials.from_entity(connection)
