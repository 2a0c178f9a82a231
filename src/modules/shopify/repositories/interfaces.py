"""Shopify connection repository interface (read-only)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional
from uuid import UUID

if TYPE_CHECKING:
    from modules.shopify.dtos import ConnectionCredentials


class IConnectionRepository(ABC):
    """Read access to the connection store.

    The fulfillment sync never mutates credentials, so the contract has
    no write methods.
    """

    @abstractmethod
    def get_credentials(self, connection_id: UUID) -> Optional[ConnectionCredentials]:
        """Return a fresh credentials snapshot, or ``None`` if the row is gone."""
