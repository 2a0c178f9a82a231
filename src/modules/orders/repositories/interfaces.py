"""Order repository interface.

The fulfillment orchestrator depends on this contract only; it reads the
order and writes back the sync outcome columns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

if TYPE_CHECKING:
    from modules.orders.models import Order


class IOrderRepository(ABC):
    @abstractmethod
    def get_by_id(self, id: UUID) -> Optional[Order]:
        """Retrieve an order with its Shopify connection, or ``None``."""

    @abstractmethod
    def get_for_update(self, id: UUID) -> Optional[Order]:
        """Retrieve an order with a row-level lock (SELECT FOR UPDATE)."""

    @abstractmethod
    def save(self, entity: Order) -> Order:
        """Persist (create or update) an order."""

    @abstractmethod
    def record_fulfillment(
        self, id: UUID, fulfillment_id: Optional[str], fulfilled_at: datetime
    ) -> None:
        """Store the Shopify fulfillment id and mark the order as synced."""

    @abstractmethod
    def record_sync_failure(self, id: UUID, reason: str) -> None:
        """Mark the order's Shopify sync as permanently failed."""

    @abstractmethod
    def record_sync_skipped(self, id: UUID, reason: str) -> None:
        """Mark the order as not eligible for Shopify sync."""

    @abstractmethod
    def list_pending_sync(self, limit: int) -> List[UUID]:
        """IDs of delivered Shopify orders whose sync is still pending."""
