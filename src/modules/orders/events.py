"""Domain events for delivery orders."""

from __future__ import annotations

from dataclasses import dataclass

from shared.domain.events import DomainEvent


@dataclass(frozen=True)
class OrderDelivered(DomainEvent):
    """Raised when a driver completes a delivery.

    Consumed by the fulfillment module, which queues the order for
    Shopify sync.
    """

    order_number: str = ""
