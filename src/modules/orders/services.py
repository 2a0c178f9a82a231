"""Delivery order service.

Only the use case the fulfillment sync hangs off is implemented here:
completing a delivery.  The ``OrderDelivered`` event is published after
the transaction commits so subscribers always see the delivered row.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional
from uuid import UUID

import structlog
from django.db import transaction
from django.utils import timezone

from modules.orders.constants import OrderStatus, SyncStatus
from modules.orders.events import OrderDelivered
from modules.orders.exceptions import InvalidOrderStatus, OrderNotFound
from shared.infrastructure.bus import event_bus

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from shared.domain.bus import IEventBus

logger = structlog.get_logger(__name__)


class OrderService:
    def __init__(
        self,
        order_repository: IOrderRepository,
        bus: Optional[IEventBus] = None,
    ) -> None:
        self._order_repo = order_repository
        self._bus = bus or event_bus

    @transaction.atomic
    def complete_delivery(
        self,
        order_id: UUID,
        driver_id: Optional[UUID] = None,
        tracking_number: str = "",
    ) -> Order:
        """Mark an order as delivered and announce it.

        Raises:
            OrderNotFound: order does not exist.
            InvalidOrderStatus: the order cannot move to ``DELIVERED``.
        """
        order = self._order_repo.get_for_update(order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found.")

        log = logger.bind(order_id=str(order_id), current_status=order.status)

        if not order.can_transition_to(OrderStatus.DELIVERED):
            log.warning("order.invalid_transition", new_status=OrderStatus.DELIVERED)
            raise InvalidOrderStatus(
                f"Cannot transition from {order.status} to {OrderStatus.DELIVERED}."
            )

        order.status = OrderStatus.DELIVERED
        order.completed_at = timezone.now()
        if driver_id is not None:
            order.driver_id = driver_id
        if tracking_number:
            order.tracking_number = tracking_number
        order.sync_status = SyncStatus.PENDING
        self._order_repo.save(order)

        event = OrderDelivered(aggregate_id=order.id, order_number=order.order_number)
        transaction.on_commit(lambda: self._bus.publish(event))

        log.info("order.delivered")
        return order
