"""Fulfillment work queue interface.

The orchestrator and the sync service depend on this contract only.  An
implementation must guarantee:

- at most one outstanding (``PENDING`` or ``IN_FLIGHT``) request per order;
- a request handed out by ``drain`` is handed out to nobody else until it
  is completed;
- every storage failure surfaces as ``QueueStorageError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterator, Optional
from uuid import UUID

if TYPE_CHECKING:
    from modules.fulfillment.dtos import EnqueueResult, QueueStatus
    from modules.fulfillment.models import FulfillmentRequest


class IFulfillmentQueue(ABC):
    @abstractmethod
    def enqueue(self, order_id: UUID) -> EnqueueResult:
        """Queue ``order_id`` for sync; no-op if work is already outstanding."""

    @abstractmethod
    def drain(self, batch_size: int) -> Iterator[FulfillmentRequest]:
        """Claim up to ``batch_size`` eligible requests, oldest first."""

    @abstractmethod
    def complete(
        self, order_id: UUID, state: str, reason: Optional[str] = None
    ) -> bool:
        """Move an ``IN_FLIGHT`` request to ``state``.

        Returns ``False`` when nothing changed (e.g. a replayed completion).
        """

    @abstractmethod
    def status(self) -> QueueStatus:
        """Per-state counts and the age of the oldest pending request."""

    @abstractmethod
    def get(self, order_id: UUID) -> Optional[FulfillmentRequest]:
        """Return the order's request row, or ``None``."""

    @abstractmethod
    def requeue_stale(self, older_than_seconds: float) -> int:
        """Return abandoned ``IN_FLIGHT`` requests to ``PENDING``."""
