"""Fulfillment sync DTOs.

Pydantic v2 models shared by the client, the queue and the orchestrator.
All of them are immutable (``frozen=True``).

- ``RetryPolicy``: attempts, initial backoff, per-attempt timeout and the
  ceiling on a server-requested delay.
- ``RequestSpec`` / ``ClientResponse``: one outbound call and its answer.
- ``FulfillmentConfirmation``: what Shopify told us about the fulfillment.
- ``EnqueueResult``, ``FulfillmentOutcome``, ``DrainSummary``,
  ``QueueStatus``, ``OrderSyncStatus``: results reported to the callers of
  the sync service.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from modules.fulfillment.constants import RequestState
from modules.fulfillment.exceptions import InvalidResponse

# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    # Ceiling for a server-requested Retry-After; keep well below the
    # stale-claim cutoff so a sleeping worker never loses its claim
    max_delay: float = Field(default=30.0, ge=0)

    @classmethod
    def from_settings(cls, conf: Dict[str, Any]) -> RetryPolicy:
        return cls(
            max_retries=conf.get("MAX_RETRIES", 3),
            initial_delay=conf.get("INITIAL_DELAY", 1.0),
            timeout=conf.get("TIMEOUT", 30.0),
            max_delay=conf.get("MAX_DELAY", 30.0),
        )


class RequestSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str
    url: str
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.upper()


class ClientResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int
    body: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    attempts: int = 1

    def json_body(self) -> Any:
        try:
            return json.loads(self.body) if self.body else {}
        except ValueError as exc:
            raise InvalidResponse(
                f"Invalid JSON response from Shopify: {self.body[:200]}",
                status_code=self.status_code,
                body=self.body,
                attempts=self.attempts,
            ) from exc


class FulfillmentConfirmation(BaseModel):
    model_config = ConfigDict(frozen=True)

    fulfillment_id: str
    tracking_number: str
    already_fulfilled: bool = False
    attempts: int = 1


# ---------------------------------------------------------------------------
# Queue / Orchestrator
# ---------------------------------------------------------------------------


class EnqueueResult(BaseModel):
    """Outcome of one enqueue request.

    ``queued`` is ``True`` when new pending work exists because of this
    call (fresh row or a reopened terminal row), ``False`` when the order
    already had outstanding work.
    """

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    queued: bool = False
    state: Optional[str] = None
    success: bool = True
    error: Optional[str] = None

    @field_validator("state", mode="before")
    @classmethod
    def plain_state(cls, v: Any) -> Any:
        # TextChoices members render as their value
        return str(v) if v is not None else v


class FulfillmentOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    state: str
    fulfillment_id: Optional[str] = None
    fulfilled_at: Optional[datetime] = None
    reason: str = ""
    attempts: int = 0

    @field_validator("state", mode="before")
    @classmethod
    def plain_state(cls, v: Any) -> Any:
        # TextChoices members render as their value
        return str(v) if v is not None else v

    @property
    def succeeded(self) -> bool:
        return self.state == RequestState.SUCCEEDED


class DrainSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcomes: List[FulfillmentOutcome] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    def count(self, state: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state == state)

    def as_report(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.count(RequestState.SUCCEEDED),
            "failed": self.count(RequestState.FAILED),
            "skipped": self.count(RequestState.SKIPPED),
            "requeued": self.count(RequestState.PENDING),
            "results": [outcome.model_dump(mode="json") for outcome in self.outcomes],
        }


class QueueStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    pending: int = 0
    in_flight: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    oldest_pending_age_seconds: Optional[float] = None

    @property
    def total(self) -> int:
        return (
            self.pending + self.in_flight + self.succeeded + self.failed + self.skipped
        )

    def as_report(self) -> Dict[str, Any]:
        return {**self.model_dump(mode="json"), "total": self.total}


class OrderSyncStatus(BaseModel):
    """Sync state of one order, as shown by the per-order status endpoint."""

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    order_number: str
    sync_status: str
    sync_error: str = ""
    shopify_order_id: Optional[str] = None
    shopify_fulfillment_id: Optional[str] = None
    shopify_fulfilled_at: Optional[datetime] = None
    request_state: Optional[str] = None
    attempts: int = 0
    enqueued_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    failure_reason: str = ""
