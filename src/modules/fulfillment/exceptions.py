"""Fulfillment sync exceptions.

``ClientError`` subclasses are raised by the resilient client and the
Shopify gateway; ``retryable`` tells the retry loop whether another
attempt may help.  The orchestrator turns whatever escapes the client
into durable queue state, so none of these cross the queue boundary.
"""

from __future__ import annotations

from typing import Optional


class FulfillmentError(Exception):
    """Base class for fulfillment sync errors."""


class ClientError(FulfillmentError):
    """A classified failure of an outbound Shopify call."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.attempts = attempts


class PreconditionError(ClientError):
    """Local precondition failed (missing token, malformed shop domain)."""


class NetworkError(ClientError):
    """Transport-level failure: DNS, refused connection, reset."""

    retryable = True


class RequestTimeout(ClientError):
    """An attempt exceeded the per-attempt timeout."""

    retryable = True


class ServerError(ClientError):
    """Shopify answered 5xx or 429."""

    retryable = True


class ClientRejected(ClientError):
    """Shopify explicitly refused the request (non-2xx, non-retryable)."""


class InvalidResponse(ClientError):
    """A 2xx response whose body could not be understood."""


class RetriesExhausted(ClientError):
    """Every attempt failed with a retryable error.

    ``last_error`` is the classified failure of the final attempt, so
    callers can tell "never got a clean answer" from "Shopify said no".
    """

    retryable = True

    def __init__(self, last_error: ClientError, attempts: int) -> None:
        super().__init__(
            f"Gave up after {attempts} attempt(s): {last_error}",
            status_code=last_error.status_code,
            body=last_error.body,
            attempts=attempts,
        )
        self.last_error = last_error


class QueueStorageError(FulfillmentError):
    """The fulfillment queue's backing store failed; the operation did not happen."""
