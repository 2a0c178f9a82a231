"""Fulfillment queue constants.

State machine of a queued fulfillment request::

    PENDING -> IN_FLIGHT -> SUCCEEDED | FAILED | SKIPPED | PENDING (retry)

``SUCCEEDED``, ``FAILED`` and ``SKIPPED`` close a sync cycle; a later
``enqueue`` may reopen it.
"""

from django.db import models


class RequestState(models.TextChoices):
    PENDING = "PENDING", "Pending"
    IN_FLIGHT = "IN_FLIGHT", "In flight"
    SUCCEEDED = "SUCCEEDED", "Succeeded"
    FAILED = "FAILED", "Failed"
    SKIPPED = "SKIPPED", "Skipped"


# Re-enqueue is a no-op while work is outstanding
OUTSTANDING_STATES: set[str] = {RequestState.PENDING, RequestState.IN_FLIGHT}

TERMINAL_STATES: set[str] = {
    RequestState.SUCCEEDED,
    RequestState.FAILED,
    RequestState.SKIPPED,
}

# Valid targets for ``complete``; PENDING means "re-queue"
COMPLETION_STATES: set[str] = TERMINAL_STATES | {RequestState.PENDING}

TOO_MANY_REQUESTS = 429

FALLBACK_TRACKING_PREFIX = "DEL-"

ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"
