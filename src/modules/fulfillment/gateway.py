"""Shopify fulfillment gateway.

Turns "fulfill this Shopify order" into Admin API calls made through the
``ResilientClient``.  Before creating a fulfillment the gateway looks the
order up, so an order that was already fulfilled (by a previous cycle
whose answer was lost, or by a merchant by hand) is not fulfilled twice.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from modules.fulfillment.client import ResilientClient
from modules.fulfillment.constants import FALLBACK_TRACKING_PREFIX
from modules.fulfillment.dtos import FulfillmentConfirmation, RequestSpec, RetryPolicy
from modules.fulfillment.exceptions import InvalidResponse, PreconditionError
from modules.shopify.dtos import ConnectionCredentials

logger = structlog.get_logger(__name__)

DEFAULT_API_VERSION = "2023-10"
DEFAULT_TRACKING_COMPANY = "DeliveryOS Local Delivery"


def clean_domain(shop_domain: str) -> str:
    """Strip scheme and trailing slashes from a stored shop domain.

    Raises:
        PreconditionError: nothing usable is left.
    """
    domain = (shop_domain or "").strip()
    for scheme in ("https://", "http://"):
        if domain.lower().startswith(scheme):
            domain = domain[len(scheme) :]
    domain = domain.rstrip("/")
    if not domain or "." not in domain or "/" in domain:
        raise PreconditionError(f"Invalid shop domain: {shop_domain!r}")
    return domain


def tracking_number_for(order_number: str, tracking_number: str = "") -> str:
    """Courier tracking number, else the deterministic ``DEL-<order>`` fallback."""
    if tracking_number:
        return tracking_number
    return f"{FALLBACK_TRACKING_PREFIX}{order_number}"


class ShopifyFulfillmentGateway:
    def __init__(
        self,
        client: ResilientClient,
        policy: RetryPolicy,
        api_version: str = DEFAULT_API_VERSION,
        tracking_company: str = DEFAULT_TRACKING_COMPANY,
        notify_customer: bool = True,
        check_existing: bool = True,
    ) -> None:
        self._client = client
        self._policy = policy
        self._api_version = api_version
        self._tracking_company = tracking_company
        self._notify_customer = notify_customer
        self._check_existing = check_existing

    def order_url(
        self, credentials: ConnectionCredentials, shopify_order_id: str
    ) -> str:
        domain = clean_domain(credentials.shop_domain)
        return (
            f"https://{domain}/admin/api/{self._api_version}"
            f"/orders/{shopify_order_id}"
        )

    def fulfill(
        self,
        credentials: ConnectionCredentials,
        shopify_order_id: str,
        tracking_number: str,
    ) -> FulfillmentConfirmation:
        """Create (or find) the fulfillment of ``shopify_order_id``.

        Raises:
            ClientError: any classified failure, see ``ResilientClient``.
        """
        base_url = self.order_url(credentials, shopify_order_id)
        log = logger.bind(
            shop_domain=credentials.shop_domain, shopify_order_id=shopify_order_id
        )

        attempts = 0
        if self._check_existing:
            fulfilled, existing, attempts = self._existing_fulfillment(
                base_url, credentials
            )
            if fulfilled:
                log.info("shopify_gateway.already_fulfilled", fulfillment_id=existing)
                return FulfillmentConfirmation(
                    fulfillment_id=existing or "",
                    tracking_number=tracking_number,
                    already_fulfilled=True,
                    attempts=attempts,
                )

        response = self._client.execute(
            RequestSpec(
                method="POST",
                url=f"{base_url}/fulfillments.json",
                body=self._fulfillment_payload(tracking_number),
            ),
            credentials,
            self._policy,
        )
        payload = response.json_body()
        fulfillment = payload.get("fulfillment") if isinstance(payload, dict) else None
        fulfillment_id = (fulfillment or {}).get("id")
        if fulfillment_id in (None, ""):
            raise InvalidResponse(
                "Shopify response has no fulfillment id",
                status_code=response.status_code,
                body=response.body,
                attempts=response.attempts,
            )

        log.info(
            "shopify_gateway.fulfillment_created",
            fulfillment_id=str(fulfillment_id),
            attempts=response.attempts,
        )
        return FulfillmentConfirmation(
            fulfillment_id=str(fulfillment_id),
            tracking_number=tracking_number,
            attempts=attempts + response.attempts,
        )

    def _existing_fulfillment(
        self, base_url: str, credentials: ConnectionCredentials
    ) -> tuple[bool, Optional[str], int]:
        response = self._client.execute(
            RequestSpec(method="GET", url=f"{base_url}.json"),
            credentials,
            self._policy,
        )
        payload = response.json_body()
        order = payload.get("order") if isinstance(payload, dict) else None
        if not order or order.get("fulfillment_status") != "fulfilled":
            return False, None, response.attempts

        fulfillments = order.get("fulfillments") or []
        if fulfillments and fulfillments[0].get("id") not in (None, ""):
            return True, str(fulfillments[0]["id"]), response.attempts
        return True, None, response.attempts

    def _fulfillment_payload(self, tracking_number: str) -> Dict[str, Any]:
        return {
            "fulfillment": {
                "tracking_number": tracking_number,
                "tracking_company": self._tracking_company,
                "notify_customer": self._notify_customer,
                "location_id": None,
                "line_items": [],
            }
        }
