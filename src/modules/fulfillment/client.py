"""Resilient HTTP client for the Shopify Admin API.

One ``execute`` call performs one logical request with bounded retries:

- every attempt is bounded by ``policy.timeout`` of wall-clock time, body
  included; a timeout is retryable;
- 5xx and 429 answers are retryable, any other non-2xx is terminal;
- transport failures (DNS, refused connection) are retryable;
- the delay before attempt n+1 doubles the delay before attempt n,
  starting at ``policy.initial_delay`` (a ``Retry-After`` header can only
  raise it, and never past ``policy.max_delay``);
- when attempts run out, ``RetriesExhausted`` wraps the last classified
  error.

The client keeps no state between calls.  The HTTP session, the sleep
function and the monotonic clock are injected so several workers can share
one client and tests can run without a network or a clock.
"""

from __future__ import annotations

import json
import time
from typing import Callable, Dict, Optional, Tuple

import requests
import structlog

from modules.fulfillment.constants import ACCESS_TOKEN_HEADER, TOO_MANY_REQUESTS
from modules.fulfillment.dtos import ClientResponse, RequestSpec, RetryPolicy
from modules.fulfillment.exceptions import (
    ClientError,
    ClientRejected,
    NetworkError,
    PreconditionError,
    RequestTimeout,
    RetriesExhausted,
    ServerError,
)
from modules.shopify.dtos import ConnectionCredentials

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "DeliveryOS/1.0"

# Small reads so a trickling body is checked against the deadline often
BODY_CHUNK_SIZE = 1


class ResilientClient:
    """Retrying, classifying wrapper around ``requests``."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._sleep = sleep
        self._user_agent = user_agent
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        spec: RequestSpec,
        credentials: ConnectionCredentials,
        policy: RetryPolicy,
    ) -> ClientResponse:
        """Perform ``spec`` against Shopify with retries.

        Raises:
            PreconditionError: no access token, or a policy allowing no
                attempts; nothing was sent.
            ClientRejected: Shopify refused the request (no retries).
            RetriesExhausted: every attempt failed with a retryable error.
        """
        if not credentials.has_token:
            raise PreconditionError(
                f"Missing access token for shop {credentials.shop_domain}"
            )
        if policy.max_retries < 1:
            raise PreconditionError(
                f"Retry policy allows no attempts (max_retries={policy.max_retries})"
            )

        headers = self._build_headers(spec, credentials)
        data = json.dumps(spec.body) if spec.body is not None else None
        log = logger.bind(method=spec.method, url=spec.url)

        delay = policy.initial_delay
        last_error: Optional[ClientError] = None

        for attempt in range(1, policy.max_retries + 1):
            log.debug(
                "shopify_client.attempt", attempt=attempt, max=policy.max_retries
            )
            try:
                response, body = self._send(spec, headers, data, policy.timeout)
            except requests.Timeout as exc:
                last_error = RequestTimeout(
                    f"Shopify did not answer within {policy.timeout}s",
                    attempts=attempt,
                )
                log.warning("shopify_client.timeout", attempt=attempt, error=str(exc))
            except requests.RequestException as exc:
                last_error = NetworkError(
                    f"Network error talking to Shopify: {exc}", attempts=attempt
                )
                log.warning(
                    "shopify_client.network_error", attempt=attempt, error=str(exc)
                )
            else:
                status_code = response.status_code
                if 200 <= status_code < 300:
                    log.info(
                        "shopify_client.success",
                        attempt=attempt,
                        status_code=status_code,
                    )
                    return ClientResponse(
                        status_code=status_code,
                        body=body,
                        headers=dict(response.headers or {}),
                        attempts=attempt,
                    )
                if status_code >= 500 or status_code == TOO_MANY_REQUESTS:
                    last_error = ServerError(
                        f"Shopify API error ({status_code})",
                        status_code=status_code,
                        body=body,
                        attempts=attempt,
                    )
                    log.warning(
                        "shopify_client.server_error",
                        attempt=attempt,
                        status_code=status_code,
                    )
                    retry_after = min(_retry_after_seconds(response), policy.max_delay)
                    delay = max(delay, retry_after)
                else:
                    log.error(
                        "shopify_client.rejected",
                        attempt=attempt,
                        status_code=status_code,
                        body=body[:500],
                    )
                    raise ClientRejected(
                        f"Shopify rejected the request ({status_code}): {body[:500]}",
                        status_code=status_code,
                        body=body,
                        attempts=attempt,
                    )

            if attempt < policy.max_retries:
                log.info("shopify_client.backoff", attempt=attempt, delay=delay)
                self._sleep(delay)
                delay *= 2

        log.error(
            "shopify_client.retries_exhausted",
            attempts=policy.max_retries,
            last_error=str(last_error),
        )
        raise RetriesExhausted(last_error, attempts=policy.max_retries)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_headers(
        self, spec: RequestSpec, credentials: ConnectionCredentials
    ) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self._user_agent,
            **spec.headers,
            ACCESS_TOKEN_HEADER: credentials.token,
        }

    def _send(
        self,
        spec: RequestSpec,
        headers: Dict[str, str],
        data: Optional[str],
        timeout: float,
    ) -> Tuple[requests.Response, str]:
        if self._session is not None:
            return self._perform(self._session, spec, headers, data, timeout)
        with requests.Session() as session:
            return self._perform(session, spec, headers, data, timeout)

    def _perform(
        self,
        session: requests.Session,
        spec: RequestSpec,
        headers: Dict[str, str],
        data: Optional[str],
        timeout: float,
    ) -> Tuple[requests.Response, str]:
        deadline = self._clock() + timeout
        response = session.request(
            spec.method,
            spec.url,
            headers=headers,
            data=data,
            timeout=timeout,
            stream=True,
        )
        return response, self._read_body(response, deadline, timeout)

    def _read_body(
        self, response: requests.Response, deadline: float, timeout: float
    ) -> str:
        """Read a streamed body; abandon the attempt once ``deadline`` passes.

        The ``requests`` timeout only bounds each socket read, so a server
        trickling its answer would otherwise hold the attempt open.
        """
        chunks = []
        try:
            if self._clock() > deadline:
                raise requests.Timeout(f"No response headers within {timeout}s")
            for chunk in response.iter_content(chunk_size=BODY_CHUNK_SIZE):
                chunks.append(chunk)
                if self._clock() > deadline:
                    raise requests.Timeout(f"Response body not read within {timeout}s")
        finally:
            response.close()
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")


def _retry_after_seconds(response: requests.Response) -> float:
    value = (response.headers or {}).get("Retry-After")
    if not value:
        return 0.0
    try:
        return max(float(value), 0.0)
    except ValueError:
        return 0.0
