"""Unit tests for ResilientClient retry, timeout and classification."""

from __future__ import annotations

from uuid import uuid4

import pytest
import requests

from modules.fulfillment.client import ResilientClient
from modules.fulfillment.dtos import RequestSpec, RetryPolicy
from modules.fulfillment.exceptions import (
    ClientRejected,
    NetworkError,
    PreconditionError,
    RequestTimeout,
    RetriesExhausted,
    ServerError,
)
from modules.shopify.dtos import ConnectionCredentials

pytestmark = pytest.mark.unit

URL = "https://corner-bakery.myshopify.com/admin/api/2023-10/orders/1/fulfillments.json"


@pytest.fixture()
def credentials():
    return ConnectionCredentials(
        connection_id=uuid4(),
        shop_domain="corner-bakery.myshopify.com",
        access_token="shpat_0123456789abcdef",
    )


@pytest.fixture()
def client(fake_session, recorded_sleep):
    return ResilientClient(session=fake_session, sleep=recorded_sleep)


def _spec(**overrides):
    fields = {"method": "post", "url": URL, "body": {"fulfillment": {"id": None}}}
    fields.update(overrides)
    return RequestSpec(**fields)


POLICY = RetryPolicy(max_retries=3, initial_delay=1.0, timeout=30.0)


class TestSuccess:
    def test_first_attempt_success_reports_one_attempt(
        self, client, fake_session, credentials
    ):
        fake_session.add(201, {"fulfillment": {"id": 255858046}})

        response = client.execute(_spec(), credentials, POLICY)

        assert response.status_code == 201
        assert response.attempts == 1
        assert response.json_body() == {"fulfillment": {"id": 255858046}}

    def test_sends_auth_and_json_headers(self, client, fake_session, credentials):
        fake_session.add(201, {})

        client.execute(_spec(), credentials, POLICY)

        call = fake_session.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == URL
        assert call["headers"]["X-Shopify-Access-Token"] == "shpat_0123456789abcdef"
        assert call["headers"]["Content-Type"] == "application/json"
        assert call["headers"]["User-Agent"] == "DeliveryOS/1.0"
        assert call["body"] == {"fulfillment": {"id": None}}

    def test_body_is_streamed_and_response_closed(
        self, client, fake_session, credentials
    ):
        fake_session.add(201, {"fulfillment": {"id": 1}})

        client.execute(_spec(), credentials, POLICY)

        assert fake_session.calls[0]["stream"] is True
        assert fake_session.responses[0].closed

    def test_timeout_is_applied_to_every_attempt(
        self, client, fake_session, credentials
    ):
        fake_session.add(503).add(200, {})

        client.execute(_spec(), credentials, RetryPolicy(timeout=2.5))

        assert [call["timeout"] for call in fake_session.calls] == [2.5, 2.5]

    def test_extra_headers_cannot_override_token(
        self, client, fake_session, credentials
    ):
        fake_session.add(200, {})

        client.execute(
            _spec(headers={"X-Shopify-Access-Token": "spoofed", "X-Trace": "1"}),
            credentials,
            POLICY,
        )

        headers = fake_session.calls[0]["headers"]
        assert headers["X-Shopify-Access-Token"] == "shpat_0123456789abcdef"
        assert headers["X-Trace"] == "1"


class TestRetries:
    def test_two_server_errors_then_created(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(503).add(503).add(201, {"fulfillment": {"id": 1}})

        response = client.execute(_spec(), credentials, POLICY)

        assert response.status_code == 201
        assert response.attempts == 3
        assert recorded_sleep.delays == [1.0, 2.0]

    def test_rate_limited_is_retried(self, client, fake_session, credentials):
        fake_session.add(429).add(200, {})

        response = client.execute(_spec(), credentials, POLICY)

        assert response.attempts == 2

    def test_retry_after_raises_the_delay(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(429, headers={"Retry-After": "5"}).add(503).add(200, {})

        client.execute(_spec(), credentials, POLICY)

        assert recorded_sleep.delays == [5.0, 10.0]

    def test_retry_after_is_capped_by_max_delay(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(429, headers={"Retry-After": "86400"}).add(201, {})

        client.execute(_spec(), credentials, RetryPolicy(max_delay=30.0))

        assert recorded_sleep.delays == [30.0]

    def test_retry_after_cap_never_shortens_backoff(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(503).add(429, headers={"Retry-After": "600"}).add(200, {})

        client.execute(
            _spec(), credentials, RetryPolicy(initial_delay=4.0, max_delay=3.0)
        )

        assert recorded_sleep.delays == [4.0, 8.0]

    def test_delays_double_from_initial_delay(
        self, client, fake_session, recorded_sleep, credentials
    ):
        for _ in range(5):
            fake_session.add(500)

        with pytest.raises(RetriesExhausted):
            client.execute(
                _spec(), credentials, RetryPolicy(max_retries=5, initial_delay=0.5)
            )

        assert recorded_sleep.delays == [0.5, 1.0, 2.0, 4.0]

    def test_exhausted_server_errors_wrap_last_error(
        self, client, fake_session, credentials
    ):
        fake_session.add(502).add(503).add(504, text="gateway timeout")

        with pytest.raises(RetriesExhausted) as exc_info:
            client.execute(_spec(), credentials, POLICY)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ServerError)
        assert exc_info.value.last_error.status_code == 504
        assert len(fake_session.calls) == 3

    def test_single_attempt_policy_never_sleeps(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(503)

        with pytest.raises(RetriesExhausted):
            client.execute(_spec(), credentials, RetryPolicy(max_retries=1))

        assert recorded_sleep.delays == []


class TestTimeoutsAndNetwork:
    def test_timeout_on_first_attempt_is_retried(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add_error(requests.ReadTimeout("slow")).add(201, {})

        response = client.execute(_spec(), credentials, POLICY)

        assert response.attempts == 2
        assert recorded_sleep.delays == [1.0]

    def test_connect_timeout_is_classified_as_timeout(
        self, client, fake_session, credentials
    ):
        for _ in range(3):
            fake_session.add_error(requests.ConnectTimeout("no route"))

        with pytest.raises(RetriesExhausted) as exc_info:
            client.execute(_spec(), credentials, POLICY)

        assert isinstance(exc_info.value.last_error, RequestTimeout)

    def test_connection_errors_exhaust_as_network_error(
        self, client, fake_session, credentials
    ):
        for _ in range(3):
            fake_session.add_error(requests.ConnectionError("refused"))

        with pytest.raises(RetriesExhausted) as exc_info:
            client.execute(_spec(), credentials, POLICY)

        assert isinstance(exc_info.value.last_error, NetworkError)
        assert exc_info.value.last_error.retryable is True


class TestAttemptDeadline:
    @pytest.fixture()
    def client(self, fake_session, recorded_sleep, monotonic):
        return ResilientClient(
            session=fake_session, sleep=recorded_sleep, clock=monotonic
        )

    def test_trickling_body_is_abandoned_at_the_deadline(
        self, client, fake_session, monotonic, credentials
    ):
        fake_session.add(
            201,
            {"fulfillment": {"id": 255858046}},
            chunk_hook=lambda: monotonic.advance(0.5),
        )

        with pytest.raises(RetriesExhausted) as exc_info:
            client.execute(
                _spec(), credentials, RetryPolicy(max_retries=1, timeout=1.0)
            )

        assert isinstance(exc_info.value.last_error, RequestTimeout)
        assert fake_session.responses[0].closed
        # Gave up on the third chunk, long before the body was complete
        assert monotonic.now == 1.5

    def test_slow_attempt_is_retried_with_a_fresh_deadline(
        self, client, fake_session, monotonic, recorded_sleep, credentials
    ):
        fake_session.add(201, text="{}" * 10, chunk_hook=lambda: monotonic.advance(1))
        fake_session.add(201, {"fulfillment": {"id": 1}})

        response = client.execute(
            _spec(), credentials, RetryPolicy(max_retries=2, timeout=5.0)
        )

        assert response.attempts == 2
        assert response.json_body() == {"fulfillment": {"id": 1}}
        assert recorded_sleep.delays == [1.0]

    def test_body_within_deadline_is_accepted(
        self, client, fake_session, monotonic, credentials
    ):
        fake_session.add(
            201, text='{"fulfillment":{}}', chunk_hook=lambda: monotonic.advance(0.01)
        )

        response = client.execute(_spec(), credentials, RetryPolicy(timeout=1.0))

        assert response.attempts == 1
        assert response.body == '{"fulfillment":{}}'


class TestTerminalFailures:
    def test_not_found_fails_after_one_attempt(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(404, text='{"errors":"Not Found"}')

        with pytest.raises(ClientRejected) as exc_info:
            client.execute(_spec(), credentials, POLICY)

        assert exc_info.value.status_code == 404
        assert exc_info.value.attempts == 1
        assert "Not Found" in exc_info.value.body
        assert exc_info.value.retryable is False
        assert len(fake_session.calls) == 1
        assert recorded_sleep.delays == []

    def test_unprocessable_after_retry_stops_immediately(
        self, client, fake_session, credentials
    ):
        fake_session.add(503).add(422, {"errors": ["already fulfilled"]})

        with pytest.raises(ClientRejected) as exc_info:
            client.execute(_spec(), credentials, POLICY)

        assert exc_info.value.attempts == 2
        assert fake_session.remaining == 0

    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_missing_token_fails_before_any_call(
        self, client, fake_session, token
    ):
        credentials = ConnectionCredentials(
            connection_id=uuid4(),
            shop_domain="corner-bakery.myshopify.com",
            access_token=token,
        )

        with pytest.raises(PreconditionError):
            client.execute(_spec(), credentials, POLICY)

        assert fake_session.calls == []

    def test_policy_without_attempts_fails_before_any_call(
        self, client, fake_session, credentials
    ):
        policy = RetryPolicy.model_construct(
            max_retries=0, initial_delay=1.0, timeout=30.0, max_delay=30.0
        )

        with pytest.raises(PreconditionError):
            client.execute(_spec(), credentials, policy)

        assert fake_session.calls == []


class TestStatelessness:
    def test_one_client_serves_independent_calls(
        self, client, fake_session, recorded_sleep, credentials
    ):
        fake_session.add(503).add(200, {})
        fake_session.add(503).add(200, {})

        first = client.execute(_spec(), credentials, POLICY)
        second = client.execute(_spec(), credentials, POLICY)

        assert first.attempts == second.attempts == 2
        assert recorded_sleep.delays == [1.0, 1.0]
