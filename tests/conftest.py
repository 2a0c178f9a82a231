import json

import pytest
from django.utils import timezone

from rest_framework.test import APIClient

from modules.orders.constants import OrderStatus
from modules.orders.models import Order
from modules.shopify.models import ShopifyConnection


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture()
def api_client():
    """DRF APIClient for testing API endpoints."""
    return APIClient()


@pytest.fixture()
def api_client_with_correlation(api_client):
    """APIClient pre-configured with a known correlation ID header."""
    cid = "test-correlation-id-fixture"
    api_client.defaults["HTTP_X_REQUEST_ID"] = cid
    return api_client, cid


@pytest.fixture()
def staff_user(django_user_model):
    return django_user_model.objects.create_user(
        username="dispatcher", password="dispatcher-pass"
    )


@pytest.fixture()
def auth_client(api_client, staff_user):
    """APIClient authenticated as a dispatcher (JWT bypassed)."""
    api_client.force_authenticate(user=staff_user)
    return api_client


@pytest.fixture()
def shopify_connection():
    return ShopifyConnection.objects.create(
        shop_domain="corner-bakery.myshopify.com",
        access_token="shpat_0123456789abcdef",
        is_active=True,
    )


@pytest.fixture()
def make_order(shopify_connection):
    """Factory for delivered Shopify orders (overridable per test)."""

    def _make(**overrides):
        fields = {
            "status": OrderStatus.DELIVERED,
            "completed_at": timezone.now(),
            "shopify_order_id": "450789469",
            "shopify_connection": shopify_connection,
        }
        fields.update(overrides)
        return Order.objects.create(**fields)

    return _make


# ---------------------------------------------------------------------------
# Shopify HTTP doubles
# ---------------------------------------------------------------------------


class FakeResponse:
    """Streamed response double.

    ``chunk_hook`` runs before each body chunk is handed out, so a test can
    advance a fake clock to imitate a server trickling its answer.
    """

    encoding = "utf-8"

    def __init__(
        self, status_code, payload=None, headers=None, text=None, chunk_hook=None
    ):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.headers = headers or {}
        self.chunk_hook = chunk_hook
        self.closed = False

    def iter_content(self, chunk_size=1):
        raw = self.text.encode("utf-8")
        for start in range(0, len(raw), chunk_size):
            if self.chunk_hook is not None:
                self.chunk_hook()
            yield raw[start : start + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Scripted stand-in for ``requests.Session``.

    Each request consumes the next scripted outcome: a response or an
    exception to raise.  Every call is recorded in ``calls``.
    """

    def __init__(self):
        self.calls = []
        self.responses = []
        self._script = []

    def add(
        self, status_code, payload=None, headers=None, text=None, chunk_hook=None
    ):
        self._script.append(
            FakeResponse(status_code, payload, headers, text, chunk_hook)
        )
        return self

    def add_error(self, exc):
        self._script.append(exc)
        return self

    def add_hook(self, callback):
        """Run ``callback`` when the next request arrives, before answering it."""
        self._script.append(callback)
        return self

    def add_unfulfilled_lookup(self):
        return self.add(200, {"order": {"id": 450789469, "fulfillment_status": None}})

    def request(
        self, method, url, headers=None, data=None, timeout=None, stream=False
    ):
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": headers or {},
                "body": json.loads(data) if data else None,
                "timeout": timeout,
                "stream": stream,
            }
        )
        if not self._script:
            raise AssertionError(f"Unexpected {method} {url}")
        outcome = self._script.pop(0)
        while callable(outcome):
            outcome()
            outcome = self._script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        self.responses.append(outcome)
        return outcome

    @property
    def remaining(self):
        return len(self._script)


@pytest.fixture()
def fake_session():
    return FakeSession()


@pytest.fixture()
def recorded_sleep():
    """Sleep replacement that records requested delays instead of waiting."""
    delays = []

    def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


class FakeMonotonic:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def monotonic():
    return FakeMonotonic()
