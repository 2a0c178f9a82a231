"""End-to-end sync tests: Django repositories, real orchestrator, fake Shopify."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone

from modules.fulfillment.constants import RequestState
from modules.fulfillment.models import FulfillmentRequest
from modules.fulfillment.services import build_fulfillment_service
from modules.orders.constants import OrderStatus, SyncStatus
from modules.orders.exceptions import OrderNotFound

pytestmark = pytest.mark.integration

CREATED = {"fulfillment": {"id": 255858046, "status": "success"}}


@pytest.fixture()
def service(fake_session, recorded_sleep):
    return build_fulfillment_service(session=fake_session, sleep=recorded_sleep)


def _posts(fake_session):
    return [call for call in fake_session.calls if call["method"] == "POST"]


class TestHappyPath:
    def test_delivered_order_is_fulfilled_and_recorded(
        self, service, fake_session, make_order
    ):
        order = make_order()
        fake_session.add_unfulfilled_lookup().add(201, CREATED)

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()

        order.refresh_from_db()
        assert summary.count(RequestState.SUCCEEDED) == 1
        assert order.sync_status == SyncStatus.SYNCED
        assert order.shopify_fulfillment_id == "255858046"
        assert order.shopify_fulfilled_at is not None
        assert FulfillmentRequest.objects.get(order=order).state == (
            RequestState.SUCCEEDED
        )
        headers = _posts(fake_session)[0]["headers"]
        assert headers["X-Shopify-Access-Token"] == "shpat_0123456789abcdef"
        assert _posts(fake_session)[0]["body"]["fulfillment"]["tracking_number"] == (
            f"DEL-{order.order_number}"
        )

    def test_flaky_endpoint_persists_fulfillment_once(
        self, service, fake_session, make_order
    ):
        order = make_order()
        mid_flight = []
        fake_session.add_unfulfilled_lookup()
        fake_session.add(503)
        fake_session.add_hook(
            lambda: mid_flight.append(service.enqueue_order_for_sync(order.id))
        )
        fake_session.add(201, CREATED)

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()
        second = service.trigger_drain()

        order.refresh_from_db()
        assert summary.outcomes[0].state == RequestState.SUCCEEDED
        assert mid_flight[0].queued is False
        assert second.processed == 0
        assert len(_posts(fake_session)) == 2
        assert order.shopify_fulfillment_id == "255858046"
        assert FulfillmentRequest.objects.filter(order=order).count() == 1

    def test_already_fulfilled_order_reuses_existing_fulfillment(
        self, service, fake_session, make_order
    ):
        order = make_order()
        fake_session.add(
            200,
            {
                "order": {
                    "id": 450789469,
                    "fulfillment_status": "fulfilled",
                    "fulfillments": [{"id": 1022782888}],
                }
            },
        )

        service.enqueue_order_for_sync(order.id)
        service.trigger_drain()

        order.refresh_from_db()
        assert order.sync_status == SyncStatus.SYNCED
        assert order.shopify_fulfillment_id == "1022782888"
        assert _posts(fake_session) == []


class TestSkipsAndFailures:
    def test_inactive_connection_skips_without_http(
        self, service, fake_session, make_order, shopify_connection
    ):
        shopify_connection.is_active = False
        shopify_connection.save()
        order = make_order()

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()

        order.refresh_from_db()
        assert summary.outcomes[0].state == RequestState.SKIPPED
        assert fake_session.calls == []
        assert order.sync_status == SyncStatus.SKIPPED
        assert FulfillmentRequest.objects.get(order=order).state == (
            RequestState.SKIPPED
        )

    def test_order_without_shopify_link_is_skipped(self, service, make_order):
        order = make_order(shopify_order_id=None, shopify_connection=None)

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()

        assert summary.outcomes[0].state == RequestState.SKIPPED

    def test_rejected_request_fails_after_one_attempt(
        self, service, fake_session, make_order
    ):
        order = make_order()
        fake_session.add(404, {"errors": "Not Found"})

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()

        order.refresh_from_db()
        assert summary.outcomes[0].state == RequestState.FAILED
        assert len(fake_session.calls) == 1
        assert order.sync_status == SyncStatus.FAILED
        assert "404" in order.sync_error

    def test_missing_token_fails_before_any_call(
        self, service, fake_session, make_order, shopify_connection
    ):
        shopify_connection.access_token = ""
        shopify_connection.save()
        order = make_order()

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()

        assert summary.outcomes[0].state == RequestState.FAILED
        assert fake_session.calls == []

    def test_exhausted_retries_are_requeued_with_backoff(
        self, service, fake_session, recorded_sleep, make_order
    ):
        order = make_order()
        for _ in range(3):
            fake_session.add(503)

        service.enqueue_order_for_sync(order.id)
        summary = service.trigger_drain()

        request = FulfillmentRequest.objects.get(order=order)
        order.refresh_from_db()
        assert summary.outcomes[0].state == RequestState.PENDING
        assert request.state == RequestState.PENDING
        assert request.attempts == 1
        assert request.scheduled_at > request.last_attempt_at
        assert order.sync_status == SyncStatus.PENDING
        assert recorded_sleep.delays == [0.0, 0.0]
        assert service.trigger_drain().processed == 0

    def test_drain_cycle_ceiling_marks_failed(self, service, fake_session, make_order):
        order = make_order()
        service.enqueue_order_for_sync(order.id)
        FulfillmentRequest.objects.filter(order=order).update(attempts=4)
        for _ in range(3):
            fake_session.add(503)

        summary = service.trigger_drain()

        order.refresh_from_db()
        assert summary.outcomes[0].state == RequestState.FAILED
        assert order.sync_status == SyncStatus.FAILED
        assert FulfillmentRequest.objects.get(order=order).attempts == 5


class TestFacade:
    def test_enqueue_unknown_order_raises(self, service):
        with pytest.raises(OrderNotFound):
            service.enqueue_order_for_sync(uuid4())

    def test_enqueue_orders_reports_errors_per_item(self, service, make_order):
        order = make_order()
        missing = uuid4()

        results = service.enqueue_orders([order.id, missing])

        assert results[0].queued is True
        assert results[1].success is False
        assert str(missing) in results[1].error

    def test_sweep_enqueues_unsynced_delivered_shopify_orders(
        self, service, make_order
    ):
        unsynced = make_order()
        synced = make_order(sync_status=SyncStatus.SYNCED)
        local_only = make_order(shopify_order_id=None, shopify_connection=None)
        in_transit = make_order(status=OrderStatus.IN_TRANSIT)

        results = service.sweep_unsynced_orders()

        assert [r.order_id for r in results] == [unsynced.id]
        queued = set(FulfillmentRequest.objects.values_list("order_id", flat=True))
        assert queued == {unsynced.id}
        assert not {synced.id, local_only.id, in_transit.id} & queued

    def test_sweep_respects_limit(self, service, make_order):
        for _ in range(3):
            make_order()

        assert len(service.sweep_unsynced_orders(limit=2)) == 2

    def test_queue_status(self, service, make_order):
        service.enqueue_order_for_sync(make_order().id)

        status = service.get_queue_status()

        assert status.pending == 1
        assert status.total == 1

    def test_order_sync_status(self, service, fake_session, make_order):
        order = make_order()
        fake_session.add_unfulfilled_lookup().add(201, CREATED)
        service.enqueue_order_for_sync(order.id)
        service.trigger_drain()

        sync_status = service.get_order_sync_status(order.id)

        assert sync_status.sync_status == SyncStatus.SYNCED
        assert sync_status.request_state == RequestState.SUCCEEDED
        assert sync_status.attempts == 1
        assert sync_status.shopify_fulfillment_id == "255858046"

    def test_order_sync_status_without_queue_entry(self, service, make_order):
        order = make_order()

        sync_status = service.get_order_sync_status(order.id)

        assert sync_status.request_state is None
        assert sync_status.attempts == 0

    def test_release_stale(self, service, make_order):
        order = make_order()
        service.enqueue_order_for_sync(order.id)
        FulfillmentRequest.objects.filter(order=order).update(
            state=RequestState.IN_FLIGHT,
            last_attempt_at=timezone.now() - timedelta(hours=1),
        )

        assert service.release_stale() == 1
