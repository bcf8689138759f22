from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest

from witzo.database import Database
from witzo.webhooks import (
    DEAD,
    DELIVERED,
    LEASE_EXPIRED_ERROR,
    PENDING,
    RETRYING,
    TEST_EVENT_MESSAGE,
    WebhookConfigNotFound,
    WebhookDeliveryEngine,
    WebhookEventNotFound,
    backoff_delay_ms,
    build_event_body,
)

TENANT = "tenant-ent"
HOOK_URL = "https://hooks.example.com/witzo"


class Receiver:
    """Mock webhook endpoint that records requests and answers with ``status``."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.error: Exception | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status)


def _engine(database: Database, clock, receiver: Receiver, **kwargs) -> WebhookDeliveryEngine:
    client = httpx.Client(transport=httpx.MockTransport(receiver))
    return WebhookDeliveryEngine(database, http_client=client, clock=clock, **kwargs)


def test_backoff_doubles_from_five_seconds_and_caps_at_ten_minutes() -> None:
    delays = [backoff_delay_ms(attempt) for attempt in range(1, 10)]

    assert delays == [5_000, 10_000, 20_000, 40_000, 80_000, 160_000, 320_000, 600_000, 600_000]
    assert backoff_delay_ms(0) == 5_000


def test_event_body_is_compact_and_ordered(clock) -> None:
    body = build_event_body("evt-1", "lead.created", clock.now, '{"leadId":"lead-1"}')

    assert body == (
        '{"id":"evt-1","type":"lead.created","occurredAt":"2025-01-06T12:00:00Z","payload":{"leadId":"lead-1"}}'
    )


def test_upsert_config_preserves_signing_secret(database: Database, clock) -> None:
    engine = _engine(database, clock, Receiver())

    first = engine.upsert_config(TENANT, HOOK_URL)
    second = engine.upsert_config(TENANT, "https://other.example.com/hook", active=False)

    assert first.signing_secret.startswith("whsec_")
    assert second.signing_secret == first.signing_secret
    assert second.webhook_url == "https://other.example.com/hook"
    assert second.is_active is False
    assert "signingSecret" not in second.to_dict()
    assert second.to_dict(include_secret=True)["signingSecret"] == first.signing_secret


@pytest.mark.parametrize(
    "url", ["", "ftp://hooks.example.com", "not a url", "http://hooks.example.com:abc/hook"]
)
def test_upsert_config_rejects_invalid_urls(database: Database, clock, url: str) -> None:
    engine = _engine(database, clock, Receiver())

    with pytest.raises(ValueError):
        engine.upsert_config(TENANT, url)


def test_get_config_raises_when_missing(database: Database, clock) -> None:
    engine = _engine(database, clock, Receiver())

    with pytest.raises(WebhookConfigNotFound):
        engine.get_config("tenant-without-hook")


def test_enqueue_without_active_config_creates_nothing(database: Database, clock) -> None:
    engine = _engine(database, clock, Receiver())

    assert engine.enqueue_lead_created(TENANT, "lead-1") == 0

    engine.upsert_config(TENANT, HOOK_URL, active=False)
    assert engine.enqueue_lead_created(TENANT, "lead-1") == 0
    assert engine.list_events(TENANT) == []


def test_enqueue_rejects_unknown_type_and_bad_payload(database: Database, clock) -> None:
    engine = _engine(database, clock, Receiver())
    engine.upsert_config(TENANT, HOOK_URL)

    with pytest.raises(ValueError):
        engine.enqueue(TENANT, "lead-1", "lead.deleted", {"leadId": "lead-1"})
    with pytest.raises(ValueError):
        engine.enqueue(TENANT, "lead-1", "lead.created", {"leadId": "lead-1", "extra": True})


def test_delivery_is_signed_over_timestamp_and_body(database: Database, clock) -> None:
    receiver = Receiver()
    engine = _engine(database, clock, receiver)
    config = engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-42")

    assert engine.process_pending() == 1

    request = receiver.requests[0]
    body = request.content.decode("utf-8")
    timestamp = request.headers["X-Witzo-Timestamp"]
    expected = hmac.new(
        config.signing_secret.encode("utf-8"),
        f"{timestamp}.{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    event = engine.list_events(TENANT)[0]

    assert str(request.url) == HOOK_URL
    assert timestamp == str(int(clock.now.timestamp()))
    assert request.headers["X-Witzo-Signature"] == f"sha256={expected}"
    assert request.headers["X-Witzo-Event-Id"] == event.id
    assert request.headers["X-Witzo-Event-Type"] == "lead.created"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(body) == {
        "id": event.id,
        "type": "lead.created",
        "occurredAt": "2025-01-06T12:00:00Z",
        "payload": {"leadId": "lead-42"},
    }
    assert event.status == DELIVERED
    assert event.attempts == 1
    assert event.response_status == 200
    assert event.delivered_at == clock.now
    assert event.last_error is None


def test_test_event_payload(database: Database, clock) -> None:
    receiver = Receiver()
    engine = _engine(database, clock, receiver)
    engine.upsert_config(TENANT, HOOK_URL)

    assert engine.send_test_event(TENANT) == 1
    engine.process_pending()

    payload = json.loads(receiver.requests[0].content)["payload"]
    assert payload == {
        "eventType": "lead.test",
        "message": TEST_EVENT_MESSAGE,
        "emittedAt": "2025-01-06T12:00:00Z",
    }
    assert engine.list_events(TENANT)[0].lead_id is None


def test_failed_deliveries_back_off_then_go_dead(database: Database, clock) -> None:
    receiver = Receiver(status=500)
    engine = _engine(database, clock, receiver)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")
    event_id = engine.list_events(TENANT)[0].id

    for attempt in range(1, 8):
        assert engine.process_pending() == 1
        event = engine.get_event(TENANT, event_id)
        delay = timedelta(milliseconds=backoff_delay_ms(attempt))
        assert event.status == RETRYING
        assert event.attempts == attempt
        assert event.last_error == "webhook status 500"
        assert event.response_status == 500
        assert event.next_attempt_at == clock.now + delay

        clock.advance(milliseconds=backoff_delay_ms(attempt) - 1)
        assert engine.process_pending() == 0
        clock.advance(milliseconds=1)

    assert engine.process_pending() == 1
    dead = engine.get_event(TENANT, event_id)
    assert dead.status == DEAD
    assert dead.attempts == 8

    clock.advance(hours=1)
    assert engine.process_pending() == 0
    assert len(receiver.requests) == 8


def test_transport_errors_are_recorded(database: Database, clock) -> None:
    receiver = Receiver()
    receiver.error = httpx.ConnectError("connection refused")
    engine = _engine(database, clock, receiver)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")

    engine.process_pending()

    event = engine.list_events(TENANT)[0]
    assert event.status == RETRYING
    assert event.last_error == "connection refused"
    assert event.response_status is None


def test_unsendable_url_fails_event_without_stopping_the_sweep(database: Database, clock) -> None:
    receiver = Receiver()
    engine = _engine(database, clock, receiver)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.upsert_config("tenant-basic", "https://crm.example.com/leads")
    engine.enqueue_lead_created(TENANT, "lead-bad")
    clock.advance(seconds=1)
    engine.enqueue_lead_created("tenant-basic", "lead-good")
    with database.connect() as conn:
        conn.execute(
            "UPDATE lead_webhook_configs SET webhook_url = ? WHERE tenant_id = ?",
            ("http://hooks.example.com:abc/hook", TENANT),
        )

    assert engine.process_pending() == 2

    bad = engine.list_events(TENANT)[0]
    assert bad.status == RETRYING
    assert bad.attempts == 1
    assert bad.last_error
    assert bad.response_status is None
    assert engine.list_events("tenant-basic")[0].status == DELIVERED
    assert [str(request.url) for request in receiver.requests] == ["https://crm.example.com/leads"]


def test_process_pending_takes_oldest_batch_first(database: Database, clock) -> None:
    receiver = Receiver()
    engine = _engine(database, clock, receiver, batch_size=2)
    engine.upsert_config(TENANT, HOOK_URL)
    for lead in ("lead-1", "lead-2", "lead-3"):
        engine.enqueue_lead_created(TENANT, lead)
        clock.advance(seconds=1)

    assert engine.process_pending() == 2
    delivered = [json.loads(request.content)["payload"]["leadId"] for request in receiver.requests]
    assert delivered == ["lead-1", "lead-2"]

    assert engine.process_pending() == 1
    assert engine.process_pending() == 0


def test_events_for_deactivated_config_are_held(database: Database, clock) -> None:
    receiver = Receiver()
    engine = _engine(database, clock, receiver)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")
    engine.upsert_config(TENANT, HOOK_URL, active=False)

    assert engine.process_pending() == 0
    assert engine.list_events(TENANT)[0].status == PENDING
    assert receiver.requests == []


def test_manual_retry_resets_dead_event(database: Database, clock) -> None:
    receiver = Receiver(status=503)
    engine = _engine(database, clock, receiver, max_attempts=1)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")
    engine.process_pending()
    event_id = engine.list_events(TENANT)[0].id
    assert engine.get_event(TENANT, event_id).status == DEAD

    reset = engine.retry_event(TENANT, event_id)

    assert reset.status == PENDING
    assert reset.attempts == 0
    assert reset.last_error is None
    assert reset.response_status is None
    assert reset.next_attempt_at == clock.now

    receiver.status = 204
    assert engine.process_pending() == 1
    assert engine.get_event(TENANT, event_id).status == DELIVERED


def test_retry_is_scoped_to_tenant(database: Database, clock) -> None:
    engine = _engine(database, clock, Receiver())
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")
    event_id = engine.list_events(TENANT)[0].id

    with pytest.raises(WebhookEventNotFound):
        engine.retry_event("tenant-other", event_id)
    with pytest.raises(WebhookEventNotFound):
        engine.retry_event(TENANT, "missing")


def test_stale_processing_rows_are_reclaimed(database: Database, clock) -> None:
    receiver = Receiver()
    receiver.error = RuntimeError("worker crashed mid-delivery")
    engine = _engine(database, clock, receiver, processing_timeout=600)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")

    with pytest.raises(RuntimeError):
        engine.process_pending()
    assert engine.list_events(TENANT)[0].status == "processing"

    clock.advance(seconds=300)
    assert engine.reclaim_stale() == 0

    clock.advance(seconds=301)
    assert engine.reclaim_stale() == 1
    event = engine.list_events(TENANT)[0]
    assert event.status == RETRYING
    assert event.attempts == 1
    assert event.last_error == LEASE_EXPIRED_ERROR
    assert event.next_attempt_at == clock.now

    receiver.error = None
    assert engine.process_pending() == 1
    assert engine.list_events(TENANT)[0].status == DELIVERED


def test_stale_row_on_last_attempt_goes_dead(database: Database, clock) -> None:
    receiver = Receiver()
    receiver.error = RuntimeError("worker crashed mid-delivery")
    engine = _engine(database, clock, receiver, max_attempts=1)
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")
    with pytest.raises(RuntimeError):
        engine.process_pending()

    clock.advance(minutes=11)

    assert engine.reclaim_stale() == 1
    assert engine.list_events(TENANT)[0].status == DEAD


def test_list_events_is_newest_first(database: Database, clock) -> None:
    engine = _engine(database, clock, Receiver())
    engine.upsert_config(TENANT, HOOK_URL)
    engine.enqueue_lead_created(TENANT, "lead-1")
    clock.advance(seconds=1)
    engine.enqueue_lead_created(TENANT, "lead-2")

    events = engine.list_events(TENANT)

    assert [event.lead_id for event in events] == ["lead-2", "lead-1"]
    assert events[0].to_dict()["leadId"] == "lead-2"
    assert engine.list_events("tenant-other") == []
