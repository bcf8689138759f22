"""Durable, signed webhook delivery with exponential backoff and dead-lettering.

Events are rows in ``lead_webhook_events``. ``enqueue`` only inserts rows;
delivery happens in :meth:`WebhookDeliveryEngine.process_pending`, which the
background sweep calls on a fixed interval. Each attempt moves the row to
``processing`` before the POST is sent, then to ``delivered``, ``retrying``
or ``dead`` depending on the outcome.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Type
from urllib.parse import urlsplit
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict

from .database import Database, from_db_time, to_db_time, utcnow
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
RETRYING = "retrying"
DELIVERED = "delivered"
DEAD = "dead"

DUE_STATUSES = (PENDING, RETRYING)

DEFAULT_MAX_ATTEMPTS = 8
BASE_BACKOFF_MS = 5_000
MAX_BACKOFF_MS = 600_000

LEAD_CREATED = "lead.created"
LEAD_TEST = "lead.test"
TEST_EVENT_MESSAGE = "This is a test webhook event from Witzo"
LEASE_EXPIRED_ERROR = "processing lease expired"

_OCCURRED_AT_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

Clock = Callable[[], datetime]


class WebhookEventNotFound(LookupError):
    """Raised when an event does not exist for the requesting tenant."""


class WebhookConfigNotFound(LookupError):
    """Raised when the tenant has no webhook configured."""


class LeadCreatedPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    leadId: str


class LeadTestPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    eventType: str = LEAD_TEST
    message: str = TEST_EVENT_MESSAGE
    emittedAt: str


PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    LEAD_CREATED: LeadCreatedPayload,
    LEAD_TEST: LeadTestPayload,
}


def serialize_payload(event_type: str, payload: BaseModel | dict[str, Any]) -> str:
    """Validate ``payload`` against the model registered for ``event_type`` and return compact JSON."""

    model = PAYLOAD_MODELS.get(event_type)
    if model is None:
        raise ValueError(f"Unknown webhook event type: {event_type}")
    if isinstance(payload, BaseModel):
        if not isinstance(payload, model):
            raise ValueError(f"{type(payload).__name__} is not a valid payload for {event_type}")
        validated = payload
    else:
        validated = model.model_validate(payload)
    return validated.model_dump_json()


def sign(secret: str, timestamp: str, body: str) -> str:
    """Hex HMAC-SHA256 of ``timestamp + "." + body`` keyed by the config's signing secret."""

    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def backoff_delay_ms(attempts: int) -> int:
    """Delay before the next attempt after ``attempts`` failures: 5s doubling, capped at 10 minutes."""

    exponent = max(attempts, 1) - 1
    return min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2**exponent)


def build_event_body(event_id: str, event_type: str, occurred_at: datetime, payload_json: str) -> str:
    """Return the canonical compact body ``{"id","type","occurredAt","payload"}``."""

    body = {
        "id": event_id,
        "type": event_type,
        "occurredAt": occurred_at.strftime(_OCCURRED_AT_FORMAT),
        "payload": json.loads(payload_json),
    }
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def validate_webhook_url(raw: str) -> str:
    url = (raw or "").strip()
    if not url:
        raise ValueError("webhookUrl is required")
    parts = urlsplit(url)
    if parts.scheme.lower() not in {"http", "https"} or not parts.hostname:
        raise ValueError("webhookUrl must be an absolute http(s) URL")
    try:
        parts.port  # raises ValueError for a non-numeric port
        httpx.URL(url)
    except (ValueError, httpx.InvalidURL) as exc:
        raise ValueError(f"webhookUrl is not a valid URL: {exc}") from exc
    return url


@dataclass(slots=True)
class WebhookConfig:
    id: str
    tenant_id: str
    webhook_url: str
    signing_secret: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self, *, include_secret: bool = False) -> dict:
        data = {
            "id": self.id,
            "webhookUrl": self.webhook_url,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if include_secret:
            data["signingSecret"] = self.signing_secret
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WebhookConfig":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            webhook_url=row["webhook_url"],
            signing_secret=row["signing_secret"],
            is_active=bool(row["is_active"]),
            created_at=from_db_time(row["created_at"]),  # type: ignore[arg-type]
            updated_at=from_db_time(row["updated_at"]),  # type: ignore[arg-type]
        )


@dataclass(slots=True)
class WebhookEvent:
    id: str
    tenant_id: str
    lead_id: str | None
    config_id: str
    event_type: str
    payload: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: datetime
    last_error: str | None
    response_status: int | None
    last_attempt_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime

    def to_dict(self) -> dict:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "leadId": self.lead_id,
            "eventType": self.event_type,
            "status": self.status,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "nextAttemptAt": _iso(self.next_attempt_at),
            "lastError": self.last_error,
            "responseStatus": self.response_status,
            "lastAttemptAt": _iso(self.last_attempt_at),
            "deliveredAt": _iso(self.delivered_at),
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WebhookEvent":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            lead_id=row["lead_id"],
            config_id=row["config_id"],
            event_type=row["event_type"],
            payload=row["payload"],
            status=row["status"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            next_attempt_at=from_db_time(row["next_attempt_at"]),  # type: ignore[arg-type]
            last_error=row["last_error"],
            response_status=row["response_status"],
            last_attempt_at=from_db_time(row["last_attempt_at"]),
            delivered_at=from_db_time(row["delivered_at"]),
            created_at=from_db_time(row["created_at"]),  # type: ignore[arg-type]
        )


class WebhookDeliveryEngine:
    """Queue, sign and deliver tenant webhook events."""

    def __init__(
        self,
        database: Database,
        *,
        http_client: httpx.Client | None = None,
        clock: Clock = utcnow,
        batch_size: int = 50,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 20.0,
        processing_timeout: float = 600.0,
        header_prefix: str = "Witzo",
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._db = database
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._batch_size = max(1, batch_size)
        self._max_attempts = max(1, max_attempts)
        self._timeout = timeout
        self._processing_timeout = processing_timeout
        self._header_prefix = header_prefix
        self._metrics = metrics

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def upsert_config(self, tenant_id: str, webhook_url: str, *, active: bool = True) -> WebhookConfig:
        """Create or update the tenant's single webhook target; the signing secret survives updates."""

        url = validate_webhook_url(webhook_url)
        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO lead_webhook_configs
                    (id, tenant_id, webhook_url, signing_secret, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    webhook_url = excluded.webhook_url,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (str(uuid4()), tenant_id, url, f"whsec_{uuid4().hex}", int(active), now, now),
            )
        logger.info("webhooks.config.upserted tenant=%s active=%s", tenant_id, active)
        return self.get_config(tenant_id)

    def get_config(self, tenant_id: str) -> WebhookConfig:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM lead_webhook_configs WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        if row is None:
            raise WebhookConfigNotFound(f"No webhook configured for tenant {tenant_id}")
        return WebhookConfig.from_row(row)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------
    def enqueue(
        self,
        tenant_id: str,
        lead_id: str | None,
        event_type: str,
        payload: BaseModel | dict[str, Any],
    ) -> int:
        """Insert one pending event per active config of the tenant; returns the number of rows."""

        payload_json = serialize_payload(event_type, payload)
        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            configs = conn.execute(
                "SELECT id FROM lead_webhook_configs WHERE tenant_id = ? AND is_active = 1",
                (tenant_id,),
            ).fetchall()
            conn.executemany(
                """
                INSERT INTO lead_webhook_events
                    (id, tenant_id, lead_id, config_id, event_type, payload, status,
                     attempts, max_attempts, next_attempt_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                [
                    (
                        str(uuid4()),
                        tenant_id,
                        lead_id or None,
                        config["id"],
                        event_type,
                        payload_json,
                        PENDING,
                        self._max_attempts,
                        now,
                        now,
                        now,
                    )
                    for config in configs
                ],
            )
        count = len(configs)
        logger.info("webhooks.enqueued tenant=%s type=%s rows=%s", tenant_id, event_type, count)
        if self._metrics and count:
            self._metrics.increment("webhooks.enqueued", value=count, event_type=event_type)
        return count

    def enqueue_lead_created(self, tenant_id: str, lead_id: str) -> int:
        return self.enqueue(tenant_id, lead_id, LEAD_CREATED, LeadCreatedPayload(leadId=lead_id))

    def send_test_event(self, tenant_id: str) -> int:
        payload = LeadTestPayload(emittedAt=self._clock().strftime(_OCCURRED_AT_FORMAT))
        return self.enqueue(tenant_id, None, LEAD_TEST, payload)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def process_pending(self) -> int:
        """Attempt delivery of up to ``batch_size`` due events, oldest first; returns attempts made."""

        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT e.id, e.tenant_id, e.config_id, e.event_type, e.payload,
                       e.attempts, e.max_attempts, c.webhook_url, c.signing_secret
                FROM lead_webhook_events e
                JOIN lead_webhook_configs c ON c.id = e.config_id
                WHERE e.status IN (?, ?) AND e.next_attempt_at <= ? AND c.is_active = 1
                ORDER BY e.created_at ASC, e.rowid ASC
                LIMIT ?
                """,
                (*DUE_STATUSES, now, self._batch_size),
            ).fetchall()

        attempted = 0
        for row in rows:
            if not self._claim(row["id"]):
                continue
            attempted += 1
            self._deliver(row, attempts=int(row["attempts"]) + 1)
        if attempted:
            logger.info("webhooks.sweep.completed attempted=%s", attempted)
        return attempted

    def _claim(self, event_id: str) -> bool:
        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE lead_webhook_events
                SET status = ?, attempts = attempts + 1, last_attempt_at = ?, updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (PROCESSING, now, now, event_id, *DUE_STATUSES),
            )
            return cursor.rowcount == 1

    def _deliver(self, row: sqlite3.Row, *, attempts: int) -> None:
        event_id = row["id"]
        event_type = row["event_type"]
        sent_at = self._clock()
        timestamp = str(int(sent_at.timestamp()))
        body = build_event_body(event_id, event_type, sent_at, row["payload"])
        signature = sign(row["signing_secret"], timestamp, body)
        prefix = f"X-{self._header_prefix}"
        headers = {
            "Content-Type": "application/json",
            f"{prefix}-Event-Id": event_id,
            f"{prefix}-Event-Type": event_type,
            f"{prefix}-Timestamp": timestamp,
            f"{prefix}-Signature": f"sha256={signature}",
        }

        response_status: int | None = None
        error: str | None = None
        try:
            response = self._client.post(
                row["webhook_url"],
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._timeout,
            )
            response_status = response.status_code
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = str(exc) or type(exc).__name__

        if response_status is not None and 200 <= response_status < 300:
            self._mark_delivered(event_id, response_status)
            logger.info("webhooks.delivered event_id=%s status=%s attempt=%s", event_id, response_status, attempts)
            if self._metrics:
                self._metrics.increment("webhooks.deliveries", outcome=DELIVERED)
            return

        if response_status is not None:
            error = f"webhook status {response_status}"
        max_attempts = int(row["max_attempts"])
        status = DEAD if attempts >= max_attempts else RETRYING
        self._mark_failed(event_id, status, error or "delivery failed", response_status, attempts)
        logger.warning(
            "webhooks.delivery.failed event_id=%s tenant=%s config_id=%s status=%s attempt=%s max_attempts=%s error=%s",
            event_id,
            row["tenant_id"],
            row["config_id"],
            status,
            attempts,
            max_attempts,
            error,
        )
        if self._metrics:
            self._metrics.increment("webhooks.deliveries", outcome=status)

    def _mark_delivered(self, event_id: str, response_status: int) -> None:
        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            conn.execute(
                """
                UPDATE lead_webhook_events
                SET status = ?, delivered_at = ?, response_status = ?, last_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (DELIVERED, now, response_status, now, event_id),
            )

    def _mark_failed(
        self,
        event_id: str,
        status: str,
        error: str,
        response_status: int | None,
        attempts: int,
    ) -> None:
        now = self._clock()
        next_attempt = None
        if status != DEAD:
            next_attempt = to_db_time(now + timedelta(milliseconds=backoff_delay_ms(attempts)))
        with self._db.connect() as conn:
            conn.execute(
                """
                UPDATE lead_webhook_events
                SET status = ?, last_error = ?, response_status = ?,
                    next_attempt_at = COALESCE(?, next_attempt_at), updated_at = ?
                WHERE id = ?
                """,
                (status, error, response_status, next_attempt, to_db_time(now), event_id),
            )

    def reclaim_stale(self) -> int:
        """Return events stuck in ``processing`` past the lease timeout to the retry schedule."""

        now = self._clock()
        cutoff = to_db_time(now - timedelta(seconds=self._processing_timeout))
        stamp = to_db_time(now)
        with self._db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE lead_webhook_events
                SET status = CASE WHEN attempts >= max_attempts THEN ? ELSE ? END,
                    last_error = ?,
                    next_attempt_at = CASE WHEN attempts >= max_attempts THEN next_attempt_at ELSE ? END,
                    updated_at = ?
                WHERE status = ? AND last_attempt_at IS NOT NULL AND last_attempt_at < ?
                """,
                (DEAD, RETRYING, LEASE_EXPIRED_ERROR, stamp, stamp, PROCESSING, cutoff),
            )
            count = cursor.rowcount
        if count:
            logger.warning("webhooks.lease.reclaimed count=%s", count)
            if self._metrics:
                self._metrics.increment("webhooks.reclaimed", value=count)
        return count

    # ------------------------------------------------------------------
    # Tenant operations
    # ------------------------------------------------------------------
    def retry_event(self, tenant_id: str, event_id: str) -> WebhookEvent:
        """Reset an event to ``pending`` with a fresh attempt budget, due immediately."""

        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE lead_webhook_events
                SET status = ?, attempts = 0, next_attempt_at = ?, last_error = NULL,
                    response_status = NULL, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (PENDING, now, now, event_id, tenant_id),
            )
            if cursor.rowcount == 0:
                raise WebhookEventNotFound(f"Webhook event {event_id} not found")
        logger.info("webhooks.retry.requested tenant=%s event_id=%s", tenant_id, event_id)
        return self.get_event(tenant_id, event_id)

    def get_event(self, tenant_id: str, event_id: str) -> WebhookEvent:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM lead_webhook_events WHERE id = ? AND tenant_id = ?",
                (event_id, tenant_id),
            ).fetchone()
        if row is None:
            raise WebhookEventNotFound(f"Webhook event {event_id} not found")
        return WebhookEvent.from_row(row)

    def list_events(self, tenant_id: str, *, limit: int = 100) -> List[WebhookEvent]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM lead_webhook_events WHERE tenant_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (tenant_id, limit),
            ).fetchall()
        return [WebhookEvent.from_row(row) for row in rows]


__all__ = [
    "WebhookDeliveryEngine",
    "WebhookConfig",
    "WebhookEvent",
    "WebhookEventNotFound",
    "WebhookConfigNotFound",
    "LeadCreatedPayload",
    "LeadTestPayload",
    "PAYLOAD_MODELS",
    "backoff_delay_ms",
    "build_event_body",
    "serialize_payload",
    "sign",
]
