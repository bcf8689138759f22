"""Buffered widget analytics, flushed to the database by a background task."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, List

from .database import Database, to_db_time, utcnow
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WidgetAnalyticsEvent:
    tenant_id: str
    event_type: str
    widget_key: str = ""
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class AnalyticsBuffer:
    """In-memory FIFO of widget events; ``flush`` persists a bounded batch per call."""

    def __init__(
        self,
        database: Database,
        *,
        max_items: int = 10_000,
        clock: Callable[[], datetime] = utcnow,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._db = database
        self._events: Deque[WidgetAnalyticsEvent] = deque()
        self._max_items = max(1, max_items)
        self._lock = threading.Lock()
        self._clock = clock
        self._metrics = metrics
        self._dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def record(self, event: WidgetAnalyticsEvent) -> None:
        if not event.event_type.strip():
            raise ValueError("eventType is required")
        with self._lock:
            if len(self._events) >= self._max_items:
                self._events.popleft()
                self._dropped += 1
                if self._dropped % 100 == 1:
                    logger.warning("analytics.buffer.overflow dropped=%s", self._dropped)
            self._events.append(event)

    def _take(self, limit: int) -> List[WidgetAnalyticsEvent]:
        with self._lock:
            count = min(limit, len(self._events))
            return [self._events.popleft() for _ in range(count)]

    def flush(self, limit: int = 200) -> int:
        """Persist up to ``limit`` buffered events, oldest first; returns rows written."""

        batch = self._take(max(0, limit))
        if not batch:
            return 0
        rows = [
            (
                event.tenant_id,
                event.widget_key,
                event.event_type,
                event.session_id,
                json.dumps(event.metadata or {}, separators=(",", ":")),
                to_db_time(event.created_at),
            )
            for event in batch
        ]
        try:
            with self._db.connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO widget_analytics (tenant_id, widget_key, event_type, session_id, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except Exception:
            with self._lock:
                self._events.extendleft(reversed(batch))
            raise
        logger.info("analytics.flushed rows=%s", len(rows))
        if self._metrics:
            self._metrics.increment("analytics.flushed", value=len(rows))
        return len(rows)

    def prune(self, retention_days: int = 90) -> int:
        """Delete persisted events older than ``retention_days``."""

        cutoff = to_db_time(self._clock() - timedelta(days=retention_days))
        with self._db.connect() as conn:
            cursor = conn.execute("DELETE FROM widget_analytics WHERE created_at < ?", (cutoff,))
            count = cursor.rowcount
        if count:
            logger.info("analytics.pruned rows=%s retention_days=%s", count, retention_days)
        return count

    def recent(self, tenant_id: str, *, limit: int = 100) -> List[dict]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT event_type, widget_key, session_id, metadata, created_at
                FROM widget_analytics WHERE tenant_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (tenant_id, limit),
            ).fetchall()
        return [
            {
                "eventType": row["event_type"],
                "widgetKey": row["widget_key"],
                "sessionId": row["session_id"],
                "metadata": json.loads(row["metadata"] or "{}"),
                "createdAt": row["created_at"],
            }
            for row in rows
        ]


__all__ = ["AnalyticsBuffer", "WidgetAnalyticsEvent"]
