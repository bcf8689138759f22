"""Scrape-job state machine and scraper-source quota bookkeeping."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List
from uuid import uuid4

from .database import Database, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

QUEUED = "queued"
SCRAPING = "scraping"
INDEXING = "indexing"
DONE = "done"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({DONE, FAILED})
ACTIVE_STATUSES = (QUEUED, SCRAPING, INDEXING)

_TRANSITIONS: dict[str, frozenset[str]] = {
    QUEUED: frozenset({SCRAPING, FAILED}),
    SCRAPING: frozenset({SCRAPING, INDEXING, FAILED}),
    INDEXING: frozenset({INDEXING, DONE, FAILED}),
    DONE: frozenset(),
    FAILED: frozenset(),
}

Clock = Callable[[], datetime]


class JobNotFound(LookupError):
    """Raised when a job does not exist for the requesting tenant."""


class InvalidJobTransition(RuntimeError):
    """Raised when a status change would break the job state machine."""


@dataclass(slots=True)
class ScrapeJob:
    id: str
    tenant_id: str
    source_url: str
    status: str
    progress: int
    message: str
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "sourceUrl": self.source_url,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ScrapeJob":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            source_url=row["source_url"],
            status=row["status"],
            progress=int(row["progress"]),
            message=row["message"],
            error=row["error"],
            created_at=from_db_time(row["created_at"]),  # type: ignore[arg-type]
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            updated_at=from_db_time(row["updated_at"]),  # type: ignore[arg-type]
        )


def _clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


class ScrapeJobTracker:
    """Persist and query scrape-job progress.

    Every write is scoped by ``id`` and ``tenant_id`` and guarded by the status
    it was read with, so a concurrent writer cannot silently overwrite a
    terminal state.
    """

    def __init__(self, database: Database, *, clock: Clock = utcnow) -> None:
        self._db = database
        self._clock = clock

    def create(
        self,
        tenant_id: str,
        source_url: str,
        *,
        progress: int = 5,
        message: str = "Queued for scraping",
    ) -> ScrapeJob:
        now = to_db_time(self._clock())
        job_id = str(uuid4())
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO scrape_jobs
                    (id, tenant_id, source_url, status, progress, message, created_at, started_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (job_id, tenant_id, source_url, QUEUED, _clamp_progress(progress), message, now, now, now),
            )
        logger.info("ingest.job.created job_id=%s tenant=%s url=%s", job_id, tenant_id, source_url)
        return self.get(tenant_id, job_id)

    def get(self, tenant_id: str, job_id: str) -> ScrapeJob:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM scrape_jobs WHERE id = ? AND tenant_id = ?",
                (job_id, tenant_id),
            ).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        return ScrapeJob.from_row(row)

    def list_for_tenant(self, tenant_id: str, *, limit: int = 50) -> List[ScrapeJob]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM scrape_jobs WHERE tenant_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (tenant_id, max(1, limit)),
            ).fetchall()
        return [ScrapeJob.from_row(row) for row in rows]

    def update(
        self,
        tenant_id: str,
        job_id: str,
        *,
        status: str,
        progress: int,
        message: str,
        error: str | None = None,
    ) -> ScrapeJob:
        """Move a job to ``status``; progress never goes backwards and is clamped to 0..100."""

        current = self.get(tenant_id, job_id)
        if status not in _TRANSITIONS.get(current.status, frozenset()):
            raise InvalidJobTransition(f"cannot move job {job_id} from {current.status} to {status}")

        if status in TERMINAL_STATUSES:
            new_progress = 100
        else:
            new_progress = max(current.progress, _clamp_progress(progress))
        now = to_db_time(self._clock())
        completed_at = now if status in TERMINAL_STATUSES else None

        with self._db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE scrape_jobs
                SET status = ?, progress = ?, message = ?, error = ?,
                    completed_at = COALESCE(?, completed_at), updated_at = ?
                WHERE id = ? AND tenant_id = ? AND status = ?
                """,
                (status, new_progress, message, error, completed_at, now, job_id, tenant_id, current.status),
            )
            if cursor.rowcount == 0:
                raise InvalidJobTransition(f"job {job_id} changed while updating to {status}")
        logger.info(
            "ingest.job.step job_id=%s status=%s progress=%s message=%s",
            job_id,
            status,
            new_progress,
            message,
        )
        return self.get(tenant_id, job_id)

    def fail(self, tenant_id: str, job_id: str, message: str, error: str) -> ScrapeJob:
        logger.warning("ingest.job.failed job_id=%s message=%s error=%s", job_id, message, error)
        return self.update(tenant_id, job_id, status=FAILED, progress=100, message=message, error=error)

    def fail_interrupted(self, *, error: str = "interrupted by process restart") -> int:
        """Fail every job a previous process left in a non-terminal state."""

        now = to_db_time(self._clock())
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        with self._db.connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE scrape_jobs
                SET status = ?, progress = 100, message = ?, error = ?, completed_at = ?, updated_at = ?
                WHERE status IN ({placeholders})
                """,
                (FAILED, "Scraping failed", error, now, now, *ACTIVE_STATUSES),
            )
            count = cursor.rowcount
        if count:
            logger.warning("ingest.job.recovered_interrupted count=%s", count)
        return count


@dataclass(slots=True)
class ScraperSource:
    tenant_id: str
    source_url: str
    title: str
    scraped_pages: int
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "sourceUrl": self.source_url,
            "title": self.title,
            "scrapedPages": self.scraped_pages,
            "updatedAt": self.updated_at.isoformat(),
        }


class SourceRegistry:
    """Track crawl roots per tenant and the pages each one consumes from the plan quota."""

    def __init__(self, database: Database, *, clock: Clock = utcnow) -> None:
        self._db = database
        self._clock = clock

    def register(self, tenant_id: str, source_url: str) -> None:
        """Create the source row if needed, keeping its current page count."""

        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO scraper_sources (id, tenant_id, source_url, title, scraped_pages, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT (tenant_id, source_url) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (str(uuid4()), tenant_id, source_url, source_url, now, now),
            )

    def record_crawl(self, tenant_id: str, source_url: str, *, title: str, scraped_pages: int) -> None:
        """Replace the source's page count with the result of the latest successful crawl."""

        now = to_db_time(self._clock())
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO scraper_sources (id, tenant_id, source_url, title, scraped_pages, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, source_url) DO UPDATE SET
                    title = excluded.title,
                    scraped_pages = excluded.scraped_pages,
                    updated_at = excluded.updated_at
                """,
                (str(uuid4()), tenant_id, source_url, title, max(0, scraped_pages), now, now),
            )

    def pages_for(self, tenant_id: str, source_url: str) -> int:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT scraped_pages FROM scraper_sources WHERE tenant_id = ? AND source_url = ?",
                (tenant_id, source_url),
            ).fetchone()
        return int(row["scraped_pages"]) if row else 0

    def total_pages(self, tenant_id: str) -> int:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(scraped_pages), 0) AS total FROM scraper_sources WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        return int(row["total"])

    def remaining_pages(self, tenant_id: str, source_url: str, plan_pages: int) -> int:
        """Plan ceiling minus pages already attributed to the tenant's other sources."""

        used_elsewhere = self.total_pages(tenant_id) - self.pages_for(tenant_id, source_url)
        return plan_pages - used_elsewhere

    def list_for_tenant(self, tenant_id: str) -> List[ScraperSource]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM scraper_sources WHERE tenant_id = ? ORDER BY updated_at DESC",
                (tenant_id,),
            ).fetchall()
        return [
            ScraperSource(
                tenant_id=row["tenant_id"],
                source_url=row["source_url"],
                title=row["title"],
                scraped_pages=int(row["scraped_pages"]),
                updated_at=from_db_time(row["updated_at"]),  # type: ignore[arg-type]
            )
            for row in rows
        ]


__all__ = [
    "ScrapeJob",
    "ScrapeJobTracker",
    "ScraperSource",
    "SourceRegistry",
    "JobNotFound",
    "InvalidJobTransition",
    "QUEUED",
    "SCRAPING",
    "INDEXING",
    "DONE",
    "FAILED",
]
