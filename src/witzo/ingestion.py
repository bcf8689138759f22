"""Crawl, chunk, embed and index tenant content while tracking job progress."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass
from typing import ContextManager, List, Sequence
from uuid import uuid4

from .chunker import DEFAULT_OVERLAP_WORDS, DEFAULT_WINDOW_WORDS, chunk_words
from .crawler import CrawledPage, Crawler, CrawlError, InvalidSourceURL, require_source_url
from .ingestion_queue import IngestionQueue, IngestionQueueFull, IngestionTask
from .jobs import (
    DONE,
    INDEXING,
    SCRAPING,
    InvalidJobTransition,
    ScrapeJob,
    ScrapeJobTracker,
    SourceRegistry,
)
from .observability import MetricsRecorder
from .plans import TenantDirectory
from .retrieval import Embedder
from .vector_store import NamespaceVectorStore, VectorRecord, namespace_for

logger = logging.getLogger(__name__)

PAGE_LIMIT_REACHED = "scraped page limit reached"


class IngestionCancelled(RuntimeError):
    """Raised at a checkpoint once shutdown has been requested."""


@dataclass(slots=True)
class RAGChunk:
    """A retrievable text span tagged with its page and tenant namespace."""

    tenant_id: str
    namespace: str
    url: str
    page_title: str
    chunk_index: int
    text: str
    widget_key: str = ""
    origin: str = "page"

    def to_payload(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "namespace": self.namespace,
            "url": self.url,
            "page_title": self.page_title,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "widget_key": self.widget_key,
            "origin": self.origin,
        }


def build_chunks(
    tenant_id: str,
    pages: Sequence[CrawledPage],
    *,
    widget_key: str = "",
    window_size: int = DEFAULT_WINDOW_WORDS,
    overlap: int = DEFAULT_OVERLAP_WORDS,
) -> List[RAGChunk]:
    namespace = namespace_for(tenant_id)
    chunks: list[RAGChunk] = []
    for page in pages:
        for chunk in chunk_words(page.text, window_size=window_size, overlap=overlap):
            chunks.append(
                RAGChunk(
                    tenant_id=tenant_id,
                    namespace=namespace,
                    url=page.url,
                    page_title=page.title,
                    chunk_index=chunk.index,
                    text=chunk.text,
                    widget_key=widget_key,
                )
            )
    return chunks


def embed_chunks(
    embedder: Embedder,
    chunks: Sequence[RAGChunk],
    *,
    metrics: MetricsRecorder | None = None,
) -> List[VectorRecord]:
    """Embed each chunk on its own; failures are logged and the chunk is skipped."""

    records: list[VectorRecord] = []
    for chunk in chunks:
        if not chunk.text.strip():
            continue
        try:
            vector = embedder.embed_one(chunk.text)
        except Exception as exc:
            logger.warning(
                "ingest.embed.failed tenant=%s url=%s chunk=%s error=%s",
                chunk.tenant_id,
                chunk.url,
                chunk.chunk_index,
                exc,
            )
            if metrics:
                metrics.increment("ingest.embedding_failures", tenant_id=chunk.tenant_id)
            continue
        records.append(VectorRecord(id=str(uuid4()), vector=vector, payload=chunk.to_payload()))
    return records


class IngestionOrchestrator:
    """Run one ingestion job end to end, persisting every step on the job row."""

    def __init__(
        self,
        crawler: Crawler,
        embedder: Embedder,
        vector_store: NamespaceVectorStore,
        jobs: ScrapeJobTracker,
        sources: SourceRegistry,
        *,
        window_size: int = DEFAULT_WINDOW_WORDS,
        overlap: int = DEFAULT_OVERLAP_WORDS,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._crawler = crawler
        self._embedder = embedder
        self._vectors = vector_store
        self._jobs = jobs
        self._sources = sources
        self._window_size = window_size
        self._overlap = overlap
        self._metrics = metrics

    def run_task(self, task: IngestionTask, cancel_event: threading.Event) -> ScrapeJob:
        return self.run(
            task.tenant_id,
            task.source_url,
            task.job_id,
            task.max_pages,
            widget_key=task.widget_key,
            page_limit=task.page_limit,
            cancel_event=cancel_event,
        )

    def run(
        self,
        tenant_id: str,
        source_url: str,
        job_id: str,
        max_pages: int,
        *,
        widget_key: str = "",
        page_limit: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ScrapeJob:
        """Run every step for ``job_id``.

        With ``page_limit`` set, the crawl budget is recomputed from the pages
        the tenant's other sources hold right now instead of trusting
        ``max_pages`` from submit time.
        """

        start = time.perf_counter()
        logger.info("ingest.job.start job_id=%s tenant=%s url=%s max_pages=%s", job_id, tenant_id, source_url, max_pages)
        try:
            job = self._run_steps(tenant_id, source_url, job_id, max_pages, widget_key, page_limit, cancel_event)
        except IngestionCancelled:
            job = self._fail(tenant_id, job_id, "Ingestion cancelled", "ingestion cancelled during shutdown")
        except Exception as exc:
            logger.exception("ingest.job.crashed job_id=%s error=%s", job_id, exc)
            job = self._fail(tenant_id, job_id, "Scraping failed", str(exc))

        if self._metrics:
            self._metrics.record_timing(
                "ingest.job.duration",
                time.perf_counter() - start,
                tenant_id=tenant_id,
                status=job.status,
            )
            self._metrics.increment("ingest.jobs", tenant_id=tenant_id, status=job.status)
        return job

    def _run_steps(
        self,
        tenant_id: str,
        source_url: str,
        job_id: str,
        max_pages: int,
        widget_key: str,
        page_limit: int | None,
        cancel_event: threading.Event | None,
    ) -> ScrapeJob:
        if page_limit is not None:
            max_pages = self._sources.remaining_pages(tenant_id, source_url, page_limit)
            logger.info("ingest.quota.checked job_id=%s tenant=%s remaining=%s", job_id, tenant_id, max_pages)
        if max_pages <= 0:
            return self._fail(tenant_id, job_id, PAGE_LIMIT_REACHED, PAGE_LIMIT_REACHED)

        self._checkpoint(cancel_event)
        self._step(tenant_id, job_id, SCRAPING, 20, f"Crawling up to {max_pages} pages")
        try:
            with self._timed("ingest.step.crawl", tenant_id):
                pages = self._crawler.crawl(source_url, max_pages, cancel_event=cancel_event)
        except (CrawlError, InvalidSourceURL) as exc:
            self._checkpoint(cancel_event)
            return self._fail(tenant_id, job_id, "Scraping failed", str(exc))

        self._checkpoint(cancel_event)
        self._step(tenant_id, job_id, SCRAPING, 55, "Chunking scraped pages")
        chunks = build_chunks(
            tenant_id,
            pages,
            widget_key=widget_key,
            window_size=self._window_size,
            overlap=self._overlap,
        )
        if not chunks:
            return self._fail(tenant_id, job_id, "No chunks generated", "no chunks generated from scraped pages")

        self._checkpoint(cancel_event)
        self._step(tenant_id, job_id, INDEXING, 70, "Resetting vector namespace")
        namespace = namespace_for(tenant_id)
        try:
            self._vectors.delete_namespace(namespace)
        except Exception as exc:
            logger.warning("ingest.namespace.reset_failed job_id=%s namespace=%s error=%s", job_id, namespace, exc)
            return self._fail(tenant_id, job_id, "Indexing failed", str(exc))

        self._checkpoint(cancel_event)
        self._step(tenant_id, job_id, INDEXING, 85, "Indexing content")
        with self._timed("ingest.step.embed", tenant_id):
            records = embed_chunks(self._embedder, chunks, metrics=self._metrics)
        if not records:
            return self._fail(tenant_id, job_id, "No chunks generated", "no chunks generated")
        try:
            self._vectors.upsert(namespace, records)
        except Exception as exc:
            logger.warning("ingest.upsert.failed job_id=%s namespace=%s error=%s", job_id, namespace, exc)
            return self._fail(tenant_id, job_id, "Indexing failed", str(exc))

        title = pages[0].title or source_url
        self._sources.record_crawl(tenant_id, source_url, title=title, scraped_pages=len(pages))
        logger.info(
            "ingest.job.indexed job_id=%s pages=%s chunks=%s vectors=%s",
            job_id,
            len(pages),
            len(chunks),
            len(records),
        )
        return self._step(tenant_id, job_id, DONE, 100, "Scraping complete")

    def _step(self, tenant_id: str, job_id: str, status: str, progress: int, message: str) -> ScrapeJob:
        return self._jobs.update(tenant_id, job_id, status=status, progress=progress, message=message)

    def _timed(self, metric: str, tenant_id: str) -> ContextManager[None]:
        if self._metrics is None:
            return nullcontext()
        return self._metrics.track_timing(metric, tenant_id=tenant_id)

    def _fail(self, tenant_id: str, job_id: str, message: str, error: str) -> ScrapeJob:
        try:
            return self._jobs.fail(tenant_id, job_id, message, error)
        except InvalidJobTransition:
            return self._jobs.get(tenant_id, job_id)

    @staticmethod
    def _checkpoint(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise IngestionCancelled("ingestion cancelled")


class IngestionService:
    """Request-path entry points: start an ingest and read its status."""

    def __init__(
        self,
        jobs: ScrapeJobTracker,
        sources: SourceRegistry,
        tenants: TenantDirectory,
        queue: IngestionQueue,
        *,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._jobs = jobs
        self._sources = sources
        self._tenants = tenants
        self._queue = queue
        self._metrics = metrics

    def start_ingest(self, tenant_id: str, url: str) -> ScrapeJob:
        """Validate, record and enqueue an ingest; returns the new job without waiting for it.

        Raises :class:`InvalidSourceURL` for bad input and
        :class:`IngestionQueueFull` when the worker pool is saturated.
        """

        source_url = require_source_url(url)
        if self._queue.full():
            raise IngestionQueueFull("Ingestion queue is full")

        profile = self._tenants.profile(tenant_id)
        remaining = self._sources.remaining_pages(tenant_id, source_url, profile.limits.pages)
        self._sources.register(tenant_id, source_url)
        job = self._jobs.create(tenant_id, source_url)
        if self._metrics:
            self._metrics.increment("ingest.requests", tenant_id=tenant_id)

        if remaining <= 0:
            logger.info("ingest.quota.exhausted tenant=%s url=%s", tenant_id, source_url)
            return self._jobs.fail(tenant_id, job.id, PAGE_LIMIT_REACHED, PAGE_LIMIT_REACHED)

        try:
            self._queue.submit(
                IngestionTask(
                    job_id=job.id,
                    tenant_id=tenant_id,
                    source_url=source_url,
                    max_pages=remaining,
                    widget_key=profile.widget_key,
                    page_limit=profile.limits.pages,
                )
            )
        except IngestionQueueFull:
            self._jobs.fail(tenant_id, job.id, "Ingestion queue is full", "ingestion queue is full")
            raise
        return job

    def job_status(self, tenant_id: str, job_id: str) -> ScrapeJob:
        return self._jobs.get(tenant_id, job_id)

    def list_jobs(self, tenant_id: str, *, limit: int = 50) -> List[ScrapeJob]:
        return self._jobs.list_for_tenant(tenant_id, limit=limit)


__all__ = [
    "IngestionOrchestrator",
    "IngestionService",
    "IngestionCancelled",
    "RAGChunk",
    "build_chunks",
    "embed_chunks",
    "PAGE_LIMIT_REACHED",
]
