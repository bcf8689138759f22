from __future__ import annotations

import threading
from uuid import uuid4

import httpx
import pytest

from witzo.crawler import CrawledPage, CrawlError, Crawler
from witzo.database import Database
from witzo.ingestion import IngestionOrchestrator, IngestionService, build_chunks
from witzo.ingestion_queue import IngestionQueue, IngestionQueueFull
from witzo.jobs import DONE, FAILED, QUEUED, ScrapeJobTracker, SourceRegistry
from witzo.vector_store import NamespaceVectorStore, VectorRecord, namespace_for

TENANT = "tenant-0001"


def _html(title: str, body: str, links: list[str]) -> str:
    anchors = "".join(f'<a href="{href}">more</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body><p>{body}</p>{anchors}</body></html>"


def _site_crawler() -> Crawler:
    site = {
        "https://example.com/": _html("Home", "Alpha home page", ["/pricing", "/about", "https://elsewhere.test/"]),
        "https://example.com/pricing": _html("Pricing", "Beta pricing page", []),
        "https://example.com/about": _html("About", "About the company", []),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        body = site.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, text=body, headers={"content-type": "text/html"})

    return Crawler(httpx.Client(transport=httpx.MockTransport(handler)))


class StaticCrawler:
    def __init__(self, pages: list[CrawledPage] | None = None, error: Exception | None = None) -> None:
        self.pages = pages or []
        self.error = error
        self.calls: list[tuple[str, int]] = []

    def crawl(self, root_url: str, max_pages: int, *, cancel_event=None):
        self.calls.append((root_url, max_pages))
        if self.error is not None:
            raise self.error
        return self.pages[:max_pages]


class ExplodingVectorStore:
    def __init__(self, inner: NamespaceVectorStore) -> None:
        self.inner = inner

    def delete_namespace(self, namespace: str) -> bool:
        raise RuntimeError("vector store unavailable")

    def upsert(self, namespace, records) -> None:
        self.inner.upsert(namespace, records)


def _orchestrator(database: Database, crawler, embedder, vector_store) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        crawler,
        embedder,
        vector_store,
        ScrapeJobTracker(database),
        SourceRegistry(database),
    )


def _new_job(database: Database, url: str = "https://example.com/") -> str:
    SourceRegistry(database).register(TENANT, url)
    return ScrapeJobTracker(database).create(TENANT, url).id


def test_build_chunks_tags_page_metadata() -> None:
    pages = [CrawledPage(url="https://example.com/", title="Home", text=" ".join(["word"] * 600))]

    chunks = build_chunks(TENANT, pages, widget_key="wk_1")

    assert len(chunks) == 2
    payload = chunks[1].to_payload()
    assert payload["tenant_id"] == TENANT
    assert payload["namespace"] == namespace_for(TENANT)
    assert payload["url"] == "https://example.com/"
    assert payload["page_title"] == "Home"
    assert payload["chunk_index"] == 1
    assert payload["widget_key"] == "wk_1"
    assert payload["origin"] == "page"


def test_run_indexes_site_and_finishes_done(database: Database, embedder, vector_store) -> None:
    job_id = _new_job(database)
    orchestrator = _orchestrator(database, _site_crawler(), embedder, vector_store)

    job = orchestrator.run(TENANT, "https://example.com/", job_id, 3, widget_key="wk_1")

    assert job.status == DONE
    assert job.progress == 100
    assert job.message == "Scraping complete"
    assert job.completed_at is not None
    payloads = list(vector_store.iter_payloads(namespace_for(TENANT)))
    assert {payload["url"] for payload in payloads} == {
        "https://example.com/",
        "https://example.com/about",
        "https://example.com/pricing",
    }
    sources = SourceRegistry(database).list_for_tenant(TENANT)
    assert sources[0].scraped_pages == 3
    assert sources[0].title == "Home"


def test_recrawl_replaces_previous_namespace_content(database: Database, embedder, vector_store) -> None:
    namespace = namespace_for(TENANT)
    vector_store.upsert(
        namespace,
        [VectorRecord(id=str(uuid4()), vector=[1.0, 0.0, 0.0], payload={"url": "https://stale.example/", "text": "old"})],
    )
    orchestrator = _orchestrator(database, _site_crawler(), embedder, vector_store)

    orchestrator.run(TENANT, "https://example.com/", _new_job(database), 3)
    first = sorted(payload["url"] for payload in vector_store.iter_payloads(namespace))
    orchestrator.run(TENANT, "https://example.com/", _new_job(database), 3)
    second = sorted(payload["url"] for payload in vector_store.iter_payloads(namespace))

    assert "https://stale.example/" not in first
    assert first == second


def test_run_fails_without_network_when_quota_is_exhausted(database: Database, embedder, vector_store) -> None:
    crawler = StaticCrawler()
    orchestrator = _orchestrator(database, crawler, embedder, vector_store)

    job = orchestrator.run(TENANT, "https://example.com/", _new_job(database), 0)

    assert job.status == FAILED
    assert job.message == "scraped page limit reached"
    assert crawler.calls == []


def test_run_reports_crawl_failure(database: Database, embedder, vector_store) -> None:
    orchestrator = _orchestrator(database, StaticCrawler(error=CrawlError("no crawlable pages found")), embedder, vector_store)

    job = orchestrator.run(TENANT, "https://example.com/", _new_job(database), 5)

    assert job.status == FAILED
    assert job.message == "Scraping failed"
    assert job.error == "no crawlable pages found"


def test_run_skips_chunks_whose_embedding_fails(database: Database, vector_store, make_embedder) -> None:
    pages = [
        CrawledPage(url="https://example.com/", title="Home", text="alpha content"),
        CrawledPage(url="https://example.com/broken", title="Broken", text="poison content"),
    ]
    orchestrator = _orchestrator(database, StaticCrawler(pages), make_embedder(fail_on="poison"), vector_store)

    job = orchestrator.run(TENANT, "https://example.com/", _new_job(database), 5)

    assert job.status == DONE
    urls = {payload["url"] for payload in vector_store.iter_payloads(namespace_for(TENANT))}
    assert urls == {"https://example.com/"}


def test_run_fails_when_no_vector_survives(database: Database, vector_store, make_embedder) -> None:
    pages = [CrawledPage(url="https://example.com/", title="Home", text="poison only")]
    orchestrator = _orchestrator(database, StaticCrawler(pages), make_embedder(fail_on="poison"), vector_store)

    job = orchestrator.run(TENANT, "https://example.com/", _new_job(database), 5)

    assert job.status == FAILED
    assert job.message == "No chunks generated"
    assert job.error == "no chunks generated"


def test_run_reports_indexing_failure(database: Database, embedder, vector_store) -> None:
    pages = [CrawledPage(url="https://example.com/", title="Home", text="alpha")]
    orchestrator = _orchestrator(database, StaticCrawler(pages), embedder, ExplodingVectorStore(vector_store))

    job = orchestrator.run(TENANT, "https://example.com/", _new_job(database), 5)

    assert job.status == FAILED
    assert job.message == "Indexing failed"


def test_run_stops_when_cancelled(database: Database, embedder, vector_store) -> None:
    cancel = threading.Event()
    cancel.set()
    crawler = StaticCrawler([CrawledPage(url="https://example.com/", title="Home", text="alpha")])
    orchestrator = _orchestrator(database, crawler, embedder, vector_store)

    job = orchestrator.run(TENANT, "https://example.com/", _new_job(database), 5, cancel_event=cancel)

    assert job.status == FAILED
    assert job.message == "Ingestion cancelled"
    assert crawler.calls == []


@pytest.mark.asyncio
async def test_start_ingest_enqueues_and_returns_immediately(database: Database, tenants) -> None:
    jobs = ScrapeJobTracker(database)
    sources = SourceRegistry(database)
    submitted = []
    queue = IngestionQueue(lambda task, cancel: submitted.append(task), max_queue=4)
    service = IngestionService(jobs, sources, tenants, queue)

    job = service.start_ingest("tenant-basic", "HTTPS://Example.com/docs/#intro")

    assert job.status == QUEUED
    assert job.source_url == "https://example.com/docs"
    assert queue.pending() == 1
    queue.start()
    await queue.join()
    await queue.shutdown()
    assert submitted[0].max_pages == 50
    assert submitted[0].widget_key == "wk_basic"


@pytest.mark.asyncio
async def test_start_ingest_fails_job_when_quota_exhausted(database: Database, tenants) -> None:
    jobs = ScrapeJobTracker(database)
    sources = SourceRegistry(database)
    sources.record_crawl("tenant-free", "https://other.example/", title="Other", scraped_pages=30)
    queue = IngestionQueue(lambda task, cancel: None)
    service = IngestionService(jobs, sources, tenants, queue)

    job = service.start_ingest("tenant-free", "https://example.com/")

    assert job.status == FAILED
    assert job.message == "scraped page limit reached"
    assert queue.pending() == 0
    assert [source.source_url for source in sources.list_for_tenant("tenant-free")].count("https://example.com/") == 1


@pytest.mark.asyncio
async def test_start_ingest_rejects_when_queue_is_full(database: Database, tenants) -> None:
    jobs = ScrapeJobTracker(database)
    queue = IngestionQueue(lambda task, cancel: None, max_queue=1)
    service = IngestionService(jobs, SourceRegistry(database), tenants, queue)

    service.start_ingest("tenant-a", "https://a.example/")
    with pytest.raises(IngestionQueueFull):
        service.start_ingest("tenant-a", "https://b.example/")

    assert len(jobs.list_for_tenant("tenant-a")) == 1


@pytest.mark.asyncio
async def test_back_to_back_sources_share_the_plan_page_budget(
    database: Database, tenants, embedder, vector_store
) -> None:
    jobs = ScrapeJobTracker(database)
    sources = SourceRegistry(database)
    crawler = StaticCrawler(
        [CrawledPage(url=f"https://a.example.com/p{i}", title=f"Page {i}", text=f"alpha page {i}") for i in range(20)]
    )
    orchestrator = IngestionOrchestrator(crawler, embedder, vector_store, jobs, sources)
    queue = IngestionQueue(orchestrator.run_task, max_queue=4)
    service = IngestionService(jobs, sources, tenants, queue)

    first = service.start_ingest("tenant-free", "https://a.example.com/")
    second = service.start_ingest("tenant-free", "https://b.example.com/")
    queue.start()
    await queue.join()
    await queue.shutdown()

    assert crawler.calls == [("https://a.example.com/", 30), ("https://b.example.com/", 10)]
    assert jobs.get("tenant-free", first.id).status == DONE
    assert jobs.get("tenant-free", second.id).status == DONE
    assert sources.total_pages("tenant-free") == 30


@pytest.mark.asyncio
async def test_run_fails_when_earlier_job_used_the_remaining_budget(
    database: Database, tenants, embedder, vector_store
) -> None:
    jobs = ScrapeJobTracker(database)
    sources = SourceRegistry(database)
    crawler = StaticCrawler(
        [CrawledPage(url=f"https://a.example.com/p{i}", title=f"Page {i}", text=f"alpha page {i}") for i in range(40)]
    )
    orchestrator = IngestionOrchestrator(crawler, embedder, vector_store, jobs, sources)
    queue = IngestionQueue(orchestrator.run_task, max_queue=4)
    service = IngestionService(jobs, sources, tenants, queue)

    service.start_ingest("tenant-free", "https://a.example.com/")
    second = service.start_ingest("tenant-free", "https://b.example.com/")
    queue.start()
    await queue.join()
    await queue.shutdown()

    assert crawler.calls == [("https://a.example.com/", 30)]
    job = jobs.get("tenant-free", second.id)
    assert job.status == FAILED
    assert job.message == "scraped page limit reached"
