"""FastAPI application setup for the Witzo core services."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterable

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .analytics import AnalyticsBuffer, WidgetAnalyticsEvent
from .config import Settings
from .crawler import Crawler, InvalidSourceURL
from .database import Database
from .documents import DocumentIngestor, QuotaExceeded, UnsupportedDocument
from .embeddings import EmbeddingService
from .generation import GenerationService
from .ingestion import IngestionOrchestrator, IngestionService
from .ingestion_queue import IngestionQueue, IngestionQueueFull
from .jobs import JobNotFound, ScrapeJobTracker, SourceRegistry
from .observability import MetricsRecorder
from .plans import FeatureNotAvailable, StaticTenantDirectory, TenantDirectory, TenantProfile
from .retrieval import AnswerAssembler, Embedder, Generator
from .vector_store import NamespaceVectorStore
from .webhooks import WebhookConfigNotFound, WebhookDeliveryEngine, WebhookEventNotFound
from .workers import BackgroundWorkers, build_background_workers

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"

_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    witzo_logger = logging.getLogger("witzo")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        witzo_logger.handlers = []
        for handler in handlers:
            witzo_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        witzo_logger.addHandler(handler)

    if witzo_logger.level == logging.NOTSET or witzo_logger.level > logging.INFO:
        witzo_logger.setLevel(logging.INFO)
    witzo_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        database: Database,
        tenants: TenantDirectory,
        jobs: ScrapeJobTracker,
        sources: SourceRegistry,
        ingestion: IngestionService,
        ingestion_queue: IngestionQueue,
        assembler: AnswerAssembler,
        documents: DocumentIngestor,
        webhooks: WebhookDeliveryEngine,
        analytics: AnalyticsBuffer,
        workers: BackgroundWorkers,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.tenants = tenants
        self.jobs = jobs
        self.sources = sources
        self.ingestion = ingestion
        self.ingestion_queue = ingestion_queue
        self.assembler = assembler
        self.documents = documents
        self.webhooks = webhooks
        self.analytics = analytics
        self.workers = workers
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    embedding_service: Embedder | None = None,
    vector_store: NamespaceVectorStore | None = None,
    generation_service: Generator | None = None,
    tenant_directory: TenantDirectory | None = None,
    crawler: Crawler | None = None,
    webhook_engine: WebhookDeliveryEngine | None = None,
    analytics_buffer: AnalyticsBuffer | None = None,
    ingestion_queue: IngestionQueue | None = None,
    metrics: MetricsRecorder | None = None,
    start_workers: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    database = database or Database(settings.database_file())
    logger.info("app.start settings_loaded database=%s chat_backend=%s", database.path, settings.chat_backend)

    if embedding_service is None:
        embedding_service = EmbeddingService(settings)
    if vector_store is None:
        dimension = int(getattr(embedding_service, "dimension"))
        vector_store = NamespaceVectorStore.from_settings(settings, vector_size=dimension)
    generation_service = generation_service or GenerationService(settings)
    tenants = tenant_directory or StaticTenantDirectory(settings.default_plan)
    crawler = crawler or Crawler(
        timeout=settings.crawl_timeout,
        max_body_bytes=settings.crawl_max_body_bytes,
        user_agent=settings.crawl_user_agent,
        metrics=metrics,
    )
    webhook_engine = webhook_engine or WebhookDeliveryEngine(
        database,
        batch_size=settings.webhook_batch_size,
        max_attempts=settings.webhook_max_attempts,
        timeout=settings.webhook_timeout,
        processing_timeout=settings.webhook_processing_timeout,
        header_prefix=settings.webhook_header_prefix,
        metrics=metrics,
    )
    analytics_buffer = analytics_buffer or AnalyticsBuffer(database, metrics=metrics)

    jobs = ScrapeJobTracker(database)
    sources = SourceRegistry(database)
    orchestrator = IngestionOrchestrator(
        crawler,
        embedding_service,
        vector_store,
        jobs,
        sources,
        window_size=settings.chunk_window_words,
        overlap=settings.chunk_overlap_words,
        metrics=metrics,
    )
    ingestion_queue = ingestion_queue or IngestionQueue(
        max_queue=settings.ingestion_max_queue,
        max_concurrency=settings.ingestion_max_concurrency,
        metrics=metrics,
    )
    ingestion_queue.configure_executor(orchestrator.run_task)
    ingestion = IngestionService(jobs, sources, tenants, ingestion_queue, metrics=metrics)
    assembler = AnswerAssembler(
        embedding_service,
        vector_store,
        generation_service,
        relevance_threshold=settings.relevance_threshold,
        context_chars=settings.context_chars_per_match,
        stream_chunk_words=settings.stream_chunk_words,
        metrics=metrics,
    )
    documents = DocumentIngestor(
        embedding_service,
        vector_store,
        tenants,
        window_size=settings.chunk_window_words,
        overlap=settings.chunk_overlap_words,
        metrics=metrics,
    )
    workers = build_background_workers(
        settings,
        webhook_engine=webhook_engine,
        analytics=analytics_buffer,
        metrics=metrics,
    )

    app = FastAPI()
    app.state.services = ApplicationState(
        settings=settings,
        database=database,
        tenants=tenants,
        jobs=jobs,
        sources=sources,
        ingestion=ingestion,
        ingestion_queue=ingestion_queue,
        assembler=assembler,
        documents=documents,
        webhooks=webhook_engine,
        analytics=analytics_buffer,
        workers=workers,
        metrics=metrics,
    )

    @app.on_event("startup")
    async def _start_background_work() -> None:
        jobs.fail_interrupted()
        ingestion_queue.start()
        if start_workers:
            workers.start()

    @app.on_event("shutdown")
    async def _stop_background_work() -> None:
        await workers.shutdown()
        await ingestion_queue.shutdown()
        crawler.close()
        webhook_engine.close()

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_tenant(request: Request) -> TenantProfile:
        tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
        if not tenant_id:
            raise HTTPException(status_code=401, detail=f"{TENANT_HEADER} header is required")
        return get_state(request).tenants.profile(tenant_id)

    def get_webhook_tenant(tenant: TenantProfile = Depends(get_tenant)) -> TenantProfile:
        try:
            tenant.require_webhooks()
        except FeatureNotAvailable as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return tenant

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    async def _read_json(request: Request) -> dict:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        return payload

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    @app.post("/api/scrape")
    async def start_scrape(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        payload = await _read_json(request)
        url = str(payload.get("url") or "").strip()
        if not url:
            raise HTTPException(status_code=400, detail="url is required")
        service = get_state(request).ingestion
        try:
            job = await asyncio.to_thread(service.start_ingest, tenant.tenant_id, url)
        except InvalidSourceURL as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except IngestionQueueFull as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        logger.info("scrape.requested tenant=%s job_id=%s status=%s", tenant.tenant_id, job.id, job.status)
        return JSONResponse({"jobId": job.id, "status": job.status}, status_code=202)

    @app.get("/api/scrape/jobs")
    def list_scrape_jobs(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        jobs_list = get_state(request).ingestion.list_jobs(tenant.tenant_id)
        return JSONResponse({"jobs": [job.to_dict() for job in jobs_list]})

    @app.get("/api/scrape/jobs/{job_id}")
    def get_scrape_job(job_id: str, request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        try:
            job = get_state(request).ingestion.job_status(tenant.tenant_id, job_id)
        except JobNotFound as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc
        return JSONResponse({"job": job.to_dict()})

    @app.get("/api/scrape/sources")
    def list_sources(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        state = get_state(request)
        items = state.sources.list_for_tenant(tenant.tenant_id)
        return JSONResponse(
            {
                "sources": [item.to_dict() for item in items],
                "usedPages": sum(item.scraped_pages for item in items),
                "pageLimit": tenant.limits.pages,
            }
        )

    @app.post("/api/documents")
    async def upload_document(
        request: Request,
        file: UploadFile = File(...),
        tenant: TenantProfile = Depends(get_tenant),
    ) -> JSONResponse:
        if not file.filename:
            raise HTTPException(status_code=400, detail="File name is required")
        data = await file.read()
        if not data:
            raise HTTPException(status_code=400, detail="File is empty")
        ingestor = get_state(request).documents
        try:
            result = await asyncio.to_thread(ingestor.ingest_document, tenant.tenant_id, file.filename, data)
        except QuotaExceeded as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except UnsupportedDocument as exc:
            logger.warning("documents.upload.rejected tenant=%s file=%s error=%s", tenant.tenant_id, file.filename, exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RuntimeError as exc:
            logger.warning("documents.upload.failed tenant=%s file=%s error=%s", tenant.tenant_id, file.filename, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse({"document": result.to_dict()}, status_code=201)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    def _question(payload: dict, *keys: str) -> str:
        for key in keys:
            value = str(payload.get(key) or "").strip()
            if value:
                return value
        raise HTTPException(status_code=400, detail=f"{keys[0]} is required")

    @app.post("/api/query")
    async def query(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        payload = await _read_json(request)
        question = _question(payload, "query", "message")
        state = get_state(request)
        result = await asyncio.to_thread(
            state.assembler.answer, tenant.tenant_id, question, top_k=state.settings.retrieval_top_k
        )
        return JSONResponse(result.to_dict())

    @app.post("/api/chat")
    async def chat(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        payload = await _read_json(request)
        question = _question(payload, "message", "query")
        state = get_state(request)
        result = await asyncio.to_thread(
            state.assembler.answer, tenant.tenant_id, question, top_k=state.settings.chat_top_k
        )
        return JSONResponse(result.to_dict())

    @app.post("/api/chat/stream", response_class=StreamingResponse)
    async def chat_stream(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> StreamingResponse:
        payload = await _read_json(request)
        question = _question(payload, "message", "query")
        state = get_state(request)

        def _encode_event(data: dict) -> bytes:
            return (json.dumps(data) + "\n").encode("utf-8")

        def _event_iterator() -> Iterable[bytes]:
            try:
                for event in state.assembler.stream(
                    tenant.tenant_id, question, top_k=state.settings.chat_top_k
                ):
                    yield _encode_event(event.to_dict())
            except Exception as exc:
                logger.exception("chat.stream.runtime_error tenant=%s error=%s", tenant.tenant_id, exc)
                yield _encode_event({"event": "error", "message": str(exc)})

        return StreamingResponse(_event_iterator(), media_type="application/x-ndjson")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    @app.post("/api/leads/{lead_id}/events")
    def lead_created(lead_id: str, request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        queued = get_state(request).webhooks.enqueue_lead_created(tenant.tenant_id, lead_id)
        return JSONResponse({"queued": queued}, status_code=202)

    @app.get("/api/webhooks/config")
    def get_webhook_config(request: Request, tenant: TenantProfile = Depends(get_webhook_tenant)) -> JSONResponse:
        try:
            config = get_state(request).webhooks.get_config(tenant.tenant_id)
        except WebhookConfigNotFound:
            return JSONResponse({"config": None})
        return JSONResponse({"config": config.to_dict(include_secret=True)})

    @app.put("/api/webhooks/config")
    async def put_webhook_config(request: Request, tenant: TenantProfile = Depends(get_webhook_tenant)) -> JSONResponse:
        payload = await _read_json(request)
        active = payload.get("isActive")
        try:
            config = get_state(request).webhooks.upsert_config(
                tenant.tenant_id,
                str(payload.get("webhookUrl") or ""),
                active=True if active is None else bool(active),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"config": config.to_dict(include_secret=True)})

    @app.post("/api/webhooks/test")
    def send_webhook_test(request: Request, tenant: TenantProfile = Depends(get_webhook_tenant)) -> JSONResponse:
        queued = get_state(request).webhooks.send_test_event(tenant.tenant_id)
        return JSONResponse({"queued": queued}, status_code=202)

    @app.get("/api/webhooks/events")
    def list_webhook_events(request: Request, tenant: TenantProfile = Depends(get_webhook_tenant)) -> JSONResponse:
        events = get_state(request).webhooks.list_events(tenant.tenant_id)
        return JSONResponse({"events": [event.to_dict() for event in events]})

    @app.post("/api/webhooks/events/{event_id}/retry")
    def retry_webhook_event(
        event_id: str,
        request: Request,
        tenant: TenantProfile = Depends(get_webhook_tenant),
    ) -> JSONResponse:
        try:
            event = get_state(request).webhooks.retry_event(tenant.tenant_id, event_id)
        except WebhookEventNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse({"event": event.to_dict()})

    # ------------------------------------------------------------------
    # Widget analytics
    # ------------------------------------------------------------------
    @app.post("/api/widget/analytics")
    async def record_widget_event(request: Request, tenant: TenantProfile = Depends(get_tenant)) -> JSONResponse:
        payload = await _read_json(request)
        metadata = payload.get("metadata")
        event = WidgetAnalyticsEvent(
            tenant_id=tenant.tenant_id,
            event_type=str(payload.get("eventType") or ""),
            widget_key=str(payload.get("widgetKey") or tenant.widget_key or ""),
            session_id=payload.get("sessionId"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )
        try:
            get_state(request).analytics.record(event)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"accepted": True}, status_code=202)

    return app


__all__ = ["create_app", "ApplicationState"]
