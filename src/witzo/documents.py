"""Uploaded document ingestion into a tenant's vector namespace."""

from __future__ import annotations

import csv
import io
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List
from uuid import uuid4

from .chunker import DEFAULT_OVERLAP_WORDS, DEFAULT_WINDOW_WORDS, chunk_words
from .extractor import extract_page, normalize_whitespace
from .ingestion import RAGChunk, embed_chunks
from .observability import MetricsRecorder
from .plans import TenantDirectory
from .retrieval import Embedder
from .vector_store import NamespaceVectorStore, namespace_for

logger = logging.getLogger(__name__)

SUPPORTED_DOCUMENT_TYPES = {".txt", ".md", ".markdown", ".csv", ".html", ".htm"}
DOCUMENT_URL_PREFIX = "doc:"


class QuotaExceeded(PermissionError):
    """Raised when the tenant's plan allows no more documents."""


class UnsupportedDocument(ValueError):
    """Raised for file types the ingestor cannot read."""


@dataclass(slots=True)
class DocumentIngestResult:
    document_id: str
    title: str
    chunks: int

    def to_dict(self) -> dict:
        return {"documentId": self.document_id, "title": self.title, "chunks": self.chunks}


def _decode(data: bytes) -> str:
    for encoding in ("utf-8", "utf-16"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1", errors="ignore")


def _extract_csv(text: str) -> str:
    reader = csv.reader(io.StringIO(text))
    lines = []
    for row in reader:
        cells = [cell.strip() for cell in row if cell.strip()]
        if cells:
            lines.append(" | ".join(cells))
    return "\n".join(lines)


def extract_document(filename: str, data: bytes) -> tuple[str, str]:
    """Return ``(title, text)`` for an uploaded file."""

    suffix = Path(filename).suffix.lower()
    if suffix not in SUPPORTED_DOCUMENT_TYPES:
        raise UnsupportedDocument(f"Unsupported document type: {suffix or filename}")

    text = _decode(data)
    title = Path(filename).name
    if suffix == ".csv":
        return title, _extract_csv(text)
    if suffix in {".html", ".htm"}:
        page = extract_page(text, "text/html")
        return page.title or title, page.text
    return title, normalize_whitespace(text)


class DocumentIngestor:
    """Chunk, embed and index one uploaded document per call."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: NamespaceVectorStore,
        tenants: TenantDirectory,
        *,
        window_size: int = DEFAULT_WINDOW_WORDS,
        overlap: int = DEFAULT_OVERLAP_WORDS,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._embedder = embedder
        self._vectors = vector_store
        self._tenants = tenants
        self._window_size = window_size
        self._overlap = overlap
        self._metrics = metrics

    def document_count(self, tenant_id: str) -> int:
        urls = {
            payload.get("url")
            for payload in self._vectors.iter_payloads(namespace_for(tenant_id), origin="document")
        }
        urls.discard(None)
        return len(urls)

    def ingest_document(
        self,
        tenant_id: str,
        filename: str,
        data: bytes,
        *,
        document_id: str | None = None,
    ) -> DocumentIngestResult:
        profile = self._tenants.profile(tenant_id)
        if self.document_count(tenant_id) >= profile.limits.documents:
            raise QuotaExceeded("Document limit reached for current plan")

        start = time.perf_counter()
        title, text = extract_document(filename, data)
        if not text.strip():
            raise UnsupportedDocument(f"No text could be extracted from {filename}")

        document_id = document_id or uuid4().hex
        namespace = namespace_for(tenant_id)
        chunks: List[RAGChunk] = [
            RAGChunk(
                tenant_id=tenant_id,
                namespace=namespace,
                url=f"{DOCUMENT_URL_PREFIX}{document_id}",
                page_title=title,
                chunk_index=chunk.index,
                text=chunk.text,
                widget_key=profile.widget_key,
                origin="document",
            )
            for chunk in chunk_words(text, window_size=self._window_size, overlap=self._overlap)
        ]
        records = embed_chunks(self._embedder, chunks, metrics=self._metrics)
        if not records:
            raise RuntimeError("no chunks generated")
        self._vectors.upsert(namespace, records)

        logger.info(
            "documents.ingested tenant=%s document_id=%s title=%s chunks=%s",
            tenant_id,
            document_id,
            title,
            len(records),
        )
        if self._metrics:
            self._metrics.record_timing("documents.ingest.duration", time.perf_counter() - start)
            self._metrics.increment("documents.ingested", tenant_id=tenant_id)
        return DocumentIngestResult(document_id=document_id, title=title, chunks=len(records))


__all__ = [
    "DocumentIngestor",
    "DocumentIngestResult",
    "QuotaExceeded",
    "UnsupportedDocument",
    "extract_document",
]
