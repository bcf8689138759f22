"""Witzo retrieval-grounded assistant and webhook delivery core."""

from __future__ import annotations

from .config import Settings
from .vector_store import NamespaceVectorStore, SearchResult, VectorRecord

__all__ = [
    "Settings",
    "EmbeddingService",
    "EmbeddingBackend",
    "NamespaceVectorStore",
    "VectorRecord",
    "SearchResult",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingService", "EmbeddingBackend"}:
        from .embeddings import EmbeddingBackend, EmbeddingService

        return {"EmbeddingService": EmbeddingService, "EmbeddingBackend": EmbeddingBackend}[name]
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'witzo' has no attribute {name}")
