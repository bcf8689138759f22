"""Qdrant-backed vector namespaces, one collection per tenant."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Sequence

from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import UnexpectedResponse

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VectorRecord:
    """A vector plus the chunk metadata stored alongside it."""

    id: int | str
    vector: Sequence[float]
    payload: dict[str, Any] | None = None


@dataclass(slots=True)
class SearchResult:
    """A scored match returned from a similarity query."""

    id: int | str
    score: float | None
    payload: dict[str, Any] | None


def namespace_for(tenant_id: str) -> str:
    """Return the vector namespace that isolates one tenant's chunks."""

    return "user_" + tenant_id.replace("-", "")


class QdrantVectorStore:
    """Wrapper around a single Qdrant collection."""

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str,
        *,
        vector_size: int,
        distance: models.Distance = models.Distance.COSINE,
    ) -> None:
        if vector_size <= 0:
            raise ValueError("vector_size must be a positive integer")
        self._client = client
        self._collection_name = collection_name
        self._vector_size = vector_size
        self._distance = distance

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def vector_size(self) -> int:
        return self._vector_size

    def exists(self) -> bool:
        return self._client.collection_exists(self._collection_name)

    def ensure_collection(self) -> None:
        """Create the collection, recreating it when the vector size no longer matches."""

        if not self.exists():
            self._create_collection()
            return
        info = self._client.get_collection(self._collection_name)
        existing_size = info.config.params.vectors.size  # type: ignore[union-attr]
        if existing_size != self._vector_size:
            logger.warning(
                "vector.collection.resize collection=%s existing=%s expected=%s",
                self._collection_name,
                existing_size,
                self._vector_size,
            )
            self._client.delete_collection(self._collection_name)
            self._create_collection()

    def upsert(self, records: Sequence[VectorRecord], *, wait: bool = True) -> None:
        """Insert or update vectors in the collection."""

        if not records:
            return
        ids: list[int | str] = []
        vectors: list[list[float]] = []
        payloads: list[dict[str, Any]] = []
        for record in records:
            vector = list(record.vector)
            if len(vector) != self._vector_size:
                raise ValueError(
                    f"Vector for id {record.id!r} has length {len(vector)}, expected {self._vector_size}."
                )
            ids.append(record.id)
            vectors.append(vector)
            payloads.append(record.payload or {})
        self._client.upsert(
            collection_name=self._collection_name,
            points=models.Batch(ids=ids, vectors=vectors, payloads=payloads),
            wait=wait,
        )

    def search(self, vector: Sequence[float], *, limit: int = 5) -> List[SearchResult]:
        """Return the ``limit`` nearest neighbours of ``vector``."""

        query_vector = list(vector)
        if len(query_vector) != self._vector_size:
            raise ValueError(f"Query vector has length {len(query_vector)}, expected {self._vector_size}.")
        response = self._client.query_points(
            collection_name=self._collection_name,
            query=query_vector,
            limit=limit,
            with_payload=True,
        )
        return [
            SearchResult(
                id=point.id,
                score=point.score,
                payload=dict(point.payload) if point.payload is not None else None,
            )
            for point in response.points
        ]

    def iter_payloads(
        self,
        *,
        scroll_filter: models.Filter | None = None,
        batch_size: int = 256,
    ) -> Iterable[dict[str, Any]]:
        """Yield payloads for points matching the optional filter."""

        offset = None
        while True:
            points, offset = self._client.scroll(
                collection_name=self._collection_name,
                scroll_filter=scroll_filter,
                with_payload=True,
                limit=batch_size,
                offset=offset,
            )
            for point in points:
                if point.payload:
                    yield dict(point.payload)
            if offset is None:
                break

    def drop(self) -> bool:
        """Delete the collection; a missing collection counts as success."""

        try:
            if not self.exists():
                return False
            self._client.delete_collection(self._collection_name)
        except UnexpectedResponse as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    def _create_collection(self) -> None:
        self._client.create_collection(
            collection_name=self._collection_name,
            vectors_config=models.VectorParams(size=self._vector_size, distance=self._distance),
        )


class NamespaceVectorStore:
    """Upsert, query and reset per-tenant vector namespaces."""

    def __init__(
        self,
        client_factory: Callable[[], QdrantClient],
        *,
        vector_size: int,
        collection_name_fn: Callable[[str], str],
        distance: models.Distance = models.Distance.COSINE,
    ) -> None:
        self._client_factory = client_factory
        self._vector_size = vector_size
        self._distance = distance
        self._collection_name_fn = collection_name_fn
        self._stores: dict[str, QdrantVectorStore] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, *, vector_size: int) -> "NamespaceVectorStore":
        client = QdrantClient(**settings.qdrant_client_kwargs())
        return cls(
            lambda: client,
            vector_size=vector_size,
            collection_name_fn=settings.namespace_collection_name,
        )

    def get_store(self, namespace: str) -> QdrantVectorStore:
        with self._lock:
            store = self._stores.get(namespace)
            if store is None:
                store = QdrantVectorStore(
                    self._client_factory(),
                    self._collection_name_fn(namespace),
                    vector_size=self._vector_size,
                    distance=self._distance,
                )
                self._stores[namespace] = store
            return store

    def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> None:
        if not records:
            return
        store = self.get_store(namespace)
        store.ensure_collection()
        store.upsert(records)
        logger.info("vector.upsert namespace=%s points=%s", namespace, len(records))

    def query(self, namespace: str, vector: Sequence[float], *, top_k: int) -> List[SearchResult]:
        store = self.get_store(namespace)
        if not store.exists():
            return []
        return store.search(vector, limit=top_k)

    def delete_namespace(self, namespace: str) -> bool:
        """Remove every vector in ``namespace``; returns False when nothing existed."""

        store = self.get_store(namespace)
        deleted = store.drop()
        logger.info("vector.namespace.reset namespace=%s existed=%s", namespace, deleted)
        return deleted

    def iter_payloads(self, namespace: str, *, origin: str | None = None) -> Iterable[dict[str, Any]]:
        store = self.get_store(namespace)
        if not store.exists():
            return
        scroll_filter = None
        if origin is not None:
            scroll_filter = models.Filter(
                must=[models.FieldCondition(key="origin", match=models.MatchValue(value=origin))]
            )
        yield from store.iter_payloads(scroll_filter=scroll_filter)


__all__ = [
    "QdrantVectorStore",
    "NamespaceVectorStore",
    "VectorRecord",
    "SearchResult",
    "namespace_for",
]
