from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

import pytest
from qdrant_client import QdrantClient

from witzo.database import Database
from witzo.plans import StaticTenantDirectory, TenantProfile
from witzo.vector_store import NamespaceVectorStore


class FakeEmbeddingService:
    """Deterministic three-dimensional embeddings keyed on marker words."""

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.dimension = 3
        self.fail_on = fail_on
        self.calls: list[str] = []

    def embed(self, texts: Iterable[str]):
        return [self.embed_one(text) for text in texts]

    def embed_one(self, text: str):
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding backend unavailable")
        return self._vector_for(text)

    @staticmethod
    def _vector_for(text: str) -> list[float]:
        lowered = text.lower()
        if "alpha" in lowered:
            return [1.0, 0.0, 0.0]
        if "beta" in lowered:
            return [0.0, 1.0, 0.0]
        return [0.0, 0.0, 1.0]


class RecordingGenerator:
    """Generation backend that remembers every prompt it receives."""

    def __init__(self, reply: str = "Alpha plans start at ten dollars.", *, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class MutableClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    return Database(tmp_path / "witzo.sqlite3")


@pytest.fixture()
def embedder() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture()
def generator() -> RecordingGenerator:
    return RecordingGenerator()


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def vector_store() -> NamespaceVectorStore:
    client = QdrantClient(path=":memory:")
    return NamespaceVectorStore(
        lambda: client,
        vector_size=3,
        collection_name_fn=lambda namespace: f"test_{namespace}",
    )


@pytest.fixture()
def tenants() -> StaticTenantDirectory:
    directory = StaticTenantDirectory("free")
    directory.set_profile(TenantProfile(tenant_id="tenant-ent", plan="enterprise", widget_key="wk_ent"))
    directory.set_profile(TenantProfile(tenant_id="tenant-basic", plan="basic", widget_key="wk_basic"))
    return directory


@pytest.fixture()
def make_generator():
    return RecordingGenerator


@pytest.fixture()
def make_embedder():
    return FakeEmbeddingService
