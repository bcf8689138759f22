"""Embedding service supporting OpenAI, Ollama and SentenceTransformers backends."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum, auto
from typing import List

import httpx
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from .config import Settings

logger = logging.getLogger(__name__)


class EmbeddingBackend(Enum):
    """Supported embedding backends."""

    OPENAI = auto()
    OLLAMA = auto()
    HUGGINGFACE = auto()


class EmbeddingService:
    """Turn text into vectors using the configured backend."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._dimension: int | None = None
        self._openai_client: OpenAI | None = None
        self._ollama_client: httpx.Client | None = None
        self._ollama_model: str | None = None
        self._hf_model: SentenceTransformer | None = None

        if settings.is_openai_embedding_backend:
            self._backend = EmbeddingBackend.OPENAI
            self._setup_openai()
        elif settings.is_ollama_embedding_backend:
            self._backend = EmbeddingBackend.OLLAMA
            self._setup_ollama()
        else:
            self._backend = EmbeddingBackend.HUGGINGFACE
            self._setup_huggingface()

    @classmethod
    def from_env(cls) -> "EmbeddingService":
        return cls(Settings.from_env())

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def dimension(self) -> int:
        """Return the embedding dimensionality for the active backend."""

        if self._dimension is None:
            raise RuntimeError("Embedding dimension is not initialised.")
        return self._dimension

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for a batch of texts."""

        if not texts:
            return []
        if self._backend is EmbeddingBackend.OPENAI:
            assert self._openai_client is not None
            try:
                result = self._openai_client.embeddings.create(
                    model=self._settings.embedding_model,
                    input=list(texts),
                    dimensions=self._settings.embedding_dimensions,
                )
            except Exception as exc:
                raise RuntimeError(f"OpenAI embedding request failed: {exc}") from exc
            return [list(item.embedding) for item in result.data]
        if self._backend is EmbeddingBackend.OLLAMA:
            return [self._ollama_embed(text) for text in texts]

        assert self._hf_model is not None
        vectors = self._hf_model.encode(list(texts), show_progress_bar=False)
        if hasattr(vectors, "tolist"):
            return vectors.tolist()
        return [list(vector) for vector in vectors]

    def embed_one(self, text: str) -> List[float]:
        """Generate an embedding for a single piece of text."""

        return self.embed([text])[0]

    def close(self) -> None:
        if self._ollama_client is not None:
            self._ollama_client.close()
            self._ollama_client = None

    def _setup_openai(self) -> None:
        if not self._settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY must be set when using the OpenAI embedding backend.")
        self._openai_client = OpenAI(
            api_key=self._settings.openai_api_key,
            timeout=self._settings.embedding_timeout,
        )
        self._dimension = self._settings.embedding_dimensions

    def _setup_ollama(self) -> None:
        model, base_url = self._settings.ollama_embedding_endpoint
        self._ollama_model = model
        self._ollama_client = httpx.Client(base_url=base_url, timeout=self._settings.embedding_timeout)
        probe = self._ollama_embed("__dimension_probe__")
        if not probe:
            raise ValueError(f"Ollama embedding backend '{model}' returned no data.")
        self._dimension = len(probe)

    def _setup_huggingface(self) -> None:
        model_name = self._settings.embedding_model
        self._hf_model = SentenceTransformer(model_name)
        self._dimension = int(self._hf_model.get_sentence_embedding_dimension())
        if self._dimension <= 0:
            raise ValueError(f"Unexpected embedding dimension ({self._dimension}) for model '{model_name}'.")

    def _ollama_embed(self, text: str) -> List[float]:
        assert self._ollama_client is not None
        try:
            response = self._ollama_client.post(
                "/api/embeddings",
                json={"model": self._ollama_model, "prompt": text},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Ollama embedding request failed: {exc}") from exc
        embedding = response.json().get("embedding")
        if embedding is None:
            raise RuntimeError("Ollama embedding response did not include an 'embedding' field.")
        vector = [float(value) for value in embedding]
        if self._dimension is not None and len(vector) != self._dimension:
            raise RuntimeError(f"Ollama embedding dimension changed from {self._dimension} to {len(vector)}.")
        return vector


__all__ = ["EmbeddingBackend", "EmbeddingService"]
