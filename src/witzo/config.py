"""Configuration helpers for the Witzo core services."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover
    from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_DATABASE_PATH: Final[str] = "data/witzo.sqlite3"
_DEFAULT_EMBEDDING_MODEL: Final[str] = "text-embedding-3-small"
_DEFAULT_EMBEDDING_DIMENSIONS: Final[int] = 1536
_DEFAULT_EMBEDDING_TIMEOUT: Final[float] = 20.0
_DEFAULT_CHAT_BACKEND: Final[str] = "openai"
_DEFAULT_OPENAI_CHAT_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_MODEL: Final[str] = "llama3.1:8b"
_DEFAULT_OLLAMA_TIMEOUT: Final[float] = 60.0
_DEFAULT_CHAT_TEMPERATURE: Final[float] = 0.2
_DEFAULT_CHAT_MAX_TOKENS: Final[int] = 600
_DEFAULT_GENERATION_TIMEOUT: Final[float] = 20.0
_DEFAULT_QDRANT_URL: Final[str] = "http://localhost:6333"
_DEFAULT_QDRANT_COLLECTION_PREFIX: Final[str] = "witzo"
_DEFAULT_CRAWL_TIMEOUT: Final[float] = 20.0
_DEFAULT_CRAWL_MAX_BODY_BYTES: Final[int] = 2 << 20
_DEFAULT_CRAWL_USER_AGENT: Final[str] = "WitzoCrawler/1.0"
_DEFAULT_CHUNK_WINDOW_WORDS: Final[int] = 500
_DEFAULT_CHUNK_OVERLAP_WORDS: Final[int] = 75
_DEFAULT_RETRIEVAL_TOP_K: Final[int] = 5
_DEFAULT_CHAT_TOP_K: Final[int] = 3
_DEFAULT_RELEVANCE_THRESHOLD: Final[float] = 0.65
_DEFAULT_CONTEXT_CHARS_PER_MATCH: Final[int] = 1000
_DEFAULT_STREAM_CHUNK_WORDS: Final[int] = 5
_DEFAULT_INGESTION_MAX_QUEUE: Final[int] = 32
_DEFAULT_INGESTION_MAX_CONCURRENCY: Final[int] = 4
_DEFAULT_WEBHOOK_INTERVAL: Final[float] = 30.0
_DEFAULT_WEBHOOK_BATCH_SIZE: Final[int] = 50
_DEFAULT_WEBHOOK_MAX_ATTEMPTS: Final[int] = 8
_DEFAULT_WEBHOOK_TIMEOUT: Final[float] = 20.0
_DEFAULT_WEBHOOK_PROCESSING_TIMEOUT: Final[float] = 600.0
_DEFAULT_WEBHOOK_HEADER_PREFIX: Final[str] = "Witzo"
_DEFAULT_ANALYTICS_INTERVAL: Final[float] = 60.0
_DEFAULT_ANALYTICS_FLUSH_BATCH: Final[int] = 200
_DEFAULT_ANALYTICS_RETENTION_DAYS: Final[int] = 90
_DEFAULT_MAINTENANCE_INTERVAL: Final[float] = 86_400.0
_DEFAULT_PLAN: Final[str] = "free"


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    database_path: str = _DEFAULT_DATABASE_PATH
    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = _DEFAULT_EMBEDDING_DIMENSIONS
    embedding_timeout: float = _DEFAULT_EMBEDDING_TIMEOUT
    openai_api_key: str | None = None
    chat_backend: str = _DEFAULT_CHAT_BACKEND
    openai_chat_model: str = _DEFAULT_OPENAI_CHAT_MODEL
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_model: str = _DEFAULT_OLLAMA_MODEL
    ollama_request_timeout: float = _DEFAULT_OLLAMA_TIMEOUT
    chat_temperature: float = _DEFAULT_CHAT_TEMPERATURE
    chat_max_tokens: int | None = _DEFAULT_CHAT_MAX_TOKENS
    generation_timeout: float = _DEFAULT_GENERATION_TIMEOUT
    qdrant_url: str = _DEFAULT_QDRANT_URL
    qdrant_api_key: str | None = None
    qdrant_collection_prefix: str = _DEFAULT_QDRANT_COLLECTION_PREFIX
    crawl_timeout: float = _DEFAULT_CRAWL_TIMEOUT
    crawl_max_body_bytes: int = _DEFAULT_CRAWL_MAX_BODY_BYTES
    crawl_user_agent: str = _DEFAULT_CRAWL_USER_AGENT
    chunk_window_words: int = _DEFAULT_CHUNK_WINDOW_WORDS
    chunk_overlap_words: int = _DEFAULT_CHUNK_OVERLAP_WORDS
    retrieval_top_k: int = _DEFAULT_RETRIEVAL_TOP_K
    chat_top_k: int = _DEFAULT_CHAT_TOP_K
    relevance_threshold: float = _DEFAULT_RELEVANCE_THRESHOLD
    context_chars_per_match: int = _DEFAULT_CONTEXT_CHARS_PER_MATCH
    stream_chunk_words: int = _DEFAULT_STREAM_CHUNK_WORDS
    ingestion_max_queue: int = _DEFAULT_INGESTION_MAX_QUEUE
    ingestion_max_concurrency: int = _DEFAULT_INGESTION_MAX_CONCURRENCY
    webhook_process_interval: float = _DEFAULT_WEBHOOK_INTERVAL
    webhook_batch_size: int = _DEFAULT_WEBHOOK_BATCH_SIZE
    webhook_max_attempts: int = _DEFAULT_WEBHOOK_MAX_ATTEMPTS
    webhook_timeout: float = _DEFAULT_WEBHOOK_TIMEOUT
    webhook_processing_timeout: float = _DEFAULT_WEBHOOK_PROCESSING_TIMEOUT
    webhook_header_prefix: str = _DEFAULT_WEBHOOK_HEADER_PREFIX
    analytics_flush_interval: float = _DEFAULT_ANALYTICS_INTERVAL
    analytics_flush_batch: int = _DEFAULT_ANALYTICS_FLUSH_BATCH
    analytics_retention_days: int = _DEFAULT_ANALYTICS_RETENTION_DAYS
    maintenance_interval: float = _DEFAULT_MAINTENANCE_INTERVAL
    default_plan: str = _DEFAULT_PLAN
    observability_metrics_enabled: bool = True
    observability_namespace: str = "witzo"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        metrics_enabled = _env_optional_bool("OBSERVABILITY_METRICS_ENABLED")
        chat_model = os.getenv("OPENAI_CHAT_MODEL") or os.getenv("OPENAI_MODEL")

        return cls(
            database_path=os.getenv("DATABASE_PATH", _DEFAULT_DATABASE_PATH),
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", _DEFAULT_EMBEDDING_DIMENSIONS),
            embedding_timeout=_env_float("EMBEDDING_TIMEOUT", _DEFAULT_EMBEDDING_TIMEOUT),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            chat_backend=os.getenv("CHAT_BACKEND", _DEFAULT_CHAT_BACKEND),
            openai_chat_model=chat_model or _DEFAULT_OPENAI_CHAT_MODEL,
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_model=os.getenv("OLLAMA_MODEL", _DEFAULT_OLLAMA_MODEL),
            ollama_request_timeout=_env_float("OLLAMA_TIMEOUT", _DEFAULT_OLLAMA_TIMEOUT),
            chat_temperature=_env_float("CHAT_TEMPERATURE", _DEFAULT_CHAT_TEMPERATURE),
            chat_max_tokens=_env_optional_int("CHAT_MAX_TOKENS") or _DEFAULT_CHAT_MAX_TOKENS,
            generation_timeout=_env_float("GENERATION_TIMEOUT", _DEFAULT_GENERATION_TIMEOUT),
            qdrant_url=os.getenv("QDRANT_URL", _DEFAULT_QDRANT_URL),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            qdrant_collection_prefix=os.getenv(
                "QDRANT_COLLECTION_PREFIX", _DEFAULT_QDRANT_COLLECTION_PREFIX
            ),
            crawl_timeout=_env_float("CRAWL_TIMEOUT", _DEFAULT_CRAWL_TIMEOUT),
            crawl_max_body_bytes=_env_int("CRAWL_MAX_BODY_BYTES", _DEFAULT_CRAWL_MAX_BODY_BYTES),
            crawl_user_agent=os.getenv("CRAWL_USER_AGENT", _DEFAULT_CRAWL_USER_AGENT),
            chunk_window_words=_env_int("CHUNK_WINDOW_WORDS", _DEFAULT_CHUNK_WINDOW_WORDS),
            chunk_overlap_words=_env_int("CHUNK_OVERLAP_WORDS", _DEFAULT_CHUNK_OVERLAP_WORDS),
            retrieval_top_k=_env_int("RETRIEVAL_TOP_K", _DEFAULT_RETRIEVAL_TOP_K),
            chat_top_k=_env_int("CHAT_TOP_K", _DEFAULT_CHAT_TOP_K),
            relevance_threshold=_env_float("RELEVANCE_THRESHOLD", _DEFAULT_RELEVANCE_THRESHOLD),
            context_chars_per_match=_env_int(
                "CONTEXT_CHARS_PER_MATCH", _DEFAULT_CONTEXT_CHARS_PER_MATCH
            ),
            stream_chunk_words=max(1, _env_int("STREAM_CHUNK_WORDS", _DEFAULT_STREAM_CHUNK_WORDS)),
            ingestion_max_queue=max(1, _env_int("INGESTION_MAX_QUEUE", _DEFAULT_INGESTION_MAX_QUEUE)),
            ingestion_max_concurrency=max(
                1, _env_int("INGESTION_MAX_CONCURRENCY", _DEFAULT_INGESTION_MAX_CONCURRENCY)
            ),
            webhook_process_interval=_env_float(
                "WEBHOOK_PROCESS_INTERVAL_SEC", _DEFAULT_WEBHOOK_INTERVAL
            ),
            webhook_batch_size=_env_int("WEBHOOK_BATCH_SIZE", _DEFAULT_WEBHOOK_BATCH_SIZE),
            webhook_max_attempts=_env_int("WEBHOOK_MAX_ATTEMPTS", _DEFAULT_WEBHOOK_MAX_ATTEMPTS),
            webhook_timeout=_env_float("WEBHOOK_TIMEOUT", _DEFAULT_WEBHOOK_TIMEOUT),
            webhook_processing_timeout=_env_float(
                "WEBHOOK_PROCESSING_TIMEOUT_SEC", _DEFAULT_WEBHOOK_PROCESSING_TIMEOUT
            ),
            webhook_header_prefix=os.getenv("WEBHOOK_HEADER_PREFIX", _DEFAULT_WEBHOOK_HEADER_PREFIX),
            analytics_flush_interval=_env_float(
                "ANALYTICS_FLUSH_INTERVAL_SEC", _DEFAULT_ANALYTICS_INTERVAL
            ),
            analytics_flush_batch=_env_int("ANALYTICS_FLUSH_BATCH", _DEFAULT_ANALYTICS_FLUSH_BATCH),
            analytics_retention_days=_env_int(
                "ANALYTICS_RETENTION_DAYS", _DEFAULT_ANALYTICS_RETENTION_DAYS
            ),
            maintenance_interval=_env_float("MAINTENANCE_INTERVAL_SEC", _DEFAULT_MAINTENANCE_INTERVAL),
            default_plan=os.getenv("DEFAULT_PLAN", _DEFAULT_PLAN),
            observability_metrics_enabled=metrics_enabled if metrics_enabled is not None else True,
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "witzo"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_embedding_backend(self) -> bool:
        """Return True when embeddings come from the OpenAI API."""

        return self.embedding_model.strip().lower().startswith("text-embedding-3")

    @property
    def is_ollama_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via an Ollama-hosted model."""

        return self.embedding_model.strip().lower().startswith("ollama:")

    @property
    def ollama_embedding_endpoint(self) -> tuple[str, str]:
        """Return the Ollama embedding model and base URL.

        Accepts ``ollama:<model>`` or ``ollama:<model>@<base-url>``.
        """

        if not self.is_ollama_embedding_backend:
            msg = "Ollama embedding endpoint requested but EMBEDDING_MODEL is not an Ollama model."
            raise ValueError(msg)
        _, _, spec = self.embedding_model.strip().partition(":")
        model, _, base = spec.partition("@")
        model = model.strip()
        if not model:
            raise ValueError("EMBEDDING_MODEL must include an Ollama model identifier.")
        base_url = (base.strip() or self.ollama_base_url).rstrip("/")
        return model, base_url

    @property
    def is_openai_chat_backend(self) -> bool:
        """Return True when using the OpenAI Responses API for generation."""

        return self.chat_backend.lower() == "openai"

    @property
    def is_ollama_chat_backend(self) -> bool:
        """Return True when generation runs on an Ollama-hosted model."""

        return self.chat_backend.lower() == "ollama"

    def qdrant_client_kwargs(self) -> dict[str, Any]:
        """Configuration arguments for instantiating a Qdrant client."""

        kwargs: dict[str, Any] = {"url": self.qdrant_url, "timeout": int(self.embedding_timeout)}
        if self.qdrant_api_key:
            kwargs["api_key"] = self.qdrant_api_key
        return kwargs

    def namespace_collection_name(self, namespace: str) -> str:
        """Return the Qdrant collection that backs a tenant namespace."""

        return f"{self.qdrant_collection_prefix}_{namespace}"

    def database_file(self) -> Path:
        return Path(self.database_path).expanduser().resolve()

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )


__all__ = ["Settings"]
