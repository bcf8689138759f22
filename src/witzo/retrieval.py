"""Retrieve tenant context from the vector store and assemble grounded answers."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterator, List, Protocol, Sequence

from .observability import MetricsRecorder
from .vector_store import NamespaceVectorStore, SearchResult, namespace_for

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "I don't have information about that. Please contact support."
NO_CONTEXT_PLACEHOLDER = "No indexed context was retrieved."
CONTEXT_DELIMITER = "\n\n---\n\n"
DEFAULT_RELEVANCE_THRESHOLD = 0.65

PROMPT_TEMPLATE = (
    "You are a helpful assistant for this business.\n"
    "Use only the context below to answer the question.\n"
    "If the answer is not in the context, reply exactly:\n"
    '"I don\'t have information about that. Please contact support."\n\n'
    "Context:\n{context}\n\n"
    "User Question: {question}"
)


class Embedder(Protocol):
    def embed_one(self, text: str) -> List[float]: ...


class Generator(Protocol):
    def generate(self, prompt: str) -> str: ...


@dataclass(slots=True)
class RetrievedMatch:
    url: str
    page_title: str
    text: str
    score: float
    chunk_index: int | None = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.page_title,
            "score": round(self.score, 4),
            "chunkIndex": self.chunk_index,
        }


@dataclass(slots=True)
class AnswerResult:
    answer: str
    matches: List[RetrievedMatch] = field(default_factory=list)
    used_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [match.to_dict() for match in self.matches],
            "fallback": self.used_fallback,
        }


@dataclass(slots=True)
class AnswerEvent:
    """One element of a streamed answer: ``chunk`` events followed by a single ``done``."""

    event: str
    data: str | None = None
    result: AnswerResult | None = None

    def to_dict(self) -> dict:
        if self.event == "done" and self.result is not None:
            return {"event": "done", **self.result.to_dict()}
        return {"event": self.event, "data": self.data}


def _numeric_score(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    score = float(value)
    if math.isnan(score):
        return None
    return score


def filter_relevant(results: Sequence[SearchResult], min_score: float) -> List[RetrievedMatch]:
    """Keep results scoring at least ``min_score``; unscored results are dropped."""

    if min_score <= 0:
        min_score = DEFAULT_RELEVANCE_THRESHOLD
    matches: list[RetrievedMatch] = []
    for result in results:
        score = _numeric_score(result.score)
        if score is None or score < min_score:
            continue
        payload = result.payload or {}
        text = str(payload.get("text") or "").strip()
        if not text:
            continue
        chunk_index = payload.get("chunk_index")
        matches.append(
            RetrievedMatch(
                url=str(payload.get("url") or ""),
                page_title=str(payload.get("page_title") or ""),
                text=text,
                score=score,
                chunk_index=int(chunk_index) if isinstance(chunk_index, int) else None,
            )
        )
    return matches


def build_context(matches: Sequence[RetrievedMatch], *, max_chars: int = 1000) -> str:
    parts = [f"Source: {match.url}\n{match.text[:max_chars]}" for match in matches]
    return CONTEXT_DELIMITER.join(parts) if parts else NO_CONTEXT_PLACEHOLDER


def build_prompt(question: str, matches: Sequence[RetrievedMatch], *, max_chars: int = 1000) -> str:
    return PROMPT_TEMPLATE.format(context=build_context(matches, max_chars=max_chars), question=question)


def split_words(text: str, words_per_chunk: int) -> List[str]:
    """Split ``text`` into pieces of ``words_per_chunk`` words whose concatenation rebuilds it."""

    words = text.split()
    size = max(1, words_per_chunk)
    pieces = [" ".join(words[i : i + size]) for i in range(0, len(words), size)]
    return [piece + " " for piece in pieces[:-1]] + pieces[-1:]


class AnswerAssembler:
    """Answer tenant questions from indexed content only."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: NamespaceVectorStore,
        generator: Generator,
        *,
        relevance_threshold: float = DEFAULT_RELEVANCE_THRESHOLD,
        context_chars: int = 1000,
        stream_chunk_words: int = 5,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._embedder = embedder
        self._vectors = vector_store
        self._generator = generator
        self._threshold = relevance_threshold if relevance_threshold > 0 else DEFAULT_RELEVANCE_THRESHOLD
        self._context_chars = context_chars
        self._stream_chunk_words = max(1, stream_chunk_words)
        self._metrics = metrics

    def answer(self, tenant_id: str, query: str, *, top_k: int = 5) -> AnswerResult:
        question = query.strip()
        if not question:
            raise ValueError("query is required")

        namespace = namespace_for(tenant_id)
        try:
            vector = self._embedder.embed_one(question)
            results = self._vectors.query(namespace, vector, top_k=top_k)
        except Exception as exc:
            logger.warning("retrieval.lookup.failed tenant=%s error=%s", tenant_id, exc)
            return self._fallback(tenant_id, "lookup_error")

        matches = filter_relevant(results, self._threshold)
        logger.info(
            "retrieval.matches tenant=%s candidates=%s relevant=%s top_k=%s",
            tenant_id,
            len(results),
            len(matches),
            top_k,
        )
        if not matches:
            return self._fallback(tenant_id, "no_relevant_matches")

        prompt = build_prompt(question, matches, max_chars=self._context_chars)
        try:
            text = (self._generator.generate(prompt) or "").strip()
        except Exception as exc:
            logger.warning("retrieval.generation.failed tenant=%s error=%s", tenant_id, exc)
            return self._fallback(tenant_id, "generation_error", matches)
        if not text:
            return self._fallback(tenant_id, "empty_generation", matches)

        if self._metrics:
            self._metrics.increment("retrieval.answered", tenant_id=tenant_id)
        return AnswerResult(answer=text, matches=matches)

    def stream(self, tenant_id: str, query: str, *, top_k: int = 5) -> Iterator[AnswerEvent]:
        """Yield the answer as word-chunk events followed by a terminal ``done`` event."""

        result = self.answer(tenant_id, query, top_k=top_k)
        for piece in split_words(result.answer, self._stream_chunk_words):
            yield AnswerEvent(event="chunk", data=piece)
        yield AnswerEvent(event="done", result=result)

    def _fallback(
        self,
        tenant_id: str,
        reason: str,
        matches: Sequence[RetrievedMatch] = (),
    ) -> AnswerResult:
        if self._metrics:
            self._metrics.increment("retrieval.fallback", tenant_id=tenant_id, reason=reason)
        return AnswerResult(answer=FALLBACK_ANSWER, matches=list(matches), used_fallback=True)


__all__ = [
    "AnswerAssembler",
    "AnswerEvent",
    "AnswerResult",
    "RetrievedMatch",
    "FALLBACK_ANSWER",
    "build_prompt",
    "filter_relevant",
    "split_words",
]
