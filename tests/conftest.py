"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

import tempfile
from collections import defaultdict
from dataclasses import replace
from pathlib import Path

import pytest

from grounded_chat.config.settings import Settings
from grounded_chat.context.budget import ContextBudgeter, EncoderCache
from grounded_chat.exceptions import EmbeddingError, GenerationError
from grounded_chat.models.domain import Reference, WebResult

EMBED_DIM = 16


class WordEncoder:
    """One token per whitespace-separated word."""

    def encode(self, text: str) -> list[int]:
        return [len(word) for word in text.split()]


class ScriptedStreamReader:
    def __init__(self, events: list[dict]) -> None:
        self._events = list(events)
        self.cancelled = False
        self.consumed = 0
        self.closed = False

    async def next(self) -> dict | None:
        if self.cancelled or not self._events:
            return None
        self.consumed += 1
        event = self._events.pop(0)
        if isinstance(event, Exception):
            raise event
        return event

    def cancel(self) -> None:
        self.cancelled = True

    async def aclose(self) -> None:
        self.closed = True


class FakeLLM:
    """Scripted completion provider.

    ``structured`` maps a response schema class name to an instance, a dict,
    an exception, a callable taking the prompt, or a list consumed in order.
    ``texts`` is consumed in order by ``generate``; when it runs out,
    ``generate`` raises GenerationError so callers take their fallbacks.
    ``streams`` holds one event list per ``stream`` call.
    """

    def __init__(self, structured: dict | None = None, texts: list | None = None, streams: list | None = None) -> None:
        self.structured = dict(structured or {})
        self.texts = list(texts or [])
        self.streams = list(streams or [])
        self.calls: dict[str, int] = defaultdict(int)
        self.prompts: list[str] = []
        self.stream_kwargs: list[dict] = []
        self.readers: list[ScriptedStreamReader] = []

    async def generate_structured(self, prompt, response_schema, system=None, model=None):
        name = response_schema.__name__
        self.calls[name] += 1
        self.prompts.append(prompt)
        value = self.structured.get(name)
        if isinstance(value, list):
            value = value.pop(0) if value else None
        if callable(value) and not isinstance(value, type):
            value = value(prompt)
        if value is None:
            raise GenerationError(f"no scripted {name}")
        if isinstance(value, Exception):
            raise value
        if isinstance(value, dict):
            return response_schema.model_validate(value)
        return value

    async def generate(self, prompt, system=None, temperature=0.1, max_tokens=4096, model=None):
        self.calls["generate"] += 1
        self.prompts.append(prompt)
        if not self.texts:
            raise GenerationError("no scripted text")
        value = self.texts.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    async def stream(
        self,
        prompt,
        system=None,
        temperature=0.3,
        max_tokens=3000,
        model=None,
        previous_response_id=None,
    ):
        self.calls["stream"] += 1
        self.prompts.append(prompt)
        self.stream_kwargs.append({"model": model, "previous_response_id": previous_response_id})
        if not self.streams:
            raise GenerationError("no scripted stream")
        reader = ScriptedStreamReader(self.streams.pop(0))
        self.readers.append(reader)
        return reader


class FakeEmbedder:
    """Bag-of-characters embeddings: texts sharing words land close together."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * EMBED_DIM
        for word in text.lower().split():
            vector[sum(ord(c) for c in word) % EMBED_DIM] += 1.0
        return vector

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise EmbeddingError("embedder offline")
        return [self._vector(t) for t in texts]

    async def embed_query(self, query: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise EmbeddingError("embedder offline")
        return self._vector(query)


class FakeSearch:
    """In-memory search service over a fixed reference list."""

    def __init__(
        self,
        references: list[Reference] | None = None,
        vector_references: list[Reference] | None = None,
        index_results: dict | None = None,
        error: Exception | None = None,
    ) -> None:
        self.references = references or []
        self.vector_references = self.references if vector_references is None else vector_references
        self.index_results = index_results or {}
        self.error = error
        self.hybrid_calls: list[dict] = []
        self.vector_calls: list[dict] = []

    async def hybrid_search(self, query, top, filter=None, threshold=None, index_name=None):
        self.hybrid_calls.append(
            {"query": query, "top": top, "filter": filter, "threshold": threshold, "index_name": index_name}
        )
        if self.error is not None:
            raise self.error
        refs = self.references
        if index_name is not None and index_name in self.index_results:
            refs = self.index_results[index_name]
            if isinstance(refs, Exception):
                raise refs
        if filter and "id eq" in filter:
            refs = [r for r in refs if f"'{r.id}'" in filter]
        if threshold:
            refs = [r for r in refs if r.score is not None and r.score >= threshold]
        return [replace(r, metadata=dict(r.metadata)) for r in refs[:top]]

    async def vector_search(self, query, top, filter=None, index_name=None):
        self.vector_calls.append({"query": query, "top": top, "filter": filter})
        return [replace(r, metadata=dict(r.metadata)) for r in self.vector_references[:top]]


class FakeWebSearch:
    def __init__(self, results: list[WebResult] | None = None, error: Exception | None = None) -> None:
        self.results = results or []
        self.error = error
        self.calls: list[tuple[str, int]] = []

    async def search(self, query: str, count: int | None = None) -> list[WebResult]:
        self.calls.append((query, count))
        if self.error is not None:
            raise self.error
        return list(self.results[: count or len(self.results)])


@pytest.fixture
def settings():
    """Test settings with temp paths."""
    tmp = tempfile.mkdtemp()
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        chat_model="test-model",
        sqlite_trace_db_path=str(Path(tmp) / "traces.db"),
        sqlite_session_db_path=str(Path(tmp) / "sessions.db"),
        semantic_memory_db_path=str(Path(tmp) / "memory.db"),
        retrieval_min_docs=2,
        reranker_threshold=2.0,
        retrieval_fallback_reranker_threshold=1.5,
        retrieval_min_reranker_threshold=1.0,
        retry_initial_delay_ms=1,
        retry_max_delay_ms=2,
    )


@pytest.fixture
def budgeter():
    return ContextBudgeter(EncoderCache(loader=lambda model: WordEncoder()), "test-model")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def make_reference():
    def _make(ref_id: str, content: str | None = None, score: float | None = 3.0, **kwargs) -> Reference:
        return Reference(
            id=ref_id,
            title=kwargs.pop("title", f"Doc {ref_id}"),
            content=content if content is not None else f"Evidence about {ref_id} and night lights.",
            score=score,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_web_result():
    def _make(result_id: str, rank: int = 1, **kwargs) -> WebResult:
        return WebResult(
            id=result_id,
            title=kwargs.pop("title", f"Web {result_id}"),
            snippet=kwargs.pop("snippet", f"Snippet for {result_id} about city lights."),
            url=kwargs.pop("url", f"https://example.com/{result_id}"),
            rank=rank,
            **kwargs,
        )

    return _make
