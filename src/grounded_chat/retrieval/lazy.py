"""Lazy retrieval: summaries first, full content hydrated on demand."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

from grounded_chat.config.constants import LAZY_INSUFFICIENT_PATTERN
from grounded_chat.context.budget import ContextBudgeter
from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.search import SearchService
from grounded_chat.retrieval.thresholds import enforce_reranker_threshold

logger = get_logger("lazy_retrieval")

_NEEDS_DETAIL = re.compile(LAZY_INSUFFICIENT_PATTERN, re.IGNORECASE)


@dataclass
class LazySearchResult:
    references: list[Reference]
    summary_tokens: int
    full_content_available: bool


def build_id_filter(doc_id: str, base_filter: str | None = None) -> str:
    escaped = doc_id.replace("'", "''")
    id_filter = f"id eq '{escaped}'"
    return f"({base_filter}) and {id_filter}" if base_filter else id_filter


def truncate_summary(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    return f"{content[:max_chars]}…"


class FullContentCache:
    """Process-scoped cache of hydrated document content.

    Keyed by (index, document id). Concurrent loads of the same key share
    one in-flight fetch. Failed loads cache an empty string.
    """

    def __init__(self) -> None:
        self._content: dict[tuple[str, str], str] = {}
        self._pending: dict[tuple[str, str], asyncio.Future[str]] = {}

    def get(self, key: tuple[str, str]) -> str | None:
        return self._content.get(key)

    async def load(self, key: tuple[str, str], fetch) -> str:
        if key in self._content:
            return self._content[key]
        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch(key, fetch))
            self._pending[key] = pending
        return await asyncio.shield(pending)

    async def _fetch(self, key: tuple[str, str], fetch) -> str:
        try:
            content = await fetch()
        except Exception as e:
            logger.error("lazy_load_full_failed", document_id=key[1], error=str(e))
            content = ""
        finally:
            self._pending.pop(key, None)
        self._content[key] = content
        return content

    def __len__(self) -> int:
        return len(self._content)


class LazyRetriever:
    def __init__(
        self,
        search: SearchService,
        cache: FullContentCache,
        budgeter: ContextBudgeter,
        index_name: str,
        prefetch_count: int = 10,
        summary_max_chars: int = 300,
    ) -> None:
        self._search = search
        self._cache = cache
        self._budgeter = budgeter
        self._index_name = index_name
        self._prefetch = prefetch_count
        self._summary_max_chars = summary_max_chars

    def _loader(self, doc_id: str, query: str, base_filter: str | None):
        key = (self._index_name, doc_id)

        async def fetch() -> str:
            refs = await self._search.hybrid_search(
                query, top=1, filter=build_id_filter(doc_id, base_filter)
            )
            return refs[0].content if refs else ""

        async def load_full() -> str:
            return await self._cache.load(key, fetch)

        return load_full

    async def search(
        self,
        query: str,
        top: int,
        filter: str | None = None,
        threshold: float | None = None,
    ) -> LazySearchResult:
        search_top = max(self._prefetch, top)
        results = await self._search.hybrid_search(
            query, top=search_top, filter=filter, threshold=threshold
        )
        results = enforce_reranker_threshold(results, threshold, source="lazy_hybrid")[:top]

        references = []
        for i, ref in enumerate(results):
            doc_id = ref.id or f"result_{i}"
            summary = truncate_summary(ref.content or "", self._summary_max_chars)
            references.append(
                Reference(
                    id=doc_id,
                    title=ref.title or f"Result {i + 1}",
                    content=summary,
                    url=ref.url,
                    page_number=ref.page_number,
                    score=ref.score,
                    highlights=ref.highlights,
                    source_type=ref.source_type,
                    metadata={**ref.metadata, "summary": summary},
                    content_state="summary",
                    loader=self._loader(doc_id, query, filter),
                )
            )

        summary_text = "\n\n".join(f"[{i}] {r.content}" for i, r in enumerate(references, 1))
        summary_tokens = self._budgeter.estimate_tokens(summary_text) if summary_text else 0
        logger.info("lazy_search", results=len(references), summary_tokens=summary_tokens)
        return LazySearchResult(
            references=references,
            summary_tokens=summary_tokens,
            full_content_available=bool(references),
        )


async def load_full_content(references: list[Reference], indices: list[int]) -> dict[int, str]:
    """Hydrate the references at ``indices`` concurrently; returns position -> content."""
    loaded: dict[int, str] = {}

    async def load(position: int) -> None:
        if position < 0 or position >= len(references):
            return
        ref = references[position]
        if not ref.is_summary_only:
            loaded[position] = ref.content
            return
        content = await ref.loader() if ref.loader else ref.content
        if content:
            loaded[position] = content

    await asyncio.gather(*(load(i) for i in indices))
    return loaded


def identify_load_candidates(
    references: list[Reference],
    critic_issues: list[str],
    coverage: float | None = None,
    load_threshold: float = 0.5,
    limit: int = 2,
) -> list[int]:
    """Positions of summary-only references worth hydrating before a revision.

    Triggered by low coverage or by issues that point at missing detail.
    """
    if not references:
        return []
    low_coverage = coverage is not None and coverage < load_threshold
    needs_detail = any(_NEEDS_DETAIL.search(issue) for issue in critic_issues)
    if not (low_coverage or needs_detail):
        return []
    candidates = [i for i, ref in enumerate(references) if ref.is_summary_only]
    return candidates[:limit]


def hydrate(references: list[Reference], loaded: dict[int, str]) -> int:
    """Swap loaded full content into references in place; returns how many changed."""
    changed = 0
    for position, content in loaded.items():
        ref = references[position]
        if ref.is_summary_only:
            ref.content = content
            ref.content_state = "full"
            changed += 1
    return changed
