"""Record which references an answer actually cited and remember what worked."""

from __future__ import annotations

from dataclasses import dataclass

from grounded_chat.generation.citations import citation_markers
from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger

logger = get_logger("citation_tracker")


@dataclass
class CitationUsage:
    cited: list[Reference]
    unused: list[Reference]
    total_citations: int

    @property
    def citation_rate(self) -> float:
        total = len(self.cited) + len(self.unused)
        return len(self.cited) / total if total else 0.0


def mark_citation_usage(answer: str, references: list[Reference]) -> CitationUsage:
    """Annotate each reference's metadata with whether and how densely it was cited."""
    markers = citation_markers(answer)
    cited_numbers = set(markers)
    cited: list[Reference] = []
    unused: list[Reference] = []
    for i, ref in enumerate(references, 1):
        was_cited = i in cited_numbers
        ref.metadata["wasActuallyCited"] = was_cited
        ref.metadata["citationDensity"] = markers.count(i) / (len(markers) or 1)
        (cited if was_cited else unused).append(ref)
    return CitationUsage(cited=cited, unused=unused, total_citations=len(markers))


async def track_citation_usage(
    answer: str,
    references: list[Reference],
    query: str,
    session_id: str,
    store=None,
) -> CitationUsage:
    usage = mark_citation_usage(answer, references)
    logger.info("citation_usage", cited=len(usage.cited), references=len(references))

    if store is None or not usage.cited:
        return usage

    chunk_ids = ", ".join(r.id or "unknown" for r in usage.cited)
    avg_score = sum(r.score or 0.0 for r in usage.cited) / len(usage.cited)
    await store.add_memory(
        f'Query "{query}" successfully answered using chunks: {chunk_ids}',
        "procedural",
        {
            "citationRate": usage.citation_rate,
            "avgRerankerScore": avg_score,
            "totalCitations": usage.total_citations,
        },
        session_id=session_id,
    )

    if len(usage.unused) >= len(references) / 2:
        await store.add_memory(
            f'Query "{query}" had low citation rate ({len(usage.cited)}/{len(references)}). '
            "Consider query reformulation.",
            "episodic",
            {"citationRate": usage.citation_rate},
            session_id=session_id,
        )
    return usage


async def recall_similar_successful_queries(query: str, store=None, k: int = 2) -> list[dict]:
    if store is None:
        return []
    memories = await store.recall(query, k=k, type="procedural", min_similarity=0.7)
    return [{"query": m.text, "metadata": m.metadata} for m in memories]
