"""Reciprocal Rank Fusion for merging search references with web results."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from grounded_chat.models.domain import Reference, WebResult
from grounded_chat.retrieval.vector_ops import cosine_similarity


def reciprocal_rank_fusion(
    result_lists: list[list[tuple[str, float]]],
    k: int = 60,
) -> list[tuple[str, float]]:
    """Merge multiple ranked result lists using RRF.

    Args:
        result_lists: Each list contains (item_id, score) tuples sorted best first.
        k: RRF constant (higher = more weight to lower-ranked results).

    Returns:
        Merged (item_id, rrf_score) tuples sorted by RRF score descending. Ties
        keep first-seen order, so items from earlier lists win.
    """
    scores: dict[str, float] = defaultdict(float)
    for result_list in result_lists:
        for rank, (item_id, _) in enumerate(result_list, 1):
            scores[item_id] += 1.0 / (k + rank)
    return sorted(scores.items(), key=lambda x: x[1], reverse=True)


@dataclass
class FusedResult:
    id: str
    source: str  # "reference" or "web"
    item: Reference | WebResult
    score: float
    ranks: dict[str, int] = field(default_factory=dict)

    @property
    def text(self) -> str:
        if isinstance(self.item, Reference):
            return self.item.content
        return "\n".join(p for p in (self.item.title, self.item.snippet, self.item.body or "") if p)


def web_result_key(result: WebResult, index: int) -> str:
    return result.id or result.url or f"web-{index}"


def fuse_sources(
    references: list[Reference],
    web_results: list[WebResult],
    k: int = 60,
) -> list[FusedResult]:
    ref_ranked = [(ref.id, ref.score or 0.0) for ref in references]
    web_ranked = [(web_result_key(w, i), w.relevance or 0.0) for i, w in enumerate(web_results)]

    items: dict[str, FusedResult] = {}
    for rank, ref in enumerate(references, 1):
        entry = items.setdefault(ref.id, FusedResult(ref.id, "reference", ref, 0.0))
        entry.ranks.setdefault("reference", rank)
    for rank, web in enumerate(web_results, 1):
        key = web_result_key(web, rank - 1)
        entry = items.setdefault(key, FusedResult(key, "web", web, 0.0))
        entry.ranks.setdefault("web", rank)

    fused = reciprocal_rank_fusion([ref_ranked, web_ranked], k=k)
    results = []
    for item_id, score in fused:
        entry = items[item_id]
        entry.score = score
        results.append(entry)
    return results


def apply_semantic_boost(
    results: list[FusedResult],
    query_vector: list[float],
    item_vectors: list[list[float]],
    weight: float = 0.3,
) -> list[FusedResult]:
    """Blend cosine similarity into fused scores: score * (1 - w) + similarity * w."""
    for result, vector in zip(results, item_vectors):
        similarity = cosine_similarity(query_vector, vector)
        result.score = result.score * (1 - weight) + similarity * weight
    return sorted(results, key=lambda r: r.score, reverse=True)
