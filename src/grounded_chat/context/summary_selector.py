"""Choose which running-summary bullets enter the context budget."""

from __future__ import annotations

from grounded_chat.models.domain import SummaryBullet, SummarySelectionStats
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.embedder import Embedder
from grounded_chat.retrieval.vector_ops import cosine_similarity

logger = get_logger("summary_selector")


def dedupe_bullets(candidates: list[SummaryBullet]) -> list[SummaryBullet]:
    """Deduplicate by trimmed text, keeping the first occurrence and skipping blanks."""
    seen: set[str] = set()
    unique: list[SummaryBullet] = []
    for bullet in candidates:
        text = (bullet.text or "").strip()
        if not text or text in seen:
            continue
        seen.add(text)
        unique.append(SummaryBullet(text=text, embedding=bullet.embedding))
    return unique


def _recency(
    candidates: list[SummaryBullet], max_items: int, used_fallback: bool, error: str | None = None
) -> tuple[list[SummaryBullet], SummarySelectionStats]:
    selected = candidates[-max_items:] if max_items > 0 else []
    return selected, SummarySelectionStats(
        mode="recency",
        total_candidates=len(candidates),
        selected_count=len(selected),
        discarded_count=len(candidates) - len(selected),
        used_fallback=used_fallback,
        error=error,
    )


class SummarySelector:
    def __init__(self, embedder: Embedder) -> None:
        self._embedder = embedder

    async def select(
        self,
        query: str,
        candidates: list[SummaryBullet],
        max_items: int,
        semantic: bool = True,
    ) -> tuple[list[SummaryBullet], SummarySelectionStats]:
        unique = dedupe_bullets(candidates)

        if not unique or max_items <= 0:
            return _recency(unique, max_items, used_fallback=True)

        if not semantic or not query.strip():
            return _recency(unique, max_items, used_fallback=False)

        try:
            missing = [i for i, b in enumerate(unique) if not b.embedding]
            if missing:
                vectors = await self._embedder.embed_texts([unique[i].text for i in missing])
                for i, vector in zip(missing, vectors):
                    unique[i].embedding = vector
            query_vector = await self._embedder.embed_query(query)
        except Exception as e:
            logger.warning("semantic_summary_failed", error=str(e), candidates=len(unique))
            return _recency(unique, max_items, used_fallback=True, error=str(e))

        scored = [
            (cosine_similarity(query_vector, b.embedding or []), i) for i, b in enumerate(unique)
        ]
        # Highest similarity first; original index breaks ties.
        scored.sort(key=lambda pair: (-pair[0], pair[1]))
        chosen = scored[:max_items]
        selected = [unique[i] for _, i in chosen]

        all_scores = [s for s, _ in scored]
        chosen_scores = [s for s, _ in chosen]
        stats = SummarySelectionStats(
            mode="semantic",
            total_candidates=len(unique),
            selected_count=len(selected),
            discarded_count=len(unique) - len(selected),
            used_fallback=False,
            max_score=max(all_scores),
            min_score=min(all_scores),
            mean_score=sum(all_scores) / len(all_scores),
            max_selected_score=max(chosen_scores),
            min_selected_score=min(chosen_scores),
        )
        return selected, stats
