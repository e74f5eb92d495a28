"""Reranker-score threshold enforcement."""

from __future__ import annotations

from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger

logger = get_logger("thresholds")


def enforce_reranker_threshold(
    references: list[Reference],
    threshold: float | None,
    source: str = "search",
) -> list[Reference]:
    """Drop references scoring below ``threshold``.

    A missing or non-positive threshold is a no-op. When every reference
    would be dropped, the original list is returned unchanged.
    """
    if threshold is None or threshold <= 0 or not references:
        return references

    kept = [r for r in references if r.score is not None and r.score >= threshold]
    if not kept:
        logger.warning(
            "reranker_threshold_filtered_all",
            source=source,
            threshold=threshold,
            candidates=len(references),
        )
        return references

    if len(kept) < len(references):
        logger.info(
            "reranker_threshold_applied",
            source=source,
            threshold=threshold,
            kept=len(kept),
            dropped=len(references) - len(kept),
        )
    return kept


def score_stats(references: list[Reference]) -> tuple[float | None, float | None, float | None]:
    """Return (mean, min, max) of available scores."""
    scores = [r.score for r in references if r.score is not None]
    if not scores:
        return None, None, None
    return sum(scores) / len(scores), min(scores), max(scores)
