"""Staged fallback retrieval when primary search returns too few documents."""

from __future__ import annotations

from dataclasses import dataclass, field

from grounded_chat.config.settings import Settings
from grounded_chat.models.domain import ActivityStep, Reference
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.search import SearchService

logger = get_logger("fallback")


@dataclass
class FallbackOutcome:
    references: list[Reference]
    activity: list[ActivityStep] = field(default_factory=list)
    threshold: float = 0.0
    thresholds: list[float] = field(default_factory=list)
    attempts: int = 0
    vector_only: bool = False


class FallbackManager:
    """Relax the reranker threshold, then widen top-k, then drop to pure vector search."""

    def __init__(self, search: SearchService, settings: Settings) -> None:
        self._search = search
        self._settings = settings

    @property
    def threshold_floor(self) -> float:
        fallback = self._settings.retrieval_fallback_reranker_threshold
        return max(min(self._settings.retrieval_min_reranker_threshold, fallback), 0.0)

    async def run(
        self,
        query: str,
        top: int,
        filter: str | None = None,
        correlation_id: str = "",
    ) -> FallbackOutcome:
        min_docs = self._settings.retrieval_min_docs
        outcome = FallbackOutcome(references=[])
        tag = f"[correlation={correlation_id}] " if correlation_id else ""

        # Stage 1: lower reranker threshold
        relaxed = self._settings.retrieval_fallback_reranker_threshold
        outcome.attempts += 1
        refs = await self._search.hybrid_search(query, top=top, filter=filter, threshold=relaxed)
        outcome.thresholds.append(relaxed)
        outcome.activity.append(
            ActivityStep(
                type="fallback_search",
                description=f"{tag}Hybrid semantic fallback returned {len(refs)} result(s) (threshold: {relaxed}).",
            )
        )
        if len(refs) >= min_docs:
            outcome.references, outcome.threshold = refs[:top], relaxed
            return outcome

        # Stage 2: floor threshold with expanded top-k
        floor = self.threshold_floor
        expanded_top = max(top * 2, top)
        outcome.attempts += 1
        refs = await self._search.hybrid_search(query, top=expanded_top, filter=filter, threshold=floor)
        outcome.thresholds.append(floor)
        outcome.activity.append(
            ActivityStep(
                type="fallback_search",
                description=(
                    f"{tag}Hybrid semantic fallback (threshold {floor}, top={expanded_top}) "
                    f"returned {len(refs)} result(s)."
                ),
            )
        )
        if len(refs) >= min_docs:
            outcome.references, outcome.threshold = refs[:top], floor
            return outcome

        # Stage 3: pure vector search
        outcome.attempts += 1
        refs = await self._search.vector_search(query, top=top, filter=filter)
        outcome.thresholds.append(floor)
        outcome.activity.append(
            ActivityStep(
                type="fallback_search",
                description=f"{tag}Vector-only fallback returned {len(refs)} result(s) (quality floor: {floor}).",
            )
        )
        logger.info("fallback_vector_only", results=len(refs), floor=floor)
        outcome.references, outcome.threshold = refs, floor
        outcome.vector_only = True
        return outcome
