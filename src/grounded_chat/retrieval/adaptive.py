"""Adaptive retrieval: assess result quality and reformulate the query when it is poor."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field

from pydantic import BaseModel

from grounded_chat.config.constants import ADAPTIVE_EMBED_CHARS, ADAPTIVE_PREVIEW_CHARS
from grounded_chat.generation.prompt_templates import (
    COVERAGE_PROMPT,
    COVERAGE_SYSTEM,
    REFORMULATION_PROMPT,
    REFORMULATION_SYSTEM,
)
from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.embedder import Embedder
from grounded_chat.protocols.llm import LLMProvider
from grounded_chat.protocols.search import SearchService
from grounded_chat.retrieval.vector_ops import mean_pairwise_similarity

logger = get_logger("adaptive_retrieval")


class CoverageResponse(BaseModel):
    coverage: float


@dataclass
class RetrievalQuality:
    diversity: float
    coverage: float
    authority: float
    freshness: float = 0.5

    def to_dict(self) -> dict:
        return {
            "diversity": round(self.diversity, 4),
            "coverage": round(self.coverage, 4),
            "authority": round(self.authority, 4),
            "freshness": self.freshness,
        }


@dataclass
class AdaptiveAttempt:
    attempt: int
    query: str
    quality: RetrievalQuality
    latency_ms: float


@dataclass
class AdaptiveResult:
    references: list[Reference]
    quality: RetrievalQuality
    initial_quality: RetrievalQuality
    reformulations: list[str] = field(default_factory=list)
    attempts: list[AdaptiveAttempt] = field(default_factory=list)

    def stats(self, min_coverage: float, min_diversity: float) -> dict:
        initial = self.initial_quality
        low_cov = initial.coverage < min_coverage
        low_div = initial.diversity < min_diversity
        reason = None
        if self.reformulations:
            reason = "both" if low_cov and low_div else ("coverage" if low_cov else "diversity")
        return {
            "attempts": len(self.attempts),
            "trigger_reason": reason,
            "initial_quality": initial.to_dict(),
            "final_quality": self.quality.to_dict(),
            "reformulations": list(self.reformulations),
            "latency_ms_total": round(sum(a.latency_ms for a in self.attempts), 2),
        }


class QualityAssessor:
    def __init__(self, llm: LLMProvider, embedder: Embedder) -> None:
        self._llm = llm
        self._embedder = embedder

    async def diversity(self, references: list[Reference]) -> float:
        """1 - mean pairwise cosine similarity of result embeddings."""
        if len(references) < 2:
            return 1.0
        texts = [(r.content or "").strip()[:ADAPTIVE_EMBED_CHARS] for r in references]
        texts = [t for t in texts if t]
        if len(texts) < 2:
            return 0.5
        try:
            vectors = await self._embedder.embed_texts(texts)
        except Exception as e:
            logger.warning("diversity_embedding_failed", error=str(e))
            return 0.5
        usable = [v for v in vectors if v]
        if len(usable) < 2:
            return 0.5
        return 1 - mean_pairwise_similarity(usable)

    async def coverage(self, references: list[Reference], query: str) -> float:
        if not references:
            return 0.0
        preview = "\n\n".join(
            f"[{i}] {(r.content or '')[:ADAPTIVE_PREVIEW_CHARS]}"
            for i, r in enumerate(references[:5], 1)
        )
        prompt = COVERAGE_PROMPT.format(query=query, documents=preview)
        try:
            result = await self._llm.generate_structured(prompt, CoverageResponse, system=COVERAGE_SYSTEM)
            value = result.coverage
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=COVERAGE_SYSTEM, temperature=0.0)
                value = json.loads(raw).get("coverage", 0.5)
            except Exception:
                logger.warning("coverage_assessment_failed")
                return 0.5
        if not isinstance(value, (int, float)):
            return 0.5
        return min(max(float(value), 0.0), 1.0)

    async def assess(self, references: list[Reference], query: str) -> RetrievalQuality:
        diversity = await self.diversity(references)
        coverage = await self.coverage(references, query)
        scores = [r.score for r in references if r.score is not None]
        avg = sum(scores) / len(scores) if scores else 0.0
        return RetrievalQuality(
            diversity=diversity,
            coverage=coverage,
            authority=min(avg / 3.0, 1.0),
        )


class AdaptiveRetriever:
    def __init__(
        self,
        search: SearchService,
        llm: LLMProvider,
        assessor: QualityAssessor,
        min_coverage: float = 0.4,
        min_diversity: float = 0.3,
        max_attempts: int = 3,
    ) -> None:
        self._search = search
        self._llm = llm
        self._assessor = assessor
        self.min_coverage = min_coverage
        self.min_diversity = min_diversity
        self._max_attempts = max_attempts

    def _needs_reformulation(self, quality: RetrievalQuality) -> bool:
        return quality.coverage < self.min_coverage or quality.diversity < self.min_diversity

    async def _reformulate(self, query: str, quality: RetrievalQuality, count: int) -> str | None:
        prompt = REFORMULATION_PROMPT.format(
            query=query,
            coverage=quality.coverage,
            coverage_target=self.min_coverage,
            diversity=quality.diversity,
            diversity_target=self.min_diversity,
            count=count,
        )
        try:
            rewritten = await self._llm.generate(prompt, system=REFORMULATION_SYSTEM, temperature=0.3)
        except Exception as e:
            logger.warning("reformulation_failed", error=str(e))
            return None
        rewritten = rewritten.strip().strip('"').strip()
        return rewritten or None

    async def retrieve(self, query: str, top: int, filter: str | None = None) -> AdaptiveResult:
        attempts: list[AdaptiveAttempt] = []
        reformulations: list[str] = []
        current = query

        for attempt in range(1, self._max_attempts + 1):
            start = time.monotonic()
            references = await self._search.hybrid_search(current, top=top, filter=filter)
            quality = await self._assessor.assess(references, current)
            attempts.append(
                AdaptiveAttempt(attempt, current, quality, round((time.monotonic() - start) * 1000, 2))
            )

            if not self._needs_reformulation(quality) or attempt >= self._max_attempts:
                break

            logger.info(
                "adaptive_quality_low",
                attempt=attempt,
                coverage=round(quality.coverage, 3),
                diversity=round(quality.diversity, 3),
                retrieved=len(references),
            )
            rewritten = await self._reformulate(current, quality, len(references))
            if rewritten is None:
                break
            reformulations.append(rewritten)
            current = rewritten

        return AdaptiveResult(
            references=references,
            quality=quality,
            initial_quality=attempts[0].quality,
            reformulations=reformulations,
            attempts=attempts,
        )
