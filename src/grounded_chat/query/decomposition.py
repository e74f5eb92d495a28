"""Complexity assessment, sub-query decomposition and dependency-ordered execution."""

from __future__ import annotations

import asyncio
import json

from pydantic import BaseModel, Field

from grounded_chat.config.constants import DECOMPOSITION_SUBQUERY_TOP
from grounded_chat.exceptions import DecompositionCycleError
from grounded_chat.generation.prompt_templates import (
    COMPLEXITY_PROMPT,
    COMPLEXITY_SYSTEM,
    DECOMPOSITION_PROMPT,
    DECOMPOSITION_SYSTEM,
)
from grounded_chat.models.domain import (
    ComplexityAssessment,
    DecomposedQuery,
    Reference,
    SubQuery,
    SubQueryResult,
    WebResult,
)
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.llm import LLMProvider

logger = get_logger("decomposition")


class ComplexityResponse(BaseModel):
    complexity: float
    needs_decomposition: bool
    reasoning: str = ""


class SubQueryModel(BaseModel):
    id: int
    query: str
    dependencies: list[int] = Field(default_factory=list)
    reasoning: str = ""


class DecompositionResponse(BaseModel):
    sub_queries: list[SubQueryModel]
    synthesis_prompt: str = ""


def _single(question: str, reasoning: str) -> DecomposedQuery:
    return DecomposedQuery(
        original=question,
        sub_queries=[SubQuery(id=0, query=question, dependencies=[], reasoning=reasoning)],
        synthesis_prompt="Answer the question directly.",
    )


def repair_sub_queries(raw: list[SubQueryModel], max_items: int) -> list[SubQuery]:
    """Keep non-empty, uniquely numbered sub-queries; drop dependencies on unknown ids."""
    sub_queries: list[SubQuery] = []
    seen: set[int] = set()
    for item in raw:
        query = item.query.strip()
        if not query or item.id in seen:
            continue
        seen.add(item.id)
        sub_queries.append(SubQuery(item.id, query, list(item.dependencies), item.reasoning))
        if len(sub_queries) >= max_items:
            break
    known = {sq.id for sq in sub_queries}
    for sq in sub_queries:
        sq.dependencies = [d for d in dict.fromkeys(sq.dependencies) if d in known]
    return sub_queries


def execution_waves(sub_queries: list[SubQuery]) -> list[list[SubQuery]]:
    """Group sub-queries into waves whose dependencies all sit in earlier waves.

    Raises DecompositionCycleError before anything runs when the graph has a cycle.
    """
    by_id = {sq.id: sq for sq in sub_queries}
    depth: dict[int, int] = {}
    visiting: set[int] = set()

    def visit(sq: SubQuery) -> int:
        if sq.id in depth:
            return depth[sq.id]
        if sq.id in visiting:
            raise DecompositionCycleError(f"Circular dependency detected at sub-query {sq.id}")
        visiting.add(sq.id)
        level = 0
        for dep_id in sq.dependencies:
            dep = by_id.get(dep_id)
            if dep is not None:
                level = max(level, visit(dep) + 1)
        visiting.discard(sq.id)
        depth[sq.id] = level
        return level

    for sq in sub_queries:
        visit(sq)

    waves: list[list[SubQuery]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for sq in sub_queries:
        waves[depth[sq.id]].append(sq)
    return waves


class QueryDecomposer:
    def __init__(self, llm: LLMProvider, complexity_threshold: float = 0.6, max_sub_queries: int = 8) -> None:
        self._llm = llm
        self._threshold = complexity_threshold
        self._max = max_sub_queries

    def should_decompose(self, assessment: ComplexityAssessment) -> bool:
        return assessment.needs_decomposition and assessment.complexity >= self._threshold

    async def assess_complexity(self, question: str) -> ComplexityAssessment:
        prompt = COMPLEXITY_PROMPT.format(question=question)
        try:
            result = await self._llm.generate_structured(prompt, ComplexityResponse, system=COMPLEXITY_SYSTEM)
            complexity, needs, reasoning = result.complexity, result.needs_decomposition, result.reasoning
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=COMPLEXITY_SYSTEM, temperature=0.0)
                data = json.loads(raw)
                complexity = data.get("complexity", 0.3)
                needs = bool(data.get("needs_decomposition", data.get("needsDecomposition", False)))
                reasoning = str(data.get("reasoning", ""))
            except Exception:
                logger.warning("complexity_assessment_failed")
                return ComplexityAssessment(0.3, False, "Assessment failed, defaulting to simple query")
        if not isinstance(complexity, (int, float)):
            complexity = 0.3
        return ComplexityAssessment(min(max(float(complexity), 0.0), 1.0), needs, reasoning)

    async def decompose(self, question: str) -> DecomposedQuery:
        prompt = DECOMPOSITION_PROMPT.format(question=question)
        try:
            result = await self._llm.generate_structured(prompt, DecompositionResponse, system=DECOMPOSITION_SYSTEM)
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=DECOMPOSITION_SYSTEM, temperature=0.0)
                result = DecompositionResponse.model_validate(json.loads(raw))
            except Exception:
                logger.warning("decomposition_failed")
                return _single(question, "Decomposition fallback")

        sub_queries = repair_sub_queries(result.sub_queries, self._max)
        if not sub_queries:
            return _single(question, "Fallback to original question")

        logger.info("decomposed", sub_queries=len(sub_queries))
        return DecomposedQuery(
            original=question,
            sub_queries=sub_queries,
            synthesis_prompt=result.synthesis_prompt.strip() or "Answer the question directly.",
        )


async def execute_sub_queries(sub_queries: list[SubQuery], retrieve, web_search=None) -> dict[int, SubQueryResult]:
    """Run sub-queries wave by wave; each wave runs concurrently.

    ``retrieve(query, top)`` returns references and ``web_search(query, count)``
    returns web results. A failing sub-query contributes nothing and still
    counts as completed so its dependants can run.
    """
    waves = execution_waves(sub_queries)
    results: dict[int, SubQueryResult] = {}
    completed: set[int] = set()

    async def run(sq: SubQuery) -> SubQueryResult:
        async def web() -> list[WebResult]:
            if web_search is None:
                return []
            try:
                return await web_search(sq.query, DECOMPOSITION_SUBQUERY_TOP)
            except Exception as e:
                logger.warning("subquery_web_failed", sub_query=sq.id, error=str(e))
                return []

        try:
            references, web_results = await asyncio.gather(retrieve(sq.query, DECOMPOSITION_SUBQUERY_TOP), web())
        except Exception as e:
            logger.warning("subquery_failed", sub_query=sq.id, error=str(e))
            references, web_results = [], []
        return SubQueryResult(sub_query=sq, references=references, web_results=web_results)

    for wave in waves:
        ready = [sq for sq in wave if all(dep in completed for dep in sq.dependencies)]
        for result in await asyncio.gather(*(run(sq) for sq in ready)):
            results[result.sub_query.id] = result
            completed.add(result.sub_query.id)
    return results


def aggregate_results(
    sub_queries: list[SubQuery], results: dict[int, SubQueryResult]
) -> tuple[list[Reference], list[WebResult]]:
    """Combine sub-query evidence in sub-query order, deduplicated by id (web results by url)."""
    references: list[Reference] = []
    web_results: list[WebResult] = []
    seen_refs: set[str] = set()
    seen_urls: set[str] = set()
    for sq in sub_queries:
        result = results.get(sq.id)
        if result is None:
            continue
        for ref in result.references:
            if ref.id not in seen_refs:
                seen_refs.add(ref.id)
                references.append(ref)
        for web in result.web_results:
            key = web.url or web.id
            if key not in seen_urls:
                seen_urls.add(key)
                web_results.append(web)
    return references, web_results
