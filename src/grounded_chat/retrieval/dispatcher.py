"""Execute a plan's retrieval steps and assemble the citation-numbered context."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace

from grounded_chat.config.features import FeatureGates
from grounded_chat.config.settings import Settings
from grounded_chat.context.budget import ContextBudgeter
from grounded_chat.exceptions import DecompositionCycleError
from grounded_chat.generation.citations import CitationEnumeration
from grounded_chat.models.domain import (
    ActivityStep,
    AgentMessage,
    ComplexityAssessment,
    DecomposedQuery,
    Plan,
    Reference,
    RetrievalDiagnostics,
    RetrievalOutcome,
    SalienceNote,
    WebResult,
)
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.embedder import Embedder
from grounded_chat.protocols.web_search import WebSearcher
from grounded_chat.query.decomposition import QueryDecomposer, aggregate_results, execute_sub_queries
from grounded_chat.retrieval.lazy import LazyRetriever
from grounded_chat.retrieval.retriever import Retriever
from grounded_chat.retrieval.rrf import apply_semantic_boost, fuse_sources
from grounded_chat.retrieval.thresholds import score_stats
from grounded_chat.retrieval.web_context import WebContext, build_web_context

logger = get_logger("dispatcher")

Emit = Callable[[str, dict], None]

RETRIEVE_ACTIONS = ("vector_search", "both")
WEB_ACTIONS = ("web_search", "both")


def latest_user_query(messages: list[AgentMessage]) -> str:
    last = next((m for m in reversed(messages) if m.role == "user"), None)
    return last.content if last else ""


def build_context_text(
    references: list[Reference],
    web_context: WebContext,
    salience: list[SalienceNote],
    citations: CitationEnumeration,
    retrieval_answer: str | None = None,
) -> str:
    """Evidence blocks numbered exactly as the citation enumeration, then the references list."""
    reference_text = "\n\n".join(f"[{i}] {ref.content or ''}" for i, ref in enumerate(references, 1))
    salience_text = "\n".join(f"[Salience {i}] {note.fact}" for i, note in enumerate(salience, 1))
    evidence = [reference_text, web_context.text]
    if not any(block.strip() for block in evidence):
        return ""
    summary = f"Retrieval summary:\n{retrieval_answer.strip()}" if retrieval_answer and retrieval_answer.strip() else ""
    blocks = [*evidence, summary, salience_text, citations.references_block()]
    return "\n\n".join(block for block in blocks if block and block.strip())


@dataclass
class DispatchResult:
    references: list[Reference]
    web_results: list[WebResult]
    citations: CitationEnumeration
    activity: list[ActivityStep]
    diagnostics: RetrievalDiagnostics
    web_context: WebContext = field(default_factory=WebContext)
    salience: list[SalienceNote] = field(default_factory=list)
    retrieval_answer: str | None = None
    source: str = "direct"  # "direct" or "fallback_vector"
    mode: str = "direct"  # "direct" or "lazy"
    escalated: bool = False
    summary_tokens: int | None = None
    adaptive_stats: dict | None = None
    complexity: ComplexityAssessment | None = None
    decomposition: DecomposedQuery | None = None
    context_text: str = ""

    def __post_init__(self) -> None:
        if not self.context_text:
            self.refresh_context()

    def refresh_context(self) -> str:
        """Rebuild context text from current reference content (e.g. after hydration)."""
        self.context_text = build_context_text(
            self.references, self.web_context, self.salience, self.citations, self.retrieval_answer
        )
        return self.context_text


class Dispatcher:
    def __init__(
        self,
        retriever: Retriever,
        budgeter: ContextBudgeter,
        settings: Settings,
        web_search: WebSearcher | None = None,
        embedder: Embedder | None = None,
        lazy_retriever: LazyRetriever | None = None,
        decomposer: QueryDecomposer | None = None,
    ) -> None:
        self._retriever = retriever
        self._budgeter = budgeter
        self._settings = settings
        self._web = web_search
        self._embedder = embedder
        self._lazy = lazy_retriever
        self._decomposer = decomposer

    async def dispatch(
        self,
        plan: Plan,
        messages: list[AgentMessage],
        salience: list[SalienceNote] | None = None,
        features: FeatureGates | None = None,
        emit: Emit | None = None,
    ) -> DispatchResult:
        settings = self._settings
        features = features or FeatureGates()
        salience = salience or []
        emit = emit or (lambda event, data: None)

        references: list[Reference] = []
        web_results: list[WebResult] = []
        activity: list[ActivityStep] = []
        outcome: RetrievalOutcome | None = None
        mode = "direct"
        summary_tokens: int | None = None
        complexity: ComplexityAssessment | None = None
        decomposed: DecomposedQuery | None = None
        fallback_query = latest_user_query(messages)

        threshold = settings.planner_confidence_dual_retrieval
        escalated = plan.confidence < threshold
        if escalated:
            emit("status", {"stage": "confidence_escalation", "confidence": plan.confidence, "threshold": threshold})
            activity.append(
                ActivityStep(
                    type="confidence_escalation",
                    description=(
                        f"Confidence {plan.confidence:.2f} below threshold {threshold:.2f}. "
                        "Executing dual retrieval."
                    ),
                )
            )

        retrieval_step = next((s for s in plan.steps if s.action in RETRIEVE_ACTIONS), None)
        should_retrieve = escalated or retrieval_step is not None
        web_step = next((s for s in plan.steps if s.action in WEB_ACTIONS), None)
        wants_web = escalated or web_step is not None

        if should_retrieve:
            query = (retrieval_step.query if retrieval_step and retrieval_step.query else fallback_query).strip()
            top = retrieval_step.k if retrieval_step and retrieval_step.k else settings.top_k

            if features.query_decomposition and self._decomposer is not None:
                complexity, decomposed = await self._maybe_decompose(query, emit)

            emit("status", {"stage": "retrieval"})
            if decomposed is not None:
                references, sub_web = await self._run_decomposition(decomposed, features, wants_web)
                web_results.extend(sub_web)
                activity.append(
                    ActivityStep(
                        type="decomposition",
                        description=(
                            f"Executed {len(decomposed.sub_queries)} sub-queries; "
                            f"{len(references)} reference(s), {len(sub_web)} web result(s)."
                        ),
                    )
                )
            elif features.lazy_retrieval and self._lazy is not None:
                try:
                    lazy = await self._lazy.search(query, top=top, threshold=settings.reranker_threshold)
                    references = lazy.references
                    summary_tokens = lazy.summary_tokens
                    mode = "lazy"
                    activity.append(
                        ActivityStep(
                            type="lazy_search",
                            description=f"Lazy retrieval returned {len(references)} summary result(s).",
                        )
                    )
                except Exception as e:
                    logger.warning("lazy_retrieval_failed", error=str(e))
                    outcome = await self._retrieve(query, messages, top, features, activity)
            else:
                outcome = await self._retrieve(query, messages, top, features, activity)

            if outcome is not None:
                references = outcome.references
                activity.extend(outcome.activity)
                if outcome.diagnostics.get("adaptive"):
                    emit("telemetry", {"adaptive_retrieval": outcome.diagnostics["adaptive"]})
            activity.append(
                ActivityStep(
                    type="plan",
                    description=f"{'Lazy' if mode == 'lazy' else 'Direct'} search retrieval executed via orchestrator.",
                )
            )

        if wants_web and self._web is not None and decomposed is None:
            emit("status", {"stage": "web_search"})
            query = (web_step.query if web_step and web_step.query else fallback_query).strip()
            count = web_step.k if web_step and web_step.k else settings.web_results_max
            try:
                found = await self._web.search(query, count)
                web_results.extend(found)
                activity.append(
                    ActivityStep(type="web_search", description=f'Fetched {len(found)} web results for "{query}".')
                )
            except Exception as e:
                logger.warning("web_search_failed", error=str(e))
                activity.append(ActivityStep(type="web_search_error", description=f"Web search failed: {e}"))

        mean_score, min_score, max_score = score_stats(references)

        if features.web_reranking and references and web_results:
            emit("status", {"stage": "reranking"})
            references, web_results = await self._rerank(fallback_query, references, web_results, features, activity)

        web_context = build_web_context(
            web_results, self._budgeter, settings.web_context_max_tokens, first_number=len(references) + 1
        )
        if web_context.trimmed:
            activity.append(
                ActivityStep(
                    type="web_context_trim",
                    description=f"Web context truncated to {len(web_context.used)} results ({web_context.tokens} tokens).",
                )
            )

        min_docs = settings.retrieval_min_docs
        if should_retrieve and len(references) < min_docs:
            activity.append(
                ActivityStep(
                    type="retrieval_underflow",
                    description=f"Retrieved {len(references)} documents (<{min_docs}). Consider fallback expansion.",
                )
            )

        source = "fallback_vector" if any(s.type == "fallback_search" for s in activity) else "direct"
        diagnostics = self._diagnostics(
            should_retrieve, references, outcome, mode, escalated, (mean_score, min_score, max_score)
        )
        citations = CitationEnumeration.build(references, web_context.used)

        logger.info(
            "dispatch_completed",
            references=len(references),
            web_results=len(web_context.used),
            mode=mode,
            source=source,
            escalated=escalated,
            fallback_reason=diagnostics.fallback_reason,
        )
        return DispatchResult(
            references=references,
            web_results=web_context.used,
            citations=citations,
            activity=activity,
            diagnostics=diagnostics,
            web_context=web_context,
            salience=salience,
            retrieval_answer=outcome.answer if outcome else None,
            source=source,
            mode=mode,
            escalated=escalated,
            summary_tokens=summary_tokens,
            adaptive_stats=outcome.diagnostics.get("adaptive") if outcome else None,
            complexity=complexity,
            decomposition=decomposed,
        )

    async def _retrieve(
        self,
        query: str,
        messages: list[AgentMessage],
        top: int,
        features: FeatureGates,
        activity: list[ActivityStep],
    ) -> RetrievalOutcome:
        try:
            return await self._retriever.retrieve(query, messages=messages, top=top, features=features)
        except Exception as e:
            logger.error("retrieval_failed", error=str(e))
            activity.append(ActivityStep(type="retrieval_error", description=f"Retrieval failed: {e}"))
            return RetrievalOutcome(references=[], mode="failed", fallback_triggered=True)

    async def _maybe_decompose(
        self, query: str, emit: Emit
    ) -> tuple[ComplexityAssessment, DecomposedQuery | None]:
        complexity = await self._decomposer.assess_complexity(query)
        emit(
            "complexity",
            {
                "score": complexity.complexity,
                "needsDecomposition": complexity.needs_decomposition,
                "reasoning": complexity.reasoning,
            },
        )
        if not self._decomposer.should_decompose(complexity):
            return complexity, None
        decomposed = await self._decomposer.decompose(query)
        if len(decomposed.sub_queries) <= 1:
            return complexity, None
        emit(
            "decomposition",
            {
                "subQueries": [
                    {"id": sq.id, "query": sq.query, "dependencies": sq.dependencies, "reasoning": sq.reasoning}
                    for sq in decomposed.sub_queries
                ],
                "synthesisPrompt": decomposed.synthesis_prompt,
            },
        )
        return complexity, decomposed

    async def _run_decomposition(
        self, decomposed: DecomposedQuery, features: FeatureGates, wants_web: bool
    ) -> tuple[list[Reference], list[WebResult]]:
        async def retrieve(query: str, top: int) -> list[Reference]:
            outcome = await self._retriever.retrieve(query, top=top, features=features)
            return outcome.references

        web_search = self._web.search if wants_web and self._web is not None else None
        try:
            results = await execute_sub_queries(decomposed.sub_queries, retrieve, web_search)
        except DecompositionCycleError:
            logger.error("decomposition_cycle", sub_queries=len(decomposed.sub_queries))
            raise
        return aggregate_results(decomposed.sub_queries, results)

    async def _rerank(
        self,
        query: str,
        references: list[Reference],
        web_results: list[WebResult],
        features: FeatureGates,
        activity: list[ActivityStep],
    ) -> tuple[list[Reference], list[WebResult]]:
        settings = self._settings
        input_refs, input_web = len(references), len(web_results)
        fused = fuse_sources(references, web_results, k=settings.rrf_k)

        if features.semantic_boost and self._embedder is not None:
            head = fused[: settings.reranking_top_k]
            try:
                query_vector = await self._embedder.embed_query(query)
                item_vectors = await self._embedder.embed_texts([r.text[:1000] or r.id for r in head])
                fused = apply_semantic_boost(head, query_vector, item_vectors, settings.semantic_boost_weight) + fused[
                    len(head) :
                ]
            except Exception as e:
                logger.warning("semantic_boost_failed", error=str(e))

        top = fused[: settings.reranking_top_k]
        reranked_refs = [
            replace(r.item, metadata={**r.item.metadata, "rrfScore": r.score})
            for r in top
            if r.source == "reference"
        ]
        reranked_web = [
            replace(r.item, rank=i, relevance=r.score)
            for i, r in enumerate((r for r in top if r.source == "web"), 1)
        ]
        activity.append(
            ActivityStep(
                type="reranking",
                description=(
                    f"Applied RRF to {input_refs} search and {input_web} web results -> "
                    f"{len(reranked_refs) + len(reranked_web)} combined."
                ),
            )
        )
        return reranked_refs, reranked_web

    def _diagnostics(
        self,
        attempted: bool,
        references: list[Reference],
        outcome: RetrievalOutcome | None,
        mode: str,
        escalated: bool,
        stats: tuple[float | None, float | None, float | None],
    ) -> RetrievalDiagnostics:
        if not attempted:
            return RetrievalDiagnostics(attempted="none", succeeded=True, documents=0, escalated=escalated)

        min_docs = self._settings.retrieval_min_docs
        agent = (outcome.diagnostics.get("knowledgeAgent") or {}) if outcome else {}
        if agent.get("failurePhase") == "invocation":
            reason = "knowledge_agent_unavailable"
        elif len(references) < min_docs or (outcome is not None and outcome.fallback_triggered):
            reason = "insufficient_documents"
        else:
            reason = None

        mean_score, min_score, max_score = stats
        return RetrievalDiagnostics(
            attempted=outcome.mode if outcome else mode,
            succeeded=len(references) > 0,
            documents=len(references),
            retry_count=outcome.fallback_attempts if outcome else 0,
            mean_score=mean_score,
            min_score=min_score,
            max_score=max_score,
            threshold_used=outcome.threshold_used if outcome else self._settings.reranker_threshold,
            fallback_reason=reason,
            escalated=escalated,
            mode=mode,
            threshold_history=tuple(outcome.threshold_history) if outcome else (),
        )
