"""Retrieval tool: knowledge agent, federation, adaptive or direct search, with staged fallback."""

from __future__ import annotations

from uuid import uuid4

from grounded_chat.config.features import FeatureGates
from grounded_chat.config.settings import Settings
from grounded_chat.exceptions import SearchServiceError
from grounded_chat.models.domain import ActivityStep, AgentMessage, Reference, RetrievalOutcome
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.search import KnowledgeAgent, SearchService
from grounded_chat.retrieval.adaptive import AdaptiveRetriever
from grounded_chat.retrieval.fallback import FallbackManager
from grounded_chat.retrieval.federation import FederatedSearcher
from grounded_chat.retrieval.thresholds import enforce_reranker_threshold

logger = get_logger("retriever")


def reference_key(ref: Reference) -> str:
    return ref.id or f"{ref.url or ''}|{ref.page_number or ''}|{(ref.content or '')[:64]}"


def merge_references(primary: list[Reference], secondary: list[Reference], limit: int) -> list[Reference]:
    """Primary references first, then unseen secondary ones, capped at ``limit``."""
    if not primary:
        return secondary[:limit]
    combined: list[Reference] = []
    seen: set[str] = set()
    for ref in [*primary, *secondary]:
        key = reference_key(ref)
        if key in seen:
            continue
        seen.add(key)
        combined.append(ref)
    return combined[:limit]


def knowledge_agent_messages(messages: list[AgentMessage], query: str) -> list[AgentMessage]:
    """Conversation history with the retrieval query appended when it is not already the last user turn."""
    history = [m for m in messages if m.content and m.content.strip()]
    trimmed = query.strip()
    if trimmed and (not history or history[-1].role != "user" or history[-1].content.strip() != trimmed):
        history.append(AgentMessage(role="user", content=trimmed))
    return history


class Retriever:
    def __init__(
        self,
        search: SearchService,
        settings: Settings,
        fallback: FallbackManager | None = None,
        knowledge_agent: KnowledgeAgent | None = None,
        federated: FederatedSearcher | None = None,
        adaptive: AdaptiveRetriever | None = None,
    ) -> None:
        self._search = search
        self._settings = settings
        self._fallback = fallback or FallbackManager(search, settings)
        self._knowledge_agent = knowledge_agent
        self._federated = federated
        self._adaptive = adaptive

    def _knowledge_agent_preferred(self, messages: list[AgentMessage] | None) -> bool:
        return (
            self._knowledge_agent is not None
            and self._settings.retrieval_strategy in ("knowledge_agent", "hybrid")
            and bool(messages)
        )

    async def retrieve(
        self,
        query: str,
        messages: list[AgentMessage] | None = None,
        top: int | None = None,
        filter: str | None = None,
        features: FeatureGates | None = None,
    ) -> RetrievalOutcome:
        features = features or FeatureGates()
        top = top or self._settings.top_k
        correlation_id = str(uuid4())
        try:
            return await self._retrieve(query, messages, top, filter, features, correlation_id)
        except Exception as e:
            logger.error("hybrid_search_failed", correlation_id=correlation_id, error=str(e))
            refs = await self._search.vector_search(query, top=top, filter=filter)
            floor = self._fallback.threshold_floor
            return RetrievalOutcome(
                references=refs,
                activity=[
                    ActivityStep(
                        type="fallback_search",
                        description=(
                            f"[correlation={correlation_id}] Vector-only fallback after search failure "
                            f"returned {len(refs)} result(s)."
                        ),
                    )
                ],
                mode="fallback_vector",
                threshold_used=floor,
                threshold_history=[floor],
                fallback_attempts=1,
                fallback_triggered=True,
                diagnostics={"correlationId": correlation_id, "error": str(e)},
            )

    async def _retrieve(
        self,
        query: str,
        messages: list[AgentMessage] | None,
        top: int,
        filter: str | None,
        features: FeatureGates,
        correlation_id: str,
    ) -> RetrievalOutcome:
        settings = self._settings
        min_docs = settings.retrieval_min_docs
        thresholds: list[float] = []
        diagnostics: dict = {"correlationId": correlation_id}
        agent_refs: list[Reference] = []
        agent_activity: list[ActivityStep] = []
        agent_answer: str | None = None
        fallback_triggered = False

        if self._knowledge_agent_preferred(messages):
            agent_diag: dict = {"attempted": True}
            diagnostics["knowledgeAgent"] = agent_diag
            try:
                result = await self._knowledge_agent.retrieve(
                    knowledge_agent_messages(messages, query), top=top, filter=filter
                )
                agent_activity.extend(result.activity)
                if result.grounding:
                    agent_diag["grounding"] = result.grounding
                    agent_activity.append(
                        ActivityStep(
                            type="knowledge_agent_grounding",
                            description=(
                                f"Unified grounding mapped {len(result.grounding.get('mapping', {}))} id(s); "
                                f"unmatched {len(result.grounding.get('unmatched', []))}."
                            ),
                        )
                    )
                agent_refs = result.references[: max(top * 2, top)]
                agent_answer = result.answer
                if any(r.score is not None for r in agent_refs):
                    agent_refs = enforce_reranker_threshold(
                        agent_refs, settings.reranker_threshold, source="knowledge_agent"
                    )
                thresholds.append(settings.reranker_threshold)
                agent_activity.append(
                    ActivityStep(
                        type="knowledge_agent_search",
                        description=(
                            f"Knowledge agent returned {len(agent_refs)} result(s). [correlation={correlation_id}]"
                        ),
                    )
                )
                if len(agent_refs) >= min_docs:
                    logger.info("knowledge_agent_success", documents=len(agent_refs), min_docs=min_docs)
                    return RetrievalOutcome(
                        references=agent_refs[:top],
                        activity=agent_activity,
                        mode="knowledge_agent",
                        threshold_used=settings.reranker_threshold,
                        threshold_history=thresholds,
                        answer=agent_answer,
                        diagnostics=diagnostics,
                    )
                fallback_triggered = True
                if not agent_refs:
                    agent_diag["failurePhase"] = "zero_results"
                    agent_activity.append(
                        ActivityStep(
                            type="knowledge_agent_fallback",
                            description="Knowledge agent returned 0 result(s); falling back to direct search.",
                        )
                    )
                else:
                    agent_diag["failurePhase"] = "partial_results"
                    agent_activity.append(
                        ActivityStep(
                            type="knowledge_agent_partial",
                            description=(
                                f"Knowledge agent returned {len(agent_refs)} result(s); "
                                "supplementing with direct search."
                            ),
                        )
                    )
                logger.info("knowledge_agent_fallback", phase=agent_diag["failurePhase"], returned=len(agent_refs))
            except Exception as e:
                fallback_triggered = True
                agent_diag["failurePhase"] = "invocation"
                agent_diag["errorMessage"] = str(e)
                if isinstance(e, SearchServiceError):
                    agent_diag["statusCode"] = e.status
                    agent_diag["requestId"] = e.request_id
                status = f" status={e.status}" if isinstance(e, SearchServiceError) and e.status else ""
                agent_activity.append(
                    ActivityStep(
                        type="knowledge_agent_error",
                        description=f"Knowledge agent failed [correlation={correlation_id}{status}]: {e}",
                    )
                )
                logger.warning("knowledge_agent_failed", correlation_id=correlation_id, error=str(e))

        if features.multi_index_federation and self._federated is not None:
            try:
                federated = await self._federated.search(query, top=top, filter=filter)
                if federated.references:
                    diagnostics["federation"] = federated.index_breakdown
                    return RetrievalOutcome(
                        references=merge_references(agent_refs, federated.references, top),
                        activity=[
                            *agent_activity,
                            ActivityStep(
                                type="federated_search",
                                description=f"Federated search returned {len(federated.references)} result(s).",
                            ),
                        ],
                        mode="federated",
                        threshold_used=settings.reranker_threshold,
                        threshold_history=thresholds,
                        fallback_triggered=fallback_triggered,
                        answer=agent_answer,
                        diagnostics=diagnostics,
                    )
            except Exception as e:
                logger.warning("federated_search_failed", correlation_id=correlation_id, error=str(e))

        if features.adaptive_retrieval and self._adaptive is not None:
            adaptive = await self._adaptive.retrieve(query, top=top, filter=filter)
            refs = merge_references(agent_refs, adaptive.references, top)
            diagnostics["adaptive"] = adaptive.stats(self._adaptive.min_coverage, self._adaptive.min_diversity)
            activity = [
                *agent_activity,
                ActivityStep(
                    type="adaptive_search",
                    description=(
                        f"Adaptive retrieval returned {len(adaptive.references)} result(s) "
                        f"(coverage={adaptive.quality.coverage:.2f}, diversity={adaptive.quality.diversity:.2f})."
                    ),
                ),
            ]
            if adaptive.reformulations:
                activity.append(
                    ActivityStep(
                        type="query_reformulation",
                        description=f"Reformulations: {' → '.join(adaptive.reformulations)}",
                    )
                )
            if len(refs) >= min_docs:
                return RetrievalOutcome(
                    references=refs,
                    activity=activity,
                    mode="adaptive",
                    threshold_used=settings.reranker_threshold,
                    threshold_history=thresholds,
                    fallback_triggered=fallback_triggered,
                    answer=agent_answer,
                    diagnostics=diagnostics,
                )
            return await self._with_fallback(
                query, top, filter, agent_refs, activity, thresholds, agent_answer, diagnostics, correlation_id
            )

        refs = await self._search.hybrid_search(
            query, top=top, filter=filter, threshold=settings.reranker_threshold
        )
        thresholds.append(settings.reranker_threshold)
        activity = [
            *agent_activity,
            ActivityStep(
                type="search",
                description=(
                    f"[correlation={correlation_id}] Hybrid semantic search returned {len(refs)} result(s) "
                    f"(threshold: {settings.reranker_threshold})."
                ),
            ),
        ]
        refs = merge_references(agent_refs, refs, top)
        if len(refs) >= min_docs:
            return RetrievalOutcome(
                references=refs,
                activity=activity,
                mode="direct",
                threshold_used=settings.reranker_threshold,
                threshold_history=thresholds,
                fallback_triggered=fallback_triggered,
                answer=agent_answer,
                diagnostics=diagnostics,
            )

        logger.info("retrieval_insufficient", results=len(refs), min_docs=min_docs)
        return await self._with_fallback(
            query, top, filter, agent_refs, activity, thresholds, agent_answer, diagnostics, correlation_id
        )

    async def _with_fallback(
        self,
        query: str,
        top: int,
        filter: str | None,
        agent_refs: list[Reference],
        activity: list[ActivityStep],
        thresholds: list[float],
        agent_answer: str | None,
        diagnostics: dict,
        correlation_id: str,
    ) -> RetrievalOutcome:
        outcome = await self._fallback.run(query, top=top, filter=filter, correlation_id=correlation_id)
        if outcome.vector_only:
            for ref in outcome.references:
                ref.source_type = "fallback_vector"
        return RetrievalOutcome(
            references=merge_references(agent_refs, outcome.references, top),
            activity=[*activity, *outcome.activity],
            mode="fallback_vector" if outcome.vector_only else "fallback",
            threshold_used=outcome.threshold,
            threshold_history=[*thresholds, *outcome.thresholds],
            fallback_attempts=outcome.attempts,
            fallback_triggered=True,
            answer=agent_answer,
            diagnostics=diagnostics,
        )
