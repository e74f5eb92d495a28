"""Turn orchestrator: route, compact, plan, dispatch, critique, synthesize, commit."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field

from grounded_chat.config.features import FeatureResolution, resolve_feature_gates
from grounded_chat.config.settings import Settings
from grounded_chat.context.budget import ContextBudgeter
from grounded_chat.context.compaction import CompactedContext, HistoryCompactor
from grounded_chat.context.summary_selector import SummarySelector
from grounded_chat.exceptions import GroundedChatError
from grounded_chat.generation.prompt_templates import format_context_sections
from grounded_chat.memory.citation_tracker import track_citation_usage
from grounded_chat.models.domain import (
    AgentMessage,
    SalienceNote,
    SessionMemory,
    SummaryBullet,
    SummarySelectionStats,
)
from grounded_chat.observability.logger import get_logger
from grounded_chat.observability.metrics import log_critic_metrics, log_latency, log_retrieval_metrics
from grounded_chat.observability.telemetry import TelemetryLog
from grounded_chat.observability.tracing import TraceContext
from grounded_chat.planning.planner import Planner
from grounded_chat.planning.router import IntentRouter
from grounded_chat.protocols.memory import SemanticMemoryStore, SessionMemoryStore
from grounded_chat.retrieval.dispatcher import Dispatcher, latest_user_query
from grounded_chat.storage.sqlite_session_store import merge_salience
from grounded_chat.verification.quality_gate import QualityLoop

logger = get_logger("orchestrator")

Emit = Callable[[str, dict], None]


@dataclass
class TurnRequest:
    messages: list[AgentMessage]
    session_id: str
    feature_overrides: dict | None = None
    previous_response_id: str | None = None


@dataclass
class TurnResult:
    answer: str
    citations: list[dict]
    activity: list[dict]
    metadata: dict = field(default_factory=dict)


def build_context_sections(
    compacted: CompactedContext,
    summary: list[SummaryBullet],
    salience: list[SalienceNote],
    recalled: list[str],
) -> dict[str, str]:
    history = "\n".join(f"{m.role}: {m.content}" for m in compacted.latest)
    summary_text = "\n".join(f"- {b.text}" for b in summary)
    salience_lines = [f"- {note.fact}" for note in salience]
    salience_lines.extend(f"- [Memory] {text}" for text in recalled)
    return {"history": history, "summary": summary_text, "salience": "\n".join(salience_lines)}


def selection_to_dict(stats: SummarySelectionStats) -> dict:
    return {
        "mode": stats.mode,
        "totalCandidates": stats.total_candidates,
        "selectedCount": stats.selected_count,
        "discardedCount": stats.discarded_count,
        "usedFallback": stats.used_fallback,
        "maxScore": stats.max_score,
        "minScore": stats.min_score,
        "meanScore": stats.mean_score,
        "error": stats.error,
    }


class ChatOrchestrator:
    def __init__(
        self,
        router: IntentRouter,
        compactor: HistoryCompactor,
        summary_selector: SummarySelector,
        budgeter: ContextBudgeter,
        planner: Planner,
        dispatcher: Dispatcher,
        quality_loop: QualityLoop,
        settings: Settings,
        session_store: SessionMemoryStore | None = None,
        memory_store: SemanticMemoryStore | None = None,
        trace_store=None,
        telemetry: TelemetryLog | None = None,
    ) -> None:
        self._router = router
        self._compactor = compactor
        self._selector = summary_selector
        self._budgeter = budgeter
        self._planner = planner
        self._dispatcher = dispatcher
        self._quality = quality_loop
        self._settings = settings
        self._session_store = session_store
        self._memory_store = memory_store
        self._trace_store = trace_store
        self._telemetry = telemetry
        self._background: set[asyncio.Task] = set()

    async def _resolve_features(self, request: TurnRequest) -> FeatureResolution:
        persisted = None
        if self._session_store is not None:
            try:
                persisted = await self._session_store.get_feature_overrides(request.session_id)
            except Exception as e:
                logger.warning("feature_overrides_load_failed", error=str(e))
        return resolve_feature_gates(self._settings, request.feature_overrides, persisted)

    async def _load_memory(self, session_id: str, turn: int) -> SessionMemory:
        if self._session_store is None:
            return SessionMemory(summary_bullets=[], salience=[])
        try:
            return await self._session_store.load(session_id, turn)
        except Exception as e:
            logger.warning("session_memory_load_failed", error=str(e))
            return SessionMemory(summary_bullets=[], salience=[])

    async def _recall(self, question: str, enabled: bool) -> list[str]:
        if not enabled or self._memory_store is None or not question:
            return []
        try:
            memories = await self._memory_store.recall(
                question,
                k=self._settings.semantic_memory_recall_k,
                min_similarity=self._settings.semantic_memory_min_similarity,
            )
        except Exception as e:
            logger.warning("semantic_recall_failed", error=str(e))
            return []
        return [m.text for m in memories]

    async def run_turn(self, request: TurnRequest, emit: Emit | None = None, stream: bool = False) -> TurnResult:
        emit = emit or (lambda event, data: None)
        settings = self._settings
        messages = request.messages
        question = latest_user_query(messages)
        turn = len(messages)
        trace = TraceContext(session_id=request.session_id)

        emit("status", {"stage": "context"})
        resolution = await self._resolve_features(request)
        features = resolution.gates

        with trace.span("route") as span:
            route = await self._router.classify(question, messages[:-1], enabled=features.intent_routing)
            span.set(intent=route.intent, confidence=route.confidence)
        model = settings.resolve_model(route.profile.model)
        emit(
            "route",
            {
                "intent": route.intent,
                "confidence": route.confidence,
                "reasoning": route.reasoning,
                "model": model,
                "retrieverStrategy": route.profile.retriever_strategy,
                "maxTokens": route.profile.max_tokens,
            },
        )

        with trace.span("context.compact"):
            compacted = await self._compactor.compact(messages)
            memory = await self._load_memory(request.session_id, turn)
            candidates = [SummaryBullet(text=t) for t in [*memory.summary_bullets, *compacted.summary]]
            selected, selection = await self._selector.select(
                question, candidates, settings.context_max_summary_items, semantic=features.semantic_summary
            )
            salience = merge_salience(memory.salience, compacted.salience)[: settings.context_max_salience_items]
            recalled = await self._recall(question, features.semantic_memory)
            sections = self._budgeter.budget_sections(
                build_context_sections(compacted, selected, salience, recalled),
                {
                    "history": settings.context_history_token_cap,
                    "summary": settings.context_summary_token_cap,
                    "salience": settings.context_salience_token_cap,
                },
            )
        emit("context", sections)
        context_budget = {f"{name}_tokens": self._budgeter.estimate_tokens(text) for name, text in sections.items()}

        with trace.span("plan") as span:
            plan = await self._planner.plan(messages, compacted, sections)
            span.set(confidence=plan.confidence, steps=len(plan.steps))
        emit("plan", plan.to_dict())

        with trace.span("tools.dispatch") as span:
            dispatch = await self._dispatcher.dispatch(plan, messages, salience, features, emit)
            span.set(references=len(dispatch.references), web_results=len(dispatch.web_results))
        emit("tool", {"references": len(dispatch.references), "webResults": len(dispatch.web_results)})
        emit("citations", {"citations": dispatch.citations.to_list()})
        emit("activity", {"steps": [s.to_dict() for s in dispatch.activity]})
        if dispatch.web_context.text:
            context_budget["web_tokens"] = dispatch.web_context.tokens
        log_retrieval_metrics(trace.trace_id, dispatch.diagnostics, len(dispatch.web_results))

        previous_response_id = request.previous_response_id if features.response_storage else None
        with trace.span("synthesis") as span:
            outcome = await self._quality.run(
                question,
                dispatch,
                stream=stream,
                model=model,
                max_tokens=route.profile.max_tokens,
                prompt_hint=route.profile.prompt_hint,
                previous_response_id=previous_response_id,
                emit=emit,
                conversation_context=format_context_sections(sections),
            )
            span.set(attempts=outcome.attempts, refused=outcome.refused, rejected=outcome.rejected)
        log_critic_metrics(trace.trace_id, outcome.critic, outcome.attempts, outcome.refused)

        answer = outcome.answer
        response_id = outcome.synthesis.response_id if outcome.synthesis else None
        activity = [*dispatch.activity, *outcome.activity]
        citations = dispatch.citations.to_list()
        critic = outcome.critic.to_dict() if outcome.critic else None
        emit("complete", {"answer": answer, "responseId": response_id})

        await self._commit(request, compacted, answer, dispatch.references, question, resolution, outcome.refused)

        retrieval = dispatch.diagnostics.to_dict()
        telemetry = {
            "traceId": trace.trace_id,
            "sessionId": request.session_id,
            "route": {"intent": route.intent, "confidence": route.confidence, "model": model},
            "plan": plan.to_dict(),
            "contextBudget": context_budget,
            "summarySelection": selection_to_dict(selection),
            "critic": critic,
            "criticIterations": outcome.attempts,
            "retrieval": retrieval,
            "features": {"resolved": resolution.resolved, "sources": resolution.sources},
            "responseId": response_id,
        }
        if dispatch.web_context.text:
            telemetry["webContext"] = dispatch.web_context.to_event()
        if dispatch.adaptive_stats:
            telemetry["adaptiveRetrieval"] = dispatch.adaptive_stats
        if dispatch.summary_tokens is not None:
            telemetry["lazySummaryTokens"] = dispatch.summary_tokens
        if outcome.hydrated:
            telemetry["lazyHydrations"] = outcome.hydrated
        if self._telemetry is not None:
            self._telemetry.record_turn(telemetry)
        emit("telemetry", telemetry)

        session_trace = {
            "sessionId": request.session_id,
            "mode": "stream" if stream else "sync",
            "startedAt": trace.started_at.isoformat(),
            "latencyMs": round(trace.elapsed_ms, 2),
            "plan": plan.to_dict(),
            "planConfidence": plan.confidence,
            "contextBudget": context_budget,
            "retrieval": retrieval,
            "critic": critic,
            "critiqueHistory": outcome.history,
            "refused": outcome.refused,
        }
        emit("trace", {"session": session_trace})
        self._save_trace(trace, question, answer, outcome.refused or outcome.rejected, route.intent, critic, retrieval)
        log_latency(trace.trace_id, "turn", trace.elapsed_ms)
        emit("done", {"status": "complete"})

        metadata = {
            "trace_id": trace.trace_id,
            "session_id": request.session_id,
            "plan": plan.to_dict(),
            "route": {"intent": route.intent, "confidence": route.confidence, "reasoning": route.reasoning},
            "context_budget": context_budget,
            "critic_report": critic,
            "critic_iterations": outcome.attempts,
            "critique_history": outcome.history,
            "retrieval": retrieval,
            "retrieval_mode": dispatch.mode,
            "refused": outcome.refused,
            "citation_rejected": outcome.rejected,
            "response_id": response_id,
            "features": resolution.resolved,
        }
        if dispatch.web_context.text:
            metadata["web_context"] = {**dispatch.web_context.to_event(), "text": dispatch.web_context.text}
        if dispatch.decomposition is not None:
            metadata["decomposition"] = {
                "subQueries": [sq.query for sq in dispatch.decomposition.sub_queries],
                "synthesisPrompt": dispatch.decomposition.synthesis_prompt,
            }

        logger.info(
            "turn_completed",
            trace_id=trace.trace_id,
            intent=route.intent,
            references=len(dispatch.references),
            attempts=outcome.attempts,
            refused=outcome.refused,
            latency_ms=round(trace.elapsed_ms, 2),
        )
        return TurnResult(
            answer=answer,
            citations=citations,
            activity=[s.to_dict() for s in activity],
            metadata=metadata,
        )

    async def _commit(
        self,
        request: TurnRequest,
        compacted: CompactedContext,
        answer: str,
        references: list,
        question: str,
        resolution: FeatureResolution,
        refused: bool,
    ) -> None:
        """End-of-turn memory writes; each one is independent and non-fatal."""
        session_id = request.session_id
        turn = len(request.messages)
        if self._session_store is not None:
            try:
                await self._session_store.upsert(session_id, turn, compacted.summary, compacted.salience)
                await self._session_store.save_turn(
                    session_id, [*request.messages, AgentMessage(role="assistant", content=answer)]
                )
                if resolution.overrides:
                    await self._session_store.save_feature_overrides(
                        session_id, {**(resolution.persisted or {}), **resolution.overrides}
                    )
            except Exception as e:
                logger.warning("session_commit_failed", error=str(e))

        if resolution.gates.semantic_memory and self._memory_store is not None and not refused and references:
            try:
                await track_citation_usage(answer, references, question, session_id, self._memory_store)
            except Exception as e:
                logger.warning("citation_tracking_failed", error=str(e))

    def _save_trace(self, trace: TraceContext, question, answer, refused, intent, critic, retrieval) -> None:
        if self._trace_store is None:
            return
        record = trace.to_trace(question, answer, refused, intent, critic or {}, retrieval)
        task = asyncio.create_task(self._trace_store.save_trace(record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def stream_turn(self, request: TurnRequest) -> AsyncGenerator[tuple[str, dict], None]:
        """Run a streamed turn, yielding (event, data) pairs as they are emitted."""
        queue: asyncio.Queue = asyncio.Queue()
        finished = object()

        async def runner() -> None:
            try:
                await self.run_turn(request, emit=lambda event, data: queue.put_nowait((event, data)), stream=True)
            except GroundedChatError as e:
                logger.error("turn_failed", error=str(e), error_type=type(e).__name__)
                queue.put_nowait(("error", {"message": str(e), "type": type(e).__name__}))
            except Exception as e:
                logger.error("turn_crashed", error=str(e))
                queue.put_nowait(("error", {"message": "Internal error", "type": type(e).__name__}))
            finally:
                queue.put_nowait(finished)

        task = asyncio.create_task(runner())
        try:
            while True:
                item = await queue.get()
                if item is finished:
                    break
                yield item
        finally:
            if not task.done():
                task.cancel()
