"""Tests for plan dispatch and evidence assembly."""

import pytest

from grounded_chat.config.features import FeatureGates
from grounded_chat.exceptions import DecompositionCycleError, WebSearchError
from grounded_chat.models.domain import AgentMessage, Plan, PlanStep, SalienceNote
from grounded_chat.query.decomposition import QueryDecomposer
from grounded_chat.retrieval.dispatcher import Dispatcher
from grounded_chat.retrieval.lazy import FullContentCache, LazyRetriever
from grounded_chat.retrieval.retriever import Retriever

from conftest import FakeLLM, FakeSearch, FakeWebSearch

MESSAGES = [AgentMessage(role="user", content="How bright are cities at night?")]


def _plan(confidence, *actions):
    return Plan(confidence=confidence, steps=tuple(PlanStep(action=a) for a in actions))


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event, data):
        self.events.append((event, data))

    def names(self):
        return [e for e, _ in self.events]


@pytest.fixture
def search(make_reference):
    return FakeSearch([make_reference("a", score=3.0), make_reference("b", score=2.5)])


@pytest.fixture
def web(make_web_result):
    return FakeWebSearch([make_web_result("w1"), make_web_result("w2", rank=2)])


@pytest.mark.asyncio
async def test_answer_only_plan_skips_retrieval(settings, budgeter, search, web):
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, web_search=web)
    result = await dispatcher.dispatch(_plan(0.9, "answer"), MESSAGES)
    assert result.references == []
    assert result.web_results == []
    assert result.diagnostics.attempted == "none"
    assert result.context_text == ""
    assert search.hybrid_calls == []
    assert web.calls == []


@pytest.mark.asyncio
async def test_low_confidence_escalates_to_dual_retrieval(settings, budgeter, search, web):
    emit = Recorder()
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, web_search=web)
    salience = [SalienceNote(fact="user lives in Oslo", last_seen_turn=2)]
    result = await dispatcher.dispatch(_plan(0.3, "answer"), MESSAGES, salience=salience, emit=emit)

    assert result.escalated is True
    assert ("status", {"stage": "confidence_escalation", "confidence": 0.3, "threshold": 0.45}) in emit.events
    assert [r.id for r in result.references] == ["a", "b"]
    assert [w.id for w in result.web_results] == ["w1", "w2"]
    assert web.calls == [("How bright are cities at night?", settings.web_results_max)]
    assert result.citations.numbers_for("web") == [3, 4]
    assert "[1] Evidence about a" in result.context_text
    assert "[3] Web w1" in result.context_text
    assert "[Salience 1] user lives in Oslo" in result.context_text
    assert result.context_text.rstrip().endswith("[4] Web w2 (https://example.com/w2)")
    assert result.activity[0].type == "confidence_escalation"
    assert result.diagnostics.attempted == "direct"
    assert result.diagnostics.fallback_reason is None


@pytest.mark.asyncio
async def test_plan_query_and_k_are_used(settings, budgeter, search):
    plan = Plan(confidence=0.9, steps=(PlanStep(action="vector_search", query="custom query", k=1),))
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings)
    result = await dispatcher.dispatch(plan, MESSAGES)
    assert search.hybrid_calls[0]["query"] == "custom query"
    assert search.hybrid_calls[0]["top"] == 1
    assert any(a.type == "retrieval_underflow" for a in result.activity)


@pytest.mark.asyncio
async def test_web_failure_is_recorded(settings, budgeter, search):
    web = FakeWebSearch(error=WebSearchError("quota"))
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, web_search=web)
    result = await dispatcher.dispatch(_plan(0.9, "both"), MESSAGES)
    assert result.web_results == []
    assert any(a.type == "web_search_error" for a in result.activity)
    assert len(result.references) == 2


@pytest.mark.asyncio
async def test_web_reranking_fuses_sources(settings, budgeter, search, web):
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, web_search=web)
    result = await dispatcher.dispatch(_plan(0.9, "both"), MESSAGES, features=FeatureGates(web_reranking=True))
    assert all("rrfScore" in r.metadata for r in result.references)
    assert [w.rank for w in result.web_results] == [1, 2]
    assert all(w.relevance is not None for w in result.web_results)
    assert any(a.type == "reranking" for a in result.activity)


@pytest.mark.asyncio
async def test_lazy_mode_returns_summaries(settings, budgeter, search):
    lazy = LazyRetriever(search, FullContentCache(), budgeter, "idx", summary_max_chars=10)
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, lazy_retriever=lazy)
    result = await dispatcher.dispatch(
        _plan(0.9, "vector_search"), MESSAGES, features=FeatureGates(lazy_retrieval=True)
    )
    assert result.mode == "lazy"
    assert all(r.is_summary_only for r in result.references)
    assert result.summary_tokens > 0
    assert result.diagnostics.attempted == "lazy"


@pytest.mark.asyncio
async def test_zero_documents_reports_fallback(settings, budgeter):
    dispatcher = Dispatcher(Retriever(FakeSearch([]), settings), budgeter, settings)
    result = await dispatcher.dispatch(_plan(0.9, "vector_search"), MESSAGES)
    assert result.references == []
    assert result.source == "fallback_vector"
    assert result.diagnostics.fallback_reason == "insufficient_documents"
    assert result.diagnostics.succeeded is False
    assert result.diagnostics.retry_count == 3
    assert result.context_text == ""


@pytest.mark.asyncio
async def test_decomposition_runs_sub_queries(settings, budgeter, search):
    llm = FakeLLM(
        structured={
            "ComplexityResponse": {"complexity": 0.9, "needs_decomposition": True, "reasoning": "two parts"},
            "DecompositionResponse": {
                "sub_queries": [{"id": 0, "query": "city brightness"}, {"id": 1, "query": "rural", "dependencies": [0]}],
                "synthesis_prompt": "compare",
            },
        }
    )
    emit = Recorder()
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, decomposer=QueryDecomposer(llm))
    result = await dispatcher.dispatch(
        _plan(0.9, "vector_search"), MESSAGES, features=FeatureGates(query_decomposition=True), emit=emit
    )
    assert "complexity" in emit.names()
    assert "decomposition" in emit.names()
    assert result.decomposition is not None
    assert [r.id for r in result.references] == ["a", "b"]
    assert [c["query"] for c in search.hybrid_calls] == ["city brightness", "rural"]
    assert any(a.type == "decomposition" for a in result.activity)


@pytest.mark.asyncio
async def test_decomposition_cycle_raises_before_retrieval(settings, budgeter, search):
    llm = FakeLLM(
        structured={
            "ComplexityResponse": {"complexity": 0.9, "needs_decomposition": True},
            "DecompositionResponse": {
                "sub_queries": [
                    {"id": 0, "query": "a", "dependencies": [1]},
                    {"id": 1, "query": "b", "dependencies": [0]},
                ]
            },
        }
    )
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, decomposer=QueryDecomposer(llm))
    with pytest.raises(DecompositionCycleError):
        await dispatcher.dispatch(_plan(0.9, "vector_search"), MESSAGES, features=FeatureGates(query_decomposition=True))
    assert search.hybrid_calls == []


@pytest.mark.asyncio
async def test_simple_question_skips_decomposition(settings, budgeter, search):
    llm = FakeLLM(structured={"ComplexityResponse": {"complexity": 0.2, "needs_decomposition": False}})
    dispatcher = Dispatcher(Retriever(search, settings), budgeter, settings, decomposer=QueryDecomposer(llm))
    result = await dispatcher.dispatch(
        _plan(0.9, "vector_search"), MESSAGES, features=FeatureGates(query_decomposition=True)
    )
    assert result.decomposition is None
    assert result.complexity.complexity == 0.2
    assert llm.calls["DecompositionResponse"] == 0
