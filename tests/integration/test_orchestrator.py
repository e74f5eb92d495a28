"""End-to-end turn tests: real pipeline components over scripted collaborators."""

import asyncio
from types import SimpleNamespace

import pytest

from grounded_chat.config.constants import NO_EVIDENCE_ANSWER
from grounded_chat.context.compaction import HistoryCompactor
from grounded_chat.context.summary_selector import SummarySelector
from grounded_chat.generation.synthesizer import AnswerSynthesizer
from grounded_chat.models.domain import AgentMessage
from grounded_chat.observability.telemetry import TelemetryLog
from grounded_chat.pipeline.orchestrator import ChatOrchestrator, TurnRequest
from grounded_chat.planning.planner import Planner
from grounded_chat.planning.router import IntentRouter
from grounded_chat.retrieval.dispatcher import Dispatcher
from grounded_chat.retrieval.retriever import Retriever
from grounded_chat.storage.sqlite_session_store import SQLiteSessionStore
from grounded_chat.verification.critic import Critic
from grounded_chat.verification.quality_gate import QualityLoop

from conftest import FakeEmbedder, FakeLLM, FakeSearch

ROUTE = {"intent": "factual_lookup", "confidence": 0.9, "reasoning": "Asks for a fact"}
PLAN = {"confidence": 0.9, "steps": [{"action": "vector_search", "query": "night lights", "k": 2}]}
GOOD = {"grounded": True, "coverage": 0.95, "issues": [], "action": "accept"}
ANSWER = "Cities glow brightly at night across the whole world [1]. Rural areas stay dark [2]."


class RecallingMemoryStore:
    def __init__(self, *texts):
        self.texts = texts
        self.queries = []

    async def recall(self, query, k=None, min_similarity=None):
        self.queries.append(query)
        return [SimpleNamespace(text=text) for text in self.texts]


class RecordingTraceStore:
    def __init__(self):
        self.saved = []

    async def save_trace(self, trace):
        self.saved.append(trace)


@pytest.fixture
async def session_store(settings):
    store = SQLiteSessionStore(settings.sqlite_session_db_path)
    await store.initialize()
    return store


@pytest.fixture
def search(make_reference):
    return FakeSearch([make_reference("a", score=3.0), make_reference("b", score=2.5)])


def build(
    llm, settings, budgeter, search, session_store=None, trace_store=None, telemetry=None, max_recent=12, memory_store=None
):
    return ChatOrchestrator(
        router=IntentRouter(llm, settings),
        compactor=HistoryCompactor(llm, max_recent_turns=max_recent),
        summary_selector=SummarySelector(FakeEmbedder()),
        budgeter=budgeter,
        planner=Planner(llm, default_k=settings.top_k),
        dispatcher=Dispatcher(Retriever(search, settings), budgeter, settings),
        quality_loop=QualityLoop(AnswerSynthesizer(llm), Critic(llm, threshold=settings.critic_threshold), settings),
        settings=settings,
        session_store=session_store,
        memory_store=memory_store,
        trace_store=trace_store,
        telemetry=telemetry,
    )


def _request(*contents, session_id="s-1", overrides=None):
    roles = ["user", "assistant"]
    messages = [AgentMessage(role=roles[i % 2], content=c) for i, c in enumerate(contents)]
    return TurnRequest(messages=messages, session_id=session_id, feature_overrides=overrides)


@pytest.mark.asyncio
async def test_sync_turn_returns_grounded_answer(settings, budgeter, search, session_store):
    llm = FakeLLM(
        structured={"IntentResponse": ROUTE, "PlanResponse": PLAN, "CriticResponse": GOOD},
        texts=[ANSWER],
    )
    traces = RecordingTraceStore()
    telemetry = TelemetryLog()
    orchestrator = build(llm, settings, budgeter, search, session_store, traces, telemetry)

    result = await orchestrator.run_turn(_request("How bright are cities at night?"))
    await asyncio.sleep(0)

    assert result.answer == ANSWER
    assert [c["number"] for c in result.citations] == [1, 2]
    assert result.metadata["route"]["intent"] == "factual_lookup"
    assert result.metadata["plan"]["steps"][0]["action"] == "vector_search"
    assert result.metadata["critic_report"]["action"] == "accept"
    assert result.metadata["critic_iterations"] == 1
    assert result.metadata["refused"] is False
    assert result.metadata["retrieval"]["attempted"] == "direct"
    assert search.hybrid_calls[0]["query"] == "night lights"

    session = await session_store.get_session("s-1")
    assert session["messages"][-1] == {"role": "assistant", "content": ANSWER}
    assert traces.saved[0].trace_id == result.metadata["trace_id"]
    assert [s["name"] for s in traces.saved[0].spans] == ["route", "context.compact", "plan", "tools.dispatch", "synthesis"]
    assert telemetry.turns()[0]["traceId"] == result.metadata["trace_id"]


@pytest.mark.asyncio
async def test_stream_turn_event_order(settings, budgeter, search):
    llm = FakeLLM(
        structured={"IntentResponse": ROUTE, "PlanResponse": PLAN, "CriticResponse": GOOD},
        streams=[
            [
                {"type": "response.created", "response": {"id": "resp_7"}},
                {"type": "response.output_text.delta", "delta": "Cities glow brightly at night across the whole world [1]. "},
                {"type": "response.output_text.delta", "delta": "Rural areas stay dark [2]."},
            ]
        ],
    )
    orchestrator = build(llm, settings, budgeter, search)

    events = [item async for item in orchestrator.stream_turn(_request("How bright are cities at night?"))]
    names = [name for name, _ in events]

    assert names[-1] == "done"
    order = ["route", "context", "plan", "tool", "citations", "token", "critique", "complete", "telemetry", "trace"]
    positions = [names.index(name) for name in order]
    assert positions == sorted(positions)
    tokens = "".join(data["content"] for name, data in events if name == "token")
    assert tokens == ANSWER
    complete = next(data for name, data in events if name == "complete")
    assert complete == {"answer": ANSWER, "responseId": "resp_7"}


@pytest.mark.asyncio
async def test_stream_turn_reports_errors_as_events(settings, budgeter, search):
    settings.chat_model = " "
    llm = FakeLLM(structured={"IntentResponse": ROUTE})
    orchestrator = build(llm, settings, budgeter, search)

    events = [item async for item in orchestrator.stream_turn(_request("Hi?"))]

    assert events[-1][0] == "error"
    assert events[-1][1]["type"] == "ConfigurationError"


@pytest.mark.asyncio
async def test_long_history_is_compacted_into_session_memory(settings, budgeter, search, session_store):
    llm = FakeLLM(
        structured={
            "IntentResponse": ROUTE,
            "PlanResponse": PLAN,
            "CriticResponse": GOOD,
            "SummaryResponse": {"bullets": ["User discussed maps"]},
            "SalienceResponse": {"notes": [{"fact": "User lives in Oslo", "topic": "location"}]},
        },
        texts=[ANSWER],
    )
    orchestrator = build(llm, settings, budgeter, search, session_store, max_recent=2)
    events = []
    request = _request("I live in Oslo", "Noted.", "Tell me about maps", "Sure.", "How bright are cities at night?")

    await orchestrator.run_turn(request, emit=lambda name, data: events.append((name, data)))

    context = next(data for name, data in events if name == "context")
    assert "- User lives in Oslo" in context["salience"]
    assert "- User discussed maps" in context["summary"]
    memory = await session_store.load("s-1")
    assert memory.summary_bullets == ["User discussed maps"]
    assert memory.salience[0].fact == "User lives in Oslo"
    assert memory.salience[0].last_seen_turn == 3


@pytest.mark.asyncio
async def test_feature_overrides_are_persisted(settings, budgeter, search, session_store):
    llm = FakeLLM(structured={"PlanResponse": PLAN, "CriticResponse": GOOD}, texts=[ANSWER, ANSWER])
    orchestrator = build(llm, settings, budgeter, search, session_store)

    first = await orchestrator.run_turn(_request("How bright?", overrides={"ENABLE_INTENT_ROUTING": False, "BOGUS": True}))
    assert first.metadata["features"]["ENABLE_INTENT_ROUTING"] is False
    assert first.metadata["route"]["intent"] == "research"
    assert llm.calls["IntentResponse"] == 0
    assert await session_store.get_feature_overrides("s-1") == {"ENABLE_INTENT_ROUTING": False}

    second = await orchestrator.run_turn(_request("How bright again?"))
    assert second.metadata["features"]["ENABLE_INTENT_ROUTING"] is False
    assert llm.calls["IntentResponse"] == 0


@pytest.mark.asyncio
async def test_no_documents_yields_no_evidence_answer_without_critic(settings, budgeter):
    llm = FakeLLM(structured={"IntentResponse": ROUTE, "PlanResponse": PLAN, "CriticResponse": GOOD})
    orchestrator = build(llm, settings, budgeter, FakeSearch([]))

    result = await orchestrator.run_turn(_request("How bright are cities at night?"))

    assert result.answer == NO_EVIDENCE_ANSWER
    assert result.metadata["retrieval"]["fallbackReason"] == "insufficient_documents"
    assert result.metadata["critic_report"] is None
    assert llm.calls["CriticResponse"] == 0


@pytest.mark.asyncio
async def test_recalled_memory_and_history_reach_plan_and_answer_prompts(settings, budgeter, search, session_store):
    await session_store.upsert("s-1", 2, ["User compared Oslo and Rome skies"], [])
    llm = FakeLLM(
        structured={"IntentResponse": ROUTE, "PlanResponse": PLAN, "CriticResponse": GOOD},
        texts=[ANSWER],
    )
    memory = RecallingMemoryStore("User prefers metric units")
    orchestrator = build(llm, settings, budgeter, search, session_store, memory_store=memory)
    request = _request(
        "Earlier I asked about Oslo", "Yes.", "How bright are cities at night?", overrides={"ENABLE_SEMANTIC_MEMORY": True}
    )

    await orchestrator.run_turn(request)

    assert memory.queries == ["How bright are cities at night?"]
    plan_prompt = next(p for p in llm.prompts if p.startswith("Plan the retrieval"))
    answer_prompt = next(p for p in llm.prompts if "Conversation context (not citable):" in p)
    for prompt in (plan_prompt, answer_prompt):
        assert "- [Memory] User prefers metric units" in prompt
        assert "- User compared Oslo and Rome skies" in prompt
        assert "user: Earlier I asked about Oslo" in prompt
    assert answer_prompt.startswith("Question: How bright are cities at night?")
