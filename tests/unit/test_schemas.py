"""Tests for Pydantic schemas, tracing and telemetry buffers."""

import pytest
from pydantic import ValidationError

from grounded_chat.models.schemas import ChatMessage, ChatRequest, ChatResponse, HealthResponse
from grounded_chat.observability.telemetry import OperationRecord, TelemetryLog
from grounded_chat.observability.tracing import TraceContext


def test_chat_request_aliases():
    req = ChatRequest.model_validate(
        {
            "messages": [{"role": "user", "content": "Hi"}],
            "sessionId": "s-1",
            "previousResponseId": "resp_1",
            "feature_overrides": {"ENABLE_LAZY_RETRIEVAL": True},
        }
    )
    assert req.session_id == "s-1"
    assert req.previous_response_id == "resp_1"
    assert req.feature_overrides == {"ENABLE_LAZY_RETRIEVAL": True}


def test_chat_request_by_field_name():
    req = ChatRequest(messages=[ChatMessage(role="user", content="Hi")], session_id="s-2")
    assert req.session_id == "s-2"
    assert req.previous_response_id is None


def test_chat_message_rejects_unknown_role():
    with pytest.raises(ValidationError):
        ChatMessage(role="tool", content="x")


def test_chat_response_defaults():
    resp = ChatResponse(answer="A [1]", citations=[{"number": 1}], activity=[])
    data = resp.model_dump()
    assert data["metadata"] == {}
    assert data["citations"][0]["number"] == 1


def test_health_response():
    health = HealthResponse(status="ok", search_configured=True, web_search_configured=False, llm_provider="openai")
    assert health.model_dump()["llm_provider"] == "openai"


def test_trace_spans_record_errors():
    ctx = TraceContext(session_id="s-1")
    with ctx.span("plan", steps=2) as span:
        span.set(confidence=0.7)
    with pytest.raises(RuntimeError):
        with ctx.span("dispatch"):
            raise RuntimeError("search down")

    trace = ctx.to_trace("q", "a", False, "research", {}, {})
    assert [s["name"] for s in trace.spans] == ["plan", "dispatch"]
    assert trace.spans[0]["steps"] == 2
    assert trace.spans[0]["confidence"] == 0.7
    assert trace.spans[1]["error"] == "search down"
    assert trace.session_id == "s-1"
    assert trace.latency_ms >= 0


def test_telemetry_ring_buffers():
    log = TelemetryLog(max_operations=2, max_turns=1)
    for i in range(3):
        log.record_operation(OperationRecord("search", i + 1, 1.0, i != 1, None if i != 1 else "boom"))
    log.record_turn({"id": 1})
    log.record_turn({"id": 2})
    snapshot = log.snapshot()
    assert snapshot["operation_count"] == 2
    assert snapshot["failure_count"] == 1
    assert snapshot["turns"] == [{"id": 2}]
    log.clear()
    assert log.snapshot()["operation_count"] == 0
