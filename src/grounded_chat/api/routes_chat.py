"""Chat endpoints: synchronous JSON, SSE streaming and session lookup."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from grounded_chat.api.dependencies import get_orchestrator, get_session_store, get_settings, get_trace_store
from grounded_chat.api.rate_limiter import rate_limit
from grounded_chat.api.sanitize import derive_session_id, sanitize_messages
from grounded_chat.config.settings import Settings
from grounded_chat.exceptions import GroundedChatError
from grounded_chat.models.domain import Trace
from grounded_chat.models.schemas import ChatRequest, ChatResponse, SessionResponse
from grounded_chat.observability.logger import get_logger
from grounded_chat.pipeline.orchestrator import ChatOrchestrator, TurnRequest
from grounded_chat.storage.sqlite_session_store import SQLiteSessionStore
from grounded_chat.storage.sqlite_trace_store import SQLiteTraceStore

logger = get_logger("routes_chat")

router = APIRouter()

FINGERPRINT_HEADER = "X-Client-Fingerprint"


def build_turn_request(body: ChatRequest, request: Request, settings: Settings) -> TurnRequest:
    messages = sanitize_messages(body.messages, settings)
    session_id = derive_session_id(messages, body.session_id, request.headers.get(FINGERPRINT_HEADER))
    return TurnRequest(
        messages=messages,
        session_id=session_id,
        feature_overrides=body.feature_overrides,
        previous_response_id=body.previous_response_id,
    )


def sse_frame(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


def trace_to_dict(trace: Trace) -> dict:
    return {
        "trace_id": trace.trace_id,
        "question": trace.question,
        "timestamp": trace.timestamp.isoformat(),
        "latency_ms": trace.latency_ms,
        "answer": trace.answer,
        "refused": trace.refused,
        "intent": trace.intent,
        "critic": trace.critic,
        "retrieval": trace.retrieval,
        "spans": trace.spans,
    }


@router.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
    _client: str = Depends(rate_limit),
) -> ChatResponse:
    turn = build_turn_request(body, request, settings)
    try:
        result = await orchestrator.run_turn(turn)
    except GroundedChatError as e:
        logger.error("chat_failed", error=str(e), error_type=type(e).__name__)
        raise HTTPException(status_code=500, detail=str(e))
    return ChatResponse(
        answer=result.answer,
        citations=result.citations,
        activity=result.activity,
        metadata=result.metadata,
    )


@router.post("/chat/stream")
async def chat_stream(
    body: ChatRequest,
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
    _client: str = Depends(rate_limit),
):
    """Stream a turn via Server-Sent Events."""
    turn = build_turn_request(body, request, settings)

    async def event_generator():
        async for event_type, data in orchestrator.stream_turn(turn):
            yield sse_frame(event_type, data)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Session-ID": turn.session_id,
        },
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    session_store: SQLiteSessionStore = Depends(get_session_store),
    trace_store: SQLiteTraceStore = Depends(get_trace_store),
) -> SessionResponse:
    session = await session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    traces = await trace_store.get_recent_traces(limit=20, session_id=session_id)
    return SessionResponse(
        session_id=session_id,
        messages=session["messages"],
        updated_at=session.get("updated_at"),
        traces=[trace_to_dict(t) for t in traces],
    )
