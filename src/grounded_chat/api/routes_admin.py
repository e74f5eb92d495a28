"""JWT-protected admin endpoints for telemetry and memory."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from grounded_chat.api.auth import verify_token
from grounded_chat.api.dependencies import get_memory_store, get_session_store, get_telemetry
from grounded_chat.observability.logger import get_logger
from grounded_chat.observability.telemetry import TelemetryLog
from grounded_chat.storage.sqlite_semantic_memory import SQLiteSemanticMemoryStore
from grounded_chat.storage.sqlite_session_store import SQLiteSessionStore

logger = get_logger("routes_admin")

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(verify_token)])


@router.get("/telemetry")
async def telemetry_snapshot(telemetry: TelemetryLog = Depends(get_telemetry)) -> dict:
    return telemetry.snapshot()


@router.post("/telemetry/clear")
async def clear_telemetry(telemetry: TelemetryLog = Depends(get_telemetry)) -> dict:
    telemetry.clear()
    logger.info("telemetry_cleared")
    return {"status": "cleared"}


@router.delete("/memory")
async def clear_memory(
    session_id: str | None = None,
    session_store: SQLiteSessionStore = Depends(get_session_store),
    memory_store: SQLiteSemanticMemoryStore = Depends(get_memory_store),
) -> dict:
    """Clear session memory (one session or all); semantic memory is wiped only on a full clear."""
    await session_store.clear(session_id)
    if session_id is None:
        await memory_store.clear()
    logger.info("memory_cleared", session_id=session_id)
    return {"status": "cleared", "session_id": session_id}
