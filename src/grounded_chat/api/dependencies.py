"""FastAPI dependency injection helpers."""

from __future__ import annotations

from fastapi import Request

from grounded_chat.config.settings import Settings
from grounded_chat.observability.telemetry import TelemetryLog
from grounded_chat.pipeline.orchestrator import ChatOrchestrator
from grounded_chat.storage.sqlite_semantic_memory import SQLiteSemanticMemoryStore
from grounded_chat.storage.sqlite_session_store import SQLiteSessionStore
from grounded_chat.storage.sqlite_trace_store import SQLiteTraceStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_session_store(request: Request) -> SQLiteSessionStore:
    return request.app.state.session_store


def get_memory_store(request: Request) -> SQLiteSemanticMemoryStore:
    return request.app.state.memory_store


def get_trace_store(request: Request) -> SQLiteTraceStore:
    return request.app.state.trace_store


def get_telemetry(request: Request) -> TelemetryLog:
    return request.app.state.telemetry
