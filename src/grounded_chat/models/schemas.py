"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage]
    session_id: str | None = Field(default=None, alias="sessionId")
    feature_overrides: dict[str, bool] | None = None
    previous_response_id: str | None = Field(default=None, alias="previousResponseId")


class ChatResponse(BaseModel):
    answer: str
    citations: list[dict]
    activity: list[dict]
    metadata: dict = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    search_configured: bool
    web_search_configured: bool
    llm_provider: str


class SessionResponse(BaseModel):
    session_id: str
    messages: list[dict]
    updated_at: str | None = None
    traces: list[dict] = Field(default_factory=list)
