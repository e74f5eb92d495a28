"""Service banner and health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from grounded_chat.api.dependencies import get_settings
from grounded_chat.config.settings import Settings
from grounded_chat.models.schemas import HealthResponse

router = APIRouter()


@router.get("/")
async def root() -> dict:
    return {"service": "grounded-chat", "status": "ok", "endpoints": ["/chat", "/chat/stream", "/health"]}


@router.get("/health", response_model=HealthResponse)
async def health(settings: Settings = Depends(get_settings)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        search_configured=bool(settings.search_api_key or settings.auth_client_id),
        web_search_configured=bool(settings.web_search_api_key and settings.web_search_engine_id),
        llm_provider=settings.llm_provider,
    )
