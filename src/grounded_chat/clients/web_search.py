"""Google Custom Search client returning ranked web results."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from uuid import uuid4

import httpx

from grounded_chat.clients.resilience import RetryPolicy, with_retry
from grounded_chat.config.settings import Settings
from grounded_chat.exceptions import ConfigurationError, WebSearchError
from grounded_chat.models.domain import WebResult
from grounded_chat.observability.logger import get_logger
from grounded_chat.observability.telemetry import TelemetryLog

logger = get_logger("web_search")

GOOGLE_MAX_RESULTS = 10
WEB_RETRY_POLICY = RetryPolicy(max_retries=3, timeout_ms=10000, retryable_markers=("429", "503", "ECONN"))


def build_result_id(item: dict) -> str:
    cache_id = item.get("cacheId")
    if isinstance(cache_id, str) and cache_id:
        return f"google_{cache_id}"
    link = item.get("link")
    if isinstance(link, str) and link:
        encoded = base64.urlsafe_b64encode(link.encode("utf-8")).decode("ascii").rstrip("=")
        return f"web_{encoded}"
    return str(uuid4())


class WebSearchClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: Settings,
        telemetry: TelemetryLog | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._http = http
        self._settings = settings
        self._telemetry = telemetry
        self._retry = retry_policy or WEB_RETRY_POLICY

    @property
    def configured(self) -> bool:
        return bool(self._settings.web_search_api_key and self._settings.web_search_engine_id)

    def _params(self, query: str, count: int) -> dict:
        params = {
            "key": self._settings.web_search_api_key,
            "cx": self._settings.web_search_engine_id,
            "q": query,
            "num": str(min(count, GOOGLE_MAX_RESULTS)),
            "safe": self._settings.web_safe_mode or "off",
        }
        if self._settings.web_default_recency:
            params["dateRestrict"] = self._settings.web_default_recency
        return params

    async def search(self, query: str, count: int | None = None) -> list[WebResult]:
        if not self._settings.web_search_api_key:
            raise ConfigurationError("Web search API key not configured. Set RAG_WEB_SEARCH_API_KEY.")
        if not self._settings.web_search_engine_id:
            raise ConfigurationError("Web search engine id not configured. Set RAG_WEB_SEARCH_ENGINE_ID.")

        limit = self._settings.web_results_max
        effective = min(count if count is not None else limit, limit)
        params = self._params(query, effective)

        async def call() -> dict:
            response = await self._http.get(self._settings.web_search_endpoint, params=params)
            if response.status_code >= 400:
                try:
                    message = response.json().get("error", {}).get("message")
                except ValueError:
                    message = None
                raise WebSearchError(
                    f"Web search error {response.status_code}: {message or response.reason_phrase}"
                )
            return response.json()

        data = await with_retry("web-search", call, self._retry, self._telemetry)

        fetched_at = datetime.now(timezone.utc).isoformat()
        full = self._settings.web_search_mode == "full"
        results = [
            WebResult(
                id=build_result_id(item),
                title=item.get("title") or "",
                snippet=item.get("snippet") or "",
                url=item.get("link") or "",
                body=(item.get("snippet") or "") if full else None,
                rank=i + 1,
                fetched_at=fetched_at,
            )
            for i, item in enumerate(data.get("items") or [])
        ]
        logger.info("web_search_completed", results=len(results))
        return results
