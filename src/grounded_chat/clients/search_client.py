"""HTTP client for the hybrid vector+keyword search service."""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import uuid4

import httpx

from grounded_chat.clients.resilience import RetryPolicy, with_retry
from grounded_chat.clients.token_cache import TokenCache, TokenRefresher
from grounded_chat.config.settings import Settings
from grounded_chat.exceptions import SearchServiceError
from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger
from grounded_chat.observability.telemetry import TelemetryLog
from grounded_chat.retrieval.thresholds import enforce_reranker_threshold

logger = get_logger("search_client")

SEARCH_TOKEN_KEY = "search"
DEFAULT_SELECT = ["id", "page_chunk", "page_number"]


@dataclass
class SearchResponse:
    results: list[dict]
    count: int | None = None
    facets: dict | None = None
    coverage: float | None = None


@dataclass
class SearchQuery:
    search: str
    top: int
    vector: list[float] | None = None
    vector_field: str = "page_embedding_text_3_large"
    filter: str | None = None
    semantic_configuration: str | None = None
    select: list[str] = field(default_factory=lambda: list(DEFAULT_SELECT))
    search_fields: list[str] | None = None
    highlight_fields: list[str] | None = None
    vector_filter_mode: str | None = None

    def to_payload(self) -> dict:
        payload: dict = {"search": self.search, "top": self.top}
        if self.semantic_configuration:
            payload["queryType"] = "semantic"
            payload["semanticConfiguration"] = self.semantic_configuration
        if self.select:
            payload["select"] = ",".join(self.select)
        if self.search_fields:
            payload["searchFields"] = ",".join(self.search_fields)
        if self.highlight_fields:
            payload["highlight"] = ",".join(self.highlight_fields)
        if self.filter:
            payload["filter"] = self.filter
        if self.vector is not None:
            payload["vectorQueries"] = [
                {
                    "kind": "vector",
                    "vector": self.vector,
                    "fields": self.vector_field,
                    "k": self.top or 50,
                    "exhaustive": False,
                }
            ]
            if self.vector_filter_mode:
                payload["vectorQueries"][0]["filterMode"] = self.vector_filter_mode
        return payload


def is_restrictive_filter(filter: str | None) -> bool:
    """Simple equality filters without OR are treated as restrictive."""
    if not filter:
        return False
    lowered = filter.lower()
    return " eq " in lowered and " or " not in lowered


def map_result(result: dict, idx: int) -> Reference:
    page_number = result.get("page_number")
    return Reference(
        id=str(result.get("id") or result.get("chunk_id") or f"result_{idx}"),
        title=result.get("title") or f"Page {page_number or idx + 1}",
        content=result.get("content") or result.get("page_chunk") or result.get("chunk") or "",
        url=result.get("url"),
        page_number=page_number,
        score=result.get("@search.rerankerScore") or result.get("@search.score"),
        highlights=result.get("@search.highlights"),
        metadata=result.get("metadata") or {},
    )


class SearchClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: Settings,
        embedder,
        token_cache: TokenCache,
        token_refresher: TokenRefresher,
        telemetry: TelemetryLog | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._http = http
        self._settings = settings
        self._embedder = embedder
        self._tokens = token_cache
        self._refresher = token_refresher
        self._telemetry = telemetry
        self._retry = retry_policy or RetryPolicy()

    async def auth_headers(self) -> dict[str, str]:
        return await self._tokens.get_headers(
            SEARCH_TOKEN_KEY, self._refresher, api_key=self._settings.search_api_key or None
        )

    async def request(self, operation: str, url: str, payload: dict) -> dict:
        """POST a JSON payload and return the decoded body, raising SearchServiceError on failure."""
        correlation_id = str(uuid4())

        async def call() -> dict:
            headers = {**await self.auth_headers(), "Content-Type": "application/json"}
            response = await self._http.post(url, json=payload, headers=headers)
            request_id = response.headers.get("x-ms-request-id") or response.headers.get(
                "apim-request-id"
            )
            if response.status_code >= 400:
                logger.error(
                    "search_request_error",
                    operation=operation,
                    status=response.status_code,
                    correlation_id=correlation_id,
                    request_id=request_id,
                )
                raise SearchServiceError(
                    f"{operation} failed: {response.status_code} {response.text[:500]}",
                    status=response.status_code,
                    correlation_id=correlation_id,
                    request_id=request_id,
                )
            logger.debug(
                "search_request_completed",
                operation=operation,
                status=response.status_code,
                correlation_id=correlation_id,
            )
            return response.json()

        return await with_retry(operation, call, self._retry, self._telemetry)

    def _index_url(self, index_name: str | None) -> str:
        name = index_name or self._settings.search_index_name
        return (
            f"{self._settings.search_endpoint.rstrip('/')}/indexes('{name}')/docs/search"
            f"?api-version={self._settings.search_api_version}"
        )

    async def search(self, query: SearchQuery, index_name: str | None = None) -> SearchResponse:
        body = await self.request("docs.search", self._index_url(index_name), query.to_payload())
        return SearchResponse(
            results=body.get("value", []),
            count=body.get("@odata.count"),
            facets=body.get("@search.facets"),
            coverage=body.get("@search.coverage"),
        )

    async def hybrid_search(
        self,
        query: str,
        top: int,
        filter: str | None = None,
        threshold: float | None = None,
        index_name: str | None = None,
    ) -> list[Reference]:
        vector = await self._embedder.embed_query(query)
        response = await self.search(
            SearchQuery(
                search=query,
                top=top * 2,
                vector=vector,
                vector_field=self._settings.search_vector_field,
                filter=filter,
                semantic_configuration=self._settings.search_semantic_config,
                search_fields=["page_chunk"],
                highlight_fields=["page_chunk"],
                vector_filter_mode="preFilter" if is_restrictive_filter(filter) else None,
            ),
            index_name=index_name,
        )
        references = [map_result(r, i) for i, r in enumerate(response.results)]
        references = enforce_reranker_threshold(references, threshold, source="hybrid_semantic")
        return references[:top]

    async def vector_search(
        self,
        query: str,
        top: int,
        filter: str | None = None,
        index_name: str | None = None,
    ) -> list[Reference]:
        vector = await self._embedder.embed_query(query)
        response = await self.search(
            SearchQuery(
                search="*",
                top=top,
                vector=vector,
                vector_field=self._settings.search_vector_field,
                filter=filter,
            ),
            index_name=index_name,
        )
        return [map_result(r, i) for i, r in enumerate(response.results)]
