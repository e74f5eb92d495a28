"""Protocol for the web search collaborator."""

from __future__ import annotations

from typing import Protocol

from grounded_chat.models.domain import WebResult


class WebSearcher(Protocol):
    async def search(self, query: str, count: int | None = None) -> list[WebResult]: ...
