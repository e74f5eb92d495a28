"""Protocols for the search service and the knowledge agent."""

from __future__ import annotations

from typing import Protocol

from grounded_chat.models.domain import AgentMessage, KnowledgeAgentResult, Reference


class SearchService(Protocol):
    async def hybrid_search(
        self,
        query: str,
        top: int,
        filter: str | None = None,
        threshold: float | None = None,
        index_name: str | None = None,
    ) -> list[Reference]: ...

    async def vector_search(
        self,
        query: str,
        top: int,
        filter: str | None = None,
        index_name: str | None = None,
    ) -> list[Reference]: ...


class KnowledgeAgent(Protocol):
    async def retrieve(
        self,
        messages: list[AgentMessage],
        top: int,
        filter: str | None = None,
    ) -> KnowledgeAgentResult: ...
