"""Protocols for session memory and the durable semantic memory."""

from __future__ import annotations

from typing import Protocol

from grounded_chat.models.domain import AgentMessage, SalienceNote, SemanticMemory, SessionMemory


class SessionMemoryStore(Protocol):
    async def load(self, session_id: str, turn: int | None = None) -> SessionMemory: ...

    async def upsert(
        self,
        session_id: str,
        turn: int,
        summary: list[str],
        salience: list[SalienceNote],
    ) -> None: ...

    async def clear(self, session_id: str | None = None) -> None: ...

    async def save_turn(self, session_id: str, messages: list[AgentMessage]) -> None: ...

    async def get_session(self, session_id: str) -> dict | None: ...

    async def get_feature_overrides(self, session_id: str) -> dict[str, bool]: ...

    async def save_feature_overrides(self, session_id: str, features: dict[str, bool]) -> None: ...


class SemanticMemoryStore(Protocol):
    async def add_memory(
        self,
        text: str,
        type: str,
        metadata: dict | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        tags: list[str] | None = None,
    ) -> int | None: ...

    async def recall(
        self,
        query: str,
        k: int | None = None,
        type: str | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        tags: list[str] | None = None,
        min_similarity: float | None = None,
        max_age_days: int | None = None,
    ) -> list[SemanticMemory]: ...

    async def prune(self, max_age_days: int, min_usage_count: int = 2) -> int: ...

    async def stats(self) -> dict: ...

    async def clear(self) -> None: ...