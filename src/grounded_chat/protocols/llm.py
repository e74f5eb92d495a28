"""Protocols for completion providers and their streaming readers."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel


class StreamReader(Protocol):
    """Pull-based reader over a provider event stream.

    ``next`` returns one raw event dict, or None once the stream has ended.
    ``cancel`` is synchronous: it stops the reader at once and starts releasing
    the underlying connection; further ``next`` calls return None.
    ``aclose`` waits until the connection has been released.
    """

    async def next(self) -> dict | None: ...

    def cancel(self) -> None: ...

    async def aclose(self) -> None: ...


class LLMProvider(Protocol):
    async def generate(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        model: str | None = None,
    ) -> str: ...

    async def generate_structured(
        self,
        prompt: str,
        response_schema: type[BaseModel],
        system: str | None = None,
        model: str | None = None,
    ) -> BaseModel: ...

    async def stream(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 3000,
        model: str | None = None,
        previous_response_id: str | None = None,
    ) -> StreamReader: ...
