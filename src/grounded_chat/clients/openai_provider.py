"""OpenAI Responses API provider: completions, structured output, streaming and embeddings."""

from __future__ import annotations

import asyncio
import json

from openai import AsyncOpenAI
from pydantic import BaseModel

from grounded_chat.exceptions import EmbeddingError, GenerationError
from grounded_chat.observability.logger import get_logger

logger = get_logger("openai")


def _input(prompt: str) -> list[dict]:
    return [{"role": "user", "content": prompt}]


class OpenAIStreamReader:
    """Pull reader over a Responses event stream; events are plain dicts.

    ``cancel`` stops reading immediately and starts closing the HTTP stream;
    ``aclose`` waits until that close has finished.
    """

    def __init__(self, stream) -> None:
        self._stream = stream
        self._iterator = stream.__aiter__()
        self._done = False
        self._closing: asyncio.Task | None = None

    async def next(self) -> dict | None:
        if self._done:
            return None
        try:
            event = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._done = True
            return None
        except Exception as e:
            self._done = True
            raise GenerationError(f"OpenAI stream failed: {e}") from e
        return event.model_dump() if hasattr(event, "model_dump") else dict(event)

    async def _release(self) -> None:
        try:
            await self._stream.close()
        except Exception as e:
            logger.warning("stream_close_failed", error=str(e))

    def cancel(self) -> None:
        if self._closing is not None:
            return
        self._done = True
        try:
            self._closing = asyncio.get_running_loop().create_task(self._release())
        except RuntimeError:
            return
        logger.info("stream_cancelled")

    async def aclose(self) -> None:
        if self._closing is None:
            self._done = True
            self._closing = asyncio.get_running_loop().create_task(self._release())
        await self._closing


class OpenAIProvider:
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-5",
        base_url: str | None = None,
        embedding_model: str = "text-embedding-3-large",
        embedding_batch_size: int = 100,
        reasoning_effort: str = "",
        reasoning_summary: str = "auto",
        store_responses: bool = False,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url or None)
        self._model = model
        self._embedding_model = embedding_model
        self._batch_size = embedding_batch_size
        self._reasoning_effort = reasoning_effort
        self._reasoning_summary = reasoning_summary
        self._store = store_responses

    def _options(self, system: str | None, temperature: float | None, max_tokens: int | None) -> dict:
        options: dict = {}
        if system:
            options["instructions"] = system
        if max_tokens:
            options["max_output_tokens"] = max_tokens
        # Reasoning models reject sampling parameters.
        if self._reasoning_effort:
            options["reasoning"] = {
                "effort": self._reasoning_effort,
                "summary": self._reasoning_summary or "auto",
            }
        elif temperature is not None:
            options["temperature"] = temperature
        return options

    async def generate(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        model: str | None = None,
    ) -> str:
        try:
            response = await self._client.responses.create(
                model=model or self._model,
                input=_input(prompt),
                store=False,
                **self._options(system, temperature, max_tokens),
            )
            return response.output_text or ""
        except Exception as e:
            raise GenerationError(f"OpenAI generation failed: {e}") from e

    async def generate_structured(
        self,
        prompt: str,
        response_schema: type[BaseModel],
        system: str | None = None,
        model: str | None = None,
    ) -> BaseModel:
        try:
            response = await self._client.responses.create(
                model=model or self._model,
                input=_input(prompt),
                store=False,
                text={
                    "format": {
                        "type": "json_schema",
                        "name": response_schema.__name__,
                        "schema": response_schema.model_json_schema(),
                        "strict": False,
                    }
                },
                **self._options(system, 0.0, None),
            )
            data = json.loads(response.output_text)
            return response_schema.model_validate(data)
        except Exception as e:
            raise GenerationError(f"OpenAI structured generation failed: {e}") from e

    async def stream(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 3000,
        model: str | None = None,
        previous_response_id: str | None = None,
    ) -> OpenAIStreamReader:
        options = self._options(system, temperature, max_tokens)
        if previous_response_id:
            options["previous_response_id"] = previous_response_id
        try:
            stream = await self._client.responses.create(
                model=model or self._model,
                input=_input(prompt),
                stream=True,
                store=self._store,
                **options,
            )
        except Exception as e:
            raise GenerationError(f"OpenAI streaming failed: {e}") from e
        logger.debug("stream_opened", model=model or self._model)
        return OpenAIStreamReader(stream)

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        all_embeddings: list[list[float]] = []
        try:
            for i in range(0, len(texts), self._batch_size):
                batch = texts[i : i + self._batch_size]
                response = await self._client.embeddings.create(input=batch, model=self._embedding_model)
                all_embeddings.extend(item.embedding for item in response.data)
            logger.info("embedded_texts", count=len(texts), model=self._embedding_model)
        except Exception as e:
            raise EmbeddingError(f"Failed to embed {len(texts)} texts: {e}") from e
        return all_embeddings

    async def embed_query(self, query: str) -> list[float]:
        try:
            response = await self._client.embeddings.create(input=[query], model=self._embedding_model)
            return response.data[0].embedding
        except Exception as e:
            raise EmbeddingError(f"Failed to embed query: {e}") from e
