"""Google Gemini LLM provider using the google-genai SDK."""

from __future__ import annotations

import json
from uuid import uuid4

from google import genai
from google.genai import types
from pydantic import BaseModel

from grounded_chat.exceptions import GenerationError
from grounded_chat.observability.logger import get_logger

logger = get_logger("gemini")


class GeminiStreamReader:
    """Adapts Gemini content chunks to the Responses-style event vocabulary."""

    def __init__(self, chunks) -> None:
        self._iterator = chunks.__aiter__()
        self._response_id = f"gemini_{uuid4().hex}"
        self._text: list[str] = []
        self._started = False
        self._done = False

    async def next(self) -> dict | None:
        if self._done:
            return None
        if not self._started:
            self._started = True
            return {"type": "response.created", "response": {"id": self._response_id}}
        while True:
            try:
                chunk = await self._iterator.__anext__()
            except StopAsyncIteration:
                self._done = True
                return {
                    "type": "response.completed",
                    "response": {"id": self._response_id, "output_text": "".join(self._text)},
                }
            except Exception as e:
                self._done = True
                raise GenerationError(f"Gemini stream failed: {e}") from e
            text = chunk.text or ""
            if text:
                self._text.append(text)
                return {"type": "response.output_text.delta", "delta": text}

    def cancel(self) -> None:
        self._done = True

    async def aclose(self) -> None:
        self._done = True
        close = getattr(self._iterator, "aclose", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning("stream_close_failed", error=str(e))


class GeminiProvider:
    def __init__(self, api_key: str, model: str = "gemini-2.0-flash") -> None:
        self._client = genai.Client(api_key=api_key)
        self._model = model

    def _config(self, system: str | None, temperature: float, max_tokens: int | None = None):
        config = types.GenerateContentConfig(temperature=temperature)
        if max_tokens:
            config.max_output_tokens = max_tokens
        if system:
            config.system_instruction = system
        return config

    async def generate(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        model: str | None = None,
    ) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=model or self._model,
                contents=prompt,
                config=self._config(system, temperature, max_tokens),
            )
            return response.text or ""
        except Exception as e:
            raise GenerationError(f"Gemini generation failed: {e}") from e

    async def generate_structured(
        self,
        prompt: str,
        response_schema: type[BaseModel],
        system: str | None = None,
        model: str | None = None,
    ) -> BaseModel:
        try:
            config = types.GenerateContentConfig(
                temperature=0.0,
                response_mime_type="application/json",
                response_schema=response_schema,
            )
            if system:
                config.system_instruction = system

            response = await self._client.aio.models.generate_content(
                model=model or self._model,
                contents=prompt,
                config=config,
            )
            data = json.loads(response.text)
            return response_schema.model_validate(data)
        except Exception as e:
            raise GenerationError(f"Gemini structured generation failed: {e}") from e

    async def stream(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 3000,
        model: str | None = None,
        previous_response_id: str | None = None,
    ) -> GeminiStreamReader:
        # Gemini has no server-side response chaining; previous_response_id is ignored.
        try:
            chunks = await self._client.aio.models.generate_content_stream(
                model=model or self._model,
                contents=prompt,
                config=self._config(system, temperature, max_tokens),
            )
        except Exception as e:
            raise GenerationError(f"Gemini streaming failed: {e}") from e
        return GeminiStreamReader(chunks)
