"""Answer synthesis with incremental citation-integrity enforcement."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from grounded_chat.config.constants import (
    CITATION_BUFFER_MIN_CHARS,
    CITATION_INTEGRITY_REJECTION,
    EMPTY_ANSWER,
    NO_EVIDENCE_ANSWER,
)
from grounded_chat.exceptions import GenerationError
from grounded_chat.generation.citations import CitationEnumeration, unknown_citations
from grounded_chat.generation.prompt_templates import ANSWER_PROMPT, ANSWER_SYSTEM, format_revision_notes
from grounded_chat.generation.stream_events import (
    OutputItemDone,
    OutputTextDelta,
    OutputTextDone,
    ReasoningFragment,
    ResponseCompleted,
    ResponseCreated,
    ResponseFailed,
    UnknownEvent,
    parse_event,
)
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.llm import LLMProvider

logger = get_logger("synthesizer")

# An unclosed "[" further back than this cannot start a citation marker.
MAX_MARKER_CHARS = 12


@dataclass
class SynthesisResult:
    answer: str
    response_id: str | None = None
    reasoning: list[str] = field(default_factory=list)
    rejected: bool = False
    unknown_citations: list[int] = field(default_factory=list)
    streamed: bool = False
    error: str | None = None


def normalize_reasoning(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


class ReasoningAssembler:
    """Joins fragmented reasoning events into whole snippets, each released once."""

    def __init__(self) -> None:
        self._buffers: dict[tuple[str, int, int, int], list[str]] = {}
        self._seen: set[str] = set()
        self.snippets: list[str] = []

    def _publish(self, text: str) -> str | None:
        normalized = normalize_reasoning(text)
        if not normalized or normalized in self._seen:
            return None
        self._seen.add(normalized)
        snippet = text.strip()
        self.snippets.append(snippet)
        return snippet

    def add(self, fragment: ReasoningFragment) -> str | None:
        if not fragment.done:
            self._buffers.setdefault(fragment.key, []).append(fragment.text)
            return None
        buffered = "".join(self._buffers.pop(fragment.key, []))
        return self._publish(fragment.text or buffered)

    def add_complete(self, text: str) -> str | None:
        return self._publish(text)

    def flush(self) -> list[str]:
        released = []
        for key in list(self._buffers):
            snippet = self._publish("".join(self._buffers.pop(key)))
            if snippet:
                released.append(snippet)
        return released


class CitationGuard:
    """Sliding window over streamed text that checks citation markers.

    Text is held until the window reaches ``min_chars``; then every complete
    marker in it is checked against the enumeration. A trailing unclosed
    ``[`` stays buffered so markers split across deltas are seen whole.
    ``feed`` returns the text cleared for release and any unknown numbers.
    """

    def __init__(self, enumeration: CitationEnumeration, min_chars: int = CITATION_BUFFER_MIN_CHARS) -> None:
        self._enumeration = enumeration
        self._min_chars = min_chars
        self._buffer = ""

    def _check(self, text: str) -> list[int]:
        return unknown_citations(text, self._enumeration)

    def feed(self, text: str) -> tuple[str, list[int]]:
        self._buffer += text
        if len(self._buffer) < self._min_chars:
            return "", []
        open_at = self._buffer.rfind("[")
        if open_at != -1 and "]" not in self._buffer[open_at:] and len(self._buffer) - open_at <= MAX_MARKER_CHARS:
            ready, self._buffer = self._buffer[:open_at], self._buffer[open_at:]
        else:
            ready, self._buffer = self._buffer, ""
        unknown = self._check(ready)
        return ("" if unknown else ready), unknown

    def finish(self) -> tuple[str, list[int]]:
        ready, self._buffer = self._buffer, ""
        unknown = self._check(ready)
        return ("" if unknown else ready), unknown


def build_answer_prompt(
    question: str,
    context_text: str,
    revision_notes: list[str] | None = None,
    synthesis_prompt: str | None = None,
    conversation_context: str = "",
) -> str:
    prompt = ANSWER_PROMPT.format(question=question, context=context_text)
    if conversation_context.strip():
        prompt += f"\n\nConversation context (not citable):\n{conversation_context.strip()}"
    if synthesis_prompt:
        prompt += f"\n\nSynthesis instructions:\n{synthesis_prompt}"
    return prompt + format_revision_notes(revision_notes or [])


class AnswerSynthesizer:
    def __init__(self, llm: LLMProvider, temperature: float = 0.3, max_tokens: int = 3000) -> None:
        self._llm = llm
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def synthesize(
        self,
        question: str,
        context_text: str,
        citations: CitationEnumeration,
        revision_notes: list[str] | None = None,
        stream: bool = False,
        model: str | None = None,
        max_tokens: int | None = None,
        prompt_hint: str = "",
        synthesis_prompt: str | None = None,
        conversation_context: str = "",
        previous_response_id: str | None = None,
        on_token: Callable[[str], None] | None = None,
        on_reasoning: Callable[[str], None] | None = None,
    ) -> SynthesisResult:
        if not context_text or not context_text.strip():
            if stream and on_token:
                on_token(NO_EVIDENCE_ANSWER)
            return SynthesisResult(answer=NO_EVIDENCE_ANSWER, streamed=stream)

        prompt = build_answer_prompt(question, context_text, revision_notes, synthesis_prompt, conversation_context)
        system = f"{ANSWER_SYSTEM} {prompt_hint}".strip() if prompt_hint else ANSWER_SYSTEM
        max_tokens = max_tokens or self._max_tokens

        if stream:
            return await self._stream(
                prompt, system, citations, model, max_tokens, previous_response_id, on_token, on_reasoning
            )

        try:
            answer = await self._llm.generate(
                prompt, system=system, temperature=self._temperature, max_tokens=max_tokens, model=model
            )
        except GenerationError as e:
            logger.error("synthesis_failed", error=str(e))
            return SynthesisResult(answer=EMPTY_ANSWER, error=str(e))

        answer = answer.strip() if answer else ""
        if not answer:
            return SynthesisResult(answer=EMPTY_ANSWER)
        unknown = unknown_citations(answer, citations)
        if unknown:
            logger.warning("citation_integrity_violation", unknown=unknown, mode="sync")
            return SynthesisResult(answer=CITATION_INTEGRITY_REJECTION, rejected=True, unknown_citations=unknown)
        return SynthesisResult(answer=answer)

    async def _stream(
        self,
        prompt: str,
        system: str,
        citations: CitationEnumeration,
        model: str | None,
        max_tokens: int,
        previous_response_id: str | None,
        on_token: Callable[[str], None] | None,
        on_reasoning: Callable[[str], None] | None,
    ) -> SynthesisResult:
        emit_token = on_token or (lambda text: None)
        emit_reasoning = on_reasoning or (lambda text: None)

        try:
            reader = await self._llm.stream(
                prompt,
                system=system,
                temperature=self._temperature,
                max_tokens=max_tokens,
                model=model,
                previous_response_id=previous_response_id,
            )
        except GenerationError as e:
            logger.error("stream_open_failed", error=str(e))
            return SynthesisResult(answer=EMPTY_ANSWER, streamed=True, error=str(e))

        guard = CitationGuard(citations)
        reasoning = ReasoningAssembler()
        result = SynthesisResult(answer="", streamed=True)
        parts: list[str] = []

        def accept(text: str) -> bool:
            if not text:
                return True
            parts.append(text)
            released, unknown = guard.feed(text)
            if unknown:
                result.unknown_citations = unknown
                return False
            if released:
                emit_token(released)
            return True

        def publish(snippet: str | None) -> None:
            if snippet:
                emit_reasoning(snippet)

        completed = False
        while not completed:
            try:
                raw = await reader.next()
            except GenerationError as e:
                logger.error("stream_failed", error=str(e))
                result.error = str(e)
                break
            if raw is None:
                break
            event = parse_event(raw)

            if isinstance(event, ResponseCreated):
                result.response_id = event.response_id or result.response_id
                ok = True
            elif isinstance(event, OutputTextDelta):
                ok = accept(event.delta)
            elif isinstance(event, OutputTextDone):
                ok = True if parts else accept(event.text)
            elif isinstance(event, OutputItemDone):
                for text in event.reasoning:
                    publish(reasoning.add_complete(text))
                ok = True if parts else accept(event.text)
            elif isinstance(event, ReasoningFragment):
                publish(reasoning.add(event))
                ok = True
            elif isinstance(event, ResponseCompleted):
                result.response_id = event.response_id or result.response_id
                for text in event.reasoning:
                    publish(reasoning.add_complete(text))
                ok = True if parts else accept(event.output_text)
                completed = True
            elif isinstance(event, ResponseFailed):
                logger.error("stream_response_failed", message=event.message)
                result.error = event.message
                break
            elif isinstance(event, UnknownEvent):
                # Untyped payloads only; typed events we do not model carry no answer text.
                ok = accept(event.text) if not event.type else True
            else:
                ok = True

            if not ok:
                reader.cancel()
                await reader.aclose()
                logger.warning("citation_integrity_violation", unknown=result.unknown_citations, mode="stream")
                result.answer = CITATION_INTEGRITY_REJECTION
                result.rejected = True
                result.reasoning = reasoning.snippets
                return result

        for snippet in reasoning.flush():
            emit_reasoning(snippet)
        result.reasoning = reasoning.snippets

        released, unknown = guard.finish()
        if unknown:
            reader.cancel()
            await reader.aclose()
            logger.warning("citation_integrity_violation", unknown=unknown, mode="stream")
            result.unknown_citations = unknown
            result.answer = CITATION_INTEGRITY_REJECTION
            result.rejected = True
            return result
        if released:
            emit_token(released)

        answer = "".join(parts).strip()
        result.answer = answer or EMPTY_ANSWER
        logger.info(
            "synthesized_stream",
            answer_len=len(answer),
            reasoning_snippets=len(result.reasoning),
            response_id=result.response_id,
        )
        return result
