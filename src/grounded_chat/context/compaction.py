"""Compact older conversation turns into summary bullets and salience notes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from grounded_chat.config.constants import COMPACTION_MAX_ITEMS
from grounded_chat.generation.prompt_templates import (
    COMPACTION_SALIENCE_PROMPT,
    COMPACTION_SALIENCE_SYSTEM,
    COMPACTION_SUMMARY_PROMPT,
    COMPACTION_SUMMARY_SYSTEM,
    format_transcript,
)
from grounded_chat.models.domain import AgentMessage, SalienceNote
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.llm import LLMProvider

logger = get_logger("compaction")


class SummaryResponse(BaseModel):
    bullets: list[str] = Field(default_factory=list)


class SalienceItem(BaseModel):
    fact: str
    topic: str | None = None


class SalienceResponse(BaseModel):
    notes: list[SalienceItem] = Field(default_factory=list)


@dataclass
class CompactedContext:
    latest: list[AgentMessage]
    summary: list[str] = field(default_factory=list)
    salience: list[SalienceNote] = field(default_factory=list)


class HistoryCompactor:
    def __init__(self, llm: LLMProvider, max_recent_turns: int = 12) -> None:
        self._llm = llm
        self._max_recent = max_recent_turns

    async def compact(self, messages: list[AgentMessage]) -> CompactedContext:
        if self._max_recent > 0:
            recent = messages[-self._max_recent :]
            older = messages[: -self._max_recent] if len(messages) > self._max_recent else []
        else:
            recent, older = list(messages), []

        if not older:
            return CompactedContext(latest=recent)

        transcript = format_transcript(older, numbered=True)
        summary = await self._summarize(transcript)
        salience = await self._salience(transcript, last_seen_turn=len(older))

        logger.info(
            "history_compacted",
            older=len(older),
            recent=len(recent),
            bullets=len(summary),
            notes=len(salience),
        )
        return CompactedContext(latest=recent, summary=summary, salience=salience)

    async def _summarize(self, transcript: str) -> list[str]:
        prompt = COMPACTION_SUMMARY_PROMPT.format(
            max_items=COMPACTION_MAX_ITEMS, transcript=transcript
        )
        try:
            result = await self._llm.generate_structured(
                prompt, SummaryResponse, system=COMPACTION_SUMMARY_SYSTEM
            )
            bullets = result.bullets
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=COMPACTION_SUMMARY_SYSTEM)
                bullets = json.loads(raw).get("bullets", [])
            except Exception:
                logger.warning("summary_generation_failed")
                return []
        return [b.strip() for b in bullets if isinstance(b, str) and b.strip()][
            :COMPACTION_MAX_ITEMS
        ]

    async def _salience(self, transcript: str, last_seen_turn: int) -> list[SalienceNote]:
        prompt = COMPACTION_SALIENCE_PROMPT.format(
            max_items=COMPACTION_MAX_ITEMS, transcript=transcript
        )
        try:
            result = await self._llm.generate_structured(
                prompt, SalienceResponse, system=COMPACTION_SALIENCE_SYSTEM
            )
            items = [(n.fact, n.topic) for n in result.notes]
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=COMPACTION_SALIENCE_SYSTEM)
                items = [
                    (n.get("fact", ""), n.get("topic"))
                    for n in json.loads(raw).get("notes", [])
                    if isinstance(n, dict)
                ]
            except Exception:
                logger.warning("salience_extraction_failed")
                return []
        return [
            SalienceNote(fact=fact.strip(), topic=topic, last_seen_turn=last_seen_turn)
            for fact, topic in items
            if isinstance(fact, str) and fact.strip()
        ][:COMPACTION_MAX_ITEMS]
