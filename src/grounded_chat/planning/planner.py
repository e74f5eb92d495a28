"""Structured retrieval planning with defensive repair of the model's output."""

from __future__ import annotations

import json

from pydantic import BaseModel, Field

from grounded_chat.config.constants import (
    PLAN_MAX_K,
    PLAN_MAX_STEPS,
    PLAN_QUERY_MAX_CHARS,
    PLANNER_FALLBACK_CONFIDENCE,
)
from grounded_chat.context.compaction import CompactedContext
from grounded_chat.generation.prompt_templates import PLANNER_PROMPT, PLANNER_SYSTEM, format_context_sections
from grounded_chat.models.domain import AgentMessage, Plan, PlanStep
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.llm import LLMProvider

logger = get_logger("planner")

VALID_ACTIONS = {"vector_search", "web_search", "both", "answer"}
RETRIEVAL_ACTIONS = {"vector_search", "web_search", "both"}


class PlanStepModel(BaseModel):
    action: str
    query: str | None = None
    k: int | float | str | None = None


class PlanResponse(BaseModel):
    confidence: float | None = None
    steps: list[PlanStepModel] = Field(default_factory=list)


def format_plan_context(context: CompactedContext, latest_user: AgentMessage | None) -> str:
    lines = [f"{msg.role.upper()}: {msg.content}" for msg in context.latest]
    if context.summary:
        lines.append("\nSummary bullets:")
        lines.extend(f"- {i}. {item}" for i, item in enumerate(context.summary, 1))
    if context.salience:
        lines.append("\nSalient notes:")
        for note in context.salience:
            prefix = f"{note.topic}: " if note.topic else ""
            lines.append(f"- {prefix}{note.fact}")
    if latest_user is not None:
        lines.append(f"\nLatest user request: {latest_user.content}")
    return "\n".join(lines)


def format_budgeted_plan_context(sections: dict[str, str], latest_user: AgentMessage | None) -> str:
    text = format_context_sections(sections)
    if latest_user is not None:
        text = f"{text}\n\nLatest user request: {latest_user.content}".strip()
    return text


def fallback_plan() -> Plan:
    return Plan(
        confidence=PLANNER_FALLBACK_CONFIDENCE,
        steps=(PlanStep(action="vector_search"),),
    )


def _repair_k(raw, default_k: int) -> int | None:
    if raw is None:
        return None
    try:
        k = int(raw)
    except (TypeError, ValueError):
        return default_k
    if k < 1:
        return default_k
    return min(k, PLAN_MAX_K)


def repair_plan(response: PlanResponse, default_k: int) -> Plan:
    """Clamp and sanitize a model-produced plan.

    Unknown actions are dropped, ``k`` is clamped, queries are truncated.
    A plan whose steps are all ``answer`` is kept as an intentional direct
    answer; a plan left with no steps gets a single vector search.
    """
    confidence = response.confidence
    if confidence is None or confidence != confidence:
        confidence = 0.5
    confidence = min(max(float(confidence), 0.0), 1.0)

    steps: list[PlanStep] = []
    for raw in response.steps:
        action = (raw.action or "").strip().lower()
        if action not in VALID_ACTIONS:
            logger.warning("plan_step_dropped", action=raw.action)
            continue
        query = (raw.query or "").strip() or None
        if query and len(query) > PLAN_QUERY_MAX_CHARS:
            query = query[:PLAN_QUERY_MAX_CHARS]
        steps.append(PlanStep(action=action, query=query, k=_repair_k(raw.k, default_k)))
        if len(steps) >= PLAN_MAX_STEPS:
            break

    if not steps:
        steps = [PlanStep(action="vector_search")]

    return Plan(confidence=confidence, steps=tuple(steps))


class Planner:
    def __init__(self, llm: LLMProvider, default_k: int = 5) -> None:
        self._llm = llm
        self._default_k = default_k

    async def plan(
        self,
        messages: list[AgentMessage],
        context: CompactedContext,
        sections: dict[str, str] | None = None,
    ) -> Plan:
        """Request a plan; budgeted ``sections`` replace the raw compacted context when given."""
        latest_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if sections:
            rendered = format_budgeted_plan_context(sections, latest_user)
        else:
            rendered = format_plan_context(context, latest_user)
        prompt = PLANNER_PROMPT.format(context=rendered)

        try:
            response = await self._llm.generate_structured(prompt, PlanResponse, system=PLANNER_SYSTEM)
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=PLANNER_SYSTEM, temperature=0.2)
                response = PlanResponse.model_validate(json.loads(raw))
            except Exception:
                logger.warning("planner_failed_fallback")
                return fallback_plan()

        plan = repair_plan(response, self._default_k)
        logger.info(
            "plan_created",
            confidence=plan.confidence,
            actions=[s.action for s in plan.steps],
        )
        return plan
