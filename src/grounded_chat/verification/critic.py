"""Critic: judge a draft answer for groundedness and coverage against the evidence shown."""

from __future__ import annotations

import json
import math

from pydantic import BaseModel, Field

from grounded_chat.config.constants import CRITIC_FALLBACK_COVERAGE, CRITIC_MAX_ISSUES
from grounded_chat.generation.prompt_templates import CRITIC_PROMPT, CRITIC_SYSTEM
from grounded_chat.models.domain import CriticReport
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.llm import LLMProvider

logger = get_logger("critic")


class CriticResponse(BaseModel):
    grounded: bool
    coverage: float
    issues: list[str] = Field(default_factory=list)
    action: str = "accept"


def clamp_coverage(value) -> float:
    try:
        coverage = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(coverage):
        return 0.0
    return max(0.0, min(1.0, coverage))


def enforce_thresholds(report: CriticReport, threshold: float) -> CriticReport:
    """Force a revision whenever coverage or groundedness fails, whatever the critic decided."""
    if report.coverage < threshold or not report.grounded:
        if report.action != "revise":
            report.action = "revise"
            report.forced = True
    elif report.action not in ("accept", "revise"):
        report.action = "accept"
    return report


class Critic:
    def __init__(self, llm: LLMProvider, threshold: float = 0.8, model: str | None = None) -> None:
        self._llm = llm
        self._threshold = threshold
        self._model = model

    @property
    def threshold(self) -> float:
        return self._threshold

    async def evaluate(self, draft: str, evidence: str, question: str) -> CriticReport:
        prompt = CRITIC_PROMPT.format(question=question, draft=draft, evidence=evidence)
        system = CRITIC_SYSTEM.format(threshold=self._threshold)

        try:
            result = await self._llm.generate_structured(prompt, CriticResponse, system=system, model=self._model)
            grounded, coverage, issues, action = result.grounded, result.coverage, result.issues, result.action
        except Exception:
            try:
                raw = await self._llm.generate(prompt, system=system, temperature=0.0, model=self._model)
                data = json.loads(raw)
                grounded = bool(data.get("grounded", True))
                coverage = data.get("coverage", CRITIC_FALLBACK_COVERAGE)
                issues = [str(i) for i in data.get("issues", []) if i]
                action = str(data.get("action", "accept"))
            except Exception:
                logger.warning("critic_failed")
                return CriticReport(grounded=True, coverage=CRITIC_FALLBACK_COVERAGE, issues=[], action="accept")

        report = CriticReport(
            grounded=grounded,
            coverage=clamp_coverage(coverage),
            issues=[i.strip() for i in issues if i and i.strip()][:CRITIC_MAX_ISSUES],
            action=action if action in ("accept", "revise") else "accept",
        )
        report = enforce_thresholds(report, self._threshold)
        logger.info(
            "critique",
            grounded=report.grounded,
            coverage=round(report.coverage, 4),
            action=report.action,
            forced=report.forced,
            issues=len(report.issues),
        )
        return report
