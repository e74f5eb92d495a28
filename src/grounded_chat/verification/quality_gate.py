"""Bounded generate/critique/revise loop with a final refusal gate."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from grounded_chat.config.constants import QUALITY_GATE_REFUSAL
from grounded_chat.config.settings import Settings
from grounded_chat.generation.citations import finalize_answer
from grounded_chat.generation.synthesizer import AnswerSynthesizer, SynthesisResult
from grounded_chat.models.domain import ActivityStep, CriticReport
from grounded_chat.observability.logger import get_logger
from grounded_chat.retrieval.dispatcher import DispatchResult
from grounded_chat.retrieval.lazy import hydrate, identify_load_candidates, load_full_content
from grounded_chat.verification.critic import Critic

logger = get_logger("quality_gate")

Emit = Callable[[str, dict], None]


@dataclass
class QualityOutcome:
    answer: str
    critic: CriticReport | None
    history: list[dict] = field(default_factory=list)
    attempts: int = 0
    synthesis: SynthesisResult | None = None
    refused: bool = False
    rejected: bool = False
    citation_failure: str | None = None
    hydrated: int = 0
    activity: list[ActivityStep] = field(default_factory=list)


def append_review_notes(answer: str, issues: list[str]) -> str:
    if not issues:
        return answer
    return f"{answer}\n\n[Quality review notes: {'; '.join(issues)}]"


def fails_gate(report: CriticReport | None, threshold: float) -> bool:
    return report is not None and (not report.grounded or report.coverage < threshold)


class QualityLoop:
    """Runs at most ``critic_max_retries + 1`` generation attempts.

    The critic only runs when there is context to judge against. Between
    attempts, summary-only references may be hydrated (at most
    ``lazy_max_hydrations`` per turn) and the context rebuilt.
    """

    def __init__(self, synthesizer: AnswerSynthesizer, critic: Critic, settings: Settings) -> None:
        self._synthesizer = synthesizer
        self._critic = critic
        self._settings = settings

    async def run(
        self,
        question: str,
        dispatch: DispatchResult,
        stream: bool = False,
        model: str | None = None,
        max_tokens: int | None = None,
        prompt_hint: str = "",
        previous_response_id: str | None = None,
        emit: Emit | None = None,
        conversation_context: str = "",
    ) -> QualityOutcome:
        settings = self._settings
        emit = emit or (lambda event, data: None)
        threshold = self._critic.threshold
        critic_enabled = settings.enable_critic and bool(dispatch.context_text.strip())
        max_attempts = settings.critic_max_retries + 1 if critic_enabled else 1
        synthesis_prompt = dispatch.decomposition.synthesis_prompt if dispatch.decomposition else None

        outcome = QualityOutcome(answer="", critic=None)
        report: CriticReport | None = None
        answer = ""
        finalized = False

        for attempt in range(max_attempts):
            revising = attempt > 0
            notes = report.issues if revising and report and report.issues else None
            emit("status", {"stage": "revising" if revising else "generating"})

            synthesis = await self._synthesizer.synthesize(
                question,
                dispatch.context_text,
                dispatch.citations,
                revision_notes=notes,
                stream=stream,
                model=model,
                max_tokens=max_tokens,
                prompt_hint=prompt_hint,
                synthesis_prompt=synthesis_prompt,
                previous_response_id=previous_response_id,
                conversation_context=conversation_context,
                on_token=lambda text: emit("token", {"content": text}),
                on_reasoning=lambda text: self._insight(outcome, emit, text),
            )
            outcome.synthesis = synthesis
            outcome.attempts = attempt + 1
            answer = synthesis.answer

            if synthesis.rejected:
                outcome.rejected = True
                emit(
                    "warning",
                    {"type": "citation_integrity", "unknownCitations": synthesis.unknown_citations},
                )
                break

            if not critic_enabled:
                break

            emit("status", {"stage": "review"})
            report = await self._critic.evaluate(answer, dispatch.context_text, question)
            outcome.history.append({**report.to_dict(), "attempt": attempt})
            emit("critique", {**report.to_dict(), "attempt": attempt})

            if report.action == "accept":
                break

            if attempt == max_attempts - 1:
                logger.info("critic_retries_exhausted", attempts=attempt + 1, issues=len(report.issues))
                answer, reason = finalize_answer(answer, dispatch.citations)
                outcome.citation_failure = reason
                finalized = True
                answer = append_review_notes(answer, report.issues)
                break

            await self._maybe_hydrate(dispatch, report, outcome, emit)

        outcome.critic = report

        if outcome.rejected:
            outcome.answer = answer
            return outcome

        if not finalized:
            answer, outcome.citation_failure = finalize_answer(answer, dispatch.citations)
            if outcome.citation_failure and dispatch.citations:
                emit("warning", {"type": "citation_validation", "reason": outcome.citation_failure})

        if fails_gate(report, threshold):
            logger.warning(
                "quality_gate_refusal",
                grounded=report.grounded,
                coverage=round(report.coverage, 4),
                threshold=threshold,
            )
            emit("warning", {"type": "quality_gate", "grounded": report.grounded, "coverage": report.coverage})
            answer = QUALITY_GATE_REFUSAL
            outcome.refused = True

        outcome.answer = answer
        return outcome

    def _insight(self, outcome: QualityOutcome, emit: Emit, text: str) -> None:
        step = ActivityStep(type="insight", description=text)
        outcome.activity.append(step)
        emit("activity", {"steps": [step.to_dict()]})

    async def _maybe_hydrate(
        self,
        dispatch: DispatchResult,
        report: CriticReport,
        outcome: QualityOutcome,
        emit: Emit,
    ) -> None:
        settings = self._settings
        remaining = settings.lazy_max_hydrations - outcome.hydrated
        if remaining <= 0 or not any(r.is_summary_only for r in dispatch.references):
            return
        candidates = identify_load_candidates(
            dispatch.references,
            report.issues,
            coverage=report.coverage,
            load_threshold=settings.lazy_load_threshold,
            limit=remaining,
        )
        if not candidates:
            return
        try:
            loaded = await load_full_content(dispatch.references, candidates)
        except Exception as e:
            logger.warning("lazy_hydration_failed", error=str(e))
            return
        changed = hydrate(dispatch.references, loaded)
        if not changed:
            return
        outcome.hydrated += changed
        dispatch.refresh_context()
        step = ActivityStep(
            type="lazy_load",
            description=f"Loaded full content for {changed} reference(s) before revision.",
        )
        outcome.activity.append(step)
        emit("activity", {"steps": [step.to_dict()]})
        logger.info("lazy_hydrated", count=changed, total=outcome.hydrated)
