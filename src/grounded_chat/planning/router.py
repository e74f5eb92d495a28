"""Intent routing: pick a route profile (model, retriever strategy, token budget) per question."""

from __future__ import annotations

import json

from pydantic import BaseModel

from grounded_chat.config.settings import Settings
from grounded_chat.generation.prompt_templates import INTENT_PROMPT, INTENT_SYSTEM
from grounded_chat.models.domain import AgentMessage, RouteDecision, RouteProfile
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.llm import LLMProvider

logger = get_logger("router")

DEFAULT_INTENT = "research"


class IntentResponse(BaseModel):
    intent: str
    confidence: float = 0.5
    reasoning: str = "No reasoning provided"


def build_route_profiles(settings: Settings) -> dict[str, RouteProfile]:
    return {
        "faq": RouteProfile(
            intent="faq",
            model=settings.model_faq or settings.default_model,
            retriever_strategy="vector",
            max_tokens=settings.max_tokens_faq,
            prompt_hint="Provide a concise, direct answer grounded in the supplied evidence.",
        ),
        "research": RouteProfile(
            intent="research",
            model=settings.model_research or settings.default_model,
            retriever_strategy="hybrid+web",
            max_tokens=settings.max_tokens_research,
            prompt_hint=(
                "Synthesize multiple sources, cite inline, and explain trade-offs or "
                "rationale when helpful."
            ),
        ),
        "factual_lookup": RouteProfile(
            intent="factual_lookup",
            model=settings.model_factual or settings.default_model,
            retriever_strategy="hybrid",
            max_tokens=settings.max_tokens_factual,
            prompt_hint="Return the precise fact requested with direct citations. Avoid speculation.",
        ),
        "conversational": RouteProfile(
            intent="conversational",
            model=settings.model_conversational or settings.default_model,
            retriever_strategy="vector",
            max_tokens=settings.max_tokens_conversational,
            prompt_hint=(
                "Respond conversationally while staying grounded in prior context. "
                "Keep answers brief."
            ),
        ),
    }


class IntentRouter:
    def __init__(self, llm: LLMProvider, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings
        self._profiles = build_route_profiles(settings)

    def profile(self, intent: str) -> RouteProfile:
        return self._profiles.get(intent, self._profiles[DEFAULT_INTENT])

    def _decision(self, intent: str, confidence: float, reasoning: str) -> RouteDecision:
        return RouteDecision(
            intent=intent,
            confidence=confidence,
            reasoning=reasoning,
            profile=self.profile(intent),
        )

    async def classify(
        self,
        question: str,
        history: list[AgentMessage] | None = None,
        enabled: bool = True,
    ) -> RouteDecision:
        if not enabled:
            return self._decision(DEFAULT_INTENT, 1.0, "Intent routing disabled")

        question = question.strip()
        if not question:
            return self._decision("conversational", 0.2, "Empty question defaults to conversational")

        history_snippet = ""
        if history:
            recent = "\n".join(f"{m.role}: {m.content}" for m in history[-4:])
            history_snippet = f"\n\nRecent conversation:\n{recent}"
        prompt = INTENT_PROMPT.format(question=question, history=history_snippet)
        model = self._settings.intent_classifier_model or None

        try:
            try:
                result = await self._llm.generate_structured(
                    prompt, IntentResponse, system=INTENT_SYSTEM, model=model
                )
            except Exception:
                raw = await self._llm.generate(
                    prompt,
                    system=INTENT_SYSTEM,
                    temperature=0.1,
                    max_tokens=self._settings.intent_classifier_max_tokens,
                    model=model,
                )
                result = IntentResponse.model_validate(json.loads(raw))
        except Exception:
            logger.warning("intent_classification_failed", question=question[:120])
            return self._decision(DEFAULT_INTENT, 0.5, "Classification error fallback")

        intent = result.intent if result.intent in self._profiles else DEFAULT_INTENT
        logger.info("intent_classified", intent=intent, confidence=result.confidence)
        return self._decision(intent, result.confidence, result.reasoning)
