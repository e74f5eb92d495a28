"""Tests for intent routing."""

import pytest

from grounded_chat.models.domain import AgentMessage
from grounded_chat.planning.router import IntentRouter

from conftest import FakeLLM


@pytest.mark.asyncio
async def test_disabled_routing_returns_research(settings):
    llm = FakeLLM()
    decision = await IntentRouter(llm, settings).classify("anything", enabled=False)
    assert decision.intent == "research"
    assert decision.confidence == 1.0
    assert decision.profile.retriever_strategy == "hybrid+web"
    assert llm.calls["IntentResponse"] == 0


@pytest.mark.asyncio
async def test_empty_question_is_conversational(settings):
    decision = await IntentRouter(FakeLLM(), settings).classify("   ")
    assert decision.intent == "conversational"
    assert decision.confidence == 0.2


@pytest.mark.asyncio
async def test_classified_intent_selects_profile(settings):
    settings.model_faq = "faq-model"
    llm = FakeLLM(structured={"IntentResponse": {"intent": "faq", "confidence": 0.9, "reasoning": "simple"}})
    decision = await IntentRouter(llm, settings).classify("What are your hours?")
    assert decision.intent == "faq"
    assert decision.profile.model == "faq-model"
    assert decision.profile.retriever_strategy == "vector"
    assert decision.profile.max_tokens == settings.max_tokens_faq


@pytest.mark.asyncio
async def test_unknown_intent_maps_to_research(settings):
    llm = FakeLLM(structured={"IntentResponse": {"intent": "poetry", "confidence": 0.7}})
    decision = await IntentRouter(llm, settings).classify("Write me a poem")
    assert decision.intent == "research"
    assert decision.profile.model == settings.chat_model


@pytest.mark.asyncio
async def test_failure_falls_back_to_research(settings):
    decision = await IntentRouter(FakeLLM(texts=["{broken"]), settings).classify("Why?")
    assert decision.intent == "research"
    assert decision.confidence == 0.5


@pytest.mark.asyncio
async def test_history_included_in_prompt(settings):
    llm = FakeLLM(structured={"IntentResponse": {"intent": "factual_lookup"}})
    history = [AgentMessage(role="user", content=f"msg {i}") for i in range(6)]
    decision = await IntentRouter(llm, settings).classify("And then?", history)
    assert decision.profile.retriever_strategy == "hybrid"
    assert "msg 5" in llm.prompts[0]
    assert "msg 1" not in llm.prompts[0]


@pytest.mark.asyncio
async def test_gemini_provider_routes_to_gemini_model(settings):
    settings.llm_provider = "gemini"
    settings.gemini_model = "gemini-test"
    llm = FakeLLM(structured={"IntentResponse": {"intent": "research", "confidence": 0.8}})
    decision = await IntentRouter(llm, settings).classify("Compare city and rural skies")
    assert decision.profile.model == "gemini-test"
    assert settings.resolve_model(decision.profile.model) == "gemini-test"
    assert settings.resolve_model() == "gemini-test"


def test_resolve_model_prefers_route_override(settings):
    assert settings.resolve_model("  route-model ") == "route-model"
    assert settings.resolve_model("") == settings.chat_model
