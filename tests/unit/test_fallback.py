"""Tests for staged fallback retrieval."""

import pytest

from grounded_chat.retrieval.fallback import FallbackManager

from conftest import FakeSearch


@pytest.mark.asyncio
async def test_stage_one_relaxed_threshold(settings, make_reference):
    search = FakeSearch([make_reference("a", score=1.8), make_reference("b", score=1.6)])
    outcome = await FallbackManager(search, settings).run("q", top=5)
    assert [r.id for r in outcome.references] == ["a", "b"]
    assert outcome.threshold == 1.5
    assert outcome.attempts == 1
    assert outcome.vector_only is False


@pytest.mark.asyncio
async def test_stage_two_uses_floor_and_wider_top(settings, make_reference):
    search = FakeSearch([make_reference("a", score=1.2), make_reference("b", score=1.1)])
    outcome = await FallbackManager(search, settings).run("q", top=3, correlation_id="abc")
    assert outcome.threshold == 1.0
    assert outcome.thresholds == [1.5, 1.0]
    assert search.hybrid_calls[1]["top"] == 6
    assert outcome.activity[0].description.startswith("[correlation=abc] ")
    assert all(a.type == "fallback_search" for a in outcome.activity)


@pytest.mark.asyncio
async def test_stage_three_vector_only(settings, make_reference):
    search = FakeSearch([make_reference("a", score=0.2)])
    outcome = await FallbackManager(search, settings).run("q", top=4, filter="lang eq 'en'")
    assert outcome.vector_only is True
    assert outcome.attempts == 3
    assert [r.id for r in outcome.references] == ["a"]
    assert search.vector_calls[0]["filter"] == "lang eq 'en'"
    assert len(outcome.activity) == 3


def test_threshold_floor_never_exceeds_fallback(settings):
    settings.retrieval_min_reranker_threshold = 2.0
    settings.retrieval_fallback_reranker_threshold = 1.5
    assert FallbackManager(FakeSearch(), settings).threshold_floor == 1.5
