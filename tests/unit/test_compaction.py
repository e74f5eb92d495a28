"""Tests for history compaction and summary selection."""

import pytest

from grounded_chat.context.compaction import HistoryCompactor
from grounded_chat.context.summary_selector import SummarySelector, dedupe_bullets
from grounded_chat.models.domain import AgentMessage, SummaryBullet

from conftest import FakeEmbedder, FakeLLM


def _conversation(n):
    return [AgentMessage(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}") for i in range(n)]


@pytest.mark.asyncio
async def test_short_history_not_compacted():
    llm = FakeLLM()
    ctx = await HistoryCompactor(llm, max_recent_turns=4).compact(_conversation(3))
    assert len(ctx.latest) == 3
    assert ctx.summary == []
    assert ctx.salience == []
    assert llm.calls["SummaryResponse"] == 0


@pytest.mark.asyncio
async def test_older_turns_become_summary_and_salience():
    llm = FakeLLM(
        structured={
            "SummaryResponse": {"bullets": [f"point {i}" for i in range(9)] + ["  "]},
            "SalienceResponse": {"notes": [{"fact": "user prefers metric", "topic": "units"}, {"fact": " "}]},
        }
    )
    ctx = await HistoryCompactor(llm, max_recent_turns=4).compact(_conversation(10))
    assert [m.content for m in ctx.latest] == ["turn 6", "turn 7", "turn 8", "turn 9"]
    assert len(ctx.summary) == 6
    assert len(ctx.salience) == 1
    assert ctx.salience[0].topic == "units"
    assert ctx.salience[0].last_seen_turn == 6


@pytest.mark.asyncio
async def test_compaction_failures_yield_empty_lists():
    ctx = await HistoryCompactor(FakeLLM(), max_recent_turns=2).compact(_conversation(5))
    assert len(ctx.latest) == 2
    assert ctx.summary == []
    assert ctx.salience == []


def test_dedupe_keeps_first_and_skips_blank():
    bullets = [SummaryBullet(" a "), SummaryBullet("b"), SummaryBullet("a"), SummaryBullet("")]
    assert [b.text for b in dedupe_bullets(bullets)] == ["a", "b"]


@pytest.mark.asyncio
async def test_selector_recency_when_not_semantic():
    selector = SummarySelector(FakeEmbedder())
    bullets = [SummaryBullet(f"fact {i}") for i in range(5)]
    selected, stats = await selector.select("q", bullets, 2, semantic=False)
    assert [b.text for b in selected] == ["fact 3", "fact 4"]
    assert stats.mode == "recency"
    assert stats.used_fallback is False
    assert stats.discarded_count == 3


@pytest.mark.asyncio
async def test_selector_empty_candidates_marks_fallback():
    selected, stats = await SummarySelector(FakeEmbedder()).select("q", [], 3)
    assert selected == []
    assert stats.used_fallback is True


@pytest.mark.asyncio
async def test_selector_embed_failure_falls_back_to_recency():
    selector = SummarySelector(FakeEmbedder(fail=True))
    bullets = [SummaryBullet(f"fact {i}") for i in range(4)]
    selected, stats = await selector.select("lights", bullets, 2)
    assert [b.text for b in selected] == ["fact 2", "fact 3"]
    assert stats.used_fallback is True
    assert stats.error == "embedder offline"


@pytest.mark.asyncio
async def test_selector_semantic_ranks_by_similarity():
    bullets = [
        SummaryBullet("a", embedding=[0.0, 1.0]),
        SummaryBullet("b", embedding=[1.0, 0.0]),
        SummaryBullet("c", embedding=[0.7, 0.7]),
    ]

    class QueryEmbedder(FakeEmbedder):
        async def embed_query(self, query):
            return [1.0, 0.0]

    selected, stats = await SummarySelector(QueryEmbedder()).select("q", bullets, 2)
    assert [b.text for b in selected] == ["b", "c"]
    assert stats.mode == "semantic"
    assert stats.max_selected_score == pytest.approx(1.0)
    assert stats.min_score == pytest.approx(0.0)
