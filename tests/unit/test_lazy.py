"""Tests for lazy retrieval and on-demand hydration."""

import asyncio

import pytest

from grounded_chat.retrieval.lazy import (
    FullContentCache,
    LazyRetriever,
    build_id_filter,
    hydrate,
    identify_load_candidates,
    load_full_content,
    truncate_summary,
)

from conftest import FakeSearch

LONG_TEXT = "City lights at night reveal population density across continents. " * 5


def _retriever(search, budgeter, cache=None):
    return LazyRetriever(search, cache if cache is not None else FullContentCache(), budgeter, "idx", prefetch_count=4, summary_max_chars=20)


def test_build_id_filter_escapes_quotes():
    assert build_id_filter("a'b") == "id eq 'a''b'"
    assert build_id_filter("x", "lang eq 'en'") == "(lang eq 'en') and id eq 'x'"


def test_truncate_summary():
    assert truncate_summary("short", 10) == "short"
    assert truncate_summary("abcdefghij", 4) == "abcd…"


@pytest.mark.asyncio
async def test_search_returns_summaries_with_loaders(budgeter, make_reference):
    search = FakeSearch([make_reference("a", content=LONG_TEXT), make_reference("b", content="brief")])
    result = await _retriever(search, budgeter).search("lights", top=2, threshold=2.0)
    first = result.references[0]
    assert first.is_summary_only
    assert first.content == LONG_TEXT[:20] + "…"
    assert first.metadata["summary"] == first.content
    assert result.full_content_available is True
    assert result.summary_tokens > 0
    assert search.hybrid_calls[0]["top"] == 4


@pytest.mark.asyncio
async def test_loader_hydrates_by_id_and_caches(budgeter, make_reference):
    search = FakeSearch([make_reference("a", content=LONG_TEXT), make_reference("b", content="brief")])
    cache = FullContentCache()
    result = await _retriever(search, budgeter, cache).search("lights", top=2)
    content = await result.references[0].loader()
    assert content == LONG_TEXT
    assert search.hybrid_calls[-1]["filter"] == "id eq 'a'"
    assert search.hybrid_calls[-1]["top"] == 1

    calls_before = len(search.hybrid_calls)
    assert await result.references[0].loader() == LONG_TEXT
    assert len(search.hybrid_calls) == calls_before
    assert cache.get(("idx", "a")) == LONG_TEXT


@pytest.mark.asyncio
async def test_cache_single_flight():
    cache = FullContentCache()
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "full"

    results = await asyncio.gather(*(cache.load(("idx", "d"), fetch) for _ in range(5)))
    assert results == ["full"] * 5
    assert len(calls) == 1
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_cache_failed_load_caches_empty():
    cache = FullContentCache()

    async def fetch():
        raise RuntimeError("gone")

    assert await cache.load(("idx", "d"), fetch) == ""
    assert cache.get(("idx", "d")) == ""


def test_identify_load_candidates(make_reference):
    refs = [
        make_reference("a", content_state="summary"),
        make_reference("b"),
        make_reference("c", content_state="summary"),
        make_reference("d", content_state="summary"),
    ]
    assert identify_load_candidates(refs, [], coverage=0.9) == []
    assert identify_load_candidates(refs, ["Answer lacks detail on dates"], coverage=0.9) == [0, 2]
    assert identify_load_candidates(refs, [], coverage=0.2, limit=3) == [0, 2, 3]
    assert identify_load_candidates([], ["missing"], coverage=0.1) == []


@pytest.mark.asyncio
async def test_load_full_content_and_hydrate(make_reference):
    async def loader():
        return "the whole document"

    refs = [
        make_reference("a", content="summ", content_state="summary", loader=loader),
        make_reference("b", content="already full"),
    ]
    loaded = await load_full_content(refs, [0, 1, 7])
    assert loaded == {0: "the whole document", 1: "already full"}
    assert hydrate(refs, loaded) == 1
    assert refs[0].content == "the whole document"
    assert refs[0].content_state == "full"
