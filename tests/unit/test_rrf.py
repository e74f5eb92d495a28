"""Tests for Reciprocal Rank Fusion and semantic boosting."""

import pytest

from grounded_chat.retrieval.rrf import (
    apply_semantic_boost,
    fuse_sources,
    reciprocal_rank_fusion,
    web_result_key,
)


def test_rrf_single_list():
    results = [("a", 0.9), ("b", 0.8), ("c", 0.7)]
    fused = reciprocal_rank_fusion([results], k=60)
    assert [cid for cid, _ in fused] == ["a", "b", "c"]
    assert fused[0][1] == pytest.approx(1 / 61)


def test_rrf_disjoint_lists_tie_keeps_first_seen():
    fused = reciprocal_rank_fusion([[("a", 0.9)], [("b", 0.9)]], k=60)
    assert [cid for cid, _ in fused] == ["a", "b"]
    assert fused[0][1] == fused[1][1]


def test_rrf_empty():
    assert reciprocal_rank_fusion([[]], k=60) == []


def test_rrf_overlap_sums_contributions():
    fused = dict(reciprocal_rank_fusion([[("a", 1), ("b", 1)], [("b", 1)]], k=60))
    assert fused["b"] == pytest.approx(1 / 62 + 1 / 61)
    assert fused["b"] > fused["a"]


def test_rrf_better_rank_never_scores_lower():
    ranked = [(f"d{i}", 0.0) for i in range(10)]
    scores = [score for _, score in reciprocal_rank_fusion([ranked], k=60)]
    assert scores == sorted(scores, reverse=True)
    assert len(set(scores)) == len(scores)


def test_fuse_sources_merges_references_and_web(make_reference, make_web_result):
    refs = [make_reference("d1"), make_reference("d2")]
    webs = [make_web_result("w1"), make_web_result("w2", rank=2)]
    fused = fuse_sources(refs, webs, k=60)
    assert [f.id for f in fused] == ["d1", "w1", "d2", "w2"]
    assert fused[0].source == "reference"
    assert fused[1].source == "web"
    assert fused[1].ranks == {"web": 1}
    assert "Snippet for w1" in fused[1].text


def test_web_result_key_falls_back_to_url_then_index(make_web_result):
    assert web_result_key(make_web_result("w1"), 0) == "w1"
    assert web_result_key(make_web_result("", url="https://x"), 0) == "https://x"
    assert web_result_key(make_web_result("", url=""), 3) == "web-3"


def test_semantic_boost_reorders_by_similarity(make_reference):
    fused = fuse_sources([make_reference("d1"), make_reference("d2")], [], k=60)
    boosted = apply_semantic_boost(fused, [1.0, 0.0], [[0.0, 1.0], [1.0, 0.0]], weight=0.5)
    assert boosted[0].id == "d2"
    assert boosted[0].score == pytest.approx((1 / 62) * 0.5 + 0.5)
