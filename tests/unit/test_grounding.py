"""Tests for unified grounding mapping."""

import json

from grounded_chat.config.constants import GROUNDING_MAX_DEPTH
from grounded_chat.retrieval.grounding import apply_unified_grounding, parse_grounding_source, to_string_list


def test_maps_grounding_ids_to_references(make_reference):
    refs = [make_reference("doc-1"), make_reference("doc-2")]
    payload = {
        "answer": {
            "unified_grounding": {
                "grounding": [
                    {"groundingId": "g1", "chunkId": "doc-1"},
                    {"groundingId": "g2", "chunkId": "zzz"},
                ]
            }
        }
    }
    summary = apply_unified_grounding(payload, refs)
    assert summary.mapping == {"g1": "doc-1"}
    assert summary.unmatched == ["g2"]
    assert refs[0].metadata["unifiedGroundingIds"] == ["g1"]
    assert "unifiedGroundingIds" not in refs[1].metadata


def test_string_payload_is_decoded(make_reference):
    refs = [make_reference("doc-9")]
    grounding = json.dumps({"grounding": [{"groundingId": "g9", "documentId": "doc-9"}]})
    summary = apply_unified_grounding({"grounding": grounding}, refs)
    assert summary.mapping == {"g9": "doc-9"}


def test_citation_links_recorded(make_reference):
    refs = [make_reference("doc-1")]
    payload = {
        "unified_grounding": {
            "grounding": [{"groundingId": "g1", "chunkId": "doc-1"}],
            "citations": [{"citationId": "c1", "groundingIds": ["g1"]}],
        }
    }
    summary = apply_unified_grounding(payload, refs)
    assert summary.citation_map == {"c1": ["g1"]}
    assert summary.to_dict()["citationMap"] == {"c1": ["g1"]}


def test_existing_ids_are_merged(make_reference):
    refs = [make_reference("doc-1", metadata={"unifiedGroundingIds": ["g0"]})]
    apply_unified_grounding({"grounding": [{"groundingId": "g1", "chunkId": "doc-1"}]}, refs)
    assert refs[0].metadata["unifiedGroundingIds"] == ["g0", "g1"]


def test_missing_or_garbled_grounding_returns_none(make_reference):
    refs = [make_reference("doc-1")]
    assert apply_unified_grounding({"answer": "plain"}, refs) is None
    assert apply_unified_grounding({"grounding": "{not json"}, refs) is None
    assert parse_grounding_source("nope") is None


def test_to_string_list_shapes():
    assert to_string_list(["a", " ", 3, {"id": "x"}]) == ["a", "3", "x"]
    assert to_string_list("a, b  c") == ["a", "b", "c"]
    assert to_string_list(2.0) == ["2"]
    assert to_string_list(None) == []


def _nest(node, levels):
    for _ in range(levels):
        node = {"level": node}
    return node


def test_grounding_found_at_depth_cap(make_reference):
    refs = [make_reference("doc-1")]
    payload = {"grounding": _nest({"groundingId": "g-deep", "chunkId": "doc-1"}, GROUNDING_MAX_DEPTH)}
    summary = apply_unified_grounding(payload, refs)
    assert summary.mapping == {"g-deep": "doc-1"}


def test_grounding_beyond_depth_cap_is_ignored(make_reference):
    entry = {"groundingId": "g-deep", "chunkId": "doc-1"}
    refs = [make_reference("doc-1")]
    assert apply_unified_grounding({"grounding": _nest(entry, GROUNDING_MAX_DEPTH + 1)}, refs) is None
    assert apply_unified_grounding({"grounding": _nest(entry, 5000)}, refs) is None
    assert "unifiedGroundingIds" not in refs[0].metadata
