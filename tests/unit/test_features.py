"""Tests for feature gate resolution."""

from grounded_chat.config.features import (
    FEATURE_FLAGS,
    resolve_feature_gates,
    sanitize_feature_overrides,
)


def test_sanitize_drops_unknown_and_non_bool():
    raw = {"ENABLE_LAZY_RETRIEVAL": True, "ENABLE_TELEPORT": True, "ENABLE_SEMANTIC_BOOST": "yes"}
    assert sanitize_feature_overrides(raw) == {"ENABLE_LAZY_RETRIEVAL": True}
    assert sanitize_feature_overrides({"nope": 1}) is None
    assert sanitize_feature_overrides(None) is None


def test_config_defaults(settings):
    resolution = resolve_feature_gates(settings)
    assert resolution.gates.intent_routing is True
    assert resolution.gates.lazy_retrieval is False
    assert set(resolution.sources.values()) == {"config"}
    assert set(resolution.resolved) == set(FEATURE_FLAGS)


def test_override_beats_persisted_beats_config(settings):
    persisted = {"ENABLE_LAZY_RETRIEVAL": True, "ENABLE_SEMANTIC_BOOST": True}
    overrides = {"ENABLE_SEMANTIC_BOOST": False}
    resolution = resolve_feature_gates(settings, overrides, persisted)
    assert resolution.gates.lazy_retrieval is True
    assert resolution.sources["ENABLE_LAZY_RETRIEVAL"] == "persisted"
    assert resolution.gates.semantic_boost is False
    assert resolution.sources["ENABLE_SEMANTIC_BOOST"] == "override"
    assert resolution.sources["ENABLE_INTENT_ROUTING"] == "config"
    assert resolution.overrides == {"ENABLE_SEMANTIC_BOOST": False}
