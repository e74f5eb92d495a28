"""Feature gate resolution: config defaults, persisted session overrides, request overrides."""

from __future__ import annotations

from dataclasses import dataclass, field

from grounded_chat.config.settings import Settings

FEATURE_FLAGS: dict[str, str] = {
    "ENABLE_MULTI_INDEX_FEDERATION": "multi_index_federation",
    "ENABLE_LAZY_RETRIEVAL": "lazy_retrieval",
    "ENABLE_SEMANTIC_SUMMARY": "semantic_summary",
    "ENABLE_INTENT_ROUTING": "intent_routing",
    "ENABLE_SEMANTIC_MEMORY": "semantic_memory",
    "ENABLE_QUERY_DECOMPOSITION": "query_decomposition",
    "ENABLE_WEB_RERANKING": "web_reranking",
    "ENABLE_SEMANTIC_BOOST": "semantic_boost",
    "ENABLE_RESPONSE_STORAGE": "response_storage",
    "ENABLE_ADAPTIVE_RETRIEVAL": "adaptive_retrieval",
}


@dataclass
class FeatureGates:
    multi_index_federation: bool = False
    lazy_retrieval: bool = False
    semantic_summary: bool = False
    intent_routing: bool = True
    semantic_memory: bool = False
    query_decomposition: bool = False
    web_reranking: bool = False
    semantic_boost: bool = False
    response_storage: bool = False
    adaptive_retrieval: bool = False


@dataclass
class FeatureResolution:
    gates: FeatureGates
    resolved: dict[str, bool]
    sources: dict[str, str]
    overrides: dict[str, bool] | None = None
    persisted: dict[str, bool] | None = field(default=None)


def sanitize_feature_overrides(raw: dict | None) -> dict[str, bool] | None:
    """Keep only known flags with boolean values."""
    if not isinstance(raw, dict):
        return None
    cleaned = {k: v for k, v in raw.items() if k in FEATURE_FLAGS and isinstance(v, bool)}
    return cleaned or None


def resolve_feature_gates(
    settings: Settings,
    overrides: dict | None = None,
    persisted: dict | None = None,
) -> FeatureResolution:
    clean_overrides = sanitize_feature_overrides(overrides)
    clean_persisted = sanitize_feature_overrides(persisted)

    resolved = {
        flag: bool(getattr(settings, f"enable_{attr}")) for flag, attr in FEATURE_FLAGS.items()
    }
    sources = {flag: "config" for flag in FEATURE_FLAGS}

    for layer, source in ((clean_persisted, "persisted"), (clean_overrides, "override")):
        for flag, value in (layer or {}).items():
            resolved[flag] = value
            sources[flag] = source

    gates = FeatureGates(**{FEATURE_FLAGS[flag]: value for flag, value in resolved.items()})
    return FeatureResolution(
        gates=gates,
        resolved=resolved,
        sources=sources,
        overrides=clean_overrides,
        persisted=clean_persisted,
    )
