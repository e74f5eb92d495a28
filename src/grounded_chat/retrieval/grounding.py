"""Map unified grounding payloads from the knowledge agent onto references."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field

from grounded_chat.config.constants import (
    CITATION_HINTS,
    GROUNDING_HINTS,
    GROUNDING_MAX_DEPTH,
    IDENTIFIER_KEYWORDS,
)
from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger

logger = get_logger("grounding")

_KEY_SPLIT = re.compile(r"[#:@|]")
_LIST_SPLIT = re.compile(r"[,\s]+")

GROUNDING_ID_KEYS = ["groundingId", "grounding_id", "groundingReference", "grounding_reference"]
CHUNK_ID_KEYS = [
    "chunkId",
    "chunk_id",
    "chunk",
    "retrievalId",
    "retrieval_id",
    "chunkReference",
    "chunk_reference",
]
DOCUMENT_ID_KEYS = ["documentId", "document_id", "docId", "doc_id"]
SOURCE_ID_KEYS = ["sourceId", "source_id", "sourceDocumentId", "source_document_id"]
CITATION_ID_KEYS = ["citationId", "citation_id", "citation", "id", "slot", "index", "name"]


@dataclass
class GroundingEntry:
    grounding_id: str
    chunk_id: str | None = None
    document_id: str | None = None
    source_id: str | None = None
    citation_ids: set[str] = field(default_factory=set)

    def merge(self, other: GroundingEntry) -> None:
        self.chunk_id = self.chunk_id or other.chunk_id
        self.document_id = self.document_id or other.document_id
        self.source_id = self.source_id or other.source_id


@dataclass
class GroundingSummary:
    mapping: dict[str, str]
    citation_map: dict[str, list[str]]
    unmatched: list[str]

    def to_dict(self) -> dict:
        return {
            "mapping": dict(self.mapping),
            "citationMap": {k: list(v) for k, v in self.citation_map.items()},
            "unmatched": list(self.unmatched),
        }


@dataclass
class _VisitState:
    entries: dict[str, GroundingEntry] = field(default_factory=dict)
    citations: dict[str, set[str]] = field(default_factory=dict)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number_str(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def pick_string(record: dict, keys: list[str]) -> str | None:
    """First non-empty string (or finite number) among ``keys``."""
    for key in keys:
        if key not in record:
            continue
        value = record[key]
        if isinstance(value, str) and value.strip():
            return value.strip()
        if _is_number(value) and math.isfinite(value):
            return _number_str(value)
    return None


def to_string_list(value) -> list[str]:
    if isinstance(value, list):
        results = []
        for element in value:
            if isinstance(element, str):
                if element.strip():
                    results.append(element.strip())
            elif _is_number(element):
                results.append(_number_str(element))
            elif isinstance(element, dict):
                inner = pick_string(element, ["id", "groundingId", "grounding_id"])
                if inner:
                    results.append(inner)
        return results
    if isinstance(value, str):
        return [t for t in _LIST_SPLIT.split(value) if t.strip()]
    if _is_number(value):
        return [_number_str(value)]
    if isinstance(value, dict):
        candidate = pick_string(value, ["id", "groundingId", "grounding_id"])
        return [candidate] if candidate else []
    return []


def _extract_entry(record: dict, likely_grounding: bool) -> GroundingEntry | None:
    grounding_id = pick_string(record, GROUNDING_ID_KEYS)
    if not grounding_id and likely_grounding:
        grounding_id = pick_string(record, ["id", "identifier"])
    if not grounding_id:
        return None
    return GroundingEntry(
        grounding_id=grounding_id,
        chunk_id=pick_string(record, CHUNK_ID_KEYS),
        document_id=pick_string(record, DOCUMENT_ID_KEYS),
        source_id=pick_string(record, SOURCE_ID_KEYS),
    )


def _has_hint(segments: list[str], hints: tuple[str, ...]) -> bool:
    return any(hint in segment for segment in segments for hint in hints)


def _register_entry(state: _VisitState, entry: GroundingEntry) -> None:
    existing = state.entries.get(entry.grounding_id)
    if existing:
        existing.merge(entry)
    else:
        state.entries[entry.grounding_id] = entry


def _visit(node, state: _VisitState, path: list[str], depth: int = 0) -> None:
    if not node or depth > GROUNDING_MAX_DEPTH:
        return
    if isinstance(node, list):
        for item in node:
            _visit(item, state, path, depth + 1)
        return
    if not isinstance(node, dict):
        return

    keys = list(node.keys())
    lower_keys = [str(k).lower() for k in keys]
    path_hints = [segment.lower() for segment in path]

    if _has_hint(path_hints, GROUNDING_HINTS) or _has_hint(lower_keys, GROUNDING_HINTS):
        entry = _extract_entry(node, likely_grounding=True)
        if entry:
            _register_entry(state, entry)
    else:
        entry = _extract_entry(node, likely_grounding=False)
        if entry and any("ground" in k for k in lower_keys):
            _register_entry(state, entry)

    if _has_hint(path_hints, CITATION_HINTS) or _has_hint(lower_keys, CITATION_HINTS):
        citation_id = pick_string(node, CITATION_ID_KEYS)
        referenced: set[str] = set()
        direct = pick_string(node, ["groundingId", "grounding_id"])
        if direct:
            referenced.add(direct)
        for key in keys:
            if "ground" in str(key).lower():
                referenced.update(to_string_list(node[key]))
        if citation_id and referenced:
            state.citations.setdefault(citation_id, set()).update(referenced)
            for grounding_id in referenced:
                entry = state.entries.get(grounding_id)
                if entry is None:
                    entry = GroundingEntry(grounding_id=grounding_id)
                    state.entries[grounding_id] = entry
                entry.citation_ids.add(citation_id)

    for key in keys:
        value = node[key]
        if value is not None:
            _visit(value, state, [*path, str(key)], depth + 1)


def parse_grounding_source(payload: dict):
    """Locate the grounding block in a response; string forms are JSON-decoded."""
    if not isinstance(payload, dict):
        return None
    answer = payload.get("answer") if isinstance(payload.get("answer"), dict) else {}
    candidate = (
        answer.get("unified_grounding")
        or answer.get("grounding")
        or payload.get("unified_grounding")
        or payload.get("grounding")
    )
    if not candidate:
        return None
    if isinstance(candidate, str):
        trimmed = candidate.strip()
        if not trimmed:
            return None
        attempts = [trimmed]
        if len(trimmed) >= 2 and trimmed.startswith('"') and trimmed.endswith('"'):
            attempts.append(trimmed[1:-1])
        for attempt in attempts:
            try:
                return json.loads(attempt)
            except ValueError:
                continue
        return None
    if isinstance(candidate, (dict, list)):
        return candidate
    return None


def collect_metadata_identifiers(metadata, depth: int = 0) -> list[str]:
    if not isinstance(metadata, dict) or depth > 2:
        return []
    results: list[str] = []
    for key, value in metadata.items():
        if value is None:
            continue
        lower_key = str(key).lower()
        if isinstance(value, str):
            if any(hint in lower_key for hint in IDENTIFIER_KEYWORDS) and value.strip():
                results.append(value.strip())
        elif _is_number(value):
            if "id" in lower_key:
                results.append(_number_str(value))
        elif isinstance(value, list) and depth < 2:
            for candidate in value[:8]:
                if isinstance(candidate, str):
                    if candidate.strip():
                        results.append(candidate.strip())
                elif isinstance(candidate, dict):
                    results.extend(collect_metadata_identifiers(candidate, depth + 1))
        elif isinstance(value, dict) and depth < 2:
            results.extend(collect_metadata_identifiers(value, depth + 1))
    return results


def _lookup_keys(value: str | None, split: bool = True) -> list[str]:
    if not value or not value.strip():
        return []
    keys = [value.strip().lower()]
    if split:
        for part in _KEY_SPLIT.split(value):
            token = part.strip()
            if len(token) >= 3:
                keys.append(token.lower())
    return keys


def build_reference_index(references: list[Reference]) -> dict[str, list[int]]:
    index: dict[str, list[int]] = {}
    for position, ref in enumerate(references):
        values = [ref.id, *collect_metadata_identifiers(ref.metadata)]
        for value in values:
            for key in _lookup_keys(value):
                bucket = index.setdefault(key, [])
                if position not in bucket:
                    bucket.append(position)
    return index


def _candidate_keys(entry: GroundingEntry) -> list[str]:
    candidates: list[str] = []
    for value in (entry.grounding_id, entry.chunk_id, entry.document_id, entry.source_id):
        candidates.extend(_lookup_keys(value))
    for citation_id in entry.citation_ids:
        candidates.extend(_lookup_keys(citation_id, split=False))
    return list(dict.fromkeys(candidates))


def _match(entry: GroundingEntry, index: dict[str, list[int]]) -> int | None:
    for key in _candidate_keys(entry):
        matches = index.get(key)
        if matches:
            return matches[0]
    return None


def apply_unified_grounding(payload: dict, references: list[Reference]) -> GroundingSummary | None:
    """Attach grounding ids to matching references.

    Each matched reference gets ``metadata["unifiedGroundingIds"]`` merged
    with the ids that resolved to it. Returns None when the payload has no
    recognizable grounding block.
    """
    parsed = parse_grounding_source(payload)
    if not isinstance(parsed, (dict, list)):
        return None

    state = _VisitState()
    _visit(parsed, state, [])
    if not state.entries and not state.citations:
        return None

    index = build_reference_index(references)
    mapping: dict[str, str] = {}
    unmatched: list[str] = []
    per_reference: dict[int, list[str]] = {}

    for entry in state.entries.values():
        position = _match(entry, index)
        if position is None:
            unmatched.append(entry.grounding_id)
            continue
        ref = references[position]
        mapping[entry.grounding_id] = (ref.id or "").strip() or f"knowledge_{position + 1}"
        ids = per_reference.setdefault(position, [])
        if entry.grounding_id not in ids:
            ids.append(entry.grounding_id)

    for position, ids in per_reference.items():
        ref = references[position]
        existing = ref.metadata.get("unifiedGroundingIds")
        existing = existing if isinstance(existing, list) else []
        ref.metadata["unifiedGroundingIds"] = list(dict.fromkeys([*existing, *ids]))

    if unmatched:
        logger.info("grounding_unmatched", unmatched=len(unmatched), matched=len(mapping))

    return GroundingSummary(
        mapping=mapping,
        citation_map={cid: sorted(ids) for cid, ids in state.citations.items()},
        unmatched=unmatched,
    )
