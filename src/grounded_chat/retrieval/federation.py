"""Weighted multi-index federated search."""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field, replace

from grounded_chat.models.domain import Reference
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.search import SearchService

logger = get_logger("federation")


@dataclass
class IndexConfig:
    name: str
    weight: float = 1.0
    type: str | None = None
    description: str | None = None


@dataclass
class FederatedResult:
    references: list[Reference]
    index_breakdown: dict[str, int] = field(default_factory=dict)


def _positive_weight(raw) -> float:
    try:
        weight = float(raw)
    except (TypeError, ValueError):
        return 1.0
    return weight if math.isfinite(weight) and weight > 0 else 1.0


def parse_index_config(raw: str) -> list[IndexConfig]:
    """Parse a JSON array of index objects, or the legacy ``name:weight:type;...`` form."""
    if not raw or not raw.strip():
        return []

    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None

    if isinstance(parsed, list):
        configs = []
        for entry in parsed:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            weight = entry.get("weight")
            configs.append(
                IndexConfig(
                    name=name.strip(),
                    weight=_positive_weight(weight) if isinstance(weight, (int, float)) else 1.0,
                    type=entry.get("type") if isinstance(entry.get("type"), str) else None,
                    description=(
                        entry.get("description")
                        if isinstance(entry.get("description"), str)
                        else None
                    ),
                )
            )
        return configs

    configs = []
    for segment in raw.split(";"):
        parts = [p.strip() for p in segment.strip().split(":")]
        if not parts or not parts[0]:
            continue
        weight = _positive_weight(parts[1]) if len(parts) > 1 and parts[1] else 1.0
        index_type = parts[2] if len(parts) > 2 and parts[2] else None
        configs.append(IndexConfig(name=parts[0], weight=weight, type=index_type))
    return configs


def resolve_indexes(primary_index: str, raw: str) -> list[IndexConfig]:
    """Primary index first with weight 1, then configured extras deduplicated by name."""
    indexes = [
        IndexConfig(
            name=primary_index,
            weight=1.0,
            type="primary",
            description="Primary search index",
        )
    ]
    seen = {primary_index}
    for entry in parse_index_config(raw):
        if entry.name not in seen:
            indexes.append(entry)
            seen.add(entry.name)
    return indexes


class FederatedSearcher:
    def __init__(self, search: SearchService, primary_index: str, index_config: str = "") -> None:
        self._search = search
        self._primary = primary_index
        self._indexes = resolve_indexes(primary_index, index_config)

    @property
    def indexes(self) -> list[IndexConfig]:
        return list(self._indexes)

    async def search(self, query: str, top: int, filter: str | None = None) -> FederatedResult:
        if len(self._indexes) <= 1:
            refs = await self._search.hybrid_search(query, top=top, filter=filter)
            return FederatedResult(references=refs, index_breakdown={self._primary: len(refs)})

        per_index = max(1, math.ceil(top * 1.5 / len(self._indexes)))

        async def query_index(index: IndexConfig) -> list[Reference] | None:
            try:
                return await self._search.hybrid_search(
                    query, top=per_index, filter=filter, index_name=index.name
                )
            except Exception as e:
                logger.warning("federated_index_failed", index=index.name, error=str(e))
                return None

        per_index_results = await asyncio.gather(*(query_index(ix) for ix in self._indexes))

        breakdown: dict[str, int] = {}
        weighted: list[Reference] = []
        for index, refs in zip(self._indexes, per_index_results):
            breakdown[index.name] = len(refs) if refs else 0
            for ref in refs or []:
                weighted.append(
                    replace(
                        ref,
                        score=(ref.score or 0.0) * index.weight,
                        metadata={
                            **ref.metadata,
                            "source_index": index.name,
                            "source_type": index.type or "unknown",
                            "source_weight": index.weight,
                        },
                    )
                )

        weighted.sort(key=lambda r: r.score or 0.0, reverse=True)
        unique: list[Reference] = []
        seen: set[str] = set()
        for ref in weighted:
            if ref.id in seen:
                continue
            seen.add(ref.id)
            unique.append(ref)
            if len(unique) >= top:
                break

        logger.info("federated_search", indexes=len(self._indexes), breakdown=breakdown)
        return FederatedResult(references=unique, index_breakdown=breakdown)
