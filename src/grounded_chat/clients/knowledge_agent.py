"""Client for the search service's agentic retrieval ("knowledge agent") endpoint."""

from __future__ import annotations

import json
from urllib.parse import quote

from grounded_chat.clients.search_client import SearchClient
from grounded_chat.config.constants import KNOWLEDGE_AGENT_MAX_MESSAGES
from grounded_chat.config.settings import Settings
from grounded_chat.exceptions import RetrievalError
from grounded_chat.models.domain import ActivityStep, AgentMessage, KnowledgeAgentResult, Reference
from grounded_chat.observability.logger import get_logger
from grounded_chat.retrieval.grounding import apply_unified_grounding

logger = get_logger("knowledge_agent")

REFERENCE_ARRAYS = ("references", "citations", "documents", "items", "results")


def _first_str(record: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _first_number(record: dict, keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return value
    return None


def normalize_reference(entry, index: int) -> Reference:
    if not isinstance(entry, dict):
        return Reference(
            id=f"knowledge_{index + 1}",
            title=f"Knowledge Result {index + 1}",
            content=entry if isinstance(entry, str) else "",
            source_type="knowledge_agent",
        )

    ref_id = _first_str(entry, ("id", "chunkId", "sourceId", "documentId")) or f"knowledge_{index + 1}"
    title = _first_str(entry, ("title", "heading", "sourceTitle", "displayName")) or ref_id

    content = _first_str(entry, ("content", "text", "chunk", "body"))
    if not content and isinstance(entry.get("contents"), list):
        content = "\n\n".join(p for p in entry["contents"] if isinstance(p, str))
    if not content and isinstance(entry.get("preview"), str):
        content = entry["preview"]

    url = _first_str(entry, ("url", "href"))
    source = entry.get("source")
    if not url and isinstance(source, dict) and isinstance(source.get("url"), str):
        url = source["url"]

    page = _first_number(entry, ("pageNumber", "page"))
    nested = entry.get("metadata")
    if page is None and isinstance(nested, dict):
        page = _first_number(nested, ("pageNumber",))

    return Reference(
        id=ref_id,
        title=title,
        content=content or "",
        url=url,
        page_number=int(page) if page is not None else None,
        score=_first_number(entry, ("score", "confidence", "relevanceScore", "rank")),
        source_type="knowledge_agent",
        metadata=dict(entry),
    )


def extract_reference_candidates(payload: dict) -> list:
    candidates: list = []
    answer = payload.get("answer")
    for key in REFERENCE_ARRAYS:
        if isinstance(payload.get(key), list):
            candidates.extend(payload[key])
        if key == "citations" and isinstance(answer, dict) and isinstance(answer.get("citations"), list):
            candidates.extend(answer["citations"])
    return candidates


def normalize_references(payload: dict) -> list[Reference]:
    """Normalize every reference-like entry, skipping empty content and duplicates."""
    references: list[Reference] = []
    seen: set[str] = set()
    for i, candidate in enumerate(extract_reference_candidates(payload)):
        ref = normalize_reference(candidate, i)
        if not ref.content.strip():
            continue
        key = ref.id or f"{ref.url or ''}|{ref.page_number or ''}|{ref.content[:64]}"
        if key in seen:
            continue
        seen.add(key)
        references.append(ref)
    return references


def normalize_activity(payload: dict) -> list[ActivityStep]:
    raw = payload.get("activity")
    if not isinstance(raw, list):
        return []
    steps = []
    for i, step in enumerate(raw):
        if not isinstance(step, dict):
            steps.append(
                ActivityStep(
                    type="knowledge_agent_activity",
                    description=step if isinstance(step, str) else json.dumps(step),
                )
            )
            continue
        step_type = _first_str(step, ("type", "kind")) or f"knowledge_agent_step_{i + 1}"
        description = _first_str(step, ("description", "summary", "detail", "message"))
        if description is None:
            description = json.dumps({k: v for k, v in step.items() if v is not None}, indent=2)
        timestamp = _first_str(step, ("timestamp", "time"))
        if timestamp:
            steps.append(ActivityStep(type=step_type, description=description, timestamp=timestamp))
        else:
            steps.append(ActivityStep(type=step_type, description=description))
    return steps


def extract_answer(payload: dict) -> str | None:
    answer = payload.get("answer")
    if isinstance(answer, str) and answer:
        return answer
    if isinstance(answer, dict) and isinstance(answer.get("text"), str) and answer["text"]:
        return answer["text"]
    response = payload.get("response")
    if isinstance(response, str) and response:
        return response
    return None


class KnowledgeAgentClient:
    def __init__(self, search_client: SearchClient, settings: Settings) -> None:
        self._search = search_client
        self._settings = settings

    def _url(self) -> str:
        name = quote(self._settings.knowledge_agent_name, safe="")
        return (
            f"{self._settings.search_endpoint.rstrip('/')}/agents('{name}')/search"
            f"?api-version={self._settings.knowledge_agent_api_version}"
        )

    async def retrieve(
        self,
        messages: list[AgentMessage],
        top: int,
        filter: str | None = None,
    ) -> KnowledgeAgentResult:
        history = [
            {"role": m.role, "content": [{"type": "text", "text": m.content}]}
            for m in messages
            if m.role != "system" and m.content.strip()
        ][-KNOWLEDGE_AGENT_MAX_MESSAGES:]
        if not history:
            raise RetrievalError("Knowledge agent invocation requires non-empty message history.")

        options = {
            "top": top,
            "filter": filter,
            "includeActivity": True,
            "includeReferences": True,
            "includeReferenceSourceData": True,
            "attemptFastPath": False,
        }
        payload = {
            "messages": history,
            "options": {k: v for k, v in options.items() if v is not None},
        }
        data = await self._search.request("knowledge-agent-search", self._url(), payload)
        if not isinstance(data, dict):
            data = {}

        references = normalize_references(data)
        grounding = apply_unified_grounding(data, references)
        activity = normalize_activity(data)
        if grounding and grounding.unmatched:
            activity.append(
                ActivityStep(
                    type="knowledge_agent_grounding_warning",
                    description=f"Unified grounding parsing left {len(grounding.unmatched)} id(s) unmatched.",
                )
            )

        logger.info(
            "knowledge_agent_completed",
            references=len(references),
            activity=len(activity),
            grounded=bool(grounding and grounding.mapping),
        )
        return KnowledgeAgentResult(
            references=references,
            activity=activity,
            answer=extract_answer(data),
            grounding=grounding.to_dict() if grounding else None,
        )
