"""Typed view over raw completion stream events.

Each known event kind has its own dataclass and extractor. Anything else
becomes ``UnknownEvent``, whose text comes from a best-effort shallow scan
of top-level string fields. The scan is a last resort for provider shapes
this module does not know about; it never recurses.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ResponseCreated:
    response_id: str | None


@dataclass(frozen=True)
class OutputTextDelta:
    delta: str


@dataclass(frozen=True)
class OutputTextDone:
    text: str


@dataclass(frozen=True)
class OutputItemDone:
    """A finished output item; carries message text or reasoning summary parts."""

    text: str
    reasoning: tuple[str, ...]
    item_id: str | None


@dataclass(frozen=True)
class ReasoningFragment:
    key: tuple[str, int, int, int]
    text: str
    done: bool


@dataclass(frozen=True)
class ResponseCompleted:
    response_id: str | None
    output_text: str
    reasoning: tuple[str, ...]


@dataclass(frozen=True)
class ResponseFailed:
    message: str


@dataclass(frozen=True)
class UnknownEvent:
    type: str
    text: str


StreamEvent = (
    ResponseCreated
    | OutputTextDelta
    | OutputTextDone
    | OutputItemDone
    | ReasoningFragment
    | ResponseCompleted
    | ResponseFailed
    | UnknownEvent
)

SCAN_FIELDS = ("delta", "text", "output_text", "content")


def _str(value) -> str:
    return value if isinstance(value, str) else ""


def _int(value) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def reasoning_key(raw: dict) -> tuple[str, int, int, int]:
    return (
        _str(raw.get("item_id")),
        _int(raw.get("output_index")),
        _int(raw.get("summary_index")),
        _int(raw.get("content_index")),
    )


def message_text(item: dict) -> str:
    parts = item.get("content")
    if not isinstance(parts, list):
        return ""
    return "".join(
        p["text"]
        for p in parts
        if isinstance(p, dict) and p.get("type") in ("output_text", "text") and isinstance(p.get("text"), str)
    )


def reasoning_parts(item: dict) -> list[str]:
    parts = []
    for field_name in ("summary", "content"):
        entries = item.get(field_name)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, str):
                parts.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get("text"), str):
                parts.append(entry["text"])
    return [p for p in parts if p.strip()]


def extract_output_text(response: dict) -> str:
    """Final answer text from a full response payload."""
    text = response.get("output_text")
    if isinstance(text, str) and text:
        return text
    output = response.get("output")
    if not isinstance(output, list):
        return ""
    return "".join(message_text(item) for item in output if isinstance(item, dict) and item.get("type") == "message")


def extract_reasoning(response: dict) -> list[str]:
    output = response.get("output")
    if not isinstance(output, list):
        return []
    parts = []
    for item in output:
        if isinstance(item, dict) and item.get("type") == "reasoning":
            parts.extend(reasoning_parts(item))
    return parts


def shallow_scan(raw: dict) -> str:
    for name in SCAN_FIELDS:
        value = raw.get(name)
        if isinstance(value, str) and value:
            return value
    return ""


def parse_event(raw: dict) -> StreamEvent:
    kind = _str(raw.get("type"))

    if kind == "response.created":
        response = raw.get("response") or {}
        return ResponseCreated(response_id=_str(response.get("id")) or None)

    if kind == "response.output_text.delta":
        return OutputTextDelta(delta=_str(raw.get("delta")))

    if kind == "response.output_text.done":
        return OutputTextDone(text=_str(raw.get("text")))

    if kind == "response.output_item.done":
        item = raw.get("item") or {}
        if item.get("type") == "reasoning":
            return OutputItemDone(text="", reasoning=tuple(reasoning_parts(item)), item_id=_str(item.get("id")) or None)
        return OutputItemDone(text=message_text(item), reasoning=(), item_id=_str(item.get("id")) or None)

    if kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
        return ReasoningFragment(key=reasoning_key(raw), text=_str(raw.get("delta")), done=False)

    if kind in ("response.reasoning_summary_text.done", "response.reasoning_text.done"):
        return ReasoningFragment(key=reasoning_key(raw), text=_str(raw.get("text")), done=True)

    if kind == "response.reasoning_summary_part.done":
        part = raw.get("part") or {}
        return ReasoningFragment(key=reasoning_key(raw), text=_str(part.get("text")), done=True)

    if kind == "response.completed":
        response = raw.get("response") or {}
        return ResponseCompleted(
            response_id=_str(response.get("id")) or None,
            output_text=extract_output_text(response),
            reasoning=tuple(extract_reasoning(response)),
        )

    if kind in ("response.failed", "error"):
        error = raw.get("error") or (raw.get("response") or {}).get("error") or {}
        message = _str(error.get("message")) if isinstance(error, dict) else _str(error)
        return ResponseFailed(message=message or _str(raw.get("message")) or "stream failed")

    return UnknownEvent(type=kind, text=shallow_scan(raw))
