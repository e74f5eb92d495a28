"""Citation enumeration and citation integrity validation."""

from __future__ import annotations

import re
from dataclasses import dataclass

from grounded_chat.config.constants import (
    CITATION_VALIDATION_FAILED_ANSWER,
    EMPTY_ANSWER,
    NO_CITATIONS_ANSWER,
)
from grounded_chat.models.domain import Reference, WebResult

CITATION_MARKER = re.compile(r"\[(\d+)\]")


@dataclass(frozen=True)
class CitationEntry:
    number: int
    kind: str  # "reference" or "web"
    index: int
    source: Reference | WebResult

    @property
    def title(self) -> str:
        return self.source.title or ""

    @property
    def url(self) -> str | None:
        return self.source.url or None

    def resolve_text(self) -> str:
        """Evidence text backing this citation, or "" when there is none."""
        src = self.source
        if isinstance(src, Reference):
            candidates = [src.content, src.metadata.get("summary"), src.metadata.get("snippet"), src.title]
        else:
            candidates = [src.snippet, src.body, src.title]
        for candidate in candidates:
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return ""

    def to_dict(self) -> dict:
        data = {
            "number": self.number,
            "kind": self.kind,
            "index": self.index,
            "id": self.source.id,
            "title": self.title,
            "url": self.url,
        }
        if isinstance(self.source, Reference):
            data["pageNumber"] = self.source.page_number
            data["score"] = self.source.score
            data["sourceType"] = self.source.source_type
            data["contentState"] = self.source.content_state
        else:
            data["rank"] = self.source.rank
        return data


class CitationEnumeration:
    """Fixed 1-based numbering of evidence: references first, then web results.

    Built once per turn before synthesis. The same object renders the
    numbering shown to the generator and answers every validation lookup.
    """

    def __init__(self, entries: tuple[CitationEntry, ...] = ()) -> None:
        self._entries = entries

    @classmethod
    def build(cls, references: list[Reference], web_results: list[WebResult]) -> CitationEnumeration:
        entries: list[CitationEntry] = []
        for i, ref in enumerate(references):
            entries.append(CitationEntry(len(entries) + 1, "reference", i, ref))
        for i, web in enumerate(web_results):
            entries.append(CitationEntry(len(entries) + 1, "web", i, web))
        return cls(tuple(entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def get(self, number: int) -> CitationEntry | None:
        if 1 <= number <= len(self._entries):
            return self._entries[number - 1]
        return None

    def numbers_for(self, kind: str) -> list[int]:
        return [e.number for e in self._entries if e.kind == kind]

    def references_block(self) -> str:
        if not self._entries:
            return ""
        lines = ["References:"]
        for entry in self._entries:
            suffix = f" ({entry.url})" if entry.url else ""
            lines.append(f"[{entry.number}] {entry.title}{suffix}")
        return "\n".join(lines)

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self._entries]


def citation_markers(text: str) -> list[int]:
    return [int(m) for m in CITATION_MARKER.findall(text)]


def unknown_citations(text: str, enumeration: CitationEnumeration) -> list[int]:
    """Marker numbers in ``text`` with no entry in the enumeration."""
    return [n for n in citation_markers(text) if enumeration.get(n) is None]


def validate_citations(answer: str, enumeration: CitationEnumeration) -> bool:
    """Every marker must resolve to an entry with evidence text.

    An answer without any marker fails. References carrying a
    ``unifiedGroundingIds`` key must have at least one non-empty id.
    """
    numbers = citation_markers(answer)
    if not numbers:
        return False
    for number in numbers:
        entry = enumeration.get(number)
        if entry is None or not entry.resolve_text():
            return False
        if isinstance(entry.source, Reference) and "unifiedGroundingIds" in entry.source.metadata:
            ids = entry.source.metadata["unifiedGroundingIds"]
            if not isinstance(ids, list) or not any(isinstance(i, str) and i.strip() for i in ids):
                return False
    return True


def finalize_answer(answer: str, enumeration: CitationEnumeration) -> tuple[str, str | None]:
    """Apply the final citation rules; returns (answer, failure_reason)."""
    if not answer or not answer.strip():
        return EMPTY_ANSWER, "empty"
    if len(enumeration) == 0:
        return answer, None
    if not citation_markers(answer):
        return NO_CITATIONS_ANSWER, "no_citations"
    if not validate_citations(answer, enumeration):
        return CITATION_VALIDATION_FAILED_ANSWER, "validation_failed"
    return answer, None
