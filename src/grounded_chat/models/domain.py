"""Core domain objects used throughout the system."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class AgentMessage:
    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class Reference:
    id: str
    title: str
    content: str
    url: str | None = None
    page_number: int | None = None
    score: float | None = None
    highlights: dict | None = None
    source_type: str = "search"  # "search", "knowledge_agent", "fallback_vector", "web"
    metadata: dict = field(default_factory=dict)
    content_state: str = "full"  # "full" or "summary" (lazy, not yet hydrated)
    summary_tokens: int | None = None
    loader: Callable[[], Awaitable[str]] | None = field(default=None, repr=False, compare=False)

    @property
    def is_summary_only(self) -> bool:
        return self.content_state == "summary"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "url": self.url,
            "pageNumber": self.page_number,
            "score": self.score,
            "highlights": self.highlights,
            "sourceType": self.source_type,
            "contentState": self.content_state,
            "metadata": self.metadata,
        }


@dataclass
class WebResult:
    id: str
    title: str
    snippet: str
    url: str
    body: str | None = None
    rank: int | None = None
    relevance: float | None = None
    fetched_at: str | None = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "snippet": self.snippet,
            "url": self.url,
            "body": self.body,
            "rank": self.rank,
            "relevance": self.relevance,
            "fetchedAt": self.fetched_at,
        }


@dataclass(frozen=True)
class PlanStep:
    action: str  # "vector_search", "web_search", "both", "answer"
    query: str | None = None
    k: int | None = None


@dataclass(frozen=True)
class Plan:
    confidence: float
    steps: tuple[PlanStep, ...]

    def to_dict(self) -> dict:
        return {
            "confidence": self.confidence,
            "steps": [
                {k: v for k, v in {"action": s.action, "query": s.query, "k": s.k}.items() if v is not None}
                for s in self.steps
            ],
        }


@dataclass
class CriticReport:
    grounded: bool
    coverage: float
    issues: list[str] = field(default_factory=list)
    action: str = "accept"  # "accept" or "revise"
    forced: bool = False

    def to_dict(self) -> dict:
        return {
            "grounded": self.grounded,
            "coverage": self.coverage,
            "issues": list(self.issues),
            "action": self.action,
            "forced": self.forced,
        }


@dataclass
class ActivityStep:
    type: str
    description: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {"type": self.type, "description": self.description, "timestamp": self.timestamp}


@dataclass(frozen=True)
class RetrievalDiagnostics:
    """Per-turn retrieval facts. Built once after dispatch and never mutated."""

    attempted: str
    succeeded: bool
    documents: int
    retry_count: int = 0
    mean_score: float | None = None
    min_score: float | None = None
    max_score: float | None = None
    threshold_used: float | None = None
    fallback_reason: str | None = None
    escalated: bool = False
    mode: str = "direct"
    threshold_history: tuple[float, ...] = ()

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "documents": self.documents,
            "retryCount": self.retry_count,
            "meanScore": self.mean_score,
            "minScore": self.min_score,
            "maxScore": self.max_score,
            "thresholdUsed": self.threshold_used,
            "fallbackReason": self.fallback_reason,
            "escalated": self.escalated,
            "mode": self.mode,
            "thresholdHistory": list(self.threshold_history),
        }


@dataclass
class SalienceNote:
    fact: str
    last_seen_turn: int
    topic: str | None = None


@dataclass
class SummaryBullet:
    text: str
    embedding: list[float] | None = None


@dataclass
class SummarySelectionStats:
    mode: str  # "semantic" or "recency"
    total_candidates: int
    selected_count: int
    discarded_count: int
    used_fallback: bool
    max_score: float | None = None
    min_score: float | None = None
    mean_score: float | None = None
    max_selected_score: float | None = None
    min_selected_score: float | None = None
    error: str | None = None


@dataclass
class SessionMemory:
    summary_bullets: list[str]
    salience: list[SalienceNote]


@dataclass
class SemanticMemory:
    id: int
    text: str
    type: str  # "episodic", "semantic", "procedural", "preference"
    embedding: list[float]
    metadata: dict
    usage_count: int
    created_at: datetime
    last_accessed_at: datetime
    session_id: str | None = None
    user_id: str | None = None
    tags: list[str] = field(default_factory=list)
    similarity: float | None = None


@dataclass
class RouteProfile:
    intent: str
    model: str
    retriever_strategy: str  # "hybrid", "vector", "web", "hybrid+web"
    max_tokens: int
    prompt_hint: str = ""


@dataclass
class RouteDecision:
    intent: str
    confidence: float
    reasoning: str
    profile: RouteProfile


@dataclass
class SubQuery:
    id: int
    query: str
    dependencies: list[int] = field(default_factory=list)
    reasoning: str = ""


@dataclass
class ComplexityAssessment:
    complexity: float
    needs_decomposition: bool
    reasoning: str


@dataclass
class DecomposedQuery:
    original: str
    sub_queries: list[SubQuery]
    synthesis_prompt: str


@dataclass
class SubQueryResult:
    sub_query: SubQuery
    references: list[Reference]
    web_results: list[WebResult]


@dataclass
class RetrievalOutcome:
    """What a retrieval strategy hands back to the dispatcher."""

    references: list[Reference]
    activity: list[ActivityStep] = field(default_factory=list)
    mode: str = "direct"
    threshold_used: float | None = None
    threshold_history: list[float] = field(default_factory=list)
    fallback_attempts: int = 0
    fallback_triggered: bool = False
    answer: str | None = None
    diagnostics: dict = field(default_factory=dict)


@dataclass
class Trace:
    trace_id: str
    session_id: str
    question: str
    timestamp: datetime
    latency_ms: float
    answer: str
    refused: bool
    intent: str
    critic: dict
    retrieval: dict
    spans: list[dict]


@dataclass
class KnowledgeAgentResult:
    references: list[Reference]
    activity: list[ActivityStep]
    answer: str | None = None
    grounding: dict | None = None
