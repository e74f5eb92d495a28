"""Metric recording helpers for turns."""

from __future__ import annotations

from grounded_chat.models.domain import CriticReport, RetrievalDiagnostics
from grounded_chat.observability.logger import get_logger

logger = get_logger("metrics")


def log_retrieval_metrics(trace_id: str, diagnostics: RetrievalDiagnostics, web_results: int) -> None:
    logger.info(
        "retrieval_metrics",
        trace_id=trace_id,
        attempted=diagnostics.attempted,
        documents=diagnostics.documents,
        web_results=web_results,
        mean_score=round(diagnostics.mean_score, 4) if diagnostics.mean_score is not None else None,
        fallback_reason=diagnostics.fallback_reason,
        escalated=diagnostics.escalated,
    )


def log_critic_metrics(trace_id: str, critic: CriticReport | None, attempts: int, refused: bool) -> None:
    logger.info(
        "critic_metrics",
        trace_id=trace_id,
        grounded=critic.grounded if critic else None,
        coverage=round(critic.coverage, 4) if critic else None,
        action=critic.action if critic else None,
        attempts=attempts,
        refused=refused,
    )


def log_latency(trace_id: str, stage: str, duration_ms: float) -> None:
    logger.info(
        "latency",
        trace_id=trace_id,
        stage=stage,
        duration_ms=round(duration_ms, 2),
    )
