"""Retry with exponential backoff and per-attempt timeout for collaborator calls."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from grounded_chat.exceptions import SearchServiceError
from grounded_chat.observability.logger import get_logger
from grounded_chat.observability.telemetry import OperationRecord, TelemetryLog

logger = get_logger("resilience")

T = TypeVar("T")

DEFAULT_RETRYABLE = ("ECONNRESET", "ETIMEDOUT", "429", "503", "AbortError", "Timeout")


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    timeout_ms: int = 30000
    retryable_markers: tuple[str, ...] = DEFAULT_RETRYABLE

    def backoff_ms(self, attempt: int) -> int:
        return min(self.initial_delay_ms * 2 ** (attempt - 1), self.max_delay_ms)


def is_retryable(error: BaseException, markers: tuple[str, ...]) -> bool:
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (429, 503)
    if isinstance(error, SearchServiceError) and error.status is not None:
        return error.status in (429, 503)
    text = f"{type(error).__name__} {error}"
    return any(marker in text for marker in markers)


async def with_retry(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    telemetry: TelemetryLog | None = None,
) -> T:
    """Run ``fn`` with a timeout per attempt, retrying retryable failures.

    Non-retryable errors and the final failure are re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(fn(), timeout=policy.timeout_ms / 1000)
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            if telemetry is not None:
                telemetry.record_operation(
                    OperationRecord(operation, attempt, round(duration_ms, 2), False, str(e) or type(e).__name__)
                )
            if attempt > policy.max_retries or not is_retryable(e, policy.retryable_markers):
                logger.error("operation_failed", operation=operation, attempt=attempt, error=str(e))
                raise
            delay_ms = policy.backoff_ms(attempt)
            logger.warning(
                "operation_retry",
                operation=operation,
                attempt=attempt,
                delay_ms=delay_ms,
                error=str(e),
            )
            await asyncio.sleep(delay_ms / 1000)
            continue

        if telemetry is not None:
            duration_ms = (time.monotonic() - start) * 1000
            telemetry.record_operation(OperationRecord(operation, attempt, round(duration_ms, 2), True))
        return result
