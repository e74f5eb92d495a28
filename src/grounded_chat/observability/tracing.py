"""Per-turn tracing with timed spans."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from grounded_chat.models.domain import Trace


@dataclass
class Span:
    name: str
    start_ms: float
    end_ms: float = 0.0
    metadata: dict = field(default_factory=dict)
    error: str | None = None

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms

    def set(self, **attributes) -> None:
        self.metadata.update(attributes)

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "duration_ms": self.duration_ms,
            **self.metadata,
        }
        if self.error:
            data["error"] = self.error
        return data


class TraceContext:
    def __init__(self, trace_id: str | None = None, session_id: str = "") -> None:
        self.trace_id = trace_id or str(uuid4())
        self.session_id = session_id
        self.spans: list[Span] = []
        self.start_time = time.monotonic()
        self._epoch = time.time()

    @contextmanager
    def span(self, name: str, **metadata):
        s = Span(
            name=name,
            start_ms=(time.monotonic() - self.start_time) * 1000,
            metadata=metadata,
        )
        try:
            yield s
        except Exception as e:
            s.error = str(e)
            raise
        finally:
            s.end_ms = (time.monotonic() - self.start_time) * 1000
            self.spans.append(s)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000

    @property
    def started_at(self) -> datetime:
        return datetime.fromtimestamp(self._epoch, tz=timezone.utc)

    def to_trace(
        self,
        question: str,
        answer: str,
        refused: bool,
        intent: str,
        critic: dict,
        retrieval: dict,
    ) -> Trace:
        return Trace(
            trace_id=self.trace_id,
            session_id=self.session_id,
            question=question,
            timestamp=self.started_at,
            latency_ms=self.elapsed_ms,
            answer=answer,
            refused=refused,
            intent=intent,
            critic=critic,
            retrieval=retrieval,
            spans=[s.to_dict() for s in self.spans],
        )
