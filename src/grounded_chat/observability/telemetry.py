"""In-process telemetry buffers exposed through the admin API."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


@dataclass
class OperationRecord:
    operation: str
    attempt: int
    duration_ms: float
    success: bool
    error: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class TelemetryLog:
    """Bounded ring buffers of collaborator operations and completed turns."""

    def __init__(self, max_operations: int = 500, max_turns: int = 100) -> None:
        self._operations: deque[OperationRecord] = deque(maxlen=max_operations)
        self._turns: deque[dict] = deque(maxlen=max_turns)

    def record_operation(self, record: OperationRecord) -> None:
        self._operations.append(record)

    def record_turn(self, summary: dict) -> None:
        self._turns.append(summary)

    def operations(self) -> list[dict]:
        return [asdict(r) for r in self._operations]

    def turns(self) -> list[dict]:
        return list(self._turns)

    def snapshot(self) -> dict:
        ops = list(self._operations)
        failures = sum(1 for r in ops if not r.success)
        return {
            "operations": self.operations(),
            "turns": self.turns(),
            "operation_count": len(ops),
            "failure_count": failures,
        }

    def clear(self) -> None:
        self._operations.clear()
        self._turns.clear()
