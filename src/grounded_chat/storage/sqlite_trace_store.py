"""SQLite-backed turn trace store for observability."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from grounded_chat.models.domain import Trace
from grounded_chat.storage.migrations import initialize_trace_db


class SQLiteTraceStore:
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    async def initialize(self) -> None:
        await initialize_trace_db(self._db_path)

    async def save_trace(self, trace: Trace) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO traces "
                "(trace_id, session_id, question, timestamp, latency_ms, answer, refused, intent, "
                "critic, retrieval, spans) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    trace.trace_id,
                    trace.session_id,
                    trace.question,
                    trace.timestamp.isoformat(),
                    trace.latency_ms,
                    trace.answer,
                    int(trace.refused),
                    trace.intent,
                    json.dumps(trace.critic),
                    json.dumps(trace.retrieval),
                    json.dumps(trace.spans),
                ),
            )
            await db.commit()

    async def get_trace(self, trace_id: str) -> Trace | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM traces WHERE trace_id = ?", (trace_id,)) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                return self._row_to_trace(row)

    async def get_recent_traces(self, limit: int = 100, session_id: str | None = None) -> list[Trace]:
        sql = "SELECT * FROM traces"
        params: tuple = ()
        if session_id:
            sql += " WHERE session_id = ?"
            params = (session_id,)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, (*params, limit)) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_trace(row) for row in rows]

    @staticmethod
    def _row_to_trace(row: aiosqlite.Row) -> Trace:
        timestamp = datetime.fromisoformat(row["timestamp"])
        return Trace(
            trace_id=row["trace_id"],
            session_id=row["session_id"],
            question=row["question"],
            timestamp=timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc),
            latency_ms=row["latency_ms"],
            answer=row["answer"],
            refused=bool(row["refused"]),
            intent=row["intent"],
            critic=json.loads(row["critic"]),
            retrieval=json.loads(row["retrieval"]),
            spans=json.loads(row["spans"]),
        )
