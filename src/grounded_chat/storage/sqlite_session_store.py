"""SQLite-backed session memory, transcripts and persisted feature overrides."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from grounded_chat.config.constants import (
    SESSION_SALIENCE_KEEP,
    SESSION_SALIENCE_MAX_AGE_TURNS,
    SESSION_SUMMARY_KEEP,
    SESSION_SUMMARY_LOAD,
)
from grounded_chat.models.domain import AgentMessage, SalienceNote, SessionMemory
from grounded_chat.storage.migrations import initialize_session_db


def merge_salience(existing: list[SalienceNote], updates: list[SalienceNote]) -> list[SalienceNote]:
    """Merge by exact fact text (updates win), newest ``last_seen_turn`` first."""
    merged: dict[str, SalienceNote] = {}
    for note in [*existing, *updates]:
        merged[note.fact] = note
    return sorted(merged.values(), key=lambda n: n.last_seen_turn, reverse=True)


def _note_to_dict(note: SalienceNote) -> dict:
    return {"fact": note.fact, "topic": note.topic, "lastSeenTurn": note.last_seen_turn}


def _note_from_dict(data: dict, default_turn: int) -> SalienceNote:
    turn = data.get("lastSeenTurn")
    return SalienceNote(
        fact=str(data.get("fact", "")),
        topic=data.get("topic"),
        last_seen_turn=turn if isinstance(turn, int) else default_turn,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteSessionStore:
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    async def initialize(self) -> None:
        await initialize_session_db(self._db_path)

    async def _row(self, db: aiosqlite.Connection, session_id: str):
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM session_memory WHERE session_id = ?", (session_id,)) as cursor:
            return await cursor.fetchone()

    async def load(self, session_id: str, turn: int | None = None) -> SessionMemory:
        async with aiosqlite.connect(self._db_path) as db:
            row = await self._row(db, session_id)
        if row is None:
            return SessionMemory(summary_bullets=[], salience=[])

        stored_turn = row["turn"]
        current = stored_turn if turn is None else turn
        summary = [str(b) for b in json.loads(row["summary"])]
        salience = [_note_from_dict(n, stored_turn) for n in json.loads(row["salience"])]
        recent = [n for n in salience if current - n.last_seen_turn <= SESSION_SALIENCE_MAX_AGE_TURNS]
        return SessionMemory(summary_bullets=summary[-SESSION_SUMMARY_LOAD:], salience=recent)

    async def upsert(
        self,
        session_id: str,
        turn: int,
        summary: list[str],
        salience: list[SalienceNote],
    ) -> None:
        if not summary and not salience:
            return
        async with aiosqlite.connect(self._db_path) as db:
            row = await self._row(db, session_id)
            existing_summary = json.loads(row["summary"]) if row else []
            existing_salience = [_note_from_dict(n, row["turn"]) for n in json.loads(row["salience"])] if row else []

            bullets = list(dict.fromkeys([*existing_summary, *summary]))[-SESSION_SUMMARY_KEEP:]
            notes = merge_salience(existing_salience, salience)[:SESSION_SALIENCE_KEEP]
            await db.execute(
                "INSERT INTO session_memory (session_id, summary, salience, turn, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET "
                "summary = excluded.summary, salience = excluded.salience, "
                "turn = excluded.turn, updated_at = excluded.updated_at",
                (
                    session_id,
                    json.dumps(bullets),
                    json.dumps([_note_to_dict(n) for n in notes]),
                    turn,
                    _now(),
                ),
            )
            await db.commit()

    async def clear(self, session_id: str | None = None) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            if session_id:
                await db.execute("DELETE FROM session_memory WHERE session_id = ?", (session_id,))
            else:
                await db.execute("DELETE FROM session_memory")
            await db.commit()

    async def save_turn(self, session_id: str, messages: list[AgentMessage]) -> None:
        if not session_id.strip():
            return
        payload = json.dumps([{"role": m.role, "content": m.content} for m in messages])
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO session_transcripts (session_id, messages, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET messages = excluded.messages, updated_at = excluded.updated_at",
                (session_id, payload, _now()),
            )
            await db.commit()

    async def get_session(self, session_id: str) -> dict | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM session_transcripts WHERE session_id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                return {
                    "session_id": row["session_id"],
                    "messages": json.loads(row["messages"]),
                    "updated_at": row["updated_at"],
                }

    async def get_feature_overrides(self, session_id: str) -> dict[str, bool]:
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT features FROM session_features WHERE session_id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return {}
        data = json.loads(row[0])
        return {k: v for k, v in data.items() if isinstance(v, bool)}

    async def save_feature_overrides(self, session_id: str, features: dict[str, bool]) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO session_features (session_id, features, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET features = excluded.features, updated_at = excluded.updated_at",
                (session_id, json.dumps(features), _now()),
            )
            await db.commit()
