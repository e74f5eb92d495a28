"""Durable semantic memory: embeddings stored as float32 blobs, recalled by cosine similarity."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import aiosqlite
import numpy as np

from grounded_chat.models.domain import SemanticMemory
from grounded_chat.observability.logger import get_logger
from grounded_chat.protocols.embedder import Embedder
from grounded_chat.retrieval.vector_ops import cosine_similarity
from grounded_chat.storage.migrations import initialize_memory_db

logger = get_logger("semantic_memory")

MEMORY_TYPES = ("episodic", "semantic", "procedural", "preference")
TAG_BONUS = 0.05


def to_blob(embedding: list[float]) -> bytes:
    return np.asarray(embedding, dtype=np.float32).tobytes()


def from_blob(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype=np.float32).astype(float).tolist()


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SQLiteSemanticMemoryStore:
    def __init__(
        self,
        db_path: str,
        embedder: Embedder,
        recall_k: int = 3,
        min_similarity: float = 0.6,
    ) -> None:
        self._db_path = db_path
        self._embedder = embedder
        self._recall_k = recall_k
        self._min_similarity = min_similarity

    async def initialize(self) -> None:
        await initialize_memory_db(self._db_path)

    async def add_memory(
        self,
        text: str,
        type: str,
        metadata: dict | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        tags: list[str] | None = None,
    ) -> int | None:
        if not text.strip():
            return None
        if type not in MEMORY_TYPES:
            raise ValueError(f"Unknown memory type: {type}")
        try:
            embedding = await self._embedder.embed_query(text)
        except Exception as e:
            logger.warning("memory_embed_failed", error=str(e))
            return None

        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "INSERT INTO memories "
                "(text, type, embedding, metadata, session_id, user_id, tags, created_at, last_accessed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    text,
                    type,
                    to_blob(embedding),
                    json.dumps(metadata or {}),
                    session_id,
                    user_id,
                    json.dumps(tags or []),
                    now,
                    now,
                ),
            )
            await db.commit()
            memory_id = cursor.lastrowid
        logger.info("memory_added", memory_id=memory_id, type=type)
        return memory_id

    async def recall(
        self,
        query: str,
        k: int | None = None,
        type: str | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        tags: list[str] | None = None,
        min_similarity: float | None = None,
        max_age_days: int | None = None,
    ) -> list[SemanticMemory]:
        k = k or self._recall_k
        min_similarity = self._min_similarity if min_similarity is None else min_similarity
        try:
            query_vector = await self._embedder.embed_query(query)
        except Exception as e:
            logger.warning("memory_recall_embed_failed", error=str(e))
            return []

        sql = "SELECT * FROM memories WHERE 1=1"
        params: list = []
        if type:
            sql += " AND type = ?"
            params.append(type)
        if session_id:
            sql += " AND session_id = ?"
            params.append(session_id)
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        if max_age_days:
            cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
            sql += " AND created_at >= ?"
            params.append(cutoff.isoformat())

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()

            scored: list[SemanticMemory] = []
            for row in rows:
                embedding = from_blob(row["embedding"])
                record_tags = json.loads(row["tags"] or "[]")
                matched = [t for t in record_tags if tags and t in tags]
                similarity = cosine_similarity(query_vector, embedding) + TAG_BONUS * len(matched)
                if similarity < min_similarity:
                    continue
                scored.append(
                    SemanticMemory(
                        id=row["id"],
                        text=row["text"],
                        type=row["type"],
                        embedding=embedding,
                        metadata=json.loads(row["metadata"] or "{}"),
                        usage_count=row["usage_count"],
                        created_at=_parse_time(row["created_at"]),
                        last_accessed_at=_parse_time(row["last_accessed_at"]),
                        session_id=row["session_id"],
                        user_id=row["user_id"],
                        tags=record_tags,
                        similarity=similarity,
                    )
                )

            scored.sort(key=lambda m: m.similarity or 0.0, reverse=True)
            results = scored[:k]
            if results:
                now = datetime.now(timezone.utc).isoformat()
                placeholders = ",".join("?" for _ in results)
                await db.execute(
                    f"UPDATE memories SET usage_count = usage_count + 1, last_accessed_at = ? "
                    f"WHERE id IN ({placeholders})",
                    (now, *(m.id for m in results)),
                )
                await db.commit()
                for memory in results:
                    memory.usage_count += 1

        logger.info("memory_recalled", candidates=len(rows), returned=len(results))
        return results

    async def prune(self, max_age_days: int, min_usage_count: int = 2) -> int:
        """Delete memories that are both older than ``max_age_days`` and used fewer than ``min_usage_count`` times."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=max_age_days)).isoformat()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM memories WHERE created_at < ? AND usage_count < ?",
                (cutoff, min_usage_count),
            )
            await db.commit()
            removed = cursor.rowcount
        logger.info("memory_pruned", removed=removed, max_age_days=max_age_days)
        return removed

    async def stats(self) -> dict:
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM memories") as cursor:
                (total,) = await cursor.fetchone()
            async with db.execute("SELECT type, COUNT(*) FROM memories GROUP BY type") as cursor:
                by_type = {row[0]: row[1] for row in await cursor.fetchall()}
        return {"total": total, "byType": by_type}

    async def clear(self) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM memories")
            await db.commit()
