"""Idempotent database schema creation."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

SESSION_MEMORY_TABLE = """
CREATE TABLE IF NOT EXISTS session_memory (
    session_id TEXT PRIMARY KEY,
    summary TEXT NOT NULL DEFAULT '[]',
    salience TEXT NOT NULL DEFAULT '[]',
    turn INTEGER NOT NULL,
    updated_at TEXT NOT NULL
)
"""

SESSION_TRANSCRIPTS_TABLE = """
CREATE TABLE IF NOT EXISTS session_transcripts (
    session_id TEXT PRIMARY KEY,
    messages TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
)
"""

SESSION_FEATURES_TABLE = """
CREATE TABLE IF NOT EXISTS session_features (
    session_id TEXT PRIMARY KEY,
    features TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL
)
"""

MEMORIES_TABLE = """
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    type TEXT NOT NULL,
    embedding BLOB NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    session_id TEXT,
    user_id TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    usage_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT NOT NULL
)
"""

MEMORIES_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type)",
    "CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at DESC)",
)

TRACES_TABLE = """
CREATE TABLE IF NOT EXISTS traces (
    trace_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    question TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    latency_ms REAL NOT NULL,
    answer TEXT NOT NULL,
    refused INTEGER NOT NULL DEFAULT 0,
    intent TEXT NOT NULL,
    critic TEXT NOT NULL DEFAULT '{}',
    retrieval TEXT NOT NULL DEFAULT '{}',
    spans TEXT NOT NULL DEFAULT '[]'
)
"""

TRACES_TIMESTAMP_INDEX = """
CREATE INDEX IF NOT EXISTS idx_traces_timestamp ON traces(timestamp)
"""

TRACES_SESSION_INDEX = """
CREATE INDEX IF NOT EXISTS idx_traces_session ON traces(session_id)
"""


def ensure_parent_dir(db_path: str) -> None:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


async def initialize_session_db(db_path: str) -> None:
    ensure_parent_dir(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(SESSION_MEMORY_TABLE)
        await db.execute(SESSION_TRANSCRIPTS_TABLE)
        await db.execute(SESSION_FEATURES_TABLE)
        await db.commit()


async def initialize_memory_db(db_path: str) -> None:
    ensure_parent_dir(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(MEMORIES_TABLE)
        for statement in MEMORIES_INDEXES:
            await db.execute(statement)
        await db.commit()


async def initialize_trace_db(db_path: str) -> None:
    ensure_parent_dir(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(TRACES_TABLE)
        await db.execute(TRACES_TIMESTAMP_INDEX)
        await db.execute(TRACES_SESSION_INDEX)
        await db.commit()
