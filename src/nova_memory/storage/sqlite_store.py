"""SQLite persistence backend.

Uses aiosqlite with WAL mode. Nested record fields are stored as JSON
text columns; scalar columns exist only where queries need them.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
from loguru import logger
from pydantic import ValidationError

from ..exceptions import PersistenceError
from ..memory_store import coerce_records
from ..models import GlobalInsight, GlobalStats, MemoryRecord, Turn, UserProfile


class SQLiteBackend:
    """aiosqlite-backed store for profiles, turns, memories and insights."""

    def __init__(self, db_path: str = "./nova_memory/memory.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    @asynccontextmanager
    async def _guard(self, operation: str, key: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the live connection, translating driver errors."""
        if self._db is None:
            raise PersistenceError("SQLite backend is not initialized", operation=operation, key=key)
        try:
            yield self._db
        except aiosqlite.Error as e:
            raise PersistenceError(f"SQLite {operation} failed: {e}", operation=operation, key=key) from e

    async def initialize(self) -> None:
        """Open the database, enable WAL and create tables if needed."""
        if self._db is not None:
            return
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._create_tables()
            await self._db.commit()
        except (OSError, aiosqlite.Error) as e:
            raise PersistenceError(
                f"Failed to open SQLite database: {e}", operation="initialize", key=self.db_path
            ) from e
        logger.info(f"SQLite memory backend initialized at {self.db_path}")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                last_active_ms INTEGER
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                turn_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                timestamp_ms INTEGER NOT NULL,
                data TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                memory_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                importance INTEGER NOT NULL,
                data TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS insights (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp_ms INTEGER NOT NULL,
                topic TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS global_stats (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data TEXT NOT NULL
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, seq)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id, seq)"
        )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("SQLite memory backend closed")

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_user_record(self, user_id: str) -> UserProfile:
        async with self._guard("get_user_record", user_id) as db:
            async with db.execute(
                "SELECT data FROM user_profiles WHERE user_id = ?", (user_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return UserProfile.create_default(user_id)
        try:
            return UserProfile.model_validate_json(row[0])
        except ValidationError as e:
            raise PersistenceError(
                f"Invalid profile for {user_id}: {e.error_count()} errors",
                operation="get_user_record",
                key=user_id,
            ) from e

    async def put_user_record(self, user_id: str, profile: UserProfile) -> None:
        async with self._guard("put_user_record", user_id) as db:
            await db.execute(
                """
                INSERT INTO user_profiles (user_id, data, last_active_ms) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    data = excluded.data,
                    last_active_ms = excluded.last_active_ms
                """,
                (user_id, profile.model_dump_json(), profile.last_active_ms),
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def append_conversation(self, user_id: str, turn: Turn) -> None:
        async with self._guard("append_conversation", user_id) as db:
            await db.execute(
                "INSERT INTO conversations (turn_id, user_id, timestamp_ms, data) VALUES (?, ?, ?, ?)",
                (turn.id, user_id, turn.timestamp_ms, turn.model_dump_json()),
            )
            await db.commit()

    async def load_conversations(self, user_id: str, limit: int | None = None) -> list[Turn]:
        if limit is not None and limit <= 0:
            return []
        async with self._guard("load_conversations", user_id) as db:
            async with db.execute(
                "SELECT data FROM conversations WHERE user_id = ? ORDER BY seq DESC LIMIT ?",
                (user_id, -1 if limit is None else limit),
            ) as cursor:
                rows = await cursor.fetchall()

        turns: list[Turn] = []
        for (data,) in reversed(rows):
            try:
                turns.append(Turn.model_validate_json(data))
            except ValidationError as e:
                logger.warning(f"Skipping malformed turn for {user_id}: {e.error_count()} errors")
        return turns

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def append_memory(self, user_id: str, record: MemoryRecord) -> None:
        async with self._guard("append_memory", user_id) as db:
            await db.execute(
                "INSERT INTO memories (memory_id, user_id, importance, data) VALUES (?, ?, ?, ?)",
                (record.id, user_id, record.importance, record.model_dump_json()),
            )
            await db.commit()

    async def load_memories(self, user_id: str) -> list[MemoryRecord]:
        async with self._guard("load_memories", user_id) as db:
            async with db.execute(
                "SELECT data FROM memories WHERE user_id = ? ORDER BY seq", (user_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return coerce_records(self._decode_rows(rows, user_id))

    @staticmethod
    def _decode_rows(rows, user_id: str) -> list[dict]:
        decoded = []
        for (data,) in rows:
            try:
                decoded.append(json.loads(data))
            except ValueError:
                logger.warning(f"Skipping undecodable memory row for {user_id}")
        return decoded

    async def replace_memories(self, user_id: str, records: list[MemoryRecord]) -> None:
        async with self._guard("replace_memories", user_id) as db:
            try:
                await db.execute("DELETE FROM memories WHERE user_id = ?", (user_id,))
                await db.executemany(
                    "INSERT INTO memories (memory_id, user_id, importance, data) VALUES (?, ?, ?, ?)",
                    [(r.id, user_id, r.importance, r.model_dump_json()) for r in records],
                )
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                raise

    # ------------------------------------------------------------------
    # Global
    # ------------------------------------------------------------------

    async def append_insight(self, insight: GlobalInsight) -> None:
        async with self._guard("append_insight") as db:
            await db.execute(
                "INSERT INTO insights (timestamp_ms, topic, data) VALUES (?, ?, ?)",
                (insight.timestamp_ms, insight.topic, insight.model_dump_json()),
            )
            await db.commit()

    async def load_insights(self, limit: int | None = None) -> list[GlobalInsight]:
        if limit is not None and limit <= 0:
            return []
        async with self._guard("load_insights") as db:
            async with db.execute(
                "SELECT data FROM insights ORDER BY seq DESC LIMIT ?",
                (-1 if limit is None else limit,),
            ) as cursor:
                rows = await cursor.fetchall()

        insights: list[GlobalInsight] = []
        for (data,) in reversed(rows):
            try:
                insights.append(GlobalInsight.model_validate_json(data))
            except ValidationError as e:
                logger.warning(f"Skipping malformed insight: {e.error_count()} errors")
        return insights

    async def get_global_stats(self) -> GlobalStats:
        async with self._guard("get_global_stats") as db:
            async with db.execute("SELECT data FROM global_stats WHERE id = 1") as cursor:
                row = await cursor.fetchone()
        if row is None:
            return GlobalStats()
        try:
            return GlobalStats.model_validate_json(row[0])
        except ValidationError as e:
            raise PersistenceError(
                f"Invalid global stats: {e.error_count()} errors", operation="get_global_stats"
            ) from e

    async def put_global_stats(self, stats: GlobalStats) -> None:
        async with self._guard("put_global_stats") as db:
            await db.execute(
                """
                INSERT INTO global_stats (id, data) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
                """,
                (stats.model_dump_json(),),
            )
            await db.commit()

    async def list_users(self) -> list[str]:
        async with self._guard("list_users") as db:
            async with db.execute(
                """
                SELECT user_id FROM user_profiles
                UNION SELECT user_id FROM conversations
                UNION SELECT user_id FROM memories
                ORDER BY user_id
                """
            ) as cursor:
                rows = await cursor.fetchall()
        return [row[0] for row in rows]
