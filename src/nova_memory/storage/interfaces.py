"""Persistence contract consumed by the memory engine.

Any object with these coroutine methods can back the engine; the three
shipped backends are a process-local dict, JSON files and SQLite.
Implementations raise :class:`~nova_memory.exceptions.PersistenceError`
for every I/O failure.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import GlobalInsight, GlobalStats, MemoryRecord, Turn, UserProfile


@runtime_checkable
class PersistenceBackend(Protocol):
    """Key-value record store for profiles, turns, memories and insights."""

    async def initialize(self) -> None:
        """Prepare the medium (create directories, tables, connections)."""
        ...

    async def close(self) -> None:
        ...

    async def get_user_record(self, user_id: str) -> UserProfile:
        """Return the stored profile, or a fresh default if there is none.

        Never returns ``None``.
        """
        ...

    async def put_user_record(self, user_id: str, profile: UserProfile) -> None:
        """Idempotent upsert."""
        ...

    async def append_conversation(self, user_id: str, turn: Turn) -> None:
        ...

    async def load_conversations(self, user_id: str, limit: int | None = None) -> list[Turn]:
        """Most recent *limit* turns (all when ``None``), oldest first."""
        ...

    async def append_memory(self, user_id: str, record: MemoryRecord) -> None:
        ...

    async def load_memories(self, user_id: str) -> list[MemoryRecord]:
        ...

    async def replace_memories(self, user_id: str, records: list[MemoryRecord]) -> None:
        """Overwrite a user's whole memory set (maintenance write-back)."""
        ...

    async def append_insight(self, insight: GlobalInsight) -> None:
        ...

    async def load_insights(self, limit: int | None = None) -> list[GlobalInsight]:
        ...

    async def get_global_stats(self) -> GlobalStats:
        """Return stored stats, or a fresh default."""
        ...

    async def put_global_stats(self, stats: GlobalStats) -> None:
        ...

    async def list_users(self) -> list[str]:
        ...
