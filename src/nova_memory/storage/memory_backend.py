"""Process-local persistence backend (nothing survives a restart)."""

from __future__ import annotations

from ..models import GlobalInsight, GlobalStats, MemoryRecord, Turn, UserProfile


class InMemoryBackend:
    """Dict-backed backend. Stores deep copies so callers cannot alias state."""

    def __init__(self, max_insights: int | None = None):
        self.max_insights = max_insights
        self._profiles: dict[str, UserProfile] = {}
        self._conversations: dict[str, list[Turn]] = {}
        self._memories: dict[str, list[MemoryRecord]] = {}
        self._insights: list[GlobalInsight] = []
        self._stats: GlobalStats | None = None

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get_user_record(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            return UserProfile.create_default(user_id)
        return profile.model_copy(deep=True)

    async def put_user_record(self, user_id: str, profile: UserProfile) -> None:
        self._profiles[user_id] = profile.model_copy(deep=True)

    async def append_conversation(self, user_id: str, turn: Turn) -> None:
        self._conversations.setdefault(user_id, []).append(turn)

    async def load_conversations(self, user_id: str, limit: int | None = None) -> list[Turn]:
        turns = self._conversations.get(user_id, [])
        if limit is None:
            return list(turns)
        return turns[-limit:] if limit > 0 else []

    async def append_memory(self, user_id: str, record: MemoryRecord) -> None:
        self._memories.setdefault(user_id, []).append(record.model_copy(deep=True))

    async def load_memories(self, user_id: str) -> list[MemoryRecord]:
        return [record.model_copy(deep=True) for record in self._memories.get(user_id, [])]

    async def replace_memories(self, user_id: str, records: list[MemoryRecord]) -> None:
        self._memories[user_id] = [record.model_copy(deep=True) for record in records]

    async def append_insight(self, insight: GlobalInsight) -> None:
        self._insights.append(insight)
        if self.max_insights is not None and len(self._insights) > self.max_insights:
            self._insights = self._insights[-self.max_insights :]

    async def load_insights(self, limit: int | None = None) -> list[GlobalInsight]:
        if limit is None:
            return list(self._insights)
        return self._insights[-limit:] if limit > 0 else []

    async def get_global_stats(self) -> GlobalStats:
        if self._stats is None:
            return GlobalStats()
        return self._stats.model_copy(deep=True)

    async def put_global_stats(self, stats: GlobalStats) -> None:
        self._stats = stats.model_copy(deep=True)

    async def list_users(self) -> list[str]:
        return list(dict.fromkeys([*self._profiles, *self._conversations, *self._memories]))
