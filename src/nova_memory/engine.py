"""Memory engine facade.

Composes the classifier, scorer, profile updater, conversation log, memory
store, global aggregator and session manager behind the API the chat
transport and generation layers call.

Every write-through step commits to in-process state only after its
persistence write succeeds. A failed write is logged and discards that
step alone, so the caller still gets an answer while memory degrades.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Callable

from loguru import logger

from .aggregator import GlobalAggregator, SelectionStrategy
from .classifier import MessageClassifier
from .config import MemoryEngineConfig
from .conversation_log import ConversationLog
from .exceptions import PersistenceError
from .importance import ImportanceScorer
from .memory_store import (
    MemoryStore,
    analyze_records,
    optimize,
    prune,
    recent_records,
    related_records,
)
from .models import (
    GlobalInsight,
    IngestResult,
    MemoryRecord,
    Turn,
    UserProfile,
    UserSummary,
    now_ms,
)
from .profile import ProfileUpdater
from .scheduler import PeriodicTask
from .session import SessionManager
from .storage import PersistenceBackend, create_backend

SUMMARY_SENTIMENT_WINDOW = 20
TOP_TOPIC_COUNT = 5


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def communication_style(personality: dict[str, int]) -> str:
    traits = []
    if personality.get("curiosity", 0) > 5:
        traits.append("inquisitive")
    if personality.get("positivity", 0) > 3:
        traits.append("optimistic")
    if personality.get("openness", 0) > 3:
        traits.append("open")
    if personality.get("technical", 0) > 3:
        traits.append("technical")
    if personality.get("creativity", 0) > 3:
        traits.append("creative")
    return ", ".join(traits) if traits else "developing"


class MemoryEngine:
    """Per-user conversational memory with background insight and maintenance.

    Usage::

        engine = MemoryEngine(load_config("memory.yaml"))
        await engine.start()
        result = await engine.ingest("42", "Can you help me with my code?", reply)
        ...
        await engine.close()

    Turns for the same user are serialized by a per-user lock; different
    users proceed independently. The insight and maintenance timers share
    one maintenance lock and never block turn processing.
    """

    def __init__(
        self,
        config: MemoryEngineConfig | None = None,
        backend: PersistenceBackend | None = None,
        classifier: MessageClassifier | None = None,
        scorer: ImportanceScorer | None = None,
        selection: SelectionStrategy | None = None,
        clock: Callable[[], int] = now_ms,
        profile_updater: ProfileUpdater | None = None,
    ):
        """
        Args:
            config: Engine configuration (defaults if not provided)
            backend: Persistence backend (built from ``config.storage`` if not provided)
            classifier: Message classifier
            scorer: Importance scorer
            selection: Insight topic/template selection strategy
            clock: Millisecond clock, injectable for tests
            profile_updater: Profile updater (built from ``config.profile`` if not provided)
        """
        self.config = config or MemoryEngineConfig()
        self.backend = backend or create_backend(self.config.storage)
        self.classifier = classifier or MessageClassifier()
        self.scorer = scorer or ImportanceScorer()
        self.profile_updater = profile_updater or ProfileUpdater(self.config.profile)
        self.log = ConversationLog(self.config.conversation.max_turns)
        self.memory = MemoryStore()
        self.aggregator = GlobalAggregator(self.config.insights, strategy=selection)
        self.sessions = SessionManager()
        self._clock = clock

        self._profiles: dict[str, UserProfile] = {}
        self._hydrated: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._maintenance_lock = asyncio.Lock()
        self._initialized = False
        self._started_ms = clock()

        self._insight_task = PeriodicTask(
            "insights",
            self._insight_tick,
            self.config.insights.interval_seconds,
            lock=self._maintenance_lock,
        )
        self._maintenance_task = PeriodicTask(
            "maintenance",
            self._maintenance_tick,
            self.config.consolidation.maintenance_interval_hours * 3600,
            lock=self._maintenance_lock,
        )

        logger.info(
            f"MemoryEngine created: backend={type(self.backend).__name__}, "
            f"insights={self.config.insights.enabled}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the backend and restore global stats and insights."""
        if self._initialized:
            return
        await self.backend.initialize()
        try:
            self.aggregator.stats = await self.backend.get_global_stats()
            self.aggregator.load_insights(
                await self.backend.load_insights(self.config.insights.max_insights)
            )
        except PersistenceError as e:
            logger.warning(f"Could not restore global state, starting fresh: {e}")
        self._initialized = True

    async def start(self) -> None:
        """Initialize and start the background timers."""
        await self.initialize()
        if self.config.insights.enabled:
            self._insight_task.start()
        self._maintenance_task.start()
        logger.info("MemoryEngine started")

    async def close(self) -> None:
        """Stop timers, flush global stats and close the backend."""
        await self._insight_task.stop()
        await self._maintenance_task.stop()
        if self._initialized:
            async with self._maintenance_lock:
                await self._flush_stats()
        await self.backend.close()
        self._initialized = False
        logger.info("MemoryEngine closed")

    async def __aenter__(self) -> "MemoryEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Per-user state
    # ------------------------------------------------------------------

    def _get_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    async def _hydrate(self, user_id: str) -> bool:
        """Load a user's stored state on first access. Caller holds the user lock.

        Returns False when the stored state could not be read. Until a later
        call succeeds, nothing may be written over that user's profile or
        memories.
        """
        if user_id in self._hydrated:
            return True
        try:
            profile = await self.backend.get_user_record(user_id)
            turns = await self.backend.load_conversations(
                user_id, self.config.conversation.max_turns
            )
            records = await self.backend.load_memories(user_id)
        except PersistenceError as e:
            logger.warning(f"Failed to load stored state for {user_id}, running without it: {e}")
            return False

        self._profiles[user_id] = profile
        self.log.load(user_id, turns)
        self.memory.load(user_id, records)
        self._hydrated.add(user_id)
        logger.debug(
            f"Hydrated {user_id}: {len(turns)} turns, {self.memory.count(user_id)} memories"
        )
        return True

    def _profile(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            profile = UserProfile.create_default(user_id, self._clock())
        return profile

    async def _add_memory(self, record: MemoryRecord) -> bool:
        """Persist then commit a record. Caller holds the user lock."""
        if self.memory.contains(record.user_id, record):
            logger.debug(f"Memory already stored for {record.user_id}, skipping")
            return False
        await self.backend.append_memory(record.user_id, record)
        return self.memory.add(record)

    def _promote(self, turn: Turn) -> MemoryRecord:
        cap = self.config.promotion.response_excerpt_chars
        excerpt = turn.response_text[:cap]
        if len(turn.response_text) > cap:
            excerpt += "..."
        return MemoryRecord(
            user_id=turn.user_id,
            content=f"User: {turn.text}\nAssistant: {excerpt}",
            memory_type=self.config.promotion.memory_type,
            importance=turn.importance,
            tags=list(turn.topics),
            metadata={
                "turn_id": turn.id,
                "session_id": turn.session_id,
                "sentiment": turn.sentiment.value,
            },
            created_at_ms=turn.timestamp_ms,
            last_accessed_ms=turn.timestamp_ms,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        user_id: str,
        text: str,
        response_text: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> IngestResult:
        """Classify, score and remember one exchange.

        Recognized metadata keys: ``first_name``, ``username`` and
        ``response_time_ms``. The rest is kept on the turn as-is.

        Args:
            user_id: Stable user identifier from the transport
            text: The user's message
            response_text: The assistant's reply
            metadata: Optional extra fields

        Returns:
            IngestResult: Derived metadata. ``persisted`` is False when any
            write-through step failed.
        """
        metadata = dict(metadata or {})
        text = text or ""
        response_text = response_text or ""

        classification = self.classifier.classify(text)
        importance = self.scorer.score(text, classification.sentiment, classification.topics)
        session_id = self.sessions.get_session_id(user_id)
        turn = Turn(
            user_id=user_id,
            timestamp_ms=self._clock(),
            text=text,
            response_text=response_text,
            sentiment=classification.sentiment,
            topics=classification.topics,
            context_flags=classification.context_flags,
            complexity=classification.complexity,
            importance=importance,
            session_id=session_id,
            metadata=metadata,
        )

        persisted = True
        promoted = False
        new_user = False

        async with self._get_lock(user_id):
            hydrated = await self._hydrate(user_id)
            if not hydrated:
                logger.warning(
                    f"Stored state for {user_id} unavailable, profile and memory updates skipped"
                )
                persisted = False

            # Profile
            if hydrated:
                current = self._profile(user_id)
                updated = current.model_copy(deep=True)
                self.profile_updater.apply(
                    updated,
                    turn,
                    response_time_ms=_as_float(metadata.get("response_time_ms")),
                    first_name=metadata.get("first_name"),
                    username=metadata.get("username"),
                )
                try:
                    await self.backend.put_user_record(user_id, updated)
                    self._profiles[user_id] = updated
                    new_user = current.is_new
                except PersistenceError as e:
                    logger.warning(f"Profile write failed for {user_id}, update discarded: {e}")
                    persisted = False

            # Conversation log (append-only)
            try:
                await self.backend.append_conversation(user_id, turn)
                self.log.append(user_id, turn)
            except PersistenceError as e:
                logger.warning(f"Conversation write failed for {user_id}, turn not logged: {e}")
                persisted = False

            # Promotion
            if hydrated and importance >= self.config.promotion.threshold:
                try:
                    promoted = await self._add_memory(self._promote(turn))
                except PersistenceError as e:
                    logger.warning(f"Memory write failed for {user_id}, promotion discarded: {e}")
                    persisted = False

        if new_user:
            self.aggregator.register_user()
        self.aggregator.observe(turn)

        logger.debug(
            f"Ingested turn {turn.id} for {user_id}: importance={importance}, "
            f"topics={turn.topics}, sentiment={turn.sentiment.value}, promoted={promoted}"
        )
        return IngestResult(
            turn_id=turn.id,
            importance=importance,
            topics=turn.topics,
            sentiment=turn.sentiment,
            complexity=turn.complexity,
            session_id=session_id,
            promoted=promoted,
            persisted=persisted,
        )

    async def remember(
        self,
        user_id: str,
        content: str,
        memory_type: str = "fact",
        importance: int = 5,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord | None:
        """Store a caller-defined memory.

        Returns the stored record, or None when it duplicates an existing
        ``(type, content)`` pair or could not be persisted.
        """
        now = self._clock()
        record = MemoryRecord(
            user_id=user_id,
            content=content,
            memory_type=memory_type,
            importance=importance,
            tags=tags or [],
            metadata=metadata or {},
            created_at_ms=now,
            last_accessed_ms=now,
        )
        async with self._get_lock(user_id):
            if not await self._hydrate(user_id):
                logger.warning(f"Stored memories for {user_id} unavailable, not remembering")
                return None
            try:
                added = await self._add_memory(record)
            except PersistenceError as e:
                logger.warning(f"Memory write failed for {user_id}: {e}")
                return None
        return record if added else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_summary(self, user_id: str) -> UserSummary:
        async with self._get_lock(user_id):
            await self._hydrate(user_id)
            profile = self._profile(user_id)
            recent = self.log.recent(user_id, SUMMARY_SENTIMENT_WINDOW)

        patterns = profile.interaction_patterns
        frequency = patterns.topic_frequency
        top_topics = sorted(profile.topics_seen, key=lambda t: frequency.get(t, 0), reverse=True)
        time_of_day = patterns.time_of_day_frequency
        preferred = max(time_of_day.items(), key=lambda kv: kv[1])[0] if time_of_day else None
        lengths = patterns.message_lengths
        response_times = patterns.response_times

        return UserSummary(
            user_id=user_id,
            total_turns=profile.message_count,
            top_topics=top_topics[:TOP_TOPIC_COUNT],
            personality=dict(profile.personality),
            engagement_level=patterns.engagement_level,
            preferred_time_of_day=preferred,
            mood=profile.mood,
            recent_sentiment=dict(Counter(turn.sentiment.value for turn in recent)),
            avg_response_time=sum(response_times) / len(response_times) if response_times else 0.0,
            avg_message_length=sum(lengths) / len(lengths) if lengths else 0.0,
            last_active_ms=profile.last_active_ms,
            communication_style=communication_style(profile.personality),
        )

    async def search_memory(self, user_id: str, query: str, limit: int = 5) -> list[MemoryRecord]:
        """Keyword search over a user's memories, recording the access."""
        async with self._get_lock(user_id):
            if not await self._hydrate(user_id):
                return []
            hits = self.memory.search(user_id, query, limit)
            if not hits:
                return []

            now = self._clock()
            touched = {
                record.id: record.model_copy(
                    update={"last_accessed_ms": now, "access_count": record.access_count + 1}
                )
                for record in hits
            }
            records = [touched.get(record.id, record) for record in self.memory.get(user_id)]
            try:
                await self.backend.replace_memories(user_id, records)
                self.memory.replace(user_id, records)
            except PersistenceError as e:
                logger.warning(f"Could not record memory access for {user_id}: {e}")
                return hits
        return [touched[record.id] for record in hits]

    async def recent_turns(self, user_id: str, n: int | None = None) -> list[Turn]:
        async with self._get_lock(user_id):
            await self._hydrate(user_id)
            return self.log.recent(user_id, n or self.config.conversation.recent_default)

    async def search_conversations(self, user_id: str, query: str, limit: int = 10) -> list[Turn]:
        async with self._get_lock(user_id):
            await self._hydrate(user_id)
            return self.log.search(user_id, query, limit)

    async def get_memory_stats(self, user_id: str) -> dict[str, Any]:
        async with self._get_lock(user_id):
            await self._hydrate(user_id)
            return analyze_records(self.memory.get(user_id))

    async def related_memories(
        self, user_id: str, memory_id: str, limit: int = 5
    ) -> list[MemoryRecord]:
        """Memories related to the one with *memory_id*; empty if it is unknown."""
        async with self._get_lock(user_id):
            await self._hydrate(user_id)
            records = self.memory.get(user_id)
        target = next((record for record in records if record.id == memory_id), None)
        if target is None:
            return []
        return related_records(target, records, limit)

    async def recent_memories(self, user_id: str, limit: int = 10) -> list[MemoryRecord]:
        async with self._get_lock(user_id):
            await self._hydrate(user_id)
            return recent_records(self.memory.get(user_id), limit)

    def get_recent_insights(self, limit: int = 10) -> list[GlobalInsight]:
        return self.aggregator.recent_insights(limit)

    def get_global_patterns(self) -> list[str]:
        return self.aggregator.stats.describe()

    def get_stats(self) -> dict[str, Any]:
        stats = self.aggregator.stats
        return {
            "uptime_ms": self._clock() - self._started_ms,
            "total_users": stats.total_users,
            "total_messages": stats.total_messages,
            "insights": self.aggregator.insight_count,
            "active_sessions": self.sessions.active_count,
            "last_maintenance_ms": stats.last_maintenance_ms,
            "last_cleanup": dict(stats.last_cleanup),
        }

    def end_session(self, user_id: str) -> bool:
        return self.sessions.end_session(user_id)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def generate_insight(self) -> GlobalInsight | None:
        """Run one insight tick now."""
        async with self._maintenance_lock:
            return await self._insight_tick()

    async def run_maintenance(self) -> dict[str, int]:
        """Run one optimize + prune sweep over every known user now."""
        async with self._maintenance_lock:
            return await self._maintenance_tick()

    async def _flush_stats(self) -> None:
        try:
            await self.backend.put_global_stats(self.aggregator.stats)
        except PersistenceError as e:
            logger.warning(f"Global stats flush failed: {e}")

    async def _insight_tick(self) -> GlobalInsight | None:
        insight = self.aggregator.generate(self._clock())
        if insight is not None:
            try:
                await self.backend.append_insight(insight)
                self.aggregator.add_insight(insight)
                logger.info(f"Generated insight about '{insight.topic}'")
            except PersistenceError as e:
                logger.warning(f"Insight write failed, discarded: {e}")
                insight = None
        await self._flush_stats()
        return insight

    async def _known_users(self) -> list[str]:
        try:
            stored = await self.backend.list_users()
        except PersistenceError as e:
            logger.warning(f"Could not list stored users: {e}")
            stored = []
        return list(dict.fromkeys([*stored, *self._profiles, *self.memory.users()]))

    async def _maintenance_tick(self) -> dict[str, int]:
        consolidation = self.config.consolidation
        now = self._clock()
        users = await self._known_users()
        merged_total = 0
        pruned_total = 0

        for user_id in users:
            async with self._get_lock(user_id):
                if not await self._hydrate(user_id):
                    continue
                records = self.memory.get(user_id)
                if not records:
                    continue

                optimized = records
                if consolidation.enabled:
                    optimized = optimize(
                        records,
                        now=now,
                        content_threshold=consolidation.content_similarity,
                        tag_threshold=consolidation.tag_similarity,
                    )
                kept = prune(optimized, consolidation.retention_days, now=now)
                if kept == records:
                    continue

                try:
                    await self.backend.replace_memories(user_id, kept)
                except PersistenceError as e:
                    logger.warning(f"Maintenance write failed for {user_id}, skipped: {e}")
                    continue
                self.memory.replace(user_id, kept)
                merged_total += len(records) - len(optimized)
                pruned_total += len(optimized) - len(kept)

        stats = self.aggregator.stats
        stats.last_maintenance_ms = now
        stats.last_cleanup = {"users": len(users), "merged": merged_total, "pruned": pruned_total}
        await self._flush_stats()
        logger.info(
            f"Maintenance complete: users={len(users)}, merged={merged_total}, pruned={pruned_total}"
        )
        return dict(stats.last_cleanup)
