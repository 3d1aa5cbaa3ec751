"""Tests for the MemoryEngine facade."""

from __future__ import annotations

import asyncio
from datetime import timezone
from unittest.mock import AsyncMock

import pytest
from conftest import BASE_TIME_MS, MS_PER_DAY

from nova_memory.aggregator import RoundRobinSelection
from nova_memory.config import MemoryEngineConfig
from nova_memory.engine import MemoryEngine, communication_style
from nova_memory.exceptions import PersistenceError
from nova_memory.models import MemoryRecord, Mood, Sentiment, UserProfile
from nova_memory.profile import ProfileUpdater
from nova_memory.storage import InMemoryBackend

QUESTION = "Can you help me with my algorithm design?"


def _engine(backend, clock, config=None) -> MemoryEngine:
    config = config or MemoryEngineConfig(insights={"selection": "round_robin"})
    return MemoryEngine(
        config=config,
        backend=backend,
        selection=RoundRobinSelection(),
        clock=clock,
        profile_updater=ProfileUpdater(config.profile, tz=timezone.utc),
    )


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ingest_reference_question(engine, backend):
    result = await engine.ingest("user-1", QUESTION, "Sure, let's look at it.")

    assert result.importance == 9
    assert "coding" in result.topics
    assert result.sentiment == Sentiment.NEUTRAL
    assert result.promoted is True
    assert result.persisted is True
    assert result.session_id.startswith("session_")

    stored = await backend.load_memories("user-1")
    assert len(stored) == 1
    assert stored[0].content == f"User: {QUESTION}\nAssistant: Sure, let's look at it."
    assert stored[0].importance == 9
    assert "coding" in stored[0].tags
    assert stored[0].metadata["turn_id"] == result.turn_id


@pytest.mark.asyncio
async def test_low_importance_turn_is_not_promoted(engine, backend):
    result = await engine.ingest("user-1", "ok", "fine")
    assert result.importance == 5
    assert result.promoted is False
    assert await backend.load_memories("user-1") == []
    assert len(await backend.load_conversations("user-1")) == 1


@pytest.mark.asyncio
async def test_promotion_excerpt_is_truncated(engine, backend):
    reply = "r" * 600
    await engine.ingest("user-1", QUESTION, reply)
    content = (await backend.load_memories("user-1"))[0].content
    assert content.endswith("Assistant: " + "r" * 500 + "...")


@pytest.mark.asyncio
async def test_repeated_turn_is_promoted_once(engine):
    first = await engine.ingest("user-1", QUESTION, "answer")
    second = await engine.ingest("user-1", QUESTION, "answer")
    assert first.promoted is True
    assert second.promoted is False
    assert engine.memory.count("user-1") == 1


@pytest.mark.asyncio
async def test_ingest_tolerates_empty_text(engine):
    result = await engine.ingest("user-1", None)
    assert result.sentiment == Sentiment.NEUTRAL
    assert result.topics == []
    assert 1 <= result.importance <= 10


@pytest.mark.asyncio
async def test_ingest_metadata_feeds_profile(engine, backend):
    await engine.ingest(
        "user-1",
        "hello",
        "hi",
        metadata={"first_name": "Ada", "username": "ada_l", "response_time_ms": 420, "chat": 7},
    )
    profile = await backend.get_user_record("user-1")
    assert profile.first_name == "Ada"
    assert profile.username == "ada_l"
    assert profile.interaction_patterns.response_times == [420.0]
    turn = (await engine.recent_turns("user-1"))[0]
    assert turn.metadata["chat"] == 7


@pytest.mark.asyncio
async def test_concurrent_turns_for_one_user_are_serialized(engine, backend):
    await asyncio.gather(*(engine.ingest("user-1", f"message {i}") for i in range(20)))
    profile = await backend.get_user_record("user-1")
    assert profile.message_count == 20
    assert len(profile.interaction_patterns.message_lengths) == 20
    assert len(await engine.recent_turns("user-1", 50)) == 20


@pytest.mark.asyncio
async def test_total_users_counts_each_user_once(engine):
    await engine.ingest("alice", "hi")
    await engine.ingest("alice", "again")
    await engine.ingest("bob", "hello")
    stats = engine.get_stats()
    assert stats["total_users"] == 2
    assert stats["total_messages"] == 3
    assert stats["active_sessions"] == 2


# ---------------------------------------------------------------------------
# Degraded persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_conversation_write_failure_discards_only_that_step(engine, backend, monkeypatch):
    monkeypatch.setattr(
        backend, "append_conversation", AsyncMock(side_effect=PersistenceError("disk full"))
    )
    result = await engine.ingest("user-1", QUESTION, "answer")

    assert result.persisted is False
    assert result.importance == 9
    assert await engine.recent_turns("user-1") == []
    # Profile and memory steps still went through
    assert (await backend.get_user_record("user-1")).message_count == 1
    assert result.promoted is True


@pytest.mark.asyncio
async def test_profile_write_failure_keeps_old_profile(engine, backend, monkeypatch):
    monkeypatch.setattr(
        backend, "put_user_record", AsyncMock(side_effect=PersistenceError("read-only"))
    )
    result = await engine.ingest("user-1", "I love this")

    assert result.persisted is False
    summary = await engine.get_summary("user-1")
    assert summary.total_turns == 0
    assert summary.personality == {}
    assert len(await engine.recent_turns("user-1")) == 1
    assert engine.get_stats()["total_users"] == 0


@pytest.mark.asyncio
async def test_memory_write_failure_discards_promotion(engine, backend, monkeypatch):
    monkeypatch.setattr(backend, "append_memory", AsyncMock(side_effect=PersistenceError("quota")))
    result = await engine.ingest("user-1", QUESTION, "answer")
    assert result.promoted is False
    assert result.persisted is False
    assert engine.memory.count("user-1") == 0


def _fail_first_call(monkeypatch, backend, name):
    """Make ``backend.<name>`` raise PersistenceError once, then behave normally."""
    original = getattr(backend, name)
    calls = {"n": 0}

    async def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise PersistenceError("storage unavailable", operation=name)
        return await original(*args, **kwargs)

    monkeypatch.setattr(backend, name, flaky)


@pytest.mark.asyncio
async def test_hydration_failure_leaves_stored_profile_intact(engine, backend, monkeypatch):
    stored = UserProfile.create_default("user-1", BASE_TIME_MS - MS_PER_DAY)
    stored.message_count = 10
    stored.personality = {"curiosity": 7}
    await backend.put_user_record("user-1", stored)
    _fail_first_call(monkeypatch, backend, "load_memories")

    result = await engine.ingest("user-1", QUESTION, "answer")

    assert result.importance == 9
    assert result.persisted is False
    assert result.promoted is False
    profile = await backend.get_user_record("user-1")
    assert profile.message_count == 10
    assert profile.personality == {"curiosity": 7}
    assert await backend.load_memories("user-1") == []
    assert engine.get_stats()["total_users"] == 0

    # Storage is back: the next turn builds on the stored profile
    await engine.ingest("user-1", "hello")
    profile = await backend.get_user_record("user-1")
    assert profile.message_count == 11
    assert profile.personality["curiosity"] == 7
    assert engine.get_stats()["total_users"] == 0
    assert [t.text for t in await engine.recent_turns("user-1")] == [QUESTION, "hello"]


@pytest.mark.asyncio
@pytest.mark.parametrize("failing", ["get_user_record", "load_conversations"])
async def test_any_failed_hydration_read_blocks_profile_write(engine, backend, monkeypatch, failing):
    stored = UserProfile.create_default("user-1", BASE_TIME_MS)
    stored.message_count = 3
    await backend.put_user_record("user-1", stored)
    _fail_first_call(monkeypatch, backend, failing)

    result = await engine.ingest("user-1", "hello")

    assert result.persisted is False
    assert (await backend.get_user_record("user-1")).message_count == 3


@pytest.mark.asyncio
async def test_remember_skips_write_when_memories_unreadable(engine, backend, monkeypatch):
    existing = MemoryRecord(user_id="user-1", content="likes tea", memory_type="fact")
    await backend.append_memory("user-1", existing)
    _fail_first_call(monkeypatch, backend, "load_memories")

    assert await engine.remember("user-1", "likes tea") is None
    assert len(await backend.load_memories("user-1")) == 1

    # Hydrated now, so the duplicate is recognized
    assert await engine.remember("user-1", "likes tea") is None
    assert len(await backend.load_memories("user-1")) == 1


# ---------------------------------------------------------------------------
# Hydration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_state_is_restored_from_backend(backend, clock):
    first = _engine(backend, clock)
    await first.initialize()
    await first.ingest("user-1", QUESTION, "answer")
    await first.ingest("user-1", "I love python")
    await first.close()

    second = _engine(backend, clock)
    await second.initialize()
    summary = await second.get_summary("user-1")
    assert summary.total_turns == 2
    assert [t.text for t in await second.recent_turns("user-1")] == [QUESTION, "I love python"]
    assert second.get_stats()["total_messages"] == 2
    assert len(await second.search_memory("user-1", "algorithm")) == 1
    await second.close()


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_summary(engine):
    await engine.ingest("user-1", "I love python code", metadata={"response_time_ms": 100})
    await engine.ingest("user-1", "python again?", metadata={"response_time_ms": 300})
    await engine.ingest("user-1", "let's travel")

    summary = await engine.get_summary("user-1")
    assert summary.total_turns == 3
    assert summary.top_topics[0] == "coding"
    assert "travel" in summary.top_topics
    assert summary.personality["positivity"] == 1
    assert summary.personality["curiosity"] == 1
    assert summary.preferred_time_of_day == "morning"
    assert summary.mood == Mood.POSITIVE
    assert summary.recent_sentiment == {"positive": 1, "neutral": 2}
    assert summary.avg_response_time == 200.0
    assert summary.avg_message_length == pytest.approx((18 + 13 + 12) / 3)
    assert summary.last_active_ms == BASE_TIME_MS
    assert summary.communication_style == "developing"


@pytest.mark.asyncio
async def test_summary_for_unknown_user(engine):
    summary = await engine.get_summary("ghost")
    assert summary.total_turns == 0
    assert summary.top_topics == []
    assert summary.preferred_time_of_day is None
    assert summary.engagement_level == 1


@pytest.mark.parametrize(
    "personality, expected",
    [
        ({}, "developing"),
        ({"curiosity": 6}, "inquisitive"),
        ({"curiosity": 5, "positivity": 4}, "optimistic"),
        ({"openness": 4, "technical": 4, "creativity": 4}, "open, technical, creative"),
    ],
)
def test_communication_style(personality, expected):
    assert communication_style(personality) == expected


# ---------------------------------------------------------------------------
# Memory access
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_memory_tracks_access(engine, backend, clock):
    await engine.remember("user-1", "favourite language is python", tags=["coding"])
    clock.advance(5000)

    hits = await engine.search_memory("user-1", "python")
    assert len(hits) == 1
    assert hits[0].access_count == 1
    assert hits[0].last_accessed_ms == BASE_TIME_MS + 5000

    await engine.search_memory("user-1", "python")
    stored = await backend.load_memories("user-1")
    assert stored[0].access_count == 2


@pytest.mark.asyncio
async def test_search_memory_without_hits(engine):
    await engine.remember("user-1", "likes tea")
    assert await engine.search_memory("user-1", "coffee") == []
    assert await engine.search_memory("nobody", "tea") == []


@pytest.mark.asyncio
async def test_remember_rejects_duplicates(engine):
    record = await engine.remember("user-1", "birthday is in May", memory_type="fact", importance=8)
    assert record is not None
    assert record.importance == 8
    assert await engine.remember("user-1", "birthday is in May", memory_type="fact") is None
    assert await engine.remember("user-1", "birthday is in May", memory_type="preference") is not None


@pytest.mark.asyncio
async def test_memory_stats(engine):
    await engine.remember("user-1", "a", importance=2, tags=["x"])
    await engine.remember("user-1", "b", importance=6, memory_type="learning")
    stats = await engine.get_memory_stats("user-1")
    assert stats["total"] == 2
    assert stats["by_type"] == {"fact": 1, "learning": 1}
    assert stats["avg_importance"] == 4


@pytest.mark.asyncio
async def test_related_and_recent_memories(engine, clock):
    decorators = await engine.remember("user-1", "python decorators wrap functions", tags=["coding"])
    clock.advance(1000)
    generators = await engine.remember("user-1", "python generators yield values", tags=["coding"])
    clock.advance(30 * MS_PER_DAY)
    dentist = await engine.remember("user-1", "dentist appointment on friday")

    assert await engine.related_memories("user-1", decorators.id) == [generators]
    assert await engine.related_memories("user-1", dentist.id) == []
    assert await engine.related_memories("user-1", "no-such-id") == []

    recent = await engine.recent_memories("user-1", limit=2)
    assert [r.id for r in recent] == [dentist.id, generators.id]


@pytest.mark.asyncio
async def test_search_conversations(engine):
    await engine.ingest("user-1", "python decorators", "they wrap functions")
    await engine.ingest("user-1", "weather today")
    results = await engine.search_conversations("user-1", "functions", limit=5)
    assert [t.text for t in results] == ["python decorators"]


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_generate_insight(engine, backend):
    assert await engine.generate_insight() is None

    await engine.ingest("user-1", "python code review")
    insight = await engine.generate_insight()

    assert insight is not None
    assert insight.topic == "coding"
    assert insight.text in engine.aggregator.candidates("coding")
    assert engine.get_recent_insights(5) == [insight]
    assert await backend.load_insights() == [insight]


@pytest.mark.asyncio
async def test_insight_write_failure_is_discarded(engine, backend, monkeypatch):
    await engine.ingest("user-1", "python code review")
    monkeypatch.setattr(backend, "append_insight", AsyncMock(side_effect=PersistenceError("x")))
    assert await engine.generate_insight() is None
    assert engine.get_recent_insights(5) == []


@pytest.mark.asyncio
async def test_global_patterns(engine):
    await engine.ingest("user-1", "python code")
    patterns = engine.get_global_patterns()
    assert patterns[0] == "Most popular topics: coding"


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_maintenance_prunes_and_merges(engine, backend, clock):
    old = clock.now
    await engine.remember("user-1", "old small talk", memory_type="conversation", importance=5)
    await engine.remember("user-1", "old but vital", memory_type="conversation", importance=8)
    clock.advance(120 * MS_PER_DAY)
    await engine.remember("user-1", "I love debugging Python", tags=["coding"])
    await engine.remember("user-1", "I enjoy debugging in Python", tags=["coding"])

    result = await engine.run_maintenance()

    assert result == {"users": 1, "merged": 1, "pruned": 1}
    contents = [r.content for r in await backend.load_memories("user-1")]
    assert "old small talk" not in contents
    assert "old but vital" in contents
    assert "I love debugging Python | I enjoy debugging in Python" in contents

    stats = engine.get_stats()
    assert stats["last_maintenance_ms"] == old + 120 * MS_PER_DAY
    assert stats["last_cleanup"] == result


@pytest.mark.asyncio
async def test_maintenance_is_stable(engine, backend):
    await engine.remember("user-1", "I love debugging Python", tags=["coding"])
    await engine.remember("user-1", "I enjoy debugging in Python", tags=["coding"])
    await engine.run_maintenance()
    after_first = await backend.load_memories("user-1")

    result = await engine.run_maintenance()
    assert result["merged"] == 0
    assert result["pruned"] == 0
    assert await backend.load_memories("user-1") == after_first


@pytest.mark.asyncio
async def test_maintenance_covers_stored_users(backend, clock):
    seed = _engine(backend, clock)
    await seed.initialize()
    await seed.remember("stored-user", "ancient note", importance=2)
    await seed.close()

    clock.advance(200 * MS_PER_DAY)
    engine = _engine(backend, clock)
    await engine.initialize()
    result = await engine.run_maintenance()
    assert result["pruned"] == 1
    assert await backend.load_memories("stored-user") == []
    await engine.close()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_close_flushes_global_stats(backend, clock):
    engine = _engine(backend, clock)
    await engine.initialize()
    await engine.ingest("user-1", "hello")
    await engine.close()
    assert (await backend.get_global_stats()).total_messages == 1


@pytest.mark.asyncio
async def test_start_runs_timers_until_close(backend, clock):
    config = MemoryEngineConfig(insights={"interval_seconds": 0.01, "selection": "round_robin"})
    engine = _engine(backend, clock, config)
    async with engine:
        await engine.ingest("user-1", "python code")
        await asyncio.sleep(0.1)
        assert engine.get_recent_insights(100)
    count = len(await backend.load_insights())
    await asyncio.sleep(0.05)
    assert len(await backend.load_insights()) == count


@pytest.mark.asyncio
async def test_end_session(engine):
    first = await engine.ingest("user-1", "hi")
    assert engine.end_session("user-1") is True
    second = await engine.ingest("user-1", "hi again")
    assert first.session_id != second.session_id


def test_default_backend_is_in_memory():
    assert isinstance(MemoryEngine().backend, InMemoryBackend)
