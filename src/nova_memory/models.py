"""Memory engine data models.

Timestamps are integer milliseconds since the epoch throughout, matching
the record shapes a storage collaborator persists.
"""

from __future__ import annotations

import math
import time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    return int(time.time() * 1000)


def _uuid() -> str:
    return str(uuid4())


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (``round`` rounds to even)."""
    return int(math.floor(value + 0.5))


def clamp(value: float, low: int = 1, high: int = 10) -> int:
    return max(low, min(high, round_half_up(value)))


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    MIXED = "mixed"


class Mood(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class MemoryType(str, Enum):
    CONVERSATION = "conversation"
    LEARNING = "learning"
    FACT = "fact"
    PREFERENCE = "preference"
    INTERACTION = "interaction"
    SYSTEM = "system"


class ContextFlags(BaseModel):
    """Independent boolean predicates over a message."""

    is_question: bool = False
    is_request: bool = False
    is_greeting: bool = False
    is_emotional: bool = False
    is_urgent: bool = False
    is_personal: bool = False
    is_technical: bool = False
    is_creative: bool = False


class Classification(BaseModel):
    """Result of classifying one message."""

    sentiment: Sentiment = Sentiment.NEUTRAL
    topics: list[str] = Field(default_factory=list)
    context_flags: ContextFlags = Field(default_factory=ContextFlags)
    complexity: int = Field(default=1, ge=1, le=10)
    language: str = "english"


class Turn(BaseModel):
    """One message/response exchange. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_uuid)
    user_id: str
    timestamp_ms: int = Field(default_factory=now_ms)
    text: str
    response_text: str = ""
    sentiment: Sentiment = Sentiment.NEUTRAL
    topics: list[str] = Field(default_factory=list)
    context_flags: ContextFlags = Field(default_factory=ContextFlags)
    complexity: int = Field(default=1, ge=1, le=10)
    importance: int = Field(default=5, ge=1, le=10)
    session_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class InteractionPatterns(BaseModel):
    """Rolling interaction statistics for one user."""

    message_lengths: list[int] = Field(default_factory=list)
    response_times: list[float] = Field(default_factory=list)
    topic_frequency: dict[str, int] = Field(default_factory=dict)
    time_of_day_frequency: dict[str, int] = Field(default_factory=dict)
    engagement_level: int = Field(default=1, ge=1, le=10)


class UserProfile(BaseModel):
    """Long-lived per-user profile, created lazily on first contact."""

    user_id: str
    first_name: str = ""
    username: str = ""
    personality: dict[str, int] = Field(default_factory=dict)
    topics_seen: list[str] = Field(default_factory=list)
    mood: Mood = Mood.NEUTRAL
    last_active_ms: int = Field(default_factory=now_ms)
    first_seen_ms: int = Field(default_factory=now_ms)
    message_count: int = 0
    recent_sentiments: list[Sentiment] = Field(default_factory=list)
    interaction_patterns: InteractionPatterns = Field(default_factory=InteractionPatterns)

    @field_validator("topics_seen")
    @classmethod
    def _dedupe_topics(cls, value: list[str]) -> list[str]:
        return _unique(value)

    @classmethod
    def create_default(cls, user_id: str, timestamp_ms: int | None = None) -> "UserProfile":
        ts = timestamp_ms if timestamp_ms is not None else now_ms()
        return cls(user_id=user_id, last_active_ms=ts, first_seen_ms=ts)

    @property
    def is_new(self) -> bool:
        return self.message_count == 0


class MemoryRecord(BaseModel):
    """A durable memory. Importance is clamped to [1, 10] on every write."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_uuid)
    user_id: str
    content: str
    memory_type: str = MemoryType.CONVERSATION.value
    importance: int = 5
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at_ms: int = Field(default_factory=now_ms)
    last_accessed_ms: int = Field(default_factory=now_ms)
    access_count: int = 0

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> int:
        try:
            return clamp(float(value))
        except (TypeError, ValueError) as e:
            raise ValueError(f"importance must be numeric, got {value!r}") from e

    @field_validator("memory_type", mode="before")
    @classmethod
    def _type_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        return _unique(value)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.memory_type, self.content)


class GlobalInsight(BaseModel):
    """An autonomously synthesized observation about a cross-user topic."""

    timestamp_ms: int = Field(default_factory=now_ms)
    topic: str
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    kind: str = "autonomous"


def complexity_bucket(complexity: int) -> str:
    if complexity <= 3:
        return "low"
    if complexity <= 7:
        return "medium"
    return "high"


class GlobalStats(BaseModel):
    """Process-wide counters, persisted periodically."""

    start_time_ms: int = Field(default_factory=now_ms)
    total_users: int = 0
    total_messages: int = 0
    topic_pattern_counts: dict[str, int] = Field(default_factory=dict)
    sentiment_pattern_counts: dict[str, int] = Field(default_factory=dict)
    complexity_bucket_counts: dict[str, int] = Field(default_factory=dict)
    last_maintenance_ms: int | None = None
    last_cleanup: dict[str, int] = Field(default_factory=dict)

    def record_turn(self, turn: Turn) -> None:
        self.total_messages += 1
        for topic in turn.topics:
            self.topic_pattern_counts[topic] = self.topic_pattern_counts.get(topic, 0) + 1
        sentiment = turn.sentiment.value
        self.sentiment_pattern_counts[sentiment] = (
            self.sentiment_pattern_counts.get(sentiment, 0) + 1
        )
        bucket = complexity_bucket(turn.complexity)
        self.complexity_bucket_counts[bucket] = self.complexity_bucket_counts.get(bucket, 0) + 1

    def describe(self) -> list[str]:
        """Human-readable pattern lines for status displays."""
        lines = []
        top_topics = sorted(
            self.topic_pattern_counts.items(), key=lambda kv: kv[1], reverse=True
        )[:5]
        if top_topics:
            lines.append(f"Most popular topics: {', '.join(t for t, _ in top_topics)}")
        if self.sentiment_pattern_counts:
            dominant = max(self.sentiment_pattern_counts.items(), key=lambda kv: kv[1])[0]
            lines.append(f"Overall user sentiment tends to be {dominant}")
        if self.complexity_bucket_counts:
            typical = max(self.complexity_bucket_counts.items(), key=lambda kv: kv[1])[0]
            lines.append(f"Users typically ask {typical}-complexity questions")
        return lines


class IngestResult(BaseModel):
    """Metadata returned to the transport layer for one ingested turn."""

    turn_id: str
    importance: int
    topics: list[str]
    sentiment: Sentiment
    complexity: int
    session_id: str
    promoted: bool = False
    persisted: bool = True


class UserSummary(BaseModel):
    """Aggregated view of one user's profile and history."""

    user_id: str
    total_turns: int
    top_topics: list[str]
    personality: dict[str, int]
    engagement_level: int
    preferred_time_of_day: str | None
    mood: Mood
    recent_sentiment: dict[str, int]
    avg_response_time: float
    avg_message_length: float
    last_active_ms: int
    communication_style: str
