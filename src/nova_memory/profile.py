"""Folds classified turns into a user's evolving profile."""

from __future__ import annotations

from datetime import datetime, tzinfo

from loguru import logger

from .config import ProfileConfig
from .models import Mood, Sentiment, Turn, UserProfile, clamp

MS_PER_DAY = 24 * 60 * 60 * 1000

# ContextFlags field -> personality trait
_FLAG_TRAITS = (
    ("is_question", "curiosity"),
    ("is_personal", "openness"),
    ("is_technical", "technical"),
    ("is_creative", "creativity"),
)


def time_slot(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    if hour < 21:
        return "evening"
    return "night"


def compute_mood(sentiments: list[Sentiment]) -> Mood:
    positive = sum(1 for s in sentiments if s == Sentiment.POSITIVE)
    negative = sum(1 for s in sentiments if s == Sentiment.NEGATIVE)
    if positive > negative:
        return Mood.POSITIVE
    if negative > positive:
        return Mood.NEGATIVE
    return Mood.NEUTRAL


class ProfileUpdater:
    """Applies one turn to a profile in place.

    Counters only ever increase here. Callers that need atomicity should
    pass a copy and swap it in once the profile has been persisted.
    """

    def __init__(self, config: ProfileConfig | None = None, tz: tzinfo | None = None):
        """
        Args:
            config: Window sizes for rolling lists and mood.
            tz: Zone used for time-of-day slots. ``None`` means local time.
        """
        self.config = config or ProfileConfig()
        self.tz = tz

    def apply(
        self,
        profile: UserProfile,
        turn: Turn,
        response_time_ms: float | None = None,
        first_name: str | None = None,
        username: str | None = None,
    ) -> UserProfile:
        if first_name:
            profile.first_name = first_name
        if username:
            profile.username = username

        self._update_personality(profile, turn)

        for topic in turn.topics:
            if topic not in profile.topics_seen:
                profile.topics_seen.append(topic)

        window = self.config.mood_window
        profile.recent_sentiments = (profile.recent_sentiments + [turn.sentiment])[-window:]
        profile.mood = compute_mood(profile.recent_sentiments)

        if profile.is_new:
            profile.first_seen_ms = min(profile.first_seen_ms, turn.timestamp_ms)
        profile.message_count += 1
        profile.last_active_ms = max(profile.last_active_ms, turn.timestamp_ms)

        self._update_patterns(profile, turn, response_time_ms)

        logger.debug(
            f"Profile {profile.user_id} updated: mood={profile.mood.value}, "
            f"engagement={profile.interaction_patterns.engagement_level}"
        )
        return profile

    def _update_personality(self, profile: UserProfile, turn: Turn) -> None:
        traits = profile.personality
        if turn.sentiment == Sentiment.POSITIVE:
            traits["positivity"] = traits.get("positivity", 0) + 1
        for flag, trait in _FLAG_TRAITS:
            if getattr(turn.context_flags, flag):
                traits[trait] = traits.get(trait, 0) + 1

    def _update_patterns(
        self, profile: UserProfile, turn: Turn, response_time_ms: float | None
    ) -> None:
        patterns = profile.interaction_patterns
        window = self.config.pattern_window

        if response_time_ms is not None and response_time_ms > 0:
            patterns.response_times = (patterns.response_times + [float(response_time_ms)])[
                -window:
            ]
        patterns.message_lengths = (patterns.message_lengths + [len(turn.text)])[-window:]

        for topic in turn.topics:
            patterns.topic_frequency[topic] = patterns.topic_frequency.get(topic, 0) + 1

        slot = time_slot(datetime.fromtimestamp(turn.timestamp_ms / 1000, tz=self.tz).hour)
        patterns.time_of_day_frequency[slot] = patterns.time_of_day_frequency.get(slot, 0) + 1

        patterns.engagement_level = self.engagement_level(profile, turn.timestamp_ms)

    @staticmethod
    def engagement_level(profile: UserProfile, now_ms: int) -> int:
        """``clamp(1, 10, round(avg message length / 50 + conversations per day * 2))``."""
        lengths = profile.interaction_patterns.message_lengths
        avg_length = sum(lengths) / len(lengths) if lengths else 0.0
        days = max(1.0, (now_ms - profile.first_seen_ms) / MS_PER_DAY)
        per_day = profile.message_count / days
        return clamp(avg_length / 50 + per_day * 2)
