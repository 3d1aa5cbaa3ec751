"""Cross-user pattern counters and autonomous insight generation."""

from __future__ import annotations

import random
from collections import deque
from typing import Iterable, Protocol, Sequence, TypeVar, runtime_checkable

from loguru import logger

from .config import InsightConfig
from .models import GlobalInsight, GlobalStats, Turn, now_ms

T = TypeVar("T")

INSIGHT_TEMPLATES: tuple[str, ...] = (
    "I notice patterns in how users approach {topic}. This suggests optimization opportunities.",
    "My understanding of {topic} has evolved through our conversations. I'm becoming more nuanced.",
    "There's an interesting connection between {topic} and other topics users discuss.",
    "I should adapt my {topic} responses based on user expertise levels.",
    "Users seem to prefer practical examples when discussing {topic}.",
    "The {topic} domain shows increasing complexity in user questions.",
    "I'm developing deeper insights into {topic} through pattern recognition.",
    "Users engaging with {topic} tend to have specific follow-up questions.",
)


@runtime_checkable
class SelectionStrategy(Protocol):
    """Chooses topics/templates and assigns insight confidence."""

    def choose(self, items: Sequence[T]) -> T: ...

    def confidence(self) -> float: ...


class RandomSelection:
    """Pseudo-random choice; pass a seed for reproducible runs."""

    def __init__(self, seed: int | None = None):
        self._rng = random.Random(seed)

    def choose(self, items: Sequence[T]) -> T:
        return self._rng.choice(items)

    def confidence(self) -> float:
        # [0.5, 1.0)
        return 0.5 + self._rng.random() * 0.5


class RoundRobinSelection:
    """Deterministic cycling selection with a fixed confidence."""

    def __init__(self, confidence: float = 0.75):
        self._index = 0
        self._confidence = confidence

    def choose(self, items: Sequence[T]) -> T:
        item = items[self._index % len(items)]
        self._index += 1
        return item

    def confidence(self) -> float:
        return self._confidence


def create_selection(config: InsightConfig) -> SelectionStrategy:
    if config.selection == "round_robin":
        return RoundRobinSelection()
    return RandomSelection(config.seed)


class GlobalAggregator:
    """Holds the process-wide stats and the bounded rolling insight list.

    Topics seen in ingested turns become "active thoughts" for
    ``active_topic_window_minutes``; each insight tick picks one of them
    and renders a template for it.
    """

    def __init__(
        self,
        config: InsightConfig | None = None,
        stats: GlobalStats | None = None,
        strategy: SelectionStrategy | None = None,
        templates: Sequence[str] = INSIGHT_TEMPLATES,
    ):
        self.config = config or InsightConfig()
        self.stats = stats or GlobalStats()
        self.strategy = strategy or create_selection(self.config)
        self.templates = tuple(templates)
        self._insights: deque[GlobalInsight] = deque(maxlen=self.config.max_insights)
        self._active_topics: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def observe(self, turn: Turn) -> None:
        """Fold one turn into the global counters and active thoughts."""
        self.stats.record_turn(turn)
        for topic in turn.topics:
            self._active_topics[topic] = max(self._active_topics.get(topic, 0), turn.timestamp_ms)

    def register_user(self) -> None:
        self.stats.total_users += 1

    def active_thoughts(self, now: int | None = None) -> list[str]:
        now = now if now is not None else now_ms()
        window_ms = int(self.config.active_topic_window_minutes * 60 * 1000)
        # Forget topics that fell out of the window
        self._active_topics = {
            topic: seen for topic, seen in self._active_topics.items() if now - seen <= window_ms
        }
        return list(self._active_topics)

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def candidates(self, topic: str) -> list[str]:
        """Every insight text the templates can produce for *topic*."""
        return [template.format(topic=topic) for template in self.templates]

    def generate(self, now: int | None = None) -> GlobalInsight | None:
        """Synthesize one insight, or ``None`` without active thoughts.

        The insight is not stored; call :meth:`add_insight` once it has
        been persisted.
        """
        now = now if now is not None else now_ms()
        thoughts = self.active_thoughts(now)
        if not thoughts or not self.templates:
            return None

        topic = self.strategy.choose(thoughts)
        text = self.strategy.choose(self.candidates(topic))
        return GlobalInsight(
            timestamp_ms=now,
            topic=topic,
            text=text,
            confidence=self.strategy.confidence(),
        )

    def add_insight(self, insight: GlobalInsight) -> None:
        self._insights.append(insight)
        logger.debug(f"Insight added for '{insight.topic}' ({len(self._insights)} held)")

    def load_insights(self, insights: Iterable[GlobalInsight]) -> None:
        self._insights.clear()
        self._insights.extend(insights)

    def recent_insights(self, limit: int = 10) -> list[GlobalInsight]:
        """Most recent *limit* insights, oldest first."""
        if limit <= 0:
            return []
        return list(self._insights)[-limit:]

    @property
    def insight_count(self) -> int:
        return len(self._insights)
