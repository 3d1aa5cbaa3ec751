"""Turn importance scoring."""

from __future__ import annotations

import re
from typing import Iterable

from .models import Sentiment, clamp

BASE_IMPORTANCE = 5
LONG_MESSAGE_CHARS = 200
MAX_TECHNICAL_BONUS = 2

DEFAULT_HIGH_VALUE_TOPICS = frozenset({"coding", "research", "personal"})

_FIRST_PERSON = re.compile(r"\b(my|me)\b", re.IGNORECASE)
_TECHNICAL_TERMS = re.compile(
    r"\b(algorithm|architecture|optimization|implementation|methodology)\b",
    re.IGNORECASE,
)


class ImportanceScorer:
    """Scores a classified message on the 1..10 importance scale.

    Starts at a base of 5 and adds one point each for a non-neutral
    sentiment, a question mark, a first-person reference, a high-value
    topic and a long message, plus up to two points for technical terms.
    """

    def __init__(self, high_value_topics: Iterable[str] | None = None):
        self.high_value_topics = frozenset(
            high_value_topics if high_value_topics is not None else DEFAULT_HIGH_VALUE_TOPICS
        )

    def score(
        self, text: str, sentiment: Sentiment | str, topics: Iterable[str] | None
    ) -> int:
        text = text if isinstance(text, str) else ""
        try:
            sentiment = Sentiment(sentiment)
        except ValueError:
            sentiment = Sentiment.NEUTRAL
        importance = BASE_IMPORTANCE

        if sentiment is not Sentiment.NEUTRAL:
            importance += 1
        if "?" in text:
            importance += 1
        if _FIRST_PERSON.search(text):
            importance += 1
        if self.high_value_topics.intersection(topics or ()):
            importance += 1
        if len(text) > LONG_MESSAGE_CHARS:
            importance += 1

        importance += min(len(_TECHNICAL_TERMS.findall(text)), MAX_TECHNICAL_BONUS)
        return clamp(importance)
