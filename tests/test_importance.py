"""Tests for importance scoring."""

from __future__ import annotations

import pytest

from nova_memory.classifier import MessageClassifier
from nova_memory.importance import ImportanceScorer
from nova_memory.models import Sentiment


@pytest.fixture
def scorer() -> ImportanceScorer:
    return ImportanceScorer()


def test_reference_question_scores_nine(scorer: ImportanceScorer) -> None:
    text = "Can you help me with my algorithm design?"
    classification = MessageClassifier().classify(text)
    # base 5 + question + personal + coding topic + "algorithm"
    assert scorer.score(text, classification.sentiment, classification.topics) == 9


def test_base_score(scorer: ImportanceScorer) -> None:
    assert scorer.score("ok fine", Sentiment.NEUTRAL, []) == 5


@pytest.mark.parametrize("sentiment", [Sentiment.POSITIVE, Sentiment.NEGATIVE, Sentiment.MIXED])
def test_non_neutral_sentiment_adds_one(scorer: ImportanceScorer, sentiment: Sentiment) -> None:
    assert scorer.score("ok", sentiment, []) == 6


def test_sentiment_accepts_plain_strings(scorer: ImportanceScorer) -> None:
    assert scorer.score("ok", "positive", []) == 6


def test_unknown_sentiment_counts_as_neutral(scorer: ImportanceScorer) -> None:
    assert scorer.score("ok", "ecstatic", []) == 5
    assert scorer.score("ok", None, None) == 5


def test_first_person_is_whole_word(scorer: ImportanceScorer) -> None:
    assert scorer.score("tell me", Sentiment.NEUTRAL, []) == 6
    assert scorer.score("mine and memes", Sentiment.NEUTRAL, []) == 5


def test_high_value_topic_counts_once(scorer: ImportanceScorer) -> None:
    assert scorer.score("x", Sentiment.NEUTRAL, ["coding", "research", "personal"]) == 6
    assert scorer.score("x", Sentiment.NEUTRAL, ["travel"]) == 5


def test_custom_high_value_topics() -> None:
    scorer = ImportanceScorer(high_value_topics=["travel"])
    assert scorer.score("x", Sentiment.NEUTRAL, ["travel"]) == 6
    assert scorer.score("x", Sentiment.NEUTRAL, ["coding"]) == 5


def test_long_message_bonus(scorer: ImportanceScorer) -> None:
    assert scorer.score("a" * 200, Sentiment.NEUTRAL, []) == 5
    assert scorer.score("a" * 201, Sentiment.NEUTRAL, []) == 6


def test_technical_bonus_is_capped(scorer: ImportanceScorer) -> None:
    text = "algorithm architecture optimization implementation methodology"
    assert scorer.score(text, Sentiment.NEUTRAL, []) == 7


def test_score_is_clamped_to_ten(scorer: ImportanceScorer) -> None:
    text = "my algorithm architecture? " + "x" * 200
    assert scorer.score(text, Sentiment.POSITIVE, ["coding"]) == 10


@pytest.mark.parametrize(
    "text",
    [
        "",
        "?",
        "Please help me, my code is a terrible problem and I love python?" * 10,
        "hello",
    ],
)
def test_score_in_range(scorer: ImportanceScorer, text: str) -> None:
    classification = MessageClassifier().classify(text)
    score = scorer.score(text, classification.sentiment, classification.topics)
    assert 1 <= score <= 10
    assert score == scorer.score(text, classification.sentiment, classification.topics)
