"""Rule-based message classifier.

Deterministic and dependency-free: every label comes from an ordered table
of ``(label, compiled pattern)`` entries evaluated uniformly. Empty or
unusable input yields the neutral default classification rather than an
error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

from .models import Classification, ContextFlags, Sentiment, clamp


@dataclass(frozen=True, slots=True)
class _Rule:
    """A single labelled pattern."""

    label: str
    pattern: re.Pattern[str]


def compile_rules(
    table: Sequence[tuple[str, str]], flags: int = re.IGNORECASE
) -> tuple[_Rule, ...]:
    """Compile ``(label, regex)`` pairs into an ordered rule table."""
    return tuple(_Rule(label=label, pattern=re.compile(raw, flags)) for label, raw in table)


# ---------------------------------------------------------------------------
# Sentiment keyword sets
# ---------------------------------------------------------------------------
_SENTIMENT_RULES = compile_rules(
    [
        (
            "positive",
            r"\b(good|great|excellent|amazing|wonderful|fantastic|love|like|happy|"
            r"excited|thank|awesome|brilliant|perfect)\b",
        ),
        (
            "negative",
            r"\b(bad|terrible|awful|hate|dislike|sad|angry|frustrated|disappointed|"
            r"problem|difficult|hard|struggle)\b",
        ),
        ("neutral", r"\b(okay|fine|alright|normal|usual|regular|standard)\b"),
    ]
)

# ---------------------------------------------------------------------------
# Topics (not mutually exclusive)
# ---------------------------------------------------------------------------
_TOPIC_RULES = compile_rules(
    [
        (
            "coding",
            r"\b(code|programming|javascript|python|java|html|css|react|vue|angular|node|"
            r"api|database|algorithm|debug|function|variable|array|object|class|git|"
            r"deployment)\b",
        ),
        (
            "research",
            r"\b(research|study|analyze|investigate|explore|discover|learn|information|"
            r"data|facts|evidence|source|reference|survey|experiment)\b",
        ),
        (
            "science",
            r"\b(science|physics|chemistry|biology|medicine|health|technology|engineering|"
            r"mathematics|statistics|experiment|theory)\b",
        ),
        (
            "business",
            r"\b(business|marketing|finance|economy|management|strategy|profit|revenue|"
            r"company|startup|investment|market|sales)\b",
        ),
        (
            "education",
            r"\b(education|school|university|learning|teaching|student|teacher|course|"
            r"lesson|exam|study|academic|degree)\b",
        ),
        (
            "technology",
            r"\b(technology|tech|software|hardware|computer|internet|ai|"
            r"artificial intelligence|machine learning|blockchain|crypto|automation)\b",
        ),
        (
            "personal",
            r"\b(personal|life|family|friends|relationship|career|hobby|interest|goal|"
            r"dream|plan|future|past)\b",
        ),
        (
            "creative",
            r"\b(creative|art|music|writing|design|photography|painting|drawing|story|"
            r"poem|novel|blog|content)\b",
        ),
        (
            "health",
            r"\b(health|fitness|exercise|diet|nutrition|wellness|mental|physical|therapy|"
            r"doctor|medical|treatment)\b",
        ),
        (
            "travel",
            r"\b(travel|trip|vacation|destination|country|city|culture|adventure|explore|"
            r"visit|tour|journey)\b",
        ),
    ]
)

# ---------------------------------------------------------------------------
# Context flags, keyed by ContextFlags field name
# ---------------------------------------------------------------------------
_CONTEXT_RULES = compile_rules(
    [
        ("is_question", r"\?"),
        ("is_request", r"please|can you"),
        ("is_greeting", r"\b(hi|hello|hey|good morning|good afternoon|good evening)\b"),
        (
            "is_emotional",
            r"\b(feel|feeling|emotion|sad|happy|angry|excited|worried|anxious)\b",
        ),
        ("is_urgent", r"\b(urgent|asap|quickly|now|immediately)\b"),
        ("is_personal", r"\b(my|me|i|myself|personal)\b"),
        ("is_technical", r"\b(code|program|function|algorithm|database|api|debug)\b"),
        ("is_creative", r"\b(create|design|imagine|art|music|write|story)\b"),
    ]
)

_TECHNICAL_VOCABULARY = re.compile(
    r"\b(algorithm|architecture|optimization|scalability|concurrency|database|security|"
    r"performance|framework|library|api|protocol|interface)\b",
    re.IGNORECASE,
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")

# ---------------------------------------------------------------------------
# Languages, in priority order; the first entry is also the default
# ---------------------------------------------------------------------------
_LANGUAGE_RULES = compile_rules(
    [
        (
            "english",
            r"\b(the|and|or|but|in|on|at|to|for|of|with|by|from|about|like|as|is|are|was|"
            r"were|be|been|have|has|had|do|does|did|will|would|could|should|can|may|might)\b",
        ),
        (
            "spanish",
            r"\b(el|la|los|las|y|o|pero|en|con|por|para|de|desde|sobre|como|es|son|era|"
            r"eran|ser|estar|tener|hacer|poder|deber|querer)\b",
        ),
        (
            "french",
            r"\b(le|la|les|et|ou|mais|dans|avec|pour|de|du|des|sur|comme|est|sont|était|"
            r"étaient|être|avoir|faire|pouvoir|devoir|vouloir)\b",
        ),
    ]
)


@dataclass
class MessageClassifier:
    """Classifies a message into sentiment, topics, flags, complexity and language.

    The rule tables are injectable so callers can extend or replace them;
    the defaults are compiled once at module load.
    """

    topic_rules: Sequence[_Rule] = field(default_factory=lambda: _TOPIC_RULES, repr=False)
    sentiment_rules: Sequence[_Rule] = field(
        default_factory=lambda: _SENTIMENT_RULES, repr=False
    )
    context_rules: Sequence[_Rule] = field(default_factory=lambda: _CONTEXT_RULES, repr=False)
    language_rules: Sequence[_Rule] = field(
        default_factory=lambda: _LANGUAGE_RULES, repr=False
    )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def classify(self, text: str | None) -> Classification:
        """Classify *text*. Never raises; empty input gives the default."""
        if not isinstance(text, str) or not text.strip():
            return Classification(language=self.default_language)

        return Classification(
            sentiment=self.analyze_sentiment(text),
            topics=self.extract_topics(text),
            context_flags=self.analyze_context(text),
            complexity=self.calculate_complexity(text),
            language=self.detect_language(text),
        )

    def analyze_sentiment(self, text: str) -> Sentiment:
        matched = {rule.label for rule in self.sentiment_rules if rule.pattern.search(text)}
        positive = "positive" in matched
        negative = "negative" in matched

        if positive and negative:
            return Sentiment.MIXED
        if positive:
            return Sentiment.POSITIVE
        if negative:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL

    def extract_topics(self, text: str) -> list[str]:
        return [rule.label for rule in self.topic_rules if rule.pattern.search(text)]

    def analyze_context(self, text: str) -> ContextFlags:
        flags = {rule.label: bool(rule.pattern.search(text)) for rule in self.context_rules}
        return ContextFlags(**flags)

    def calculate_complexity(self, text: str) -> int:
        """``clamp(1, 10, round(avg words per sentence / 2 + technical terms * 0.5))``."""
        word_count = len(text.split())
        sentence_count = sum(1 for s in _SENTENCE_SPLIT.split(text) if s.strip())
        avg_words = word_count / max(1, sentence_count)
        technical_terms = len(_TECHNICAL_VOCABULARY.findall(text))
        return clamp(avg_words / 2 + technical_terms * 0.5)

    def detect_language(self, text: str) -> str:
        for rule in self.language_rules:
            if rule.pattern.search(text):
                return rule.label
        return self.default_language

    @property
    def default_language(self) -> str:
        return self.language_rules[0].label if self.language_rules else "english"

    @property
    def topic_labels(self) -> list[str]:
        return [rule.label for rule in self.topic_rules]
