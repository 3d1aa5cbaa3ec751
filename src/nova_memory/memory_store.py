"""Durable per-user memory records and their lifecycle.

Records are deduplicated on ``(memory_type, content)``, consolidated when
their contents or tags overlap enough, boosted once by recency, tags and
type, and finally pruned by a retention sweep. The lifecycle functions are
pure: they take a list of records and return a new one, leaving the inputs
untouched. ``prune`` is the only place a record is dropped on purpose.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Iterable

from loguru import logger
from pydantic import ValidationError

from .models import MemoryRecord, MemoryType, now_ms, round_half_up

MS_PER_DAY = 24 * 60 * 60 * 1000
KEEP_IMPORTANCE = 8
KEEP_LEARNING_IMPORTANCE = 6
BOOSTED_FLAG = "importance_boosted"


# ---------------------------------------------------------------------------
# Input coercion
# ---------------------------------------------------------------------------


def coerce_records(records: Iterable[MemoryRecord | dict[str, Any]]) -> list[MemoryRecord]:
    """Validate raw records, skipping (and logging) any that are malformed."""
    valid: list[MemoryRecord] = []
    for raw in records:
        if isinstance(raw, MemoryRecord):
            valid.append(raw)
            continue
        try:
            valid.append(MemoryRecord.model_validate(raw))
        except ValidationError as e:
            record_id = raw.get("id") if isinstance(raw, dict) else None
            logger.warning(f"Skipping malformed memory record {record_id!r}: {e.error_count()} errors")
    return valid


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def tokenize(text: str) -> set[str]:
    return set(text.lower().split())


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def is_similar(
    a: MemoryRecord,
    b: MemoryRecord,
    content_threshold: float = 0.7,
    tag_threshold: float = 0.5,
) -> bool:
    if jaccard(tokenize(a.content), tokenize(b.content)) >= content_threshold:
        return True
    return jaccard(set(a.tags), set(b.tags)) >= tag_threshold


# ---------------------------------------------------------------------------
# Lifecycle passes
# ---------------------------------------------------------------------------


def deduplicate(records: Iterable[MemoryRecord]) -> list[MemoryRecord]:
    """Keep the first record for each ``(memory_type, content)`` pair."""
    seen: set[tuple[str, str]] = set()
    unique: list[MemoryRecord] = []
    for record in records:
        if record.dedup_key in seen:
            continue
        seen.add(record.dedup_key)
        unique.append(record)
    return unique


def merge_records(group: list[MemoryRecord]) -> MemoryRecord:
    """Merge a group into one record keyed by its first member."""
    first = group[0]
    metadata = dict(first.metadata)
    metadata["mergedCount"] = len(group)
    metadata["originalIds"] = [record.id for record in group]
    if all(record.metadata.get(BOOSTED_FLAG) for record in group):
        metadata[BOOSTED_FLAG] = True
    else:
        metadata.pop(BOOSTED_FLAG, None)

    tags: list[str] = []
    for record in group:
        tags.extend(record.tags)

    return MemoryRecord(
        id=first.id,
        user_id=first.user_id,
        content=" | ".join(record.content for record in group),
        memory_type=first.memory_type,
        importance=max(record.importance for record in group),
        tags=tags,
        metadata=metadata,
        created_at_ms=max(record.created_at_ms for record in group),
        last_accessed_ms=max(record.last_accessed_ms for record in group),
        access_count=sum(record.access_count for record in group),
    )


def consolidate(
    records: list[MemoryRecord],
    content_threshold: float = 0.7,
    tag_threshold: float = 0.5,
) -> tuple[list[MemoryRecord], int]:
    """Single first-fit grouping pass.

    A record joins the first group whose representative (its first member)
    it is similar to. Returns the new list and how many records were
    absorbed into another.
    """
    groups: list[list[MemoryRecord]] = []
    for record in records:
        for group in groups:
            if is_similar(record, group[0], content_threshold, tag_threshold):
                group.append(record)
                break
        else:
            groups.append([record])

    merged = sum(len(group) - 1 for group in groups)
    return [group[0] if len(group) == 1 else merge_records(group) for group in groups], merged


def update_importance(record: MemoryRecord, now: int | None = None) -> MemoryRecord:
    """Apply the one-time recency/tag/type boost. Never lowers importance."""
    if record.metadata.get(BOOSTED_FLAG):
        return record

    now = now if now is not None else now_ms()
    bonus = 0.0
    if now - record.created_at_ms < MS_PER_DAY:
        bonus += 1
    bonus += min(len(record.tags) * 0.5, 2)
    if record.memory_type == MemoryType.LEARNING.value:
        bonus += 1

    boosted = max(record.importance, min(10, round_half_up(record.importance + bonus)))
    return record.model_copy(
        update={"importance": boosted, "metadata": {**record.metadata, BOOSTED_FLAG: True}}
    )


def optimize(
    records: Iterable[MemoryRecord | dict[str, Any]],
    now: int | None = None,
    content_threshold: float = 0.7,
    tag_threshold: float = 0.5,
) -> list[MemoryRecord]:
    """Dedup and consolidate until stable, then boost importance once.

    Idempotent: a second run over the output merges nothing and boosts
    nothing.
    """
    current = coerce_records(records)
    while True:
        before = len(current)
        current, _ = consolidate(deduplicate(current), content_threshold, tag_threshold)
        if len(current) == before:
            break

    return [update_importance(record, now) for record in current]


def should_keep(record: MemoryRecord, cutoff_ms: int) -> bool:
    if record.importance >= KEEP_IMPORTANCE:
        return True
    if record.created_at_ms > cutoff_ms:
        return True
    return (
        record.memory_type == MemoryType.LEARNING.value
        and record.importance >= KEEP_LEARNING_IMPORTANCE
    )


def prune(
    records: Iterable[MemoryRecord | dict[str, Any]],
    retention_days: int = 90,
    now: int | None = None,
) -> list[MemoryRecord]:
    now = now if now is not None else now_ms()
    cutoff = now - retention_days * MS_PER_DAY
    return [record for record in coerce_records(records) if should_keep(record, cutoff)]


# ---------------------------------------------------------------------------
# Retrieval and analytics
# ---------------------------------------------------------------------------


def score_record(record: MemoryRecord, query: str) -> int:
    phrase = query.lower().strip()
    if not phrase:
        return 0
    content = record.content.lower()
    tags = [tag.lower() for tag in record.tags]

    score = 10 if phrase in content else 0
    for token in phrase.split():
        if token in content:
            score += 2
        if any(token in tag for tag in tags):
            score += 3
    return score


def search_records(records: Iterable[MemoryRecord], query: str, limit: int = 5) -> list[MemoryRecord]:
    """Rank by keyword score, then importance. Zero-score records are dropped."""
    scored = [(score_record(record, query), record) for record in records]
    scored = [pair for pair in scored if pair[0] > 0]
    scored.sort(key=lambda pair: (pair[0], pair[1].importance), reverse=True)
    return [record for _, record in scored[: max(0, limit)]]


RELATED_MIN_SCORE = 3
RELATED_MIN_WORD_LENGTH = 4


def relatedness(a: MemoryRecord, b: MemoryRecord) -> int:
    """How strongly *b* relates to *a*.

    Two points per shared tag, one per word of *a* (four letters or more)
    that also appears in *b*, one for the same type, and up to two for
    being created close together (under a day: 2, under a week: 1).
    """
    score = 2 * len(set(a.tags) & set(b.tags))

    other_words = set(b.content.lower().split())
    score += sum(
        1
        for word in a.content.lower().split()
        if len(word) >= RELATED_MIN_WORD_LENGTH and word in other_words
    )

    if a.memory_type == b.memory_type:
        score += 1

    days_apart = abs(a.created_at_ms - b.created_at_ms) / MS_PER_DAY
    if days_apart < 1:
        score += 2
    elif days_apart < 7:
        score += 1
    return score


def related_records(
    target: MemoryRecord, records: Iterable[MemoryRecord], limit: int = 5
) -> list[MemoryRecord]:
    """Records scoring above ``RELATED_MIN_SCORE`` against *target*, best first."""
    scored = [(relatedness(target, record), record) for record in records if record.id != target.id]
    scored = [pair for pair in scored if pair[0] > RELATED_MIN_SCORE]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [record for _, record in scored[: max(0, limit)]]


def recent_records(records: Iterable[MemoryRecord], limit: int = 10) -> list[MemoryRecord]:
    return sorted(records, key=lambda record: record.created_at_ms, reverse=True)[: max(0, limit)]


def analyze_records(records: Iterable[MemoryRecord]) -> dict[str, Any]:
    records = list(records)
    if not records:
        return {
            "total": 0,
            "by_type": {},
            "avg_importance": 0.0,
            "max_importance": None,
            "min_importance": None,
            "top_tags": [],
        }

    importances = [record.importance for record in records]
    tag_counts = Counter(tag for record in records for tag in record.tags)
    return {
        "total": len(records),
        "by_type": dict(Counter(record.memory_type for record in records)),
        "avg_importance": sum(importances) / len(importances),
        "max_importance": max(importances),
        "min_importance": min(importances),
        "top_tags": [tag for tag, _ in tag_counts.most_common(10)],
    }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class MemoryStore:
    """Per-user collections of memory records.

    Holds committed state only; the engine decides when a change is
    committed (after persistence succeeds).
    """

    def __init__(self):
        self._records: dict[str, list[MemoryRecord]] = {}

    def load(self, user_id: str, records: Iterable[MemoryRecord | dict[str, Any]]) -> None:
        self._records[user_id] = deduplicate(coerce_records(records))

    def contains(self, user_id: str, record: MemoryRecord) -> bool:
        return any(r.dedup_key == record.dedup_key for r in self._records.get(user_id, ()))

    def add(self, record: MemoryRecord) -> bool:
        """Add a record unless its ``(type, content)`` pair is already stored."""
        if self.contains(record.user_id, record):
            logger.debug(f"Duplicate memory ignored for {record.user_id}: {record.id}")
            return False
        self._records.setdefault(record.user_id, []).append(record)
        return True

    def get(self, user_id: str) -> list[MemoryRecord]:
        return list(self._records.get(user_id, ()))

    def replace(self, user_id: str, records: list[MemoryRecord]) -> None:
        self._records[user_id] = list(records)

    def search(self, user_id: str, query: str, limit: int = 5) -> list[MemoryRecord]:
        return search_records(self._records.get(user_id, ()), query, limit)

    def count(self, user_id: str) -> int:
        return len(self._records.get(user_id, ()))

    def users(self) -> list[str]:
        return list(self._records)
