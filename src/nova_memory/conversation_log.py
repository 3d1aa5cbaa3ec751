"""Capped, per-user, chronologically ordered turn log."""

from __future__ import annotations

from collections import deque
from typing import Iterable

from .models import Turn

DEFAULT_MAX_TURNS = 1000


class ConversationLog:
    """Append-only sliding window of turns per user.

    Once a user's log holds ``max_turns`` entries, each append evicts the
    oldest one.
    """

    def __init__(self, max_turns: int = DEFAULT_MAX_TURNS):
        self.max_turns = max_turns
        self._logs: dict[str, deque[Turn]] = {}

    def _log(self, user_id: str) -> deque[Turn]:
        if user_id not in self._logs:
            self._logs[user_id] = deque(maxlen=self.max_turns)
        return self._logs[user_id]

    def append(self, user_id: str, turn: Turn) -> None:
        self._log(user_id).append(turn)

    def load(self, user_id: str, turns: Iterable[Turn]) -> None:
        """Replace a user's log with already ordered turns from storage."""
        self._logs[user_id] = deque(turns, maxlen=self.max_turns)

    def recent(self, user_id: str, n: int = 10) -> list[Turn]:
        """Return the last *n* turns, oldest first."""
        if n <= 0:
            return []
        log = self._logs.get(user_id)
        if not log:
            return []
        return list(log)[-n:]

    def search(self, user_id: str, query: str, limit: int = 10) -> list[Turn]:
        """Rank turns by how many query terms appear in message or response.

        Each distinct term scores one point when it occurs anywhere in the
        lower-cased message or response. Ties keep log order.
        """
        terms = list(dict.fromkeys(query.lower().split()))
        log = self._logs.get(user_id)
        if not terms or not log or limit <= 0:
            return []

        scored: list[tuple[int, Turn]] = []
        for turn in log:
            haystack = f"{turn.text.lower()}\n{turn.response_text.lower()}"
            score = sum(1 for term in terms if term in haystack)
            if score > 0:
                scored.append((score, turn))

        # sort() is stable, so equal scores stay in encounter order
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [turn for _, turn in scored[:limit]]

    def count(self, user_id: str) -> int:
        return len(self._logs.get(user_id, ()))

    def has_user(self, user_id: str) -> bool:
        return user_id in self._logs

    def users(self) -> list[str]:
        return list(self._logs)
