"""Ephemeral per-user session tokens."""

from __future__ import annotations

from uuid import uuid4

from loguru import logger


class SessionManager:
    """Maps a user id to an opaque session id for the process lifetime.

    Tokens are created lazily and never persisted.
    """

    def __init__(self):
        self._sessions: dict[str, str] = {}

    def get_session_id(self, user_id: str) -> str:
        session_id = self._sessions.get(user_id)
        if session_id is None:
            session_id = f"session_{uuid4().hex[:12]}"
            self._sessions[user_id] = session_id
            logger.debug(f"Opened session {session_id} for {user_id}")
        return session_id

    def end_session(self, user_id: str) -> bool:
        """Drop the user's session so the next turn opens a fresh one."""
        session_id = self._sessions.pop(user_id, None)
        if session_id is not None:
            logger.debug(f"Closed session {session_id} for {user_id}")
        return session_id is not None

    @property
    def active_count(self) -> int:
        return len(self._sessions)
