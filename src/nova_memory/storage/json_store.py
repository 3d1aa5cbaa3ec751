"""JSON-file persistence backend.

Whole documents (profiles, memory sets, global stats) are written
atomically: temp file, backup of the previous version, then replace.
Append-only streams (turns, insights) are JSON Lines files.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Type, TypeVar
from urllib.parse import quote, unquote

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..exceptions import PersistenceError
from ..memory_store import coerce_records
from ..models import GlobalInsight, GlobalStats, MemoryRecord, Turn, UserProfile

M = TypeVar("M", bound=BaseModel)


class JsonFileBackend:
    """
    Layout::

        {base_path}/
        ├── users/
        │   └── {quoted user id}/
        │       ├── profile.json
        │       ├── memories.json
        │       └── conversations.jsonl
        └── global/
            ├── stats.json
            └── insights.jsonl
    """

    def __init__(self, base_path: str | Path, create_backup: bool = True, pretty_print: bool = True):
        self._base_path = Path(base_path)
        self._create_backup = create_backup
        self._pretty_print = pretty_print

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def _users_dir(self) -> Path:
        return self._base_path / "users"

    @property
    def _global_dir(self) -> Path:
        return self._base_path / "global"

    def _user_dir(self, user_id: str) -> Path:
        # quote() is reversible, so list_users can recover the original ids
        return self._users_dir / quote(user_id, safe="")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        try:
            self._users_dir.mkdir(parents=True, exist_ok=True)
            self._global_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Cannot create storage directory: {e}", operation="initialize", key=str(self._base_path)
            ) from e
        logger.info(f"JSON memory backend ready at {self._base_path}")

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Low-level I/O
    # ------------------------------------------------------------------

    def _write_document(self, file_path: Path, data: Any, operation: str) -> None:
        """Atomic write: temp file, backup current version, replace."""
        temp_path = file_path.with_suffix(file_path.suffix + ".tmp")
        backup_path = file_path.with_suffix(file_path.suffix + ".bak")

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            indent = 2 if self._pretty_print else None
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=indent)

            if self._create_backup and file_path.exists():
                shutil.copy2(file_path, backup_path)

            temp_path.replace(file_path)
        except (OSError, TypeError, ValueError) as e:
            if backup_path.exists() and not file_path.exists():
                try:
                    shutil.copy2(backup_path, file_path)
                    logger.info(f"Restored {file_path} from backup")
                except OSError as restore_error:
                    logger.error(f"Failed to restore from backup: {restore_error}")
            raise PersistenceError(
                f"Failed to write {file_path}: {e}", operation=operation, key=str(file_path)
            ) from e
        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass

    def _read_document(self, file_path: Path, operation: str) -> Any | None:
        """Read a JSON document, falling back to its backup when corrupt."""
        if not file_path.exists():
            return None

        backup_path = file_path.with_suffix(file_path.suffix + ".bak")
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted file {file_path}: {e}")
            if backup_path.exists():
                logger.info(f"Attempting to restore from backup: {backup_path}")
                try:
                    with open(backup_path, "r", encoding="utf-8") as f:
                        data = json.load(f)
                    shutil.copy2(backup_path, file_path)
                    return data
                except (OSError, json.JSONDecodeError) as restore_error:
                    logger.error(f"Failed to restore from backup: {restore_error}")
            raise PersistenceError(
                f"Corrupted file and no valid backup: {file_path}",
                operation=operation,
                key=str(file_path),
            ) from e
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(
                f"Failed to read {file_path}: {e}", operation=operation, key=str(file_path)
            ) from e

    def _append_line(self, file_path: Path, model: BaseModel, operation: str) -> None:
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "a", encoding="utf-8") as f:
                f.write(model.model_dump_json() + "\n")
        except OSError as e:
            raise PersistenceError(
                f"Failed to append to {file_path}: {e}", operation=operation, key=str(file_path)
            ) from e

    def _read_lines(
        self, file_path: Path, model: Type[M], operation: str, limit: int | None
    ) -> list[M]:
        if not file_path.exists():
            return []
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                lines = [line for line in f if line.strip()]
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(
                f"Failed to read {file_path}: {e}", operation=operation, key=str(file_path)
            ) from e

        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []

        items: list[M] = []
        for number, line in enumerate(lines, start=1):
            try:
                items.append(model.model_validate_json(line))
            except ValidationError as e:
                logger.warning(f"Skipping malformed line {number} in {file_path}: {e.error_count()} errors")
        return items

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_user_record(self, user_id: str) -> UserProfile:
        data = self._read_document(self._user_dir(user_id) / "profile.json", "get_user_record")
        if data is None:
            return UserProfile.create_default(user_id)
        try:
            return UserProfile.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(
                f"Invalid profile for {user_id}: {e.error_count()} errors",
                operation="get_user_record",
                key=user_id,
            ) from e

    async def put_user_record(self, user_id: str, profile: UserProfile) -> None:
        self._write_document(
            self._user_dir(user_id) / "profile.json", profile.model_dump(mode="json"), "put_user_record"
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def append_conversation(self, user_id: str, turn: Turn) -> None:
        self._append_line(self._user_dir(user_id) / "conversations.jsonl", turn, "append_conversation")

    async def load_conversations(self, user_id: str, limit: int | None = None) -> list[Turn]:
        return self._read_lines(
            self._user_dir(user_id) / "conversations.jsonl", Turn, "load_conversations", limit
        )

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def append_memory(self, user_id: str, record: MemoryRecord) -> None:
        records = await self.load_memories(user_id)
        records.append(record)
        await self.replace_memories(user_id, records)

    async def load_memories(self, user_id: str) -> list[MemoryRecord]:
        data = self._read_document(self._user_dir(user_id) / "memories.json", "load_memories")
        if not isinstance(data, list):
            return []
        return coerce_records(data)

    async def replace_memories(self, user_id: str, records: list[MemoryRecord]) -> None:
        self._write_document(
            self._user_dir(user_id) / "memories.json",
            [record.model_dump(mode="json") for record in records],
            "replace_memories",
        )

    # ------------------------------------------------------------------
    # Global
    # ------------------------------------------------------------------

    async def append_insight(self, insight: GlobalInsight) -> None:
        self._append_line(self._global_dir / "insights.jsonl", insight, "append_insight")

    async def load_insights(self, limit: int | None = None) -> list[GlobalInsight]:
        return self._read_lines(self._global_dir / "insights.jsonl", GlobalInsight, "load_insights", limit)

    async def get_global_stats(self) -> GlobalStats:
        data = self._read_document(self._global_dir / "stats.json", "get_global_stats")
        if data is None:
            return GlobalStats()
        try:
            return GlobalStats.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(
                f"Invalid global stats: {e.error_count()} errors", operation="get_global_stats"
            ) from e

    async def put_global_stats(self, stats: GlobalStats) -> None:
        self._write_document(self._global_dir / "stats.json", stats.model_dump(mode="json"), "put_global_stats")

    async def list_users(self) -> list[str]:
        if not self._users_dir.exists():
            return []
        try:
            return sorted(unquote(path.name) for path in self._users_dir.iterdir() if path.is_dir())
        except OSError as e:
            raise PersistenceError(f"Failed to list users: {e}", operation="list_users") from e
