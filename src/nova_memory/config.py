"""Memory engine configuration models and YAML loading."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import chardet
import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, model_validator

from .exceptions import ConfigError


def _reject_parent_refs(path: str, field_name: str) -> str:
    normalized = os.path.normpath(path)
    parts = normalized.replace("\\", "/").split("/")
    if ".." in parts:
        raise ValueError(f"{field_name} must not contain '..' components: {path!r}")
    return normalized


class StorageConfig(BaseModel):
    """Persistence backend selection and paths."""

    backend: Literal["memory", "json", "sqlite"] = "memory"
    json_dir: str = "./nova_memory"
    sqlite_db_path: str = "./nova_memory/memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        self.json_dir = _reject_parent_refs(self.json_dir, "json_dir")
        self.sqlite_db_path = _reject_parent_refs(self.sqlite_db_path, "sqlite_db_path")
        return self


class ConversationConfig(BaseModel):
    """Per-user conversation log limits."""

    max_turns: int = Field(default=1000, ge=1)
    recent_default: int = Field(default=10, ge=1)


class ProfileConfig(BaseModel):
    """Profile and interaction-pattern tracking."""

    pattern_window: int = Field(default=50, ge=1)
    mood_window: int = Field(default=5, ge=1)


class PromotionConfig(BaseModel):
    """When and how a turn becomes a durable memory record."""

    threshold: int = Field(default=7, ge=1, le=10)
    response_excerpt_chars: int = Field(default=500, ge=0)
    memory_type: str = "conversation"


class ConsolidationConfig(BaseModel):
    """Memory consolidation and retention."""

    enabled: bool = True
    content_similarity: float = Field(default=0.7, ge=0.0, le=1.0)
    tag_similarity: float = Field(default=0.5, ge=0.0, le=1.0)
    retention_days: int = Field(default=90, ge=0)
    maintenance_interval_hours: float = Field(default=24.0, gt=0)


class InsightConfig(BaseModel):
    """Autonomous insight generation."""

    enabled: bool = True
    interval_seconds: float = Field(default=300.0, gt=0)
    max_insights: int = Field(default=100, ge=1)
    active_topic_window_minutes: float = Field(default=60.0, gt=0)
    selection: Literal["random", "round_robin"] = "random"
    seed: int | None = None


class MemoryEngineConfig(BaseModel):
    """Top-level memory engine configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    insights: InsightConfig = Field(default_factory=InsightConfig)


_ENV_REFERENCE = re.compile(r"\$\{(\w+)\}")


def decode_config_bytes(raw: bytes, source: str = "<config>") -> str:
    """Decode config file contents.

    UTF-8 (with or without BOM) first, then whatever chardet guesses. If
    neither works the bytes are read as latin-1, which cannot fail.
    """
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass

    guess = chardet.detect(raw)
    encoding = guess.get("encoding")
    if encoding:
        try:
            text = raw.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            pass
        else:
            logger.debug(f"Decoded {source} as {encoding} (confidence {guess.get('confidence')})")
            return text

    logger.warning(f"Could not determine encoding of {source}, reading it as latin-1")
    return raw.decode("latin-1")


def expand_env_references(text: str) -> str:
    """Replace ``${VAR}`` with the environment value; unknown names stay as written."""
    return _ENV_REFERENCE.sub(lambda match: os.environ.get(match.group(1), match.group(0)), text)


def read_yaml(config_path: str | os.PathLike) -> dict[str, Any]:
    """Load a YAML mapping from *config_path* with environment references expanded.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the file cannot be read, parsed, or is not a mapping.
    """
    path = Path(config_path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {path}") from None
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}", path=str(path)) from e

    text = expand_env_references(decode_config_bytes(raw, str(path)))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {path}: {e}")
        raise ConfigError(f"Invalid YAML in {path}: {e}", path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Top level of {path} must be a mapping, got {type(data).__name__}", path=str(path)
        )
    return data


def load_config(config_path: str | None = None) -> MemoryEngineConfig:
    """Build the engine configuration.

    Loads ``.env`` first so YAML values can reference it. Without a path,
    returns the defaults.
    """
    load_dotenv()
    if config_path is None:
        return MemoryEngineConfig()

    data = read_yaml(config_path)
    # Accept both a bare config and one nested under "memory"
    if isinstance(data.get("memory"), dict):
        data = data["memory"]
    config = MemoryEngineConfig.model_validate(data)
    logger.info(
        f"Loaded memory config from {config_path} "
        f"(backend={config.storage.backend})"
    )
    return config
