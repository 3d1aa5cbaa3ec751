"""
Nova Memory - per-user conversational memory engine

Classifies incoming messages, scores their importance, folds them into
evolving user profiles, and keeps a deduplicated, consolidated and pruned
memory store per user, alongside a background generator of cross-user
insights.
"""

from .aggregator import GlobalAggregator, RandomSelection, RoundRobinSelection, SelectionStrategy
from .classifier import MessageClassifier
from .config import MemoryEngineConfig, load_config
from .conversation_log import ConversationLog
from .engine import MemoryEngine
from .exceptions import ConfigError, MemorySystemError, PersistenceError
from .importance import ImportanceScorer
from .memory_store import (
    MemoryStore,
    analyze_records,
    deduplicate,
    optimize,
    prune,
    recent_records,
    related_records,
)
from .models import (
    Classification,
    GlobalInsight,
    GlobalStats,
    IngestResult,
    MemoryRecord,
    MemoryType,
    Mood,
    Sentiment,
    Turn,
    UserProfile,
    UserSummary,
)
from .profile import ProfileUpdater
from .scheduler import PeriodicTask
from .session import SessionManager
from .storage import InMemoryBackend, JsonFileBackend, PersistenceBackend, SQLiteBackend

__all__ = [
    "Classification",
    "GlobalInsight",
    "GlobalStats",
    "IngestResult",
    "MemoryRecord",
    "MemoryType",
    "Mood",
    "Sentiment",
    "Turn",
    "UserProfile",
    "UserSummary",
    "MemoryEngineConfig",
    "load_config",
    "MemorySystemError",
    "PersistenceError",
    "ConfigError",
    "MessageClassifier",
    "ImportanceScorer",
    "ProfileUpdater",
    "ConversationLog",
    "MemoryStore",
    "analyze_records",
    "deduplicate",
    "optimize",
    "prune",
    "related_records",
    "recent_records",
    "GlobalAggregator",
    "SelectionStrategy",
    "RandomSelection",
    "RoundRobinSelection",
    "PeriodicTask",
    "SessionManager",
    "MemoryEngine",
    "PersistenceBackend",
    "InMemoryBackend",
    "JsonFileBackend",
    "SQLiteBackend",
]
