"""
Nova memory test fixtures.

Shared fixed clock, turn factory and engine fixtures.
"""

from datetime import timezone

import pytest

from nova_memory.aggregator import RoundRobinSelection
from nova_memory.config import MemoryEngineConfig
from nova_memory.engine import MemoryEngine
from nova_memory.models import ContextFlags, Sentiment, Turn
from nova_memory.profile import ProfileUpdater
from nova_memory.storage import InMemoryBackend

# 2024-01-15T10:00:00Z
BASE_TIME_MS = 1705312800000
MS_PER_DAY = 24 * 60 * 60 * 1000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = BASE_TIME_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_turn(**overrides) -> Turn:
    """Build a Turn with neutral defaults."""
    fields = {
        "user_id": "user-1",
        "timestamp_ms": BASE_TIME_MS,
        "text": "hello",
        "response_text": "",
        "sentiment": Sentiment.NEUTRAL,
        "topics": [],
        "context_flags": ContextFlags(),
        "complexity": 1,
        "importance": 5,
    }
    fields.update(overrides)
    return Turn(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def engine_config():
    return MemoryEngineConfig(insights={"selection": "round_robin"})


@pytest.fixture
async def engine(engine_config, backend, clock):
    """An initialized engine with UTC time slots and no running timers."""
    eng = MemoryEngine(
        config=engine_config,
        backend=backend,
        selection=RoundRobinSelection(),
        clock=clock,
        profile_updater=ProfileUpdater(engine_config.profile, tz=timezone.utc),
    )
    await eng.initialize()
    yield eng
    await eng.close()
