"""
Shared fixtures: a controllable clock, a temporary database, the engine
components, and a fake LLM provider.
"""

from typing import Any

import pytest

from translate_jobs.config import LimitsConfig, Settings
from translate_jobs.database import Database
from translate_jobs.emergency import EmergencyStop
from translate_jobs.engine import create_engine
from translate_jobs.llm import LLMProvider, LLMResponse
from translate_jobs.locks import LockManager
from translate_jobs.orchestrator import JobOrchestrator
from translate_jobs.ratelimit import AdmissionController
from translate_jobs.state import TranslationStateMachine
from translate_jobs.usage import UsageRecorder

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(LLMProvider):
    """Echoes the content back with a prefix; can be told to fail."""

    def __init__(self, prefix: str = "translated: "):
        self.prefix = prefix
        self.fail_with: Exception | None = None
        self.calls: list[list[dict[str, str]]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model(self) -> str:
        return "fake-model"

    async def complete(self, messages, *, temperature=0.3, max_tokens=4096, **kwargs):
        self.calls.append(messages)
        if self.fail_with is not None:
            raise self.fail_with
        text = messages[-1]["content"].split("\n", 1)[1]
        return LLMResponse(
            content=f"{self.prefix}{text}",
            input_tokens=len(text),
            output_tokens=len(text) + len(self.prefix),
            model=self.model,
        )


# =============================================================================
# Core components
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "jobs.duckdb")
    yield database
    database.close()


@pytest.fixture
def limits():
    """Generous limits with no spacing and no emergency threshold."""
    return LimitsConfig(
        calls_per_hour=50,
        calls_per_day=500,
        min_interval_seconds=0,
        emergency_stop_threshold=0,
    )


@pytest.fixture
def emergency(db, clock):
    return EmergencyStop(db, clock=clock)


@pytest.fixture
def admission(db, emergency, limits, clock):
    return AdmissionController(db, emergency, limits, clock=clock)


@pytest.fixture
def locks(db, clock):
    return LockManager(db, ttl=60, clock=clock)


@pytest.fixture
def state(db, locks, clock):
    return TranslationStateMachine(db, locks, clock=clock)


@pytest.fixture
def usage(db, clock):
    return UsageRecorder(db, max_entries=500, retention_days=30, clock=clock)


@pytest.fixture
def orchestrator(emergency, admission, locks, state, usage):
    return JobOrchestrator(emergency, admission, locks, state, usage)


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_settings(tmp_path):
    """Settings pointing at a temporary database, with overridable limits."""

    def _make(**limits: Any) -> Settings:
        limit_values = {
            "calls_per_hour": 50,
            "calls_per_day": 500,
            "min_interval_seconds": 0,
            "emergency_stop_threshold": 0,
            **limits,
        }
        return Settings(
            paths={"database_path": tmp_path / "engine.duckdb", "logs": tmp_path / "logs"},
            limits=limit_values,
            logging={"file": None},
        )

    return _make


@pytest.fixture
def make_engine(make_settings, provider, clock):
    """Build engines sharing the fake clock and provider; closes them afterwards."""
    engines = []

    def _make(**limits: Any):
        engine = create_engine(make_settings(**limits), provider=provider, clock=clock)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()
