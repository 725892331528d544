############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# conftest.py: Pytest configuration and shared test fixtures
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Pytest configuration and shared fixtures for aiorch tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
import pytest_asyncio

from aiorch.app.core.clock import Clock
from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.adapters.static import hash_embedding
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult
from aiorch.app.db.session import create_engine, create_session_factory, init_models
from aiorch.app.settings import ProviderConfig, Settings

TEST_MODEL = "static-embedding-8"
TEST_DIMENSION = 8


class FakeClock(Clock):
    """Manually advanced clock; sleep() advances time instead of waiting."""

    def __init__(self, start: Optional[datetime] = None):
        self._monotonic = 1000.0
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self._monotonic

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._monotonic - 1000.0)

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


class ScriptedAdapter(ProviderAdapter):
    """
    Provider double that plays back scripted outcomes.

    Each call pops the next outcome: an exception instance is raised, a
    float is awaited as a real delay before succeeding, and None (or an
    exhausted script) succeeds immediately.
    """

    kind = "scripted"

    def __init__(self, provider_id: str, outcomes: Optional[List[Any]] = None, **kwargs):
        kwargs.setdefault("model_id", TEST_MODEL)
        kwargs.setdefault("capabilities", [c.value for c in Capability])
        kwargs.setdefault("dimension", TEST_DIMENSION)
        super().__init__(provider_id, **kwargs)
        self.outcomes = list(outcomes or [])
        self.calls = 0
        self.requests: List[ProviderRequest] = []

    async def _call(self, request: ProviderRequest) -> ProviderResult:
        self.calls += 1
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, (int, float)):
            await asyncio.sleep(outcome)

        if request.capability == Capability.EMBEDDING:
            texts = request.payload["input"]
            return ProviderResult(
                provider_id=self.provider_id,
                model_id=self.model_id,
                output=[hash_embedding(t, self.dimension) for t in texts],
                prompt_tokens=sum(max(1, len(t) // 4) for t in texts),
            )
        return ProviderResult(
            provider_id=self.provider_id,
            model_id=self.model_id,
            output={"content": f"{self.provider_id} answer", "finish_reason": "stop"},
            prompt_tokens=10,
            completion_tokens=5,
        )


def make_settings(**overrides) -> Settings:
    """Settings for tests: in-memory SQLite, no tokenizer download, fast backoff."""
    values = dict(
        database_url="sqlite+aiosqlite:///:memory:",
        default_tokenizer="",
        budget_store="memory",
        providers=[
            ProviderConfig(
                id="local-static",
                kind="static",
                model_id=TEST_MODEL,
                capabilities=["embedding", "summarization", "moderation", "chat"],
                dimension=TEST_DIMENSION,
                price_per_1k_tokens=0.0,
            )
        ],
        embedding_model_id=TEST_MODEL,
        embedding_dimension=TEST_DIMENSION,
        retry_backoff_base=0.0,
        retry_backoff_jitter=0.0,
        orchestrator_pool_size=2,
        vector_sync_interval=3600,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def scripted_adapter():
    """Factory for ScriptedAdapter instances."""
    return ScriptedAdapter


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a fresh in-memory database with all tables created."""
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()
