"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Deterministic clock for cache expiry
- Scripted generation provider that counts calls
- In-memory credit ledger
- SQLite-backed session factory for SQL stores
- Orchestrator wired from the fakes
"""

import json
import os
from collections.abc import AsyncGenerator, Callable, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from timeline_ai.db.models import Base
from timeline_ai.models.api import RiskLevel
from timeline_ai.models.domain import GeneratedImage, GenerationRequest, RiskAssessment, StageCosts
from timeline_ai.services.content_cache import ContentCache
from timeline_ai.services.credit_ledger import CreditLedger
from timeline_ai.services.credit_store import MemoryCreditStore
from timeline_ai.services.orchestrator import GenerationOrchestrator
from timeline_ai.services.prompt_sanitizer import PromptSanitizer
from timeline_ai.services.retry import RetryPolicy, no_backoff
from timeline_ai.services.risk_classifier import LikenessRiskClassifier

# ============================================================================
# Fakes
# ============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider:
    """
    Generation provider that replays scripted text replies.

    Items in replies may be exceptions, which are raised instead of returned.
    """

    def __init__(
        self,
        replies: Sequence[str | BaseException] = (),
        image_error: BaseException | None = None,
    ) -> None:
        self.replies = list(replies)
        self.image_error = image_error
        self.complete_calls: list[dict[str, Any]] = []
        self.image_calls: list[tuple[str, str, tuple[str, ...]]] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        json_output: bool = True,
        temperature: float = 0.7,
        max_tokens: int = 4000,
        model: str | None = None,
    ) -> str:
        self.complete_calls.append(
            {"system": system_prompt, "user": user_prompt, "model": model}
        )
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def generate_image(
        self, prompt: str, style: str, reference_images: Sequence[str] = ()
    ) -> GeneratedImage:
        self.image_calls.append((prompt, style, tuple(reference_images)))
        if self.image_error is not None:
            raise self.image_error
        return GeneratedImage(url=f"https://images.test/{len(self.image_calls)}.png")

    @property
    def call_count(self) -> int:
        return len(self.complete_calls) + len(self.image_calls)


def events_reply(*titles: str, start_year: int = 1950) -> str:
    """JSON events reply with one event per title."""
    return json.dumps(
        {"events": [{"year": start_year + i, "title": title} for i, title in enumerate(titles)]}
    )


def descriptions_reply(prompts: Sequence[str], anchor_style: str | None = None) -> str:
    """JSON descriptions reply with one item per image prompt."""
    payload: dict[str, Any] = {
        "items": [
            {"description": f"Description {i + 1}", "imagePrompt": prompt}
            for i, prompt in enumerate(prompts)
        ]
    }
    if anchor_style is not None:
        payload["anchorStyle"] = anchor_style
    return json.dumps(payload)


ALLOW_LIKENESS = RiskAssessment(
    can_use_likeness=True,
    risk_level=RiskLevel.LOW,
    justification="Newsworthy public event",
    recommendation="Likeness usage is appropriate",
)

DISALLOW_LIKENESS = RiskAssessment(
    can_use_likeness=False,
    risk_level=RiskLevel.HIGH,
    justification="Commercial use of a real person's likeness",
    recommendation="Use stylized representations",
)

# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Deterministic clock."""
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> ContentCache:
    """Fresh content cache on the fake clock."""
    return ContentCache(ttl_seconds=3600, clock=clock)


@pytest.fixture
def memory_store() -> MemoryCreditStore:
    """Fresh in-memory credit store."""
    return MemoryCreditStore()


@pytest.fixture
def ledger(memory_store: MemoryCreditStore) -> CreditLedger:
    """Ledger with the default starting balance of 100."""
    return CreditLedger(memory_store, default_balance=100)


@pytest.fixture
def provider() -> ScriptedProvider:
    """Provider with no scripted replies."""
    return ScriptedProvider()


@pytest.fixture
def classifier() -> AsyncMock:
    """Classifier mock that allows likeness unless reconfigured."""
    mock = AsyncMock(spec=LikenessRiskClassifier)
    mock.assess.return_value = ALLOW_LIKENESS
    return mock


@pytest.fixture
def topic_request() -> GenerationRequest:
    """A typical factual topic."""
    return GenerationRequest(
        user_id="user-1",
        title="The Space Race",
        description="Milestones of crewed spaceflight from Sputnik to Apollo 11",
        max_events=5,
        image_style="Illustration",
    )


@pytest.fixture
def make_orchestrator(
    ledger: CreditLedger, cache: ContentCache, classifier: AsyncMock
) -> Callable[..., GenerationOrchestrator]:
    """Factory for orchestrators wired from the shared fakes."""

    def _make(provider: ScriptedProvider, **overrides: Any) -> GenerationOrchestrator:
        kwargs: dict[str, Any] = {
            "ledger": ledger,
            "cache": cache,
            "classifier": classifier,
            "sanitizer": PromptSanitizer(),
            "provider": provider,
            "retry_policy": RetryPolicy(max_attempts=3, backoff=no_backoff),
            "costs": StageCosts(events=8, descriptions=8, image_per_event=5),
            "provider_timeout_seconds": 5.0,
        }
        kwargs.update(overrides)
        return GenerationOrchestrator(**kwargs)

    return _make


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """SQLite database with the full schema, one file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'timeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
