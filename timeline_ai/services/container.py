"""
Service Container - Builds the long-lived pipeline services once at startup.

Cache, ledger and provider are shared by reference across all requests.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeline_ai.config import Settings
from timeline_ai.models.domain import StageCosts
from timeline_ai.services.content_cache import ContentCache
from timeline_ai.services.credit_ledger import CreditLedger
from timeline_ai.services.credit_store import SqlCreditStore
from timeline_ai.services.generation_provider import (
    GenerationProvider,
    OpenAICompatibleProvider,
)
from timeline_ai.services.orchestrator import GenerationOrchestrator
from timeline_ai.services.prompt_sanitizer import PromptSanitizer
from timeline_ai.services.prompt_store import PromptVersionStore
from timeline_ai.services.retry import RetryPolicy, exponential_backoff
from timeline_ai.services.risk_classifier import LikenessRiskClassifier


@dataclass
class ServiceContainer:
    """Everything a request handler needs, constructed once per process."""

    cache: ContentCache
    ledger: CreditLedger
    prompt_store: PromptVersionStore
    provider: GenerationProvider
    orchestrator: GenerationOrchestrator

    async def close(self) -> None:
        """Release provider resources."""
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: GenerationProvider | None = None,
) -> ServiceContainer:
    """Wire the pipeline from settings."""
    if provider is None:
        provider = OpenAICompatibleProvider(
            api_key=settings.provider_api_key,
            base_url=settings.provider_base_url,
            text_model=settings.text_model,
            image_model=settings.image_model,
            image_size=settings.image_size,
            image_prompt_max_chars=settings.image_prompt_max_chars,
            timeout=settings.provider_timeout_seconds,
        )

    cache = ContentCache(ttl_seconds=settings.cache_ttl_seconds, enabled=settings.cache_enabled)
    ledger = CreditLedger(
        SqlCreditStore(session_factory), default_balance=settings.default_credit_grant
    )
    prompt_store = PromptVersionStore(session_factory)
    classifier = LikenessRiskClassifier(
        provider,
        model=settings.risk_model,
        timeout_seconds=settings.provider_timeout_seconds,
        prefilter_enabled=settings.risk_prefilter_enabled,
    )
    orchestrator = GenerationOrchestrator(
        ledger=ledger,
        cache=cache,
        classifier=classifier,
        sanitizer=PromptSanitizer(),
        provider=provider,
        prompt_store=prompt_store,
        retry_policy=RetryPolicy(
            max_attempts=settings.provider_max_attempts,
            backoff=exponential_backoff(
                base=settings.retry_backoff_base_seconds,
                cap=settings.retry_backoff_max_seconds,
            ),
        ),
        costs=StageCosts(
            events=settings.events_stage_cost,
            descriptions=settings.descriptions_stage_cost,
            image_per_event=settings.image_cost_per_event,
        ),
        provider_timeout_seconds=settings.provider_timeout_seconds,
        max_events_limit=settings.max_events_limit,
    )
    return ServiceContainer(
        cache=cache,
        ledger=ledger,
        prompt_store=prompt_store,
        provider=provider,
        orchestrator=orchestrator,
    )
