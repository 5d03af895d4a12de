"""
Tests for API Routes.

Tests route handler functions directly with in-memory services.
"""

import json
from collections.abc import Callable
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import ScriptedProvider, descriptions_reply, events_reply
from timeline_ai.api.dependencies import (
    get_services,
    get_user_id,
    require_admin_key,
    validate_admin_key,
)
from timeline_ai.api.routes import (
    create_prompt_template,
    delete_prompt_template,
    generate_descriptions,
    generate_events,
    generate_images,
    generate_timeline,
    get_credits,
    get_latest_prompt_template,
    get_prompt_template,
    grant_credits,
    health_check,
    list_prompt_templates,
    update_prompt_template,
)
from timeline_ai.config import get_settings
from timeline_ai.exceptions import AuthenticationError, ProviderError, TemplateNotFoundError
from timeline_ai.models.api import (
    EventModel,
    GenerateDescriptionsRequest,
    GenerateImagesRequest,
    GenerateTimelineRequest,
    GrantCreditsRequest,
    PromptStep,
    PromptTemplateCreateRequest,
    PromptTemplateUpdateRequest,
)
from timeline_ai.models.domain import GeneratedImage
from timeline_ai.services.content_cache import ContentCache
from timeline_ai.services.credit_ledger import CreditLedger
from timeline_ai.services.credit_store import MemoryCreditStore
from timeline_ai.services.container import ServiceContainer
from timeline_ai.services.orchestrator import GenerationOrchestrator
from timeline_ai.services.prompt_store import PromptVersionStore

TOPIC = {"title": "The Space Race", "description": "Crewed spaceflight milestones"}


@pytest.fixture
def make_services(
    make_orchestrator: Callable[..., GenerationOrchestrator],
    cache: ContentCache,
    ledger: CreditLedger,
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., ServiceContainer]:
    """Service container around a scripted provider."""

    def _make(provider: ScriptedProvider, ledger_override: CreditLedger | None = None):
        active_ledger = ledger_override or ledger
        return ServiceContainer(
            cache=cache,
            ledger=active_ledger,
            prompt_store=PromptVersionStore(session_factory),
            provider=provider,
            orchestrator=make_orchestrator(provider, ledger=active_ledger),
        )

    return _make


def error_body(response: JSONResponse) -> dict:
    return json.loads(response.body)


# ============================================================================
# Generation Routes
# ============================================================================


class TestGenerateTimelineRoute:
    """Tests for generate_timeline route function."""

    @pytest.mark.asyncio
    async def test_success(self, make_services):
        """A full run returns events, descriptions, images and the charge."""
        provider = ScriptedProvider(
            [events_reply("Sputnik", "Apollo"), descriptions_reply(["p1", "p2"])]
        )
        services = make_services(provider)

        response = await generate_timeline(
            GenerateTimelineRequest(**TOPIC, max_events=5), user_id="user-1", services=services
        )

        assert [e.title for e in response.events] == ["Sputnik", "Apollo"]
        assert len(response.images) == 2
        assert response.images[0].url == "https://images.test/1.png"
        assert response.credits_charged == 26
        assert response.new_balance == 74
        assert response.risk_assessment is not None

    @pytest.mark.asyncio
    async def test_insufficient_credits_is_402(self, make_services):
        """Unaffordable runs return 402 with required and available credits."""
        services = make_services(
            ScriptedProvider(), CreditLedger(MemoryCreditStore(), default_balance=5)
        )

        response = await generate_timeline(
            GenerateTimelineRequest(**TOPIC), user_id="user-1", services=services
        )

        assert isinstance(response, JSONResponse)
        assert response.status_code == 402
        body = error_body(response)
        assert body["error_kind"] == "insufficient_credits"
        assert body["stage"] == "events_draft"
        assert body["required"] == 8
        assert body["available"] == 5
        assert body["credits_charged"] == 0

    @pytest.mark.asyncio
    async def test_provider_failure_is_502(self, make_services):
        """Exhausted retries return 502 naming the stage."""
        services = make_services(ScriptedProvider([ProviderError("down")] * 3))

        response = await generate_timeline(
            GenerateTimelineRequest(**TOPIC), user_id="user-1", services=services
        )

        assert response.status_code == 502
        body = error_body(response)
        assert body["error_kind"] == "provider_error"
        assert body["stage"] == "events_draft"
        assert body["credits_charged"] == 8


class TestStageRoutes:
    """Tests for single-stage route functions."""

    @pytest.mark.asyncio
    async def test_generate_events(self, make_services):
        """The events route charges only the events stage."""
        services = make_services(ScriptedProvider([events_reply("Sputnik")]))

        response = await generate_events(
            GenerateTimelineRequest(**TOPIC, max_events=3), user_id="user-1", services=services
        )

        assert [e.year for e in response.events] == [1950]
        assert response.credits_charged == 8
        assert response.new_balance == 92

    @pytest.mark.asyncio
    async def test_generate_descriptions(self, make_services):
        """The descriptions route uses caller-supplied events."""
        services = make_services(ScriptedProvider([descriptions_reply(["p1"], "Ink wash")]))
        body = GenerateDescriptionsRequest(
            **TOPIC, events=[EventModel(year=1957, title="Sputnik")]
        )

        response = await generate_descriptions(body, user_id="user-1", services=services)

        assert response.descriptions == ["Description 1"]
        assert response.image_prompts == ["ANCHOR: Ink wash. p1"]
        assert response.anchor_style == "Ink wash"
        assert response.new_balance == 92

    @pytest.mark.asyncio
    async def test_generate_images_inline_data(self, make_services):
        """Inline image bytes are returned base64-encoded."""
        provider = ScriptedProvider()
        provider.generate_image = AsyncMock(return_value=GeneratedImage(data=b"png"))
        services = make_services(provider)
        body = GenerateImagesRequest(**TOPIC, image_prompts=["a harbor", "a lighthouse"])

        response = await generate_images(body, user_id="user-1", services=services)

        assert [i.data_base64 for i in response.images] == ["cG5n", "cG5n"]
        assert response.credits_charged == 10
        assert response.new_balance == 90

    @pytest.mark.asyncio
    async def test_generate_images_insufficient(self, make_services):
        """The images route reports the images stage on a 402."""
        services = make_services(
            ScriptedProvider(), CreditLedger(MemoryCreditStore(), default_balance=9)
        )
        body = GenerateImagesRequest(**TOPIC, image_prompts=["a", "b"])

        response = await generate_images(body, user_id="user-1", services=services)

        assert response.status_code == 402
        assert error_body(response)["stage"] == "images"
        assert error_body(response)["required"] == 10


# ============================================================================
# Credit Routes
# ============================================================================


class TestCreditRoutes:
    """Tests for credit route functions."""

    @pytest.mark.asyncio
    async def test_first_balance_lookup_grants_default(self, make_services):
        """Unknown users see the starting balance."""
        response = await get_credits(user_id="new-user", services=make_services(ScriptedProvider()))
        assert response.balance == 100

    @pytest.mark.asyncio
    async def test_grant(self, make_services):
        """Grants add to the balance."""
        services = make_services(ScriptedProvider())
        response = await grant_credits(
            GrantCreditsRequest(user_id="user-1", amount=50), services=services
        )
        assert response.balance == 150


# ============================================================================
# Prompt Template Routes
# ============================================================================


class TestPromptTemplateRoutes:
    """Tests for prompt template route functions."""

    @pytest.mark.asyncio
    async def test_crud_cycle(self, make_services):
        """Create, read, patch, list and delete a template."""
        services = make_services(ScriptedProvider())

        created = await create_prompt_template(
            PromptTemplateCreateRequest(step=PromptStep.IMAGES, user_prompt="Draw {{event_title}}"),
            services=services,
        )
        assert created.version == 1

        fetched = await get_prompt_template(created.id, services=services)
        assert fetched.user_prompt == "Draw {{event_title}}"

        patched = await update_prompt_template(
            created.id,
            PromptTemplateUpdateRequest(metadata={"owner": "design"}),
            services=services,
        )
        assert patched.version == 2
        assert patched.user_prompt == "Draw {{event_title}}"
        assert patched.metadata == {"owner": "design"}

        latest = await get_latest_prompt_template(PromptStep.IMAGES, services=services)
        assert latest.id == created.id

        listing = await list_prompt_templates(step=PromptStep.IMAGES, services=services)
        assert listing.total == 1

        response = await delete_prompt_template(created.id, services=services)
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_missing_template(self, make_services):
        """Unknown ids raise TemplateNotFoundError."""
        services = make_services(ScriptedProvider())
        with pytest.raises(TemplateNotFoundError):
            await get_prompt_template("events-missing", services=services)
        with pytest.raises(TemplateNotFoundError):
            await delete_prompt_template("events-missing", services=services)

    @pytest.mark.asyncio
    async def test_no_latest_is_404(self, make_services):
        """A step without templates is a 404."""
        with pytest.raises(HTTPException) as exc_info:
            await get_latest_prompt_template(
                PromptStep.EVENTS, services=make_services(ScriptedProvider())
            )
        assert exc_info.value.status_code == 404


# ============================================================================
# Dependencies and Health
# ============================================================================


class TestDependencies:
    """Tests for FastAPI dependencies."""

    @pytest.mark.asyncio
    async def test_admin_key_accepted(self):
        """The configured admin key passes."""
        await require_admin_key(x_api_key="test-admin-key", settings=get_settings())

    @pytest.mark.asyncio
    async def test_admin_key_rejected(self):
        """A wrong key is a 401."""
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_key(x_api_key="wrong", settings=get_settings())
        assert exc_info.value.status_code == 401

    def test_admin_disabled_without_key(self):
        """An empty ADMIN_API_KEY disables admin access entirely."""
        disabled = get_settings().model_copy(update={"admin_api_key": ""})
        with pytest.raises(AuthenticationError):
            validate_admin_key("", disabled)

    @pytest.mark.asyncio
    async def test_blank_user_id_rejected(self):
        """Whitespace-only user ids are a 401."""
        with pytest.raises(HTTPException) as exc_info:
            await get_user_id(x_user_id="   ")
        assert exc_info.value.status_code == 401

    def test_services_not_initialized(self):
        """Requests before startup completes get a 503."""
        request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))
        with pytest.raises(HTTPException) as exc_info:
            get_services(request)
        assert exc_info.value.status_code == 503


class TestHealthRoute:
    """Tests for health_check route function."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        """A working database reports healthy."""
        response = await health_check(db=AsyncMock())
        assert response.status == "healthy"
        assert response.database == "connected"

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        """A failing database is a 503."""
        db = AsyncMock()
        db.execute.side_effect = ConnectionError("db down")
        with pytest.raises(HTTPException) as exc_info:
            await health_check(db=db)
        assert exc_info.value.status_code == 503
