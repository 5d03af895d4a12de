"""
API Routes - FastAPI endpoints for timeline generation, credits and prompts.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import base64
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from timeline_ai.api.dependencies import get_services, get_user_id, require_admin_key
from timeline_ai.db.session import get_db
from timeline_ai.exceptions import (
    InsufficientCreditsError,
    ProviderError,
    TemplateNotFoundError,
)
from timeline_ai.models.api import (
    CreditBalanceResponse,
    DescriptionsStageResponse,
    ErrorKind,
    EventModel,
    EventsStageResponse,
    GeneratedImageModel,
    GenerateDescriptionsRequest,
    GenerateImagesRequest,
    GenerateTimelineRequest,
    GenerationErrorResponse,
    GenerationResponse,
    GrantCreditsRequest,
    HealthResponse,
    ImagesStageResponse,
    InferredAttributesModel,
    PromptStep,
    PromptTemplateCreateRequest,
    PromptTemplateListResponse,
    PromptTemplateResponse,
    PromptTemplateUpdateRequest,
    RiskAssessmentModel,
    TopicRequest,
)
from timeline_ai.models.domain import (
    GeneratedImage,
    GenerationFailure,
    GenerationRequest,
    RiskAssessment,
    StoredPromptTemplate,
    TimelineEvent,
)
from timeline_ai.services.container import ServiceContainer
from timeline_ai.services.orchestrator import PipelineRun

router = APIRouter()

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    402: {"model": GenerationErrorResponse, "description": "Insufficient credits"},
    502: {"model": GenerationErrorResponse, "description": "Provider failure"},
}


# ============================================================================
# Conversions
# ============================================================================


def _to_generation_request(
    body: TopicRequest, user_id: str, max_events: int = 20
) -> GenerationRequest:
    try:
        return GenerationRequest(
            user_id=user_id,
            title=body.title,
            description=body.description,
            max_events=max_events,
            is_factual=body.is_factual,
            writing_style=body.writing_style,
            image_style=body.image_style,
            theme_color=body.theme_color,
            source_restrictions=tuple(body.source_restrictions),
            reference_images=tuple(body.reference_images),
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc


def _to_events(models: list[EventModel]) -> tuple[TimelineEvent, ...]:
    return tuple(
        TimelineEvent(year=m.year, title=m.title, month=m.month, day=m.day) for m in models
    )


def _event_model(event: TimelineEvent) -> EventModel:
    return EventModel(year=event.year, title=event.title, month=event.month, day=event.day)


def _image_model(image: GeneratedImage) -> GeneratedImageModel:
    return GeneratedImageModel(
        url=image.url,
        data_base64=base64.b64encode(image.data).decode("ascii") if image.data else None,
    )


def _risk_model(assessment: RiskAssessment | None) -> RiskAssessmentModel | None:
    if assessment is None:
        return None
    attributes = assessment.inferred_attributes
    return RiskAssessmentModel(
        can_use_likeness=assessment.can_use_likeness,
        risk_level=assessment.risk_level,
        justification=assessment.justification,
        recommendation=assessment.recommendation,
        inferred_attributes=(
            InferredAttributesModel(
                subjects=list(attributes.subjects),
                format=attributes.format,
                use_of_likeness=attributes.use_of_likeness,
                use_of_copyrighted_material=attributes.use_of_copyrighted_material,
                framing=attributes.framing,
            )
            if attributes
            else None
        ),
    )


def _template_model(template: StoredPromptTemplate) -> PromptTemplateResponse:
    return PromptTemplateResponse(
        id=template.id,
        step=template.step,
        system_prompt=template.system_prompt,
        user_prompt=template.user_prompt,
        version=template.version,
        created_at=template.created_at,
        updated_at=template.updated_at,
        metadata=template.metadata,
    )


def _error_response(failure: GenerationFailure) -> JSONResponse:
    status_code = (
        status.HTTP_402_PAYMENT_REQUIRED
        if failure.error_kind is ErrorKind.INSUFFICIENT_CREDITS
        else status.HTTP_502_BAD_GATEWAY
    )
    body = GenerationErrorResponse(
        error_kind=failure.error_kind,
        stage=failure.stage,
        required=failure.required,
        available=failure.available,
        message=failure.message,
        credits_charged=failure.credits_charged,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _balance(run: PipelineRun) -> int:
    return run.new_balance if run.new_balance is not None else 0


# ============================================================================
# Generation Endpoints
# ============================================================================


@router.post(
    "/v1/timelines/generate", response_model=GenerationResponse, responses=ERROR_RESPONSES
)
async def generate_timeline(
    body: GenerateTimelineRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> GenerationResponse | JSONResponse:
    """
    Run the full pipeline: events, descriptions, images.

    Each stage is charged before it runs; a failure reports the failing stage
    and the credits already charged (which are not refunded).
    """
    request = _to_generation_request(body, user_id, max_events=body.max_events)
    outcome = await services.orchestrator.run(request)

    if isinstance(outcome, GenerationFailure):
        return _error_response(outcome)

    return GenerationResponse(
        events=[_event_model(e) for e in outcome.events],
        descriptions=list(outcome.descriptions),
        image_prompts=list(outcome.image_prompts),
        images=[_image_model(i) for i in outcome.images],
        anchor_style=outcome.anchor_style,
        risk_assessment=_risk_model(outcome.risk_assessment),
        credits_charged=outcome.credits_charged,
        new_balance=outcome.new_balance,
    )


@router.post(
    "/v1/timelines/generate/events",
    response_model=EventsStageResponse,
    responses=ERROR_RESPONSES,
)
async def generate_events(
    body: GenerateTimelineRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> EventsStageResponse | JSONResponse:
    """Run only the events stage."""
    request = _to_generation_request(body, user_id, max_events=body.max_events)
    orchestrator = services.orchestrator
    run = orchestrator.new_run(user_id)

    try:
        events = await orchestrator.draft_events(request, run)
    except (InsufficientCreditsError, ProviderError) as exc:
        return _error_response(orchestrator.failure(run, exc))

    return EventsStageResponse(
        events=[_event_model(e) for e in events],
        credits_charged=run.credits_charged,
        new_balance=_balance(run),
    )


@router.post(
    "/v1/timelines/generate/descriptions",
    response_model=DescriptionsStageResponse,
    responses=ERROR_RESPONSES,
)
async def generate_descriptions(
    body: GenerateDescriptionsRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> DescriptionsStageResponse | JSONResponse:
    """Run only the descriptions stage for caller-supplied events."""
    request = _to_generation_request(body, user_id)
    orchestrator = services.orchestrator
    run = orchestrator.new_run(user_id)

    try:
        draft = await orchestrator.write_descriptions(request, _to_events(body.events), run)
    except (InsufficientCreditsError, ProviderError) as exc:
        return _error_response(orchestrator.failure(run, exc))

    return DescriptionsStageResponse(
        descriptions=list(draft.descriptions),
        image_prompts=list(draft.image_prompts),
        anchor_style=draft.anchor_style,
        credits_charged=run.credits_charged,
        new_balance=_balance(run),
    )


@router.post(
    "/v1/timelines/generate/images",
    response_model=ImagesStageResponse,
    responses=ERROR_RESPONSES,
)
async def generate_images(
    body: GenerateImagesRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> ImagesStageResponse | JSONResponse:
    """Run only the images stage; charged per image prompt."""
    request = _to_generation_request(body, user_id)
    orchestrator = services.orchestrator
    run = orchestrator.new_run(user_id)

    try:
        batch = await orchestrator.render_images(
            request, body.image_prompts, run, events=_to_events(body.events)
        )
    except (InsufficientCreditsError, ProviderError) as exc:
        return _error_response(orchestrator.failure(run, exc))

    return ImagesStageResponse(
        images=[_image_model(i) for i in batch.images],
        image_prompts=list(batch.dispatched_prompts),
        risk_assessment=_risk_model(batch.risk_assessment),
        credits_charged=run.credits_charged,
        new_balance=_balance(run),
    )


# ============================================================================
# Credit Endpoints
# ============================================================================


@router.get("/v1/credits", response_model=CreditBalanceResponse)
async def get_credits(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> CreditBalanceResponse:
    """Caller's balance. First access grants the starting balance."""
    account = await services.ledger.get_or_create(user_id)
    return CreditBalanceResponse(user_id=account.user_id, balance=account.balance)


@router.post(
    "/v1/credits/grant",
    response_model=CreditBalanceResponse,
    dependencies=[Depends(require_admin_key)],
)
async def grant_credits(
    body: GrantCreditsRequest,
    services: ServiceContainer = Depends(get_services),
) -> CreditBalanceResponse:
    """
    Add credits to a user's balance.

    Called by the payment collaborator after a completed purchase.
    Auth: X-API-Key admin key.
    """
    new_balance = await services.ledger.increment(body.user_id, body.amount, reason=body.reason)
    return CreditBalanceResponse(user_id=body.user_id, balance=new_balance)


# ============================================================================
# Prompt Template Endpoints (admin)
# ============================================================================


@router.post(
    "/v1/prompts",
    response_model=PromptTemplateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_key)],
)
async def create_prompt_template(
    body: PromptTemplateCreateRequest,
    services: ServiceContainer = Depends(get_services),
) -> PromptTemplateResponse:
    """Store a new prompt template at version 1."""
    store = services.prompt_store
    template_id = await store.save(
        body.step,
        system_prompt=body.system_prompt,
        user_prompt=body.user_prompt,
        metadata=body.metadata,
    )
    template = await store.get(template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)
    return _template_model(template)


@router.get(
    "/v1/prompts",
    response_model=PromptTemplateListResponse,
    dependencies=[Depends(require_admin_key)],
)
async def list_prompt_templates(
    step: PromptStep | None = None,
    services: ServiceContainer = Depends(get_services),
) -> PromptTemplateListResponse:
    """All templates, newest update first, optionally filtered by step."""
    templates = await services.prompt_store.list(step)
    return PromptTemplateListResponse(
        templates=[_template_model(t) for t in templates], total=len(templates)
    )


@router.get(
    "/v1/prompts/latest/{step}",
    response_model=PromptTemplateResponse,
    dependencies=[Depends(require_admin_key)],
)
async def get_latest_prompt_template(
    step: PromptStep,
    services: ServiceContainer = Depends(get_services),
) -> PromptTemplateResponse:
    """Most recently updated template for a step."""
    template = await services.prompt_store.latest(step)
    if template is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No prompt template for step: {step.value}",
        )
    return _template_model(template)


@router.get(
    "/v1/prompts/{template_id}",
    response_model=PromptTemplateResponse,
    dependencies=[Depends(require_admin_key)],
)
async def get_prompt_template(
    template_id: str,
    services: ServiceContainer = Depends(get_services),
) -> PromptTemplateResponse:
    """Fetch one template."""
    template = await services.prompt_store.get(template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)
    return _template_model(template)


@router.patch(
    "/v1/prompts/{template_id}",
    response_model=PromptTemplateResponse,
    dependencies=[Depends(require_admin_key)],
)
async def update_prompt_template(
    template_id: str,
    body: PromptTemplateUpdateRequest,
    services: ServiceContainer = Depends(get_services),
) -> PromptTemplateResponse:
    """Merge-patch a template; bumps its version."""
    template = await services.prompt_store.update(
        template_id,
        system_prompt=body.system_prompt,
        user_prompt=body.user_prompt,
        metadata=body.metadata,
    )
    if template is None:
        raise TemplateNotFoundError(template_id)
    return _template_model(template)


@router.delete(
    "/v1/prompts/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin_key)],
)
async def delete_prompt_template(
    template_id: str,
    services: ServiceContainer = Depends(get_services),
) -> Response:
    """Delete a template."""
    if not await services.prompt_store.delete(template_id):
        raise TemplateNotFoundError(template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
