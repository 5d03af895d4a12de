"""
API Models - Pydantic models for request/response validation.

Enumerations shared with the domain layer live here as well.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PromptStep(str, Enum):
    """Pipeline step a stored prompt template belongs to."""

    EVENTS = "events"
    DESCRIPTIONS = "descriptions"
    IMAGES = "images"


class PipelineStage(str, Enum):
    """Ordered, individually chargeable stages of a generation run."""

    EVENTS_DRAFT = "events_draft"
    DESCRIPTIONS = "descriptions"
    IMAGES = "images"

    @property
    def prompt_step(self) -> PromptStep:
        """Prompt template step used by this stage."""
        return _STAGE_PROMPT_STEPS[self]


_STAGE_PROMPT_STEPS = {
    PipelineStage.EVENTS_DRAFT: PromptStep.EVENTS,
    PipelineStage.DESCRIPTIONS: PromptStep.DESCRIPTIONS,
    PipelineStage.IMAGES: PromptStep.IMAGES,
}


class PipelineState(str, Enum):
    """State machine positions of a pipeline run."""

    EVENTS_DRAFT = "events_draft"
    DESCRIPTIONS = "descriptions"
    IMAGES = "images"
    DONE = "done"
    FAILED = "failed"


class RiskLevel(str, Enum):
    """Likeness risk level reported by the classifier."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class ErrorKind(str, Enum):
    """Caller-visible failure kinds of a generation run."""

    INSUFFICIENT_CREDITS = "insufficient_credits"
    PROVIDER_ERROR = "provider_error"


class TransactionKind(str, Enum):
    """Credit ledger audit entry kind."""

    DEDUCTION = "deduction"
    INCREMENT = "increment"


# ============================================================================
# Generation Models
# ============================================================================


class TopicRequest(BaseModel):
    """Fields describing the timeline topic, shared by all generation requests."""

    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(..., min_length=1, max_length=5000)
    is_factual: bool = True
    writing_style: str = Field(default="narrative", max_length=50)
    image_style: str = Field(default="Illustration", max_length=50)
    theme_color: str | None = Field(None, max_length=20)
    source_restrictions: list[str] = Field(default_factory=list)
    reference_images: list[str] = Field(
        default_factory=list, description="Reference image URLs passed to the image provider"
    )


class GenerateTimelineRequest(TopicRequest):
    """POST /v1/timelines/generate request body."""

    max_events: int = Field(default=20, ge=1, le=100)


class EventModel(BaseModel):
    """A dated timeline event."""

    year: int
    title: str = Field(..., min_length=1)
    month: int | None = Field(None, ge=1, le=12)
    day: int | None = Field(None, ge=1, le=31)


class GenerateDescriptionsRequest(TopicRequest):
    """POST /v1/timelines/generate/descriptions request body."""

    events: list[EventModel] = Field(..., min_length=1)


class GenerateImagesRequest(TopicRequest):
    """POST /v1/timelines/generate/images request body."""

    events: list[EventModel] = Field(default_factory=list)
    image_prompts: list[str] = Field(..., min_length=1)

    @field_validator("image_prompts")
    @classmethod
    def validate_prompts(cls, v: list[str]) -> list[str]:
        """At least one prompt must contain text."""
        if not any(p.strip() for p in v):
            raise ValueError("image_prompts must contain at least one non-empty prompt")
        return v


class GeneratedImageModel(BaseModel):
    """A generated image, by URL or base64 payload."""

    url: str | None = None
    data_base64: str | None = None


class InferredAttributesModel(BaseModel):
    """Structured attributes inferred by the likeness classifier."""

    subjects: list[str] = Field(default_factory=list)
    format: str = ""
    use_of_likeness: str = ""
    use_of_copyrighted_material: str = ""
    framing: str = ""


class RiskAssessmentModel(BaseModel):
    """Likeness risk decision for a topic."""

    can_use_likeness: bool
    risk_level: RiskLevel
    justification: str
    recommendation: str
    inferred_attributes: InferredAttributesModel | None = None


class GenerationResponse(BaseModel):
    """POST /v1/timelines/generate response."""

    events: list[EventModel]
    descriptions: list[str]
    image_prompts: list[str]
    images: list[GeneratedImageModel]
    anchor_style: str | None = None
    risk_assessment: RiskAssessmentModel | None = None
    credits_charged: int
    new_balance: int


class EventsStageResponse(BaseModel):
    """POST /v1/timelines/generate/events response."""

    events: list[EventModel]
    credits_charged: int
    new_balance: int


class DescriptionsStageResponse(BaseModel):
    """POST /v1/timelines/generate/descriptions response."""

    descriptions: list[str]
    image_prompts: list[str]
    anchor_style: str | None = None
    credits_charged: int
    new_balance: int


class ImagesStageResponse(BaseModel):
    """POST /v1/timelines/generate/images response."""

    images: list[GeneratedImageModel]
    image_prompts: list[str] = Field(description="Prompts as dispatched, after sanitizing")
    risk_assessment: RiskAssessmentModel | None = None
    credits_charged: int
    new_balance: int


class GenerationErrorResponse(BaseModel):
    """Failure body for generation endpoints."""

    error_kind: ErrorKind
    stage: PipelineStage
    required: int | None = None
    available: int | None = None
    message: str
    credits_charged: int = 0


# ============================================================================
# Credit Models
# ============================================================================


class CreditBalanceResponse(BaseModel):
    """GET /v1/credits response."""

    user_id: str
    balance: int


class GrantCreditsRequest(BaseModel):
    """POST /v1/credits/grant request body (payment completion collaborator)."""

    user_id: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., gt=0)
    reason: str = Field(default="purchase", min_length=1, max_length=100)


# ============================================================================
# Prompt Template Models
# ============================================================================


class PromptTemplateCreateRequest(BaseModel):
    """POST /v1/prompts request body."""

    step: PromptStep
    system_prompt: str | None = None
    user_prompt: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PromptTemplateUpdateRequest(BaseModel):
    """PATCH /v1/prompts/{id} request body - omitted fields are kept."""

    system_prompt: str | None = None
    user_prompt: str | None = None
    metadata: dict[str, Any] | None = None


class PromptTemplateResponse(BaseModel):
    """Stored prompt template."""

    id: str
    step: PromptStep
    system_prompt: str | None
    user_prompt: str | None
    version: int
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any]


class PromptTemplateListResponse(BaseModel):
    """GET /v1/prompts response."""

    templates: list[PromptTemplateResponse]
    total: int


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: datetime
