"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from timeline_ai.models.api import ErrorKind, PipelineStage, PromptStep, RiskLevel

FALLBACK_JUSTIFICATION = "Likeness analysis unavailable, defaulting to safe mode"
FALLBACK_RECOMMENDATION = (
    "Use mood-based, faceless representations instead of real people's likenesses"
)


@dataclass(frozen=True)
class CreditAccountData:
    """Immutable credit account snapshot."""

    user_id: str
    balance: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance}")


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a successful check-and-deduct."""

    user_id: str
    amount: int
    new_balance: int
    action: str


@dataclass(frozen=True)
class InferredAttributes:
    """Structured attributes the classifier inferred about a topic."""

    subjects: tuple[str, ...] = ()
    format: str = ""
    use_of_likeness: str = ""
    use_of_copyrighted_material: str = ""
    framing: str = ""


@dataclass(frozen=True)
class RiskAssessment:
    """Likeness risk decision for one topic."""

    can_use_likeness: bool
    risk_level: RiskLevel
    justification: str
    recommendation: str
    inferred_attributes: InferredAttributes | None = None
    is_fallback: bool = False

    @classmethod
    def fail_closed(cls, justification: str = FALLBACK_JUSTIFICATION) -> "RiskAssessment":
        """The most conservative assessment, used whenever analysis fails."""
        return cls(
            can_use_likeness=False,
            risk_level=RiskLevel.HIGH,
            justification=justification,
            recommendation=FALLBACK_RECOMMENDATION,
            is_fallback=True,
        )


@dataclass(frozen=True)
class SanitizedPrompt:
    """Image prompt rewritten to avoid direct likeness, with the style to use."""

    prompt: str
    style: str


@dataclass(frozen=True)
class StoredPromptTemplate:
    """Versioned prompt template for one pipeline step."""

    id: str
    step: PromptStep
    system_prompt: str | None
    user_prompt: str | None
    version: int
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TimelineEvent:
    """A dated timeline event."""

    year: int
    title: str
    month: int | None = None
    day: int | None = None

    def __post_init__(self) -> None:
        """Validate event fields."""
        if not self.title:
            raise ValueError("Event title cannot be empty")
        if self.month is not None and not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")
        if self.day is not None and not 1 <= self.day <= 31:
            raise ValueError(f"Invalid day: {self.day}")

    @property
    def label(self) -> str:
        """Short label used in prompts."""
        return f"{self.year}: {self.title}"


@dataclass(frozen=True)
class GeneratedImage:
    """Image returned by the provider, either hosted or inline."""

    url: str | None = None
    data: bytes | None = None

    def __post_init__(self) -> None:
        """An image needs a URL or a payload."""
        if self.url is None and self.data is None:
            raise ValueError("GeneratedImage requires a url or data")


@dataclass(frozen=True)
class GenerationRequest:
    """A generation request for one timeline topic."""

    user_id: str
    title: str
    description: str
    max_events: int = 20
    is_factual: bool = True
    writing_style: str = "narrative"
    image_style: str = "Illustration"
    theme_color: str | None = None
    source_restrictions: tuple[str, ...] = ()
    reference_images: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate request constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.title.strip() or not self.description.strip():
            raise ValueError("Timeline title and description are required")
        if self.max_events <= 0:
            raise ValueError(f"max_events must be positive: {self.max_events}")


@dataclass(frozen=True)
class DescriptionsDraft:
    """Output of the descriptions stage."""

    descriptions: tuple[str, ...]
    image_prompts: tuple[str, ...]
    anchor_style: str | None = None


@dataclass(frozen=True)
class ImageBatch:
    """Output of the images stage."""

    images: tuple[GeneratedImage, ...]
    dispatched_prompts: tuple[str, ...]
    risk_assessment: RiskAssessment | None = None


@dataclass(frozen=True)
class StageCosts:
    """Credit cost of each stage."""

    events: int = 8
    descriptions: int = 8
    image_per_event: int = 5

    def __post_init__(self) -> None:
        """Costs must be positive."""
        if min(self.events, self.descriptions, self.image_per_event) <= 0:
            raise ValueError("Stage costs must be positive")

    def for_stage(self, stage: PipelineStage, image_count: int = 0) -> int:
        """Credit cost of a stage; images are priced per prompt."""
        if stage is PipelineStage.EVENTS_DRAFT:
            return self.events
        if stage is PipelineStage.DESCRIPTIONS:
            return self.descriptions
        return self.image_per_event * image_count


@dataclass(frozen=True)
class GenerationResult:
    """Successful pipeline result."""

    events: tuple[TimelineEvent, ...]
    descriptions: tuple[str, ...]
    image_prompts: tuple[str, ...]
    images: tuple[GeneratedImage, ...]
    credits_charged: int
    new_balance: int
    anchor_style: str | None = None
    risk_assessment: RiskAssessment | None = None


@dataclass(frozen=True)
class GenerationFailure:
    """Failed pipeline result, annotated with the failing stage."""

    error_kind: ErrorKind
    stage: PipelineStage
    message: str
    credits_charged: int = 0
    required: int | None = None
    available: int | None = None
