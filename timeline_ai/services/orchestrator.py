"""
Generation Orchestrator - Runs the metered events → descriptions → images pipeline.

Per stage:
1. Charge the stage cost (insufficient credits stop the run, no provider call)
2. Look the stage up in the content cache (hits are still charged)
3. On a miss: consult the likeness classifier where needed, sanitize image
   prompts, call the provider under the retry policy, parse the output
4. Store the stage output in the cache before returning

Credits are never refunded, including when retries are exhausted.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar
from uuid import uuid4

from timeline_ai.exceptions import InsufficientCreditsError, ProviderError
from timeline_ai.models.api import ErrorKind, PipelineStage, PipelineState, PromptStep
from timeline_ai.models.domain import (
    DescriptionsDraft,
    GeneratedImage,
    GenerationFailure,
    GenerationRequest,
    GenerationResult,
    ImageBatch,
    RiskAssessment,
    StageCosts,
    TimelineEvent,
)
from timeline_ai.observability.logging import get_logger, log_context
from timeline_ai.observability.metrics import metrics
from timeline_ai.observability.tracing import trace_operation
from timeline_ai.services.content_cache import ContentCache
from timeline_ai.services.credit_ledger import CreditLedger
from timeline_ai.services.generation_provider import GenerationProvider
from timeline_ai.services.prompt_sanitizer import PromptSanitizer
from timeline_ai.services.prompt_store import PromptVersionStore
from timeline_ai.services.prompt_templates import PromptPair, render_template, resolve_prompts
from timeline_ai.services.retry import RetryPolicy
from timeline_ai.services.risk_classifier import LikenessRiskClassifier

logger = get_logger(__name__)

T = TypeVar("T")

MISSING_DESCRIPTION = "Description not generated."
ANCHOR_PREFIX = "ANCHOR:"
ANCHOR_PREVIEW_CHARS = 80


@dataclass
class PipelineRun:
    """Mutable state of one pipeline invocation."""

    user_id: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    state: PipelineState = PipelineState.EVENTS_DRAFT
    current_stage: PipelineStage | None = None
    history: list[PipelineStage] = field(default_factory=list)
    credits_charged: int = 0
    new_balance: int | None = None
    # Likeness decisions already made in this run, keyed by topic hash
    likeness: dict[str, RiskAssessment] = field(default_factory=dict)

    def enter(self, stage: PipelineStage) -> None:
        self.current_stage = stage
        self.state = PipelineState(stage.value)

    def complete(self, stage: PipelineStage) -> None:
        self.history.append(stage)

    def fail(self) -> None:
        self.state = PipelineState.FAILED


# ============================================================================
# Output parsing
# ============================================================================


def _load_json_object(reply: str, stage: PipelineStage) -> dict[str, Any]:
    try:
        payload = json.loads(reply)
    except (TypeError, ValueError) as e:
        raise ProviderError("Reply is not valid JSON", stage=stage, cause=e) from e
    if not isinstance(payload, dict):
        raise ProviderError("Reply is not a JSON object", stage=stage)
    return payload


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_events(reply: str, max_events: int) -> tuple[TimelineEvent, ...]:
    """
    Parse {"events": [{"year", "month"?, "day"?, "title"}]}.

    Untitled or undated events are dropped; out-of-range month/day become None.
    """
    payload = _load_json_object(reply, PipelineStage.EVENTS_DRAFT)
    raw_events = payload.get("events")
    if not isinstance(raw_events, list):
        raise ProviderError("Reply has no events array", stage=PipelineStage.EVENTS_DRAFT)

    events: list[TimelineEvent] = []
    for raw in raw_events:
        if not isinstance(raw, dict):
            continue
        title = str(raw.get("title") or "").strip()
        year = _as_int(raw.get("year"))
        if not title or year is None:
            continue
        month = _as_int(raw.get("month"))
        day = _as_int(raw.get("day"))
        events.append(
            TimelineEvent(
                year=year,
                title=title,
                month=month if month is not None and 1 <= month <= 12 else None,
                day=day if day is not None and 1 <= day <= 31 else None,
            )
        )

    if not events:
        raise ProviderError("Reply contains no usable events", stage=PipelineStage.EVENTS_DRAFT)
    return tuple(events[:max_events])


def anchor_preview(anchor_style: str) -> str:
    """Short form of the anchor style used as an image prompt prefix."""
    if len(anchor_style) > ANCHOR_PREVIEW_CHARS:
        return anchor_style[:ANCHOR_PREVIEW_CHARS] + "..."
    return anchor_style


def parse_descriptions(reply: str, event_count: int) -> DescriptionsDraft:
    """
    Parse {"anchorStyle", "items": [{"description", "imagePrompt"}]}.

    The older {"descriptions": [...], "imagePrompts": [...]} shape is also read.
    Output is padded or truncated to event_count.
    """
    payload = _load_json_object(reply, PipelineStage.DESCRIPTIONS)

    descriptions: list[str] = []
    prompts: list[str] = []
    items = payload.get("items")
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, dict):
                item = {}
            descriptions.append(str(item.get("description") or "").strip())
            prompts.append(str(item.get("imagePrompt") or "").strip())
    elif isinstance(payload.get("descriptions"), list):
        descriptions = [str(d or "").strip() for d in payload["descriptions"]]
        raw_prompts = payload.get("imagePrompts")
        if isinstance(raw_prompts, list):
            prompts = [str(p or "").strip() for p in raw_prompts]
    else:
        raise ProviderError("Reply has no description items", stage=PipelineStage.DESCRIPTIONS)

    descriptions = [d or MISSING_DESCRIPTION for d in descriptions[:event_count]]
    prompts = prompts[:event_count]
    descriptions += [MISSING_DESCRIPTION] * (event_count - len(descriptions))
    prompts += [""] * (event_count - len(prompts))

    anchor_style = str(payload.get("anchorStyle") or "").strip() or None
    if anchor_style:
        preview = anchor_preview(anchor_style)
        prompts = [
            f"{ANCHOR_PREFIX} {preview}. {p}" if p and ANCHOR_PREFIX not in p else p
            for p in prompts
        ]

    return DescriptionsDraft(
        descriptions=tuple(descriptions),
        image_prompts=tuple(prompts),
        anchor_style=anchor_style,
    )


# ============================================================================
# Orchestrator
# ============================================================================


class GenerationOrchestrator:
    """Runs pipeline stages against shared cache, ledger and provider instances."""

    def __init__(
        self,
        ledger: CreditLedger,
        cache: ContentCache,
        classifier: LikenessRiskClassifier,
        sanitizer: PromptSanitizer,
        provider: GenerationProvider,
        prompt_store: PromptVersionStore | None = None,
        retry_policy: RetryPolicy | None = None,
        costs: StageCosts | None = None,
        provider_timeout_seconds: float = 60.0,
        max_events_limit: int = 100,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.cache = cache
        self.classifier = classifier
        self.sanitizer = sanitizer
        self.provider = provider
        self.prompt_store = prompt_store
        self.retry_policy = retry_policy or RetryPolicy()
        self.costs = costs or StageCosts()
        self.provider_timeout_seconds = provider_timeout_seconds
        self.max_events_limit = max_events_limit
        self._sleep = sleep

    def new_run(self, user_id: str) -> PipelineRun:
        """Start tracking a pipeline invocation."""
        return PipelineRun(user_id=user_id)

    async def run(self, request: GenerationRequest) -> GenerationResult | GenerationFailure:
        """
        Run all three stages for one request.

        Returns:
            GenerationResult on success, GenerationFailure naming the failing
            stage otherwise. Credits charged before a failure stay charged.
        """
        run = self.new_run(request.user_id)
        with log_context(run_id=run.run_id, user_id=request.user_id):
            logger.info("pipeline_started", title=request.title, max_events=request.max_events)
            try:
                events = await self.draft_events(request, run)
                draft = await self.write_descriptions(request, events, run)
                batch = await self.render_images(
                    request, draft.image_prompts, run, events=events, descriptions=draft.descriptions
                )
            except InsufficientCreditsError as e:
                return self.failure(run, e)
            except ProviderError as e:
                return self.failure(run, e)

            run.state = PipelineState.DONE
            logger.info(
                "pipeline_completed",
                credits_charged=run.credits_charged,
                new_balance=run.new_balance,
            )
            return GenerationResult(
                events=events,
                descriptions=draft.descriptions,
                image_prompts=batch.dispatched_prompts,
                images=batch.images,
                credits_charged=run.credits_charged,
                new_balance=run.new_balance if run.new_balance is not None else 0,
                anchor_style=draft.anchor_style,
                risk_assessment=batch.risk_assessment,
            )

    # ------------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------------

    async def draft_events(
        self, request: GenerationRequest, run: PipelineRun
    ) -> tuple[TimelineEvent, ...]:
        """Events stage: draft dated events for the topic."""
        stage = PipelineStage.EVENTS_DRAFT
        with self._stage_scope(run, stage):
            await self._charge(run, stage, self.costs.for_stage(stage))

            prompts = await self._prompts(stage.prompt_step)
            max_events = min(request.max_events, self.max_events_limit)
            key = self.cache.hash(
                {
                    "stage": stage.value,
                    "title": request.title,
                    "description": request.description,
                    "max_events": max_events,
                    "is_factual": request.is_factual,
                    "source_restrictions": list(request.source_restrictions),
                    "prompts": [prompts.system, prompts.user],
                }
            )
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("stage_cache_hit", stage=stage.value)
                return cached

            variables = {
                "title": request.title,
                "description": request.description,
                "max_events": max_events,
                "is_factual": request.is_factual,
                "is_creative": not request.is_factual,
                "source_restrictions": ", ".join(request.source_restrictions),
            }
            events = await self._complete(
                stage,
                prompts,
                variables,
                lambda reply: parse_events(reply, max_events),
                temperature=0.3 if request.is_factual else 0.9,
                max_tokens=min(3000, max_events * 100 + 500),
            )
            self.cache.set(key, events)
            return events

    async def write_descriptions(
        self,
        request: GenerationRequest,
        events: Sequence[TimelineEvent],
        run: PipelineRun,
    ) -> DescriptionsDraft:
        """Descriptions stage: one description and image prompt per event."""
        stage = PipelineStage.DESCRIPTIONS
        if not events:
            raise ValueError("Descriptions stage needs at least one event")

        with self._stage_scope(run, stage):
            await self._charge(run, stage, self.costs.for_stage(stage))

            prompts = await self._prompts(stage.prompt_step)
            assessment = await self._assess_likeness(run, request)
            key = self.cache.hash(
                {
                    "stage": stage.value,
                    "title": request.title,
                    "description": request.description,
                    "events": [event.label for event in events],
                    "writing_style": request.writing_style,
                    "image_style": request.image_style,
                    "theme_color": request.theme_color,
                    "source_restrictions": list(request.source_restrictions),
                    "can_use_likeness": assessment.can_use_likeness,
                    "prompts": [prompts.system, prompts.user],
                }
            )
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("stage_cache_hit", stage=stage.value)
                return cached

            variables = {
                "title": request.title,
                "description": request.description,
                "writing_style": request.writing_style,
                "image_style": request.image_style,
                "theme_color": request.theme_color,
                "source_restrictions": ", ".join(request.source_restrictions),
                "events": [{"label": event.label, "title": event.title} for event in events],
                "event_count": len(events),
                "can_use_likeness": assessment.can_use_likeness,
                "cannot_use_likeness": not assessment.can_use_likeness,
            }
            draft = await self._complete(
                stage,
                prompts,
                variables,
                lambda reply: parse_descriptions(reply, len(events)),
                temperature=0.7,
                max_tokens=min(16000, 800 + 250 * len(events)),
            )
            self.cache.set(key, draft)
            return draft

    async def render_images(
        self,
        request: GenerationRequest,
        image_prompts: Sequence[str],
        run: PipelineRun,
        events: Sequence[TimelineEvent] = (),
        descriptions: Sequence[str] = (),
    ) -> ImageBatch:
        """
        Images stage: one image per prompt, priced per prompt.

        Empty prompts fall back to a prompt built from the matching event.
        """
        stage = PipelineStage.IMAGES
        count = len(image_prompts) or len(events)
        if count == 0:
            raise ValueError("Images stage needs at least one prompt or event")

        with self._stage_scope(run, stage):
            await self._charge(run, stage, self.costs.for_stage(stage, image_count=count))

            prompts = await self._prompts(stage.prompt_step)
            assessment = await self._assess_likeness(run, request)
            key = self.cache.hash(
                {
                    "stage": stage.value,
                    "title": request.title,
                    "description": request.description,
                    "image_prompts": list(image_prompts),
                    "events": [event.label for event in events],
                    "image_style": request.image_style,
                    "theme_color": request.theme_color,
                    "reference_images": list(request.reference_images),
                    "can_use_likeness": assessment.can_use_likeness,
                    "prompts": [prompts.user],
                }
            )
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("stage_cache_hit", stage=stage.value)
                return cached

            drafts = [
                self._image_prompt(request, prompts, image_prompts, events, descriptions, i)
                for i in range(count)
            ]

            dispatched: list[tuple[str, str]] = []
            for draft_prompt in drafts:
                if assessment.can_use_likeness:
                    dispatched.append((draft_prompt, request.image_style))
                    continue
                sanitized = self.sanitizer.sanitize(draft_prompt, request.image_style, assessment)
                changed = sanitized.prompt != draft_prompt or sanitized.style != request.image_style
                metrics.prompt_sanitizations_total.labels(changed=str(changed).lower()).inc()
                dispatched.append((sanitized.prompt, sanitized.style))

            images: list[GeneratedImage] = []
            for index, (prompt, style) in enumerate(dispatched):
                image = await self._with_retry(
                    stage,
                    "image",
                    lambda p=prompt, s=style: self.provider.generate_image(
                        p, s, request.reference_images
                    ),
                )
                images.append(image)
                logger.debug("image_generated", index=index, style=style)

            batch = ImageBatch(
                images=tuple(images),
                dispatched_prompts=tuple(prompt for prompt, _ in dispatched),
                risk_assessment=assessment,
            )
            self.cache.set(key, batch)
            return batch

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    @contextmanager
    def _stage_scope(self, run: PipelineRun, stage: PipelineStage) -> Iterator[None]:
        run.enter(stage)
        started = time.perf_counter()
        with trace_operation("pipeline_stage", stage=stage.value, run_id=run.run_id):
            try:
                yield
            except BaseException:
                run.fail()
                metrics.record_stage(stage.value, "failure", time.perf_counter() - started)
                raise
        run.complete(stage)
        metrics.record_stage(stage.value, "success", time.perf_counter() - started)

    async def _charge(self, run: PipelineRun, stage: PipelineStage, amount: int) -> None:
        try:
            result = await self.ledger.check_and_deduct(run.user_id, amount, stage.value)
        except InsufficientCreditsError as e:
            raise InsufficientCreditsError(e.required, e.available, stage=stage) from e
        run.credits_charged += amount
        run.new_balance = result.new_balance

    async def _prompts(self, step: PromptStep) -> PromptPair:
        stored = await self.prompt_store.latest(step) if self.prompt_store else None
        return resolve_prompts(step, stored)

    async def _assess_likeness(self, run: PipelineRun, request: GenerationRequest) -> RiskAssessment:
        key = self.cache.hash(
            {"kind": "likeness", "title": request.title, "description": request.description}
        )
        if key in run.likeness:
            return run.likeness[key]

        assessment = self.cache.get(key)
        if not isinstance(assessment, RiskAssessment):
            assessment = await self.classifier.assess(request.title, request.description)
            if not assessment.is_fallback:
                self.cache.set(key, assessment)

        run.likeness[key] = assessment
        return assessment

    def _image_prompt(
        self,
        request: GenerationRequest,
        prompts: PromptPair,
        image_prompts: Sequence[str],
        events: Sequence[TimelineEvent],
        descriptions: Sequence[str],
        index: int,
    ) -> str:
        draft = image_prompts[index].strip() if index < len(image_prompts) else ""
        if draft:
            return draft

        event_title = events[index].title if index < len(events) else request.title
        event_description = descriptions[index] if index < len(descriptions) else ""
        if event_description == MISSING_DESCRIPTION:
            event_description = ""
        return render_template(
            prompts.user,
            {
                "image_style": request.image_style,
                "event_title": event_title,
                "event_description": event_description[:200],
                "theme_color": request.theme_color,
            },
        )

    async def _complete(
        self,
        stage: PipelineStage,
        prompts: PromptPair,
        variables: dict[str, Any],
        parse: Callable[[str], T],
        temperature: float,
        max_tokens: int,
    ) -> T:
        system_prompt = render_template(prompts.system, variables)
        user_prompt = render_template(prompts.user, variables)

        async def attempt() -> T:
            reply = await self.provider.complete(
                system_prompt,
                user_prompt,
                json_output=True,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return parse(reply)

        return await self._with_retry(stage, "text", attempt)

    async def _with_retry(
        self,
        stage: PipelineStage,
        kind: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        async def attempt() -> T:
            try:
                result = await asyncio.wait_for(operation(), timeout=self.provider_timeout_seconds)
            except TimeoutError as e:
                metrics.record_provider_call(kind, success=False)
                raise ProviderError(
                    f"Provider call timed out after {self.provider_timeout_seconds}s",
                    stage=stage,
                    cause=e,
                ) from e
            except ProviderError as e:
                metrics.record_provider_call(kind, success=False)
                if e.stage is None:
                    raise ProviderError(e.message, stage=stage, cause=e.cause or e) from e
                raise
            except Exception as e:
                metrics.record_provider_call(kind, success=False)
                raise ProviderError(str(e) or type(e).__name__, stage=stage, cause=e) from e
            metrics.record_provider_call(kind, success=True)
            return result

        def on_retry(attempt_number: int, error: BaseException) -> None:
            metrics.provider_retries_total.labels(stage=stage.value).inc()
            logger.warning(
                "provider_call_retry",
                stage=stage.value,
                kind=kind,
                attempt=attempt_number,
                error=str(error),
            )

        return await self.retry_policy.run(attempt, sleep=self._sleep, on_retry=on_retry)

    def failure(
        self, run: PipelineRun, error: InsufficientCreditsError | ProviderError
    ) -> GenerationFailure:
        """Describe a stage error as a caller-visible failure result."""
        stage = error.stage or run.current_stage or PipelineStage.EVENTS_DRAFT
        if isinstance(error, InsufficientCreditsError):
            logger.warning(
                "pipeline_failed",
                stage=stage.value,
                error_kind=ErrorKind.INSUFFICIENT_CREDITS.value,
                required=error.required,
                available=error.available,
            )
            return GenerationFailure(
                error_kind=ErrorKind.INSUFFICIENT_CREDITS,
                stage=stage,
                message=str(error),
                credits_charged=run.credits_charged,
                required=error.required,
                available=error.available,
            )

        metrics.record_error("ProviderError", stage.value)
        logger.error(
            "pipeline_failed",
            stage=stage.value,
            error_kind=ErrorKind.PROVIDER_ERROR.value,
            error=str(error),
            credits_charged=run.credits_charged,
        )
        return GenerationFailure(
            error_kind=ErrorKind.PROVIDER_ERROR,
            stage=stage,
            message=str(error),
            credits_charged=run.credits_charged,
        )
