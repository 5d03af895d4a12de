"""
Likeness Risk Classifier - Decides whether a topic may use real people's likenesses.

FAIL CLOSED - any failure resolves to the most conservative assessment.
"""

import asyncio
import json
import re
from collections.abc import Mapping
from typing import Any

from timeline_ai.models.api import RiskLevel
from timeline_ai.models.domain import InferredAttributes, RiskAssessment
from timeline_ai.observability.logging import get_logger
from timeline_ai.observability.metrics import metrics
from timeline_ai.services.generation_provider import GenerationProvider
from timeline_ai.services.prompt_templates import (
    RISK_SYSTEM_PROMPT,
    RISK_USER_PROMPT,
    render_template,
)

logger = get_logger(__name__)

DEFAULT_JUSTIFICATION = "No justification provided, treating likeness use as unsafe"
DEFAULT_RECOMMENDATION = "Use caution with real people's likenesses"

NEWSWORTHY_KEYWORDS = (
    "election",
    "president",
    "governor",
    "mayor",
    "senator",
    "congress",
    "parliament",
    "death",
    "dies",
    "passed away",
    "obituary",
    "memorial",
    "scandal",
    "trial",
    "court",
    "lawsuit",
    "arrest",
    "charged",
    "award",
    "oscar",
    "nobel",
    "grammy",
    "emmy",
    "marriage",
    "divorce",
    "announcement",
    "public statement",
    "war",
    "conflict",
    "crisis",
    "disaster",
    "emergency",
)

ENTERTAINMENT_KEYWORDS = (
    "film",
    "movie",
    "actor",
    "actress",
    "celebrity",
    "star",
    "biography",
    "life story",
    "career",
    "filmography",
    "timeline of",
    "story of",
    "history of",
)


def _keyword_re(keywords: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(k.replace(" ", r"\s+") for k in keywords)
    return re.compile(r"\b(?:" + alternatives + r")s?\b", re.IGNORECASE)


_NEWSWORTHY_RE = _keyword_re(NEWSWORTHY_KEYWORDS)
_ENTERTAINMENT_RE = _keyword_re(ENTERTAINMENT_KEYWORDS)
_FILM_RE = _keyword_re(("film", "movie"))


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_risk_level(value: Any) -> RiskLevel:
    if isinstance(value, str):
        for level in RiskLevel:
            if value.strip().lower() == level.value.lower():
                return level
    return RiskLevel.HIGH


def _parse_inferred_attributes(value: Any) -> InferredAttributes | None:
    if not isinstance(value, Mapping):
        return None
    subjects = value.get("subjects", [])
    if not isinstance(subjects, list) or not all(isinstance(s, str) for s in subjects):
        return None

    def field(*names: str) -> str:
        for name in names:
            text = _text(value.get(name))
            if text is not None:
                return text
        return ""

    return InferredAttributes(
        subjects=tuple(subjects),
        format=field("format"),
        use_of_likeness=field("useOfLikeness", "use_of_likeness"),
        use_of_copyrighted_material=field(
            "useOfCopyrightedMaterial", "use_of_copyrighted_material"
        ),
        framing=field("framing"),
    )


def parse_assessment(payload: Mapping[str, Any]) -> RiskAssessment:
    """
    Build an assessment from the classifier's JSON reply.

    Every field is optional and defaults conservatively on its own: likeness is
    allowed only on a literal true, unknown risk levels count as High, and High
    always forbids likeness. Both the nested reply shape and flat keys are read.
    """
    overall = payload.get("overallRiskAssessment")
    if not isinstance(overall, Mapping):
        overall = payload
    publicity = payload.get("rightOfPublicityAnalysis")
    if not isinstance(publicity, Mapping):
        publicity = {}

    risk_level = _parse_risk_level(overall.get("riskLevel", overall.get("risk_level")))
    can_use = overall.get("canUseLikeness", overall.get("can_use_likeness")) is True
    if risk_level is RiskLevel.HIGH:
        can_use = False

    justification = (
        _text(publicity.get("justification"))
        or _text(overall.get("justification"))
        or DEFAULT_JUSTIFICATION
    )
    recommendation = _text(overall.get("recommendation")) or DEFAULT_RECOMMENDATION

    return RiskAssessment(
        can_use_likeness=can_use,
        risk_level=risk_level,
        justification=justification,
        recommendation=recommendation,
        inferred_attributes=_parse_inferred_attributes(payload.get("inferredAttributes")),
    )


def quick_assessment(title: str, description: str) -> RiskAssessment | None:
    """
    Keyword pre-filter that settles clear-cut topics without a model call.

    Returns None when the topic is ambiguous.
    """
    combined = f"{title} {description}"

    has_newsworthy = _NEWSWORTHY_RE.search(combined) is not None
    has_entertainment = _ENTERTAINMENT_RE.search(combined) is not None

    if has_newsworthy and not has_entertainment:
        return RiskAssessment(
            can_use_likeness=True,
            risk_level=RiskLevel.LOW,
            justification=(
                "Timeline contains clear newsworthy events (election, death, major public events)"
            ),
            recommendation="Likeness usage is appropriate for newsworthy content",
        )

    is_about_films = _FILM_RE.search(combined) is not None
    if has_entertainment and not has_newsworthy and is_about_films:
        return RiskAssessment(
            can_use_likeness=False,
            risk_level=RiskLevel.HIGH,
            justification="Timeline is about entertainment/films without clear newsworthy angle",
            recommendation=(
                "Use mood-based, faceless representations instead of celebrity likenesses"
            ),
        )

    return None


class LikenessRiskClassifier:
    """Asks the provider for a legal-risk analysis of depicting real people."""

    def __init__(
        self,
        provider: GenerationProvider,
        model: str | None = None,
        timeout_seconds: float = 60.0,
        prefilter_enabled: bool = False,
    ):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.prefilter_enabled = prefilter_enabled

    async def assess(self, title: str, description: str) -> RiskAssessment:
        """
        Assess a timeline topic.

        Never raises for provider or parsing failures: those return
        RiskAssessment.fail_closed(). Cancellation still propagates.
        """
        if self.prefilter_enabled:
            quick = quick_assessment(title, description)
            if quick is not None:
                self._record(quick, source="prefilter")
                logger.info(
                    "likeness_assessment_prefilter",
                    risk_level=quick.risk_level.value,
                    can_use_likeness=quick.can_use_likeness,
                )
                return quick

        try:
            reply = await asyncio.wait_for(
                self.provider.complete(
                    RISK_SYSTEM_PROMPT,
                    render_template(
                        RISK_USER_PROMPT, {"title": title, "description": description}
                    ),
                    json_output=True,
                    temperature=0.3,
                    max_tokens=1000,
                    model=self.model,
                ),
                timeout=self.timeout_seconds,
            )
            if not reply or not reply.strip():
                raise ValueError("Empty classifier reply")
            payload = json.loads(reply)
            if not isinstance(payload, dict):
                raise ValueError(f"Classifier reply is {type(payload).__name__}, not an object")
            assessment = parse_assessment(payload)
        except Exception as e:
            logger.warning(
                "likeness_assessment_fallback", error=str(e), error_type=type(e).__name__
            )
            metrics.record_error(type(e).__name__, "likeness_assessment")
            assessment = RiskAssessment.fail_closed(
                f"Likeness analysis failed ({type(e).__name__}), defaulting to safe mode"
            )
            self._record(assessment, source="fallback")
            return assessment

        self._record(assessment, source="model")
        logger.info(
            "likeness_assessment_completed",
            risk_level=assessment.risk_level.value,
            can_use_likeness=assessment.can_use_likeness,
        )
        return assessment

    @staticmethod
    def _record(assessment: RiskAssessment, source: str) -> None:
        metrics.likeness_assessments_total.labels(
            risk_level=assessment.risk_level.value, source=source
        ).inc()
