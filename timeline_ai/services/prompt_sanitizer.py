"""
Prompt Sanitizer - Rewrites image prompts away from direct likenesses.

Pure transformation: no I/O, no logging. Applying it twice gives the same
result as applying it once.
"""

import re
from collections.abc import Callable, Iterable

from timeline_ai.models.domain import RiskAssessment, SanitizedPrompt

# Titles and roles that usually point at a real, recognisable person
ROLE_KEYWORDS = (
    "king",
    "queen",
    "emperor",
    "empress",
    "monarch",
    "pharaoh",
    "tsar",
    "czar",
    "sultan",
    "pope",
    "president",
    "prime minister",
    "chancellor",
    "caesar",
    "famous",
    "celebrity",
)

NAMED_FIGURES = (
    "napoleon",
    "cleopatra",
    "churchill",
    "lincoln",
    "washington",
    "kennedy",
    "gandhi",
    "mandela",
    "martin luther king",
    "mlk",
    "einstein",
    "newton",
    "darwin",
    "tesla",
    "edison",
    "curie",
    "shakespeare",
    "picasso",
    "van gogh",
    "mozart",
    "beethoven",
)

PORTRAIT_PHRASES = ("portrait of", "photo of", "photograph of", "picture of", "image of")

ARTISTIC_STYLE_WORDS = ("illustration", "sketch", "watercolor", "painting", "drawing", "artistic")

PHOTOREALISTIC_STYLES = frozenset({"photorealistic", "photo-realistic", "photo realistic"})

SAFE_STYLE = "Illustration"

NOT_A_LIKENESS_CLAUSE = "Stylized artistic representation, not a direct likeness"
ARTISTIC_CLAUSE = "Stylized historical illustration, artistic interpretation"
CONTEXT_CLAUSE = (
    "Focus on historical setting, period-appropriate clothing, and symbolic elements "
    "rather than specific facial features"
)
CONTEXT_REWRITE = "show the historical context and setting"

SAFETY_CLAUSES = (NOT_A_LIKENESS_CLAUSE, ARTISTIC_CLAUSE, CONTEXT_CLAUSE)


def _phrase_pattern(phrases: Iterable[str]) -> str:
    return "|".join(p.replace(" ", r"\s+") for p in phrases)


_IDENTIFYING_RE = re.compile(
    r"\b(?:" + _phrase_pattern((*ROLE_KEYWORDS, *NAMED_FIGURES)) + r")s?\b"
    r"|\b(?:" + _phrase_pattern(PORTRAIT_PHRASES) + r")\b",
    re.IGNORECASE,
)

_LIKENESS_ADJECTIVE = r"(?:specific|actual|real|authentic|exact)"
_LIKENESS_NOUN = r"(?:likeness|portrait|photograph|photo|picture|image)"

_LEAD_IN_RE = re.compile(
    r"\b(?:(?:an?|the)\s+)?(?:" + _LIKENESS_ADJECTIVE + r"\s+)?"
    r"(?:portrait|photograph|photo|picture|image)\s+of\s+",
    re.IGNORECASE,
)
_SPECIFIC_LIKENESS_RE = re.compile(
    r"\b(?:(?:an?|the)\s+)?" + _LIKENESS_ADJECTIVE + r"\s+" + _LIKENESS_NOUN + r"s?\b",
    re.IGNORECASE,
)
_PHOTOREALISTIC_RE = re.compile(r"\bphoto-?realistic\b", re.IGNORECASE)
_SHOW_PERSON_RE = re.compile(
    r"\b(?:show|depict|feature)\s+(?:the|this|specific)\s+person\b", re.IGNORECASE
)
_ARTISTIC_RE = re.compile(r"\b(?:" + "|".join(ARTISTIC_STYLE_WORDS) + r")", re.IGNORECASE)


def looks_like_identifiable_person(text: str) -> bool:
    """
    Keyword heuristic for prompts that likely depict a real, identifiable person.

    Misses public figures outside the keyword lists and can flag common nouns
    ("king" in "king-size"); callers needing better recall can plug in their own
    predicate.
    """
    return bool(text) and _IDENTIFYING_RE.search(text) is not None


def _tidy(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    return re.sub(r"\s+([,.;:!?])", r"\1", text)


def _strip_likeness_phrasing(prompt: str) -> str:
    while True:
        stripped = _SPECIFIC_LIKENESS_RE.sub("", _LEAD_IN_RE.sub("", prompt))
        if stripped == prompt:
            return _tidy(prompt)
        prompt = stripped


def _append_clause(prompt: str, clause: str) -> str:
    if clause.lower() in prompt.lower():
        return prompt
    base = prompt.rstrip(" .,;:")
    return f"{base}. {clause}" if base else clause


def split_safety_clauses(prompt: str) -> tuple[str, str]:
    """
    Split a sanitized prompt into its body and the safety clauses appended to it.

    Returns (body, clauses); clauses is empty when none trail the prompt.
    """
    body = prompt.rstrip()
    clauses: list[str] = []
    while True:
        for clause in SAFETY_CLAUSES:
            if body.endswith(clause):
                body = body[: -len(clause)].rstrip(" .")
                clauses.insert(0, clause)
                break
        else:
            return body, ". ".join(clauses)


class PromptSanitizer:
    """Applies the likeness-avoidance rewrite rules to image prompts."""

    def __init__(
        self, is_likely_identifying: Callable[[str], bool] = looks_like_identifiable_person
    ) -> None:
        self.is_likely_identifying = is_likely_identifying

    def sanitize(
        self,
        draft_prompt: str,
        requested_style: str,
        assessment: RiskAssessment | None = None,
    ) -> SanitizedPrompt:
        """
        Rewrite a draft image prompt so it avoids a direct likeness.

        Args:
            draft_prompt: Prompt as written by the descriptions stage
            requested_style: Image style the user asked for
            assessment: Classifier decision; a permissive one leaves the prompt alone

        Returns:
            The prompt to dispatch and the style to dispatch it with
        """
        if assessment is not None and assessment.can_use_likeness:
            return SanitizedPrompt(prompt=draft_prompt, style=requested_style)

        if not self.is_likely_identifying(draft_prompt):
            return SanitizedPrompt(prompt=draft_prompt, style=requested_style)

        style = requested_style
        prompt = _strip_likeness_phrasing(draft_prompt)

        if not self.is_likely_identifying(prompt):
            return SanitizedPrompt(prompt=prompt, style=style)

        if requested_style.strip().lower() in PHOTOREALISTIC_STYLES:
            prompt = _tidy(_PHOTOREALISTIC_RE.sub("illustration", prompt))
            prompt = _append_clause(prompt, NOT_A_LIKENESS_CLAUSE)
            style = SAFE_STYLE
        elif _ARTISTIC_RE.search(prompt) is None:
            prompt = _append_clause(prompt, ARTISTIC_CLAUSE)

        if self.is_likely_identifying(prompt):
            prompt = _SHOW_PERSON_RE.sub(CONTEXT_REWRITE, prompt)
            prompt = _append_clause(prompt, CONTEXT_CLAUSE)

        return SanitizedPrompt(prompt=prompt, style=style)
