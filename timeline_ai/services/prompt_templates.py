"""
Prompt Templates - Built-in prompts and the mini template language.

Syntax:
- {{name}}                      substituted with the variable's value
- {{#if name}}...{{/if}}        kept only when the variable is truthy
- {{#each name}}...{{/each}}    repeated per item; {{@index}} is 1-based and
                                {{field}} reads the item's fields
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from timeline_ai.models.api import PromptStep
from timeline_ai.models.domain import StoredPromptTemplate

_IF_BLOCK_RE = re.compile(r"\{\{#if\s+(\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_EACH_BLOCK_RE = re.compile(r"\{\{#each\s+(\w+)\}\}(.*?)\{\{/each\}\}", re.DOTALL)
_VARIABLE_RE = re.compile(r"\{\{(\w+)\}\}")


def _render_each(block: str, items: Any) -> str:
    if not isinstance(items, (list, tuple)):
        return ""
    rendered = []
    for index, item in enumerate(items, start=1):
        content = block.replace("{{@index}}", str(index))
        if isinstance(item, Mapping):
            content = _VARIABLE_RE.sub(
                lambda m: str(item.get(m.group(1)) or "") if m.group(1) in item else m.group(0),
                content,
            )
        rendered.append(content)
    return "".join(rendered)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """
    Render a prompt template.

    Placeholders for variables that are absent or None are left untouched.
    """
    content = _IF_BLOCK_RE.sub(
        lambda m: m.group(2) if variables.get(m.group(1)) else "", template
    )
    content = _EACH_BLOCK_RE.sub(
        lambda m: _render_each(m.group(2), variables.get(m.group(1))), content
    )
    content = _VARIABLE_RE.sub(
        lambda m: (
            str(variables[m.group(1)])
            if variables.get(m.group(1)) is not None
            else m.group(0)
        ),
        content,
    )
    return content.strip()


@dataclass(frozen=True)
class PromptPair:
    """System and user prompt for one provider text call."""

    system: str
    user: str


# ============================================================================
# Built-in templates
# ============================================================================

EVENTS_SYSTEM_PROMPT = """\
You are a meticulous historian and timeline editor.
{{#if is_factual}}Only include events that really happened, with accurate dates. \
Never invent events or dates.{{/if}}
{{#if is_creative}}The timeline is fictional or speculative: invent plausible, \
internally consistent events.{{/if}}
Always answer with a JSON object of the form \
{"events": [{"year": 1953, "month": 6, "day": 2, "title": "..."}]}. \
Month and day are optional."""

EVENTS_USER_PROMPT = """\
Create a timeline titled "{{title}}".
Topic: {{description}}
Return at most {{max_events}} events in chronological order.
{{#if source_restrictions}}Only rely on these sources: {{source_restrictions}}.{{/if}}"""

DESCRIPTIONS_SYSTEM_PROMPT = """\
You write engaging timeline descriptions and matching image prompts.
Writing style: {{writing_style}}.
{{#if cannot_use_likeness}}Image prompts must not depict real people's faces or \
likenesses: focus on historical setting, period-appropriate clothing, and symbolic \
elements.{{/if}}
{{#if can_use_likeness}}Real public figures may appear in image prompts when the \
event is newsworthy.{{/if}}
Answer with a JSON object: {"anchorStyle": "<shared visual style for every image>", \
"items": [{"description": "...", "imagePrompt": "..."}]} with exactly one item per \
event, in order."""

DESCRIPTIONS_USER_PROMPT = """\
Timeline: {{title}}
Topic: {{description}}
Image style: {{image_style}}{{#if theme_color}}, theme color {{theme_color}}{{/if}}
{{#if source_restrictions}}Only rely on these sources: {{source_restrictions}}.{{/if}}
Events ({{event_count}}):
{{#each events}}{{@index}}. {{label}}
{{/each}}"""

IMAGES_USER_PROMPT = """\
Create a {{image_style}} style image representing: {{event_title}}.\
{{#if event_description}} Context: {{event_description}}{{/if}}\
{{#if theme_color}} Theme color: {{theme_color}}{{/if}}"""

DEFAULT_TEMPLATES: dict[PromptStep, PromptPair] = {
    PromptStep.EVENTS: PromptPair(system=EVENTS_SYSTEM_PROMPT, user=EVENTS_USER_PROMPT),
    PromptStep.DESCRIPTIONS: PromptPair(
        system=DESCRIPTIONS_SYSTEM_PROMPT, user=DESCRIPTIONS_USER_PROMPT
    ),
    PromptStep.IMAGES: PromptPair(system="", user=IMAGES_USER_PROMPT),
}

RISK_SYSTEM_PROMPT = """\
You are a media-law analyst. Decide whether AI-generated images for a timeline may \
depict the likeness of real, identifiable people. Apply three tests:
1. Newsworthiness: is the subject a matter of public interest (politics, deaths, \
trials, awards, disasters, major public events)?
2. Transformative use: does the work add commentary, history or education rather \
than trading on the person's fame?
3. Right of publicity: would the images suggest endorsement or commercial \
exploitation of the person's identity?
When in doubt, do not allow likenesses.
Answer with a JSON object:
{"overallRiskAssessment": {"canUseLikeness": false, "riskLevel": "Low|Medium|High", \
"recommendation": "..."},
 "rightOfPublicityAnalysis": {"justification": "..."},
 "inferredAttributes": {"subjects": ["..."], "format": "...", "useOfLikeness": "...", \
"useOfCopyrightedMaterial": "...", "framing": "..."}}"""

RISK_USER_PROMPT = """\
Timeline title: {{title}}
Timeline description: {{description}}"""


def resolve_prompts(step: PromptStep, stored: StoredPromptTemplate | None) -> PromptPair:
    """Stored template fields win; missing fields fall back to the built-in default."""
    default = DEFAULT_TEMPLATES[step]
    if stored is None:
        return default
    return PromptPair(
        system=stored.system_prompt if stored.system_prompt else default.system,
        user=stored.user_prompt if stored.user_prompt else default.user,
    )
