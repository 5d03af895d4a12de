"""
Generation Provider - Text and image generation capability.

The pipeline only depends on the GenerationProvider protocol; the
OpenAI-compatible HTTP adapter below is the production implementation.
"""

import base64
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from structlog import get_logger

from timeline_ai.exceptions import ProviderError
from timeline_ai.models.domain import GeneratedImage
from timeline_ai.services.prompt_sanitizer import split_safety_clauses

logger = get_logger(__name__)


def fit_image_prompt(prompt: str, style: str, max_chars: int) -> str:
    """
    Fold the style into the prompt and cut it to max_chars.

    Only the descriptive body is shortened; trailing safety clauses and the
    style line are always sent whole.
    """
    style_line = f"\n\nStyle: {style}" if style else ""
    full_prompt = f"{prompt}{style_line}"
    if len(full_prompt) <= max_chars:
        return full_prompt

    body, clauses = split_safety_clauses(prompt)
    if not clauses:
        return body[: max(max_chars - len(style_line), 0)].rstrip() + style_line

    room = max_chars - len(clauses) - len(style_line) - 2
    body = body[: max(room, 0)].rstrip(" .,;:")
    kept = f"{body}. {clauses}" if body else clauses
    return kept + style_line


class GenerationProvider(Protocol):
    """Opaque text and image generation capability."""

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
        """Return the model's text reply. Raises ProviderError on failure."""
        ...

    async def generate_image(
        self,
        prompt: str,
        style: str,
        reference_images: Sequence[str] = (),
    ) -> GeneratedImage:
        """Render one image. Raises ProviderError on failure."""
        ...


class OpenAICompatibleProvider:
    """Provider over any OpenAI-compatible chat completions / image generations API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        text_model: str = "gpt-4o-mini",
        image_model: str = "dall-e-3",
        image_size: str = "1024x1024",
        image_prompt_max_chars: int = 1000,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.text_model = text_model
        self.image_model = image_model
        self.image_size = image_size
        self.image_prompt_max_chars = image_prompt_max_chars
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.http_client.post(
                f"{self.base_url}{path}", json=payload, headers=self._headers()
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "provider_http_error",
                path=path,
                status=e.response.status_code,
                text=e.response.text[:500],
            )
            raise ProviderError(f"HTTP {e.response.status_code} from {path}", cause=e) from e
        except httpx.HTTPError as e:
            logger.error("provider_transport_error", path=path, error=str(e))
            raise ProviderError(f"Transport error calling {path}: {e}", cause=e) from e
        except ValueError as e:
            raise ProviderError(f"Invalid JSON body from {path}", cause=e) from e

        if not isinstance(body, dict):
            raise ProviderError(f"Unexpected response shape from {path}")
        return body

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
        """Run a chat completion and return the first choice's content."""
        payload: dict[str, Any] = {
            "model": model or self.text_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}

        body = await self._post("/chat/completions", payload)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Completion response has no content", cause=e) from e
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("Completion response has empty content")
        return content

    async def generate_image(
        self,
        prompt: str,
        style: str,
        reference_images: Sequence[str] = (),
    ) -> GeneratedImage:
        """Render one image; the style is folded into the prompt text."""
        if reference_images:
            # Image generations endpoints take text only
            logger.debug("reference_images_not_supported", count=len(reference_images))

        body = await self._post(
            "/images/generations",
            {
                "model": self.image_model,
                "prompt": fit_image_prompt(prompt, style, self.image_prompt_max_chars),
                "n": 1,
                "size": self.image_size,
            },
        )
        try:
            item = body["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Image response has no data", cause=e) from e

        if item.get("url"):
            return GeneratedImage(url=item["url"])
        if item.get("b64_json"):
            return GeneratedImage(data=base64.b64decode(item["b64_json"]))
        raise ProviderError("Image response has neither url nor b64_json")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
