"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes so callers never parse messages.
"""

from timeline_ai.models.api import PipelineStage


class GenerationServiceError(Exception):
    """Base exception for all generation service errors."""

    pass


class InsufficientCreditsError(GenerationServiceError):
    """Raised when a user's balance cannot cover a chargeable action."""

    def __init__(
        self, required: int, available: int, stage: PipelineStage | None = None
    ) -> None:
        self.required = required
        self.available = available
        self.stage = stage
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )

    @property
    def shortfall(self) -> int:
        """Credits missing to cover the action."""
        return max(self.required - self.available, 0)


class ProviderError(GenerationServiceError):
    """Raised when the generation provider fails or returns unusable output."""

    def __init__(
        self,
        message: str,
        stage: PipelineStage | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = message
        self.stage = stage
        self.cause = cause
        prefix = f"[{stage.value}] " if stage else ""
        super().__init__(f"Provider error: {prefix}{message}")


class TemplateNotFoundError(GenerationServiceError):
    """Raised when a stored prompt template doesn't exist."""

    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Prompt template not found: {template_id}")


class AuthenticationError(GenerationServiceError):
    """Raised when authentication fails (missing or invalid admin key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
