"""
FastAPI Dependencies - Caller identity, admin authentication and services.

The core never authenticates end users: the identity collaborator in front of
this API forwards the user id in the X-User-Id header.
"""

import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from structlog import get_logger

from timeline_ai.config import Settings, get_settings
from timeline_ai.exceptions import AuthenticationError
from timeline_ai.services.container import ServiceContainer

logger = get_logger(__name__)


def get_services(request: Request) -> ServiceContainer:
    """Services built at startup (see main.lifespan)."""
    services: ServiceContainer | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


async def get_user_id(
    x_user_id: str = Header(..., min_length=1, max_length=255, description="Caller user id"),
) -> str:
    """Caller identity supplied by the identity collaborator."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header required",
        )
    return user_id


def validate_admin_key(provided: str | None, settings: Settings) -> None:
    """
    Check an admin API key against ADMIN_API_KEY.

    Raises:
        AuthenticationError: If admin access is disabled or the key is wrong
    """
    if not settings.admin_api_key:
        raise AuthenticationError("Admin API is disabled (ADMIN_API_KEY not set)")
    if not provided or not hmac.compare_digest(provided, settings.admin_api_key):
        raise AuthenticationError("Invalid admin API key")


async def require_admin_key(
    x_api_key: str | None = Header(None, description="Admin API key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    FastAPI dependency guarding admin endpoints (credit grants, prompt templates).

    Raises:
        HTTPException 401 if the key is missing or invalid
    """
    try:
        validate_admin_key(x_api_key, settings)
    except AuthenticationError as exc:
        logger.warning("admin_auth_failed", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc
