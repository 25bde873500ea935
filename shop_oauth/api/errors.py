"""Error handling utilities for API endpoints."""

import logging

from fastapi import HTTPException
from pydantic import BaseModel

from shop_oauth.auth.errors import OAuthFlowError

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Consistent error response format for all API errors."""

    error: str  # User-friendly message
    code: str  # Machine-readable error code
    detail: str | None = None  # Optional technical detail
    correlation_id: str | None = None


class ErrorCode:
    """Machine-readable error codes."""

    # General errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # OAuth flow errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CSRF_FAILED = "CSRF_FAILED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    AUTH_CODE_EXPIRED = "AUTH_CODE_EXPIRED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"

    # Webhooks
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"


def create_error_response(
    status_code: int,
    error: str,
    code: str,
    detail: str | None = None,
    shop: str | None = None,
    endpoint: str | None = None,
    correlation_id: str | None = None,
    exc: Exception | None = None,
) -> HTTPException:
    """Create a consistent error response with logging."""
    log_context = {
        "error_code": code,
        "shop": shop,
        "endpoint": endpoint,
        "correlation_id": correlation_id,
    }

    if exc:
        logger.exception(
            "API error: %s (code=%s, shop=%s, endpoint=%s)",
            error,
            code,
            shop,
            endpoint,
            extra=log_context,
        )
    else:
        logger.warning(
            "API error: %s (code=%s, shop=%s, endpoint=%s)",
            error,
            code,
            shop,
            endpoint,
            extra=log_context,
        )

    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(
            error=error,
            code=code,
            detail=detail,
            correlation_id=correlation_id,
        ).model_dump(),
    )


def flow_error_response(
    error: OAuthFlowError,
    endpoint: str,
    shop: str | None = None,
    correlation_id: str | None = None,
) -> HTTPException:
    """Map an OAuth flow error to its HTTP response.

    Only ``user_message`` reaches the client; internal detail such as a
    CSRF reason or a provider description has already been logged by the
    controller.
    """
    return create_error_response(
        status_code=error.status_code,
        error=error.user_message,
        code=error.code,
        detail=f"step={error.step}" if error.step else None,
        shop=shop,
        endpoint=endpoint,
        correlation_id=correlation_id or error.correlation_id,
    )
