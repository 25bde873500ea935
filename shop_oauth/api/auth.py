"""OAuth install endpoints."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from shop_oauth.api.deps import get_auth_controller, get_config, get_session_persister
from shop_oauth.api.errors import ErrorCode, create_error_response, flow_error_response
from shop_oauth.api.schemas import OAuthStatusResponse
from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.controller import (
    AuthController,
    AuthRedirect,
    normalize_shop_domain,
    validate_shop_domain,
)
from shop_oauth.auth.errors import OAuthFlowError
from shop_oauth.auth.sessions import SessionPersister, session_id_for

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _redirect(outcome: AuthRedirect) -> RedirectResponse:
    """Turn a controller outcome into a 302 with its cookie directives applied."""
    response = RedirectResponse(url=outcome.url, status_code=302)
    response.headers["X-Correlation-ID"] = outcome.correlation_id
    for cookie in outcome.cookies:
        if cookie.is_clear:
            response.delete_cookie(
                key=cookie.name,
                path=cookie.path,
                secure=cookie.secure,
                httponly=cookie.http_only,
                samesite=cookie.same_site,
            )
        else:
            response.set_cookie(
                key=cookie.name,
                value=cookie.value,
                max_age=cookie.max_age,
                path=cookie.path,
                secure=cookie.secure,
                httponly=cookie.http_only,
                samesite=cookie.same_site,
            )
    return response


@router.get("/auth/begin")
async def oauth_begin(
    request: Request,
    shop: str | None = Query(None, description="Shopify store domain (e.g., store.myshopify.com)"),
    controller: AuthController = Depends(get_auth_controller),
) -> RedirectResponse:
    """Start the OAuth install flow and redirect to the store's consent page."""
    try:
        outcome = controller.begin(
            shop,
            request_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except OAuthFlowError as e:
        raise flow_error_response(e, endpoint="auth/begin", shop=shop)

    return _redirect(outcome)


@router.get("/auth/callback")
async def oauth_callback(
    request: Request,
    controller: AuthController = Depends(get_auth_controller),
) -> RedirectResponse:
    """Finish the OAuth install flow from the store's redirect."""
    try:
        outcome = await controller.complete(request.url.query, dict(request.cookies))
    except OAuthFlowError as e:
        raise flow_error_response(
            e, endpoint="auth/callback", shop=request.query_params.get("shop")
        )

    return _redirect(outcome)


@router.get("/api/oauth/status", response_model=OAuthStatusResponse)
async def get_oauth_status(
    shop: str = Query(..., description="Shopify store domain"),
    config: OAuthConfig = Depends(get_config),
    persister: SessionPersister = Depends(get_session_persister),
) -> OAuthStatusResponse:
    """Get OAuth connection status for a shop."""
    normalized = normalize_shop_domain(shop)
    if not validate_shop_domain(normalized, config.shop_domain_suffixes):
        raise create_error_response(
            status_code=400,
            error="Invalid shop domain. Must be in format: store.myshopify.com",
            code=ErrorCode.VALIDATION_ERROR,
            shop=shop,
            endpoint="oauth/status",
        )

    session = persister.load(session_id_for(normalized, config.is_online))
    if session is None:
        return OAuthStatusResponse(shop=normalized, connected=False)

    return OAuthStatusResponse(
        shop=normalized,
        connected=True,
        is_online=session.is_online,
        scopes=session.scopes,
        installed_at=session.created_at.isoformat() if session.created_at else None,
        expires_at=session.expires_at.isoformat() if session.expires_at else None,
    )
