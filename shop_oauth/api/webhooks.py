"""Shopify webhook handlers."""

import json
import logging

from fastapi import APIRouter, Depends, Request

from shop_oauth.api.deps import get_config, get_session_persister
from shop_oauth.api.errors import ErrorCode, create_error_response
from shop_oauth.api.schemas import WebhookAck
from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.controller import normalize_shop_domain
from shop_oauth.auth.sessions import SessionPersister
from shop_oauth.auth.signature import verify_webhook_hmac

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["webhooks"])


@router.post("/uninstall", response_model=WebhookAck)
async def shopify_uninstall_webhook(
    request: Request,
    config: OAuthConfig = Depends(get_config),
    persister: SessionPersister = Depends(get_session_persister),
) -> WebhookAck:
    """Handle Shopify app/uninstalled webhook by dropping the shop's sessions."""
    body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256", "")

    if not config.api_secret or not verify_webhook_hmac(body, hmac_header, config.api_secret):
        raise create_error_response(
            status_code=401,
            error="Invalid webhook signature",
            code=ErrorCode.INVALID_WEBHOOK_SIGNATURE,
            endpoint="webhooks/uninstall",
        )

    try:
        data = json.loads(body or b"{}")
    except ValueError:
        raise create_error_response(
            status_code=400,
            error="Invalid JSON payload",
            code=ErrorCode.VALIDATION_ERROR,
            endpoint="webhooks/uninstall",
        )

    if not isinstance(data, dict):
        data = {}
    shop = (
        data.get("myshopify_domain")
        or data.get("domain")
        or request.headers.get("X-Shopify-Shop-Domain")
    )
    if not shop:
        raise create_error_response(
            status_code=400,
            error="Missing shop domain in webhook",
            code=ErrorCode.VALIDATION_ERROR,
            endpoint="webhooks/uninstall",
        )

    shop = normalize_shop_domain(shop)
    deleted = persister.delete_by_shop(shop)
    logger.info("App uninstalled for shop: %s", shop)

    return WebhookAck(sessions_deleted=deleted)
