"""
Webhook routes — inbound platform notifications.

Provides:
- POST /webhooks/{platform}  – signed delivery from Shopify, WooCommerce,
                               BigCommerce or eBay
- GET  /webhooks/ebay        – eBay endpoint validation challenge

Signatures are checked against the raw request body, so the body is read
as bytes and never through a pydantic model.
Version: 1.0.0
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from platform_bridge.adapters.registry import parse_platform
from platform_bridge.container import get_webhook_service
from platform_bridge.core.config import Settings, get_settings
from platform_bridge.core.exceptions import ValidationError
from platform_bridge.schemas.webhooks import EbayChallengeResponse, WebhookReceipt
from platform_bridge.services.webhook_service import WebhookIngestionService
from platform_bridge.utils.webhook_signatures import ebay_challenge_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("/ebay", response_model=EbayChallengeResponse)
async def ebay_endpoint_challenge(
    challenge_code: str = Query(...),
    settings: Settings = Depends(get_settings),
):
    """Answer eBay's GET validation with sha256(code + verification token + endpoint)."""
    if not settings.ebay_verification_token or not settings.ebay_notification_endpoint:
        raise HTTPException(status_code=404, detail="eBay notifications are not configured")
    return EbayChallengeResponse(
        challenge_response=ebay_challenge_response(
            challenge_code, settings.ebay_verification_token, settings.ebay_notification_endpoint
        )
    )


@router.post("/{platform}", response_model=WebhookReceipt)
async def receive_webhook(
    platform: str,
    request: Request,
    service: WebhookIngestionService = Depends(get_webhook_service),
):
    """Verify and ingest a webhook; acknowledged with 200 once authentic."""
    try:
        resolved = parse_platform(platform)
    except ValidationError:
        raise HTTPException(status_code=404, detail=f"Unknown platform: {platform}")
    if service.verifier_for(resolved) is None:
        raise HTTPException(status_code=404, detail=f"{resolved.value} does not deliver HTTP webhooks")

    raw_body = await request.body()
    return await service.ingest(resolved, request.headers, raw_body)
