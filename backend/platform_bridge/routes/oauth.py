"""
OAuth routes — store connection handshake for every platform.

Provides:
- GET  /api/oauth/{platform}/authorize   – authorization URL plus a single-use state
- GET  /api/oauth/{platform}/callback    – code exchange, connection stored as connected
- POST /api/oauth/woocommerce/callback   – wc-auth key delivery

The ``shop`` parameter names the store where the platform needs one up
front: Shopify shop domain, WooCommerce site URL, or the seller id for
Amazon and eBay. It rides along in the state so the callback does not
have to trust a value echoed back by the browser.
Version: 1.0.0
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from platform_bridge.adapters.base import PlatformCredentials
from platform_bridge.adapters.registry import build_adapter, parse_platform
from platform_bridge.adapters.shopify import normalize_shop_domain, verify_callback_hmac
from platform_bridge.adapters.woocommerce import parse_auth_callback
from platform_bridge.container import get_connection_store, get_oauth_state_store
from platform_bridge.core.config import Settings, get_settings
from platform_bridge.core.exceptions import OAuthStateError, ValidationError
from platform_bridge.db.connection_store import ConnectionStore, account_key
from platform_bridge.schemas.canonical import ConnectionStatus, Platform
from platform_bridge.schemas.oauth import AuthorizeResponse, CallbackResponse
from platform_bridge.utils.oauth_state import OAuthStateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


def get_adapter_factory():
    return build_adapter


def _credentials(platform: Platform, shop: Optional[str]) -> PlatformCredentials:
    credentials = PlatformCredentials(platform=platform)
    if not shop:
        return credentials
    if platform == Platform.SHOPIFY:
        credentials.shop_domain = shop
    elif platform == Platform.WOOCOMMERCE:
        credentials.store_url = shop
    elif platform == Platform.BIGCOMMERCE:
        credentials.store_hash = shop
    else:
        credentials.seller_id = shop
    return credentials


def _same_shop(platform: Platform, issued: Optional[str], returned: Optional[str]) -> bool:
    if not issued or not returned:
        return True
    if platform == Platform.SHOPIFY:
        return normalize_shop_domain(issued) == normalize_shop_domain(returned)
    return issued.rstrip("/").lower() == returned.rstrip("/").lower()


@router.get("/{platform}/authorize", response_model=AuthorizeResponse)
async def authorize(
    platform: str,
    shop: Optional[str] = Query(None),
    states: OAuthStateStore = Depends(get_oauth_state_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Start the OAuth flow; the client redirects the merchant to authorization_url."""
    resolved = parse_platform(platform)
    adapter = adapter_factory(resolved, _credentials(resolved, shop))
    state = states.issue(resolved.value, {"shop": shop})
    logger.info("oauth authorize platform=%s shop=%s", resolved.value, shop)
    return AuthorizeResponse(authorization_url=adapter.get_auth_url(state), state=state)


@router.post("/woocommerce/callback", response_model=CallbackResponse)
async def woocommerce_callback(
    payload: Dict[str, Any] = Body(...),
    states: OAuthStateStore = Depends(get_oauth_state_store),
    connections: ConnectionStore = Depends(get_connection_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """wc-auth posts the generated REST keys here; user_id carries our state."""
    state, keys = parse_auth_callback(payload)
    issued = states.consume(Platform.WOOCOMMERCE.value, state)
    credentials = _credentials(Platform.WOOCOMMERCE, issued.get("shop"))
    credentials.consumer_key = keys["consumer_key"]
    credentials.consumer_secret = keys["consumer_secret"]
    credentials.scope = keys.get("scope")

    adapter = adapter_factory(Platform.WOOCOMMERCE, credentials)
    adapter.transition(ConnectionStatus.CONNECTED)
    await connections.upsert(adapter.credentials, adapter.status)
    logger.info("oauth connected platform=woocommerce shop=%s", adapter.credentials.store_url)
    return CallbackResponse(
        platform=Platform.WOOCOMMERCE, status=adapter.status, shop=account_key(adapter.credentials)
    )


@router.get("/{platform}/callback", response_model=CallbackResponse)
async def oauth_callback(
    platform: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    context: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    spapi_oauth_code: Optional[str] = Query(None),
    selling_partner_id: Optional[str] = Query(None),
    states: OAuthStateStore = Depends(get_oauth_state_store),
    connections: ConnectionStore = Depends(get_connection_store),
    adapter_factory=Depends(get_adapter_factory),
    settings: Settings = Depends(get_settings),
):
    """Exchange the authorization code and store the connection."""
    resolved = parse_platform(platform)
    if resolved == Platform.WOOCOMMERCE:
        raise ValidationError("WooCommerce delivers keys by POST to this callback", platform=resolved.value)

    if resolved == Platform.SHOPIFY:
        query = dict(request.query_params)
        if not verify_callback_hmac(query, settings.shopify_api_secret):
            raise OAuthStateError("Shopify callback hmac mismatch", platform=resolved.value)

    issued = states.consume(resolved.value, state)
    if not _same_shop(resolved, issued.get("shop"), shop):
        raise OAuthStateError("callback store does not match the authorized store", platform=resolved.value)

    adapter = adapter_factory(resolved, _credentials(resolved, issued.get("shop") or shop))
    params: Dict[str, Any] = {}
    if context:
        params["context"] = context
    if scope:
        params["scope"] = scope
    if selling_partner_id:
        params["selling_partner_id"] = selling_partner_id

    await adapter.exchange_code_for_token(code or spapi_oauth_code or "", **params)
    adapter.transition(ConnectionStatus.CONNECTED)
    await connections.upsert(adapter.credentials, adapter.status)

    key = account_key(adapter.credentials)
    logger.info("oauth connected platform=%s shop=%s", resolved.value, key)
    return CallbackResponse(platform=resolved, status=adapter.status, shop=key)
