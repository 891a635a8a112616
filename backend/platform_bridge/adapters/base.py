"""
Adapter contract — the interface every platform adapter implements.

Each adapter class declares a capability set. Public methods check
membership before doing any work, so an operation a platform genuinely
cannot perform raises UnsupportedOperationError instead of returning
empty or partial data. Callers can also check ``supports()`` up front.

Shared plumbing lives here:
- PlatformCredentials / TokenResponse and single-flight token refresh
- connection state machine (pending, connected, disconnected, error)
- cursor-ordered pagination over per-adapter page fetchers
- topic translation between canonical and platform vocabularies
Version: 1.0.0
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from platform_bridge.clients.platform_http import PlatformHttpClient, json_body
from platform_bridge.core.config import Settings, get_settings
from platform_bridge.core.exceptions import (
    AuthenticationError,
    InvalidStateTransitionError,
    PlatformAPIError,
    PlatformBridgeError,
    UnsupportedOperationError,
    ValidationError,
)
from platform_bridge.schemas.canonical import (
    CanonicalCustomer,
    CanonicalInventory,
    CanonicalOrder,
    CanonicalProduct,
    Capability,
    ConnectionStatus,
    FinancialStatus,
    FulfillmentStatus,
    Platform,
)
from platform_bridge.utils.rate_limiter import build_rate_limiter

logger = logging.getLogger("platform_adapter")

TOKEN_EXPIRY_SKEW = 60  # refresh a minute before the platform would reject the token

# Canonical webhook topic vocabulary
PRODUCT_TOPICS = ("product.created", "product.updated", "product.deleted")
ORDER_TOPICS = ("order.created", "order.updated", "order.paid", "order.fulfilled", "order.cancelled")
CUSTOMER_TOPICS = ("customer.created", "customer.updated", "customer.deleted")
COMPLIANCE_TOPICS = frozenset({"customer.data_request", "customer.redact", "shop.redact", "account.deleted"})
CANONICAL_TOPICS = frozenset(
    PRODUCT_TOPICS + ORDER_TOPICS + CUSTOMER_TOPICS + ("inventory.updated", "app.uninstalled")
) | COMPLIANCE_TOPICS


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class PlatformCredentials(BaseModel):
    """
    Per-merchant credential set. Mutated in place by token refresh; this is
    the only state concurrent adapter calls share.
    """
    platform: Platform
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None

    # App credentials, falling back to settings when absent
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    # Merchant identity, per platform
    shop_domain: Optional[str] = None
    store_hash: Optional[str] = None
    store_url: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    seller_id: Optional[str] = None
    marketplace_id: Optional[str] = None
    region: Optional[str] = None
    sandbox: bool = False

    extra: Dict[str, Any] = Field(default_factory=dict)

    def apply_token(self, token: TokenResponse, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self.access_token = token.access_token
        if token.refresh_token:
            self.refresh_token = token.refresh_token
        self.expires_at = now + token.expires_in if token.expires_in else None
        if token.scope:
            self.scope = token.scope


class Page(BaseModel):
    items: List[Any] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class ConnectionTestResult(BaseModel):
    success: bool
    status: ConnectionStatus
    message: str = ""
    error_kind: Optional[str] = None


class WebhookSubscription(BaseModel):
    id: str
    platform: Platform
    topic: str
    platform_topic: str
    address: str
    active: bool = True


class FulfillmentLine(BaseModel):
    line_item_id: str
    quantity: int = Field(1, ge=1)


class FulfillmentRequest(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    shipped_at: Optional[str] = None
    notify_customer: bool = True
    # Empty means fulfil every line item in full
    line_items: List[FulfillmentLine] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Token refresh
# ---------------------------------------------------------------------------

class TokenManager:
    """
    Serializes token refresh per credential set.

    Concurrent callers that find the token expired wait on one lock; the
    first performs the refresh and the rest reuse its result.
    """

    def __init__(
        self,
        credentials: PlatformCredentials,
        refresher: Optional[Callable[[str], Awaitable[TokenResponse]]] = None,
        skew: float = TOKEN_EXPIRY_SKEW,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self._refresher = refresher
        self._skew = skew
        self._clock = clock
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def can_refresh(self) -> bool:
        return self._refresher is not None and bool(self.credentials.refresh_token)

    def is_expired(self) -> bool:
        expires_at = self.credentials.expires_at
        return expires_at is not None and self._clock() >= expires_at - self._skew

    async def get_access_token(self) -> str:
        token = self.credentials.access_token
        if self.can_refresh and (not token or self.is_expired()):
            await self.refresh(stale_token=token)
        if not self.credentials.access_token:
            raise AuthenticationError(
                f"no access token for {self.credentials.platform.value}",
                platform=self.credentials.platform.value,
            )
        return self.credentials.access_token

    async def refresh(self, stale_token: Optional[str]) -> str:
        """Refresh unless another caller already replaced ``stale_token``."""
        if not self.can_refresh:
            raise AuthenticationError(
                f"{self.credentials.platform.value} credentials cannot be refreshed",
                platform=self.credentials.platform.value,
            )
        async with self._lock:
            current = self.credentials.access_token
            if current and current != stale_token and not self.is_expired():
                return current
            logger.info("refreshing access token platform=%s", self.credentials.platform.value)
            response = await self._refresher(self.credentials.refresh_token)
            self.credentials.apply_token(response, now=self._clock())
            self.refresh_count += 1
            return self.credentials.access_token


# ---------------------------------------------------------------------------
# Helpers shared by adapters
# ---------------------------------------------------------------------------

def deep_merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive merge; lists of dicts are merged position by position."""
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = deep_merge(current, value)
        elif _is_dict_list(value) and _is_dict_list(current):
            combined = []
            for i in range(max(len(current), len(value))):
                left = current[i] if i < len(current) else {}
                right = value[i] if i < len(value) else {}
                combined.append(deep_merge(left, right))
            merged[key] = combined
        else:
            merged[key] = value
    return merged


def _is_dict_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(v, Mapping) for v in value)


def lookup_status(table: Mapping[Any, Any], code: Any, default: Any) -> Any:
    """Explicit table lookup with a documented conservative default."""
    if code is None:
        return default
    key = code.strip().lower() if isinstance(code, str) else code
    return table.get(key, default)


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------

class PlatformAdapter(ABC):
    platform: Platform
    capabilities: FrozenSet[Capability] = frozenset()

    # canonical topic -> platform topic; reverse lookup is derived
    TOPIC_MAP: Mapping[str, str] = {}

    # pending -> connected | error; connected -> disconnected | error;
    # error -> connected | error; disconnected -> pending
    ALLOWED_TRANSITIONS: Mapping[ConnectionStatus, FrozenSet[ConnectionStatus]] = {
        ConnectionStatus.PENDING: frozenset({ConnectionStatus.CONNECTED, ConnectionStatus.ERROR}),
        ConnectionStatus.CONNECTED: frozenset(
            {ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED, ConnectionStatus.ERROR}
        ),
        ConnectionStatus.ERROR: frozenset({ConnectionStatus.CONNECTED, ConnectionStatus.ERROR}),
        ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.PENDING}),
    }

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        reverse: Dict[str, str] = {}
        for canonical, native in cls.TOPIC_MAP.items():
            reverse.setdefault(native, canonical)
        cls._REVERSE_TOPIC_MAP = reverse

    def __init__(
        self,
        credentials: PlatformCredentials,
        settings: Optional[Settings] = None,
        *,
        status: ConnectionStatus = ConnectionStatus.PENDING,
        limiter=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if credentials.platform != self.platform:
            raise ValidationError(
                f"{credentials.platform.value} credentials given to {self.platform.value} adapter",
                platform=self.platform.value,
            )
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.status = status
        self._transport = transport
        self._sleep = sleep
        self._limiter = limiter or build_rate_limiter(
            self.platform.value, self.settings, scope=self.rate_limit_scope()
        )
        self.http = PlatformHttpClient(
            self.platform.value,
            self.base_url(),
            headers=self.default_headers(),
            timeout=self.settings.http_timeout_seconds,
            limiter=self._limiter,
            default_retry_delay=self.settings.rate_limit_default_delay_seconds,
            transport=transport,
            sleep=sleep,
        )
        self.tokens = TokenManager(credentials, self._refresh_access_token if self.refreshable else None)

    # -- Platform plumbing --------------------------------------------------

    refreshable = False

    @abstractmethod
    def base_url(self) -> str:
        ...

    def default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def rate_limit_scope(self) -> Optional[str]:
        return None

    async def _auth_kwargs(self) -> Dict[str, Any]:
        token = await self.tokens.get_access_token()
        return {"headers": self.auth_headers(token)}

    async def _refresh_access_token(self, refresh_token: str) -> TokenResponse:
        raise UnsupportedOperationError(self.platform.value, "token refresh")

    @property
    def detail_concurrency(self) -> int:
        return self.settings.detail_fetch_concurrency

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Authorized request; a 401 on refreshable credentials triggers one refresh and retry."""
        extra_headers = kwargs.pop("headers", None) or {}
        auth = await self._auth_kwargs()
        stale_token = self.credentials.access_token
        try:
            return await self.http.request(
                method, path, headers={**extra_headers, **auth.get("headers", {})}, auth=auth.get("auth"), **kwargs
            )
        except AuthenticationError:
            if not self.tokens.can_refresh:
                raise
            logger.info("%s token rejected, refreshing once path=%s", self.platform.value, path)
            await self.tokens.refresh(stale_token=stale_token)
            auth = await self._auth_kwargs()
            return await self.http.request(
                method, path, headers={**extra_headers, **auth.get("headers", {})}, auth=auth.get("auth"), **kwargs
            )

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        return json_body(await self._request(method, path, **kwargs))

    async def _delete_idempotent(self, path: str, **kwargs) -> bool:
        """DELETE where 'already gone' counts as success."""
        try:
            await self._request("DELETE", path, **kwargs)
        except PlatformAPIError as exc:
            if exc.not_found:
                logger.info("%s delete already gone path=%s", self.platform.value, path)
                return True
            raise
        return True

    # -- Capabilities -------------------------------------------------------

    @classmethod
    def supports(cls, capability: Capability) -> bool:
        return capability in cls.capabilities

    def require(self, capability: Capability, operation: str) -> None:
        if capability not in self.capabilities:
            raise UnsupportedOperationError(self.platform.value, operation)

    # -- Connection state ---------------------------------------------------

    def transition(self, target: ConnectionStatus) -> None:
        allowed = self.ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidStateTransitionError(self.status.value, target.value, platform=self.platform.value)
        if target != self.status:
            logger.info("%s connection %s -> %s", self.platform.value, self.status.value, target.value)
        self.status = target

    @abstractmethod
    async def _probe(self) -> str:
        """Cheapest authenticated call; returns a human-readable store name."""

    async def test_connection(self) -> ConnectionTestResult:
        if self.status == ConnectionStatus.DISCONNECTED:
            self.transition(ConnectionStatus.PENDING)
        try:
            name = await self._probe()
        except PlatformBridgeError as exc:
            self.transition(ConnectionStatus.ERROR)
            return ConnectionTestResult(
                success=False, status=self.status, message=str(exc), error_kind=exc.kind
            )
        self.transition(ConnectionStatus.CONNECTED)
        return ConnectionTestResult(success=True, status=self.status, message=f"Connected to {name}")

    def disconnect(self) -> None:
        self.transition(ConnectionStatus.DISCONNECTED)

    # -- OAuth --------------------------------------------------------------

    @abstractmethod
    def get_auth_url(self, state: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None) -> str:
        ...

    async def exchange_code_for_token(self, code: str, redirect_uri: Optional[str] = None, **params) -> TokenResponse:
        self.require(Capability.OAUTH_CODE_EXCHANGE, "exchange_code_for_token")
        if not code:
            raise ValidationError("authorization code is required", platform=self.platform.value)
        token = await self._exchange_code(code, redirect_uri, **params)
        self.credentials.apply_token(token)
        return token

    async def _exchange_code(self, code: str, redirect_uri: Optional[str], **params) -> TokenResponse:
        raise UnsupportedOperationError(self.platform.value, "exchange_code_for_token")

    # -- Pagination ---------------------------------------------------------

    async def iter_pages(
        self,
        fetch_page: Callable[..., Awaitable[Page]],
        max_pages: Optional[int] = None,
        **filters,
    ) -> AsyncIterator[Page]:
        """Walk pages strictly in cursor order; each cursor comes from the previous page."""
        cursor: Optional[str] = None
        seen = set()
        pages = 0
        while True:
            page = await fetch_page(cursor, **filters)
            pages += 1
            yield page
            if not page.next_cursor or (max_pages is not None and pages >= max_pages):
                return
            if page.next_cursor in seen:
                logger.warning("%s pagination cursor repeated, stopping cursor=%s", self.platform.value, page.next_cursor)
                return
            seen.add(page.next_cursor)
            cursor = page.next_cursor

    async def _collect(self, fetch_page, max_pages: Optional[int] = None, **filters) -> list:
        items: list = []
        async for page in self.iter_pages(fetch_page, max_pages=max_pages, **filters):
            items.extend(page.items)
        return items

    # -- Products -----------------------------------------------------------

    async def get_products(self, max_pages: Optional[int] = None, **filters) -> List[CanonicalProduct]:
        self.require(Capability.PRODUCTS, "get_products")
        return await self._collect(self._fetch_products_page, max_pages, **filters)

    async def get_product(self, product_id: str) -> CanonicalProduct:
        self.require(Capability.PRODUCTS, "get_product")
        return await self._get_product(product_id)

    async def create_product(self, product: CanonicalProduct) -> CanonicalProduct:
        """Create, or update the existing listing with the same SKU."""
        self.require(Capability.PRODUCTS, "create_product")
        return await self._create_product(product)

    async def update_product(self, product_id: str, updates: Mapping[str, Any]) -> CanonicalProduct:
        self.require(Capability.PRODUCTS, "update_product")
        unknown = set(updates) - set(CanonicalProduct.model_fields)
        if unknown:
            raise ValidationError(f"unknown product fields: {sorted(unknown)}", platform=self.platform.value)
        fields = {k: v for k, v in updates.items() if k != "platform"}
        try:
            patch = CanonicalProduct(platform=self.platform, **fields)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid product update: {exc}", platform=self.platform.value) from exc
        return await self._update_product(product_id, patch, set(fields))

    async def delete_product(self, product_id: str) -> bool:
        self.require(Capability.PRODUCTS, "delete_product")
        return await self._delete_product(product_id)

    def transform_from_canonical_product(
        self, product: CanonicalProduct, fields: Optional[set] = None
    ) -> Dict[str, Any]:
        """Platform payload built from the fragments for ``fields`` (all when None)."""
        fragments = self.product_payload_fragments(product)
        payload: Dict[str, Any] = {}
        for name, fragment in fragments.items():
            if fields is None or name in fields:
                payload = deep_merge(payload, fragment)
        return payload

    @abstractmethod
    def product_payload_fragments(self, product: CanonicalProduct) -> Dict[str, Dict[str, Any]]:
        """Canonical field name -> platform payload fragment."""

    @abstractmethod
    def transform_to_canonical_product(self, raw: Mapping[str, Any]) -> CanonicalProduct:
        ...

    # -- Inventory ----------------------------------------------------------

    async def get_inventory(self, product_ids: Optional[List[str]] = None) -> List[CanonicalInventory]:
        self.require(Capability.INVENTORY, "get_inventory")
        return await self._get_inventory(list(product_ids or []))

    async def update_inventory(
        self, product_id: str, quantity: int, variant_id: Optional[str] = None
    ) -> CanonicalInventory:
        """Set an absolute quantity, so retries are harmless."""
        self.require(Capability.INVENTORY, "update_inventory")
        if quantity < 0:
            raise ValidationError("inventory quantity cannot be negative", platform=self.platform.value)
        return await self._update_inventory(product_id, int(quantity), variant_id)

    @abstractmethod
    def transform_to_canonical_inventory(self, raw: Mapping[str, Any]) -> CanonicalInventory:
        ...

    # -- Orders -------------------------------------------------------------

    async def get_orders(self, max_pages: Optional[int] = None, **filters) -> List[CanonicalOrder]:
        self.require(Capability.ORDERS, "get_orders")
        return await self._collect(self._fetch_orders_page, max_pages, **filters)

    async def get_order(self, order_id: str) -> CanonicalOrder:
        self.require(Capability.ORDERS, "get_order")
        return await self._get_order(order_id)

    async def update_order_status(self, order_id: str, status: str) -> CanonicalOrder:
        self.require(Capability.ORDER_STATUS_UPDATE, "update_order_status")
        return await self._update_order_status(order_id, self.transform_from_canonical_order_status(status))

    async def fulfill_order(self, order_id: str, fulfillment: FulfillmentRequest) -> CanonicalOrder:
        """No-op when a fulfillment with the same tracking number already exists."""
        self.require(Capability.FULFILLMENT, "fulfill_order")
        return await self._fulfill_order(order_id, fulfillment)

    ORDER_STATUS_TO_PLATFORM: Mapping[str, Any] = {}

    def transform_from_canonical_order_status(self, status: str) -> Any:
        key = status.value if isinstance(status, (FinancialStatus, FulfillmentStatus)) else str(status)
        try:
            return self.ORDER_STATUS_TO_PLATFORM[key]
        except KeyError:
            raise ValidationError(
                f"{self.platform.value} has no order status for {key!r}", platform=self.platform.value
            )

    @abstractmethod
    def transform_to_canonical_order(self, raw: Mapping[str, Any]) -> CanonicalOrder:
        ...

    # -- Customers ----------------------------------------------------------

    async def get_customers(self, max_pages: Optional[int] = None, **filters) -> List[CanonicalCustomer]:
        self.require(Capability.CUSTOMERS, "get_customers")
        return await self._collect(self._fetch_customers_page, max_pages, **filters)

    async def get_customer(self, customer_id: str) -> CanonicalCustomer:
        self.require(Capability.CUSTOMERS, "get_customer")
        return await self._get_customer(customer_id)

    def transform_to_canonical_customer(self, raw: Mapping[str, Any]) -> CanonicalCustomer:
        self.require(Capability.CUSTOMERS, "transform_to_canonical_customer")
        return self._map_customer(raw)

    # -- Webhooks -----------------------------------------------------------

    @classmethod
    def to_platform_topic(cls, topic: str) -> str:
        try:
            return cls.TOPIC_MAP[topic]
        except KeyError:
            raise ValidationError(f"{cls.platform.value} has no webhook topic for {topic!r}", platform=cls.platform.value)

    @classmethod
    def to_canonical_topic(cls, platform_topic: str) -> str:
        """Unknown platform topics pass through unchanged."""
        return cls._REVERSE_TOPIC_MAP.get(platform_topic, platform_topic)

    async def register_webhook(self, topic: str, address: str) -> WebhookSubscription:
        """Reuses an existing subscription for the same topic and address."""
        self.require(Capability.WEBHOOKS, "register_webhook")
        return await self._register_webhook(topic, self.to_platform_topic(topic), address)

    async def unregister_webhook(self, subscription_id: str) -> bool:
        self.require(Capability.WEBHOOKS, "unregister_webhook")
        return await self._unregister_webhook(subscription_id)

    async def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        self.require(Capability.WEBHOOK_VERIFICATION, "verify_webhook_signature")
        # Lazy import: circular dependency avoidance
        from platform_bridge.utils.webhook_signatures import build_verifier

        verifier = build_verifier(self.platform, self.settings, transport=self._transport)
        if not verifier.has_signature(headers):
            return False
        return await verifier.verify(raw_body, headers)
