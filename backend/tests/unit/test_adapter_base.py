"""
Unit tests for the PlatformAdapter contract.

Tests cover:
- Capability declaration and UnsupportedOperationError
- Connection state machine transitions
- Single-flight token refresh and the refresh-once-on-401 retry
- Cursor-ordered pagination
- Payload fragments and deep_merge
- Status lookups with conservative defaults

Version: 1.0.0
"""
import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock

from platform_bridge.adapters.base import (
    Page,
    PlatformAdapter,
    PlatformCredentials,
    TokenManager,
    TokenResponse,
    deep_merge,
    lookup_status,
)
from platform_bridge.core.exceptions import (
    AuthenticationError,
    InvalidStateTransitionError,
    UnsupportedOperationError,
    ValidationError,
)
from platform_bridge.schemas.canonical import (
    CanonicalInventory,
    CanonicalOrder,
    CanonicalProduct,
    Capability,
    ConnectionStatus,
    FulfillmentStatus,
    Platform,
)

pytestmark = pytest.mark.unit


class DummyAdapter(PlatformAdapter):
    """Minimal adapter over a fake host; products and inventory only."""

    platform = Platform.SHOPIFY
    capabilities = frozenset({Capability.PRODUCTS, Capability.INVENTORY})
    TOPIC_MAP = {"order.created": "orders/create"}
    refreshable = True

    def __init__(self, *args, refresher=None, **kwargs):
        self._refresher = refresher
        super().__init__(*args, **kwargs)

    def base_url(self):
        return "https://dummy.test"

    async def _refresh_access_token(self, refresh_token):
        return await self._refresher(refresh_token)

    async def _probe(self):
        data = await self._call("GET", "/shop")
        return data["name"]

    def get_auth_url(self, state, redirect_uri=None, scopes=None):
        return f"https://dummy.test/authorize?state={state}"

    async def _fetch_products_page(self, cursor, **filters):
        data = await self._call("GET", "/products", params={"cursor": cursor or ""})
        return Page(items=[self.transform_to_canonical_product(p) for p in data["items"]], next_cursor=data.get("next"))

    def product_payload_fragments(self, product):
        return {
            "title": {"title": product.title},
            "price": {"variants": [{"price": str(product.price)}]},
            "sku": {"variants": [{"sku": product.sku}]},
        }

    def transform_to_canonical_product(self, raw):
        return CanonicalProduct(platform=self.platform, platform_id=str(raw["id"]), title=raw.get("title", ""))

    def transform_to_canonical_inventory(self, raw):
        return CanonicalInventory(platform=self.platform, quantity=raw.get("qty", 0))

    def transform_to_canonical_order(self, raw):
        return CanonicalOrder(platform=self.platform)


def _adapter(handler=None, test_settings=None, limiter=None, refresher=None, **creds):
    credentials = PlatformCredentials(platform=Platform.SHOPIFY, access_token="old", **creds)
    transport = httpx.MockTransport(handler or (lambda r: httpx.Response(200, json={})))
    return DummyAdapter(
        credentials,
        test_settings,
        limiter=limiter,
        transport=transport,
        sleep=AsyncMock(),
        refresher=refresher,
    )


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class TestCapabilities:

    def test_supports(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        assert adapter.supports(Capability.PRODUCTS) is True
        assert adapter.supports(Capability.CUSTOMERS) is False

    @pytest.mark.asyncio
    async def test_missing_capability_raises_unsupported(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        with pytest.raises(UnsupportedOperationError) as exc_info:
            await adapter.get_customers()
        assert exc_info.value.operation == "get_customers"
        assert exc_info.value.kind == "unsupported_operation"

    @pytest.mark.asyncio
    async def test_unsupported_orders(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        with pytest.raises(UnsupportedOperationError):
            await adapter.get_orders()

    @pytest.mark.asyncio
    async def test_negative_inventory_rejected(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        with pytest.raises(ValidationError):
            await adapter.update_inventory("p1", -1)

    def test_credentials_for_other_platform_rejected(self, test_settings, limiter):
        with pytest.raises(ValidationError):
            DummyAdapter(PlatformCredentials(platform=Platform.EBAY), test_settings, limiter=limiter)


# ---------------------------------------------------------------------------
# Connection state machine
# ---------------------------------------------------------------------------

class TestConnectionState:

    @pytest.mark.asyncio
    async def test_successful_probe_connects(self, test_settings, limiter):
        adapter = _adapter(lambda r: httpx.Response(200, json={"name": "Dummy"}), test_settings, limiter)
        result = await adapter.test_connection()

        assert result.success is True
        assert result.status == ConnectionStatus.CONNECTED
        assert "Dummy" in result.message

    @pytest.mark.asyncio
    async def test_failed_probe_moves_to_error(self, test_settings, limiter):
        adapter = _adapter(lambda r: httpx.Response(500, json={"message": "boom"}), test_settings, limiter)
        result = await adapter.test_connection()

        assert result.success is False
        assert result.status == ConnectionStatus.ERROR
        assert result.error_kind == "platform_api_error"

    @pytest.mark.asyncio
    async def test_error_can_reconnect(self, test_settings, limiter):
        adapter = _adapter(lambda r: httpx.Response(200, json={"name": "Dummy"}), test_settings, limiter)
        adapter.status = ConnectionStatus.ERROR
        result = await adapter.test_connection()
        assert result.status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_disconnected_reconnects_through_pending(self, test_settings, limiter):
        adapter = _adapter(lambda r: httpx.Response(200, json={"name": "Dummy"}), test_settings, limiter)
        adapter.status = ConnectionStatus.DISCONNECTED
        result = await adapter.test_connection()
        assert result.status == ConnectionStatus.CONNECTED

    def test_pending_cannot_disconnect(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        with pytest.raises(InvalidStateTransitionError):
            adapter.disconnect()

    def test_connected_can_disconnect(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        adapter.transition(ConnectionStatus.CONNECTED)
        adapter.disconnect()
        assert adapter.status == ConnectionStatus.DISCONNECTED

    def test_disconnected_cannot_jump_to_connected(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        adapter.status = ConnectionStatus.DISCONNECTED
        with pytest.raises(InvalidStateTransitionError):
            adapter.transition(ConnectionStatus.CONNECTED)


# ---------------------------------------------------------------------------
# Token refresh
# ---------------------------------------------------------------------------

class TestTokenManager:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        credentials = PlatformCredentials(
            platform=Platform.AMAZON, access_token="old", refresh_token="r", expires_at=0
        )

        async def refresher(refresh_token):
            await asyncio.sleep(0)
            return TokenResponse(access_token="new", expires_in=3600)

        mock_refresher = AsyncMock(side_effect=refresher)
        manager = TokenManager(credentials, mock_refresher, clock=lambda: 1000.0)

        tokens = await asyncio.gather(*(manager.get_access_token() for _ in range(5)))

        assert tokens == ["new"] * 5
        assert mock_refresher.await_count == 1
        assert manager.refresh_count == 1

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self):
        credentials = PlatformCredentials(
            platform=Platform.AMAZON, access_token="tok", refresh_token="r", expires_at=5000
        )
        refresher = AsyncMock()
        manager = TokenManager(credentials, refresher, clock=lambda: 1000.0)

        assert await manager.get_access_token() == "tok"
        refresher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_keyed_on_stale_token(self):
        credentials = PlatformCredentials(
            platform=Platform.AMAZON, access_token="already-new", refresh_token="r", expires_at=5000
        )
        refresher = AsyncMock()
        manager = TokenManager(credentials, refresher, clock=lambda: 1000.0)

        assert await manager.refresh(stale_token="old") == "already-new"
        refresher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_token_without_refresh(self):
        manager = TokenManager(PlatformCredentials(platform=Platform.SHOPIFY))
        with pytest.raises(AuthenticationError):
            await manager.get_access_token()

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self, test_settings, limiter):
        seen = []

        def handler(request):
            token = request.headers.get("Authorization")
            seen.append(token)
            if token == "Bearer old":
                return httpx.Response(401, json={"message": "expired"})
            return httpx.Response(200, json={"name": "Dummy"})

        refresher = AsyncMock(return_value=TokenResponse(access_token="new", expires_in=3600))
        adapter = _adapter(handler, test_settings, limiter, refresher=refresher, refresh_token="r")

        assert await adapter._probe() == "Dummy"
        assert seen == ["Bearer old", "Bearer new"]
        refresher.assert_awaited_once_with("r")

    @pytest.mark.asyncio
    async def test_second_401_propagates(self, test_settings, limiter):
        refresher = AsyncMock(return_value=TokenResponse(access_token="new"))
        adapter = _adapter(
            lambda r: httpx.Response(401, json={"message": "revoked"}),
            test_settings, limiter, refresher=refresher, refresh_token="r",
        )
        with pytest.raises(AuthenticationError):
            await adapter._probe()
        assert refresher.await_count == 1


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class TestPagination:

    @pytest.mark.asyncio
    async def test_pages_requested_in_cursor_order(self, test_settings, limiter):
        pages = {
            "": {"items": [{"id": 1}, {"id": 2}], "next": "c2"},
            "c2": {"items": [{"id": 3}], "next": "c3"},
            "c3": {"items": [{"id": 4}]},
        }
        cursors = []

        def handler(request):
            cursor = request.url.params.get("cursor", "")
            cursors.append(cursor)
            return httpx.Response(200, json=pages[cursor])

        adapter = _adapter(handler, test_settings, limiter)
        products = await adapter.get_products()

        assert cursors == ["", "c2", "c3"]
        assert [p.platform_id for p in products] == ["1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_max_pages(self, test_settings, limiter):
        def handler(request):
            return httpx.Response(200, json={"items": [{"id": 1}], "next": "again-" + request.url.params.get("cursor", "")})

        adapter = _adapter(handler, test_settings, limiter)
        products = await adapter.get_products(max_pages=2)
        assert len(products) == 2

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops(self, test_settings, limiter):
        adapter = _adapter(
            lambda r: httpx.Response(200, json={"items": [{"id": 1}], "next": "same"}), test_settings, limiter
        )
        products = await adapter.get_products()
        assert len(products) == 2


# ---------------------------------------------------------------------------
# Payload building and lookups
# ---------------------------------------------------------------------------

class TestPayloads:

    def test_fragments_merge_into_one_variant(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        product = CanonicalProduct(platform=Platform.SHOPIFY, title="Hat", sku="H-1", price=9.5)

        payload = adapter.transform_from_canonical_product(product)

        assert payload == {"title": "Hat", "variants": [{"price": "9.5", "sku": "H-1"}]}

    def test_fragments_limited_to_fields(self, test_settings, limiter):
        adapter = _adapter(test_settings=test_settings, limiter=limiter)
        product = CanonicalProduct(platform=Platform.SHOPIFY, title="Hat", price=9.5)

        assert adapter.transform_from_canonical_product(product, {"title"}) == {"title": "Hat"}

    def test_deep_merge_nested(self):
        merged = deep_merge({"a": {"b": 1}, "c": 1}, {"a": {"d": 2}, "c": 2})
        assert merged == {"a": {"b": 1, "d": 2}, "c": 2}

    def test_lookup_status_default(self):
        table = {"shipped": FulfillmentStatus.FULFILLED}
        assert lookup_status(table, "Shipped", FulfillmentStatus.UNFULFILLED) == FulfillmentStatus.FULFILLED
        assert lookup_status(table, "mystery", FulfillmentStatus.UNFULFILLED) == FulfillmentStatus.UNFULFILLED
        assert lookup_status(table, None, FulfillmentStatus.UNFULFILLED) == FulfillmentStatus.UNFULFILLED

    def test_topic_maps(self):
        assert DummyAdapter.to_platform_topic("order.created") == "orders/create"
        assert DummyAdapter.to_canonical_topic("orders/create") == "order.created"
        assert DummyAdapter.to_canonical_topic("weird/topic") == "weird/topic"
        with pytest.raises(ValidationError):
            DummyAdapter.to_platform_topic("product.deleted")
