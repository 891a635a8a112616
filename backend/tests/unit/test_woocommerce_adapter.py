"""
Unit tests for the WooCommerce adapter.

Tests cover:
- Order status tables and sale-price mapping
- wc-auth callback parsing
- Basic auth and X-WP-TotalPages pagination
- Variable products fetch their variations
"""
import base64

import httpx
import pytest

from platform_bridge.adapters.base import FulfillmentRequest, PlatformCredentials
from platform_bridge.adapters.woocommerce import (
    WooCommerceAdapter,
    map_inventory,
    map_order,
    map_product,
    parse_auth_callback,
)
from platform_bridge.core.exceptions import AuthenticationError, ValidationError
from platform_bridge.schemas.canonical import (
    CanonicalProduct,
    Capability,
    FinancialStatus,
    FulfillmentStatus,
    Platform,
    ProductStatus,
)

pytestmark = pytest.mark.unit

API = "/wp-json/wc/v3"


@pytest.fixture
def adapter(test_settings, limiter, recorder, fake_sleep):
    credentials = PlatformCredentials(
        platform=Platform.WOOCOMMERCE,
        store_url="https://shop.example.com/",
        consumer_key="ck_test",
        consumer_secret="cs_test",
    )
    return WooCommerceAdapter(
        credentials, test_settings, limiter=limiter, transport=recorder.transport, sleep=fake_sleep
    )


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

class TestMapping:

    @pytest.mark.parametrize(
        "status,financial,fulfillment",
        [
            ("processing", FinancialStatus.PAID, FulfillmentStatus.UNFULFILLED),
            ("completed", FinancialStatus.PAID, FulfillmentStatus.FULFILLED),
            ("cancelled", FinancialStatus.VOIDED, FulfillmentStatus.CANCELLED),
            ("refunded", FinancialStatus.REFUNDED, FulfillmentStatus.UNFULFILLED),
            ("on-hold", FinancialStatus.PENDING, FulfillmentStatus.UNFULFILLED),
        ],
    )
    def test_order_status(self, status, financial, fulfillment):
        order = map_order({"id": 1, "status": status})
        assert order.financial_status == financial
        assert order.fulfillment_status == fulfillment

    def test_order_totals(self):
        order = map_order({
            "id": 12,
            "status": "processing",
            "total": "27.00",
            "total_tax": "2.00",
            "shipping_total": "5.00",
            "discount_total": "2.00",
            "line_items": [{"id": 1, "product_id": 3, "quantity": 2, "subtotal": "22.00", "total": "20.00"}],
            "billing": {"first_name": "Ada", "email": "ada@example.com"},
        })

        assert order.subtotal_price == 22.0
        assert order.totals_reconcile() is True
        assert order.line_items[0].price == 11.0
        assert order.line_items[0].discount == 2.0
        assert order.customer_email == "ada@example.com"

    def test_sale_price(self):
        product = map_product({
            "id": 3, "name": "Mug", "price": "8.00", "regular_price": "10.00", "on_sale": True, "status": "publish",
        })
        assert product.price == 8.0
        assert product.compare_at_price == 10.0
        assert product.status == ProductStatus.ACTIVE

    def test_no_compare_price_without_sale(self):
        product = map_product({"id": 3, "price": "10.00", "regular_price": "10.00", "on_sale": False})
        assert product.compare_at_price is None

    def test_variation_inventory_keeps_parent(self):
        record = map_inventory({"id": 31, "parent_id": 3, "sku": "MUG-R", "stock_quantity": 4})
        assert record.product_id == "3"
        assert record.variant_id == "31"
        assert record.quantity == 4

    def test_payload_puts_sale_under_regular(self, adapter):
        product = CanonicalProduct(platform=Platform.WOOCOMMERCE, price=8, compare_at_price=10)
        payload = adapter.transform_from_canonical_product(product, {"price"})
        assert payload == {"regular_price": "10.00", "sale_price": "8.00"}


class TestAuthCallback:

    def test_parse(self):
        state, fields = parse_auth_callback({
            "user_id": "st-1", "consumer_key": "ck", "consumer_secret": "cs", "key_permissions": "read_write",
        })
        assert state == "st-1"
        assert fields == {"consumer_key": "ck", "consumer_secret": "cs", "scope": "read_write"}

    def test_missing_keys(self):
        with pytest.raises(ValidationError):
            parse_auth_callback({"user_id": "st-1"})

    def test_auth_url_carries_state_as_user_id(self, adapter):
        url = adapter.get_auth_url("st-1")
        assert url.startswith("https://shop.example.com/wc-auth/v1/authorize?")
        assert "user_id=st-1" in url

    def test_store_url_required(self, test_settings, limiter):
        with pytest.raises(ValidationError):
            WooCommerceAdapter(PlatformCredentials(platform=Platform.WOOCOMMERCE), test_settings, limiter=limiter)


# ---------------------------------------------------------------------------
# HTTP flows
# ---------------------------------------------------------------------------

class TestFlows:

    @pytest.mark.asyncio
    async def test_basic_auth_and_total_pages(self, adapter, recorder):
        def orders(request):
            page = int(request.url.params["page"])
            return httpx.Response(200, json=[{"id": page, "status": "completed"}], headers={"X-WP-TotalPages": "2"})

        recorder.add("GET", f"{API}/orders", orders)
        orders_out = await adapter.get_orders()

        assert [o.platform_id for o in orders_out] == ["1", "2"]
        expected = "Basic " + base64.b64encode(b"ck_test:cs_test").decode()
        assert recorder.requests[0].headers["Authorization"] == expected

    @pytest.mark.asyncio
    async def test_variable_product_fetches_variations(self, adapter, recorder):
        recorder.add("GET", f"{API}/products", httpx.Response(
            200, json=[{"id": 3, "type": "variable", "name": "Mug"}, {"id": 4, "type": "simple", "name": "Cup"}],
            headers={"X-WP-TotalPages": "1"},
        ))
        recorder.add("GET", f"{API}/products/3/variations", httpx.Response(
            200, json=[{"id": 31, "sku": "MUG-R", "stock_quantity": 2, "attributes": [{"name": "Color", "option": "Red"}]}],
            headers={"X-WP-TotalPages": "1"},
        ))

        products = await adapter.get_products()

        assert products[0].has_variants is True
        assert products[0].variants[0].options == {"Color": "Red"}
        assert products[0].inventory_quantity == 2
        assert products[1].variants == []
        assert recorder.calls("GET", f"{API}/products/4/variations") == []

    @pytest.mark.asyncio
    async def test_update_variation_inventory(self, adapter, recorder):
        recorder.add("PUT", f"{API}/products/3/variations/31", {"id": 31, "sku": "MUG-R", "stock_quantity": 7})

        record = await adapter.update_inventory("3", 7, variant_id="31")

        assert recorder.json_of(recorder.requests[0]) == {"manage_stock": True, "stock_quantity": 7}
        assert record.product_id == "3"
        assert record.quantity == 7

    @pytest.mark.asyncio
    async def test_fulfill_adds_tracking_note_and_completes(self, adapter, recorder):
        recorder.add("GET", f"{API}/orders/12/notes", [])
        recorder.add("POST", f"{API}/orders/12/notes", {"id": 1})
        recorder.add("GET", f"{API}/orders/12", {"id": 12, "status": "processing"})
        recorder.add("PUT", f"{API}/orders/12", {"id": 12, "status": "completed"})

        order = await adapter.fulfill_order("12", FulfillmentRequest(tracking_number="TRK1", carrier="DHL"))

        note = recorder.json_of(recorder.calls("POST", f"{API}/orders/12/notes")[0])
        assert note["note"] == "Shipped via DHL: TRK1"
        assert order.fulfillment_status == FulfillmentStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_missing_keys_raise_authentication_error(self, test_settings, limiter, recorder):
        adapter = WooCommerceAdapter(
            PlatformCredentials(platform=Platform.WOOCOMMERCE, store_url="https://shop.example.com"),
            test_settings, limiter=limiter, transport=recorder.transport,
        )
        with pytest.raises(AuthenticationError):
            await adapter.get_order("1")
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_register_webhook_sends_secret(self, adapter, recorder):
        recorder.add("GET", f"{API}/webhooks", httpx.Response(200, json=[], headers={"X-WP-TotalPages": "1"}))
        recorder.add("POST", f"{API}/webhooks", {"id": 9, "status": "active"})

        sub = await adapter.register_webhook("order.created", "https://bridge.test/webhooks/woocommerce")

        body = recorder.json_of(recorder.calls("POST", f"{API}/webhooks")[0])
        assert body["secret"] == "woo-secret"
        assert body["topic"] == "order.created"
        assert sub.id == "9"

    def test_woocommerce_has_no_code_exchange(self, adapter):
        assert adapter.supports(Capability.OAUTH_CODE_EXCHANGE) is False
