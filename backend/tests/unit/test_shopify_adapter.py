"""
Unit tests for the Shopify adapter.

Tests cover:
- Pure mapping of products, orders, customers and inventory levels
- Link-header pagination
- Inventory set, fulfillment and webhook registration flows
- OAuth redirect HMAC
"""
import hashlib
import hmac
import logging

import httpx
import pytest

from platform_bridge.adapters.base import FulfillmentRequest, PlatformCredentials
from platform_bridge.adapters.shopify import (
    ShopifyAdapter,
    map_customer,
    map_order,
    map_product,
    next_page_info,
    normalize_shop_domain,
    verify_callback_hmac,
)
from platform_bridge.core.exceptions import ValidationError
from platform_bridge.schemas.canonical import (
    CanonicalProduct,
    FinancialStatus,
    FulfillmentStatus,
    Platform,
    ProductStatus,
)

pytestmark = pytest.mark.unit

API = "/admin/api/2024-10"


@pytest.fixture
def adapter(test_settings, limiter, recorder, fake_sleep):
    credentials = PlatformCredentials(platform=Platform.SHOPIFY, shop_domain="demo", access_token="shpat_test")
    return ShopifyAdapter(
        credentials, test_settings, limiter=limiter, transport=recorder.transport, sleep=fake_sleep
    )


def _product(**overrides):
    raw = {
        "id": 101,
        "title": "Canvas Tote",
        "body_html": "<p>Bag</p>",
        "vendor": "Acme",
        "tags": "bags, canvas",
        "status": "active",
        "handle": "canvas-tote",
        "options": [{"name": "Color"}],
        "variants": [
            {"id": 1, "product_id": 101, "title": "Red", "option1": "Red", "sku": "TOTE-R",
             "price": "20.00", "inventory_quantity": 3, "inventory_item_id": 9001, "inventory_management": "shopify"},
            {"id": 2, "product_id": 101, "title": "Blue", "option1": "Blue", "sku": "TOTE-B",
             "price": "22.00", "inventory_quantity": 4, "inventory_item_id": 9002},
        ],
        "images": [{"src": "https://cdn.test/1.png"}],
    }
    raw.update(overrides)
    return raw


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("my-store", "my-store.myshopify.com"),
            ("my-store.myshopify.com", "my-store.myshopify.com"),
            ("https://my-store.myshopify.com/", "my-store.myshopify.com"),
        ],
    )
    def test_normalize_shop_domain(self, raw, expected):
        assert normalize_shop_domain(raw) == expected

    def test_next_page_info(self):
        link = (
            '<https://demo.myshopify.com/admin/api/2024-10/products.json?limit=250&page_info=abc>; rel="previous", '
            '<https://demo.myshopify.com/admin/api/2024-10/products.json?limit=250&page_info=xyz>; rel="next"'
        )
        assert next_page_info(link) == "xyz"
        assert next_page_info(None) is None

    def test_callback_hmac(self):
        query = {"code": "c", "shop": "demo.myshopify.com", "state": "s", "timestamp": "1"}
        message = "code=c&shop=demo.myshopify.com&state=s&timestamp=1"
        query["hmac"] = hmac.new(b"secret", message.encode(), hashlib.sha256).hexdigest()

        assert verify_callback_hmac(query, "secret") is True
        assert verify_callback_hmac({**query, "state": "other"}, "secret") is False
        assert verify_callback_hmac(query, None) is False


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

class TestMapping:

    def test_product(self):
        product = map_product(_product(), "demo.myshopify.com")

        assert product.platform_id == "101"
        assert product.sku == "TOTE-R"
        assert product.price == 20.0
        assert product.inventory_quantity == 7
        assert product.has_variants is True
        assert product.tags == ["bags", "canvas"]
        assert product.status == ProductStatus.ACTIVE
        assert product.variants[1].options == {"Color": "Blue"}
        assert product.platform_url == "https://demo.myshopify.com/admin/products/101"

    def test_unknown_product_status_defaults_to_draft(self):
        assert map_product(_product(status="mystery")).status == ProductStatus.DRAFT

    def test_order(self):
        raw = {
            "id": 555,
            "name": "#1001",
            "email": "a@example.com",
            "financial_status": "partially_refunded",
            "fulfillment_status": None,
            "subtotal_price": "50.00",
            "total_tax": "4.00",
            "total_discounts": "5.00",
            "total_price": "54.00",
            "shipping_lines": [{"price": "5.00"}],
            "customer": {"id": 7, "first_name": "Ada", "last_name": "L"},
            "line_items": [{"id": 1, "product_id": 101, "quantity": 2, "price": "25.00", "total_discount": "5.00"}],
            "fulfillments": [{"tracking_number": "1Z", "tracking_company": "UPS", "created_at": "2024-01-02T00:00:00Z"}],
        }
        order = map_order(raw)

        assert order.financial_status == FinancialStatus.PAID
        assert order.fulfillment_status == FulfillmentStatus.UNFULFILLED
        assert order.total_shipping == 5.0
        assert order.totals_reconcile() is True
        assert order.customer_name == "Ada L"
        assert order.line_items[0].total_price == 45.0
        assert order.tracking_number == "1Z"
        assert order.carrier == "UPS"

    def test_cancelled_order(self):
        order = map_order({"id": 1, "cancelled_at": "2024-01-01T00:00:00Z", "fulfillment_status": "fulfilled"})
        assert order.fulfillment_status == FulfillmentStatus.CANCELLED

    def test_customer_marketing_consent(self):
        customer = map_customer({
            "id": 7,
            "orders_count": 2,
            "total_spent": "300.00",
            "email_marketing_consent": {"state": "subscribed", "opt_in_level": "single_opt_in"},
        })
        assert customer.accepts_marketing is True
        assert customer.average_order_value == 150.0
        assert customer.segment() == "Regular"

    def test_unreconciled_totals_logged(self, adapter, caplog):
        with caplog.at_level(logging.WARNING, logger="shopify_adapter"):
            adapter.transform_to_canonical_order({"id": 9, "subtotal_price": "10", "total_price": "99"})
        assert "do not reconcile" in caplog.text

    def test_payload_fragments(self, adapter):
        product = CanonicalProduct(platform=Platform.SHOPIFY, title="Hat", sku="H", price=5, tags=["a", "b"])
        payload = adapter.transform_from_canonical_product(product, {"title", "price", "tags"})
        assert payload == {"title": "Hat", "tags": "a, b", "variants": [{"price": "5.00"}]}

    def test_requires_shop_domain(self, test_settings, limiter):
        with pytest.raises(ValidationError):
            ShopifyAdapter(PlatformCredentials(platform=Platform.SHOPIFY), test_settings, limiter=limiter)


# ---------------------------------------------------------------------------
# HTTP flows
# ---------------------------------------------------------------------------

class TestFlows:

    @pytest.mark.asyncio
    async def test_products_follow_link_header(self, adapter, recorder):
        def products(request):
            if request.url.params.get("page_info") == "p2":
                return httpx.Response(200, json={"products": [_product(id=102)]})
            link = f'<https://demo.myshopify.com{API}/products.json?page_info=p2>; rel="next"'
            return httpx.Response(200, json={"products": [_product()]}, headers={"Link": link})

        recorder.add("GET", f"{API}/products.json", products)
        products_out = await adapter.get_products()

        assert [p.platform_id for p in products_out] == ["101", "102"]
        calls = recorder.calls("GET", f"{API}/products.json")
        assert calls[0].headers["X-Shopify-Access-Token"] == "shpat_test"
        assert "page_info" not in calls[0].url.params

    @pytest.mark.asyncio
    async def test_update_inventory_sets_absolute_quantity(self, adapter, recorder):
        recorder.add("GET", f"{API}/products/101.json", {"product": _product()})
        recorder.add("GET", f"{API}/locations.json", {"locations": [{"id": 77, "name": "Warehouse"}]})
        recorder.add(
            "POST", f"{API}/inventory_levels/set.json",
            {"inventory_level": {"inventory_item_id": 9002, "location_id": 77, "available": 12}},
        )

        inventory = await adapter.update_inventory("101", 12, variant_id="2")

        sent = recorder.json_of(recorder.calls("POST", f"{API}/inventory_levels/set.json")[0])
        assert sent == {"location_id": 77, "inventory_item_id": 9002, "available": 12}
        assert inventory.quantity == 12
        assert inventory.location_name == "Warehouse"
        assert inventory.sku == "TOTE-B"

    @pytest.mark.asyncio
    async def test_update_inventory_unknown_variant(self, adapter, recorder):
        recorder.add("GET", f"{API}/products/101.json", {"product": _product()})
        with pytest.raises(ValidationError):
            await adapter.update_inventory("101", 1, variant_id="999")

    @pytest.mark.asyncio
    async def test_fulfill_is_noop_for_existing_tracking_number(self, adapter, recorder):
        recorder.add("GET", f"{API}/orders/555/fulfillments.json", {"fulfillments": [{"tracking_number": "1Z"}]})
        recorder.add("GET", f"{API}/orders/555.json", {"order": {"id": 555, "fulfillment_status": "fulfilled"}})

        order = await adapter.fulfill_order("555", FulfillmentRequest(tracking_number="1Z"))

        assert order.fulfillment_status == FulfillmentStatus.FULFILLED
        assert recorder.calls("POST", f"{API}/fulfillments.json") == []

    @pytest.mark.asyncio
    async def test_fulfill_open_fulfillment_orders(self, adapter, recorder):
        recorder.add("GET", f"{API}/orders/555/fulfillments.json", {"fulfillments": []})
        recorder.add("GET", f"{API}/orders/555/fulfillment_orders.json", {"fulfillment_orders": [
            {"id": 31, "status": "open", "line_items": []},
            {"id": 32, "status": "closed", "line_items": []},
        ]})
        recorder.add("POST", f"{API}/fulfillments.json", {"fulfillment": {"id": 1}})
        recorder.add("GET", f"{API}/orders/555.json", {"order": {"id": 555}})

        await adapter.fulfill_order("555", FulfillmentRequest(tracking_number="1Z", carrier="UPS"))

        body = recorder.json_of(recorder.calls("POST", f"{API}/fulfillments.json")[0])["fulfillment"]
        assert body["line_items_by_fulfillment_order"] == [{"fulfillment_order_id": 31}]
        assert body["tracking_info"]["number"] == "1Z"

    @pytest.mark.asyncio
    async def test_cancel_skipped_when_already_cancelled(self, adapter, recorder):
        recorder.add("GET", f"{API}/orders/555.json", {"order": {"id": 555, "cancelled_at": "2024-01-01T00:00:00Z"}})

        order = await adapter.update_order_status("555", "cancelled")

        assert order.fulfillment_status == FulfillmentStatus.CANCELLED
        assert recorder.calls("POST", f"{API}/orders/555/cancel.json") == []

    def test_unknown_order_status(self, adapter):
        with pytest.raises(ValidationError):
            adapter.transform_from_canonical_order_status("teleported")

    @pytest.mark.asyncio
    async def test_register_webhook_reuses_existing(self, adapter, recorder):
        recorder.add("GET", f"{API}/webhooks.json", {"webhooks": [{"id": 42, "topic": "orders/create"}]})

        sub = await adapter.register_webhook("order.created", "https://bridge.test/webhooks/shopify")

        assert sub.id == "42"
        assert sub.platform_topic == "orders/create"
        assert recorder.calls("POST", f"{API}/webhooks.json") == []

    @pytest.mark.asyncio
    async def test_delete_product_already_gone(self, adapter, recorder):
        recorder.add("DELETE", f"{API}/products/101.json", httpx.Response(404, json={"errors": "Not Found"}))
        assert await adapter.delete_product("101") is True

    @pytest.mark.asyncio
    async def test_update_product_rejects_unknown_field(self, adapter):
        with pytest.raises(ValidationError):
            await adapter.update_product("101", {"colour": "red"})

    @pytest.mark.asyncio
    async def test_exchange_code(self, adapter, recorder):
        recorder.add("POST", "/admin/oauth/access_token", {"access_token": "shpat_new", "scope": "read_products"})

        token = await adapter.exchange_code_for_token("auth-code")

        assert token.access_token == "shpat_new"
        assert adapter.credentials.access_token == "shpat_new"
        sent = recorder.json_of(recorder.calls("POST", "/admin/oauth/access_token")[0])
        assert sent == {"client_id": "shopify-key", "client_secret": "shopify-secret", "code": "auth-code"}

    def test_auth_url(self, adapter):
        url = adapter.get_auth_url("state-1")
        assert url.startswith("https://demo.myshopify.com/admin/oauth/authorize?")
        assert "state=state-1" in url
        assert "redirect_uri=https%3A%2F%2Fbridge.test%2Fapi%2Foauth%2Fshopify%2Fcallback" in url
