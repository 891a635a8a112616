"""
Shopify adapter — REST Admin API.

Auth: authorization-code OAuth per shop; offline tokens do not expire.
Pagination: cursor in the Link header (page_info).
Inventory: per variant inventory_item_id, per location.
Version: 1.0.0
"""
import hashlib
import hmac
import logging
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from platform_bridge.adapters.base import (
    FulfillmentRequest,
    Page,
    PlatformAdapter,
    TokenResponse,
    WebhookSubscription,
    lookup_status,
)
from platform_bridge.clients.platform_http import json_body
from platform_bridge.core.exceptions import PlatformAPIError, ValidationError
from platform_bridge.schemas.canonical import (
    CanonicalAddress,
    CanonicalCustomer,
    CanonicalInventory,
    CanonicalLineItem,
    CanonicalOrder,
    CanonicalProduct,
    CanonicalVariant,
    Capability,
    FinancialStatus,
    FulfillmentStatus,
    Platform,
    ProductStatus,
)
from platform_bridge.utils.concurrency import chunked
from platform_bridge.utils.type_converters import (
    to_float,
    to_id,
    to_int,
    to_iso8601,
    to_money,
    to_optional_money,
    to_quantity,
    to_str,
    split_tags,
)

logger = logging.getLogger("shopify_adapter")

PAGE_LIMIT = 250
INVENTORY_ITEM_BATCH = 50

PRODUCT_STATUS_MAP = {
    "active": ProductStatus.ACTIVE,
    "draft": ProductStatus.DRAFT,
    "archived": ProductStatus.ARCHIVED,
}

# Default: pending
FINANCIAL_STATUS_MAP = {
    "pending": FinancialStatus.PENDING,
    "authorized": FinancialStatus.PENDING,
    "partially_paid": FinancialStatus.PENDING,
    "paid": FinancialStatus.PAID,
    "partially_refunded": FinancialStatus.PAID,
    "refunded": FinancialStatus.REFUNDED,
    "voided": FinancialStatus.VOIDED,
    "expired": FinancialStatus.VOIDED,
}

# Default: unfulfilled (Shopify reports null for unfulfilled orders)
FULFILLMENT_STATUS_MAP = {
    "unfulfilled": FulfillmentStatus.UNFULFILLED,
    "partial": FulfillmentStatus.PARTIAL,
    "fulfilled": FulfillmentStatus.FULFILLED,
    "restocked": FulfillmentStatus.UNFULFILLED,
}

_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="?next"?')


def normalize_shop_domain(domain: Optional[str]) -> Optional[str]:
    """
    Normalize Shopify store domain to ensure it has .myshopify.com suffix.

    Handles these formats:
    - "my-store" -> "my-store.myshopify.com"
    - "my-store.myshopify.com" -> "my-store.myshopify.com" (unchanged)
    - "https://my-store.myshopify.com/" -> "my-store.myshopify.com"
    """
    if not domain:
        return domain
    domain = domain.replace("https://", "").replace("http://", "").rstrip("/")
    if not domain.endswith(".myshopify.com"):
        domain = f"{domain}.myshopify.com"
    return domain


def from_gid(value: str | int) -> str:
    return str(value).rsplit("/", 1)[-1]


def next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the page_info cursor of the rel=next link, if any."""
    if not link_header:
        return None
    match = _LINK_NEXT.search(link_header)
    if not match:
        return None
    values = parse_qs(urlparse(match.group(1)).query).get("page_info")
    return values[0] if values else None


def verify_callback_hmac(query: Mapping[str, str], secret: Optional[str]) -> bool:
    """
    Check the hmac Shopify appends to OAuth redirects.

    The digest is hex HMAC-SHA256 over the remaining query parameters,
    sorted by name and joined as key=value pairs with "&".
    """
    provided = query.get("hmac")
    if not provided or not secret:
        return False
    message = "&".join(f"{k}={v}" for k, v in sorted(query.items()) if k not in ("hmac", "signature"))
    expected = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


# ---------------------------------------------------------------------------
# Mapping (pure)
# ---------------------------------------------------------------------------

def map_address(raw: Optional[Mapping[str, Any]]) -> CanonicalAddress:
    raw = raw or {}
    return CanonicalAddress(
        first_name=to_str(raw.get("first_name")),
        last_name=to_str(raw.get("last_name")),
        company=to_str(raw.get("company")),
        address1=to_str(raw.get("address1")),
        address2=to_str(raw.get("address2")),
        city=to_str(raw.get("city")),
        province=to_str(raw.get("province")),
        province_code=to_str(raw.get("province_code")),
        country=to_str(raw.get("country")),
        country_code=to_str(raw.get("country_code")),
        zip=to_str(raw.get("zip")),
        phone=to_str(raw.get("phone")),
    )


def map_variant(raw: Mapping[str, Any], option_names: List[str]) -> CanonicalVariant:
    options = {}
    for idx, name in enumerate(option_names[:3]):
        value = raw.get(f"option{idx + 1}")
        if value:
            options[name] = str(value)
    return CanonicalVariant(
        platform_id=to_str(raw.get("id")),
        product_id=to_str(raw.get("product_id")),
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("title")),
        price=to_money(raw.get("price")),
        compare_at_price=to_optional_money(raw.get("compare_at_price")),
        inventory_quantity=to_int(raw.get("inventory_quantity")),
        weight=to_float(raw.get("weight")),
        weight_unit=to_str(raw.get("weight_unit")) or "lb",
        options=options,
        barcode=raw.get("barcode") or None,
    )


def map_product(raw: Mapping[str, Any], shop_domain: Optional[str] = None) -> CanonicalProduct:
    option_names = [to_str(o.get("name")) for o in raw.get("options") or []]
    variants = [map_variant(v, option_names) for v in raw.get("variants") or []]
    first = variants[0] if variants else CanonicalVariant()
    images = [img.get("src") for img in raw.get("images") or [] if img.get("src")]
    featured = (raw.get("image") or {}).get("src") or (images[0] if images else None)
    has_variants = len(variants) > 1 or (bool(variants) and first.title not in ("", "Default Title"))
    tracked = any(v.get("inventory_management") for v in raw.get("variants") or [])
    product_id = to_str(raw.get("id"))

    return CanonicalProduct(
        platform=Platform.SHOPIFY,
        platform_id=product_id,
        sku=first.sku,
        title=to_str(raw.get("title")),
        description=to_str(raw.get("body_html")),
        vendor=to_str(raw.get("vendor")),
        product_type=to_str(raw.get("product_type")),
        tags=split_tags(raw.get("tags")),
        price=first.price,
        compare_at_price=first.compare_at_price,
        inventory_quantity=sum(v.inventory_quantity for v in variants),
        inventory_tracked=tracked,
        has_variants=has_variants,
        variants=variants,
        images=images,
        featured_image=featured,
        status=lookup_status(PRODUCT_STATUS_MAP, raw.get("status"), ProductStatus.DRAFT),
        published_at=to_iso8601(raw.get("published_at")),
        created_at=to_iso8601(raw.get("created_at")),
        updated_at=to_iso8601(raw.get("updated_at")),
        platform_url=f"https://{shop_domain}/admin/products/{product_id}" if shop_domain else None,
        metafields={"handle": raw.get("handle")} if raw.get("handle") else {},
    )


def map_line_item(raw: Mapping[str, Any]) -> CanonicalLineItem:
    quantity = to_quantity(raw.get("quantity"))
    price = to_money(raw.get("price"))
    discount = to_money(raw.get("total_discount"))
    tax = to_money(sum(to_float(t.get("price")) for t in raw.get("tax_lines") or []))
    return CanonicalLineItem(
        platform_id=to_str(raw.get("id")),
        product_id=to_id(raw.get("product_id")),
        variant_id=to_id(raw.get("variant_id")),
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("title")),
        variant_title=to_str(raw.get("variant_title")),
        quantity=quantity,
        price=price,
        total_price=to_money(price * quantity - discount),
        tax=tax,
        discount=discount,
        fulfillment_status=lookup_status(
            FULFILLMENT_STATUS_MAP, raw.get("fulfillment_status"), FulfillmentStatus.UNFULFILLED
        ),
    )


def map_order(raw: Mapping[str, Any], shop_domain: Optional[str] = None) -> CanonicalOrder:
    customer = raw.get("customer") or {}
    fulfillments = raw.get("fulfillments") or []
    last_fulfillment = fulfillments[-1] if fulfillments else {}
    shipping_set = ((raw.get("total_shipping_price_set") or {}).get("shop_money") or {}).get("amount")
    shipping = (
        to_money(shipping_set)
        if shipping_set is not None
        else to_money(sum(to_float(s.get("price")) for s in raw.get("shipping_lines") or []))
    )
    fulfillment_status = lookup_status(
        FULFILLMENT_STATUS_MAP, raw.get("fulfillment_status"), FulfillmentStatus.UNFULFILLED
    )
    if raw.get("cancelled_at"):
        fulfillment_status = FulfillmentStatus.CANCELLED
    order_id = to_str(raw.get("id"))
    name = " ".join(p for p in (to_str(customer.get("first_name")), to_str(customer.get("last_name"))) if p)

    return CanonicalOrder(
        platform=Platform.SHOPIFY,
        platform_id=order_id,
        order_number=to_str(raw.get("name") or raw.get("order_number")),
        customer_id=to_id(customer.get("id")),
        customer_email=to_str(raw.get("email") or customer.get("email")),
        customer_name=name,
        customer_phone=to_str(raw.get("phone") or customer.get("phone")),
        line_items=[map_line_item(li) for li in raw.get("line_items") or []],
        total_price=to_money(raw.get("total_price")),
        subtotal_price=to_money(raw.get("subtotal_price")),
        total_tax=to_money(raw.get("total_tax")),
        total_shipping=shipping,
        total_discounts=to_money(raw.get("total_discounts")),
        currency=to_str(raw.get("currency")) or "USD",
        financial_status=lookup_status(FINANCIAL_STATUS_MAP, raw.get("financial_status"), FinancialStatus.PENDING),
        fulfillment_status=fulfillment_status,
        cancelled_at=to_iso8601(raw.get("cancelled_at")),
        cancel_reason=raw.get("cancel_reason"),
        shipping_address=map_address(raw.get("shipping_address")),
        billing_address=map_address(raw.get("billing_address")),
        tracking_number=last_fulfillment.get("tracking_number"),
        tracking_url=last_fulfillment.get("tracking_url"),
        carrier=last_fulfillment.get("tracking_company"),
        created_at=to_iso8601(raw.get("created_at")),
        updated_at=to_iso8601(raw.get("updated_at")),
        processed_at=to_iso8601(raw.get("processed_at")),
        fulfilled_at=to_iso8601(last_fulfillment.get("created_at")),
        platform_url=f"https://{shop_domain}/admin/orders/{order_id}" if shop_domain else None,
        notes=to_str(raw.get("note")),
        tags=split_tags(raw.get("tags")),
    )


def map_customer(raw: Mapping[str, Any]) -> CanonicalCustomer:
    consent = raw.get("email_marketing_consent") or {}
    accepts = consent.get("state") == "subscribed" if consent else bool(raw.get("accepts_marketing"))
    default_address = raw.get("default_address")
    return CanonicalCustomer(
        platform=Platform.SHOPIFY,
        platform_id=to_str(raw.get("id")),
        email=to_str(raw.get("email")),
        first_name=to_str(raw.get("first_name")),
        last_name=to_str(raw.get("last_name")),
        phone=to_str(raw.get("phone")),
        orders_count=max(0, to_int(raw.get("orders_count"))),
        total_spent=to_money(raw.get("total_spent")),
        default_address=map_address(default_address) if default_address else None,
        addresses=[map_address(a) for a in raw.get("addresses") or []],
        accepts_marketing=accepts,
        marketing_opt_in_level=consent.get("opt_in_level") or raw.get("marketing_opt_in_level"),
        state=to_str(raw.get("state")) or "enabled",
        verified_email=bool(raw.get("verified_email")),
        created_at=to_iso8601(raw.get("created_at")),
        updated_at=to_iso8601(raw.get("updated_at")),
        tags=split_tags(raw.get("tags")),
        notes=to_str(raw.get("note")),
    )


def map_inventory_level(
    level: Mapping[str, Any],
    variant: Mapping[str, Any],
    location_names: Mapping[str, str],
) -> CanonicalInventory:
    location_id = to_id(level.get("location_id"))
    available = to_int(level.get("available"))
    return CanonicalInventory(
        platform=Platform.SHOPIFY,
        platform_id=to_str(level.get("inventory_item_id") or variant.get("inventory_item_id")),
        product_id=to_str(variant.get("product_id")),
        variant_id=to_id(variant.get("id")),
        sku=to_str(variant.get("sku")),
        quantity=available,
        available_quantity=available,
        location_id=location_id,
        location_name=location_names.get(location_id or "", "Default"),
        updated_at=to_iso8601(level.get("updated_at")),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class ShopifyAdapter(PlatformAdapter):
    platform = Platform.SHOPIFY
    capabilities = frozenset({
        Capability.PRODUCTS,
        Capability.INVENTORY,
        Capability.ORDERS,
        Capability.ORDER_STATUS_UPDATE,
        Capability.FULFILLMENT,
        Capability.CUSTOMERS,
        Capability.WEBHOOKS,
        Capability.WEBHOOK_VERIFICATION,
        Capability.OAUTH_CODE_EXCHANGE,
    })

    TOPIC_MAP = {
        "product.created": "products/create",
        "product.updated": "products/update",
        "product.deleted": "products/delete",
        "order.created": "orders/create",
        "order.updated": "orders/updated",
        "order.paid": "orders/paid",
        "order.fulfilled": "orders/fulfilled",
        "order.cancelled": "orders/cancelled",
        "inventory.updated": "inventory_levels/update",
        "customer.created": "customers/create",
        "customer.updated": "customers/update",
        "customer.deleted": "customers/delete",
        "app.uninstalled": "app/uninstalled",
        "customer.data_request": "customers/data_request",
        "customer.redact": "customers/redact",
        "shop.redact": "shop/redact",
    }

    # Canonical status -> order action endpoint
    ORDER_STATUS_TO_PLATFORM = {
        "cancelled": "cancel",
        "voided": "cancel",
        "fulfilled": "close",
        "unfulfilled": "open",
    }

    def __init__(self, credentials, settings=None, **kwargs) -> None:
        credentials.shop_domain = normalize_shop_domain(credentials.shop_domain)
        if not credentials.shop_domain:
            raise ValidationError("shop_domain is required for Shopify", platform="shopify")
        self._location_names: Dict[str, str] = {}
        super().__init__(credentials, settings, **kwargs)

    @property
    def shop_domain(self) -> str:
        return self.credentials.shop_domain

    def base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.settings.shopify_api_version}"

    def default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": access_token}

    def rate_limit_scope(self) -> Optional[str]:
        return self.shop_domain

    async def _probe(self) -> str:
        data = await self._call("GET", "/shop.json")
        return (data.get("shop") or {}).get("name") or self.shop_domain

    # -- OAuth --------------------------------------------------------------

    def get_auth_url(self, state: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None) -> str:
        params = {
            "client_id": self.credentials.client_id or self.settings.shopify_api_key or "",
            "scope": ",".join(scopes) if scopes else self.settings.shopify_scopes,
            "redirect_uri": redirect_uri or self.settings.oauth_callback_url(self.platform.value),
            "state": state,
        }
        return f"https://{self.shop_domain}/admin/oauth/authorize?{urlencode(params)}"

    async def _exchange_code(self, code: str, redirect_uri: Optional[str], **params) -> TokenResponse:
        data = await self.http.request_json(
            "POST",
            f"https://{self.shop_domain}/admin/oauth/access_token",
            json={
                "client_id": self.credentials.client_id or self.settings.shopify_api_key,
                "client_secret": self.credentials.client_secret or self.settings.shopify_api_secret,
                "code": code,
            },
        )
        return TokenResponse(access_token=data.get("access_token", ""), scope=data.get("scope"))

    # -- GraphQL ------------------------------------------------------------

    async def call_graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = await self._call("POST", "/graphql.json", json={"query": query, "variables": variables or {}})
        if data.get("errors"):
            raise PlatformAPIError("shopify", str(data.get("errors")), status_code=200, body=data)
        return data

    async def find_product_by_sku(self, sku: str) -> Optional[str]:
        query = (
            "query GetSkuData($skuQuery: String!) { "
            "productVariants(first: 5, query: $skuQuery) { "
            "edges { node { id sku product { id } } } } }"
        )
        data = await self.call_graphql(query, {"skuQuery": f"sku:{sku}"})
        edges = ((data.get("data") or {}).get("productVariants") or {}).get("edges") or []
        for edge in edges:
            node = edge.get("node") or {}
            if node.get("sku") == sku:
                return from_gid((node.get("product") or {}).get("id", ""))
        return None

    # -- Products -----------------------------------------------------------

    async def _list_page(self, path: str, key: str, cursor: Optional[str], filters: Mapping[str, Any]) -> tuple:
        if cursor:
            params = {"limit": filters.get("limit", PAGE_LIMIT), "page_info": cursor}
        else:
            params = {"limit": PAGE_LIMIT, **filters}
        response = await self._request("GET", path, params=params)
        return json_body(response).get(key) or [], next_page_info(response.headers.get("Link"))

    async def _fetch_products_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._list_page("/products.json", "products", cursor, filters)
        return Page(items=[self.transform_to_canonical_product(p) for p in raw], next_cursor=next_cursor)

    async def _get_product(self, product_id: str) -> CanonicalProduct:
        data = await self._call("GET", f"/products/{product_id}.json")
        return self.transform_to_canonical_product(data.get("product") or {})

    async def _create_product(self, product: CanonicalProduct) -> CanonicalProduct:
        if product.sku:
            existing_id = await self.find_product_by_sku(product.sku)
            if existing_id:
                logger.info("shopify create_product sku=%s exists id=%s, updating", product.sku, existing_id)
                fields = set(CanonicalProduct.model_fields) - {"platform", "platform_id", "variants"}
                return await self._update_product(existing_id, product, fields)

        body = self.transform_from_canonical_product(product)
        data = await self._call("POST", "/products.json", json={"product": body})
        created = data.get("product") or {}
        variants = created.get("variants") or []
        if product.cost_per_item is not None and variants:
            await self._set_inventory_cost(variants[0].get("inventory_item_id"), product.cost_per_item)
        return self.transform_to_canonical_product(created)

    async def _update_product(self, product_id: str, patch: CanonicalProduct, fields: set) -> CanonicalProduct:
        body = self.transform_from_canonical_product(patch, fields)
        variant_changes = (body.pop("variants", None) or [{}])[0]

        current = (await self._call("GET", f"/products/{product_id}.json")).get("product") or {}
        variants = current.get("variants") or []
        if variant_changes and variants:
            variant_id = variants[0].get("id")
            await self._call("PUT", f"/variants/{variant_id}.json", json={"variant": {"id": variant_id, **variant_changes}})
        if body:
            await self._call("PUT", f"/products/{product_id}.json", json={"product": {"id": int(product_id), **body}})
        if "cost_per_item" in fields and patch.cost_per_item is not None and variants:
            await self._set_inventory_cost(variants[0].get("inventory_item_id"), patch.cost_per_item)
        return await self._get_product(product_id)

    async def _delete_product(self, product_id: str) -> bool:
        await self._delete_idempotent(f"/products/{product_id}.json")
        logger.info("shopify product deleted id=%s", product_id)
        return True

    async def _set_inventory_cost(self, inventory_item_id: Any, cost: float) -> None:
        if not inventory_item_id:
            return
        payload = {"inventory_item": {"id": int(inventory_item_id), "cost": float(cost)}}
        await self._call("PUT", f"/inventory_items/{inventory_item_id}.json", json=payload)

    def product_payload_fragments(self, product: CanonicalProduct) -> Dict[str, Dict[str, Any]]:
        return {
            "title": {"title": product.title},
            "description": {"body_html": product.description},
            "vendor": {"vendor": product.vendor},
            "product_type": {"product_type": product.product_type},
            "tags": {"tags": ", ".join(product.tags)},
            "status": {"status": product.status.value},
            "images": {"images": [{"src": src} for src in product.images]},
            "sku": {"variants": [{"sku": product.sku}]},
            "price": {"variants": [{"price": f"{product.price:.2f}"}]},
            "compare_at_price": {
                "variants": [{
                    "compare_at_price": (
                        f"{product.compare_at_price:.2f}" if product.compare_at_price is not None else None
                    )
                }]
            },
        }

    def transform_to_canonical_product(self, raw: Mapping[str, Any]) -> CanonicalProduct:
        return map_product(raw, self.shop_domain)

    # -- Inventory ----------------------------------------------------------

    async def _get_location_names(self) -> Dict[str, str]:
        if self._location_names:
            return self._location_names
        data = await self._call("GET", "/locations.json")
        self._location_names = {
            str(loc.get("id")): loc.get("name") or "Default"
            for loc in data.get("locations") or []
            if loc.get("id") is not None
        }
        logger.info("shopify locations loaded=%s", list(self._location_names.values()))
        return self._location_names

    async def _variants_for(self, product_ids: List[str]) -> List[Dict[str, Any]]:
        if product_ids:
            variants = []
            for batch in chunked(product_ids, PAGE_LIMIT):
                data = await self._call(
                    "GET", "/products.json",
                    params={"ids": ",".join(batch), "fields": "id,variants", "limit": PAGE_LIMIT},
                )
                for product in data.get("products") or []:
                    variants.extend(product.get("variants") or [])
            return variants

        variants = []
        cursor = None
        while True:
            raw, cursor = await self._list_page("/products.json", "products", cursor, {"fields": "id,variants"})
            for product in raw:
                variants.extend(product.get("variants") or [])
            if not cursor:
                return variants

    async def _get_inventory(self, product_ids: List[str]) -> List[CanonicalInventory]:
        variants = [v for v in await self._variants_for(product_ids) if v.get("inventory_item_id")]
        by_item = {str(v["inventory_item_id"]): v for v in variants}
        locations = await self._get_location_names()

        records: List[CanonicalInventory] = []
        for batch in chunked(list(by_item), INVENTORY_ITEM_BATCH):
            data = await self._call(
                "GET", "/inventory_levels.json",
                params={"inventory_item_ids": ",".join(batch), "limit": PAGE_LIMIT},
            )
            for level in data.get("inventory_levels") or []:
                variant = by_item.get(str(level.get("inventory_item_id")), {})
                records.append(map_inventory_level(level, variant, locations))
        return records

    async def _update_inventory(self, product_id: str, quantity: int, variant_id: Optional[str]) -> CanonicalInventory:
        product = (await self._call("GET", f"/products/{product_id}.json")).get("product") or {}
        variants = product.get("variants") or []
        variant = next((v for v in variants if str(v.get("id")) == str(variant_id)), None) if variant_id else None
        if variant is None:
            if variant_id or not variants:
                raise ValidationError(f"variant not found for product {product_id}", platform="shopify")
            variant = variants[0]

        locations = await self._get_location_names()
        if not locations:
            raise ValidationError("shop has no inventory locations", platform="shopify")
        location_id = next(iter(locations))
        payload = {
            "location_id": int(location_id),
            "inventory_item_id": int(variant["inventory_item_id"]),
            "available": quantity,
        }
        logger.info("shopify update_inventory product_id=%s variant_id=%s qty=%s", product_id, variant.get("id"), quantity)
        data = await self._call("POST", "/inventory_levels/set.json", json=payload)
        level = data.get("inventory_level") or payload
        return map_inventory_level(level, variant, locations)

    def transform_to_canonical_inventory(self, raw: Mapping[str, Any]) -> CanonicalInventory:
        return map_inventory_level(raw, raw.get("variant") or {}, self._location_names)

    # -- Orders -------------------------------------------------------------

    async def _fetch_orders_page(self, cursor: Optional[str], **filters) -> Page:
        filters = {"status": "any", **filters}
        raw, next_cursor = await self._list_page("/orders.json", "orders", cursor, filters)
        return Page(items=[self.transform_to_canonical_order(o) for o in raw], next_cursor=next_cursor)

    async def _get_order(self, order_id: str) -> CanonicalOrder:
        data = await self._call("GET", f"/orders/{order_id}.json")
        return self.transform_to_canonical_order(data.get("order") or {})

    async def _update_order_status(self, order_id: str, action: str) -> CanonicalOrder:
        order = (await self._call("GET", f"/orders/{order_id}.json")).get("order") or {}
        already = (
            (action == "cancel" and order.get("cancelled_at"))
            or (action == "close" and order.get("closed_at"))
            or (action == "open" and not order.get("closed_at"))
        )
        if not already:
            await self._call("POST", f"/orders/{order_id}/{action}.json", json={})
        return await self._get_order(order_id)

    async def _fulfill_order(self, order_id: str, fulfillment: FulfillmentRequest) -> CanonicalOrder:
        if fulfillment.tracking_number:
            existing = await self._call("GET", f"/orders/{order_id}/fulfillments.json")
            for f in existing.get("fulfillments") or []:
                if f.get("tracking_number") == fulfillment.tracking_number:
                    logger.info("shopify fulfillment exists order_id=%s tracking=%s", order_id, fulfillment.tracking_number)
                    return await self._get_order(order_id)

        data = await self._call("GET", f"/orders/{order_id}/fulfillment_orders.json")
        wanted = {fl.line_item_id: fl.quantity for fl in fulfillment.line_items}
        groups = []
        for fo in data.get("fulfillment_orders") or []:
            if fo.get("status") not in ("open", "in_progress"):
                continue
            group: Dict[str, Any] = {"fulfillment_order_id": fo.get("id")}
            if wanted:
                lines = [
                    {"id": li.get("id"), "quantity": wanted[str(li.get("line_item_id"))]}
                    for li in fo.get("line_items") or []
                    if str(li.get("line_item_id")) in wanted
                ]
                if not lines:
                    continue
                group["fulfillment_order_line_items"] = lines
            groups.append(group)

        if groups:
            body: Dict[str, Any] = {
                "line_items_by_fulfillment_order": groups,
                "notify_customer": fulfillment.notify_customer,
            }
            if fulfillment.tracking_number:
                body["tracking_info"] = {
                    "number": fulfillment.tracking_number,
                    "company": fulfillment.carrier,
                    "url": fulfillment.tracking_url,
                }
            await self._call("POST", "/fulfillments.json", json={"fulfillment": body})
        else:
            logger.info("shopify fulfill_order nothing open order_id=%s", order_id)
        return await self._get_order(order_id)

    def transform_to_canonical_order(self, raw: Mapping[str, Any]) -> CanonicalOrder:
        order = map_order(raw, self.shop_domain)
        if not order.totals_reconcile(self.settings.order_total_tolerance):
            logger.warning("shopify order totals do not reconcile id=%s", order.platform_id)
        return order

    # -- Customers ----------------------------------------------------------

    async def _fetch_customers_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._list_page("/customers.json", "customers", cursor, filters)
        return Page(items=[self._map_customer(c) for c in raw], next_cursor=next_cursor)

    async def _get_customer(self, customer_id: str) -> CanonicalCustomer:
        data = await self._call("GET", f"/customers/{customer_id}.json")
        return self._map_customer(data.get("customer") or {})

    def _map_customer(self, raw: Mapping[str, Any]) -> CanonicalCustomer:
        return map_customer(raw)

    # -- Webhooks -----------------------------------------------------------

    async def _register_webhook(self, topic: str, platform_topic: str, address: str) -> WebhookSubscription:
        existing = await self._call("GET", "/webhooks.json", params={"topic": platform_topic, "address": address})
        hooks = existing.get("webhooks") or []
        if hooks:
            hook = hooks[0]
        else:
            data = await self._call(
                "POST", "/webhooks.json",
                json={"webhook": {"topic": platform_topic, "address": address, "format": "json"}},
            )
            hook = data.get("webhook") or {}
        return WebhookSubscription(
            id=str(hook.get("id")),
            platform=self.platform,
            topic=topic,
            platform_topic=platform_topic,
            address=address,
        )

    async def _unregister_webhook(self, subscription_id: str) -> bool:
        return await self._delete_idempotent(f"/webhooks/{subscription_id}.json")
