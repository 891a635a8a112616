"""
WooCommerce adapter — WC REST API v3 on the merchant's own WordPress site.

Auth: consumer key/secret over HTTP Basic. There is no code exchange:
the wc-auth flow POSTs the generated keys straight to our callback, so
the adapter only builds the authorize URL and parses that callback.
Pagination: page/per_page with the X-WP-TotalPages header.
Version: 1.0.0
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from platform_bridge.adapters.base import (
    FulfillmentRequest,
    Page,
    PlatformAdapter,
    WebhookSubscription,
    lookup_status,
)
from platform_bridge.clients.platform_http import json_body
from platform_bridge.core.exceptions import AuthenticationError, ValidationError
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
from platform_bridge.utils.concurrency import chunked, gather_bounded
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

logger = logging.getLogger("woocommerce_adapter")

PER_PAGE = 100

PRODUCT_STATUS_MAP = {
    "publish": ProductStatus.ACTIVE,
    "draft": ProductStatus.DRAFT,
    "pending": ProductStatus.DRAFT,
    "private": ProductStatus.DRAFT,
    "trash": ProductStatus.ARCHIVED,
}

PRODUCT_STATUS_TO_PLATFORM = {
    ProductStatus.ACTIVE: "publish",
    ProductStatus.DRAFT: "draft",
    ProductStatus.ARCHIVED: "private",
}

# Default: pending
FINANCIAL_STATUS_MAP = {
    "processing": FinancialStatus.PAID,
    "completed": FinancialStatus.PAID,
    "refunded": FinancialStatus.REFUNDED,
    "cancelled": FinancialStatus.VOIDED,
}

# Default: unfulfilled
FULFILLMENT_STATUS_MAP = {
    "completed": FulfillmentStatus.FULFILLED,
    "cancelled": FulfillmentStatus.CANCELLED,
}


def parse_auth_callback(payload: Mapping[str, Any]) -> Tuple[str, Dict[str, str]]:
    """
    Parse the wc-auth key delivery POST.

    Returns (state, credential fields). The state travels as ``user_id``
    because wc-auth echoes that value back unchanged.
    """
    consumer_key = payload.get("consumer_key")
    consumer_secret = payload.get("consumer_secret")
    if not consumer_key or not consumer_secret:
        raise ValidationError("wc-auth callback carried no API keys", platform="woocommerce")
    return to_str(payload.get("user_id")), {
        "consumer_key": consumer_key,
        "consumer_secret": consumer_secret,
        "scope": to_str(payload.get("key_permissions")) or None,
    }


# ---------------------------------------------------------------------------
# Mapping (pure)
# ---------------------------------------------------------------------------

def map_address(raw: Optional[Mapping[str, Any]]) -> CanonicalAddress:
    raw = raw or {}
    return CanonicalAddress(
        first_name=to_str(raw.get("first_name")),
        last_name=to_str(raw.get("last_name")),
        company=to_str(raw.get("company")),
        address1=to_str(raw.get("address_1")),
        address2=to_str(raw.get("address_2")),
        city=to_str(raw.get("city")),
        province=to_str(raw.get("state")),
        province_code=to_str(raw.get("state")),
        country_code=to_str(raw.get("country")),
        zip=to_str(raw.get("postcode")),
        phone=to_str(raw.get("phone")),
    )


def _sale_prices(raw: Mapping[str, Any]) -> Tuple[float, Optional[float]]:
    """(price, compare_at) — compare_at only while a sale price is active."""
    price = to_money(raw.get("price"))
    if raw.get("on_sale") and raw.get("regular_price"):
        return price, to_optional_money(raw.get("regular_price"))
    return price, None


def map_variation(raw: Mapping[str, Any], product_id: str = "") -> CanonicalVariant:
    price, compare_at = _sale_prices(raw)
    options = {to_str(a.get("name")): to_str(a.get("option")) for a in raw.get("attributes") or []}
    return CanonicalVariant(
        platform_id=to_str(raw.get("id")),
        product_id=product_id,
        sku=to_str(raw.get("sku")),
        title=" / ".join(options.values()),
        price=price,
        compare_at_price=compare_at,
        inventory_quantity=to_int(raw.get("stock_quantity")),
        weight=to_float(raw.get("weight")),
        weight_unit="kg",
        options=options,
        image=(raw.get("image") or {}).get("src"),
    )


def map_product(raw: Mapping[str, Any], variations: Optional[List[Mapping[str, Any]]] = None) -> CanonicalProduct:
    product_id = to_str(raw.get("id"))
    variations = variations if variations is not None else raw.get("variations_detail") or []
    variants = [map_variation(v, product_id) for v in variations]
    price, compare_at = _sale_prices(raw)
    images = [img.get("src") for img in raw.get("images") or [] if img.get("src")]
    categories = [to_str(c.get("name")) for c in raw.get("categories") or []]
    quantity = (
        sum(v.inventory_quantity for v in variants) if variants else to_int(raw.get("stock_quantity"))
    )
    return CanonicalProduct(
        platform=Platform.WOOCOMMERCE,
        platform_id=product_id,
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("name")),
        description=to_str(raw.get("description")),
        product_type=categories[0] if categories else "",
        tags=split_tags(raw.get("tags")),
        price=price,
        compare_at_price=compare_at,
        inventory_quantity=quantity,
        inventory_tracked=bool(raw.get("manage_stock")),
        has_variants=raw.get("type") == "variable",
        variants=variants,
        images=images,
        featured_image=images[0] if images else None,
        status=lookup_status(PRODUCT_STATUS_MAP, raw.get("status"), ProductStatus.DRAFT),
        created_at=to_iso8601(raw.get("date_created_gmt") or raw.get("date_created")),
        updated_at=to_iso8601(raw.get("date_modified_gmt") or raw.get("date_modified")),
        platform_url=raw.get("permalink") or None,
        metafields={"type": raw.get("type")} if raw.get("type") else {},
    )


def map_inventory(raw: Mapping[str, Any], product_id: Optional[str] = None) -> CanonicalInventory:
    """A product or a variation; variations carry their parent's id."""
    own_id = to_str(raw.get("id"))
    parent = product_id or (to_str(raw.get("parent_id")) if to_int(raw.get("parent_id")) else None)
    quantity = to_int(raw.get("stock_quantity"))
    return CanonicalInventory(
        platform=Platform.WOOCOMMERCE,
        platform_id=own_id,
        product_id=parent or own_id,
        variant_id=own_id if parent and parent != own_id else None,
        sku=to_str(raw.get("sku")),
        quantity=quantity,
        available_quantity=quantity,
        updated_at=to_iso8601(raw.get("date_modified_gmt") or raw.get("date_modified")),
    )


def map_line_item(raw: Mapping[str, Any]) -> CanonicalLineItem:
    quantity = to_quantity(raw.get("quantity"))
    subtotal = to_float(raw.get("subtotal"))
    total = to_float(raw.get("total"))
    variant_title = " / ".join(
        to_str(m.get("display_value") or m.get("value"))
        for m in raw.get("meta_data") or []
        if not str(m.get("key", "")).startswith("_")
    )
    return CanonicalLineItem(
        platform_id=to_str(raw.get("id")),
        product_id=to_id(raw.get("product_id")),
        variant_id=to_id(raw.get("variation_id")) if to_int(raw.get("variation_id")) else None,
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("name")),
        variant_title=variant_title,
        quantity=quantity,
        price=to_money(subtotal / quantity),
        total_price=to_money(total),
        tax=to_money(raw.get("total_tax")),
        discount=to_money(subtotal - total),
    )


def map_order(raw: Mapping[str, Any]) -> CanonicalOrder:
    billing = raw.get("billing") or {}
    status = raw.get("status")
    line_items = raw.get("line_items") or []
    subtotal = sum(to_float(li.get("subtotal")) for li in line_items)
    subtotal += sum(to_float(fee.get("total")) for fee in raw.get("fee_lines") or [])
    fulfillment = lookup_status(FULFILLMENT_STATUS_MAP, status, FulfillmentStatus.UNFULFILLED)
    name = " ".join(p for p in (to_str(billing.get("first_name")), to_str(billing.get("last_name"))) if p)
    shipping_lines = raw.get("shipping_lines") or []

    return CanonicalOrder(
        platform=Platform.WOOCOMMERCE,
        platform_id=to_str(raw.get("id")),
        order_number=to_str(raw.get("number") or raw.get("id")),
        customer_id=to_id(raw.get("customer_id")) if to_int(raw.get("customer_id")) else None,
        customer_email=to_str(billing.get("email")),
        customer_name=name,
        customer_phone=to_str(billing.get("phone")),
        line_items=[map_line_item(li) for li in line_items],
        total_price=to_money(raw.get("total")),
        subtotal_price=to_money(subtotal),
        total_tax=to_money(raw.get("total_tax")),
        total_shipping=to_money(raw.get("shipping_total")),
        total_discounts=to_money(raw.get("discount_total")),
        currency=to_str(raw.get("currency")) or "USD",
        financial_status=lookup_status(FINANCIAL_STATUS_MAP, status, FinancialStatus.PENDING),
        fulfillment_status=fulfillment,
        cancelled_at=(
            to_iso8601(raw.get("date_modified_gmt")) if fulfillment == FulfillmentStatus.CANCELLED else None
        ),
        shipping_address=map_address(raw.get("shipping")),
        billing_address=map_address(billing),
        carrier=(to_str(shipping_lines[0].get("method_title")) or None) if shipping_lines else None,
        created_at=to_iso8601(raw.get("date_created_gmt") or raw.get("date_created")),
        updated_at=to_iso8601(raw.get("date_modified_gmt") or raw.get("date_modified")),
        processed_at=to_iso8601(raw.get("date_paid_gmt")),
        fulfilled_at=to_iso8601(raw.get("date_completed_gmt")),
        notes=to_str(raw.get("customer_note")),
        metafields={"status": status} if status else {},
    )


def map_customer(raw: Mapping[str, Any]) -> CanonicalCustomer:
    billing = map_address(raw.get("billing"))
    shipping = map_address(raw.get("shipping"))
    addresses = [a for a in (billing, shipping) if not a.is_empty()]
    return CanonicalCustomer(
        platform=Platform.WOOCOMMERCE,
        platform_id=to_str(raw.get("id")),
        email=to_str(raw.get("email")),
        first_name=to_str(raw.get("first_name")),
        last_name=to_str(raw.get("last_name")),
        phone=to_str((raw.get("billing") or {}).get("phone")),
        orders_count=max(0, to_int(raw.get("orders_count"))),
        total_spent=to_money(raw.get("total_spent")),
        default_address=addresses[0] if addresses else None,
        addresses=addresses,
        created_at=to_iso8601(raw.get("date_created_gmt") or raw.get("date_created")),
        updated_at=to_iso8601(raw.get("date_modified_gmt") or raw.get("date_modified")),
        tags=["paying"] if raw.get("is_paying_customer") else [],
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class WooCommerceAdapter(PlatformAdapter):
    platform = Platform.WOOCOMMERCE
    capabilities = frozenset({
        Capability.PRODUCTS,
        Capability.INVENTORY,
        Capability.ORDERS,
        Capability.ORDER_STATUS_UPDATE,
        Capability.FULFILLMENT,
        Capability.CUSTOMERS,
        Capability.WEBHOOKS,
        Capability.WEBHOOK_VERIFICATION,
    })

    # WooCommerce topics already use resource.event naming
    TOPIC_MAP = {
        "product.created": "product.created",
        "product.updated": "product.updated",
        "product.deleted": "product.deleted",
        "order.created": "order.created",
        "order.updated": "order.updated",
        "customer.created": "customer.created",
        "customer.updated": "customer.updated",
        "customer.deleted": "customer.deleted",
    }

    ORDER_STATUS_TO_PLATFORM = {
        "pending": "pending",
        "unfulfilled": "processing",
        "paid": "processing",
        "fulfilled": "completed",
        "cancelled": "cancelled",
        "refunded": "refunded",
        "voided": "cancelled",
    }

    def __init__(self, credentials, settings=None, **kwargs) -> None:
        if not credentials.store_url:
            raise ValidationError("store_url is required for WooCommerce", platform="woocommerce")
        credentials.store_url = credentials.store_url.rstrip("/")
        super().__init__(credentials, settings, **kwargs)

    def base_url(self) -> str:
        return f"{self.credentials.store_url}/wp-json/wc/v3"

    def default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def rate_limit_scope(self) -> Optional[str]:
        return self.credentials.store_url

    async def _auth_kwargs(self) -> Dict[str, Any]:
        key, secret = self.credentials.consumer_key, self.credentials.consumer_secret
        if not key or not secret:
            raise AuthenticationError("WooCommerce consumer key/secret missing", platform="woocommerce")
        return {"auth": (key, secret)}

    async def _probe(self) -> str:
        data = await self._call("GET", "/system_status")
        return (data.get("environment") or {}).get("site_url") or self.credentials.store_url

    def get_auth_url(self, state: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None) -> str:
        callback = redirect_uri or self.settings.oauth_callback_url(self.platform.value)
        params = {
            "app_name": self.settings.woocommerce_app_name,
            "scope": scopes[0] if scopes else "read_write",
            "user_id": state,
            "return_url": callback,
            "callback_url": callback,
        }
        return f"{self.credentials.store_url}/wc-auth/v1/authorize?{urlencode(params)}"

    # -- Paging -------------------------------------------------------------

    async def _list_page(self, path: str, cursor: Optional[str], filters: Mapping[str, Any]) -> tuple:
        page = int(cursor or 1)
        response = await self._request("GET", path, params={"per_page": PER_PAGE, **filters, "page": page})
        data = json_body(response)
        total_pages = to_int(response.headers.get("X-WP-TotalPages"))
        return (data if isinstance(data, list) else []), (str(page + 1) if page < total_pages else None)

    async def _list_all(self, path: str, **filters) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor = None
        while True:
            raw, cursor = await self._list_page(path, cursor, filters)
            items.extend(raw)
            if not cursor:
                return items

    async def _variations(self, product: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if product.get("type") != "variable":
            return []
        return await self._list_all(f"/products/{product['id']}/variations")

    async def _map_products(self, raw_products: List[Mapping[str, Any]]) -> List[CanonicalProduct]:
        variations = await gather_bounded(raw_products, self._variations, limit=self.detail_concurrency)
        return [map_product(p, v) for p, v in zip(raw_products, variations)]

    # -- Products -----------------------------------------------------------

    async def _fetch_products_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._list_page("/products", cursor, filters)
        return Page(items=await self._map_products(raw), next_cursor=next_cursor)

    async def _get_product(self, product_id: str) -> CanonicalProduct:
        raw = await self._call("GET", f"/products/{product_id}")
        return (await self._map_products([raw]))[0]

    async def _create_product(self, product: CanonicalProduct) -> CanonicalProduct:
        if product.sku:
            existing = await self._call("GET", "/products", params={"sku": product.sku})
            if isinstance(existing, list) and existing:
                product_id = str(existing[0]["id"])
                logger.info("woocommerce create_product sku=%s exists id=%s, updating", product.sku, product_id)
                fields = set(CanonicalProduct.model_fields) - {"platform", "platform_id", "variants"}
                return await self._update_product(product_id, product, fields)

        body = {"type": "simple", **self.transform_from_canonical_product(product)}
        created = await self._call("POST", "/products", json=body)
        return await self._get_product(str(created.get("id")))

    async def _update_product(self, product_id: str, patch: CanonicalProduct, fields: set) -> CanonicalProduct:
        body = self.transform_from_canonical_product(patch, fields)
        if body:
            await self._call("PUT", f"/products/{product_id}", json=body)
        return await self._get_product(product_id)

    async def _delete_product(self, product_id: str) -> bool:
        await self._delete_idempotent(f"/products/{product_id}", params={"force": "true"})
        logger.info("woocommerce product deleted id=%s", product_id)
        return True

    def product_payload_fragments(self, product: CanonicalProduct) -> Dict[str, Dict[str, Any]]:
        if product.compare_at_price is not None and product.compare_at_price > product.price:
            prices = {"regular_price": f"{product.compare_at_price:.2f}", "sale_price": f"{product.price:.2f}"}
        else:
            prices = {"regular_price": f"{product.price:.2f}", "sale_price": ""}
        return {
            "title": {"name": product.title},
            "sku": {"sku": product.sku},
            "description": {"description": product.description},
            "price": prices,
            "compare_at_price": prices,
            "inventory_quantity": {"stock_quantity": product.inventory_quantity},
            "inventory_tracked": {"manage_stock": product.inventory_tracked},
            "status": {"status": PRODUCT_STATUS_TO_PLATFORM[product.status]},
            "tags": {"tags": [{"name": t} for t in product.tags]},
            "images": {"images": [{"src": src} for src in product.images]},
        }

    def transform_to_canonical_product(self, raw: Mapping[str, Any]) -> CanonicalProduct:
        return map_product(raw)

    # -- Inventory ----------------------------------------------------------

    async def _get_inventory(self, product_ids: List[str]) -> List[CanonicalInventory]:
        if product_ids:
            products: List[Dict[str, Any]] = []
            for batch in chunked(product_ids, PER_PAGE):
                products.extend(await self._list_all("/products", include=",".join(batch)))
        else:
            products = await self._list_all("/products")

        variations = await gather_bounded(products, self._variations, limit=self.detail_concurrency)
        records: List[CanonicalInventory] = []
        for product, product_variations in zip(products, variations):
            if product_variations:
                records.extend(map_inventory(v, str(product["id"])) for v in product_variations)
            else:
                records.append(map_inventory(product))
        return records

    async def _update_inventory(self, product_id: str, quantity: int, variant_id: Optional[str]) -> CanonicalInventory:
        body = {"manage_stock": True, "stock_quantity": quantity}
        if variant_id:
            raw = await self._call("PUT", f"/products/{product_id}/variations/{variant_id}", json=body)
            record = map_inventory(raw, product_id)
        else:
            raw = await self._call("PUT", f"/products/{product_id}", json=body)
            record = map_inventory(raw)
        logger.info("woocommerce update_inventory product_id=%s variant_id=%s qty=%s", product_id, variant_id, quantity)
        return record

    def transform_to_canonical_inventory(self, raw: Mapping[str, Any]) -> CanonicalInventory:
        return map_inventory(raw)

    # -- Orders -------------------------------------------------------------

    async def _fetch_orders_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._list_page("/orders", cursor, filters)
        return Page(items=[self.transform_to_canonical_order(o) for o in raw], next_cursor=next_cursor)

    async def _get_order(self, order_id: str) -> CanonicalOrder:
        return self.transform_to_canonical_order(await self._call("GET", f"/orders/{order_id}"))

    async def _update_order_status(self, order_id: str, status: str) -> CanonicalOrder:
        current = await self._call("GET", f"/orders/{order_id}")
        if current.get("status") == status:
            return self.transform_to_canonical_order(current)
        updated = await self._call("PUT", f"/orders/{order_id}", json={"status": status})
        return self.transform_to_canonical_order(updated)

    async def _fulfill_order(self, order_id: str, fulfillment: FulfillmentRequest) -> CanonicalOrder:
        if fulfillment.tracking_number:
            notes = await self._call("GET", f"/orders/{order_id}/notes")
            if any(fulfillment.tracking_number in to_str(n.get("note")) for n in notes or []):
                logger.info("woocommerce fulfillment exists order_id=%s tracking=%s", order_id, fulfillment.tracking_number)
                return await self._get_order(order_id)
            note = f"Shipped via {fulfillment.carrier or 'carrier'}: {fulfillment.tracking_number}"
            if fulfillment.tracking_url:
                note = f"{note} ({fulfillment.tracking_url})"
            await self._call(
                "POST", f"/orders/{order_id}/notes",
                json={"note": note, "customer_note": fulfillment.notify_customer},
            )
        return await self._update_order_status(order_id, self.ORDER_STATUS_TO_PLATFORM["fulfilled"])

    def transform_to_canonical_order(self, raw: Mapping[str, Any]) -> CanonicalOrder:
        order = map_order(raw)
        if not order.totals_reconcile(self.settings.order_total_tolerance):
            logger.warning("woocommerce order totals do not reconcile id=%s", order.platform_id)
        return order

    # -- Customers ----------------------------------------------------------

    async def _fetch_customers_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._list_page("/customers", cursor, filters)
        return Page(items=[self._map_customer(c) for c in raw], next_cursor=next_cursor)

    async def _get_customer(self, customer_id: str) -> CanonicalCustomer:
        return self._map_customer(await self._call("GET", f"/customers/{customer_id}"))

    def _map_customer(self, raw: Mapping[str, Any]) -> CanonicalCustomer:
        return map_customer(raw)

    # -- Webhooks -----------------------------------------------------------

    async def _register_webhook(self, topic: str, platform_topic: str, address: str) -> WebhookSubscription:
        hooks = await self._list_all("/webhooks")
        hook = next(
            (h for h in hooks if h.get("topic") == platform_topic and h.get("delivery_url") == address), None
        )
        if hook is None:
            body = {
                "name": f"{self.settings.woocommerce_app_name} {platform_topic}",
                "topic": platform_topic,
                "delivery_url": address,
                "status": "active",
            }
            if self.settings.woocommerce_webhook_secret:
                body["secret"] = self.settings.woocommerce_webhook_secret
            hook = await self._call("POST", "/webhooks", json=body)
        return WebhookSubscription(
            id=str(hook.get("id")),
            platform=self.platform,
            topic=topic,
            platform_topic=platform_topic,
            address=address,
            active=hook.get("status", "active") == "active",
        )

    async def _unregister_webhook(self, subscription_id: str) -> bool:
        return await self._delete_idempotent(f"/webhooks/{subscription_id}", params={"force": "true"})
