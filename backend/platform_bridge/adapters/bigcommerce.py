"""
BigCommerce adapter — catalog and customers on REST v3, orders on v2.

Auth: authorization-code OAuth; the token response carries the store
context ("stores/{hash}") which selects the API base URL. Tokens do not
expire. v2 returns RFC 2822 dates and 204 for empty order pages.
Version: 1.0.0
"""
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from platform_bridge.adapters.base import (
    FulfillmentRequest,
    Page,
    PlatformAdapter,
    TokenResponse,
    WebhookSubscription,
    lookup_status,
)
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
from platform_bridge.utils.webhook_signatures import BIGCOMMERCE_TOKEN_HEADER

logger = logging.getLogger("bigcommerce_adapter")

API_HOST = "https://api.bigcommerce.com"
LOGIN_HOST = "https://login.bigcommerce.com"
DEFAULT_SCOPES = "store_v2_products store_v2_orders store_v2_customers store_v2_information"
PRODUCT_INCLUDE = "variants,images,custom_fields"
PAGE_LIMIT = 250
ID_BATCH = 50

# Keyed by status_id. Default: unfulfilled
FULFILLMENT_STATUS_MAP = {
    0: FulfillmentStatus.UNFULFILLED,   # Incomplete
    1: FulfillmentStatus.UNFULFILLED,   # Pending
    2: FulfillmentStatus.FULFILLED,     # Shipped
    3: FulfillmentStatus.PARTIAL,       # Partially Shipped
    5: FulfillmentStatus.CANCELLED,     # Cancelled
    6: FulfillmentStatus.CANCELLED,     # Declined
    7: FulfillmentStatus.UNFULFILLED,   # Awaiting Payment
    8: FulfillmentStatus.UNFULFILLED,   # Awaiting Pickup
    9: FulfillmentStatus.UNFULFILLED,   # Awaiting Shipment
    10: FulfillmentStatus.FULFILLED,    # Completed
    11: FulfillmentStatus.UNFULFILLED,  # Awaiting Fulfillment
}

# Keyed by payment_status. Default: pending
FINANCIAL_STATUS_MAP = {
    "captured": FinancialStatus.PAID,
    "paid": FinancialStatus.PAID,
    "partially refunded": FinancialStatus.PAID,
    "refunded": FinancialStatus.REFUNDED,
    "void": FinancialStatus.VOIDED,
    "voided": FinancialStatus.VOIDED,
}


def store_hash_from_context(context: Optional[str]) -> Optional[str]:
    """'stores/abc123' -> 'abc123'."""
    if not context:
        return None
    return context.split("/", 1)[-1] or None


# ---------------------------------------------------------------------------
# Mapping (pure)
# ---------------------------------------------------------------------------

def map_address(raw: Optional[Mapping[str, Any]]) -> CanonicalAddress:
    raw = raw or {}
    return CanonicalAddress(
        first_name=to_str(raw.get("first_name")),
        last_name=to_str(raw.get("last_name")),
        company=to_str(raw.get("company")),
        address1=to_str(raw.get("street_1") or raw.get("address1")),
        address2=to_str(raw.get("street_2") or raw.get("address2")),
        city=to_str(raw.get("city")),
        province=to_str(raw.get("state") or raw.get("state_or_province")),
        country=to_str(raw.get("country")),
        country_code=to_str(raw.get("country_iso2") or raw.get("country_code")),
        zip=to_str(raw.get("zip") or raw.get("postal_code")),
        phone=to_str(raw.get("phone")),
    )


def _option_variants(raw: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    """Variants that carry options; every product also has one base variant."""
    return [v for v in raw.get("variants") or [] if v.get("option_values")]


def map_variant(raw: Mapping[str, Any]) -> CanonicalVariant:
    options = {
        to_str(o.get("option_display_name")): to_str(o.get("label"))
        for o in raw.get("option_values") or []
    }
    price = raw.get("price") if raw.get("price") is not None else raw.get("calculated_price")
    return CanonicalVariant(
        platform_id=to_str(raw.get("id")),
        product_id=to_str(raw.get("product_id")),
        sku=to_str(raw.get("sku")),
        title=" / ".join(options.values()),
        price=to_money(price),
        compare_at_price=to_optional_money(raw.get("retail_price")) or None,
        inventory_quantity=to_int(raw.get("inventory_level")),
        weight=to_float(raw.get("weight") or raw.get("calculated_weight")),
        options=options,
        image=raw.get("image_url") or None,
        barcode=raw.get("upc") or None,
    )


def map_product(raw: Mapping[str, Any], store_hash: Optional[str] = None) -> CanonicalProduct:
    images = [img for img in raw.get("images") or [] if isinstance(img, Mapping)]
    images.sort(key=lambda img: (not img.get("is_thumbnail"), to_int(img.get("sort_order"))))
    image_urls = [img.get("url_standard") for img in images if img.get("url_standard")]
    variants = [map_variant(v) for v in _option_variants(raw)]
    product_id = to_str(raw.get("id"))
    custom_fields = {to_str(f.get("name")): f.get("value") for f in raw.get("custom_fields") or []}
    metafields: Dict[str, Any] = {k: v for k, v in custom_fields.items() if k}
    if raw.get("brand_id"):
        metafields["brand_id"] = raw.get("brand_id")
    if (raw.get("custom_url") or {}).get("url"):
        metafields["custom_url"] = raw["custom_url"]["url"]

    return CanonicalProduct(
        platform=Platform.BIGCOMMERCE,
        platform_id=product_id,
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("name")),
        description=to_str(raw.get("description")),
        product_type=to_str(raw.get("type")),
        tags=split_tags(raw.get("search_keywords")),
        price=to_money(raw.get("price")),
        compare_at_price=to_optional_money(raw.get("retail_price")) or None,
        cost_per_item=to_optional_money(raw.get("cost_price")) or None,
        inventory_quantity=to_int(raw.get("inventory_level")),
        inventory_tracked=(raw.get("inventory_tracking") or "none") != "none",
        has_variants=bool(variants),
        variants=variants,
        images=image_urls,
        featured_image=image_urls[0] if image_urls else None,
        status=ProductStatus.ACTIVE if raw.get("is_visible") else ProductStatus.DRAFT,
        seo_title=to_str(raw.get("page_title")),
        seo_description=to_str(raw.get("meta_description")),
        created_at=to_iso8601(raw.get("date_created")),
        updated_at=to_iso8601(raw.get("date_modified")),
        platform_url=(
            f"https://store-{store_hash}.mybigcommerce.com/manage/products/{product_id}/edit" if store_hash else None
        ),
        metafields=metafields,
    )


def map_inventory(raw: Mapping[str, Any]) -> List[CanonicalInventory]:
    """One record per option variant, or one for a simple product."""
    product_id = to_str(raw.get("id"))
    updated = to_iso8601(raw.get("date_modified"))
    variants = _option_variants(raw)
    if not variants:
        level = to_int(raw.get("inventory_level"))
        return [CanonicalInventory(
            platform=Platform.BIGCOMMERCE,
            platform_id=product_id,
            product_id=product_id,
            sku=to_str(raw.get("sku")),
            quantity=level,
            available_quantity=level,
            updated_at=updated,
        )]
    records = []
    for variant in variants:
        level = to_int(variant.get("inventory_level"))
        records.append(CanonicalInventory(
            platform=Platform.BIGCOMMERCE,
            platform_id=to_str(variant.get("id")),
            product_id=product_id,
            variant_id=to_str(variant.get("id")),
            sku=to_str(variant.get("sku")),
            quantity=level,
            available_quantity=level,
            updated_at=updated,
        ))
    return records


def map_line_item(raw: Mapping[str, Any]) -> CanonicalLineItem:
    quantity = to_quantity(raw.get("quantity"))
    discount = to_money(sum(to_float(d.get("amount")) for d in raw.get("applied_discounts") or []))
    subtotal = to_float(raw.get("total_ex_tax")) or to_float(raw.get("base_price")) * quantity
    shipped = to_int(raw.get("quantity_shipped"))
    if shipped >= quantity:
        status = FulfillmentStatus.FULFILLED
    elif shipped > 0:
        status = FulfillmentStatus.PARTIAL
    else:
        status = FulfillmentStatus.UNFULFILLED
    options = [to_str(o.get("display_value")) for o in raw.get("product_options") or []]
    return CanonicalLineItem(
        platform_id=to_str(raw.get("id")),
        product_id=to_id(raw.get("product_id")),
        variant_id=to_id(raw.get("variant_id")),
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("name")),
        variant_title=" / ".join(o for o in options if o),
        quantity=quantity,
        price=to_money(raw.get("base_price")),
        total_price=to_money(subtotal - discount),
        tax=to_money(raw.get("total_tax")),
        discount=discount,
        fulfillment_status=status,
    )


def map_order(
    raw: Mapping[str, Any],
    products: Optional[List[Mapping[str, Any]]] = None,
    shipping_addresses: Optional[List[Mapping[str, Any]]] = None,
    store_hash: Optional[str] = None,
) -> CanonicalOrder:
    billing = raw.get("billing_address") or {}
    products = products if products is not None else raw.get("products") or []
    shipping_addresses = shipping_addresses if shipping_addresses is not None else raw.get("shipping_addresses") or []
    if not isinstance(products, list):
        products = []
    if not isinstance(shipping_addresses, list):
        shipping_addresses = []
    shipping = (
        to_float(raw.get("shipping_cost_ex_tax"))
        + to_float(raw.get("handling_cost_ex_tax"))
        + to_float(raw.get("wrapping_cost_ex_tax"))
    )
    order_id = to_str(raw.get("id"))
    name = " ".join(p for p in (to_str(billing.get("first_name")), to_str(billing.get("last_name"))) if p)
    status_id = to_int(raw.get("status_id"))
    fulfillment = lookup_status(FULFILLMENT_STATUS_MAP, status_id, FulfillmentStatus.UNFULFILLED)

    financial = lookup_status(FINANCIAL_STATUS_MAP, raw.get("payment_status"), FinancialStatus.PENDING)
    if status_id == 4:
        financial = FinancialStatus.REFUNDED

    return CanonicalOrder(
        platform=Platform.BIGCOMMERCE,
        platform_id=order_id,
        order_number=order_id,
        customer_id=to_id(raw.get("customer_id")) if to_int(raw.get("customer_id")) else None,
        customer_email=to_str(billing.get("email")),
        customer_name=name,
        customer_phone=to_str(billing.get("phone")),
        line_items=[map_line_item(p) for p in products],
        total_price=to_money(raw.get("total_inc_tax")),
        subtotal_price=to_money(raw.get("subtotal_ex_tax")),
        total_tax=to_money(raw.get("total_tax")),
        total_shipping=to_money(shipping),
        total_discounts=to_money(to_float(raw.get("discount_amount")) + to_float(raw.get("coupon_discount"))),
        currency=to_str(raw.get("currency_code")) or "USD",
        financial_status=financial,
        fulfillment_status=fulfillment,
        cancelled_at=to_iso8601(raw.get("date_modified")) if fulfillment == FulfillmentStatus.CANCELLED else None,
        shipping_address=map_address(shipping_addresses[0] if shipping_addresses else None),
        billing_address=map_address(billing),
        created_at=to_iso8601(raw.get("date_created")),
        updated_at=to_iso8601(raw.get("date_modified")),
        processed_at=to_iso8601(raw.get("date_created")),
        fulfilled_at=to_iso8601(raw.get("date_shipped")),
        platform_url=f"https://store-{store_hash}.mybigcommerce.com/manage/orders/{order_id}" if store_hash else None,
        notes=to_str(raw.get("customer_message")),
        metafields={"status": raw.get("status")} if raw.get("status") else {},
    )


def map_customer(raw: Mapping[str, Any]) -> CanonicalCustomer:
    addresses = [map_address(a) for a in raw.get("addresses") or []]
    return CanonicalCustomer(
        platform=Platform.BIGCOMMERCE,
        platform_id=to_str(raw.get("id")),
        email=to_str(raw.get("email")),
        first_name=to_str(raw.get("first_name")),
        last_name=to_str(raw.get("last_name")),
        phone=to_str(raw.get("phone")),
        default_address=addresses[0] if addresses else None,
        addresses=addresses,
        accepts_marketing=bool(raw.get("accepts_product_review_abandoned_cart_emails")),
        created_at=to_iso8601(raw.get("date_created")),
        updated_at=to_iso8601(raw.get("date_modified")),
        notes=to_str(raw.get("notes")),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class BigCommerceAdapter(PlatformAdapter):
    platform = Platform.BIGCOMMERCE
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
        "order.created": "store/order/created",
        "order.updated": "store/order/updated",
        "product.created": "store/product/created",
        "product.updated": "store/product/updated",
        "product.deleted": "store/product/deleted",
        "inventory.updated": "store/product/inventory/updated",
        "customer.created": "store/customer/created",
        "customer.updated": "store/customer/updated",
        "customer.deleted": "store/customer/deleted",
        "app.uninstalled": "store/app/uninstalled",
    }

    ORDER_STATUS_TO_PLATFORM = {
        "pending": 1,
        "unfulfilled": 11,
        "paid": 11,
        "partial": 3,
        "fulfilled": 10,
        "cancelled": 5,
        "voided": 5,
        "refunded": 4,
    }

    def base_url(self) -> str:
        return f"{API_HOST}/stores/{self.credentials.store_hash or ''}"

    def default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {"X-Auth-Token": access_token}

    def rate_limit_scope(self) -> Optional[str]:
        return self.credentials.store_hash

    async def _request(self, method: str, path: str, **kwargs):
        if not self.credentials.store_hash:
            raise ValidationError("store_hash is required for BigCommerce API calls", platform="bigcommerce")
        return await super()._request(method, path, **kwargs)

    async def _probe(self) -> str:
        data = await self._call("GET", "/v2/store")
        return data.get("name") or self.credentials.store_hash

    # -- OAuth --------------------------------------------------------------

    def _client_id(self) -> str:
        return self.credentials.client_id or self.settings.bigcommerce_client_id or ""

    def get_auth_url(self, state: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None) -> str:
        params = {
            "client_id": self._client_id(),
            "redirect_uri": redirect_uri or self.settings.oauth_callback_url(self.platform.value),
            "response_type": "code",
            "scope": " ".join(scopes) if scopes else DEFAULT_SCOPES,
            "state": state,
        }
        return f"{LOGIN_HOST}/oauth2/authorize?{urlencode(params)}"

    async def _exchange_code(self, code: str, redirect_uri: Optional[str], **params) -> TokenResponse:
        body = {
            "client_id": self._client_id(),
            "client_secret": self.credentials.client_secret or self.settings.bigcommerce_client_secret,
            "code": code,
            "scope": params.get("scope", DEFAULT_SCOPES),
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri or self.settings.oauth_callback_url(self.platform.value),
            "context": params.get("context", ""),
        }
        data = await self.http.request_json("POST", f"{LOGIN_HOST}/oauth2/token", json=body)
        store_hash = store_hash_from_context(data.get("context"))
        if store_hash:
            self.credentials.store_hash = store_hash
            self.http.base_url = self.base_url()
        return TokenResponse(
            access_token=data.get("access_token", ""),
            scope=data.get("scope"),
            extra={"store_hash": store_hash, "user": data.get("user")},
        )

    # -- Products -----------------------------------------------------------

    async def _v3_page(self, path: str, cursor: Optional[str], params: Mapping[str, Any]) -> tuple:
        page = int(cursor or 1)
        data = await self._call("GET", path, params={"limit": PAGE_LIMIT, **params, "page": page})
        pagination = (data.get("meta") or {}).get("pagination") or {}
        total_pages = to_int(pagination.get("total_pages"))
        next_cursor = str(page + 1) if page < total_pages else None
        return data.get("data") or [], next_cursor

    async def _fetch_products_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._v3_page(
            "/v3/catalog/products", cursor, {"include": PRODUCT_INCLUDE, **filters}
        )
        return Page(items=[self.transform_to_canonical_product(p) for p in raw], next_cursor=next_cursor)

    async def _get_product_raw(self, product_id: str) -> Dict[str, Any]:
        data = await self._call("GET", f"/v3/catalog/products/{product_id}", params={"include": PRODUCT_INCLUDE})
        return data.get("data") or {}

    async def _get_product(self, product_id: str) -> CanonicalProduct:
        return self.transform_to_canonical_product(await self._get_product_raw(product_id))

    async def _create_product(self, product: CanonicalProduct) -> CanonicalProduct:
        if product.sku:
            found = await self._call("GET", "/v3/catalog/products", params={"sku": product.sku})
            existing = found.get("data") or []
            if existing:
                product_id = str(existing[0]["id"])
                logger.info("bigcommerce create_product sku=%s exists id=%s, updating", product.sku, product_id)
                fields = set(CanonicalProduct.model_fields) - {"platform", "platform_id", "variants"}
                return await self._update_product(product_id, product, fields)

        body = {"type": "physical", "weight": 0, **self.transform_from_canonical_product(product)}
        data = await self._call("POST", "/v3/catalog/products", json=body)
        created = data.get("data") or {}
        return await self._get_product(str(created.get("id")))

    async def _update_product(self, product_id: str, patch: CanonicalProduct, fields: set) -> CanonicalProduct:
        body = self.transform_from_canonical_product(patch, fields)
        if body:
            await self._call("PUT", f"/v3/catalog/products/{product_id}", json=body)
        return await self._get_product(product_id)

    async def _delete_product(self, product_id: str) -> bool:
        await self._delete_idempotent(f"/v3/catalog/products/{product_id}")
        logger.info("bigcommerce product deleted id=%s", product_id)
        return True

    def product_payload_fragments(self, product: CanonicalProduct) -> Dict[str, Dict[str, Any]]:
        return {
            "title": {"name": product.title},
            "sku": {"sku": product.sku},
            "description": {"description": product.description},
            "price": {"price": product.price},
            "compare_at_price": {"retail_price": product.compare_at_price or 0},
            "cost_per_item": {"cost_price": product.cost_per_item or 0},
            "inventory_quantity": {"inventory_level": product.inventory_quantity},
            "inventory_tracked": {"inventory_tracking": "product" if product.inventory_tracked else "none"},
            "status": {"is_visible": product.status == ProductStatus.ACTIVE},
            "tags": {"search_keywords": ",".join(product.tags)},
            "seo_title": {"page_title": product.seo_title},
            "seo_description": {"meta_description": product.seo_description},
            "images": {
                "images": [{"image_url": url, "is_thumbnail": idx == 0} for idx, url in enumerate(product.images)]
            },
        }

    def transform_to_canonical_product(self, raw: Mapping[str, Any]) -> CanonicalProduct:
        return map_product(raw, self.credentials.store_hash)

    # -- Inventory ----------------------------------------------------------

    async def _get_inventory(self, product_ids: List[str]) -> List[CanonicalInventory]:
        products: List[Dict[str, Any]] = []
        if product_ids:
            for batch in chunked(product_ids, ID_BATCH):
                data = await self._call(
                    "GET", "/v3/catalog/products",
                    params={"id:in": ",".join(batch), "include": "variants", "limit": PAGE_LIMIT},
                )
                products.extend(data.get("data") or [])
        else:
            cursor = None
            while True:
                raw, cursor = await self._v3_page("/v3/catalog/products", cursor, {"include": "variants"})
                products.extend(raw)
                if not cursor:
                    break
        records: List[CanonicalInventory] = []
        for product in products:
            records.extend(map_inventory(product))
        return records

    async def _update_inventory(self, product_id: str, quantity: int, variant_id: Optional[str]) -> CanonicalInventory:
        product = await self._get_product_raw(product_id)
        variants = _option_variants(product)
        if variant_id is None and variants:
            variant_id = str(variants[0]["id"])

        body = {"inventory_level": quantity}
        if variant_id:
            await self._call("PUT", f"/v3/catalog/products/{product_id}/variants/{variant_id}", json=body)
            await self._call("PUT", f"/v3/catalog/products/{product_id}", json={"inventory_tracking": "variant"})
        else:
            await self._call(
                "PUT", f"/v3/catalog/products/{product_id}", json={**body, "inventory_tracking": "product"}
            )
        logger.info("bigcommerce update_inventory product_id=%s variant_id=%s qty=%s", product_id, variant_id, quantity)

        variant = next((v for v in variants if str(v.get("id")) == str(variant_id)), {}) if variant_id else {}
        return CanonicalInventory(
            platform=Platform.BIGCOMMERCE,
            platform_id=str(variant_id or product_id),
            product_id=product_id,
            variant_id=variant_id,
            sku=to_str(variant.get("sku") or product.get("sku")),
            quantity=quantity,
            available_quantity=quantity,
        )

    def transform_to_canonical_inventory(self, raw: Mapping[str, Any]) -> CanonicalInventory:
        return map_inventory(raw)[0]

    # -- Orders -------------------------------------------------------------

    async def _v2_list(self, path: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        data = await self._call("GET", path, params=params)
        return data if isinstance(data, list) else []

    async def _with_details(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        order_id = raw["id"]
        products, addresses = await asyncio.gather(
            self._v2_list(f"/v2/orders/{order_id}/products", {"limit": PAGE_LIMIT}),
            self._v2_list(f"/v2/orders/{order_id}/shipping_addresses"),
        )
        return {**raw, "products": products, "shipping_addresses": addresses}

    async def _fetch_orders_page(self, cursor: Optional[str], **filters) -> Page:
        page = int(cursor or 1)
        limit = int(filters.pop("limit", PAGE_LIMIT))
        raw_orders = await self._v2_list("/v2/orders", {**filters, "limit": limit, "page": page})
        enriched = await gather_bounded(raw_orders, self._with_details, limit=self.detail_concurrency)
        return Page(
            items=[self.transform_to_canonical_order(o) for o in enriched],
            next_cursor=str(page + 1) if len(raw_orders) >= limit else None,
        )

    async def _get_order(self, order_id: str) -> CanonicalOrder:
        raw = await self._call("GET", f"/v2/orders/{order_id}")
        return self.transform_to_canonical_order(await self._with_details(raw))

    async def _update_order_status(self, order_id: str, status_id: int) -> CanonicalOrder:
        current = await self._call("GET", f"/v2/orders/{order_id}")
        if to_int(current.get("status_id")) != status_id:
            await self._call("PUT", f"/v2/orders/{order_id}", json={"status_id": status_id})
        return await self._get_order(order_id)

    async def _fulfill_order(self, order_id: str, fulfillment: FulfillmentRequest) -> CanonicalOrder:
        shipments = await self._v2_list(f"/v2/orders/{order_id}/shipments")
        if fulfillment.tracking_number and any(
            s.get("tracking_number") == fulfillment.tracking_number for s in shipments
        ):
            logger.info("bigcommerce shipment exists order_id=%s tracking=%s", order_id, fulfillment.tracking_number)
            return await self._get_order(order_id)

        raw = await self._with_details({"id": order_id})
        addresses = raw["shipping_addresses"]
        if not addresses:
            raise ValidationError(f"order {order_id} has no shipping address", platform="bigcommerce")

        if fulfillment.line_items:
            items = [{"order_product_id": int(fl.line_item_id), "quantity": fl.quantity} for fl in fulfillment.line_items]
        else:
            items = [
                {"order_product_id": p["id"], "quantity": to_int(p.get("quantity")) - to_int(p.get("quantity_shipped"))}
                for p in raw["products"]
                if to_int(p.get("quantity")) > to_int(p.get("quantity_shipped"))
            ]
        if not items:
            logger.info("bigcommerce fulfill_order nothing to ship order_id=%s", order_id)
            return await self._get_order(order_id)

        body = {
            "order_address_id": addresses[0]["id"],
            "tracking_number": fulfillment.tracking_number or "",
            "tracking_carrier": (fulfillment.carrier or "").lower(),
            "items": items,
        }
        await self._call("POST", f"/v2/orders/{order_id}/shipments", json=body)
        if not fulfillment.line_items:
            await self._update_order_status(order_id, self.ORDER_STATUS_TO_PLATFORM["fulfilled"])
        return await self._get_order(order_id)

    def transform_to_canonical_order(self, raw: Mapping[str, Any]) -> CanonicalOrder:
        order = map_order(raw, store_hash=self.credentials.store_hash)
        if not order.totals_reconcile(self.settings.order_total_tolerance):
            logger.warning("bigcommerce order totals do not reconcile id=%s", order.platform_id)
        return order

    # -- Customers ----------------------------------------------------------

    async def _fetch_customers_page(self, cursor: Optional[str], **filters) -> Page:
        raw, next_cursor = await self._v3_page("/v3/customers", cursor, {"include": "addresses", **filters})
        return Page(items=[self._map_customer(c) for c in raw], next_cursor=next_cursor)

    async def _get_customer(self, customer_id: str) -> CanonicalCustomer:
        data = await self._call("GET", "/v3/customers", params={"id:in": customer_id, "include": "addresses"})
        customers = data.get("data") or []
        if not customers:
            raise PlatformAPIError("bigcommerce", f"customer {customer_id} not found", status_code=404)
        return self._map_customer(customers[0])

    def _map_customer(self, raw: Mapping[str, Any]) -> CanonicalCustomer:
        return map_customer(raw)

    # -- Webhooks -----------------------------------------------------------

    async def _register_webhook(self, topic: str, platform_topic: str, address: str) -> WebhookSubscription:
        hooks = (await self._call("GET", "/v3/hooks")).get("data") or []
        hook = next((h for h in hooks if h.get("scope") == platform_topic and h.get("destination") == address), None)
        if hook is None:
            headers = {}
            if self.settings.bigcommerce_webhook_token:
                headers[BIGCOMMERCE_TOKEN_HEADER] = self.settings.bigcommerce_webhook_token
            data = await self._call(
                "POST", "/v3/hooks",
                json={"scope": platform_topic, "destination": address, "is_active": True, "headers": headers},
            )
            hook = data.get("data") or {}
        return WebhookSubscription(
            id=str(hook.get("id")),
            platform=self.platform,
            topic=topic,
            platform_topic=platform_topic,
            address=address,
            active=bool(hook.get("is_active", True)),
        )

    async def _unregister_webhook(self, subscription_id: str) -> bool:
        return await self._delete_idempotent(f"/v3/hooks/{subscription_id}")
