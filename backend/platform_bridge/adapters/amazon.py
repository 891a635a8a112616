"""
Amazon adapter — Selling Partner API.

Auth: Login with Amazon (LWA) refresh tokens, one-hour access tokens sent
as x-amz-access-token. Notification destinations need a grantless
client_credentials token instead.

Amazon listings are keyed by seller SKU, so the canonical platform_id of
a product is its SKU and the ASIN is kept in metafields.

Amazon never exposes buyer accounts, so customer operations are
unsupported rather than empty.
Version: 1.0.0
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, urlencode

from platform_bridge.adapters.base import (
    FulfillmentRequest,
    Page,
    PlatformAdapter,
    TokenResponse,
    WebhookSubscription,
    lookup_status,
)
from platform_bridge.core.exceptions import AuthenticationError, PlatformAPIError, ValidationError
from platform_bridge.schemas.canonical import (
    CanonicalAddress,
    CanonicalInventory,
    CanonicalLineItem,
    CanonicalOrder,
    CanonicalProduct,
    Capability,
    FinancialStatus,
    FulfillmentStatus,
    Platform,
    ProductStatus,
)
from platform_bridge.utils.concurrency import chunked, gather_bounded
from platform_bridge.utils.type_converters import (
    amount_of,
    to_int,
    to_iso8601,
    to_money,
    to_quantity,
    to_str,
)

logger = logging.getLogger("amazon_adapter")

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
NOTIFICATIONS_SCOPE = "sellingpartnerapi::notifications"
LISTINGS_VERSION = "2021-08-01"
LISTING_INCLUDED_DATA = "summaries,attributes,offers,fulfillmentAvailability"
LISTINGS_PAGE_SIZE = 20
FBA_SKU_BATCH = 50
DEFAULT_ORDER_LOOKBACK_DAYS = 30

REGION_HOSTS = {
    "NA": "https://sellingpartnerapi-na.amazon.com",
    "EU": "https://sellingpartnerapi-eu.amazon.com",
    "FE": "https://sellingpartnerapi-fe.amazon.com",
}

SELLER_CENTRAL_HOSTS = {
    "NA": "https://sellercentral.amazon.com",
    "EU": "https://sellercentral-europe.amazon.com",
    "FE": "https://sellercentral.amazon.co.jp",
}

# Default: unfulfilled
FULFILLMENT_STATUS_MAP = {
    "pending": FulfillmentStatus.UNFULFILLED,
    "unshipped": FulfillmentStatus.UNFULFILLED,
    "pendingavailability": FulfillmentStatus.UNFULFILLED,
    "unfulfillable": FulfillmentStatus.UNFULFILLED,
    "partiallyshipped": FulfillmentStatus.PARTIAL,
    "shipped": FulfillmentStatus.FULFILLED,
    "invoiceunconfirmed": FulfillmentStatus.FULFILLED,
    "canceled": FulfillmentStatus.CANCELLED,
}

# Amazon only releases an order for shipment once payment is captured.
# Default: pending
FINANCIAL_STATUS_MAP = {
    "pending": FinancialStatus.PENDING,
    "pendingavailability": FinancialStatus.PENDING,
    "unshipped": FinancialStatus.PAID,
    "partiallyshipped": FinancialStatus.PAID,
    "shipped": FinancialStatus.PAID,
    "invoiceunconfirmed": FinancialStatus.PAID,
    "unfulfillable": FinancialStatus.PAID,
    "canceled": FinancialStatus.VOIDED,
}

NOTIFICATION_PAYLOAD_VERSION = "1.0"


# ---------------------------------------------------------------------------
# Mapping (pure)
# ---------------------------------------------------------------------------

def attribute_value(attributes: Mapping[str, Any], name: str, default: Any = "") -> Any:
    """First ``value`` of a listings attribute, e.g. item_name -> [{"value": ...}]."""
    values = attributes.get(name) or []
    if values and isinstance(values[0], Mapping):
        return values[0].get("value", default)
    return default


def listing_price(item: Mapping[str, Any]) -> float:
    for offer in item.get("offers") or []:
        price = offer.get("price") or {}
        if price.get("amount") is not None:
            return to_money(price.get("amount"))
    for offer in (item.get("attributes") or {}).get("purchasable_offer") or []:
        for our_price in offer.get("our_price") or []:
            for schedule in our_price.get("schedule") or []:
                return to_money(schedule.get("value_with_tax"))
    return 0.0


def listing_quantity(item: Mapping[str, Any]) -> int:
    for entry in item.get("fulfillmentAvailability") or []:
        if entry.get("quantity") is not None:
            return to_int(entry.get("quantity"))
    for entry in (item.get("attributes") or {}).get("fulfillment_availability") or []:
        if entry.get("quantity") is not None:
            return to_int(entry.get("quantity"))
    return 0


def map_product(item: Mapping[str, Any], currency: str = "USD") -> CanonicalProduct:
    summary = (item.get("summaries") or [{}])[0]
    attributes = item.get("attributes") or {}
    statuses = [str(s).upper() for s in summary.get("status") or []]
    image = (summary.get("mainImage") or {}).get("link")
    sku = to_str(item.get("sku"))
    asin = summary.get("asin")
    marketplace = summary.get("marketplaceId")

    return CanonicalProduct(
        platform=Platform.AMAZON,
        platform_id=sku,
        sku=sku,
        title=to_str(summary.get("itemName") or attribute_value(attributes, "item_name")),
        description=to_str(attribute_value(attributes, "product_description")),
        vendor=to_str(attribute_value(attributes, "brand")),
        product_type=to_str(summary.get("productType")),
        price=listing_price(item),
        currency=currency,
        inventory_quantity=listing_quantity(item),
        images=[image] if image else [],
        featured_image=image,
        status=ProductStatus.ACTIVE if "BUYABLE" in statuses else ProductStatus.DRAFT,
        created_at=to_iso8601(summary.get("createdDate")),
        updated_at=to_iso8601(summary.get("lastUpdatedDate")),
        platform_url=f"https://www.amazon.com/dp/{asin}" if asin else None,
        metafields={k: v for k, v in (("asin", asin), ("marketplace_id", marketplace)) if v},
    )


def map_inventory(summary: Mapping[str, Any]) -> CanonicalInventory:
    details = summary.get("inventoryDetails") or {}
    fulfillable = to_int(details.get("fulfillableQuantity"))
    reserved = to_int((details.get("reservedQuantity") or {}).get("totalReservedQuantity"))
    incoming = sum(
        to_int(details.get(key))
        for key in ("inboundWorkingQuantity", "inboundShippedQuantity", "inboundReceivingQuantity")
    )
    total = summary.get("totalQuantity")
    sku = to_str(summary.get("sellerSku"))
    return CanonicalInventory(
        platform=Platform.AMAZON,
        platform_id=to_str(summary.get("fnSku")) or sku,
        product_id=sku,
        sku=sku,
        quantity=to_int(total) if total is not None else fulfillable + reserved,
        reserved_quantity=reserved,
        available_quantity=fulfillable,
        incoming_quantity=incoming,
        location_name="FBA",
        updated_at=to_iso8601(summary.get("lastUpdatedTime")),
    )


def map_address(raw: Optional[Mapping[str, Any]]) -> CanonicalAddress:
    raw = raw or {}
    name = to_str(raw.get("Name"))
    first, _, last = name.partition(" ")
    return CanonicalAddress(
        first_name=first,
        last_name=last,
        address1=to_str(raw.get("AddressLine1")),
        address2=to_str(raw.get("AddressLine2")),
        city=to_str(raw.get("City")),
        province=to_str(raw.get("StateOrRegion")),
        province_code=to_str(raw.get("StateOrRegion")),
        country_code=to_str(raw.get("CountryCode")),
        zip=to_str(raw.get("PostalCode")),
        phone=to_str(raw.get("Phone")),
    )


def map_line_item(raw: Mapping[str, Any]) -> CanonicalLineItem:
    quantity = to_quantity(raw.get("QuantityOrdered"))
    # ItemPrice is the extended price for the whole line
    line_price = amount_of(raw.get("ItemPrice"))
    discount = amount_of(raw.get("PromotionDiscount"))
    shipped = to_int(raw.get("QuantityShipped"))
    if shipped >= quantity:
        status = FulfillmentStatus.FULFILLED
    elif shipped > 0:
        status = FulfillmentStatus.PARTIAL
    else:
        status = FulfillmentStatus.UNFULFILLED
    return CanonicalLineItem(
        platform_id=to_str(raw.get("OrderItemId")),
        product_id=to_str(raw.get("SellerSKU")) or None,
        sku=to_str(raw.get("SellerSKU")),
        title=to_str(raw.get("Title")),
        quantity=quantity,
        price=to_money(line_price / quantity),
        total_price=to_money(line_price - discount),
        tax=to_money(amount_of(raw.get("ItemTax"))),
        discount=to_money(discount),
        fulfillment_status=status,
    )


def map_order(raw: Mapping[str, Any], items: Optional[List[Mapping[str, Any]]] = None) -> CanonicalOrder:
    items = items if items is not None else raw.get("OrderItems") or []
    buyer = raw.get("BuyerInfo") or {}
    status = raw.get("OrderStatus")
    line_items = [map_line_item(i) for i in items]

    subtotal = sum(amount_of(i.get("ItemPrice")) for i in items)
    tax = sum(amount_of(i.get("ItemTax")) + amount_of(i.get("ShippingTax")) for i in items)
    shipping = sum(amount_of(i.get("ShippingPrice")) for i in items)
    discounts = sum(amount_of(i.get("PromotionDiscount")) + amount_of(i.get("ShippingDiscount")) for i in items)
    order_total = raw.get("OrderTotal")
    total = amount_of(order_total) if order_total else subtotal + tax + shipping - discounts

    financial = lookup_status(FINANCIAL_STATUS_MAP, status, FinancialStatus.PENDING)
    if raw.get("PaymentMethod") == "COD" and financial == FinancialStatus.PAID:
        financial = FinancialStatus.PENDING
    fulfillment = lookup_status(FULFILLMENT_STATUS_MAP, status, FulfillmentStatus.UNFULFILLED)
    order_id = to_str(raw.get("AmazonOrderId"))

    return CanonicalOrder(
        platform=Platform.AMAZON,
        platform_id=order_id,
        order_number=order_id,
        customer_email=to_str(buyer.get("BuyerEmail")),
        customer_name=to_str(buyer.get("BuyerName") or (raw.get("ShippingAddress") or {}).get("Name")),
        line_items=line_items,
        total_price=to_money(total),
        subtotal_price=to_money(subtotal),
        total_tax=to_money(tax),
        total_shipping=to_money(shipping),
        total_discounts=to_money(discounts),
        currency=to_str((order_total or {}).get("CurrencyCode")) or "USD",
        financial_status=financial,
        fulfillment_status=fulfillment,
        cancelled_at=to_iso8601(raw.get("LastUpdateDate")) if fulfillment == FulfillmentStatus.CANCELLED else None,
        shipping_address=map_address(raw.get("ShippingAddress")),
        created_at=to_iso8601(raw.get("PurchaseDate")),
        updated_at=to_iso8601(raw.get("LastUpdateDate")),
        processed_at=to_iso8601(raw.get("PurchaseDate")),
        metafields={
            k: v
            for k, v in (
                ("fulfillment_channel", raw.get("FulfillmentChannel")),
                ("marketplace_id", raw.get("MarketplaceId")),
                ("payment_method", raw.get("PaymentMethod")),
            )
            if v
        },
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class AmazonAdapter(PlatformAdapter):
    platform = Platform.AMAZON
    capabilities = frozenset({
        Capability.PRODUCTS,
        Capability.INVENTORY,
        Capability.ORDERS,
        Capability.FULFILLMENT,
        Capability.WEBHOOKS,
        Capability.OAUTH_CODE_EXCHANGE,
    })

    TOPIC_MAP = {
        "order.updated": "ORDER_CHANGE",
        "inventory.updated": "FBA_INVENTORY_AVAILABILITY_CHANGES",
        "product.updated": "LISTINGS_ITEM_STATUS_CHANGE",
    }

    refreshable = True

    def __init__(self, credentials, settings=None, **kwargs) -> None:
        self._grantless_token: Optional[str] = None
        self._grantless_expires_at = 0.0
        self._grantless_lock = asyncio.Lock()
        super().__init__(credentials, settings, **kwargs)

    @property
    def region(self) -> str:
        return (self.credentials.region or self.settings.amazon_region or "NA").upper()

    @property
    def marketplace_id(self) -> str:
        return self.credentials.marketplace_id or self.settings.amazon_marketplace_id

    @property
    def seller_id(self) -> str:
        if not self.credentials.seller_id:
            raise ValidationError("seller_id is required for Amazon listings", platform="amazon")
        return self.credentials.seller_id

    def base_url(self) -> str:
        return REGION_HOSTS.get(self.region, REGION_HOSTS["NA"])

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {"x-amz-access-token": access_token}

    def rate_limit_scope(self) -> Optional[str]:
        return self.credentials.seller_id

    def _client_credentials(self) -> Dict[str, str]:
        return {
            "client_id": self.credentials.client_id or self.settings.amazon_lwa_client_id or "",
            "client_secret": self.credentials.client_secret or self.settings.amazon_lwa_client_secret or "",
        }

    async def _lwa_token(self, form: Dict[str, str]) -> TokenResponse:
        data = await self.http.request_json("POST", LWA_TOKEN_URL, data={**form, **self._client_credentials()})
        if not data.get("access_token"):
            raise AuthenticationError("LWA token response carried no access_token", platform="amazon")
        return TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=to_int(data.get("expires_in")) or None,
            token_type=data.get("token_type"),
        )

    async def _refresh_access_token(self, refresh_token: str) -> TokenResponse:
        return await self._lwa_token({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def _grantless_expired(self) -> bool:
        return not self._grantless_token or time.time() >= self._grantless_expires_at - 60

    async def _grantless_headers(self) -> Dict[str, str]:
        if self._grantless_expired():
            async with self._grantless_lock:
                if self._grantless_expired():
                    token = await self._lwa_token({"grant_type": "client_credentials", "scope": NOTIFICATIONS_SCOPE})
                    self._grantless_token = token.access_token
                    self._grantless_expires_at = time.time() + (token.expires_in or 3600)
        return {"x-amz-access-token": self._grantless_token}

    async def _grantless_call(self, method: str, path: str, **kwargs) -> Any:
        return await self.http.request_json(method, path, headers=await self._grantless_headers(), **kwargs)

    async def _probe(self) -> str:
        data = await self._call("GET", "/sellers/v1/marketplaceParticipations")
        for participation in data.get("payload") or []:
            marketplace = participation.get("marketplace") or {}
            if marketplace.get("id") == self.marketplace_id:
                return marketplace.get("name") or self.marketplace_id
        return self.marketplace_id

    # -- OAuth --------------------------------------------------------------

    def get_auth_url(self, state: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None) -> str:
        params = {
            "application_id": self.settings.amazon_application_id or "",
            "state": state,
            "redirect_uri": redirect_uri or self.settings.oauth_callback_url(self.platform.value),
            "version": "beta",
        }
        host = SELLER_CENTRAL_HOSTS.get(self.region, SELLER_CENTRAL_HOSTS["NA"])
        return f"{host}/apps/authorize/consent?{urlencode(params)}"

    async def _exchange_code(self, code: str, redirect_uri: Optional[str], **params) -> TokenResponse:
        token = await self._lwa_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.settings.oauth_callback_url(self.platform.value),
        })
        seller_id = params.get("selling_partner_id")
        if seller_id:
            self.credentials.seller_id = seller_id
            token.extra["seller_id"] = seller_id
        return token

    # -- Products -----------------------------------------------------------

    def _listing_path(self, sku: Optional[str] = None) -> str:
        path = f"/listings/{LISTINGS_VERSION}/items/{quote(self.seller_id, safe='')}"
        return f"{path}/{quote(sku, safe='')}" if sku else path

    async def _fetch_products_page(self, cursor: Optional[str], **filters) -> Page:
        params = {
            "marketplaceIds": self.marketplace_id,
            "includedData": LISTING_INCLUDED_DATA,
            "pageSize": filters.pop("limit", LISTINGS_PAGE_SIZE),
            **filters,
        }
        if cursor:
            params["pageToken"] = cursor
        data = await self._call("GET", self._listing_path(), params=params)
        items = [self.transform_to_canonical_product(i) for i in data.get("items") or []]
        return Page(items=items, next_cursor=(data.get("pagination") or {}).get("nextToken"))

    async def _get_listing(self, sku: str) -> Dict[str, Any]:
        return await self._call(
            "GET", self._listing_path(sku),
            params={"marketplaceIds": self.marketplace_id, "includedData": LISTING_INCLUDED_DATA},
        )

    async def _get_product(self, product_id: str) -> CanonicalProduct:
        return self.transform_to_canonical_product(await self._get_listing(product_id))

    def _check_submission(self, sku: str, response: Mapping[str, Any]) -> None:
        if response.get("status") == "INVALID":
            issues = [i.get("message") for i in response.get("issues") or [] if i.get("severity") == "ERROR"]
            raise ValidationError(f"listing {sku} rejected: {'; '.join(issues) or 'invalid'}", platform="amazon")

    async def _create_product(self, product: CanonicalProduct) -> CanonicalProduct:
        if not product.sku:
            raise ValidationError("Amazon listings require a SKU", platform="amazon")
        product_type = product.product_type or product.metafields.get("product_type") or "PRODUCT"
        body = {
            "productType": product_type,
            "requirements": "LISTING",
            **self.transform_from_canonical_product(product),
        }
        # PUT replaces an existing listing for the same SKU
        response = await self._call(
            "PUT", self._listing_path(product.sku), params={"marketplaceIds": self.marketplace_id}, json=body
        )
        self._check_submission(product.sku, response)
        logger.info("amazon listing submitted sku=%s status=%s", product.sku, response.get("status"))
        return await self._get_product(product.sku)

    async def _patch_listing(self, sku: str, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        current = await self._get_listing(sku)
        product_type = ((current.get("summaries") or [{}])[0]).get("productType") or "PRODUCT"
        patches = [
            {"op": "replace", "path": f"/attributes/{name}", "value": value}
            for name, value in attributes.items()
        ]
        response = await self._call(
            "PATCH", self._listing_path(sku),
            params={"marketplaceIds": self.marketplace_id},
            json={"productType": product_type, "patches": patches},
        )
        self._check_submission(sku, response)
        return response

    async def _update_product(self, product_id: str, patch: CanonicalProduct, fields: set) -> CanonicalProduct:
        attributes = self.transform_from_canonical_product(patch, fields).get("attributes") or {}
        if attributes:
            await self._patch_listing(product_id, attributes)
        return await self._get_product(product_id)

    async def _delete_product(self, product_id: str) -> bool:
        await self._delete_idempotent(self._listing_path(product_id), params={"marketplaceIds": self.marketplace_id})
        logger.info("amazon listing deleted sku=%s", product_id)
        return True

    def product_payload_fragments(self, product: CanonicalProduct) -> Dict[str, Dict[str, Any]]:
        mid = self.marketplace_id

        def attr(name: str, value: Any) -> Dict[str, Any]:
            return {"attributes": {name: [{"value": value, "marketplace_id": mid}]}}

        return {
            "title": attr("item_name", product.title),
            "description": attr("product_description", product.description),
            "vendor": attr("brand", product.vendor),
            "price": {
                "attributes": {
                    "purchasable_offer": [{
                        "marketplace_id": mid,
                        "currency": product.currency,
                        "our_price": [{"schedule": [{"value_with_tax": product.price}]}],
                    }]
                }
            },
            "inventory_quantity": {
                "attributes": {
                    "fulfillment_availability": [
                        {"fulfillment_channel_code": "DEFAULT", "quantity": product.inventory_quantity}
                    ]
                }
            },
        }

    def transform_to_canonical_product(self, raw: Mapping[str, Any]) -> CanonicalProduct:
        return map_product(raw)

    # -- Inventory ----------------------------------------------------------

    async def _fba_summaries_page(self, cursor: Optional[str], **filters) -> Page:
        params = {
            "granularityType": "Marketplace",
            "granularityId": self.marketplace_id,
            "marketplaceIds": self.marketplace_id,
            "details": "true",
            **filters,
        }
        if cursor:
            params["nextToken"] = cursor
        data = await self._call("GET", "/fba/inventory/v1/summaries", params=params)
        summaries = (data.get("payload") or {}).get("inventorySummaries") or []
        return Page(
            items=[self.transform_to_canonical_inventory(s) for s in summaries],
            next_cursor=(data.get("pagination") or {}).get("nextToken"),
        )

    async def _get_inventory(self, product_ids: List[str]) -> List[CanonicalInventory]:
        if not product_ids:
            return await self._collect(self._fba_summaries_page)
        records: List[CanonicalInventory] = []
        for batch in chunked(product_ids, FBA_SKU_BATCH):
            records.extend(await self._collect(self._fba_summaries_page, sellerSkus=",".join(batch)))
        return records

    async def _update_inventory(self, product_id: str, quantity: int, variant_id: Optional[str]) -> CanonicalInventory:
        # Merchant-fulfilled quantity only; FBA stock is owned by Amazon
        await self._patch_listing(
            product_id,
            {"fulfillment_availability": [{"fulfillment_channel_code": "DEFAULT", "quantity": quantity}]},
        )
        logger.info("amazon update_inventory sku=%s qty=%s", product_id, quantity)
        return CanonicalInventory(
            platform=Platform.AMAZON,
            platform_id=product_id,
            product_id=product_id,
            sku=product_id,
            quantity=quantity,
            available_quantity=quantity,
            location_name="Merchant",
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def transform_to_canonical_inventory(self, raw: Mapping[str, Any]) -> CanonicalInventory:
        return map_inventory(raw)

    # -- Orders -------------------------------------------------------------

    async def _order_items(self, order_id: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_token = None
        while True:
            params = {"NextToken": next_token} if next_token else None
            data = await self._call("GET", f"/orders/v0/orders/{order_id}/orderItems", params=params)
            payload = data.get("payload") or {}
            items.extend(payload.get("OrderItems") or [])
            next_token = payload.get("NextToken")
            if not next_token:
                return items

    async def _with_items(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        return {**raw, "OrderItems": await self._order_items(raw["AmazonOrderId"])}

    async def _fetch_orders_page(self, cursor: Optional[str], **filters) -> Page:
        params: Dict[str, Any] = {"MarketplaceIds": self.marketplace_id}
        if cursor:
            params["NextToken"] = cursor
        else:
            if "CreatedAfter" not in filters and "LastUpdatedAfter" not in filters:
                since = datetime.now(timezone.utc) - timedelta(days=DEFAULT_ORDER_LOOKBACK_DAYS)
                params["CreatedAfter"] = since.strftime("%Y-%m-%dT%H:%M:%SZ")
            params.update(filters)
        data = await self._call("GET", "/orders/v0/orders", params=params)
        payload = data.get("payload") or {}
        raw_orders = payload.get("Orders") or []
        enriched = await gather_bounded(raw_orders, self._with_items, limit=self.detail_concurrency)
        return Page(
            items=[self.transform_to_canonical_order(o) for o in enriched],
            next_cursor=payload.get("NextToken"),
        )

    async def _get_order(self, order_id: str) -> CanonicalOrder:
        data = await self._call("GET", f"/orders/v0/orders/{order_id}")
        raw = data.get("payload") or {}
        if not raw:
            raise PlatformAPIError("amazon", f"order {order_id} not found", status_code=404)
        return self.transform_to_canonical_order(await self._with_items(raw))

    async def _fulfill_order(self, order_id: str, fulfillment: FulfillmentRequest) -> CanonicalOrder:
        order = await self._get_order(order_id)
        if order.fulfillment_status in (FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED):
            logger.info("amazon fulfill_order skipped order_id=%s status=%s", order_id, order.fulfillment_status.value)
            return order

        if fulfillment.line_items:
            lines = [{"orderItemId": fl.line_item_id, "quantity": fl.quantity} for fl in fulfillment.line_items]
        else:
            lines = [
                {"orderItemId": li.platform_id, "quantity": li.quantity}
                for li in order.line_items
                if li.fulfillment_status != FulfillmentStatus.FULFILLED
            ]
        body = {
            "marketplaceId": order.metafields.get("marketplace_id") or self.marketplace_id,
            "packageDetail": {
                "packageReferenceId": "1",
                "carrierCode": fulfillment.carrier or "Other",
                "carrierName": fulfillment.carrier,
                "trackingNumber": fulfillment.tracking_number,
                "shipDate": fulfillment.shipped_at or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "orderItems": lines,
            },
        }
        await self._call("POST", f"/orders/v0/orders/{order_id}/shipmentConfirmation", json=body)
        logger.info("amazon shipment confirmed order_id=%s tracking=%s", order_id, fulfillment.tracking_number)
        return await self._get_order(order_id)

    def transform_to_canonical_order(self, raw: Mapping[str, Any]) -> CanonicalOrder:
        order = map_order(raw)
        if order.line_items and not order.totals_reconcile(self.settings.order_total_tolerance):
            logger.warning("amazon order totals do not reconcile id=%s", order.platform_id)
        return order

    # -- Webhooks (Notifications API) --------------------------------------

    async def _destination_for(self, address: str) -> str:
        if not address.startswith("arn:aws:sqs:"):
            raise ValidationError("Amazon notifications need an SQS queue ARN as address", platform="amazon")
        existing = await self._grantless_call("GET", "/notifications/v1/destinations")
        for destination in existing.get("payload") or []:
            if ((destination.get("resource") or {}).get("sqs") or {}).get("arn") == address:
                return destination["destinationId"]
        created = await self._grantless_call(
            "POST", "/notifications/v1/destinations",
            json={"resourceSpecification": {"sqs": {"arn": address}}, "name": address.rsplit(":", 1)[-1]},
        )
        return (created.get("payload") or {})["destinationId"]

    async def _register_webhook(self, topic: str, platform_topic: str, address: str) -> WebhookSubscription:
        destination_id = await self._destination_for(address)
        subscription: Dict[str, Any] = {}
        try:
            current = await self._call("GET", f"/notifications/v1/subscriptions/{platform_topic}")
            subscription = current.get("payload") or {}
        except PlatformAPIError as exc:
            if not exc.not_found:
                raise
        if subscription.get("destinationId") != destination_id:
            created = await self._call(
                "POST", f"/notifications/v1/subscriptions/{platform_topic}",
                json={"payloadVersion": NOTIFICATION_PAYLOAD_VERSION, "destinationId": destination_id},
            )
            subscription = created.get("payload") or {}
        return WebhookSubscription(
            id=f"{platform_topic}:{subscription.get('subscriptionId')}",
            platform=self.platform,
            topic=topic,
            platform_topic=platform_topic,
            address=address,
        )

    async def _unregister_webhook(self, subscription_id: str) -> bool:
        notification_type, sep, sub_id = subscription_id.partition(":")
        if not sep or not sub_id:
            raise ValidationError("Amazon subscription ids look like NOTIFICATION_TYPE:id", platform="amazon")
        try:
            await self._grantless_call("DELETE", f"/notifications/v1/subscriptions/{notification_type}/{sub_id}")
        except PlatformAPIError as exc:
            if not exc.not_found:
                raise
        return True
