"""
eBay adapter — Sell Inventory, Sell Fulfillment and Commerce Notification APIs.

Auth: authorization-code OAuth against the RuName; user tokens last two
hours and are refreshed with the long-lived refresh token. Destination
management and notification public keys use a client_credentials
application token instead.

eBay keys inventory items by SKU; price and listing state live on the
offer attached to the SKU, so products are read as item + offers.
Buyer data only exists inside orders, so customer operations are
unsupported.
Version: 1.0.0
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, urlencode

from platform_bridge.adapters.base import (
    FulfillmentRequest,
    Page,
    PlatformAdapter,
    TokenResponse,
    WebhookSubscription,
    deep_merge,
    lookup_status,
)
from platform_bridge.clients.platform_http import PlatformHttpClient
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
from platform_bridge.utils.rate_limiter import build_rate_limiter
from platform_bridge.utils.type_converters import (
    to_float,
    to_int,
    to_iso8601,
    to_money,
    to_optional_money,
    to_quantity,
    to_str,
)

logger = logging.getLogger("ebay_adapter")

APP_SCOPE = "https://api.ebay.com/oauth/api_scope"
USER_SCOPES = [
    APP_SCOPE,
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.account",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
    "https://api.ebay.com/oauth/api_scope/commerce.notification.subscription",
]
INVENTORY_PAGE_LIMIT = 100
ORDER_PAGE_LIMIT = 50
BULK_GET_BATCH = 25
BULK_PRICE_QUANTITY_BATCH = 25

# Default: pending
FINANCIAL_STATUS_MAP = {
    "paid": FinancialStatus.PAID,
    "pending": FinancialStatus.PENDING,
    "failed": FinancialStatus.VOIDED,
    "refunded": FinancialStatus.REFUNDED,
    "fully_refunded": FinancialStatus.REFUNDED,
    "partially_refunded": FinancialStatus.PAID,
}

# Default: unfulfilled
FULFILLMENT_STATUS_MAP = {
    "not_started": FulfillmentStatus.UNFULFILLED,
    "in_progress": FulfillmentStatus.PARTIAL,
    "fulfilled": FulfillmentStatus.FULFILLED,
    "cancelled": FulfillmentStatus.CANCELLED,
}


def ebay_hosts(sandbox: bool) -> Dict[str, str]:
    if sandbox:
        return {"api": "https://api.sandbox.ebay.com", "auth": "https://auth.sandbox.ebay.com"}
    return {"api": "https://api.ebay.com", "auth": "https://auth.ebay.com"}


def _money(container: Optional[Mapping[str, Any]]) -> float:
    """eBay amounts are {"value": "1.00", "currency": "USD"}; discounts are negative."""
    if not container:
        return 0.0
    return to_money(abs(to_float(container.get("value"))))


def _id_from_location(location: Optional[str]) -> Optional[str]:
    """Created resources are only identified by the Location header."""
    if not location:
        return None
    return location.rstrip("/").rsplit("/", 1)[-1]


# ---------------------------------------------------------------------------
# Application token + notification keys
# ---------------------------------------------------------------------------

class EbayAppToken:
    """Cached client_credentials token; concurrent callers share one fetch."""

    def __init__(self, http: PlatformHttpClient, client_id: Optional[str], client_secret: Optional[str]):
        self._http = http
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _valid(self) -> bool:
        return bool(self._token) and time.time() < self._expires_at - 60

    async def get(self) -> str:
        if self._valid():
            return self._token
        if not self._client_id or not self._client_secret:
            raise AuthenticationError("eBay client id/secret not configured", platform="ebay")
        async with self._lock:
            if self._valid():
                return self._token
            data = await self._http.request_json(
                "POST", "/identity/v1/oauth2/token",
                data={"grant_type": "client_credentials", "scope": APP_SCOPE},
                auth=(self._client_id, self._client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            token = data.get("access_token")
            if not token:
                raise AuthenticationError("eBay app token response carried no access_token", platform="ebay")
            self._token = token
            self._expires_at = time.time() + to_int(data.get("expires_in") or 7200)
            return self._token


class EbayNotificationKeyClient:
    """Fetches the public keys that sign eBay notification payloads."""

    def __init__(self, settings, transport=None):
        self.http = PlatformHttpClient(
            "ebay",
            settings.ebay_api_base_url,
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
            limiter=build_rate_limiter("ebay", settings, scope="notification_keys"),
            default_retry_delay=settings.rate_limit_default_delay_seconds,
            transport=transport,
        )
        self.app_token = EbayAppToken(self.http, settings.ebay_client_id, settings.ebay_client_secret)

    async def get_public_key(self, kid: str) -> str:
        token = await self.app_token.get()
        data = await self.http.request_json(
            "GET", f"/commerce/notification/v1/public_key/{quote(kid, safe='')}",
            headers={"Authorization": f"Bearer {token}"},
        )
        key = data.get("key")
        if not key:
            raise PlatformAPIError("ebay", f"no public key returned for kid {kid}", status_code=200, body=data)
        return key


# ---------------------------------------------------------------------------
# Mapping (pure)
# ---------------------------------------------------------------------------

def _offer_for(offers: List[Mapping[str, Any]], marketplace_id: Optional[str]) -> Mapping[str, Any]:
    for offer in offers:
        if not marketplace_id or offer.get("marketplaceId") == marketplace_id:
            return offer
    return offers[0] if offers else {}


def map_product(
    item: Mapping[str, Any],
    offers: Optional[List[Mapping[str, Any]]] = None,
    marketplace_id: Optional[str] = None,
) -> CanonicalProduct:
    product = item.get("product") or {}
    aspects = product.get("aspects") or {}
    offer = _offer_for(offers or [], marketplace_id)
    pricing = offer.get("pricingSummary") or {}
    price = pricing.get("price") or {}
    listing_id = (offer.get("listing") or {}).get("listingId")
    images = [url for url in product.get("imageUrls") or [] if url]
    sku = to_str(item.get("sku"))
    quantity = ((item.get("availability") or {}).get("shipToLocationAvailability") or {}).get("quantity")
    metafields = {
        k: v
        for k, v in (
            ("offer_id", offer.get("offerId")),
            ("listing_id", listing_id),
            ("category_id", offer.get("categoryId")),
            ("condition", item.get("condition")),
        )
        if v
    }
    return CanonicalProduct(
        platform=Platform.EBAY,
        platform_id=sku,
        sku=sku,
        title=to_str(product.get("title")),
        description=to_str(product.get("description")),
        vendor=to_str(product.get("brand") or (aspects.get("Brand") or [""])[0]),
        product_type=to_str((aspects.get("Type") or [""])[0]),
        price=_money(price),
        compare_at_price=to_optional_money((pricing.get("originalRetailPrice") or {}).get("value")),
        currency=to_str(price.get("currency")) or "USD",
        inventory_quantity=to_int(quantity),
        images=images,
        featured_image=images[0] if images else None,
        status=ProductStatus.ACTIVE if offer.get("status") == "PUBLISHED" else ProductStatus.DRAFT,
        platform_url=f"https://www.ebay.com/itm/{listing_id}" if listing_id else None,
        metafields=metafields,
    )


def map_inventory(item: Mapping[str, Any]) -> CanonicalInventory:
    availability = item.get("availability") or {}
    quantity = to_int((availability.get("shipToLocationAvailability") or {}).get("quantity"))
    sku = to_str(item.get("sku"))
    return CanonicalInventory(
        platform=Platform.EBAY,
        platform_id=sku,
        product_id=sku,
        sku=sku,
        quantity=quantity,
        available_quantity=quantity,
    )


def map_address(ship_to: Optional[Mapping[str, Any]]) -> CanonicalAddress:
    ship_to = ship_to or {}
    contact = ship_to.get("contactAddress") or {}
    first, _, last = to_str(ship_to.get("fullName")).partition(" ")
    return CanonicalAddress(
        first_name=first,
        last_name=last,
        company=to_str(ship_to.get("companyName")),
        address1=to_str(contact.get("addressLine1")),
        address2=to_str(contact.get("addressLine2")),
        city=to_str(contact.get("city")),
        province=to_str(contact.get("stateOrProvince")),
        province_code=to_str(contact.get("stateOrProvince")),
        country_code=to_str(contact.get("countryCode")),
        zip=to_str(contact.get("postalCode")),
        phone=to_str((ship_to.get("primaryPhone") or {}).get("phoneNumber")),
    )


def map_line_item(raw: Mapping[str, Any]) -> CanonicalLineItem:
    quantity = to_quantity(raw.get("quantity"))
    # lineItemCost is the pre-discount cost of the whole line
    line_cost = _money(raw.get("lineItemCost"))
    discount = to_money(sum(_money(p.get("discountAmount")) for p in raw.get("appliedPromotions") or []))
    tax = to_money(sum(_money(t.get("amount")) for t in raw.get("taxes") or []))
    return CanonicalLineItem(
        platform_id=to_str(raw.get("lineItemId")),
        product_id=to_str(raw.get("sku")) or None,
        variant_id=to_str(raw.get("legacyVariationId")) or None,
        sku=to_str(raw.get("sku")),
        title=to_str(raw.get("title")),
        quantity=quantity,
        price=to_money(line_cost / quantity),
        total_price=to_money(line_cost - discount),
        tax=tax,
        discount=discount,
        fulfillment_status=lookup_status(
            FULFILLMENT_STATUS_MAP, raw.get("lineItemFulfillmentStatus"), FulfillmentStatus.UNFULFILLED
        ),
    )


def map_order(raw: Mapping[str, Any]) -> CanonicalOrder:
    pricing = raw.get("pricingSummary") or {}
    buyer = raw.get("buyer") or {}
    registration = buyer.get("buyerRegistrationAddress") or {}
    steps = raw.get("fulfillmentStartInstructions") or []
    ship_to = ((steps[0] if steps else {}).get("shippingStep") or {}).get("shipTo")
    fulfillment = lookup_status(
        FULFILLMENT_STATUS_MAP, raw.get("orderFulfillmentStatus"), FulfillmentStatus.UNFULFILLED
    )
    cancel_state = (raw.get("cancelStatus") or {}).get("cancelState")
    if cancel_state == "CANCELED":
        fulfillment = FulfillmentStatus.CANCELLED
    order_id = to_str(raw.get("orderId"))
    total = pricing.get("total") or {}

    return CanonicalOrder(
        platform=Platform.EBAY,
        platform_id=order_id,
        order_number=to_str(raw.get("legacyOrderId")) or order_id,
        customer_id=to_str(buyer.get("username")) or None,
        customer_email=to_str(registration.get("email") or (ship_to or {}).get("email")),
        customer_name=to_str(registration.get("fullName") or (ship_to or {}).get("fullName")),
        customer_phone=to_str((registration.get("primaryPhone") or {}).get("phoneNumber")),
        line_items=[map_line_item(li) for li in raw.get("lineItems") or []],
        total_price=_money(total),
        subtotal_price=_money(pricing.get("priceSubtotal")),
        total_tax=_money(pricing.get("tax")),
        total_shipping=_money(pricing.get("deliveryCost")),
        total_discounts=to_money(_money(pricing.get("priceDiscount")) + _money(pricing.get("deliveryDiscount"))),
        currency=to_str(total.get("currency")) or "USD",
        financial_status=lookup_status(FINANCIAL_STATUS_MAP, raw.get("orderPaymentStatus"), FinancialStatus.PENDING),
        fulfillment_status=fulfillment,
        cancelled_at=(
            to_iso8601((raw.get("cancelStatus") or {}).get("cancelledDate") or raw.get("lastModifiedDate"))
            if fulfillment == FulfillmentStatus.CANCELLED
            else None
        ),
        shipping_address=map_address(ship_to),
        created_at=to_iso8601(raw.get("creationDate")),
        updated_at=to_iso8601(raw.get("lastModifiedDate")),
        processed_at=to_iso8601(raw.get("creationDate")),
        platform_url=f"https://www.ebay.com/sh/ord/details?orderid={order_id}" if order_id else None,
        notes=to_str(raw.get("buyerCheckoutNotes")),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class EbayAdapter(PlatformAdapter):
    platform = Platform.EBAY
    capabilities = frozenset({
        Capability.PRODUCTS,
        Capability.INVENTORY,
        Capability.ORDERS,
        Capability.FULFILLMENT,
        Capability.WEBHOOKS,
        Capability.WEBHOOK_VERIFICATION,
        Capability.OAUTH_CODE_EXCHANGE,
    })

    TOPIC_MAP = {
        "account.deleted": "MARKETPLACE_ACCOUNT_DELETION",
        "app.uninstalled": "AUTHORIZATION_REVOCATION",
        "order.created": "ITEM_SOLD",
        "order.fulfilled": "ITEM_MARKED_SHIPPED",
    }

    refreshable = True

    def __init__(self, credentials, settings=None, **kwargs) -> None:
        super().__init__(credentials, settings, **kwargs)
        self.app_token = EbayAppToken(self.http, self._client_id(), self._client_secret())

    @property
    def sandbox(self) -> bool:
        return self.credentials.sandbox or self.settings.ebay_sandbox

    @property
    def marketplace_id(self) -> str:
        return self.credentials.marketplace_id or self.settings.ebay_marketplace_id

    def base_url(self) -> str:
        return ebay_hosts(self.sandbox)["api"]

    def default_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Content-Language": "en-US",
            "X-EBAY-C-MARKETPLACE-ID": self.marketplace_id,
        }

    def rate_limit_scope(self) -> Optional[str]:
        return self.credentials.seller_id

    def _client_id(self) -> Optional[str]:
        return self.credentials.client_id or self.settings.ebay_client_id

    def _client_secret(self) -> Optional[str]:
        return self.credentials.client_secret or self.settings.ebay_client_secret

    async def _token_request(self, form: Dict[str, str]) -> TokenResponse:
        client_id, client_secret = self._client_id(), self._client_secret()
        if not client_id or not client_secret:
            raise AuthenticationError("eBay client id/secret not configured", platform="ebay")
        data = await self.http.request_json(
            "POST", "/identity/v1/oauth2/token",
            data=form,
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if not data.get("access_token"):
            raise AuthenticationError("eBay token response carried no access_token", platform="ebay")
        return TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=to_int(data.get("expires_in")) or None,
            token_type=data.get("token_type"),
            extra={"refresh_token_expires_in": data.get("refresh_token_expires_in")},
        )

    async def _refresh_access_token(self, refresh_token: str) -> TokenResponse:
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": " ".join(USER_SCOPES),
        })

    async def _probe(self) -> str:
        data = await self._call("GET", "/sell/inventory/v1/inventory_item", params={"limit": 1})
        return f"eBay {self.marketplace_id} ({to_int(data.get('total'))} inventory items)"

    # -- OAuth --------------------------------------------------------------

    def get_auth_url(self, state: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None) -> str:
        params = {
            "client_id": self._client_id() or "",
            "response_type": "code",
            # eBay redirects to the RuName registered for the app, not a URL
            "redirect_uri": redirect_uri or self.settings.ebay_ru_name or "",
            "scope": " ".join(scopes or USER_SCOPES),
            "state": state,
        }
        return f"{ebay_hosts(self.sandbox)['auth']}/oauth2/authorize?{urlencode(params)}"

    async def _exchange_code(self, code: str, redirect_uri: Optional[str], **params) -> TokenResponse:
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.settings.ebay_ru_name or "",
        })

    # -- Inventory items and offers ----------------------------------------

    async def _offers(self, sku: str) -> List[Dict[str, Any]]:
        try:
            data = await self._call("GET", "/sell/inventory/v1/offer", params={"sku": sku})
        except PlatformAPIError as exc:
            # eBay answers 404 when a SKU has no offers yet
            if exc.not_found:
                return []
            raise
        return data.get("offers") or []

    async def _with_offers(self, item: Mapping[str, Any]) -> Dict[str, Any]:
        return {**item, "offers": await self._offers(item["sku"])}

    async def _items_page(self, cursor: Optional[str], **filters) -> tuple:
        offset = int(cursor or 0)
        limit = int(filters.get("limit", INVENTORY_PAGE_LIMIT))
        data = await self._call("GET", "/sell/inventory/v1/inventory_item", params={"limit": limit, "offset": offset})
        items = data.get("inventoryItems") or []
        more = bool(data.get("next")) or offset + len(items) < to_int(data.get("total"))
        return items, (str(offset + limit) if more and items else None)

    async def _fetch_products_page(self, cursor: Optional[str], **filters) -> Page:
        items, next_cursor = await self._items_page(cursor, **filters)
        enriched = await gather_bounded(items, self._with_offers, limit=self.detail_concurrency)
        return Page(items=[self.transform_to_canonical_product(i) for i in enriched], next_cursor=next_cursor)

    def _item_path(self, sku: str) -> str:
        return f"/sell/inventory/v1/inventory_item/{quote(sku, safe='')}"

    async def _get_item(self, sku: str) -> Dict[str, Any]:
        return await self._call("GET", self._item_path(sku))

    async def _get_product(self, product_id: str) -> CanonicalProduct:
        item = await self._get_item(product_id)
        item.setdefault("sku", product_id)
        return self.transform_to_canonical_product(await self._with_offers(item))

    async def _bulk_update_price_quantity(self, requests: List[Dict[str, Any]]) -> None:
        for batch in chunked(requests, BULK_PRICE_QUANTITY_BATCH):
            data = await self._call(
                "POST", "/sell/inventory/v1/bulk_update_price_quantity", json={"requests": batch}
            )
            failed = [r for r in data.get("responses") or [] if to_int(r.get("statusCode")) >= 400]
            if failed:
                first = failed[0]
                message = ((first.get("errors") or [{}])[0]).get("message") or "price/quantity update failed"
                raise PlatformAPIError(
                    "ebay", f"{first.get('sku')}: {message}", status_code=to_int(first.get("statusCode")), body=data
                )

    def _offer_body(self, product: CanonicalProduct) -> Dict[str, Any]:
        pricing: Dict[str, Any] = {"price": {"value": f"{product.price:.2f}", "currency": product.currency}}
        if product.compare_at_price is not None:
            pricing["originalRetailPrice"] = {"value": f"{product.compare_at_price:.2f}", "currency": product.currency}
        body: Dict[str, Any] = {
            "sku": product.sku,
            "marketplaceId": self.marketplace_id,
            "format": "FIXED_PRICE",
            "availableQuantity": product.inventory_quantity,
            "pricingSummary": pricing,
            "listingDescription": product.description or product.title,
        }
        for key in ("categoryId", "merchantLocationKey", "listingPolicies"):
            if product.metafields.get(key):
                body[key] = product.metafields[key]
        return body

    async def _create_product(self, product: CanonicalProduct) -> CanonicalProduct:
        if not product.sku:
            raise ValidationError("eBay inventory items require a SKU", platform="ebay")
        body = {"condition": product.metafields.get("condition", "NEW"), **self.transform_from_canonical_product(product)}
        body.pop("offer", None)
        # createOrReplaceInventoryItem: a repeat call for the same SKU replaces it
        await self._request("PUT", self._item_path(product.sku), json=body)

        offers = await self._offers(product.sku)
        offer = _offer_for(offers, self.marketplace_id) if offers else {}
        if offer:
            await self._bulk_update_price_quantity([{
                "sku": product.sku,
                "offers": [{
                    "offerId": offer["offerId"],
                    "availableQuantity": product.inventory_quantity,
                    "price": {"value": f"{product.price:.2f}", "currency": product.currency},
                }],
            }])
        else:
            response = await self._request("POST", "/sell/inventory/v1/offer", json=self._offer_body(product))
            created = response.json() if response.content else {}
            offer = {"offerId": created.get("offerId") or _id_from_location(response.headers.get("Location"))}

        if product.status == ProductStatus.ACTIVE and offer.get("status") != "PUBLISHED" and offer.get("offerId"):
            await self._call("POST", f"/sell/inventory/v1/offer/{offer['offerId']}/publish")
        logger.info("ebay create_product sku=%s offer_id=%s", product.sku, offer.get("offerId"))
        return await self._get_product(product.sku)

    async def _update_product(self, product_id: str, patch: CanonicalProduct, fields: set) -> CanonicalProduct:
        changes = self.transform_from_canonical_product(patch, fields)
        offer_changes = changes.pop("offer", None)
        if changes:
            current = await self._get_item(product_id)
            current.pop("sku", None)
            current.pop("locale", None)
            # PUT replaces the whole item, so send the merged document
            await self._request("PUT", self._item_path(product_id), json=deep_merge(current, changes))
        if offer_changes:
            offers = await self._offers(product_id)
            if offers:
                await self._bulk_update_price_quantity([{
                    "sku": product_id,
                    "offers": [{"offerId": o["offerId"], **offer_changes} for o in offers],
                }])
        return await self._get_product(product_id)

    async def _delete_product(self, product_id: str) -> bool:
        for offer in await self._offers(product_id):
            await self._delete_idempotent(f"/sell/inventory/v1/offer/{offer['offerId']}")
        await self._delete_idempotent(self._item_path(product_id))
        logger.info("ebay product deleted sku=%s", product_id)
        return True

    def product_payload_fragments(self, product: CanonicalProduct) -> Dict[str, Dict[str, Any]]:
        return {
            "title": {"product": {"title": product.title}},
            "description": {"product": {"description": product.description}},
            "vendor": {"product": {"brand": product.vendor, "aspects": {"Brand": [product.vendor]}}},
            "product_type": {"product": {"aspects": {"Type": [product.product_type]}}},
            "images": {"product": {"imageUrls": list(product.images)}},
            "inventory_quantity": {
                "availability": {"shipToLocationAvailability": {"quantity": product.inventory_quantity}}
            },
            "price": {"offer": {"price": {"value": f"{product.price:.2f}", "currency": product.currency}}},
        }

    def transform_to_canonical_product(self, raw: Mapping[str, Any]) -> CanonicalProduct:
        return map_product(raw, raw.get("offers") or [], self.marketplace_id)

    # -- Inventory ----------------------------------------------------------

    async def _get_inventory(self, product_ids: List[str]) -> List[CanonicalInventory]:
        if not product_ids:
            items: List[Dict[str, Any]] = []
            cursor = None
            while True:
                page, cursor = await self._items_page(cursor)
                items.extend(page)
                if not cursor:
                    break
            return [self.transform_to_canonical_inventory(i) for i in items]

        records: List[CanonicalInventory] = []
        for batch in chunked(product_ids, BULK_GET_BATCH):
            data = await self._call(
                "POST", "/sell/inventory/v1/bulk_get_inventory_item",
                json={"requests": [{"sku": sku} for sku in batch]},
            )
            for response in data.get("responses") or []:
                if to_int(response.get("statusCode")) != 200:
                    logger.info("ebay inventory lookup skipped sku=%s status=%s", response.get("sku"), response.get("statusCode"))
                    continue
                item = {"sku": response.get("sku"), **(response.get("inventoryItem") or {})}
                records.append(self.transform_to_canonical_inventory(item))
        return records

    async def _update_inventory(self, product_id: str, quantity: int, variant_id: Optional[str]) -> CanonicalInventory:
        offers = await self._offers(product_id)
        request: Dict[str, Any] = {
            "sku": product_id,
            "shipToLocationAvailability": {"quantity": quantity},
        }
        if offers:
            request["offers"] = [{"offerId": o["offerId"], "availableQuantity": quantity} for o in offers]
        await self._bulk_update_price_quantity([request])
        logger.info("ebay update_inventory sku=%s qty=%s", product_id, quantity)
        return CanonicalInventory(
            platform=Platform.EBAY,
            platform_id=product_id,
            product_id=product_id,
            sku=product_id,
            quantity=quantity,
            available_quantity=quantity,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def transform_to_canonical_inventory(self, raw: Mapping[str, Any]) -> CanonicalInventory:
        return map_inventory(raw)

    # -- Orders -------------------------------------------------------------

    async def _fetch_orders_page(self, cursor: Optional[str], **filters) -> Page:
        offset = int(cursor or 0)
        limit = int(filters.pop("limit", ORDER_PAGE_LIMIT))
        data = await self._call(
            "GET", "/sell/fulfillment/v1/order", params={**filters, "limit": limit, "offset": offset}
        )
        orders = data.get("orders") or []
        more = bool(data.get("next")) or offset + len(orders) < to_int(data.get("total"))
        return Page(
            items=[self.transform_to_canonical_order(o) for o in orders],
            next_cursor=str(offset + limit) if more and orders else None,
        )

    async def _get_order(self, order_id: str) -> CanonicalOrder:
        return self.transform_to_canonical_order(await self._call("GET", f"/sell/fulfillment/v1/order/{order_id}"))

    async def _fulfill_order(self, order_id: str, fulfillment: FulfillmentRequest) -> CanonicalOrder:
        base = f"/sell/fulfillment/v1/order/{order_id}/shipping_fulfillment"
        if fulfillment.tracking_number:
            existing = await self._call("GET", base)
            if any(
                f.get("shipmentTrackingNumber") == fulfillment.tracking_number
                for f in existing.get("fulfillments") or []
            ):
                logger.info("ebay fulfillment exists order_id=%s tracking=%s", order_id, fulfillment.tracking_number)
                return await self._get_order(order_id)

        if fulfillment.line_items:
            lines = [{"lineItemId": fl.line_item_id, "quantity": fl.quantity} for fl in fulfillment.line_items]
        else:
            order = await self._get_order(order_id)
            lines = [
                {"lineItemId": li.platform_id, "quantity": li.quantity}
                for li in order.line_items
                if li.fulfillment_status != FulfillmentStatus.FULFILLED
            ]
        body = {
            "lineItems": lines,
            "shippedDate": fulfillment.shipped_at or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "shippingCarrierCode": fulfillment.carrier or "OTHER",
            "trackingNumber": fulfillment.tracking_number,
        }
        await self._request("POST", base, json=body)
        return await self._get_order(order_id)

    def transform_to_canonical_order(self, raw: Mapping[str, Any]) -> CanonicalOrder:
        order = map_order(raw)
        if not order.totals_reconcile(self.settings.order_total_tolerance):
            logger.warning("ebay order totals do not reconcile id=%s", order.platform_id)
        return order

    # -- Webhooks (Notification API) ---------------------------------------

    async def _app_call(self, method: str, path: str, **kwargs):
        token = await self.app_token.get()
        return await self.http.request(method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs)

    async def _destination_for(self, address: str) -> str:
        response = await self._app_call("GET", "/commerce/notification/v1/destination")
        for destination in (response.json() if response.content else {}).get("destinations") or []:
            if (destination.get("deliveryConfig") or {}).get("endpoint") == address:
                return destination["destinationId"]
        if not self.settings.ebay_verification_token:
            raise ValidationError("EBAY_VERIFICATION_TOKEN is required to create a destination", platform="ebay")
        created = await self._app_call(
            "POST", "/commerce/notification/v1/destination",
            json={
                "name": address,
                "status": "ENABLED",
                "deliveryConfig": {"endpoint": address, "verificationToken": self.settings.ebay_verification_token},
            },
        )
        return _id_from_location(created.headers.get("Location"))

    async def _register_webhook(self, topic: str, platform_topic: str, address: str) -> WebhookSubscription:
        destination_id = await self._destination_for(address)
        existing = await self._call("GET", "/commerce/notification/v1/subscription")
        subscription = next(
            (
                s for s in existing.get("subscriptions") or []
                if s.get("topicId") == platform_topic and s.get("destinationId") == destination_id
            ),
            None,
        )
        if subscription:
            subscription_id = subscription["subscriptionId"]
        else:
            response = await self._request(
                "POST", "/commerce/notification/v1/subscription",
                json={
                    "topicId": platform_topic,
                    "status": "ENABLED",
                    "destinationId": destination_id,
                    "payload": {"format": "JSON", "schemaVersion": "1.0", "deliveryProtocol": "HTTPS"},
                },
            )
            subscription_id = _id_from_location(response.headers.get("Location"))
        return WebhookSubscription(
            id=str(subscription_id),
            platform=self.platform,
            topic=topic,
            platform_topic=platform_topic,
            address=address,
        )

    async def _unregister_webhook(self, subscription_id: str) -> bool:
        return await self._delete_idempotent(f"/commerce/notification/v1/subscription/{subscription_id}")
