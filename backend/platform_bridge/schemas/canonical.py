"""
Canonical model — the platform-neutral schema every adapter produces.

Every field carries an explicit default so partial platform payloads
never leave a field unset downstream. Derived values are small pure
methods; nothing here performs I/O.
Version: 1.0.0
"""
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, computed_field, model_validator


DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_REORDER_THRESHOLD = 10
DEFAULT_SEGMENT_THRESHOLDS: Dict[str, float] = {"VIP": 1000, "High Value": 500, "Regular": 100}
DEFAULT_SEGMENT = "New"
DEFAULT_TOTAL_TOLERANCE = 0.05


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Platform(str, Enum):
    SHOPIFY = "shopify"
    AMAZON = "amazon"
    WOOCOMMERCE = "woocommerce"
    BIGCOMMERCE = "bigcommerce"
    EBAY = "ebay"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class FinancialStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    VOIDED = "voided"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    PARTIAL = "partial"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ComplianceStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class Capability(str, Enum):
    PRODUCTS = "products"
    INVENTORY = "inventory"
    ORDERS = "orders"
    ORDER_STATUS_UPDATE = "order_status_update"
    FULFILLMENT = "fulfillment"
    CUSTOMERS = "customers"
    WEBHOOKS = "webhooks"
    WEBHOOK_VERIFICATION = "webhook_verification"
    OAUTH_CODE_EXCHANGE = "oauth_code_exchange"


# ---------------------------------------------------------------------------
# Address
# ---------------------------------------------------------------------------

class CanonicalAddress(BaseModel):
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    province: str = ""
    province_code: str = ""
    country: str = ""
    country_code: str = ""
    zip: str = ""
    phone: str = ""

    def format(self) -> str:
        """Single-line postal form, skipping empty parts."""
        region = " ".join(p for p in (self.province_code, self.zip) if p)
        parts = [self.address1, self.address2, self.city, region, self.country]
        return ", ".join(p for p in parts if p)

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

class CanonicalVariant(BaseModel):
    platform_id: str = ""
    product_id: str = ""
    sku: str = ""
    title: str = ""
    price: float = Field(0.0, ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    inventory_quantity: int = 0
    weight: float = 0.0
    weight_unit: str = "lb"
    options: Dict[str, str] = Field(default_factory=dict)
    image: Optional[str] = None
    barcode: Optional[str] = None


class CanonicalProduct(BaseModel):
    platform: Platform
    platform_id: str = ""
    sku: str = ""
    title: str = ""
    description: str = ""
    vendor: str = ""
    product_type: str = ""
    tags: List[str] = Field(default_factory=list)

    price: float = Field(0.0, ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    cost_per_item: Optional[float] = Field(None, ge=0)
    currency: str = "USD"

    inventory_quantity: int = 0
    inventory_tracked: bool = True
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD

    has_variants: bool = False
    variants: List[CanonicalVariant] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    featured_image: Optional[str] = None

    status: ProductStatus = ProductStatus.DRAFT
    published_at: Optional[str] = None

    seo_title: str = ""
    seo_description: str = ""

    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    platform_url: Optional[str] = None
    metafields: Dict[str, Any] = Field(default_factory=dict)

    def profit_margin(self) -> float:
        """Margin percentage; zero when price or cost is missing."""
        if not self.price or self.cost_per_item is None:
            return 0.0
        return (self.price - self.cost_per_item) / self.price * 100

    def is_low_stock(self, threshold: Optional[int] = None) -> bool:
        limit = self.low_stock_threshold if threshold is None else threshold
        return self.inventory_quantity <= limit

    def is_out_of_stock(self) -> bool:
        return self.inventory_quantity == 0


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class CanonicalLineItem(BaseModel):
    platform_id: str = ""
    # Weak references: the product may since have been deleted or re-synced
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    sku: str = ""
    title: str = ""
    variant_title: str = ""
    quantity: int = Field(1, ge=1)
    price: float = Field(0.0, ge=0)
    total_price: float = Field(0.0, ge=0)
    tax: float = Field(0.0, ge=0)
    discount: float = Field(0.0, ge=0)
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED

    def expected_total(self) -> float:
        return self.price * self.quantity - self.discount

    def totals_reconcile(self, tolerance: float = DEFAULT_TOTAL_TOLERANCE) -> bool:
        return abs(self.total_price - self.expected_total()) <= tolerance


class CanonicalOrder(BaseModel):
    platform: Platform
    platform_id: str = ""
    order_number: str = ""

    # Point-in-time snapshot, not a live customer reference
    customer_id: Optional[str] = None
    customer_email: str = ""
    customer_name: str = ""
    customer_phone: str = ""

    line_items: List[CanonicalLineItem] = Field(default_factory=list)

    total_price: float = Field(0.0, ge=0)
    subtotal_price: float = Field(0.0, ge=0)
    total_tax: float = Field(0.0, ge=0)
    total_shipping: float = Field(0.0, ge=0)
    total_discounts: float = Field(0.0, ge=0)
    currency: str = "USD"

    financial_status: FinancialStatus = FinancialStatus.PENDING
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    cancelled_at: Optional[str] = None
    cancel_reason: Optional[str] = None

    shipping_address: CanonicalAddress = Field(default_factory=CanonicalAddress)
    billing_address: CanonicalAddress = Field(default_factory=CanonicalAddress)

    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None

    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    processed_at: Optional[str] = None
    fulfilled_at: Optional[str] = None

    platform_url: Optional[str] = None
    notes: str = ""
    tags: List[str] = Field(default_factory=list)
    metafields: Dict[str, Any] = Field(default_factory=dict)

    def is_paid(self) -> bool:
        return self.financial_status == FinancialStatus.PAID

    def is_fulfilled(self) -> bool:
        return self.fulfillment_status == FulfillmentStatus.FULFILLED

    def expected_total(self) -> float:
        return self.subtotal_price + self.total_tax + self.total_shipping - self.total_discounts

    def totals_reconcile(self, tolerance: float = DEFAULT_TOTAL_TOLERANCE) -> bool:
        """Platforms round differently, so totals are compared within a tolerance."""
        return abs(self.total_price - self.expected_total()) <= tolerance

    def calculate_profit(self, product_costs: Mapping[str, float]) -> float:
        """Revenue minus unit cost × quantity for every line item with a known cost."""
        cost = 0.0
        for item in self.line_items:
            unit_cost = product_costs.get(item.product_id or "")
            if unit_cost is None and item.sku:
                unit_cost = product_costs.get(item.sku)
            cost += (unit_cost or 0.0) * item.quantity
        return self.total_price - cost


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

class CanonicalCustomer(BaseModel):
    platform: Platform
    platform_id: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""

    orders_count: int = Field(0, ge=0)
    total_spent: float = Field(0.0, ge=0)
    average_order_value: float = Field(0.0, ge=0)

    default_address: Optional[CanonicalAddress] = None
    addresses: List[CanonicalAddress] = Field(default_factory=list)

    accepts_marketing: bool = False
    marketing_opt_in_level: Optional[str] = None

    state: str = "enabled"
    verified_email: bool = False

    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_order_date: Optional[str] = None

    tags: List[str] = Field(default_factory=list)
    notes: str = ""

    @model_validator(mode="after")
    def _derive_average_order_value(self) -> "CanonicalCustomer":
        if not self.average_order_value and self.orders_count > 0:
            self.average_order_value = self.total_spent / self.orders_count
        return self

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def lifetime_value(self) -> float:
        return self.total_spent

    def segment(self, thresholds: Optional[Mapping[str, float]] = None) -> str:
        """Highest segment whose spend threshold the customer meets."""
        table = thresholds or DEFAULT_SEGMENT_THRESHOLDS
        value = self.lifetime_value()
        for name, minimum in sorted(table.items(), key=lambda kv: kv[1], reverse=True):
            if value >= minimum:
                return name
        return DEFAULT_SEGMENT


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

class CanonicalInventory(BaseModel):
    platform: Platform
    platform_id: str = ""
    product_id: str = ""
    variant_id: Optional[str] = None
    sku: str = ""

    quantity: int = 0
    location_id: Optional[str] = None
    location_name: str = "Default"

    reserved_quantity: int = 0
    available_quantity: int = 0
    incoming_quantity: int = 0

    updated_at: Optional[str] = None

    @computed_field
    @property
    def sellable_quantity(self) -> int:
        return max(0, self.quantity - self.reserved_quantity)

    def needs_reorder(self, threshold: int = DEFAULT_REORDER_THRESHOLD) -> bool:
        return self.sellable_quantity <= threshold


# ---------------------------------------------------------------------------
# Webhooks and compliance
# ---------------------------------------------------------------------------

class CanonicalWebhookEvent(BaseModel):
    id: str
    platform: Platform
    topic: str
    platform_topic: str = ""
    shop_domain: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: str
    processed_at: Optional[str] = None
    status: WebhookStatus = WebhookStatus.PENDING
    error: Optional[str] = None


class ComplianceRequest(BaseModel):
    """Auditable record of a customer data request, erasure or shop redaction."""
    id: str
    platform: Platform
    topic: str
    shop_domain: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    requested_at: str
    status: ComplianceStatus = ComplianceStatus.RECEIVED
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    webhook_event_id: Optional[str] = None
