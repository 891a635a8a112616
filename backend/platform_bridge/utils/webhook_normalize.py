"""
Webhook normalization: verified platform deliveries to CanonicalWebhookEvent.

Each platform puts the topic, the store identity and the resource id in
a different place:

- Shopify: X-Shopify-Topic / X-Shopify-Shop-Domain headers, body is the resource
- WooCommerce: X-WC-Webhook-Topic / X-WC-Webhook-Source headers, body is the resource
- BigCommerce: body {scope, producer: "stores/{hash}", data: {type, id}}
- eBay: body {metadata: {topic}, notification: {notificationId, data}}
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from platform_bridge.adapters.registry import adapter_class
from platform_bridge.core.exceptions import ValidationError
from platform_bridge.schemas.canonical import CanonicalWebhookEvent, Platform
from platform_bridge.utils.type_converters import to_id
from platform_bridge.utils.webhook_signatures import header_value

logger = logging.getLogger("webhook_normalize")

# (platform topic, shop identity, resource id)
Extracted = Tuple[str, Optional[str], Optional[str]]


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _scalar_id(value: Any) -> Optional[str]:
    """Ids arrive as strings or numbers; nested structures are not ids."""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    return to_id(value)


def _shopify(headers: Mapping[str, str], payload: Dict[str, Any]) -> Extracted:
    topic = header_value(headers, "X-Shopify-Topic") or ""
    shop = header_value(headers, "X-Shopify-Shop-Domain") or _scalar_id(payload.get("shop_domain"))
    resource_id = _scalar_id(payload.get("id")) or _scalar_id(payload.get("inventory_item_id"))
    if not resource_id:
        resource_id = _scalar_id(_mapping(payload.get("customer")).get("id"))
    if not resource_id:
        resource_id = _scalar_id(payload.get("shop_id"))
    return topic, shop, resource_id


def _woocommerce(headers: Mapping[str, str], payload: Dict[str, Any]) -> Extracted:
    topic = header_value(headers, "X-WC-Webhook-Topic") or ""
    source = header_value(headers, "X-WC-Webhook-Source")
    shop = source.rstrip("/") if source else None
    return topic, shop, _scalar_id(payload.get("id"))


def _bigcommerce(headers: Mapping[str, str], payload: Dict[str, Any]) -> Extracted:
    topic = _text(payload.get("scope"))
    producer = _text(payload.get("producer"))
    if producer.startswith("stores/"):
        shop = producer.split("/", 1)[1] or None
    else:
        shop = _scalar_id(payload.get("store_id"))
    return topic, shop, _scalar_id(_mapping(payload.get("data")).get("id"))


def _ebay(headers: Mapping[str, str], payload: Dict[str, Any]) -> Extracted:
    topic = _text(_mapping(payload.get("metadata")).get("topic"))
    data = _mapping(_mapping(payload.get("notification")).get("data"))
    shop = _scalar_id(data.get("username"))
    resource_id = (
        _scalar_id(data.get("userId"))
        or _scalar_id(data.get("orderId"))
        or _scalar_id(data.get("legacyOrderId"))
    )
    return topic, shop, resource_id


EXTRACTORS: Dict[Platform, Callable[[Mapping[str, str], Dict[str, Any]], Extracted]] = {
    Platform.SHOPIFY: _shopify,
    Platform.WOOCOMMERCE: _woocommerce,
    Platform.BIGCOMMERCE: _bigcommerce,
    Platform.EBAY: _ebay,
}


def resource_type_for(topic: str) -> Optional[str]:
    """'order.created' -> 'order'; non-canonical topics yield None."""
    if "." not in topic:
        return None
    return topic.split(".", 1)[0]


def normalize_webhook(
    platform: Platform,
    headers: Mapping[str, str],
    payload: Dict[str, Any],
    event_id: Optional[str] = None,
    received_at: Optional[str] = None,
) -> CanonicalWebhookEvent:
    extractor = EXTRACTORS.get(platform)
    if extractor is None:
        raise ValidationError(f"{platform.value} does not deliver HTTP webhooks", platform=platform.value)

    platform_topic, shop, resource_id = extractor(headers, payload)
    cls = adapter_class(platform)
    topic = cls.to_canonical_topic(platform_topic) if platform_topic else "unknown"
    if platform_topic and platform_topic not in cls.TOPIC_MAP.values():
        logger.info("unmapped webhook topic platform=%s topic=%s", platform.value, platform_topic)

    return CanonicalWebhookEvent(
        id=event_id or str(uuid.uuid4()),
        platform=platform,
        topic=topic,
        platform_topic=platform_topic,
        shop_domain=shop,
        resource_id=resource_id,
        resource_type=resource_type_for(topic),
        payload=payload,
        received_at=received_at or datetime.now(timezone.utc).isoformat(),
    )


def compliance_subject(event: CanonicalWebhookEvent) -> Tuple[Optional[str], Optional[str]]:
    """(customer_id, customer_email) named by a compliance delivery."""
    payload = event.payload
    if event.platform == Platform.EBAY:
        data = _mapping(_mapping(payload.get("notification")).get("data"))
        return _scalar_id(data.get("userId")), None
    customer = _mapping(payload.get("customer"))
    return _scalar_id(customer.get("id")), _text(customer.get("email")) or None
