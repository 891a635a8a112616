"""
Adapter registry — platform name to adapter class.
"""
from typing import Dict, Optional, Type

from platform_bridge.adapters.amazon import AmazonAdapter
from platform_bridge.adapters.base import PlatformAdapter, PlatformCredentials
from platform_bridge.adapters.bigcommerce import BigCommerceAdapter
from platform_bridge.adapters.ebay import EbayAdapter
from platform_bridge.adapters.shopify import ShopifyAdapter
from platform_bridge.adapters.woocommerce import WooCommerceAdapter
from platform_bridge.core.config import Settings
from platform_bridge.core.exceptions import ValidationError
from platform_bridge.schemas.canonical import Platform

ADAPTERS: Dict[Platform, Type[PlatformAdapter]] = {
    Platform.SHOPIFY: ShopifyAdapter,
    Platform.AMAZON: AmazonAdapter,
    Platform.BIGCOMMERCE: BigCommerceAdapter,
    Platform.WOOCOMMERCE: WooCommerceAdapter,
    Platform.EBAY: EbayAdapter,
}


def parse_platform(value: str | Platform) -> Platform:
    try:
        return Platform(str(value.value if isinstance(value, Platform) else value).lower())
    except ValueError:
        raise ValidationError(f"unknown platform: {value}")


def adapter_class(platform: str | Platform) -> Type[PlatformAdapter]:
    return ADAPTERS[parse_platform(platform)]


def build_adapter(
    platform: str | Platform,
    credentials: Optional[PlatformCredentials] = None,
    settings: Optional[Settings] = None,
    **kwargs,
) -> PlatformAdapter:
    """Instantiate the adapter for ``platform``; empty credentials are allowed for OAuth start."""
    resolved = parse_platform(platform)
    credentials = credentials or PlatformCredentials(platform=resolved)
    return ADAPTERS[resolved](credentials, settings, **kwargs)
