import json
import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel


load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings(BaseModel):
    # Supabase
    supabase_url: str | None = os.getenv("SUPABASE_URL")
    supabase_service_role_key: str | None = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    # Redis
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    auto_start_celery: bool = _env_bool("AUTO_START_CELERY", "false")

    # OAuth
    oauth_redirect_base_url: str = os.getenv("OAUTH_REDIRECT_BASE_URL", "http://localhost:8000/api/oauth")
    oauth_state_ttl_seconds: int = int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600"))

    # Shopify
    shopify_api_key: str | None = os.getenv("SHOPIFY_API_KEY")
    shopify_api_secret: str | None = os.getenv("SHOPIFY_API_SECRET")
    shopify_api_version: str = os.getenv("SHOPIFY_API_VERSION", "2024-10")
    shopify_scopes: str = os.getenv(
        "SHOPIFY_SCOPES",
        "read_products,write_products,read_inventory,write_inventory,read_orders,write_orders,read_customers",
    )

    # Amazon Selling Partner API
    amazon_lwa_client_id: str | None = os.getenv("AMAZON_LWA_CLIENT_ID")
    amazon_lwa_client_secret: str | None = os.getenv("AMAZON_LWA_CLIENT_SECRET")
    amazon_application_id: str | None = os.getenv("AMAZON_APPLICATION_ID")
    amazon_region: str = os.getenv("AMAZON_REGION", "NA")
    amazon_marketplace_id: str = os.getenv("AMAZON_MARKETPLACE_ID", "ATVPDKIKX0DER")

    # BigCommerce
    bigcommerce_client_id: str | None = os.getenv("BIGCOMMERCE_CLIENT_ID")
    bigcommerce_client_secret: str | None = os.getenv("BIGCOMMERCE_CLIENT_SECRET")
    bigcommerce_webhook_token: str | None = os.getenv("BIGCOMMERCE_WEBHOOK_TOKEN")

    # WooCommerce
    woocommerce_app_name: str = os.getenv("WOOCOMMERCE_APP_NAME", "Platform Bridge")
    woocommerce_webhook_secret: str | None = os.getenv("WOOCOMMERCE_WEBHOOK_SECRET")

    # eBay
    ebay_client_id: str | None = os.getenv("EBAY_CLIENT_ID")
    ebay_client_secret: str | None = os.getenv("EBAY_CLIENT_SECRET")
    ebay_ru_name: str | None = os.getenv("EBAY_RU_NAME")
    ebay_sandbox: bool = _env_bool("EBAY_SANDBOX", "false")
    ebay_marketplace_id: str = os.getenv("EBAY_MARKETPLACE_ID", "EBAY_US")
    # Verification token and endpoint registered for marketplace account deletion notifications
    ebay_verification_token: str | None = os.getenv("EBAY_VERIFICATION_TOKEN")
    ebay_notification_endpoint: str | None = os.getenv("EBAY_NOTIFICATION_ENDPOINT")

    # Outbound HTTP
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    rate_limit_backend: str = os.getenv("RATE_LIMIT_BACKEND", "memory")
    rate_limit_default_delay_seconds: float = float(os.getenv("RATE_LIMIT_DEFAULT_DELAY_SECONDS", "1.0"))
    detail_fetch_concurrency: int = int(os.getenv("DETAIL_FETCH_CONCURRENCY", "4"))

    # Rate limits (Celery-style "N/s", "N/m", "N/h")
    shopify_api_rate_limit: str = os.getenv("SHOPIFY_API_RATE_LIMIT", "2/s")
    amazon_api_rate_limit: str = os.getenv("AMAZON_API_RATE_LIMIT", "1/s")
    bigcommerce_api_rate_limit: str = os.getenv("BIGCOMMERCE_API_RATE_LIMIT", "7/s")
    woocommerce_api_rate_limit: str = os.getenv("WOOCOMMERCE_API_RATE_LIMIT", "5/s")
    ebay_api_rate_limit: str = os.getenv("EBAY_API_RATE_LIMIT", "5/s")

    # Canonical model policy
    low_stock_threshold: int = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))
    # Example: {"VIP": 1000, "High Value": 500, "Regular": 100}
    customer_segment_thresholds: dict[str, float] = json.loads(
        os.getenv("CUSTOMER_SEGMENT_THRESHOLDS", '{"VIP": 1000, "High Value": 500, "Regular": 100}')
    )
    order_total_tolerance: float = float(os.getenv("ORDER_TOTAL_TOLERANCE", "0.05"))

    @property
    def ebay_api_base_url(self) -> str:
        return "https://api.sandbox.ebay.com" if self.ebay_sandbox else "https://api.ebay.com"

    def rate_limit_for(self, platform: str) -> str:
        """Rate string configured for a platform, falling back to 1/s."""
        return getattr(self, f"{platform}_api_rate_limit", None) or "1/s"

    def oauth_callback_url(self, platform: str) -> str:
        return f"{self.oauth_redirect_base_url.rstrip('/')}/{platform}/callback"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = Settings()
