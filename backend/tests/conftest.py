"""
Pytest configuration and shared fixtures for Platform Bridge tests.

Provides test settings, a no-op rate limiter, httpx MockTransport
helpers for adapter tests and Supabase table mocks for store tests.
Version: 1.0.0
"""
import json
import os

os.environ.setdefault("AUTO_START_CELERY", "false")

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from platform_bridge.core.config import Settings


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings():
    """Settings object with test defaults (no real credentials)."""
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_service_role_key="test-service-key",
        redis_url="redis://localhost:6379/15",
        oauth_redirect_base_url="https://bridge.test/api/oauth",
        shopify_api_key="shopify-key",
        shopify_api_secret="shopify-secret",
        amazon_lwa_client_id="amzn-client",
        amazon_lwa_client_secret="amzn-secret",
        amazon_application_id="amzn1.sp.solution.test",
        bigcommerce_client_id="bc-client",
        bigcommerce_client_secret="bc-secret",
        bigcommerce_webhook_token="bc-hook-token",
        woocommerce_webhook_secret="woo-secret",
        ebay_client_id="ebay-client",
        ebay_client_secret="ebay-secret",
        ebay_ru_name="Test-RuName",
        ebay_verification_token="verification-token-0123456789-abcdefghij",
        ebay_notification_endpoint="https://bridge.test/webhooks/ebay",
        rate_limit_default_delay_seconds=1.0,
        detail_fetch_concurrency=2,
    )


# ---------------------------------------------------------------------------
# Transport helpers
# ---------------------------------------------------------------------------

class NoopLimiter:
    """Rate limiter that never waits; counts acquisitions."""

    def __init__(self):
        self.acquired = 0

    async def acquire(self):
        self.acquired += 1


@pytest.fixture
def limiter():
    return NoopLimiter()


@pytest.fixture
def fake_sleep():
    """Replaces asyncio.sleep so rate-limit waits are recorded, not slept."""
    return AsyncMock()


class Recorder:
    """
    httpx MockTransport handler that routes by (method, path) and logs requests.

    ``add`` registers one or more responses; they are served in order and
    the last one repeats. A response may be JSON data (served as 200), an
    httpx.Response or a callable taking the request.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method: str, path: str, *responses):
        self.routes[(method, path)] = list(responses)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"no route for {request.method} {request.url.path}"})
        value = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(value):
            value = value(request)
        if isinstance(value, httpx.Response):
            return value
        return httpx.Response(200, json=value)

    def calls(self, method: str, path: str):
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def json_of(request: httpx.Request):
        return json.loads(request.content) if request.content else None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def recorder():
    return Recorder()


# ---------------------------------------------------------------------------
# Supabase mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_supabase():
    """Build a mock SupabaseClient with chained table builder."""
    supabase_client = MagicMock()
    mock_table = MagicMock()
    for method in ("select", "insert", "upsert", "update", "delete", "eq", "order", "limit"):
        getattr(mock_table, method).return_value = mock_table
    mock_table.execute.return_value = MagicMock(data=[])
    supabase_client.client.table.return_value = mock_table
    return supabase_client, mock_table
