"""
Integration tests for the health check endpoints.

Verifies GET /health returns 200 with status "healthy" and that
GET /health/platforms reports each adapter's declared capabilities.
Version: 1.0.0
"""
import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client():
    """Create a test client with Celery auto-start disabled."""
    from platform_bridge.main import app

    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.mark.integration
class TestHealthRoutes:

    def test_health_returns_status_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_health_wrong_method_not_allowed(self, client):
        response = client.post("/health")
        assert response.status_code == 405

    def test_platform_capabilities(self, client):
        response = client.get("/health/platforms")
        data = response.json()

        assert set(data) == {"shopify", "amazon", "bigcommerce", "woocommerce", "ebay"}
        assert "customers" in data["shopify"]
        assert "customers" not in data["amazon"]
        assert "customers" not in data["ebay"]
        assert "oauth_code_exchange" not in data["woocommerce"]
