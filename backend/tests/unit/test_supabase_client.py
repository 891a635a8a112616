"""
Unit tests for SupabaseClient — initialization and the shared client.

Tests cover:
- Constructor validates required URL and key settings
- get_client creates and caches a Supabase client singleton
- client property delegates to get_client

Version: 1.0.0
"""
import pytest
from unittest.mock import MagicMock, patch

from platform_bridge.clients.supabase_client import SupabaseClient


@pytest.fixture(autouse=True)
def reset_singleton():
    SupabaseClient._instance = None
    yield
    SupabaseClient._instance = None


@pytest.mark.unit
class TestSupabaseClientInit:

    def test_init_stores_url_and_key(self, test_settings):
        client = SupabaseClient(test_settings)

        assert client._url == "https://test.supabase.co"
        assert client._key == "test-service-key"

    @pytest.mark.parametrize("field", ["supabase_url", "supabase_service_role_key"])
    def test_init_raises_when_setting_missing(self, test_settings, field):
        settings = test_settings.model_copy(update={field: None})

        with pytest.raises(RuntimeError):
            SupabaseClient(settings)


@pytest.mark.unit
class TestGetClient:

    def test_client_created_once(self, test_settings):
        sdk_client = MagicMock()
        with patch("platform_bridge.clients.supabase_client.create_client", return_value=sdk_client) as create:
            wrapper = SupabaseClient(test_settings)
            assert wrapper.get_client() is sdk_client
            assert wrapper.client is sdk_client

        create.assert_called_once_with("https://test.supabase.co", "test-service-key")
