"""
Unit tests for ComplianceService — audit record first, then processing.

Version: 1.0.0
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from platform_bridge.core.exceptions import StorageError
from platform_bridge.schemas.canonical import (
    CanonicalWebhookEvent,
    ComplianceStatus,
    Platform,
)
from platform_bridge.services.compliance_service import ComplianceService

pytestmark = pytest.mark.unit


@pytest.fixture
def store():
    return AsyncMock()


@pytest.fixture
def connections():
    return AsyncMock()


@pytest.fixture
def enqueue_record():
    return MagicMock()


@pytest.fixture
def service(store, connections, enqueue_record):
    return ComplianceService(store=store, connections=connections, enqueue_record=enqueue_record)


def _event(topic="customer.data_request", platform=Platform.SHOPIFY, shop="demo.myshopify.com", payload=None):
    return CanonicalWebhookEvent(
        id="evt-7",
        platform=platform,
        topic=topic,
        shop_domain=shop,
        payload=payload or {"customer": {"id": 42, "email": "c@x.test"}, "orders_requested": [1]},
        received_at="2024-03-01T00:00:00+00:00",
    )


class TestRecord:

    @pytest.mark.asyncio
    async def test_record_writes_received(self, service, store):
        request = await service.record(_event())

        store.record.assert_awaited_once_with(request)
        assert request.id == "evt-7"
        assert request.webhook_event_id == "evt-7"
        assert request.status == ComplianceStatus.RECEIVED
        assert request.customer_email == "c@x.test"

    @pytest.mark.asyncio
    async def test_write_failure_handed_to_queue(self, service, store, enqueue_record):
        store.record.side_effect = StorageError("down")

        request = await service.record(_event())

        enqueue_record.assert_called_once()
        assert enqueue_record.call_args.args[0]["id"] == request.id

    @pytest.mark.asyncio
    async def test_queue_failure_does_not_raise(self, service, store, enqueue_record):
        store.record.side_effect = StorageError("down")
        enqueue_record.side_effect = ConnectionError("broker down")

        request = await service.record(_event())

        assert request.id == "evt-7"

    @pytest.mark.asyncio
    async def test_no_queue_configured(self, store, connections):
        store.record.side_effect = StorageError("down")
        service = ComplianceService(store=store, connections=connections)

        assert (await service.record(_event())).id == "evt-7"

    @pytest.mark.asyncio
    async def test_non_string_email_still_recorded(self, service, store):
        request = await service.record(_event(payload={"customer": {"id": 1, "email": 5}}))

        store.record.assert_awaited_once_with(request)
        assert request.customer_id == "1"
        assert request.customer_email is None

    @pytest.mark.asyncio
    async def test_unvalidated_subject_recorded_with_raw_payload(self, service, store):
        payload = {"customer": {"id": 1, "email": 5}}
        with patch("platform_bridge.services.compliance_service.compliance_subject", return_value=("1", 5)):
            request = await service.record(_event(payload=payload))

        store.record.assert_awaited_once_with(request)
        assert request.customer_id is None
        assert request.payload == payload
        assert request.error.startswith("unreadable subject")
        assert request.status == ComplianceStatus.RECEIVED


class TestProcess:

    @pytest.mark.asyncio
    async def test_data_request_marked_processed(self, service, store, connections):
        request = service.build_request(_event())

        result = await service.process(request)

        assert result.status == ComplianceStatus.PROCESSED
        store.set_status.assert_awaited_once_with("evt-7", ComplianceStatus.PROCESSED)
        connections.delete_for_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ebay_account_deletion_removes_connections(self, service, connections):
        event = _event(
            topic="account.deleted",
            platform=Platform.EBAY,
            shop="seller_one",
            payload={"notification": {"data": {"username": "seller_one", "userId": "u-9"}}},
        )
        request = service.build_request(event)

        await service.process(request)

        assert request.customer_id == "u-9"
        connections.delete_for_account.assert_awaited_once_with("ebay", "seller_one")

    @pytest.mark.asyncio
    async def test_failure_marked_and_raised(self, service, store, connections):
        connections.delete_for_account.side_effect = StorageError("down")
        request = service.build_request(_event(topic="shop.redact"))

        with pytest.raises(StorageError):
            await service.process(request)

        assert request.status == ComplianceStatus.FAILED
        store.set_status.assert_awaited_once_with("evt-7", ComplianceStatus.FAILED, error="down")
