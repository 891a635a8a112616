"""
Unit tests for WebhookIngestionService.

Tests cover:
- Authentication happens before parsing (missing / bad signature)
- Malformed JSON is stored as a failed event and still acknowledged
- Compliance topics are recorded before the event is processed
- app.uninstalled disconnects the stored connection
- Processing failures are recorded and queued for retry
- Unreadable payloads and unwritable events are still acknowledged and
  handed to the background queue
- Reprocessing stored events

Version: 1.0.0
"""
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from platform_bridge.core.exceptions import SignatureVerificationError, StorageError
from platform_bridge.schemas.canonical import (
    CanonicalWebhookEvent,
    ConnectionStatus,
    Platform,
    WebhookStatus,
)
from platform_bridge.services.compliance_service import ComplianceService
from platform_bridge.services.webhook_service import WebhookIngestionService
from platform_bridge.utils.webhook_signatures import (
    SHOPIFY_SIGNATURE_HEADER,
    HmacSha256Verifier,
    VerifierRegistry,
    compute_hmac_sha256,
)

pytestmark = pytest.mark.unit

SECRET = "shopify-secret"


@pytest.fixture
def events():
    return AsyncMock()


@pytest.fixture
def connections():
    return AsyncMock()


@pytest.fixture
def compliance_store():
    return AsyncMock()


@pytest.fixture
def enqueue_retry():
    return MagicMock()


@pytest.fixture
def enqueue_store():
    return MagicMock()


@pytest.fixture
def service(events, connections, compliance_store, enqueue_retry, enqueue_store):
    verifiers = VerifierRegistry({
        Platform.SHOPIFY: HmacSha256Verifier(Platform.SHOPIFY, SECRET, SHOPIFY_SIGNATURE_HEADER),
    })
    compliance = ComplianceService(store=compliance_store, connections=connections)
    return WebhookIngestionService(
        verifiers=verifiers,
        events=events,
        compliance=compliance,
        connections=connections,
        enqueue_retry=enqueue_retry,
        enqueue_store=enqueue_store,
    )


def _signed(topic, payload, shop="demo.myshopify.com"):
    body = json.dumps(payload).encode()
    headers = {
        SHOPIFY_SIGNATURE_HEADER: compute_hmac_sha256(SECRET, body),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
    }
    return headers, body


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_missing_signature(self, service, events):
        with pytest.raises(SignatureVerificationError, match="missing"):
            await service.ingest(Platform.SHOPIFY, {"X-Shopify-Topic": "orders/create"}, b"{}")
        events.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tampered_body(self, service, events):
        headers, body = _signed("orders/create", {"id": 1})

        with pytest.raises(SignatureVerificationError, match="mismatch"):
            await service.ingest(Platform.SHOPIFY, headers, body + b" ")
        events.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_platform_without_verifier(self, service):
        with pytest.raises(SignatureVerificationError):
            await service.ingest(Platform.AMAZON, {}, b"{}")


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

class TestIngest:

    @pytest.mark.asyncio
    async def test_order_event_stored_and_processed(self, service, events):
        headers, body = _signed("orders/create", {"id": 450789469})

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        saved = events.save.await_args.args[0]
        assert saved.topic == "order.created"
        assert saved.resource_id == "450789469"
        assert receipt.request_id == saved.id
        events.mark_processed.assert_awaited_once_with(saved.id)

    @pytest.mark.asyncio
    async def test_malformed_json_acknowledged(self, service, events):
        body = b"{not json"
        headers = {SHOPIFY_SIGNATURE_HEADER: compute_hmac_sha256(SECRET, body)}

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        saved = events.save.await_args.args[0]
        assert saved.status == WebhookStatus.FAILED
        assert saved.payload == {"raw": "{not json"}
        assert saved.error.startswith("malformed JSON")
        assert receipt.request_id == saved.id
        events.mark_processed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_object_body_acknowledged(self, service, events):
        body = b"[1, 2]"
        headers = {SHOPIFY_SIGNATURE_HEADER: compute_hmac_sha256(SECRET, body)}

        await service.ingest(Platform.SHOPIFY, headers, body)

        assert events.save.await_args.args[0].status == WebhookStatus.FAILED

    @pytest.mark.asyncio
    async def test_compliance_recorded_before_event(self, service, events, compliance_store):
        order = []
        compliance_store.record.side_effect = lambda request: order.append("compliance")
        events.save.side_effect = lambda event: order.append("event")
        headers, body = _signed(
            "customers/redact",
            {"shop_domain": "demo.myshopify.com", "customer": {"id": 207119551, "email": "a@x.test"}},
        )

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        assert order == ["compliance", "event"]
        request = compliance_store.record.await_args.args[0]
        assert request.id == receipt.request_id
        assert request.customer_id == "207119551"
        compliance_store.set_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shop_redact_removes_connections(self, service, connections):
        headers, body = _signed("shop/redact", {"shop_id": 954889, "shop_domain": "demo.myshopify.com"})

        await service.ingest(Platform.SHOPIFY, headers, body)

        connections.delete_for_account.assert_awaited_once_with("shopify", "demo.myshopify.com")

    @pytest.mark.asyncio
    async def test_uninstall_disconnects(self, service, connections):
        headers, body = _signed("app/uninstalled", {"id": 1})

        await service.ingest(Platform.SHOPIFY, headers, body)

        connections.set_status.assert_awaited_once_with(
            "shopify", "demo.myshopify.com", ConnectionStatus.DISCONNECTED
        )

    @pytest.mark.asyncio
    async def test_processing_failure_recorded_and_queued(self, service, events, connections, enqueue_retry):
        connections.set_status.side_effect = StorageError("down")
        headers, body = _signed("app/uninstalled", {"id": 1})

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        events.mark_failed.assert_awaited_once()
        assert events.mark_failed.await_args.args[0] == receipt.request_id
        enqueue_retry.assert_called_once_with(receipt.request_id)
        events.mark_processed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_write_failure_still_processes(self, service, events, connections, enqueue_store):
        events.save.side_effect = StorageError("down")
        headers, body = _signed("app/uninstalled", {"id": 1})

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        connections.set_status.assert_awaited_once()
        events.mark_processed.assert_not_awaited()
        record = enqueue_store.call_args.args[0]
        assert record["id"] == receipt.request_id
        assert record["status"] == "processed"

    @pytest.mark.asyncio
    async def test_unstored_failed_event_handed_to_queue(
        self, service, events, connections, enqueue_retry, enqueue_store
    ):
        events.save.side_effect = StorageError("down")
        connections.set_status.side_effect = StorageError("down")
        headers, body = _signed("app/uninstalled", {"id": 1})

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        enqueue_retry.assert_not_called()
        enqueue_store.assert_called_once()
        record = enqueue_store.call_args.args[0]
        assert record["id"] == receipt.request_id
        assert record["topic"] == "app.uninstalled"
        assert record["status"] == "failed"
        assert record["error"] == "down"

    @pytest.mark.asyncio
    async def test_queue_failure_on_hand_off_does_not_raise(self, service, events, enqueue_store):
        events.save.side_effect = StorageError("down")
        enqueue_store.side_effect = ConnectionError("broker down")
        headers, body = _signed("orders/create", {"id": 1})

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        assert receipt.request_id

    @pytest.mark.asyncio
    async def test_normalization_failure_stored_as_unknown(self, service, events):
        headers, body = _signed("orders/create", {"id": 1})

        with patch(
            "platform_bridge.services.webhook_service.normalize_webhook",
            side_effect=AttributeError("'int' object has no attribute 'startswith'"),
        ):
            receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        saved = events.save.await_args.args[0]
        assert saved.id == receipt.request_id
        assert saved.topic == "unknown"
        assert saved.status == WebhookStatus.FAILED
        assert saved.payload == {"id": 1}
        assert saved.error.startswith("normalization failed")
        events.mark_processed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_compliance_with_non_string_email_acknowledged(self, service, compliance_store):
        headers, body = _signed("customers/redact", {"customer": {"id": 1, "email": 5}})

        receipt = await service.ingest(Platform.SHOPIFY, headers, body)

        request = compliance_store.record.await_args.args[0]
        assert request.id == receipt.request_id
        assert request.customer_id == "1"
        assert request.payload == {"customer": {"id": 1, "email": 5}}


# ---------------------------------------------------------------------------
# Reprocess
# ---------------------------------------------------------------------------

def _stored(status=WebhookStatus.FAILED):
    return CanonicalWebhookEvent(
        id="evt-1",
        platform=Platform.SHOPIFY,
        topic="app.uninstalled",
        shop_domain="demo.myshopify.com",
        received_at="2024-03-01T00:00:00+00:00",
        status=status,
    )


class TestReprocess:

    @pytest.mark.asyncio
    async def test_missing_event(self, service, events):
        events.get.return_value = None
        assert await service.reprocess("evt-1") is False

    @pytest.mark.asyncio
    async def test_already_processed(self, service, events, connections):
        events.get.return_value = _stored(WebhookStatus.PROCESSED)

        assert await service.reprocess("evt-1") is True
        connections.set_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_event_replayed(self, service, events):
        events.get.return_value = _stored()

        assert await service.reprocess("evt-1") is True
        events.mark_processed.assert_awaited_once_with("evt-1")

    @pytest.mark.asyncio
    async def test_replay_error_propagates(self, service, events, connections):
        events.get.return_value = _stored()
        connections.set_status.side_effect = StorageError("down")

        with pytest.raises(StorageError):
            await service.reprocess("evt-1")
        events.mark_failed.assert_awaited_once()
