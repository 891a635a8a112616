"""
Webhook ingestion service — verify, normalize, persist, process.

Order of operations for one delivery:

1. Authenticate the raw body. Missing or bad signatures raise
   SignatureVerificationError (401) before anything is parsed.
2. Parse JSON. A malformed body is logged and stored as a failed event,
   but still acknowledged.
3. Normalize to CanonicalWebhookEvent; compliance topics get their audit
   record written first. A payload that cannot be normalized is stored as
   a failed "unknown" event.
4. Persist the event, process it, mark it processed.

Anything that fails after step 1 is recorded against the event and
retried by Celery; the platform always gets a 200 so it does not start
its own retry backoff. When the event row itself cannot be written, the
serialized event is handed to Celery, which writes it and replays it.
Version: 1.0.0
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from platform_bridge.adapters.base import COMPLIANCE_TOPICS
from platform_bridge.core.exceptions import PlatformBridgeError, SignatureVerificationError
from platform_bridge.db.connection_store import ConnectionStore
from platform_bridge.db.webhook_event_store import WebhookEventStore
from platform_bridge.schemas.canonical import (
    CanonicalWebhookEvent,
    ComplianceRequest,
    ConnectionStatus,
    Platform,
    WebhookStatus,
)
from platform_bridge.schemas.webhooks import WebhookReceipt
from platform_bridge.services.compliance_service import ComplianceService
from platform_bridge.utils.webhook_normalize import normalize_webhook
from platform_bridge.utils.webhook_signatures import VerifierRegistry, WebhookVerifier

logger = logging.getLogger("webhook_service")

RAW_BODY_PREVIEW = 2000


class WebhookIngestionService:
    def __init__(
        self,
        verifiers: VerifierRegistry,
        events: WebhookEventStore,
        compliance: ComplianceService,
        connections: ConnectionStore,
        enqueue_retry: Optional[Callable[[str], Any]] = None,
        enqueue_store: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        self.verifiers = verifiers
        self.events = events
        self.compliance = compliance
        self.connections = connections
        self._enqueue_retry = enqueue_retry
        self._enqueue_store = enqueue_store

    def verifier_for(self, platform: Platform) -> Optional[WebhookVerifier]:
        return self.verifiers.for_platform(platform)

    async def authenticate(self, platform: Platform, headers: Mapping[str, str], raw_body: bytes) -> None:
        verifier = self.verifier_for(platform)
        if verifier is None:
            raise SignatureVerificationError(
                f"{platform.value} does not deliver HTTP webhooks", platform=platform.value
            )
        if not verifier.has_signature(headers):
            logger.info("webhook rejected platform=%s reason=missing_signature", platform.value)
            raise SignatureVerificationError(
                f"missing {verifier.signature_header} header", platform=platform.value
            )
        if not await verifier.verify(raw_body, headers):
            logger.info("webhook rejected platform=%s reason=invalid_signature", platform.value)
            raise SignatureVerificationError("webhook signature mismatch", platform=platform.value)

    async def ingest(self, platform: Platform, headers: Mapping[str, str], raw_body: bytes) -> WebhookReceipt:
        await self.authenticate(platform, headers, raw_body)

        event_id = str(uuid.uuid4())
        received_at = datetime.now(timezone.utc).isoformat()

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("webhook body is not JSON platform=%s id=%s error=%s", platform.value, event_id, exc)
            await self._store_malformed(platform, event_id, received_at, raw_body, str(exc))
            return WebhookReceipt(request_id=event_id)
        if not isinstance(payload, dict):
            logger.warning("webhook body is not an object platform=%s id=%s", platform.value, event_id)
            await self._store_malformed(platform, event_id, received_at, raw_body, "body is not a JSON object")
            return WebhookReceipt(request_id=event_id)

        try:
            event = normalize_webhook(platform, headers, payload, event_id=event_id, received_at=received_at)
        except Exception as exc:
            logger.exception("webhook normalization failed platform=%s id=%s", platform.value, event_id)
            await self._store_failed(platform, event_id, received_at, payload, f"normalization failed: {exc}")
            return WebhookReceipt(request_id=event_id)
        logger.info(
            "webhook received platform=%s topic=%s platform_topic=%s shop=%s id=%s",
            platform.value, event.topic, event.platform_topic, event.shop_domain, event.id,
        )

        compliance_request = None
        if event.topic in COMPLIANCE_TOPICS:
            compliance_request = await self.compliance.record(event)

        stored = True
        try:
            await self.events.save(event)
        except PlatformBridgeError as exc:
            stored = False
            logger.error("webhook event write failed id=%s error=%s", event.id, exc)

        try:
            await self.process(event, compliance_request)
            if stored:
                await self.events.mark_processed(event.id)
            else:
                event.status = WebhookStatus.PROCESSED
                event.processed_at = datetime.now(timezone.utc).isoformat()
        except Exception as exc:
            logger.exception("webhook processing failed id=%s topic=%s", event.id, event.topic)
            if stored:
                await self._fail(event.id, str(exc))
            else:
                event.status = WebhookStatus.FAILED
                event.error = str(exc)

        if not stored:
            self._hand_off(event)
        return WebhookReceipt(request_id=event.id)

    async def process(
        self,
        event: CanonicalWebhookEvent,
        compliance_request: Optional[ComplianceRequest] = None,
    ) -> None:
        if event.topic in COMPLIANCE_TOPICS:
            request = compliance_request or self.compliance.build_request(event)
            await self.compliance.process(request)
        elif event.topic == "app.uninstalled" and event.shop_domain:
            await self.connections.set_status(
                event.platform.value, event.shop_domain, ConnectionStatus.DISCONNECTED
            )

    async def reprocess(self, event_id: str) -> bool:
        """Replay a stored event; errors propagate so the caller can retry."""
        event = await self.events.get(event_id)
        if event is None:
            logger.warning("webhook reprocess skipped, event not found id=%s", event_id)
            return False
        if event.status == WebhookStatus.PROCESSED:
            logger.info("webhook reprocess skipped, already processed id=%s", event_id)
            return True
        try:
            await self.process(event)
        except PlatformBridgeError as exc:
            await self.events.mark_failed(event.id, str(exc))
            raise
        await self.events.mark_processed(event.id)
        logger.info("webhook reprocessed id=%s topic=%s", event.id, event.topic)
        return True

    async def _fail(self, event_id: str, error: str) -> None:
        try:
            await self.events.mark_failed(event_id, error)
        except PlatformBridgeError as exc:
            logger.error("webhook failure not recorded id=%s error=%s", event_id, exc)
        if self._enqueue_retry is None:
            return
        try:
            self._enqueue_retry(event_id)
        except Exception:
            logger.exception("webhook retry could not be queued id=%s", event_id)

    def _hand_off(self, event: CanonicalWebhookEvent) -> None:
        if self._enqueue_store is None:
            logger.error("webhook event dropped, no background queue id=%s", event.id)
            return
        try:
            self._enqueue_store(event.model_dump(mode="json"))
            logger.info("webhook event queued for storage id=%s status=%s", event.id, event.status.value)
        except Exception:
            logger.exception("webhook event could not be queued id=%s", event.id)

    async def _store_malformed(
        self, platform: Platform, event_id: str, received_at: str, raw_body: bytes, error: str
    ) -> None:
        raw = raw_body[:RAW_BODY_PREVIEW].decode("utf-8", errors="replace")
        await self._store_failed(platform, event_id, received_at, {"raw": raw}, f"malformed JSON: {error}")

    async def _store_failed(
        self, platform: Platform, event_id: str, received_at: str, payload: Dict[str, Any], error: str
    ) -> None:
        event = CanonicalWebhookEvent(
            id=event_id,
            platform=platform,
            topic="unknown",
            payload=payload,
            received_at=received_at,
            status=WebhookStatus.FAILED,
            error=error,
        )
        try:
            await self.events.save(event)
        except PlatformBridgeError as exc:
            logger.error("failed webhook not stored id=%s error=%s", event_id, exc)
            self._hand_off(event)
