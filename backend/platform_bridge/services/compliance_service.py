"""
Compliance service — auditable handling of privacy requests.

Customer data requests, customer redactions, shop redactions and eBay
account deletions carry regulatory deadlines, so the audit record is
written before anything else happens and survives processing failures:

1. record(): write the request as RECEIVED. If Supabase is down the
   record is handed to a Celery task that retries the write.
2. process(): act on it (shop.redact / account.deleted remove stored
   connections) and move the record to PROCESSED or FAILED.
Version: 1.0.0
"""
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from platform_bridge.core.exceptions import PlatformBridgeError
from platform_bridge.db.compliance_store import ComplianceStore
from platform_bridge.db.connection_store import ConnectionStore
from platform_bridge.schemas.canonical import (
    CanonicalWebhookEvent,
    ComplianceRequest,
    ComplianceStatus,
)
from platform_bridge.utils.webhook_normalize import compliance_subject

logger = logging.getLogger("compliance_service")

# Topics whose processing removes every stored credential for the account
ACCOUNT_ERASURE_TOPICS = frozenset({"shop.redact", "account.deleted"})


class ComplianceService:
    def __init__(
        self,
        store: ComplianceStore,
        connections: ConnectionStore,
        enqueue_record: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        self.store = store
        self.connections = connections
        self._enqueue_record = enqueue_record

    @staticmethod
    def build_request(event: CanonicalWebhookEvent) -> ComplianceRequest:
        """
        Audit record for a compliance delivery.

        A subject that does not validate still yields a record carrying the
        raw payload, so the request is never left unaudited.
        """
        base = dict(
            id=event.id,
            platform=event.platform,
            topic=event.topic,
            shop_domain=event.shop_domain,
            requested_at=event.received_at,
            payload=event.payload,
            webhook_event_id=event.id,
        )
        try:
            customer_id, customer_email = compliance_subject(event)
            return ComplianceRequest(customer_id=customer_id, customer_email=customer_email, **base)
        except (PydanticValidationError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("compliance subject unreadable id=%s topic=%s error=%s", event.id, event.topic, exc)
            return ComplianceRequest(error=f"unreadable subject: {exc}"[:1000], **base)

    async def record(self, event: CanonicalWebhookEvent) -> ComplianceRequest:
        """Persist the audit record; never raises so the webhook is still acknowledged."""
        request = self.build_request(event)
        try:
            await self.store.record(request)
        except PlatformBridgeError as exc:
            logger.error(
                "compliance record write failed id=%s topic=%s shop=%s error=%s",
                request.id, request.topic, request.shop_domain, exc,
            )
            self._hand_off(request)
        return request

    def _hand_off(self, request: ComplianceRequest) -> None:
        if self._enqueue_record is None:
            logger.error("compliance record dropped, no background queue id=%s", request.id)
            return
        try:
            self._enqueue_record(request.model_dump(mode="json"))
            logger.info("compliance record queued for retry id=%s", request.id)
        except Exception:
            logger.exception("compliance record could not be queued id=%s", request.id)

    async def process(self, request: ComplianceRequest) -> ComplianceRequest:
        try:
            if request.topic in ACCOUNT_ERASURE_TOPICS and request.shop_domain:
                await self.connections.delete_for_account(request.platform.value, request.shop_domain)
            await self.store.set_status(request.id, ComplianceStatus.PROCESSED)
        except PlatformBridgeError as exc:
            request.status = ComplianceStatus.FAILED
            request.error = str(exc)
            logger.error("compliance processing failed id=%s topic=%s error=%s", request.id, request.topic, exc)
            try:
                await self.store.set_status(request.id, ComplianceStatus.FAILED, error=str(exc))
            except PlatformBridgeError as store_exc:
                logger.error("compliance status update failed id=%s error=%s", request.id, store_exc)
            raise
        request.status = ComplianceStatus.PROCESSED
        logger.info(
            "compliance request processed id=%s platform=%s topic=%s",
            request.id, request.platform.value, request.topic,
        )
        return request
