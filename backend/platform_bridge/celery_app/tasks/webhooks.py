"""
Webhook retry tasks.

Tasks:
- reprocess_webhook_event: replay a stored event whose processing failed
- store_webhook_event: write an event whose row could not be stored while
  the webhook was being acknowledged, then replay it if needed
- record_compliance_request: write a compliance audit record that could
  not be stored while the webhook was being acknowledged, then act on it
"""
import logging
from typing import Any, Dict

import httpx

from platform_bridge.celery_app.celery_config import celery_app
from platform_bridge.celery_app.tasks.base import BaseTask, run_async
from platform_bridge.core.exceptions import NonRetryableError, RetryableError
from platform_bridge.schemas.canonical import CanonicalWebhookEvent, ComplianceRequest, WebhookStatus

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="tasks.webhooks.reprocess_webhook_event",
    autoretry_for=(RetryableError, ConnectionError, TimeoutError, httpx.ConnectError, httpx.ReadTimeout),
    dont_autoretry_for=(NonRetryableError,),
    retry_backoff=True,
    max_retries=5,
)
def reprocess_webhook_event(self, event_id: str):
    """
    Replay one stored webhook event.

    Args:
        event_id: webhook_events row id

    Returns:
        dict: event id and whether the event was found
    """
    from platform_bridge.container import get_webhook_service

    logger.info("reprocessing webhook event id=%s attempt=%s", event_id, self.request.retries)
    found = run_async(get_webhook_service().reprocess(event_id))
    return {"event_id": event_id, "found": found}


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="tasks.webhooks.record_compliance_request",
    autoretry_for=(RetryableError, ConnectionError, TimeoutError),
    dont_autoretry_for=(NonRetryableError,),
    retry_backoff=True,
    max_retries=10,
)
def record_compliance_request(self, record: Dict[str, Any]):
    """Persist a compliance audit record, then process it."""
    from platform_bridge.container import get_compliance_service

    request = ComplianceRequest(**record)
    service = get_compliance_service()

    async def _run():
        await service.store.record(request)
        await service.process(request)

    logger.info(
        "recording compliance request id=%s topic=%s attempt=%s",
        request.id, request.topic, self.request.retries,
    )
    run_async(_run())
    return {"request_id": request.id, "status": request.status.value}


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="tasks.webhooks.store_webhook_event",
    autoretry_for=(RetryableError, ConnectionError, TimeoutError, httpx.ConnectError, httpx.ReadTimeout),
    dont_autoretry_for=(NonRetryableError,),
    retry_backoff=True,
    max_retries=10,
)
def store_webhook_event(self, record: Dict[str, Any]):
    """
    Write a webhook event that could not be stored during acknowledgement.

    Events that were not processed inline are replayed once written;
    unreadable deliveries (topic "unknown") are only stored.

    Args:
        record: CanonicalWebhookEvent serialized with model_dump(mode="json")

    Returns:
        dict: event id and its status after this run
    """
    from platform_bridge.container import get_webhook_service

    event = CanonicalWebhookEvent(**record)
    service = get_webhook_service()

    async def _run():
        await service.events.save(event)
        if event.status == WebhookStatus.PROCESSED or event.topic == "unknown":
            return event.status.value
        await service.reprocess(event.id)
        return WebhookStatus.PROCESSED.value

    logger.info(
        "storing webhook event id=%s topic=%s status=%s attempt=%s",
        event.id, event.topic, event.status.value, self.request.retries,
    )
    status = run_async(_run())
    return {"event_id": event.id, "status": status}
