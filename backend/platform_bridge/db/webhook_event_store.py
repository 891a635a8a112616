"""
Webhook event store — the webhook_events table.

Every accepted delivery is written before processing so a failed event
can be replayed from its stored payload.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from platform_bridge.db.base_store import BaseStore
from platform_bridge.schemas.canonical import CanonicalWebhookEvent, WebhookStatus

logger = logging.getLogger("webhook_event_store")


class WebhookEventStore(BaseStore):
    table = "webhook_events"

    async def save(self, event: CanonicalWebhookEvent) -> None:
        await self._upsert(self.table, [event.model_dump(mode="json")], on_conflict="id")
        logger.info(
            "webhook event stored id=%s platform=%s topic=%s status=%s",
            event.id, event.platform.value, event.topic, event.status.value,
        )

    async def get(self, event_id: str) -> Optional[CanonicalWebhookEvent]:
        rows = await self._select(self.table, filters={"id": event_id}, limit=1)
        return CanonicalWebhookEvent(**rows[0]) if rows else None

    async def mark_processed(self, event_id: str) -> None:
        await self._update(
            self.table,
            {"id": event_id},
            {
                "status": WebhookStatus.PROCESSED.value,
                "processed_at": datetime.now(timezone.utc).isoformat(),
                "error": None,
            },
        )

    async def mark_failed(self, event_id: str, error: str) -> None:
        await self._update(
            self.table,
            {"id": event_id},
            {"status": WebhookStatus.FAILED.value, "error": error[:1000]},
        )
        logger.info("webhook event failed id=%s error=%s", event_id, error)

    async def list_failed(self, platform: Optional[str] = None, limit: int = 100) -> List[CanonicalWebhookEvent]:
        filters = {"status": WebhookStatus.FAILED.value}
        if platform:
            filters["platform"] = platform
        rows = await self._select(self.table, filters=filters, limit=limit, order_by="received_at")
        return [CanonicalWebhookEvent(**row) for row in rows]
