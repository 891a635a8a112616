"""
Compliance store — the compliance_requests table.

Data requests and erasures are recorded before anything acts on them.
"""
import logging
from typing import Optional

from platform_bridge.db.base_store import BaseStore
from platform_bridge.schemas.canonical import ComplianceRequest, ComplianceStatus

logger = logging.getLogger("compliance_store")


class ComplianceStore(BaseStore):
    table = "compliance_requests"

    async def record(self, request: ComplianceRequest) -> None:
        await self._upsert(self.table, [request.model_dump(mode="json")], on_conflict="id")
        logger.info(
            "compliance request recorded id=%s platform=%s topic=%s shop=%s",
            request.id, request.platform.value, request.topic, request.shop_domain,
        )

    async def get(self, request_id: str) -> Optional[ComplianceRequest]:
        rows = await self._select(self.table, filters={"id": request_id}, limit=1)
        return ComplianceRequest(**rows[0]) if rows else None

    async def set_status(self, request_id: str, status: ComplianceStatus, error: str | None = None) -> None:
        await self._update(self.table, {"id": request_id}, {"status": status.value, "error": error})
