"""
Connection store — the platform_connections table.

One row per connected store account, keyed by (platform, account_key).
The account key is whichever identity the platform uses for a store:
Shopify shop domain, BigCommerce store hash, WooCommerce site URL or
Amazon/eBay seller id.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from platform_bridge.adapters.base import PlatformCredentials
from platform_bridge.db.base_store import BaseStore
from platform_bridge.schemas.canonical import ConnectionStatus

logger = logging.getLogger("connection_store")


def account_key(credentials: PlatformCredentials) -> Optional[str]:
    return (
        credentials.shop_domain
        or credentials.store_hash
        or credentials.store_url
        or credentials.seller_id
    )


class ConnectionStore(BaseStore):
    table = "platform_connections"

    async def upsert(
        self,
        credentials: PlatformCredentials,
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
    ) -> Dict[str, Any]:
        key = account_key(credentials)
        now = datetime.now(timezone.utc).isoformat()
        row = {
            "platform": credentials.platform.value,
            "account_key": key,
            "status": status.value,
            "credentials": credentials.model_dump(mode="json"),
            "updated_at": now,
        }
        await self._upsert(self.table, [row], on_conflict="platform,account_key")
        logger.info(
            "connection saved platform=%s account=%s status=%s",
            credentials.platform.value, key, status.value,
        )
        return row

    async def get(self, platform: str, key: str) -> Optional[PlatformCredentials]:
        rows = await self._select(
            self.table, filters={"platform": platform, "account_key": key}, limit=1
        )
        if not rows:
            return None
        return PlatformCredentials(**(rows[0].get("credentials") or {}))

    async def set_status(self, platform: str, key: str, status: ConnectionStatus) -> None:
        await self._update(
            self.table,
            {"platform": platform, "account_key": key},
            {"status": status.value, "updated_at": datetime.now(timezone.utc).isoformat()},
        )

    async def delete_for_account(self, platform: str, key: str) -> int:
        """Remove every stored credential for an account (shop redaction, account deletion)."""
        removed = await self._delete(self.table, {"platform": platform, "account_key": key})
        logger.info("connections deleted platform=%s account=%s count=%s", platform, key, removed)
        return removed
