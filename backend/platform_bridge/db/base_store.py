"""
Base store — shared Supabase CRUD helpers.

Every table store inherits insert / upsert / select / update / delete
primitives from here. PostgREST failures surface as StorageError, which
is retryable, so Celery tasks that persist data retry on outages.
Version: 1.0.0
"""

import logging
from typing import Any, Dict, List

from postgrest.exceptions import APIError

from platform_bridge.clients.supabase_client import SupabaseClient
from platform_bridge.core.config import settings
from platform_bridge.core.exceptions import StorageError

logger = logging.getLogger("base_store")


class BaseStore:
    """Base class for all Supabase stores."""

    table: str = ""

    def __init__(self, supabase_client: SupabaseClient | None = None) -> None:
        self._supabase_client = supabase_client

    @property
    def _client(self):
        if self._supabase_client is None:
            self._supabase_client = SupabaseClient(settings)
        return self._supabase_client.client

    def _fail(self, operation: str, table: str, error: APIError) -> StorageError:
        logger.info("supabase error op=%s table=%s detail=%s", operation, table, str(error))
        return StorageError(f"Supabase {operation} on {table} failed: {error}")

    async def _insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            self._client.table(table).insert(rows).execute()
        except APIError as e:
            raise self._fail("insert", table, e)

    async def _upsert(
        self, table: str, rows: List[Dict[str, Any]], on_conflict: str | None = None
    ) -> None:
        """Insert rows, updating existing ones on conflict."""
        if not rows:
            return
        try:
            if on_conflict:
                self._client.table(table).upsert(rows, on_conflict=on_conflict).execute()
            else:
                self._client.table(table).upsert(rows).execute()
        except APIError as e:
            raise self._fail("upsert", table, e)

    async def _select(
        self,
        table: str,
        columns: str = "*",
        filters: Dict[str, Any] | None = None,
        limit: int | None = None,
        order_by: str | None = None,
    ) -> List[Dict[str, Any]]:
        try:
            query = self._client.table(table).select(columns)
            for key, value in (filters or {}).items():
                query = query.eq(key, value)
            if order_by:
                query = query.order(order_by, desc=True)
            if limit:
                query = query.limit(limit)
            response = query.execute()
            return response.data or []
        except APIError as e:
            raise self._fail("select", table, e)

    async def _update(
        self, table: str, filters: Dict[str, Any], payload: Dict[str, Any]
    ) -> None:
        try:
            query = self._client.table(table).update(payload)
            for key, value in filters.items():
                query = query.eq(key, value)
            query.execute()
        except APIError as e:
            raise self._fail("update", table, e)

    async def _delete(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete matching rows; returns how many were removed."""
        if not filters:
            raise ValueError("refusing to delete without filters")
        try:
            query = self._client.table(table).delete()
            for key, value in filters.items():
                query = query.eq(key, value)
            response = query.execute()
            return len(response.data or [])
        except APIError as e:
            raise self._fail("delete", table, e)
