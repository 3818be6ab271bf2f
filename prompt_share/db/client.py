"""Synchronous Supabase wrapper used for table reads and writes, RPC calls and the user session."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

import structlog
from supabase import Client, create_client

from prompt_share.config import get_settings

logger = structlog.get_logger()


class SupabaseClient:
    """Wrapper around the Supabase client with convenience methods."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        return self._client

    def insert(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a record and return the created row."""
        result = self._client.table(table).insert(data).execute()
        return result.data[0]

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select records with optional filters, ordering, and limit."""
        query = self._client.table(table).select("*")

        if filters:
            for key, value in filters.items():
                query = query.eq(key, value)

        if order_by:
            query = query.order(order_by, desc=not ascending)

        if limit:
            query = query.limit(limit)

        result = query.execute()
        return result.data

    def get(self, table: str, id: str) -> dict[str, Any] | None:
        """Fetch a single record by ID, or None when it does not exist."""
        rows = self.select(table, filters={"id": id}, limit=1)
        return rows[0] if rows else None

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        """Count records matching equality filters without fetching them."""
        query = self._client.table(table).select("*", count="exact", head=True)
        if filters:
            for key, value in filters.items():
                query = query.eq(key, value)
        result = query.execute()
        return result.count or 0

    def update(self, table: str, id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a record by ID."""
        result = self._client.table(table).update(data).eq("id", id).execute()
        return result.data[0]

    def delete(self, table: str, id: str) -> None:
        """Delete a record by ID."""
        self._client.table(table).delete().eq("id", id).execute()

    def delete_where(self, table: str, filters: dict[str, Any]) -> None:
        """Delete records by composite key, e.g. hearts by (user_id, prompt_id)."""
        if not filters:
            raise ValueError("delete_where requires at least one filter")
        query = self._client.table(table).delete()
        for key, value in filters.items():
            query = query.eq(key, value)
        query.execute()

    def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        """Call a Postgres function (counter increments and decrements)."""
        return self._client.rpc(function, params or {}).execute().data

    def set_session(self, access_token: str, refresh_token: str) -> None:
        """Run subsequent queries as the signed-in user so row-level security applies."""
        self._client.auth.set_session(access_token, refresh_token)


@lru_cache
def get_supabase_client() -> SupabaseClient:
    """Get cached Supabase client instance."""
    settings = get_settings()
    client = create_client(settings.supabase_url, settings.supabase_key)
    logger.info("supabase.connected", url=settings.supabase_url)
    return SupabaseClient(client)
