"""Supabase realtime and auth adapters for the sync engine.

Realtime channels need the async client, so this module owns one; plain
CRUD keeps going through the synchronous ``SupabaseClient`` wrapper.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from supabase import AsyncClient, acreate_client

from prompt_share.config import get_settings
from prompt_share.core.realtime import ChangeEvent

logger = structlog.get_logger()


class ChannelSubscription:
    """Handle for one realtime channel."""

    def __init__(self, client: AsyncClient, channel: Any, name: str) -> None:
        self._client = client
        self._channel = channel
        self.name = name

    async def unsubscribe(self) -> None:
        await self._client.remove_channel(self._channel)
        logger.debug("realtime.channel_removed", channel=self.name)


class SupabaseChangeFeed:
    """``ChangeFeed`` backed by Supabase ``postgres_changes`` channels."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def subscribe(
        self,
        name: str,
        table: str,
        callback: Callable[[ChangeEvent], None],
        row_filter: str | None = None,
    ) -> ChannelSubscription:
        channel = self._client.channel(name)

        def on_change(payload: dict[str, Any]) -> None:
            callback(ChangeEvent.from_payload(payload, table))

        channel.on_postgres_changes(
            "*", schema="public", table=table, filter=row_filter, callback=on_change
        )
        await channel.subscribe()
        logger.debug("realtime.channel_joined", channel=name, table=table, filter=row_filter)
        return ChannelSubscription(self._client, channel, name)


async def create_async_client() -> AsyncClient:
    """Async Supabase client for realtime channels and auth callbacks."""
    settings = get_settings()
    client = await acreate_client(settings.supabase_url, settings.supabase_key)
    logger.info("supabase.async_connected", url=settings.supabase_url)
    return client


async def sign_in(client: AsyncClient, email: str, password: str) -> Any:
    """Password sign-in. Returns the gotrue session."""
    response = await client.auth.sign_in_with_password({"email": email, "password": password})
    return response.session
