"""Realtime Reconciler — translates backend change events into store requests.

One subscription per monitored table. Each channel feeds its own queue and
worker task, so events are handled in delivery order per channel; nothing
is ordered across channels. Insert and update events carry only a key, so
the full row is fetched before dispatching; the store only ever sees whole
entities. Heart and save events go through the same toggle transitions as
the optimistic local path and rely on their idempotency to absorb echoes.

Listens to:
- prompts — INSERT/UPDATE (fetched) and DELETE
- comments — INSERT/UPDATE (fetched) and DELETE
- hearts, saves — current user's rows only
- subscriptions — current user's status, re-derives the role
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import structlog

from prompt_share.core.requests import (
    AddComment,
    AddPrompt,
    DeleteComment,
    DeletePrompt,
    HeartPrompt,
    SavePrompt,
    UnheartPrompt,
    UnsavePrompt,
    UpdateComment,
    UpdatePrompt,
)
from prompt_share.core.session import SessionLoader
from prompt_share.core.store import Store
from prompt_share.db.client import SupabaseClient
from prompt_share.db.models import CommentRow, PromptRow, SubscriptionRow, prompt_server_fields

logger = structlog.get_logger()

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A normalised row-change notification."""

    table: str
    type: str
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], table: str = "") -> ChangeEvent:
        """Accept both the realtime-py envelope and the flat JS-style payload."""
        data = payload.get("data", payload)
        event_type = data.get("type") or data.get("eventType") or ""
        return cls(
            table=data.get("table") or table,
            type=str(getattr(event_type, "value", event_type)).upper(),
            new=dict(data.get("record") or data.get("new") or {}),
            old=dict(data.get("old_record") or data.get("old") or {}),
        )

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about: new values, or the old ones for deletes."""
        return self.old if self.type == DELETE else self.new


class Subscription(Protocol):
    async def unsubscribe(self) -> None: ...


class ChangeFeed(Protocol):
    """Subscribable change stream keyed by table and optional row filter."""

    async def subscribe(
        self,
        name: str,
        table: str,
        callback: Callable[[ChangeEvent], None],
        row_filter: str | None = None,
    ) -> Subscription: ...


EventHandler = Callable[[ChangeEvent], Awaitable[None]]

_STOP = object()


@dataclass
class _Channel:
    name: str
    queue: asyncio.Queue
    subscription: Subscription | None = None
    worker: asyncio.Task | None = None
    closed: bool = False


class RealtimeReconciler:
    """Keeps the store eventually consistent with the backend."""

    def __init__(
        self,
        store: Store,
        db: SupabaseClient,
        feed: ChangeFeed,
        session: SessionLoader,
    ) -> None:
        self.store = store
        self.db = db
        self.feed = feed
        self.session = session
        self._user_id: str | None = None
        self._channels: list[_Channel] = []
        self._retired: list[asyncio.Task] = []
        # Bumped by start() and stop(); work begun under an older value is stale.
        self._generation = 0

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    async def start(self, user_id: str) -> None:
        """Open every channel for ``user_id``, tearing down any previous user's first."""
        if self._user_id == user_id and self._channels:
            return
        if self._channels or self._user_id is not None:
            await self.stop()

        self._generation += 1
        generation = self._generation
        self._user_id = user_id
        user_filter = f"user_id=eq.{user_id}"
        specs: list[tuple[str, str, str | None, EventHandler]] = [
            ("prompts", "prompts", None, self._handle_prompt),
            ("comments", "comments", None, self._handle_comment),
            ("hearts", "hearts", user_filter, self._handle_heart),
            ("saves", "saves", user_filter, self._handle_save),
            ("subscription", "subscriptions", user_filter, self._handle_subscription),
        ]
        for name, table, row_filter, handler in specs:
            channel = _Channel(name=name, queue=asyncio.Queue())
            channel.worker = asyncio.create_task(self._drain(channel, handler))
            try:
                channel.subscription = await self.feed.subscribe(
                    f"{name}_changes:{user_id}", table, channel.queue.put_nowait, row_filter
                )
            except Exception as e:
                logger.warning("realtime.subscribe_failed", channel=name, error=str(e))
                channel.closed = True
                channel.worker.cancel()
                continue
            if generation != self._generation:
                # stop() or another start() ran while this channel was joining.
                await self._close([channel])
                logger.info("realtime.start_aborted", user_id=user_id)
                return
            self._channels.append(channel)

        logger.info("realtime.started", channels=self.channel_names)

    async def stop(self) -> None:
        """Unsubscribe every channel.

        Events queued but not yet started are dropped, and an event whose
        detail fetch is still in flight is dropped when the fetch returns.
        """
        channels, self._channels = self._channels, []
        self._generation += 1
        self._user_id = None
        await self._close(channels)
        if channels:
            logger.info("realtime.stopped", channels=[c.name for c in channels])

    async def _close(self, channels: list[_Channel]) -> None:
        for channel in channels:
            channel.closed = True
            if channel.subscription is not None:
                try:
                    await channel.subscription.unsubscribe()
                except Exception as e:
                    logger.warning("realtime.unsubscribe_failed", channel=channel.name, error=str(e))
            channel.queue.put_nowait(_STOP)
            if channel.worker is not None:
                self._retired.append(channel.worker)

    async def wait_idle(self) -> None:
        """Wait until every live channel has processed its queued events."""
        await asyncio.gather(*(c.queue.join() for c in self._channels))

    async def wait_retired(self) -> None:
        """Wait for workers of stopped channels to exit."""
        retired, self._retired = self._retired, []
        await asyncio.gather(*retired, return_exceptions=True)

    async def handle_event(self, channel: str, event: ChangeEvent) -> None:
        """Route one event by channel name. Failures are logged and the event dropped."""
        handlers: dict[str, EventHandler] = {
            "prompts": self._handle_prompt,
            "comments": self._handle_comment,
            "hearts": self._handle_heart,
            "saves": self._handle_save,
            "subscription": self._handle_subscription,
        }
        handler = handlers.get(channel)
        if handler is None:
            logger.debug("realtime.unknown_channel", channel=channel)
            return
        await self._run(channel, handler, event)

    # --- Worker ---

    async def _drain(self, channel: _Channel, handler: EventHandler) -> None:
        while True:
            event = await channel.queue.get()
            try:
                if event is _STOP or channel.closed:
                    return
                await self._run(channel.name, handler, event)
            finally:
                channel.queue.task_done()

    async def _run(self, channel: str, handler: EventHandler, event: ChangeEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.warning("realtime.handler_error", channel=channel, type=event.type, error=str(e))

    async def _fetch(self, table: str, key: str | None) -> dict[str, Any] | None:
        if not key:
            logger.debug("realtime.event_dropped", table=table, reason="missing_key")
            return None
        generation = self._generation
        try:
            row = await asyncio.to_thread(self.db.get, table, key)
        except Exception as e:
            logger.warning("realtime.fetch_failed", table=table, key=key, error=str(e))
            return None
        if generation != self._generation or self._user_id is None:
            logger.debug("realtime.event_dropped", table=table, key=key, reason="stopped")
            return None
        if row is None:
            logger.debug("realtime.event_dropped", table=table, key=key, reason="not_found")
        return row

    def _owns(self, row: dict[str, Any]) -> bool:
        user = self.store.state.user
        return (
            self._user_id is not None
            and user is not None
            and user.id == self._user_id
            and row.get("user_id") == self._user_id
        )

    # --- Handlers ---

    async def _handle_prompt(self, event: ChangeEvent) -> None:
        if event.type == DELETE:
            key = event.old.get("id")
            if key:
                self.store.dispatch(DeletePrompt(id=key))
            return

        row = await self._fetch("prompts", event.new.get("id"))
        if row is None:
            return
        prompt = PromptRow(**row).to_prompt()
        if event.type == UPDATE and self.store.state.find_prompt(prompt.id) is not None:
            self.store.dispatch(UpdatePrompt(id=prompt.id, updates=prompt_server_fields(prompt)))
        else:
            self.store.dispatch(AddPrompt(prompt=prompt))

    async def _handle_comment(self, event: ChangeEvent) -> None:
        if event.type == DELETE:
            key = event.old.get("id")
            if key:
                self.store.dispatch(DeleteComment(id=key))
            return

        row = await self._fetch("comments", event.new.get("id"))
        if row is None:
            return
        comment = CommentRow(**row).to_comment()
        known = any(c.id == comment.id for c in self.store.state.comments)
        if event.type == UPDATE and known:
            self.store.dispatch(UpdateComment(id=comment.id, content=comment.content))
        else:
            self.store.dispatch(AddComment(comment=comment))

    async def _handle_heart(self, event: ChangeEvent) -> None:
        row = event.row
        if not self._owns(row) or not row.get("prompt_id"):
            logger.debug("realtime.event_dropped", table="hearts", reason="not_current_user")
            return
        if event.type == INSERT:
            self.store.dispatch(HeartPrompt(prompt_id=row["prompt_id"]))
        elif event.type == DELETE:
            self.store.dispatch(UnheartPrompt(prompt_id=row["prompt_id"]))

    async def _handle_save(self, event: ChangeEvent) -> None:
        row = event.row
        if not self._owns(row) or not row.get("prompt_id"):
            logger.debug("realtime.event_dropped", table="saves", reason="not_current_user")
            return
        if event.type == INSERT:
            self.store.dispatch(
                SavePrompt(prompt_id=row["prompt_id"], collection_id=row.get("collection_id"))
            )
        elif event.type == DELETE:
            self.store.dispatch(UnsavePrompt(prompt_id=row["prompt_id"]))

    async def _handle_subscription(self, event: ChangeEvent) -> None:
        row = event.row
        if not self._owns(row):
            logger.debug("realtime.event_dropped", table="subscriptions", reason="not_current_user")
            return
        subscription = SubscriptionRow(**row)
        status = None if event.type == DELETE else subscription.status
        self.session.apply_subscription_status(subscription.user_id, status)
