"""Sync engine — maps auth-state events onto the loader and the reconciler."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import structlog

from prompt_share.core.preferences import ThemePreference
from prompt_share.core.realtime import RealtimeReconciler
from prompt_share.core.session import AuthIdentity, SessionLoader
from prompt_share.core.store import Store

logger = structlog.get_logger()

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
INITIAL_SESSION = "INITIAL_SESSION"
USER_UPDATED = "USER_UPDATED"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

_LOAD_EVENTS = frozenset({SIGNED_IN, INITIAL_SESSION, USER_UPDATED})


class SyncEngine:
    """Owns the client-side sync pipeline for one process."""

    def __init__(
        self,
        store: Store,
        session: SessionLoader,
        reconciler: RealtimeReconciler,
        preferences: ThemePreference | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self.reconciler = reconciler
        self.preferences = preferences
        self._tasks: set[asyncio.Task] = set()
        self._detach: Callable[[], None] | None = None

    def start(self) -> None:
        """Re-apply persisted preferences."""
        if self.preferences is not None and self._detach is None:
            self._detach = self.preferences.attach(self.store)
        logger.info("engine.started", theme=self.store.state.theme.value)

    async def handle_auth_event(self, event: str, identity: AuthIdentity | None) -> None:
        if event == SIGNED_OUT:
            self.session.sign_out()
            await self.reconciler.stop()
            return

        if event not in _LOAD_EVENTS:
            logger.debug("engine.auth_event_ignored", auth_event=event)
            return
        if identity is None:
            logger.debug("engine.auth_event_ignored", auth_event=event, reason="no_identity")
            return

        user = await self.session.load(identity)
        if user is None:
            return
        generation = self.session.generation
        if self.reconciler.user_id != user.id:
            await self.reconciler.start(user.id)
        if self.session.generation != generation and not self._signed_in_as(user.id):
            # Signed out or switched while the channels were opening.
            logger.info("engine.start_superseded", user_id=user.id)
            if self.reconciler.user_id == user.id:
                await self.reconciler.stop()

    def _signed_in_as(self, user_id: str) -> bool:
        user = self.store.state.user
        return user is not None and user.id == user_id

    def on_auth_state_change(self, event: Any, session: Any) -> None:
        """Callback for the auth client. Schedules the handling on the running loop."""
        name = str(getattr(event, "value", event))
        user = getattr(session, "user", None) if session is not None else None
        identity = AuthIdentity.from_auth_user(user) if user is not None else None
        task = asyncio.get_running_loop().create_task(self.handle_auth_event(name, identity))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_pending(self) -> None:
        """Wait for auth events already scheduled by ``on_auth_state_change``."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.wait_pending()
        await self.reconciler.stop()
        await self.reconciler.wait_retired()
        if self._detach is not None:
            self._detach()
            self._detach = None
        logger.info("engine.closed")
