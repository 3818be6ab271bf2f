"""Action Dispatcher — the single mutation gateway for the entity store."""

from __future__ import annotations

from typing import Callable

import structlog

from prompt_share.core.reducer import reduce
from prompt_share.core.requests import Request
from prompt_share.core.state import AppState

logger = structlog.get_logger()

Listener = Callable[[AppState, AppState], None]


class Store:
    """Holds the current snapshot and funnels every change through ``reduce``.

    Single writer: the host runs one event loop and ``dispatch`` never
    suspends, so no locking is needed.
    """

    def __init__(self, initial: AppState | None = None) -> None:
        self._state = initial if initial is not None else AppState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> AppState:
        """The current immutable snapshot."""
        return self._state

    def dispatch(self, request: Request) -> AppState:
        """Apply one request and notify listeners if the snapshot changed."""
        previous = self._state
        current = reduce(previous, request)
        if current is previous:
            logger.debug("store.noop", request=type(request).__name__)
            return current

        self._state = current
        logger.debug("store.dispatched", request=type(request).__name__)
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception as e:
                logger.warning(
                    "store.listener_failed", request=type(request).__name__, error=str(e)
                )
        return current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
