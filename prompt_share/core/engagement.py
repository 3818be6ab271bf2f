"""Local, append-only engagement log for upgrade-prompt analytics.

The limit engine only knows the ``EngagementSink`` protocol, so the local
log can be swapped for a real telemetry sink without touching its logic.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()

IMPRESSION = "upgrade_prompt.impression"
CLICK = "upgrade_prompt.click"
DISMISSAL = "upgrade_prompt.dismissal"


@dataclass(frozen=True)
class EngagementEvent:
    user_id: str
    action: str
    timestamp: str
    metadata: dict[str, Any] = field(default_factory=dict)


class EngagementSink(Protocol):
    def record(self, event: EngagementEvent) -> None: ...


class LocalEngagementLog:
    """Keeps the ``cap`` most recent events per user, oldest evicted first.

    When ``path`` is given the log is reloaded from and flushed to a JSON
    file; it is never reconciled with the backend.
    """

    def __init__(self, cap: int = 100, path: Path | None = None) -> None:
        self.cap = cap
        self.path = path
        self._entries: dict[str, deque[EngagementEvent]] = {}
        if path is not None:
            self._load()

    def record(self, event: EngagementEvent) -> None:
        self._entries.setdefault(event.user_id, deque(maxlen=self.cap)).append(event)
        if self.path is not None:
            self._flush()

    def entries(self, user_id: str) -> list[EngagementEvent]:
        return list(self._entries.get(user_id, ()))

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text())
            for user_id, events in raw.items():
                bucket = self._entries.setdefault(user_id, deque(maxlen=self.cap))
                for item in events:
                    bucket.append(EngagementEvent(**item))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("engagement.load_failed", path=str(self.path), error=str(e))

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = {uid: [asdict(e) for e in events] for uid, events in self._entries.items()}
            self.path.write_text(json.dumps(data, indent=2, default=str))
        except OSError as e:
            logger.warning("engagement.flush_failed", path=str(self.path), error=str(e))
