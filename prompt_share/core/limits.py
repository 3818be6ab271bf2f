"""Usage-Limit Engine — free-tier quotas and upgrade prompts.

Usage is always read from the backend, never from the entity store; the
two are allowed to disagree. Nothing is persisted: Unblocked → WarnZone →
Blocked is recomputed on demand each time a gated action is attempted.

Upgrade prompts are rate limited per (user, action) with an injected
clock, instead of one process-wide timer.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

import structlog

from prompt_share.core.engagement import (
    CLICK,
    DISMISSAL,
    IMPRESSION,
    EngagementEvent,
    EngagementSink,
)
from prompt_share.core.roles import has_pro_features
from prompt_share.core.state import User, Visibility
from prompt_share.db.client import SupabaseClient

logger = structlog.get_logger()

FREE_PLAN_LIMITS: dict[str, int] = {
    "saves": 10,
    "hearts": 5,
    "forks": 3,
    "templates": 2,
    "exports": 5,
    "private_prompts": 0,
}

TEMPLATE_VARIABLE = re.compile(r"\{\{\s*[^{}]+?\s*\}\}")


class UsageState(str, Enum):
    UNBLOCKED = "unblocked"
    WARN_ZONE = "warn_zone"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class FeatureLimit:
    blocked: bool
    show_upgrade: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageCounter:
    """Per-action, per-user row counts from the backend."""

    def __init__(self, db: SupabaseClient) -> None:
        self.db = db

    def count(self, user_id: str, action: str) -> int:
        if action == "saves":
            return self.db.count("saves", {"user_id": user_id})
        if action == "hearts":
            return self.db.count("hearts", {"user_id": user_id})
        if action == "forks":
            return self.db.count("prompt_forks", {"forked_by": user_id})
        if action == "templates":
            rows = self.db.select("prompts", filters={"user_id": user_id})
            return sum(1 for r in rows if TEMPLATE_VARIABLE.search(r.get("content") or ""))
        if action == "exports":
            # Exports are not recorded server-side yet.
            return 0
        if action == "private_prompts":
            return self.db.count(
                "prompts", {"user_id": user_id, "visibility": Visibility.PRIVATE.value}
            )
        raise ValueError(f"Unknown gated action '{action}'")


class UsageLimitEngine:
    """Answers "is this action blocked?" and "should we show an upgrade prompt now?"."""

    def __init__(
        self,
        counter: UsageCounter,
        sink: EngagementSink,
        clock: Callable[[], datetime] = _utcnow,
        cooldown: timedelta = timedelta(hours=24),
        warn_ratio: float = 0.8,
        limits: dict[str, int] | None = None,
    ) -> None:
        self.counter = counter
        self.sink = sink
        self.clock = clock
        self.cooldown = cooldown
        self.warn_ratio = warn_ratio
        self.limits = dict(limits or FREE_PLAN_LIMITS)
        self._last_shown: dict[tuple[str, str], datetime] = {}

    def quota(self, action: str) -> int:
        if action not in self.limits:
            raise ValueError(f"Unknown gated action '{action}'")
        return self.limits[action]

    def usage_state(self, action: str, count: int) -> UsageState:
        quota = self.quota(action)
        if count >= quota:
            return UsageState.BLOCKED
        if count >= quota * self.warn_ratio:
            return UsageState.WARN_ZONE
        return UsageState.UNBLOCKED

    async def current_usage(self, user_id: str, action: str) -> int | None:
        """Backend count for the action, or None when the lookup failed."""
        self.quota(action)
        try:
            return await asyncio.to_thread(self.counter.count, user_id, action)
        except Exception as e:
            logger.warning("limits.count_failed", action=action, error=str(e))
            return None

    async def is_action_blocked(self, user_id: str, action: str) -> bool:
        count = await self.current_usage(user_id, action)
        if count is None:
            return False
        return count >= self.quota(action)

    async def should_show_upgrade(self, user_id: str, action: str) -> bool:
        """True at ≥ warn_ratio of quota, at most once per cooldown per (user, action)."""
        count = await self.current_usage(user_id, action)
        if count is None:
            return False
        quota = self.quota(action)
        if count < quota * self.warn_ratio:
            return False

        now = self.clock()
        key = (user_id, action)
        last = self._last_shown.get(key)
        if last is not None and now - last < self.cooldown:
            return False

        self._last_shown[key] = now
        self.track_engagement(user_id, IMPRESSION, {"feature": action, "usage": count, "limit": quota})
        logger.info("limits.upgrade_prompted", action=action, usage=count, limit=quota)
        return True

    async def check_feature_limit(self, user: User | None, action: str) -> FeatureLimit:
        """Gate check for a UI action. Pro and admin users are never gated."""
        self.quota(action)
        if user is None:
            return FeatureLimit(blocked=True, show_upgrade=False)
        if has_pro_features(user):
            return FeatureLimit(blocked=False, show_upgrade=False)
        blocked = await self.is_action_blocked(user.id, action)
        show_upgrade = await self.should_show_upgrade(user.id, action)
        return FeatureLimit(blocked=blocked, show_upgrade=show_upgrade)

    # --- Engagement ---

    def track_engagement(
        self, user_id: str, action: str, metadata: dict[str, Any] | None = None
    ) -> None:
        event = EngagementEvent(
            user_id=user_id,
            action=action,
            timestamp=self.clock().isoformat(),
            metadata=metadata or {},
        )
        try:
            self.sink.record(event)
        except Exception as e:
            logger.warning("limits.engagement_failed", action=action, error=str(e))

    def record_click(self, user_id: str, feature: str) -> None:
        self.track_engagement(user_id, CLICK, {"feature": feature})

    def record_dismissal(self, user_id: str, feature: str) -> None:
        self.track_engagement(user_id, DISMISSAL, {"feature": feature})
