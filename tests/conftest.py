"""Test fixtures — mock Supabase client, fake change feed and shared test data."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

import pytest

from prompt_share.core.realtime import ChangeEvent
from prompt_share.core.state import AppState, Prompt, Role, SubscriptionStatus, User
from prompt_share.core.store import Store
from prompt_share.db.client import SupabaseClient

_COUNTERS = {
    "increment_hearts": ("hearts", 1),
    "decrement_hearts": ("hearts", -1),
    "increment_saves": ("save_count", 1),
    "decrement_saves": ("save_count", -1),
    "increment_forks": ("fork_count", 1),
}


class MockSupabaseClient(SupabaseClient):
    """In-memory mock of the Supabase client for testing.

    Names in ``failing`` (table or rpc function names) raise on access.
    """

    def __init__(self):
        self._tables: dict[str, list[dict[str, Any]]] = {
            "profiles": [],
            "prompts": [],
            "comments": [],
            "hearts": [],
            "saves": [],
            "subscriptions": [],
            "prompt_forks": [],
        }
        self.failing: set[str] = set()
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.session: tuple[str, str] | None = None

    def _check(self, name: str) -> None:
        if name in self.failing:
            raise RuntimeError(f"{name} unavailable")

    def _matches(self, row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
        return all(row.get(k) == v for k, v in (filters or {}).items())

    def insert(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        self._check(table)
        record = {
            "id": str(uuid4()),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
            **data,
        }
        self._tables.setdefault(table, []).append(record)
        return record

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._check(table)
        rows = [r for r in self._tables.get(table, []) if self._matches(r, filters)]
        if order_by:
            rows = sorted(rows, key=lambda r: r.get(order_by, 0), reverse=not ascending)
        if limit:
            rows = rows[:limit]
        return rows

    def get(self, table: str, id: str) -> dict[str, Any] | None:
        rows = self.select(table, filters={"id": id}, limit=1)
        return rows[0] if rows else None

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        return len(self.select(table, filters=filters))

    def update(self, table: str, id: str, data: dict[str, Any]) -> dict[str, Any]:
        self._check(table)
        for row in self._tables.get(table, []):
            if row["id"] == id:
                row.update(data)
                row["updated_at"] = datetime.now(timezone.utc).isoformat()
                return row
        raise ValueError(f"Row {id} not found in {table}")

    def delete(self, table: str, id: str) -> None:
        self._check(table)
        self._tables[table] = [r for r in self._tables.get(table, []) if r["id"] != id]

    def delete_where(self, table: str, filters: dict[str, Any]) -> None:
        if not filters:
            raise ValueError("delete_where requires at least one filter")
        self._check(table)
        self._tables[table] = [
            r for r in self._tables.get(table, []) if not self._matches(r, filters)
        ]

    def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        self._check(function)
        params = params or {}
        self.rpc_calls.append((function, params))
        if function in _COUNTERS:
            column, delta = _COUNTERS[function]
            for row in self._tables["prompts"]:
                if row["id"] == params.get("prompt_id"):
                    row[column] = max(0, (row.get(column) or 0) + delta)
        return None

    def set_session(self, access_token: str, refresh_token: str) -> None:
        self.session = (access_token, refresh_token)

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self._tables.setdefault(table, []).extend(dict(r) for r in rows)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self._tables.get(table, [])

    def reset(self):
        for table in self._tables:
            self._tables[table] = []


class FakeSubscription:
    def __init__(self, feed: FakeChangeFeed, name: str) -> None:
        self.feed = feed
        self.name = name
        self.active = True

    async def unsubscribe(self) -> None:
        self.active = False
        self.feed.unsubscribed.append(self.name)


class FakeChangeFeed:
    """Records subscriptions and delivers events to the active ones."""

    def __init__(self) -> None:
        self.channels: dict[str, dict[str, Any]] = {}
        self.unsubscribed: list[str] = []
        self.failing: set[str] = set()

    async def subscribe(
        self,
        name: str,
        table: str,
        callback: Callable[[ChangeEvent], None],
        row_filter: str | None = None,
    ) -> FakeSubscription:
        if table in self.failing:
            raise RuntimeError(f"channel {name} refused")
        subscription = FakeSubscription(self, name)
        self.channels[name] = {
            "table": table,
            "callback": callback,
            "filter": row_filter,
            "subscription": subscription,
        }
        return subscription

    def active(self) -> list[str]:
        return [n for n, c in self.channels.items() if c["subscription"].active]

    def emit(
        self,
        channel: str,
        event_type: str,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> int:
        """Deliver to every active channel named ``<channel>_changes:*``."""
        delivered = 0
        for name, entry in self.channels.items():
            if not name.startswith(f"{channel}_changes:") or not entry["subscription"].active:
                continue
            entry["callback"](
                ChangeEvent(table=entry["table"], type=event_type, new=new or {}, old=old or {})
            )
            delivered += 1
        return delivered


class HeldCall:
    """Wraps a blocking client method and parks each call until ``release()``.

    Client calls run in worker threads, so the hold is a threading event.
    """

    def __init__(self, fn: Callable[..., Any]) -> None:
        self._fn = fn
        self._entered = threading.Event()
        self._released = threading.Event()

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        self._entered.set()
        self._released.wait(5)
        return self._fn(*args, **kwargs)

    async def entered(self) -> None:
        await asyncio.to_thread(self._entered.wait, 5)

    def release(self) -> None:
        self._released.set()


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_user(**overrides: Any) -> User:
    data: dict[str, Any] = {
        "id": "user-1",
        "email": "ada@example.com",
        "username": "ada",
        "name": "Ada",
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    data.update(overrides)
    return User(**data)


def make_prompt(**overrides: Any) -> Prompt:
    data: dict[str, Any] = {
        "id": "prompt-1",
        "user_id": "owner-1",
        "title": "Code Reviewer",
        "slug": "code-reviewer",
        "content": "Review this diff.",
    }
    data.update(overrides)
    return Prompt(**data)


def prompt_row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": "prompt-1",
        "user_id": "owner-1",
        "title": "Code Reviewer",
        "slug": "code-reviewer",
        "content": "Review this diff.",
        "visibility": "public",
        "hearts": 0,
        "save_count": 0,
        "fork_count": 0,
        "comment_count": 0,
        "created_at": "2026-02-01T00:00:00+00:00",
    }
    row.update(overrides)
    return row


@pytest.fixture
def mock_db() -> MockSupabaseClient:
    """Fresh mock database for each test."""
    return MockSupabaseClient()


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user() -> User:
    return make_user()


@pytest.fixture
def pro_user() -> User:
    return make_user(
        id="user-pro",
        email="pro@example.com",
        role=Role.PRO,
        subscription_status=SubscriptionStatus.ACTIVE,
        invites_remaining=10,
    )


@pytest.fixture
def store() -> Store:
    return Store()


@pytest.fixture
def signed_in_store(user) -> Store:
    """Store with a general user and one prompt owned by someone else."""
    return Store(AppState(user=user, prompts=(make_prompt(),)))
