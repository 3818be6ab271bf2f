"""Typed transition requests — the only way to change the store.

Each request is a small frozen model. Anything a transition needs that is
not already in the state (including the current time) travels on the
request, which keeps ``reduce`` pure.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from prompt_share.core.state import (
    Collection,
    Comment,
    Draft,
    Heart,
    Notification,
    Prompt,
    Save,
    Theme,
    User,
)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Request(BaseModel):
    """Base class for every transition request."""

    model_config = ConfigDict(frozen=True)

    at: str = Field(default_factory=utcnow_iso)


# --- User ---


class SetUser(Request):
    user: User | None


class UpdateUser(Request):
    updates: dict[str, Any]


# --- Prompts ---


class SetPrompts(Request):
    prompts: tuple[Prompt, ...]


class AddPrompt(Request):
    prompt: Prompt


class UpdatePrompt(Request):
    id: str
    updates: dict[str, Any]


class DeletePrompt(Request):
    id: str


# --- Reactions and saves ---


class SetHearts(Request):
    hearts: tuple[Heart, ...]


class SetSaves(Request):
    saves: tuple[Save, ...]


class HeartPrompt(Request):
    prompt_id: str


class UnheartPrompt(Request):
    prompt_id: str


class SavePrompt(Request):
    prompt_id: str
    collection_id: str | None = None


class UnsavePrompt(Request):
    prompt_id: str


class RestoreSave(Request):
    """Put back a save row removed optimistically. Never notifies."""

    save: Save


class ForkPrompt(Request):
    original_id: str
    new_prompt: Prompt


# --- Comments ---


class AddComment(Request):
    comment: Comment


class UpdateComment(Request):
    id: str
    content: str


class DeleteComment(Request):
    id: str


# --- Follows ---


class FollowUser(Request):
    following_id: str


class UnfollowUser(Request):
    following_id: str


# --- Collections ---


class AddCollection(Request):
    collection: Collection


class UpdateCollection(Request):
    id: str
    updates: dict[str, Any]


class DeleteCollection(Request):
    id: str


# --- Notifications ---


class AddNotification(Request):
    notification: Notification


class MarkNotificationRead(Request):
    id: str


class ClearNotifications(Request):
    pass


# --- Drafts ---


class SaveDraft(Request):
    draft: Draft


class DeleteDraft(Request):
    id: str


# --- UI state ---


class SetSearchFilters(Request):
    # Values are not validated here; reduce() coerces query to str.
    patch: dict[str, Any]


class SetTheme(Request):
    theme: Theme


class SetLoading(Request):
    loading: bool


class SetError(Request):
    error: str | None
