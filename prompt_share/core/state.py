"""Domain entities and the immutable application state snapshot.

Every model is frozen and every collection on ``AppState`` is a tuple, so a
snapshot handed to the UI can never be mutated behind the store's back.
Transitions produce new snapshots with ``model_copy(update=...)``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Derived authorization tier."""

    GENERAL = "general"
    PRO = "pro"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    UNLISTED = "unlisted"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"


class Entity(BaseModel):
    model_config = ConfigDict(frozen=True)


class User(Entity):
    """The signed-in user. ``role`` and ``invites_remaining`` are derived, never trusted from storage."""

    id: str
    email: str
    username: str
    name: str
    bio: str = ""
    website: str | None = None
    github: str | None = None
    twitter: str | None = None
    reputation: int = 0
    created_at: str = ""
    last_login: str = ""
    role: Role = Role.GENERAL
    subscription_status: SubscriptionStatus | None = None
    invites_remaining: int = 5
    is_affiliate: bool = False
    save_count: int = 0


class Prompt(Entity):
    """A shared content item.

    ``is_hearted``, ``is_saved`` and ``is_forked`` describe the current viewer
    and are recomputed from the local heart/save sets, never read from the server.
    """

    id: str
    user_id: str
    title: str
    slug: str = ""
    description: str = ""
    content: str = ""
    type: str = "text"
    visibility: Visibility = Visibility.PUBLIC
    model_compatibility: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    category: str = ""
    language: str = ""
    version: str = "1.0"
    parent_id: str | None = None
    view_count: int = 0
    heart_count: int = 0
    save_count: int = 0
    fork_count: int = 0
    comment_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    is_hearted: bool = False
    is_saved: bool = False
    is_forked: bool = False


VIEWER_FLAGS = frozenset({"is_hearted", "is_saved", "is_forked"})


class Comment(Entity):
    id: str
    prompt_id: str
    user_id: str
    content: str
    parent_id: str | None = None
    heart_count: int = 0
    is_edited: bool = False
    is_deleted: bool = False
    created_at: str = ""
    updated_at: str = ""


class Heart(Entity):
    user_id: str
    prompt_id: str
    created_at: str = ""


class Save(Entity):
    user_id: str
    prompt_id: str
    collection_id: str | None = None
    created_at: str = ""


class Follow(Entity):
    follower_id: str
    following_id: str
    created_at: str = ""


class Collection(Entity):
    id: str
    user_id: str
    name: str
    description: str = ""
    visibility: Visibility = Visibility.PRIVATE
    prompt_ids: tuple[str, ...] = ()
    created_at: str = ""
    updated_at: str = ""


class Notification(Entity):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    read: bool = False
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: str = ""


class Draft(Entity):
    id: str
    user_id: str
    title: str = ""
    description: str = ""
    content: str = ""
    type: str = "text"
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_saved: str = ""


SORT_KEYS = ("relevance", "trending", "latest", "most_liked", "most_forked", "highest_rated")


class SearchFilters(Entity):
    """Transient search facets. ``query`` is always a string."""

    query: str = ""
    types: tuple[str, ...] = ()
    models: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    author: str | None = None
    success_rate_min: float | None = None
    success_rate_max: float | None = None
    sort_by: str = "trending"


class AppState(Entity):
    """One immutable snapshot of everything the client knows."""

    user: User | None = None
    prompts: tuple[Prompt, ...] = ()
    comments: tuple[Comment, ...] = ()
    hearts: tuple[Heart, ...] = ()
    saves: tuple[Save, ...] = ()
    follows: tuple[Follow, ...] = ()
    collections: tuple[Collection, ...] = ()
    notifications: tuple[Notification, ...] = ()
    drafts: tuple[Draft, ...] = ()
    search_filters: SearchFilters = SearchFilters()
    theme: Theme = Theme.LIGHT
    loading: bool = False
    error: str | None = None

    def find_prompt(self, prompt_id: str) -> Prompt | None:
        return next((p for p in self.prompts if p.id == prompt_id), None)

    def has_heart(self, user_id: str, prompt_id: str) -> bool:
        return any(h.user_id == user_id and h.prompt_id == prompt_id for h in self.hearts)

    def find_save(self, user_id: str, prompt_id: str) -> Save | None:
        return next(
            (s for s in self.saves if s.user_id == user_id and s.prompt_id == prompt_id), None
        )

    def has_save(self, user_id: str, prompt_id: str) -> bool:
        return self.find_save(user_id, prompt_id) is not None
