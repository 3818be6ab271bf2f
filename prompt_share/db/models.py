"""Database models / type definitions.

These mirror the Supabase tables and convert rows into store entities.
Rows are parsed leniently: unknown columns are ignored and nullable
columns fall back to the entity defaults.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from prompt_share.core.roles import normalise_status
from prompt_share.core.state import Comment, Heart, Prompt, Save, User, Visibility


class Row(BaseModel):
    model_config = {"extra": "ignore"}


class ProfileRow(Row):
    """Row from the profiles table. ``role`` is read but never trusted."""

    id: str
    username: str
    email: str
    name: str
    bio: str | None = None
    website: str | None = None
    github: str | None = None
    twitter: str | None = None
    role: str | None = None
    subscription_status: str | None = None
    invites_remaining: int | None = None
    is_affiliate: bool | None = None
    save_count: int | None = None
    reputation: int | None = None
    created_at: str | None = None

    def to_user(self, last_login: str) -> User:
        """Map stored fields onto a User. Role fields are filled in by the loader."""
        return User(
            id=self.id,
            email=self.email,
            username=self.username,
            name=self.name,
            bio=self.bio or "",
            website=self.website,
            github=self.github,
            twitter=self.twitter,
            reputation=self.reputation or 0,
            created_at=self.created_at or "",
            last_login=last_login,
            subscription_status=normalise_status(self.subscription_status),
            is_affiliate=bool(self.is_affiliate),
            save_count=self.save_count or 0,
        )


class PromptRow(Row):
    """Row from the prompts table."""

    id: str
    user_id: str
    title: str
    slug: str = ""
    description: str = ""
    content: str = ""
    type: str = "text"
    model_compatibility: list[str] | None = None
    tags: list[str] | None = None
    visibility: str = "public"
    category: str | None = None
    language: str | None = None
    version: str | None = None
    parent_id: str | None = None
    view_count: int | None = None
    hearts: int | None = None
    save_count: int | None = None
    fork_count: int | None = None
    comment_count: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_prompt(self) -> Prompt:
        return Prompt(
            id=self.id,
            user_id=self.user_id,
            title=self.title,
            slug=self.slug,
            description=self.description,
            content=self.content,
            type=self.type,
            visibility=Visibility(self.visibility),
            model_compatibility=tuple(self.model_compatibility or ()),
            tags=tuple(self.tags or ()),
            category=self.category or "",
            language=self.language or "",
            version=self.version or "1.0",
            parent_id=self.parent_id,
            view_count=self.view_count or 0,
            heart_count=self.hearts or 0,
            save_count=self.save_count or 0,
            fork_count=self.fork_count or 0,
            comment_count=self.comment_count or 0,
            created_at=self.created_at or "",
            updated_at=self.updated_at or "",
        )


def prompt_server_fields(prompt: Prompt) -> dict[str, Any]:
    """Server-authoritative fields of a prompt, excluding per-viewer flags."""
    return prompt.model_dump(exclude={"id", "is_hearted", "is_saved", "is_forked"})


def prompt_insert_payload(prompt: Prompt) -> dict[str, Any]:
    """Column mapping used when creating a prompt row."""
    return {
        "user_id": prompt.user_id,
        "title": prompt.title,
        "slug": prompt.slug,
        "description": prompt.description,
        "content": prompt.content,
        "type": prompt.type,
        "model_compatibility": list(prompt.model_compatibility),
        "tags": list(prompt.tags),
        "visibility": prompt.visibility.value,
        "category": prompt.category,
        "language": prompt.language,
        "version": prompt.version,
        "parent_id": prompt.parent_id,
    }


class CommentRow(Row):
    """Row from the comments table."""

    id: str
    prompt_id: str
    user_id: str
    content: str
    parent_id: str | None = None
    hearts: int | None = None
    is_edited: bool | None = None
    is_deleted: bool | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_comment(self) -> Comment:
        return Comment(
            id=self.id,
            prompt_id=self.prompt_id,
            user_id=self.user_id,
            content=self.content,
            parent_id=self.parent_id,
            heart_count=self.hearts or 0,
            is_edited=bool(self.is_edited),
            is_deleted=bool(self.is_deleted),
            created_at=self.created_at or "",
            updated_at=self.updated_at or "",
        )


class HeartRow(Row):
    """Row from the hearts table (composite key user_id, prompt_id)."""

    user_id: str
    prompt_id: str
    created_at: str | None = None

    def to_heart(self) -> Heart:
        return Heart(user_id=self.user_id, prompt_id=self.prompt_id, created_at=self.created_at or "")


class SaveRow(Row):
    """Row from the saves table (composite key user_id, prompt_id)."""

    user_id: str
    prompt_id: str
    collection_id: str | None = None
    created_at: str | None = None

    def to_save(self) -> Save:
        return Save(
            user_id=self.user_id,
            prompt_id=self.prompt_id,
            collection_id=self.collection_id,
            created_at=self.created_at or "",
        )


class SubscriptionRow(Row):
    """Row from the subscriptions table, written by the billing webhook."""

    id: str | None = None
    user_id: str
    status: str | None = None
    created_at: str | None = None
