"""User-initiated writes: gate check, optimistic transition, backend write.

Hearts and saves are applied to the store before the backend confirms.
Their realtime echo later runs the same idempotent transition and changes
nothing. If the backend write fails the inverse transition is dispatched.
Forks and publishes need the server-assigned row, so they dispatch after
the write succeeds.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from uuid import uuid4

import structlog

from prompt_share.core.errors import NotAuthenticatedError
from prompt_share.core.limits import TEMPLATE_VARIABLE, FeatureLimit, UsageLimitEngine
from prompt_share.core.requests import (
    AddPrompt,
    DeleteDraft,
    ForkPrompt,
    HeartPrompt,
    RestoreSave,
    SaveDraft,
    SavePrompt,
    UnheartPrompt,
    UnsavePrompt,
    utcnow_iso,
)
from prompt_share.core.state import Draft, Prompt, User, Visibility
from prompt_share.core.store import Store
from prompt_share.db.client import SupabaseClient
from prompt_share.db.models import PromptRow, prompt_insert_payload

logger = structlog.get_logger()

ADDED = "added"
REMOVED = "removed"
FORKED = "forked"
PUBLISHED = "published"
BLOCKED = "blocked"
FAILED = "failed"

_UNGATED = FeatureLimit(blocked=False, show_upgrade=False)


@dataclass(frozen=True)
class InteractionResult:
    action: str
    show_upgrade: bool = False
    error: str | None = None
    prompt: Prompt | None = None


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "prompt"


class Interactions:
    """Optimistic write path for the UI."""

    def __init__(
        self, store: Store, db: SupabaseClient, limits: UsageLimitEngine | None = None
    ) -> None:
        self.store = store
        self.db = db
        self.limits = limits

    def _require_user(self) -> User:
        user = self.store.state.user
        if user is None:
            raise NotAuthenticatedError("Not authenticated")
        return user

    async def _gate(self, user: User, action: str) -> FeatureLimit:
        if self.limits is None:
            return _UNGATED
        return await self.limits.check_feature_limit(user, action)

    # --- Hearts ---

    async def toggle_heart(self, prompt_id: str) -> InteractionResult:
        try:
            user = self._require_user()
        except NotAuthenticatedError as e:
            return InteractionResult(FAILED, error=str(e))

        if self.store.state.has_heart(user.id, prompt_id):
            self.store.dispatch(UnheartPrompt(prompt_id=prompt_id))
            try:
                await asyncio.to_thread(self._remove_heart, user.id, prompt_id)
            except Exception as e:
                logger.warning("interactions.unheart_failed", prompt_id=prompt_id, error=str(e))
                self.store.dispatch(HeartPrompt(prompt_id=prompt_id))
                return InteractionResult(FAILED, error=str(e))
            return InteractionResult(REMOVED)

        gate = await self._gate(user, "hearts")
        if gate.blocked:
            return InteractionResult(BLOCKED, show_upgrade=gate.show_upgrade)

        self.store.dispatch(HeartPrompt(prompt_id=prompt_id))
        try:
            await asyncio.to_thread(self._add_heart, user.id, prompt_id)
        except Exception as e:
            logger.warning("interactions.heart_failed", prompt_id=prompt_id, error=str(e))
            self.store.dispatch(UnheartPrompt(prompt_id=prompt_id))
            return InteractionResult(FAILED, show_upgrade=gate.show_upgrade, error=str(e))
        return InteractionResult(ADDED, show_upgrade=gate.show_upgrade)

    def _add_heart(self, user_id: str, prompt_id: str) -> None:
        self.db.insert("hearts", {"user_id": user_id, "prompt_id": prompt_id})
        self.db.rpc("increment_hearts", {"prompt_id": prompt_id})

    def _remove_heart(self, user_id: str, prompt_id: str) -> None:
        self.db.delete_where("hearts", {"user_id": user_id, "prompt_id": prompt_id})
        self.db.rpc("decrement_hearts", {"prompt_id": prompt_id})

    # --- Saves ---

    async def toggle_save(
        self, prompt_id: str, collection_id: str | None = None
    ) -> InteractionResult:
        try:
            user = self._require_user()
        except NotAuthenticatedError as e:
            return InteractionResult(FAILED, error=str(e))

        existing = self.store.state.find_save(user.id, prompt_id)
        if existing is not None:
            self.store.dispatch(UnsavePrompt(prompt_id=prompt_id))
            try:
                await asyncio.to_thread(self._remove_save, user.id, prompt_id)
            except Exception as e:
                logger.warning("interactions.unsave_failed", prompt_id=prompt_id, error=str(e))
                self.store.dispatch(RestoreSave(save=existing))
                return InteractionResult(FAILED, error=str(e))
            return InteractionResult(REMOVED)

        gate = await self._gate(user, "saves")
        if gate.blocked:
            return InteractionResult(BLOCKED, show_upgrade=gate.show_upgrade)

        self.store.dispatch(SavePrompt(prompt_id=prompt_id, collection_id=collection_id))
        try:
            await asyncio.to_thread(self._add_save, user.id, prompt_id, collection_id)
        except Exception as e:
            logger.warning("interactions.save_failed", prompt_id=prompt_id, error=str(e))
            self.store.dispatch(UnsavePrompt(prompt_id=prompt_id))
            return InteractionResult(FAILED, show_upgrade=gate.show_upgrade, error=str(e))
        return InteractionResult(ADDED, show_upgrade=gate.show_upgrade)

    def _add_save(self, user_id: str, prompt_id: str, collection_id: str | None) -> None:
        self.db.insert(
            "saves", {"user_id": user_id, "prompt_id": prompt_id, "collection_id": collection_id}
        )
        self.db.rpc("increment_saves", {"prompt_id": prompt_id})

    def _remove_save(self, user_id: str, prompt_id: str) -> None:
        self.db.delete_where("saves", {"user_id": user_id, "prompt_id": prompt_id})
        self.db.rpc("decrement_saves", {"prompt_id": prompt_id})

    # --- Forks ---

    async def fork(self, original_id: str, title: str | None = None) -> InteractionResult:
        try:
            user = self._require_user()
        except NotAuthenticatedError as e:
            return InteractionResult(FAILED, error=str(e))

        original = self.store.state.find_prompt(original_id)
        if original is None:
            return InteractionResult(FAILED, error=f"Prompt '{original_id}' not found")

        gate = await self._gate(user, "forks")
        if gate.blocked:
            return InteractionResult(BLOCKED, show_upgrade=gate.show_upgrade)

        draft = original.model_copy(
            update={
                "user_id": user.id,
                "title": title or f"{original.title} (fork)",
                "slug": f"{original.slug or slugify(original.title)}-fork-{uuid4().hex[:6]}",
                "parent_id": original.id,
            }
        )
        try:
            row = await asyncio.to_thread(self._create_fork, draft, user.id)
        except Exception as e:
            logger.warning("interactions.fork_failed", original_id=original_id, error=str(e))
            return InteractionResult(FAILED, show_upgrade=gate.show_upgrade, error=str(e))

        forked = PromptRow(**row).to_prompt()
        self.store.dispatch(ForkPrompt(original_id=original_id, new_prompt=forked))
        logger.info("interactions.forked", original_id=original_id, fork_id=forked.id)
        return InteractionResult(FORKED, show_upgrade=gate.show_upgrade, prompt=forked)

    def _create_fork(self, draft: Prompt, user_id: str) -> dict:
        row = self.db.insert("prompts", prompt_insert_payload(draft))
        self.db.insert(
            "prompt_forks",
            {
                "original_prompt_id": draft.parent_id,
                "forked_prompt_id": row["id"],
                "forked_by": user_id,
            },
        )
        self.db.rpc("increment_forks", {"prompt_id": draft.parent_id})
        return row

    # --- Drafts ---

    def save_draft(self, draft: Draft) -> Draft:
        """Autosave or explicit save: stamp and upsert the draft locally."""
        stamped = draft.model_copy(update={"last_saved": utcnow_iso()})
        self.store.dispatch(SaveDraft(draft=stamped))
        return stamped

    async def publish_draft(
        self, draft_id: str, visibility: Visibility = Visibility.PUBLIC
    ) -> InteractionResult:
        """Create a prompt from a draft, then explicitly drop the draft."""
        try:
            user = self._require_user()
        except NotAuthenticatedError as e:
            return InteractionResult(FAILED, error=str(e))

        draft = next((d for d in self.store.state.drafts if d.id == draft_id), None)
        if draft is None:
            return InteractionResult(FAILED, error=f"Draft '{draft_id}' not found")

        show_upgrade = False
        gated = []
        if visibility == Visibility.PRIVATE:
            gated.append("private_prompts")
        if TEMPLATE_VARIABLE.search(draft.content):
            gated.append("templates")
        for action in gated:
            gate = await self._gate(user, action)
            show_upgrade = show_upgrade or gate.show_upgrade
            if gate.blocked:
                return InteractionResult(BLOCKED, show_upgrade=show_upgrade)

        metadata = draft.metadata or {}
        prompt = Prompt(
            id=draft.id,
            user_id=user.id,
            title=draft.title,
            slug=slugify(draft.title),
            description=draft.description,
            content=draft.content,
            type=draft.type,
            visibility=visibility,
            tags=tuple(metadata.get("tags", ())),
            model_compatibility=tuple(metadata.get("model_compatibility", ())),
            category=metadata.get("category", ""),
        )
        try:
            row = await asyncio.to_thread(self.db.insert, "prompts", prompt_insert_payload(prompt))
        except Exception as e:
            logger.warning("interactions.publish_failed", draft_id=draft_id, error=str(e))
            return InteractionResult(FAILED, show_upgrade=show_upgrade, error=str(e))

        published = PromptRow(**row).to_prompt()
        self.store.dispatch(AddPrompt(prompt=published))
        self.store.dispatch(DeleteDraft(id=draft_id))
        logger.info("interactions.published", draft_id=draft_id, prompt_id=published.id)
        return InteractionResult(PUBLISHED, show_upgrade=show_upgrade, prompt=published)
