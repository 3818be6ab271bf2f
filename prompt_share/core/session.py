"""Session/Profile Loader — turns an authenticated identity into the store's User.

Role is never read from the stored profile. It is derived from the
identity and the live subscription status every time a profile is loaded
and every time the subscription feed emits for the current user.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import structlog
from pydantic import ValidationError

from prompt_share.core.errors import ProfileLoadError
from prompt_share.core.requests import SetHearts, SetPrompts, SetSaves, SetUser, UpdateUser
from prompt_share.core.roles import INVITE_LIMITS, derive_role, normalise_status
from prompt_share.core.state import Role, SubscriptionStatus, User
from prompt_share.core.store import Store
from prompt_share.db.client import SupabaseClient
from prompt_share.db.models import HeartRow, ProfileRow, PromptRow, Row, SaveRow, SubscriptionRow
from prompt_share.utils.logging import bind_user

logger = structlog.get_logger()

DEFAULT_PROFILE_INVITES = 5


@dataclass(frozen=True)
class AuthIdentity:
    """The subset of an auth-provider user the loader needs."""

    id: str
    email: str | None
    user_metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None

    @classmethod
    def from_auth_user(cls, user: Any) -> AuthIdentity:
        """Build from a gotrue ``User`` object or an equivalent dict."""
        if isinstance(user, dict):
            get = user.get
        else:
            def get(key: str, default: Any = None) -> Any:
                return getattr(user, key, default)
        created = get("created_at")
        return cls(
            id=str(get("id")),
            email=get("email"),
            user_metadata=dict(get("user_metadata") or {}),
            created_at=created.isoformat() if isinstance(created, datetime) else created,
        )

    @property
    def local_part(self) -> str:
        return (self.email or "").split("@")[0]

    @property
    def username(self) -> str:
        return self.user_metadata.get("username") or self.local_part or "user"

    @property
    def display_name(self) -> str:
        return self.user_metadata.get("name") or self.local_part or "User"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionLoader:
    """Loads or creates the durable profile and publishes the derived User."""

    def __init__(
        self,
        store: Store,
        db: SupabaseClient,
        allow_list: Iterable[str] = (),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.db = db
        self.allow_list = frozenset(e.strip().lower() for e in allow_list if e.strip())
        self._clock = clock
        self._generation = 0

    @property
    def generation(self) -> int:
        """Bumped by every load and sign-out."""
        return self._generation

    async def load(self, identity: AuthIdentity) -> User | None:
        """Resolve the identity and publish it.

        Returns None, with the store untouched, on failure or when a later
        load or sign-out superseded this one while it was waiting.
        """
        self._generation += 1
        generation = self._generation
        try:
            user = await self._resolve_user(identity)
        except ProfileLoadError as e:
            logger.warning("session.load_failed", identity=identity.id, error=str(e))
            return None
        if generation != self._generation:
            logger.info("session.load_superseded", identity=identity.id)
            return None

        self.store.dispatch(SetUser(user=user))
        bind_user(user.id)
        logger.info("session.loaded", role=user.role.value, status=_status_value(user))

        await self.reload_content(user.id)
        if generation != self._generation:
            logger.info("session.load_superseded", identity=identity.id)
            return None
        return user

    def sign_out(self) -> None:
        self._generation += 1
        self.store.dispatch(SetUser(user=None))
        bind_user(None)
        logger.info("session.signed_out")

    def apply_subscription_status(
        self, user_id: str, raw_status: str | SubscriptionStatus | None
    ) -> User | None:
        """Re-derive role fields after a subscription-status push for ``user_id``.

        Only ``role``, ``subscription_status`` and ``invites_remaining`` change.
        """
        user = self.store.state.user
        if user is None or user.id != user_id:
            logger.debug("session.status_ignored", target=user_id)
            return None
        status = (
            raw_status
            if isinstance(raw_status, SubscriptionStatus)
            else normalise_status(raw_status)
        )
        role = derive_role(user.email, status, self.allow_list)
        self.store.dispatch(
            UpdateUser(
                updates={
                    "role": role,
                    "subscription_status": status,
                    "invites_remaining": INVITE_LIMITS[role],
                }
            )
        )
        logger.info("session.role_refreshed", role=role.value, status=status.value if status else None)
        return self.store.state.user

    async def fetch_subscription_status(self, user_id: str) -> SubscriptionStatus | None:
        """Latest subscription status for the user, None when they never subscribed."""
        rows = await self._call(
            self.db.select,
            "subscriptions",
            filters={"user_id": user_id},
            order_by="created_at",
            ascending=False,
            limit=1,
        )
        if not rows:
            return None
        return normalise_status(_parse(SubscriptionRow, rows[0]).status)

    async def reload_content(self, user_id: str) -> None:
        """Load the user's hearts and saves, then fully refresh public prompts.

        Results are dropped if ``user_id`` is no longer the signed-in user.
        """
        try:
            hearts = await asyncio.to_thread(self.db.select, "hearts", {"user_id": user_id})
            saves = await asyncio.to_thread(self.db.select, "saves", {"user_id": user_id})
            if not self._is_current(user_id):
                logger.debug("session.reload_dropped", target=user_id)
                return
            self.store.dispatch(SetHearts(hearts=tuple(HeartRow(**r).to_heart() for r in hearts)))
            self.store.dispatch(SetSaves(saves=tuple(SaveRow(**r).to_save() for r in saves)))
        except Exception as e:
            logger.warning("session.reactions_reload_failed", error=str(e))

        try:
            rows = await asyncio.to_thread(
                self.db.select,
                "prompts",
                filters={"visibility": "public"},
                order_by="created_at",
                ascending=False,
            )
            prompts = tuple(PromptRow(**r).to_prompt() for r in rows)
        except Exception as e:
            logger.warning("session.prompts_reload_failed", error=str(e))
            return
        if not self._is_current(user_id):
            logger.debug("session.reload_dropped", target=user_id)
            return
        self.store.dispatch(SetPrompts(prompts=prompts))
        logger.info("session.prompts_reloaded", count=len(prompts))

    # --- Internals ---

    async def _resolve_user(self, identity: AuthIdentity) -> User:
        now = self._clock().isoformat()

        if identity.email and identity.email.strip().lower() in self.allow_list:
            logger.warning("session.admin_bypass", email=identity.email, identity=identity.id)
            return self._bootstrap_admin(identity, now)

        row = await self._call(self.db.get, "profiles", identity.id)
        if row:
            user = _parse(ProfileRow, row).to_user(last_login=now)
        else:
            user = await self._create_profile(identity, now)

        status = await self.fetch_subscription_status(user.id)
        role = derive_role(user.email, status, self.allow_list)
        return user.model_copy(
            update={
                "role": role,
                "subscription_status": status,
                "invites_remaining": INVITE_LIMITS[role],
            }
        )

    async def _create_profile(self, identity: AuthIdentity, now: str) -> User:
        payload = {
            "id": identity.id,
            "username": identity.username,
            "email": identity.email or "",
            "name": identity.display_name,
            "bio": "",
            "role": Role.GENERAL.value,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "invites_remaining": DEFAULT_PROFILE_INVITES,
            "is_affiliate": False,
            "save_count": 0,
        }
        row = await self._call(self.db.insert, "profiles", payload)
        logger.info("session.profile_created", identity=identity.id)
        user = _parse(ProfileRow, row).to_user(last_login=now)
        return user.model_copy(
            update={"created_at": user.created_at or identity.created_at or now, "reputation": 0}
        )

    def _bootstrap_admin(self, identity: AuthIdentity, now: str) -> User:
        return User(
            id=identity.id,
            email=identity.email or "",
            username=identity.username,
            name=identity.display_name,
            reputation=1000,
            created_at=identity.created_at or now,
            last_login=now,
            role=Role.ADMIN,
            subscription_status=SubscriptionStatus.ACTIVE,
            invites_remaining=INVITE_LIMITS[Role.ADMIN],
            is_affiliate=True,
        )

    def _is_current(self, user_id: str) -> bool:
        user = self.store.state.user
        return user is not None and user.id == user_id

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            raise ProfileLoadError(f"{getattr(fn, '__name__', 'lookup')} failed: {e}") from e


def _parse(model: type[Row], row: dict[str, Any]) -> Any:
    try:
        return model(**row)
    except ValidationError as e:
        count = e.error_count()
        raise ProfileLoadError(f"malformed {model.__name__}: {count} invalid field(s)") from e


def _status_value(user: User) -> str | None:
    return user.subscription_status.value if user.subscription_status else None
