"""Tests for the session/profile loader."""

from __future__ import annotations

import asyncio

import pytest

from prompt_share.core.session import AuthIdentity, SessionLoader
from prompt_share.core.state import Role, SubscriptionStatus
from tests.conftest import HeldCall, prompt_row

IDENTITY = AuthIdentity(
    id="user-1",
    email="ada@example.com",
    user_metadata={"username": "ada_l", "name": "Ada Lovelace"},
    created_at="2026-01-01T00:00:00+00:00",
)


def _profile(**overrides):
    row = {
        "id": "user-1",
        "username": "ada_l",
        "email": "ada@example.com",
        "name": "Ada Lovelace",
        "bio": "Analyst",
        "role": "admin",
        "subscription_status": "active",
        "invites_remaining": 999,
        "reputation": 42,
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    row.update(overrides)
    return row


@pytest.fixture
def loader(store, mock_db, clock):
    return SessionLoader(store, mock_db, allow_list=["root@example.com"], clock=clock)


class TestAuthIdentity:
    def test_from_dict(self):
        identity = AuthIdentity.from_auth_user(
            {"id": "u", "email": "grace@example.com", "user_metadata": None}
        )
        assert identity.username == "grace"
        assert identity.display_name == "grace"

    def test_from_object(self):
        class GotrueUser:
            id = "u"
            email = "grace@example.com"
            user_metadata = {"name": "Grace"}
            created_at = None

        identity = AuthIdentity.from_auth_user(GotrueUser())
        assert identity.display_name == "Grace"
        assert identity.username == "grace"

    def test_no_email(self):
        identity = AuthIdentity(id="u", email=None)
        assert identity.username == "user"
        assert identity.display_name == "User"


class TestLoad:
    @pytest.mark.asyncio
    async def test_admin_bypass_skips_profile_lookup(self, store, mock_db, clock):
        loader = SessionLoader(store, mock_db, allow_list=["ada@example.com"], clock=clock)
        mock_db.failing.add("profiles")

        user = await loader.load(IDENTITY)

        assert user.role == Role.ADMIN
        assert user.invites_remaining == 999
        assert user.reputation == 1000
        assert user.is_affiliate
        assert store.state.user == user
        assert mock_db.rows("profiles") == []

    @pytest.mark.asyncio
    async def test_existing_profile_role_is_recomputed(self, loader, store, mock_db, clock):
        mock_db.seed("profiles", _profile())

        user = await loader.load(IDENTITY)

        # Stored role "admin" and stored status "active" are not trusted.
        assert user.role == Role.GENERAL
        assert user.subscription_status is None
        assert user.invites_remaining == 5
        assert user.bio == "Analyst"
        assert user.reputation == 42
        assert user.last_login == clock().isoformat()

    @pytest.mark.asyncio
    async def test_active_subscription_makes_pro(self, loader, mock_db):
        mock_db.seed("profiles", _profile(role="general"))
        mock_db.seed(
            "subscriptions",
            {"id": "s-1", "user_id": "user-1", "status": "canceled", "created_at": "2026-01-01"},
            {"id": "s-2", "user_id": "user-1", "status": "active", "created_at": "2026-02-01"},
        )

        user = await loader.load(IDENTITY)

        assert user.role == Role.PRO
        assert user.subscription_status == SubscriptionStatus.ACTIVE
        assert user.invites_remaining == 10

    @pytest.mark.asyncio
    async def test_missing_profile_is_created(self, loader, store, mock_db):
        user = await loader.load(IDENTITY)

        rows = mock_db.rows("profiles")
        assert len(rows) == 1
        assert rows[0]["id"] == "user-1"
        assert rows[0]["username"] == "ada_l"
        assert rows[0]["role"] == "general"
        assert rows[0]["invites_remaining"] == 5
        assert user.role == Role.GENERAL
        assert user.name == "Ada Lovelace"
        assert store.state.user.id == "user-1"

    @pytest.mark.asyncio
    async def test_failure_leaves_store_untouched(self, loader, store, mock_db):
        mock_db.failing.add("profiles")
        before = store.state

        assert await loader.load(IDENTITY) is None
        assert store.state is before

    @pytest.mark.asyncio
    async def test_subscription_lookup_failure_aborts_load(self, loader, store, mock_db):
        mock_db.seed("profiles", _profile())
        mock_db.failing.add("subscriptions")

        assert await loader.load(IDENTITY) is None
        assert store.state.user is None

    @pytest.mark.asyncio
    async def test_malformed_profile_row_fails_load(self, loader, store, mock_db):
        mock_db.seed("profiles", _profile(name=None, username=None))
        before = store.state

        assert await loader.load(IDENTITY) is None
        assert store.state is before

    @pytest.mark.asyncio
    async def test_sign_out_while_loading_discards_result(
        self, loader, store, mock_db, monkeypatch
    ):
        mock_db.seed("profiles", _profile())
        held = HeldCall(mock_db.get)
        monkeypatch.setattr(mock_db, "get", held)

        load = asyncio.create_task(loader.load(IDENTITY))
        await held.entered()
        loader.sign_out()
        held.release()

        assert await load is None
        assert store.state.user is None
        assert store.state.prompts == ()

    @pytest.mark.asyncio
    async def test_load_reloads_content(self, loader, store, mock_db):
        mock_db.seed("profiles", _profile())
        mock_db.seed(
            "prompts",
            prompt_row(id="p-old", created_at="2026-01-01"),
            prompt_row(id="p-new", created_at="2026-02-01"),
            prompt_row(id="p-private", visibility="private"),
        )
        mock_db.seed("hearts", {"user_id": "user-1", "prompt_id": "p-old"})
        mock_db.seed("saves", {"user_id": "user-1", "prompt_id": "p-new"})

        await loader.load(IDENTITY)

        state = store.state
        assert [p.id for p in state.prompts] == ["p-new", "p-old"]
        assert state.find_prompt("p-old").is_hearted
        assert state.find_prompt("p-new").is_saved

    @pytest.mark.asyncio
    async def test_prompt_reload_failure_keeps_user(self, loader, store, mock_db):
        mock_db.seed("profiles", _profile())
        mock_db.failing.add("prompts")

        user = await loader.load(IDENTITY)

        assert user is not None
        assert store.state.user == user
        assert store.state.prompts == ()


class TestSubscriptionRefresh:
    @pytest.mark.asyncio
    async def test_status_push_rederives_role(self, loader, store, mock_db):
        mock_db.seed("profiles", _profile())
        await loader.load(IDENTITY)

        user = loader.apply_subscription_status("user-1", "active")
        assert user.role == Role.PRO
        assert user.invites_remaining == 10
        assert store.state.user.bio == "Analyst"

        user = loader.apply_subscription_status("user-1", "past_due")
        assert user.role == Role.GENERAL
        assert user.subscription_status == SubscriptionStatus.PAST_DUE
        assert user.invites_remaining == 5

    @pytest.mark.asyncio
    async def test_status_for_other_user_is_ignored(self, loader, store, mock_db):
        mock_db.seed("profiles", _profile())
        await loader.load(IDENTITY)
        before = store.state

        assert loader.apply_subscription_status("user-2", "active") is None
        assert store.state is before

    def test_status_without_user_is_ignored(self, loader, store):
        assert loader.apply_subscription_status("user-1", "active") is None
        assert store.state.user is None

    @pytest.mark.asyncio
    async def test_admin_stays_admin(self, store, mock_db, clock):
        loader = SessionLoader(store, mock_db, allow_list=["ada@example.com"], clock=clock)
        await loader.load(IDENTITY)

        user = loader.apply_subscription_status("user-1", None)
        assert user.role == Role.ADMIN

    def test_sign_out(self, loader, store, user):
        from prompt_share.core.requests import SetUser

        store.dispatch(SetUser(user=user))
        loader.sign_out()
        assert store.state.user is None
