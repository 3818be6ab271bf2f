"""Tests for the usage-limit engine and the engagement log."""

from __future__ import annotations

from datetime import timedelta

import pytest

from prompt_share.core.engagement import (
    CLICK,
    DISMISSAL,
    IMPRESSION,
    EngagementEvent,
    LocalEngagementLog,
)
from prompt_share.core.limits import (
    FREE_PLAN_LIMITS,
    UsageCounter,
    UsageLimitEngine,
    UsageState,
)
from prompt_share.core.state import Role
from tests.conftest import make_user, prompt_row


def _saves(n, user_id="user-1"):
    return [{"user_id": user_id, "prompt_id": f"p-{i}"} for i in range(n)]


@pytest.fixture
def sink():
    return LocalEngagementLog()


@pytest.fixture
def engine(mock_db, sink, clock):
    return UsageLimitEngine(UsageCounter(mock_db), sink, clock=clock)


class TestUsageCounter:
    def test_counts_by_action(self, mock_db):
        mock_db.seed("saves", *_saves(3), *_saves(2, user_id="user-2"))
        mock_db.seed("hearts", {"user_id": "user-1", "prompt_id": "p-1"})
        mock_db.seed(
            "prompt_forks",
            {"original_prompt_id": "a", "forked_prompt_id": "b", "forked_by": "user-1"},
        )
        mock_db.seed(
            "prompts",
            prompt_row(id="t-1", user_id="user-1", content="Hello {{name}}"),
            prompt_row(id="t-2", user_id="user-1", content="No variables"),
            prompt_row(id="t-3", user_id="user-1", content="{{ a }} and {{b}}", visibility="private"),
        )
        counter = UsageCounter(mock_db)

        assert counter.count("user-1", "saves") == 3
        assert counter.count("user-1", "hearts") == 1
        assert counter.count("user-1", "forks") == 1
        assert counter.count("user-1", "templates") == 2
        assert counter.count("user-1", "private_prompts") == 1
        assert counter.count("user-1", "exports") == 0

    def test_unknown_action(self, mock_db):
        with pytest.raises(ValueError):
            UsageCounter(mock_db).count("user-1", "teleports")


class TestUsageState:
    def test_thresholds(self, engine):
        assert engine.usage_state("saves", 7) == UsageState.UNBLOCKED
        assert engine.usage_state("saves", 8) == UsageState.WARN_ZONE
        assert engine.usage_state("saves", 10) == UsageState.BLOCKED

    def test_zero_quota_is_always_blocked(self, engine):
        assert engine.quota("private_prompts") == 0
        assert engine.usage_state("private_prompts", 0) == UsageState.BLOCKED

    def test_unknown_action_raises(self, engine):
        with pytest.raises(ValueError):
            engine.quota("teleports")

    def test_free_plan_table(self):
        assert FREE_PLAN_LIMITS == {
            "saves": 10,
            "hearts": 5,
            "forks": 3,
            "templates": 2,
            "exports": 5,
            "private_prompts": 0,
        }


class TestScenarios:
    @pytest.mark.asyncio
    async def test_below_warn_zone(self, engine, mock_db, sink):
        mock_db.seed("saves", *_saves(3))

        assert await engine.is_action_blocked("user-1", "saves") is False
        assert await engine.should_show_upgrade("user-1", "saves") is False
        assert sink.entries("user-1") == []

    @pytest.mark.asyncio
    async def test_warn_zone_prompts_but_does_not_block(self, engine, mock_db, sink):
        mock_db.seed("saves", *_saves(9))

        assert await engine.should_show_upgrade("user-1", "saves") is True
        assert await engine.is_action_blocked("user-1", "saves") is False

        impression = sink.entries("user-1")[0]
        assert impression.action == IMPRESSION
        assert impression.metadata == {"feature": "saves", "usage": 9, "limit": 10}

        mock_db.seed("saves", {"user_id": "user-1", "prompt_id": "p-10"})
        assert await engine.is_action_blocked("user-1", "saves") is True

    @pytest.mark.asyncio
    async def test_count_failure_never_blocks(self, engine, mock_db):
        mock_db.failing.add("saves")

        assert await engine.current_usage("user-1", "saves") is None
        assert await engine.is_action_blocked("user-1", "saves") is False
        assert await engine.should_show_upgrade("user-1", "saves") is False


class TestCooldown:
    @pytest.mark.asyncio
    async def test_once_per_cooldown(self, engine, mock_db, clock):
        mock_db.seed("saves", *_saves(9))

        assert await engine.should_show_upgrade("user-1", "saves") is True
        clock.advance(hours=23)
        assert await engine.should_show_upgrade("user-1", "saves") is False
        clock.advance(hours=1)
        assert await engine.should_show_upgrade("user-1", "saves") is True

    @pytest.mark.asyncio
    async def test_scoped_per_user_and_action(self, engine, mock_db):
        mock_db.seed("saves", *_saves(9), *_saves(9, user_id="user-2"))
        mock_db.seed("hearts", *[{"user_id": "user-1", "prompt_id": f"p-{i}"} for i in range(4)])

        assert await engine.should_show_upgrade("user-1", "saves") is True
        assert await engine.should_show_upgrade("user-2", "saves") is True
        assert await engine.should_show_upgrade("user-1", "hearts") is True
        assert await engine.should_show_upgrade("user-1", "saves") is False

    @pytest.mark.asyncio
    async def test_custom_cooldown(self, mock_db, sink, clock):
        engine = UsageLimitEngine(
            UsageCounter(mock_db), sink, clock=clock, cooldown=timedelta(minutes=5)
        )
        mock_db.seed("saves", *_saves(9))

        assert await engine.should_show_upgrade("user-1", "saves") is True
        clock.advance(minutes=5)
        assert await engine.should_show_upgrade("user-1", "saves") is True


class TestCheckFeatureLimit:
    @pytest.mark.asyncio
    async def test_anonymous_is_blocked(self, engine):
        limit = await engine.check_feature_limit(None, "saves")
        assert limit.blocked
        assert not limit.show_upgrade

    @pytest.mark.asyncio
    async def test_pro_is_never_gated(self, engine, mock_db, pro_user):
        mock_db.seed("saves", *_saves(50, user_id=pro_user.id))
        limit = await engine.check_feature_limit(pro_user, "saves")
        assert not limit.blocked
        assert not limit.show_upgrade

    @pytest.mark.asyncio
    async def test_admin_is_never_gated(self, engine):
        limit = await engine.check_feature_limit(make_user(role=Role.ADMIN), "private_prompts")
        assert not limit.blocked

    @pytest.mark.asyncio
    async def test_general_at_limit(self, engine, mock_db, user):
        mock_db.seed("saves", *_saves(10))
        limit = await engine.check_feature_limit(user, "saves")
        assert limit.blocked
        assert limit.show_upgrade

    @pytest.mark.asyncio
    async def test_general_private_prompts_blocked_from_zero(self, engine, user):
        limit = await engine.check_feature_limit(user, "private_prompts")
        assert limit.blocked


class TestEngagement:
    def test_click_and_dismissal(self, engine, sink):
        engine.record_click("user-1", "saves")
        engine.record_dismissal("user-1", "saves")
        actions = [e.action for e in sink.entries("user-1")]
        assert actions == [CLICK, DISMISSAL]

    def test_log_is_capped_per_user(self):
        log = LocalEngagementLog(cap=100)
        for i in range(150):
            log.record(EngagementEvent(user_id="user-1", action=CLICK, timestamp=str(i)))
        log.record(EngagementEvent(user_id="user-2", action=CLICK, timestamp="x"))

        entries = log.entries("user-1")
        assert len(entries) == 100
        assert entries[0].timestamp == "50"
        assert entries[-1].timestamp == "149"
        assert len(log.entries("user-2")) == 1

    def test_log_persists_to_file(self, tmp_path):
        path = tmp_path / "engagement.json"
        log = LocalEngagementLog(path=path)
        log.record(
            EngagementEvent(user_id="user-1", action=IMPRESSION, timestamp="t", metadata={"a": 1})
        )

        reloaded = LocalEngagementLog(path=path)
        assert reloaded.entries("user-1") == log.entries("user-1")

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "engagement.json"
        path.write_text("not json")
        assert LocalEngagementLog(path=path).entries("user-1") == []

    def test_sink_failure_does_not_raise(self, mock_db, clock):
        class BrokenSink:
            def record(self, event):
                raise OSError("disk full")

        engine = UsageLimitEngine(UsageCounter(mock_db), BrokenSink(), clock=clock)
        engine.record_click("user-1", "saves")
