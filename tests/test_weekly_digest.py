"""Tests for weekly low-priority digest generation and digest actions."""

from datetime import date, datetime, timedelta

import pytest

from conftest import NOW
from mailpilot.classifier.pattern_learner import FeedbackLoop
from mailpilot.core.errors import DigestNotFoundError, InvalidActionError
from mailpilot.config_schema import UserPreferences
from mailpilot.db.store import FactorBreakdown, ScoreRecord, VIPSender
from mailpilot.engine.weekly_digest import WeeklyDigestBuilder, week_start_for

MONDAY = date(2025, 3, 10)


@pytest.fixture
def builder(store, sample_config, clock) -> WeeklyDigestBuilder:
    feedback = FeedbackLoop(store, sample_config, clock=clock)
    return WeeklyDigestBuilder(store, sample_config, feedback, clock=clock)


@pytest.fixture
def seed(store, make_email):
    counter = {"n": 0}

    async def _seed(
        sender: str,
        count: int = 5,
        subject: str = "Flash sale: 50% off",
        snippet: str = "Limited time offer, unsubscribe any time.",
        tier: str = "low",
        received_at: datetime | None = None,
        category_override: str | None = None,
    ) -> None:
        for i in range(count):
            counter["n"] += 1
            email = make_email(
                f"msg-{counter['n']}",
                sender_email=sender,
                subject=subject,
                snippet=snippet,
                received_at=received_at or NOW - timedelta(hours=i + 1),
            )
            await store.save_email(email)
            await store.save_score(
                ScoreRecord(
                    email_id=email.id,
                    user_id="user-1",
                    raw_score=20,
                    final_score=20 if tier == "low" else 60,
                    processing_tier=tier,
                    factors=FactorBreakdown(base=20),
                    ai_status="deferred",
                    category_override=category_override,
                    scored_at=NOW,
                )
            )

    return _seed


@pytest.fixture
async def seeded(seed, store):
    await seed("deals@shop.com")
    await seed("offers@shop.com")
    await seed(
        "writer@letters.substack.com",
        subject="This week in AI",
        snippet="Read online or unsubscribe from this publication.",
    )
    await seed("boss@example.com")
    await store.upsert_vip_sender(VIPSender(user_id="user-1", sender_email="boss@example.com"))
    # Outside the week and above the low tier: both excluded
    await seed("old@shop.com", count=2, received_at=NOW - timedelta(days=9))
    await seed("team@work.com", count=2, tier="medium")


def test_week_start_for():
    assert week_start_for(date(2025, 3, 10)) == MONDAY
    assert week_start_for(date(2025, 3, 16)) == MONDAY
    assert week_start_for(datetime(2025, 3, 12, 23, 59)) == MONDAY
    assert week_start_for(date(2025, 3, 17)) == date(2025, 3, 17)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class TestBuild:
    async def test_digest_contents(self, builder, seeded):
        digest = await builder.build("user-1", NOW.date())

        assert digest.id is not None
        assert digest.week_start == MONDAY
        assert digest.week_end == date(2025, 3, 16)
        assert digest.total_low_priority_emails == 20
        assert digest.estimated_cost_savings_cents == pytest.approx(1.0)
        assert digest.errors == []
        assert digest.generated_at == NOW

        assert [s["sender_email"] for s in digest.safe_to_unsubscribe] == [
            "deals@shop.com",
            "offers@shop.com",
        ]
        assert [s["sender_email"] for s in digest.needs_review] == [
            "writer@letters.substack.com"
        ]

        deals = digest.safe_to_unsubscribe[0]
        assert deals["email_count"] == 5
        assert deals["category"] == "marketing"
        assert deals["confidence"] > 0.8
        assert len(deals["sample_subjects"]) == 3

    async def test_active_vips_never_suggested(self, builder, seeded):
        digest = await builder.build("user-1", NOW.date())

        suggested = {
            s["sender_email"] for s in digest.safe_to_unsubscribe + digest.needs_review
        }
        assert "boss@example.com" not in suggested
        # VIP mail is still part of the low-priority summary
        assert "boss@example.com" in digest.categories["marketing"]["senders"]

    async def test_categories_summary(self, builder, seeded):
        digest = await builder.build("user-1", NOW.date())

        assert digest.categories["marketing"]["count"] == 15
        assert digest.categories["newsletters"] == {
            "count": 5,
            "senders": ["writer@letters.substack.com"],
            "sample_subjects": ["This week in AI"] * 3,
        }

    async def test_bulk_actions(self, builder, seeded):
        digest = await builder.build("user-1", NOW.date())

        assert digest.bulk_actions == [
            {
                "action": "unsubscribe",
                "target_type": "domain",
                "target": "shop.com",
                "senders": ["deals@shop.com", "offers@shop.com"],
                "email_count": 10,
                "confidence": digest.safe_to_unsubscribe[0]["confidence"],
            },
            {
                "action": "unsubscribe",
                "target_type": "category",
                "target": "marketing",
                "senders": ["deals@shop.com", "offers@shop.com"],
                "email_count": 10,
                "confidence": digest.safe_to_unsubscribe[0]["confidence"],
            },
        ]

    async def test_bulk_actions_disabled(self, builder, seeded):
        prefs = UserPreferences(enable_bulk_unsubscribe=False)
        digest = await builder.build("user-1", NOW.date(), preferences=prefs)
        assert digest.bulk_actions == []
        assert len(digest.safe_to_unsubscribe) == 2

    async def test_disabled_digest_returns_none(self, builder, seeded, store):
        prefs = UserPreferences(enable_weekly_digest=False)
        assert await builder.build("user-1", NOW.date(), preferences=prefs) is None
        assert await store.get_weekly_digest("user-1", MONDAY) is None

    async def test_empty_week(self, builder):
        digest = await builder.build("user-1", MONDAY)

        assert digest.total_low_priority_emails == 0
        assert digest.safe_to_unsubscribe == []
        assert digest.categories == {}

    async def test_category_override_wins(self, builder, seed):
        await seed("deals@shop.com", count=2, category_override="social")

        digest = await builder.build("user-1", MONDAY)

        assert digest.categories["social"]["count"] == 2
        assert "marketing" not in digest.categories

    async def test_ungroupable_record_is_reported(self, store, sample_config, clock, seed):
        class FlakyClassifier:
            def classify(self, email):
                if email.id == "msg-1":
                    raise ValueError("bad subject encoding")
                return "automated"

        builder = WeeklyDigestBuilder(
            store,
            sample_config,
            FeedbackLoop(store, sample_config, clock=clock),
            category_classifier=FlakyClassifier(),
            clock=clock,
        )
        await seed("alerts@bank.com", count=3)

        digest = await builder.build("user-1", MONDAY)

        assert digest.errors == ["msg-1: bad subject encoding"]
        assert digest.categories["automated"]["count"] == 2


class TestIdempotency:
    async def test_existing_digest_is_reused(self, builder, seeded, seed, clock):
        first = await builder.build("user-1", MONDAY)
        await seed("promo@newshop.com", count=3)
        clock.advance(hours=1)

        second = await builder.build("user-1", MONDAY + timedelta(days=2))

        assert second.id == first.id
        assert second.total_low_priority_emails == first.total_low_priority_emails
        assert second.generated_at == first.generated_at

    async def test_force_regenerate_replaces_in_place(self, builder, seeded, seed, clock):
        first = await builder.build("user-1", MONDAY)
        await seed("promo@newshop.com", count=3)
        clock.advance(hours=1)

        second = await builder.build("user-1", MONDAY, force_regenerate=True)

        assert second.id == first.id
        assert second.total_low_priority_emails == first.total_low_priority_emails + 3
        assert second.generated_at == NOW + timedelta(hours=1)

    async def test_force_regenerate_keeps_recorded_actions(self, builder, seeded, store, clock):
        digest = await builder.build("user-1", MONDAY)
        await builder.execute_actions(
            digest.id, [{"action": "unsubscribe", "target": "deals@shop.com"}]
        )
        clock.advance(hours=1)

        regenerated = await builder.build("user-1", MONDAY, force_regenerate=True)

        assert regenerated.user_actions["unsubscribed"] == ["deals@shop.com"]
        assert regenerated.actions_completed_at == NOW
        stored = await store.get_weekly_digest_by_id(digest.id)
        assert stored.user_actions["unsubscribed"] == ["deals@shop.com"]


# ---------------------------------------------------------------------------
# Digest actions
# ---------------------------------------------------------------------------


class TestExecuteActions:
    async def test_domain_unsubscribe_expands_to_senders(self, builder, seeded, store):
        digest = await builder.build("user-1", MONDAY)

        updated = await builder.execute_actions(
            digest.id,
            [{"action": "unsubscribe", "target_type": "domain", "target": "shop.com"}],
        )

        assert updated.user_actions["unsubscribed"] == ["deals@shop.com", "offers@shop.com"]
        assert updated.actions_completed_at == NOW

        stored = await store.get_weekly_digest_by_id(digest.id)
        assert stored.user_actions["unsubscribed"] == ["deals@shop.com", "offers@shop.com"]

        pattern = await store.get_pattern("user-1", "sender", "deals@shop.com")
        assert pattern.score_impact < 0

    async def test_replayed_actions_do_not_double_count(self, builder, seeded, store):
        digest = await builder.build("user-1", MONDAY)
        actions = [{"action": "unsubscribe", "target_type": "category", "target": "marketing"}]

        await builder.execute_actions(digest.id, actions)
        await builder.execute_actions(digest.id, actions)

        assert len(await store.get_user_actions("user-1")) == 2
        pattern = await store.get_pattern("user-1", "sender", "offers@shop.com")
        assert pattern.sample_count == 1

    async def test_keep_moves_sender_out_of_unsubscribed(self, builder, seeded):
        digest = await builder.build("user-1", MONDAY)
        await builder.execute_actions(
            digest.id,
            [{"action": "unsubscribe", "target_type": "domain", "target": "shop.com"}],
        )

        updated = await builder.execute_actions(
            digest.id, [{"action": "keep", "target": "Deals@Shop.com"}]
        )

        assert updated.user_actions["unsubscribed"] == ["offers@shop.com"]
        assert updated.user_actions["marked_keep"] == ["deals@shop.com"]

    async def test_unknown_digest(self, builder):
        with pytest.raises(DigestNotFoundError) as exc_info:
            await builder.execute_actions(999, [{"action": "keep", "target": "a@b.com"}])
        assert exc_info.value.digest_id == 999

    @pytest.mark.parametrize(
        "action,match",
        [
            ({"action": "archive", "target": "a@b.com"}, "Unknown digest action"),
            ({"action": "keep", "target_type": "folder", "target": "x"}, "Unknown target type"),
            ({"action": "keep", "target_type": "sender"}, "missing a target"),
        ],
    )
    async def test_invalid_actions_rejected_before_any_change(
        self, builder, seeded, store, action, match
    ):
        digest = await builder.build("user-1", MONDAY)
        valid = {"action": "unsubscribe", "target": "deals@shop.com"}

        with pytest.raises(InvalidActionError, match=match):
            await builder.execute_actions(digest.id, [valid, action])

        assert await store.get_user_actions("user-1") == []
