"""Tests for the per-user AI budget ledger."""

import asyncio

import pytest

from mailpilot.config_schema import BudgetConfig
from mailpilot.engine.budget import (
    BudgetAlert,
    BudgetLedger,
    charge_cents,
    format_alert,
    percent_used,
)


@pytest.fixture
def alerts() -> list[BudgetAlert]:
    return []


@pytest.fixture
def ledger(store, clock, alerts) -> BudgetLedger:
    return BudgetLedger(store, BudgetConfig(), clock=clock, on_alert=alerts.append)


async def _spend(ledger: BudgetLedger, user_id: str, cents: float) -> None:
    reservation = await ledger.reserve(user_id, 1, enforce_limit=False)
    await ledger.settle(reservation, cents)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    @pytest.mark.parametrize(
        "cost,expected",
        [(0.0, 0), (-3.0, 0), (0.0001, 1), (0.3, 1), (1.0, 1), (2.0000000001, 2), (2.4, 3)],
    )
    def test_charge_rounds_up_to_whole_cents(self, cost, expected):
        assert charge_cents(cost) == expected

    def test_percent_used(self):
        assert percent_used(85, 100) == 85
        assert percent_used(1, 3) == 33
        assert percent_used(0, 0) == 100

    def test_format_alert(self):
        assert format_alert("daily", 85, 100) == "Daily AI budget 85% used ($0.85 of $1.00)"


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


class TestReserve:
    async def test_first_reservation_creates_row_with_defaults(self, ledger):
        reservation = await ledger.reserve("user-1", 2)

        assert reservation is not None
        assert reservation.amount_cents == 2
        assert reservation.enforce_limit is True

        status = await ledger.status("user-1")
        assert status.reserved_cents == 2
        assert status.daily_used_cents == 0
        assert status.daily_limit_cents == 100
        assert status.monthly_limit_cents == 2000

    async def test_estimate_is_at_least_one_cent(self, ledger):
        reservation = await ledger.reserve("user-1", 0)
        assert reservation.amount_cents == 1

    async def test_new_row_uses_preference_limit(self, ledger):
        await ledger.reserve("user-1", 1, daily_limit_cents=50)
        status = await ledger.status("user-1")
        assert status.daily_limit_cents == 50

    async def test_denied_when_daily_budget_spent(self, ledger):
        await ledger.set_limits("user-1", daily_limit_cents=3)
        await _spend(ledger, "user-1", 3.0)

        assert await ledger.reserve("user-1", 1) is None

        status = await ledger.status("user-1")
        assert status.is_exhausted is True
        assert status.reserved_cents == 0

    async def test_denied_when_monthly_budget_spent(self, ledger):
        await ledger.set_limits("user-1", monthly_limit_cents=3)
        await _spend(ledger, "user-1", 3.0)

        assert await ledger.reserve("user-1", 1) is None

    async def test_outstanding_holds_count_against_limit(self, ledger):
        await ledger.set_limits("user-1", daily_limit_cents=2)

        first = await ledger.reserve("user-1", 1)
        second = await ledger.reserve("user-1", 1)
        third = await ledger.reserve("user-1", 1)

        assert first is not None
        assert second is not None
        assert third is None

    async def test_unenforced_reservation_ignores_exhaustion(self, ledger):
        await ledger.set_limits("user-1", daily_limit_cents=1)
        await _spend(ledger, "user-1", 1.0)

        reservation = await ledger.reserve("user-1", 1, enforce_limit=False)
        assert reservation is not None

        status = await ledger.settle(reservation, 1.5)
        assert status.daily_used_cents == 3
        assert status.daily_percent == 300

    async def test_users_are_isolated(self, ledger):
        await ledger.set_limits("user-1", daily_limit_cents=1)
        await _spend(ledger, "user-1", 1.0)

        assert await ledger.reserve("user-1", 1) is None
        assert await ledger.reserve("user-2", 1) is not None


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class TestSettle:
    async def test_settle_replaces_hold_with_charge(self, ledger):
        reservation = await ledger.reserve("user-1", 2)

        status = await ledger.settle(reservation, 0.3)

        assert status.reserved_cents == 0
        assert status.daily_used_cents == 1
        assert status.monthly_used_cents == 1

    async def test_release_charges_nothing(self, ledger):
        reservation = await ledger.reserve("user-1", 2)

        await ledger.release(reservation)

        status = await ledger.status("user-1")
        assert status.reserved_cents == 0
        assert status.daily_used_cents == 0

    async def test_usage_never_decreases_within_window(self, ledger):
        seen = []
        for cost in (0.4, 0.0, 1.2, 0.0, 0.01):
            reservation = await ledger.reserve("user-1", 1)
            status = await ledger.settle(reservation, cost)
            seen.append(status.daily_used_cents)

        assert seen == sorted(seen)
        assert seen[-1] == 4


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class TestAlerts:
    async def test_alert_fires_once_when_threshold_crossed(self, ledger, alerts):
        await _spend(ledger, "user-1", 79.0)
        assert alerts == []

        await _spend(ledger, "user-1", 2.0)
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.window == "daily"
        assert alert.percent_used == 81
        assert alert.message == "Daily AI budget 81% used ($0.81 of $1.00)"

        await _spend(ledger, "user-1", 1.0)
        assert len(alerts) == 1

    async def test_status_reports_alert_message(self, ledger):
        await _spend(ledger, "user-1", 85.0)

        status = await ledger.status("user-1")

        assert status.should_alert is True
        assert status.alert_message == "Daily AI budget 85% used ($0.85 of $1.00)"
        assert status.to_dict()["daily_percent"] == 85

    async def test_async_alert_callback_is_awaited(self, store, clock):
        received = []

        async def on_alert(alert):
            received.append(alert.window)

        ledger = BudgetLedger(store, BudgetConfig(), clock=clock, on_alert=on_alert)
        await _spend(ledger, "user-1", 90.0)

        assert received == ["daily"]

    async def test_no_charge_no_alert(self, ledger, alerts):
        await _spend(ledger, "user-1", 79.0)
        reservation = await ledger.reserve("user-1", 1)
        await ledger.release(reservation)
        assert alerts == []


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


class TestWindows:
    async def test_daily_window_rolls_over(self, ledger, clock):
        await _spend(ledger, "user-1", 50.0)

        clock.advance(days=1)
        status = await ledger.status("user-1")

        assert status.daily_used_cents == 0
        assert status.monthly_used_cents == 50

    async def test_monthly_window_rolls_over(self, ledger, clock):
        await _spend(ledger, "user-1", 50.0)

        clock.advance(days=31)
        status = await ledger.status("user-1")

        assert status.daily_used_cents == 0
        assert status.monthly_used_cents == 0

    async def test_exhausted_budget_available_next_day(self, ledger, clock):
        await ledger.set_limits("user-1", daily_limit_cents=1)
        await _spend(ledger, "user-1", 1.0)
        assert await ledger.reserve("user-1", 1) is None

        clock.advance(days=1)
        assert await ledger.reserve("user-1", 1) is not None

    async def test_reset_expired_windows_once_per_boundary(self, ledger, clock):
        await _spend(ledger, "user-1", 5.0)
        await _spend(ledger, "user-2", 5.0)

        assert await ledger.reset_expired_windows() == 0

        clock.advance(days=1)
        assert await ledger.reset_expired_windows() == 2
        assert await ledger.reset_expired_windows() == 0

        status = await ledger.status("user-2")
        assert status.daily_used_cents == 0


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    async def test_concurrent_reservations_overshoot_by_at_most_one_call(self, ledger):
        await ledger.set_limits("user-1", daily_limit_cents=5)

        async def attempt() -> bool:
            reservation = await ledger.reserve("user-1", 1)
            if reservation is None:
                return False
            await asyncio.sleep(0)
            await ledger.settle(reservation, 1.0)
            return True

        results = await asyncio.gather(*(attempt() for _ in range(20)))

        status = await ledger.status("user-1")
        assert sum(results) <= 6
        assert status.daily_used_cents <= 5 + 1
        assert status.reserved_cents == 0
