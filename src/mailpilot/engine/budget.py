"""AI spend ledger with daily and monthly windows.

Tracks AI cost per user in whole cents so that medium-tier AI analysis
stops once the user's budget is spent. Spending is two-phase:

1. reserve(): atomically place a hold for the estimated cost. With the
   limit enforced, the hold is granted only while settled spend plus
   outstanding holds is below the limit.
2. settle() / release(): drop the hold and charge the incurred cost
   (rounded up to whole cents), or charge nothing.

Settled accumulators only ever grow inside a window. Holds are bounded by
the conservative per-call estimate, so concurrent reservations can
overshoot the daily limit by at most one invocation.

Windows roll over lazily the first time a user's row is touched after a
boundary; reset_expired_windows() does the same for every row and can be
run from a timer.

Usage:
    ledger = BudgetLedger(store, config.budget)

    reservation = await ledger.reserve(user_id, estimate_cents=1)
    if reservation is None:
        ...  # budget exhausted, keep the rule-based score
    try:
        analysis = await analyzer.analyze(email, score)
    except AIInvocationError as e:
        await ledger.settle(reservation, e.incurred_cost_cents)
        raise
    await ledger.settle(reservation, analysis.cost_cents)
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal, NamedTuple

from mailpilot.core.logging import get_logger

if TYPE_CHECKING:
    from mailpilot.config_schema import BudgetConfig
    from mailpilot.db.store import BudgetEntry, DatabaseStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class Reservation:
    """A hold placed on a user's budget for one AI invocation."""

    user_id: str
    amount_cents: int
    enforce_limit: bool


@dataclass(frozen=True)
class BudgetAlert:
    """Emitted when settled spend crosses the alert threshold."""

    user_id: str
    window: Literal["daily", "monthly"]
    percent_used: int
    used_cents: int
    limit_cents: int
    message: str


class BudgetStatus(NamedTuple):
    """Current budget status for a user."""

    user_id: str
    daily_used_cents: int
    daily_limit_cents: int
    monthly_used_cents: int
    monthly_limit_cents: int
    reserved_cents: int
    daily_percent: int
    monthly_percent: int
    is_exhausted: bool
    should_alert: bool
    alert_message: str | None

    def to_dict(self) -> dict[str, Any]:
        return self._asdict()


def percent_used(used_cents: int, limit_cents: int) -> int:
    if limit_cents <= 0:
        return 100
    return int(used_cents * 100 / limit_cents)


def format_alert(window: str, used_cents: int, limit_cents: int) -> str:
    """Render e.g. 'Daily AI budget 85% used ($0.85 of $1.00)'."""
    return (
        f"{window.capitalize()} AI budget {percent_used(used_cents, limit_cents)}% used "
        f"(${used_cents / 100:.2f} of ${limit_cents / 100:.2f})"
    )


def charge_cents(cost_cents: float) -> int:
    """Whole cents charged for a fractional cost (ceiling, never negative)."""
    if cost_cents <= 0:
        return 0
    # Float noise such as 2.0000000001 should not add a cent
    return math.ceil(round(cost_cents, 6))


class BudgetLedger:
    """Per-user AI budget ledger.

    Args:
        store: Database store holding the ai_budgets table
        config: Default limits and alert threshold
        clock: Returns the current time (UTC); injectable for tests
        on_alert: Optional callback invoked with each BudgetAlert
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: BudgetConfig,
        clock: Callable[[], datetime] | None = None,
        on_alert: Callable[[BudgetAlert], Any] | None = None,
    ):
        self._store = store
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._on_alert = on_alert
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _windows(self) -> tuple[str, str]:
        now = self._clock()
        return now.date().isoformat(), now.strftime("%Y-%m")

    def _row_defaults(self, daily_limit_cents: int | None) -> dict[str, Any]:
        daily_window, monthly_window = self._windows()
        return {
            "daily_window": daily_window,
            "monthly_window": monthly_window,
            "daily_limit_cents": (
                self._config.default_daily_limit_cents
                if daily_limit_cents is None
                else daily_limit_cents
            ),
            "monthly_limit_cents": self._config.default_monthly_limit_cents,
            "alert_threshold_percent": self._config.alert_threshold_percent,
        }

    async def reserve(
        self,
        user_id: str,
        estimate_cents: int,
        enforce_limit: bool = True,
        daily_limit_cents: int | None = None,
    ) -> Reservation | None:
        """Place a hold for one invocation.

        Args:
            user_id: Budget owner
            estimate_cents: Conservative cost estimate (at least 1 cent is held)
            enforce_limit: False for high-tier mail, which is always analyzed
                but still accounted for
            daily_limit_cents: Limit used if the user has no ledger row yet

        Returns:
            The reservation, or None if the budget is exhausted
        """
        amount = max(1, int(estimate_cents))
        async with self._lock_for(user_id):
            granted, entry = await self._store.try_reserve_budget(
                user_id,
                amount,
                enforce_limit,
                **self._row_defaults(daily_limit_cents),
            )

        if not granted:
            logger.info(
                "budget_reservation_denied",
                user_id=user_id,
                daily_used_cents=entry.daily_used_cents,
                daily_limit_cents=entry.daily_limit_cents,
                monthly_used_cents=entry.monthly_used_cents,
                reserved_cents=entry.reserved_cents,
            )
            return None

        logger.debug(
            "budget_reserved",
            user_id=user_id,
            amount_cents=amount,
            enforce_limit=enforce_limit,
            reserved_cents=entry.reserved_cents,
        )
        return Reservation(user_id=user_id, amount_cents=amount, enforce_limit=enforce_limit)

    async def settle(self, reservation: Reservation, actual_cost_cents: float) -> BudgetStatus:
        """Replace a hold with the incurred cost and emit any threshold alert."""
        charged = charge_cents(actual_cost_cents)
        async with self._lock_for(reservation.user_id):
            entry = await self._store.settle_budget(
                reservation.user_id,
                reservation.amount_cents,
                charged,
                **self._row_defaults(None),
            )

        if charged:
            logger.info(
                "budget_charged",
                user_id=reservation.user_id,
                charged_cents=charged,
                estimate_cents=reservation.amount_cents,
                daily_used_cents=entry.daily_used_cents,
                monthly_used_cents=entry.monthly_used_cents,
            )
            await self._check_alerts(entry, charged)
        return self._status_from(entry)

    async def release(self, reservation: Reservation) -> None:
        """Return an unused hold (the invocation never happened)."""
        await self.settle(reservation, 0.0)

    async def status(self, user_id: str, daily_limit_cents: int | None = None) -> BudgetStatus:
        entry = await self._store.get_budget_entry(user_id, **self._row_defaults(daily_limit_cents))
        return self._status_from(entry)

    async def set_limits(
        self,
        user_id: str,
        daily_limit_cents: int | None = None,
        monthly_limit_cents: int | None = None,
    ) -> BudgetStatus:
        """Change a user's limits, creating the ledger row if needed."""
        await self._store.get_budget_entry(user_id, **self._row_defaults(daily_limit_cents))
        await self._store.set_budget_limits(
            user_id,
            daily_limit_cents=daily_limit_cents,
            monthly_limit_cents=monthly_limit_cents,
        )
        logger.info(
            "budget_limits_updated",
            user_id=user_id,
            daily_limit_cents=daily_limit_cents,
            monthly_limit_cents=monthly_limit_cents,
        )
        return await self.status(user_id)

    async def reset_expired_windows(self) -> int:
        """Roll every ledger row whose daily or monthly window has ended."""
        daily_window, monthly_window = self._windows()
        reset = await self._store.roll_budget_windows(daily_window, monthly_window)
        if reset:
            logger.info("budget_windows_reset", rows=reset, daily_window=daily_window)
        return reset

    async def _check_alerts(self, entry: BudgetEntry, charged: int) -> None:
        threshold = entry.alert_threshold_percent
        windows = (
            ("daily", entry.daily_used_cents, entry.daily_limit_cents),
            ("monthly", entry.monthly_used_cents, entry.monthly_limit_cents),
        )
        for window, used, limit in windows:
            before = percent_used(used - charged, limit)
            after = percent_used(used, limit)
            if before < threshold <= after:
                alert = BudgetAlert(
                    user_id=entry.user_id,
                    window=window,
                    percent_used=after,
                    used_cents=used,
                    limit_cents=limit,
                    message=format_alert(window, used, limit),
                )
                logger.warning(
                    "budget_alert",
                    user_id=entry.user_id,
                    window=window,
                    percent_used=after,
                    message=alert.message,
                )
                if self._on_alert is not None:
                    result = self._on_alert(alert)
                    if asyncio.iscoroutine(result):
                        await result

    def _status_from(self, entry: BudgetEntry) -> BudgetStatus:
        daily_pct = percent_used(entry.daily_used_cents, entry.daily_limit_cents)
        monthly_pct = percent_used(entry.monthly_used_cents, entry.monthly_limit_cents)
        threshold = entry.alert_threshold_percent

        alert_message = None
        if daily_pct >= threshold:
            alert_message = format_alert("daily", entry.daily_used_cents, entry.daily_limit_cents)
        elif monthly_pct >= threshold:
            alert_message = format_alert(
                "monthly", entry.monthly_used_cents, entry.monthly_limit_cents
            )

        return BudgetStatus(
            user_id=entry.user_id,
            daily_used_cents=entry.daily_used_cents,
            daily_limit_cents=entry.daily_limit_cents,
            monthly_used_cents=entry.monthly_used_cents,
            monthly_limit_cents=entry.monthly_limit_cents,
            reserved_cents=entry.reserved_cents,
            daily_percent=daily_pct,
            monthly_percent=monthly_pct,
            is_exhausted=(
                entry.daily_used_cents >= entry.daily_limit_cents
                or entry.monthly_used_cents >= entry.monthly_limit_cents
            ),
            should_alert=alert_message is not None,
            alert_message=alert_message,
        )
