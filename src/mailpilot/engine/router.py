"""Tier router: decides how much AI analysis a scored email gets.

Routing per processing tier:
- high: always analyzed. The budget hold skips the limit check but the
  cost is still accounted for; the circuit breaker still applies.
- medium: analyzed only while the daily and monthly budget are below their
  limits, otherwise `skipped_budget`. Callers that cannot wait (ingestion
  hot path) pass allow_sync_medium=False and the email is `queued` for the
  bounded batch drain instead.
- low: never analyzed here; `deferred` to the weekly digest.

Every failure path keeps the rule-based score. The router never raises
for AI trouble: a refused breaker becomes `breaker_open`, an exhausted
retry/fallback chain becomes `failed` (and its incurred cost is charged).

Usage:
    router = TierRouter(analyzer, ledger, breaker)
    decision = await router.route(email, score, preferences)
    if decision.score.ai_processed:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from mailpilot.core.errors import AIInvocationError, CircuitOpenError
from mailpilot.core.logging import get_logger

if TYPE_CHECKING:
    from mailpilot.classifier.ai_analyzer import AIAnalyzer
    from mailpilot.config_schema import UserPreferences
    from mailpilot.core.circuit_breaker import CircuitBreaker
    from mailpilot.db.store import AIStatus, EmailRecord, ScoreRecord, Tier
    from mailpilot.engine.budget import BudgetLedger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of routing one email.

    Attributes:
        tier: Processing tier the decision was made for
        ai_decision: The resulting ai_status
        score: The score record with ai_status/ai_result applied
        retry_after: Seconds until the breaker allows a trial (breaker_open only)
    """

    tier: Tier
    ai_decision: AIStatus
    score: ScoreRecord
    retry_after: float = 0.0


class TierRouter:
    """Routes scored emails to AI analysis under budget and breaker control."""

    def __init__(
        self,
        analyzer: AIAnalyzer,
        ledger: BudgetLedger,
        breaker: CircuitBreaker,
    ) -> None:
        self._analyzer = analyzer
        self._ledger = ledger
        self._breaker = breaker

    async def route(
        self,
        email: EmailRecord,
        score: ScoreRecord,
        preferences: UserPreferences,
        allow_sync_medium: bool = True,
    ) -> RoutingDecision:
        """Route one scored email.

        Args:
            email: The email being processed
            score: Its rule-based score record
            preferences: The owner's preferences (daily budget)
            allow_sync_medium: False to queue medium-tier work instead of
                analyzing it inline

        Returns:
            RoutingDecision with the updated score record
        """
        tier = score.processing_tier

        if tier == "low":
            return self._decide(tier, "deferred", score)

        if tier == "medium" and not allow_sync_medium:
            return self._decide(tier, "queued", score)

        estimate = self._analyzer.estimate_cost_cents(email, score)
        reservation = await self._ledger.reserve(
            email.user_id,
            estimate,
            enforce_limit=(tier != "high"),
            daily_limit_cents=preferences.daily_limit_cents,
        )
        if reservation is None:
            logger.info("ai_skipped_budget", email_id=email.id, tier=tier)
            return self._decide(tier, "skipped_budget", score)

        try:
            analysis = await self._breaker.call(lambda: self._analyzer.analyze(email, score))
        except CircuitOpenError as e:
            await self._ledger.release(reservation)
            logger.info("ai_breaker_open", email_id=email.id, retry_after=e.retry_after)
            return self._decide(tier, "breaker_open", score, retry_after=e.retry_after)
        except AIInvocationError as e:
            await self._ledger.settle(reservation, e.incurred_cost_cents)
            logger.warning(
                "ai_fallback_to_rules",
                email_id=email.id,
                attempts=e.attempts,
                incurred_cost_cents=e.incurred_cost_cents,
            )
            return self._decide(tier, "failed", score)
        except BaseException:
            # Cancelled mid-call: the hold must not leak
            await self._ledger.release(reservation)
            raise

        await self._ledger.settle(reservation, analysis.cost_cents)
        updated = replace(score, ai_processed=True, ai_status="completed", ai_result=analysis)
        return RoutingDecision(tier=tier, ai_decision="completed", score=updated)

    def _decide(
        self,
        tier: Tier,
        ai_decision: AIStatus,
        score: ScoreRecord,
        retry_after: float = 0.0,
    ) -> RoutingDecision:
        updated = replace(score, ai_processed=False, ai_status=ai_decision, ai_result=None)
        return RoutingDecision(
            tier=tier, ai_decision=ai_decision, score=updated, retry_after=retry_after
        )
