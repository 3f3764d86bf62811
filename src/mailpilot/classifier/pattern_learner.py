"""Learning feedback loop: user actions in, patterns and VIP senders out.

Every user action on an email (star, reply, archive, delete, ...) carries a
signal strength in [-1, 1]. The loop turns that signal into:

- sender and domain interaction stats, whose vip_confidence moves toward
  1 (positive) or 0 (negative) by the learning rate
- learned patterns for the sender, domain, distinctive subject words and
  coarse content signals, each converging toward signal * target impact
- VIP promotions (suggested, or active when auto-promotion is on) and
  demotions of learned VIPs whose confidence has collapsed

Explicit VIP toggles and category corrections are applied even when
pattern learning is disabled. Actions carrying an action_id are
idempotent: a replayed action_id changes nothing.

Usage:
    from mailpilot.classifier.pattern_learner import FeedbackLoop

    loop = FeedbackLoop(store, config)
    result = await loop.record_action(user_id, email_id, "star", action_id="evt-123")
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from mailpilot.classifier.signals import (
    SignalExtractor,
    extract_domain,
    normalize_sender,
    subject_keywords,
)
from mailpilot.core.errors import EmailValidationError, InvalidActionError
from mailpilot.core.logging import get_logger
from mailpilot.db.store import LearnedPattern, Outcome, VIPSender

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig, LearningConfig, PatternType, UserPreferences
    from mailpilot.db.store import DatabaseStore, EmailRecord, SenderStats

logger = get_logger(__name__)

ACTION_SIGNALS: dict[str, float] = {
    "star": 1.0,
    "reply": 1.0,
    "mark_important": 0.8,
    "keep": 0.6,
    "read": 0.0,
    "unread": -0.2,
    "archive": -0.3,
    "delete": -0.7,
    "unsubscribe": -1.0,
    "vip_add": 1.0,
    "vip_remove": -0.5,
    "category_correction": 0.0,
}

# Actions that only make sense at sender granularity (digest feedback)
SENDER_ACTIONS = frozenset({"keep", "unsubscribe", "vip_add", "vip_remove"})

PATTERN_IMPACT_CAP = 50.0
EXPLICIT_VIP_BOOST = 30


@dataclass
class FeedbackResult:
    """What one recorded action changed."""

    action: str
    signal: float = 0.0
    duplicate: bool = False
    pattern_updates: list[LearnedPattern] = field(default_factory=list)
    vip_promotions: list[VIPSender] = field(default_factory=list)
    vip_demotions: list[VIPSender] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "signal": self.signal,
            "duplicate": self.duplicate,
            "pattern_updates": [
                {
                    "pattern_type": p.pattern_type,
                    "pattern_value": p.pattern_value,
                    "score_impact": p.score_impact,
                    "confidence_score": p.confidence_score,
                    "sample_count": p.sample_count,
                }
                for p in self.pattern_updates
            ],
            "vip_promotions": [v.to_dict() for v in self.vip_promotions],
            "vip_demotions": [v.to_dict() for v in self.vip_demotions],
        }


def outcome_for(signal: float) -> Outcome:
    if signal > 0:
        return "positive"
    if signal < 0:
        return "negative"
    return "neutral"


def pattern_confidence(sample_count: int, scale: float) -> float:
    return round(1.0 - math.exp(-sample_count / scale), 4)


def update_pattern(
    pattern: LearnedPattern,
    signal: float,
    learning: LearningConfig,
    now: datetime,
) -> LearnedPattern:
    """Apply one observation to a pattern (pure)."""
    target = signal * learning.pattern_target_impact
    impact = pattern.score_impact + learning.learning_rate * (target - pattern.score_impact)
    impact = max(-PATTERN_IMPACT_CAP, min(PATTERN_IMPACT_CAP, impact))
    samples = pattern.sample_count + 1
    positives = pattern.positive_count + (1 if signal > 0 else 0)
    return replace(
        pattern,
        score_impact=round(impact, 4),
        sample_count=samples,
        positive_count=positives,
        success_rate=round(positives / samples, 4),
        confidence_score=pattern_confidence(samples, learning.confidence_scale),
        last_seen_at=now,
    )


class FeedbackLoop:
    """Records user actions and updates the pattern store.

    Updates for one user are serialized with a per-user lock; pattern rows
    are read, adjusted and written back, so two concurrent actions for the
    same user must not interleave.
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._signals = SignalExtractor(config.scoring)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def learning(self) -> LearningConfig:
        return self._config.learning

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def record_action(
        self,
        user_id: str,
        email_id: str,
        action: str,
        context: dict[str, Any] | None = None,
        action_id: str | None = None,
        preferences: UserPreferences | None = None,
    ) -> FeedbackResult:
        """Record a user action on one email and learn from it.

        Raises:
            InvalidActionError: Unknown action, or category_correction
                without context["category"]
            EmailValidationError: The email is unknown or belongs to
                another user
        """
        context = dict(context or {})
        self._validate(action, context)

        email = await self._store.get_email(email_id)
        if email is None or email.user_id != user_id:
            raise EmailValidationError(
                f"Cannot record '{action}': email {email_id} not found for user {user_id}",
                email_id=email_id,
            )

        return await self._apply(
            user_id,
            action,
            normalize_sender(email.sender_email),
            email=email,
            context=context,
            action_id=action_id,
            preferences=preferences,
        )

    async def record_sender_action(
        self,
        user_id: str,
        sender_email: str,
        action: str,
        context: dict[str, Any] | None = None,
        action_id: str | None = None,
        preferences: UserPreferences | None = None,
    ) -> FeedbackResult:
        """Record a sender-level action (keep, unsubscribe, VIP toggles).

        Used by the weekly digest, where the user acts on a sender rather
        than on a single message. Only sender and domain patterns learn.
        """
        if action not in SENDER_ACTIONS:
            raise InvalidActionError(
                f"'{action}' is not a sender-level action. "
                f"Valid actions: {', '.join(sorted(SENDER_ACTIONS))}"
            )
        context = dict(context or {})
        self._validate(action, context)
        sender = normalize_sender(sender_email)
        if "@" not in sender:
            raise EmailValidationError(
                f"Invalid sender address '{sender_email}'", field="sender_email"
            )
        return await self._apply(
            user_id,
            action,
            sender,
            email=None,
            context=context,
            action_id=action_id,
            preferences=preferences,
        )

    def _validate(self, action: str, context: dict[str, Any]) -> None:
        if action not in ACTION_SIGNALS:
            raise InvalidActionError(
                f"Unknown feedback action '{action}'. "
                f"Valid actions: {', '.join(sorted(ACTION_SIGNALS))}"
            )
        if action == "category_correction" and not context.get("category"):
            raise InvalidActionError("category_correction requires context['category']")
        if action == "vip_add" and "score_boost" in context:
            boost = context["score_boost"]
            if isinstance(boost, bool) or not isinstance(boost, int) or not 0 <= boost <= 50:
                raise InvalidActionError(
                    f"score_boost must be an integer between 0 and 50, got {boost!r}"
                )

    async def _apply(
        self,
        user_id: str,
        action: str,
        sender: str,
        email: EmailRecord | None,
        context: dict[str, Any],
        action_id: str | None,
        preferences: UserPreferences | None,
    ) -> FeedbackResult:
        prefs = preferences or self._config.defaults
        signal = ACTION_SIGNALS[action]
        result = FeedbackResult(action=action, signal=signal)
        now = self._clock()

        async with self._lock_for(user_id):
            claimed = await self._store.record_user_action(
                user_id,
                action,
                email_id=email.id if email else None,
                sender_email=sender,
                context=context,
                action_id=action_id,
            )
            if not claimed:
                logger.info("feedback_duplicate", user_id=user_id, action_id=action_id)
                result.duplicate = True
                return result

            try:
                await self._apply_explicit(user_id, action, sender, email, context, result)

                if not prefs.enable_pattern_learning:
                    logger.debug("feedback_learning_disabled", user_id=user_id, action=action)
                    return result

                stats = await self._update_stats(user_id, sender, signal, now)
                if action not in ("vip_add", "vip_remove"):
                    await self._update_vip(user_id, sender, email, stats, signal, now, result)

                if signal != 0:
                    for pattern_type, value in self._observed_patterns(sender, email):
                        result.pattern_updates.append(
                            await self._learn_pattern(user_id, pattern_type, value, signal, now)
                        )
            except Exception:
                # The claim is released so a retry of the same action_id can learn
                if action_id is not None:
                    await self._store.release_user_action(user_id, action_id)
                raise

        logger.info(
            "feedback_recorded",
            user_id=user_id,
            action=action,
            sender=sender,
            patterns_updated=len(result.pattern_updates),
            vip_promotions=len(result.vip_promotions),
            vip_demotions=len(result.vip_demotions),
        )
        return result

    async def _apply_explicit(
        self,
        user_id: str,
        action: str,
        sender: str,
        email: EmailRecord | None,
        context: dict[str, Any],
        result: FeedbackResult,
    ) -> None:
        if action == "vip_add":
            vip = await self._store.upsert_vip_sender(
                VIPSender(
                    user_id=user_id,
                    sender_email=sender,
                    sender_name=email.sender_name if email else context.get("sender_name"),
                    score_boost=context.get("score_boost", EXPLICIT_VIP_BOOST),
                    auto_category=context.get("auto_category"),
                    confidence_score=1.0,
                    status="active",
                    learned=False,
                )
            )
            result.vip_promotions.append(vip)
        elif action == "vip_remove":
            existing = await self._store.get_vip_sender(user_id, sender)
            if existing is not None:
                await self._store.delete_vip_sender(user_id, sender)
                result.vip_demotions.append(existing)
        elif action == "category_correction" and email is not None:
            updated = await self._store.set_category_override(email.id, context["category"])
            if not updated:
                logger.warning("category_correction_unscored", email_id=email.id)

    async def _update_stats(
        self,
        user_id: str,
        sender: str,
        signal: float,
        now: datetime,
    ) -> SenderStats:
        outcome = outcome_for(signal)
        target = None if signal == 0 else (1.0 if signal > 0 else 0.0)
        step = self.learning.learning_rate * abs(signal)

        stats = await self._store.record_sender_interaction(
            user_id, "sender", sender, outcome, step, target, now
        )
        domain = extract_domain(sender)
        if domain:
            await self._store.record_sender_interaction(
                user_id, "domain", domain, outcome, step, target, now
            )
        return stats

    async def _update_vip(
        self,
        user_id: str,
        sender: str,
        email: EmailRecord | None,
        stats: SenderStats,
        signal: float,
        now: datetime,
        result: FeedbackResult,
    ) -> None:
        learning = self.learning
        vip = await self._store.get_vip_sender(user_id, sender)

        if vip is None:
            if (
                stats.vip_confidence >= learning.vip_promotion_confidence
                and stats.positive_count >= learning.vip_min_samples
            ):
                promoted = await self._store.upsert_vip_sender(
                    VIPSender(
                        user_id=user_id,
                        sender_email=sender,
                        sender_name=email.sender_name if email else None,
                        score_boost=learning.learned_vip_boost,
                        confidence_score=round(stats.vip_confidence, 4),
                        status="active" if learning.auto_promote_vips else "suggested",
                        learned=True,
                    )
                )
                result.vip_promotions.append(promoted)
                logger.info(
                    "vip_promoted",
                    user_id=user_id,
                    sender=sender,
                    status=promoted.status,
                    confidence=promoted.confidence_score,
                )
            return

        if signal == 0:
            return

        target = 1.0 if signal > 0 else 0.0
        step = learning.learning_rate * abs(signal)
        confidence = round(vip.confidence_score + step * (target - vip.confidence_score), 4)
        status = vip.status

        if vip.learned:
            if status == "active" and confidence < learning.vip_demotion_confidence:
                status = "suggested"
            elif (
                status == "suggested"
                and learning.auto_promote_vips
                and confidence >= learning.vip_promotion_confidence
            ):
                status = "active"

        updated = await self._store.upsert_vip_sender(
            replace(vip, confidence_score=confidence, status=status)
        )
        if status != vip.status:
            if status == "suggested":
                result.vip_demotions.append(updated)
                logger.info("vip_demoted", user_id=user_id, sender=sender, confidence=confidence)
            else:
                result.vip_promotions.append(updated)
                logger.info("vip_promoted", user_id=user_id, sender=sender, status=status)

    def _observed_patterns(
        self,
        sender: str,
        email: EmailRecord | None,
    ) -> list[tuple[PatternType, str]]:
        observed: list[tuple[PatternType, str]] = [("sender", sender)]
        domain = extract_domain(sender)
        if domain:
            observed.append(("domain", domain))
        if email is not None:
            for word in subject_keywords(email.subject, self.learning.max_subject_keywords):
                observed.append(("subject", word))
            for name in self._signals.content_signals(email):
                observed.append(("content", name))
        return observed

    async def _learn_pattern(
        self,
        user_id: str,
        pattern_type: PatternType,
        value: str,
        signal: float,
        now: datetime,
    ) -> LearnedPattern:
        pattern = await self._store.get_pattern(user_id, pattern_type, value)
        if pattern is None:
            pattern = LearnedPattern(
                user_id=user_id, pattern_type=pattern_type, pattern_value=value
            )
        updated = update_pattern(pattern, signal, self.learning, now)
        await self._store.save_pattern(updated)
        return updated
