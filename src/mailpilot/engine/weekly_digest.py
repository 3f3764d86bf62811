"""Weekly low-priority digest with unsubscribe suggestions.

Low-tier email never gets AI analysis. Instead, once a week it is rolled
up per sender and per category, each sender gets an unsubscribe
confidence, and the user can act on senders, whole domains or whole
categories in one go. Those actions flow back into the feedback loop.

Generation steps:
1. Normalize the requested week to its Monday; reuse an existing digest
   unless force_regenerate is set
2. Load low-tier score records received in [Monday, next Monday)
3. Group by normalized sender and by category (pluggable classifier)
4. Score senders with the UnsubscribeClassifier, skipping active VIPs
5. Derive bulk actions (domain and category granularity)
6. Write the finished digest in one transaction

The digest is built in memory and written once, so a cancelled build
leaves no partial row. A record that cannot be grouped is reported in
`errors` and the rest of the digest is still produced.

Usage:
    from mailpilot.engine.weekly_digest import WeeklyDigestBuilder

    builder = WeeklyDigestBuilder(store, config, feedback_loop)
    digest = await builder.build(user_id, date.today())
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from mailpilot.classifier.categories import KeywordCategoryClassifier
from mailpilot.classifier.signals import (
    SignalExtractor,
    extract_domain,
    normalize_sender,
    registrable_domain,
)
from mailpilot.core.errors import DigestNotFoundError, InvalidActionError
from mailpilot.core.logging import get_logger
from mailpilot.db.store import WeeklyDigest
from mailpilot.engine.unsubscribe import UnsubscribeClassifier

if TYPE_CHECKING:
    from mailpilot.classifier.categories import CategoryClassifier
    from mailpilot.classifier.pattern_learner import FeedbackLoop
    from mailpilot.config_schema import AppConfig, UserPreferences
    from mailpilot.db.store import DatabaseStore, EmailRecord, ScoreRecord

logger = get_logger(__name__)

DIGEST_ACTIONS = {"unsubscribe": "unsubscribed", "keep": "marked_keep"}
TARGET_TYPES = ("sender", "domain", "category")

# Senders that must share a domain or category before a bulk action is offered
MIN_BULK_SENDERS = 2


def week_start_for(day: date | datetime) -> date:
    """Monday of the week containing `day`."""
    if isinstance(day, datetime):
        day = day.date()
    return day - timedelta(days=day.weekday())


@dataclass
class _SenderGroup:
    sender_email: str
    sender_name: str | None = None
    email_count: int = 0
    signal_count: int = 0
    categories: dict[str, int] = field(default_factory=dict)
    subjects: list[str] = field(default_factory=list)

    @property
    def domain(self) -> str:
        return extract_domain(self.sender_email)

    @property
    def category(self) -> str:
        # Most frequent category, ties broken alphabetically
        return max(sorted(self.categories), key=self.categories.__getitem__)


class WeeklyDigestBuilder:
    """Builds weekly digests and applies the user's digest actions."""

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        feedback: FeedbackLoop,
        category_classifier: CategoryClassifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._feedback = feedback
        self._categories = category_classifier or KeywordCategoryClassifier()
        self._signals = SignalExtractor(config.scoring)
        self._unsubscribe = UnsubscribeClassifier(config.digest)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def build(
        self,
        user_id: str,
        week_start: date | datetime,
        force_regenerate: bool = False,
        preferences: UserPreferences | None = None,
    ) -> WeeklyDigest | None:
        """Build (or fetch) the digest for the week containing week_start.

        Returns:
            The stored digest, or None when the user disabled weekly digests
        """
        prefs = preferences or self._config.defaults
        if not prefs.enable_weekly_digest:
            logger.info("weekly_digest_disabled", user_id=user_id)
            return None

        monday = week_start_for(week_start)
        if not force_regenerate:
            existing = await self._store.get_weekly_digest(user_id, monday)
            if existing is not None:
                logger.debug("weekly_digest_reused", user_id=user_id, week_start=str(monday))
                return existing

        start = datetime.combine(monday, time.min, tzinfo=UTC)
        rows = await self._store.get_low_tier_emails(user_id, start, start + timedelta(days=7))
        active_vips = {
            normalize_sender(v.sender_email)
            for v in await self._store.get_vip_senders(user_id, status="active")
        }

        errors: list[str] = []
        groups = self._group(rows, errors)
        categories = self._summarize_categories(groups)
        safe, review = await self._suggest(user_id, groups, active_vips)
        bulk = self._bulk_actions(safe, review) if prefs.enable_bulk_unsubscribe else []

        total = len(rows)
        savings = round(total * self._config.digest.estimated_ai_cost_cents, 4)
        digest = WeeklyDigest(
            user_id=user_id,
            week_start=monday,
            week_end=monday + timedelta(days=6),
            categories=categories,
            safe_to_unsubscribe=safe,
            needs_review=review,
            bulk_actions=bulk,
            total_low_priority_emails=total,
            estimated_cost_savings_cents=savings,
            errors=errors,
            generated_at=self._clock(),
        )
        saved = await self._store.save_weekly_digest(digest)

        logger.info(
            "weekly_digest_generated",
            user_id=user_id,
            week_start=str(monday),
            emails=total,
            senders=len(groups),
            safe=len(safe),
            review=len(review),
            bulk_actions=len(bulk),
            errors=len(errors),
        )
        return saved

    async def execute_actions(
        self,
        digest_id: int,
        actions: list[dict[str, Any]],
        preferences: UserPreferences | None = None,
    ) -> WeeklyDigest:
        """Apply unsubscribe/keep actions from a digest.

        Each action is {"action": "unsubscribe"|"keep", "target_type":
        "sender"|"domain"|"category", "target": str}. Domain and category
        targets expand to the digest's suggested senders. Every affected
        sender is fed into the feedback loop with an idempotency key, so
        replaying the same actions does not double count.

        Raises:
            DigestNotFoundError: Unknown digest_id
            InvalidActionError: Unknown action or target type
        """
        digest = await self._store.get_weekly_digest_by_id(digest_id)
        if digest is None:
            raise DigestNotFoundError(f"Weekly digest {digest_id} not found", digest_id=digest_id)

        expanded = [(a, self._expand(digest, a)) for a in self._validate_actions(actions)]

        user_actions = {
            key: list(digest.user_actions.get(key, [])) for key in DIGEST_ACTIONS.values()
        }
        for action, senders in expanded:
            bucket = DIGEST_ACTIONS[action["action"]]
            other = "marked_keep" if bucket == "unsubscribed" else "unsubscribed"
            for sender in senders:
                if sender in user_actions[other]:
                    user_actions[other].remove(sender)
                if sender not in user_actions[bucket]:
                    user_actions[bucket].append(sender)
                await self._feedback.record_sender_action(
                    digest.user_id,
                    sender,
                    action["action"],
                    context={"digest_id": digest_id, "target_type": action["target_type"]},
                    action_id=f"digest:{digest_id}:{action['action']}:{sender}",
                    preferences=preferences,
                )

        completed_at = self._clock()
        await self._store.update_digest_user_actions(digest_id, user_actions, completed_at)
        digest.user_actions = user_actions
        digest.actions_completed_at = completed_at

        logger.info(
            "weekly_digest_actions_applied",
            digest_id=digest_id,
            unsubscribed=len(user_actions["unsubscribed"]),
            marked_keep=len(user_actions["marked_keep"]),
        )
        return digest

    # ------------------------------------------------------------------
    # Build helpers
    # ------------------------------------------------------------------

    def _group(
        self,
        rows: list[tuple[EmailRecord, ScoreRecord]],
        errors: list[str],
    ) -> dict[str, _SenderGroup]:
        groups: dict[str, _SenderGroup] = {}
        sample_limit = self._config.digest.sample_subjects
        for email, score in rows:
            try:
                sender = normalize_sender(email.sender_email)
                category = score.category_override or self._categories.classify(email)
                promotional = self._signals.extract(email).is_promotional
            except Exception as e:
                logger.warning("weekly_digest_record_failed", email_id=email.id, error=str(e))
                errors.append(f"{email.id}: {e}")
                continue

            group = groups.get(sender)
            if group is None:
                group = groups[sender] = _SenderGroup(sender_email=sender)
            group.sender_name = group.sender_name or email.sender_name
            group.email_count += 1
            group.signal_count += 1 if promotional else 0
            group.categories[category] = group.categories.get(category, 0) + 1
            if email.subject and len(group.subjects) < sample_limit:
                group.subjects.append(email.subject)
        return groups

    def _summarize_categories(self, groups: dict[str, _SenderGroup]) -> dict[str, dict[str, Any]]:
        summary: dict[str, dict[str, Any]] = {}
        sample_limit = self._config.digest.sample_subjects
        for sender in sorted(groups):
            group = groups[sender]
            for category, count in group.categories.items():
                entry = summary.setdefault(
                    category, {"count": 0, "senders": [], "sample_subjects": []}
                )
                entry["count"] += count
                entry["senders"].append(sender)
                for subject in group.subjects:
                    if len(entry["sample_subjects"]) >= sample_limit:
                        break
                    entry["sample_subjects"].append(subject)
        return summary

    async def _suggest(
        self,
        user_id: str,
        groups: dict[str, _SenderGroup],
        active_vips: set[str],
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        candidates = [s for s in groups if s not in active_vips]
        stats = await self._store.get_sender_stats(user_id, "sender", candidates)

        safe: list[dict[str, Any]] = []
        review: list[dict[str, Any]] = []
        for sender in candidates:
            group = groups[sender]
            assessment = self._unsubscribe.assess(
                sender,
                group.domain,
                group.email_count,
                group.signal_count,
                stats.get(sender),
            )
            if assessment.recommendation == "none":
                continue
            suggestion = {
                "sender_email": sender,
                "sender_name": group.sender_name,
                "domain": group.domain,
                "category": group.category,
                "email_count": group.email_count,
                "confidence": assessment.confidence,
                "signal_ratio": assessment.signal_ratio,
                "sample_subjects": list(group.subjects),
            }
            (safe if assessment.recommendation == "safe" else review).append(suggestion)

        def order(s: dict[str, Any]) -> tuple[float, str]:
            return (-s["confidence"], s["sender_email"])

        return sorted(safe, key=order), sorted(review, key=order)

    def _bulk_actions(
        self,
        safe: list[dict[str, Any]],
        review: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        by_domain: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for suggestion in safe + review:
            by_domain[registrable_domain(suggestion["domain"])].append(suggestion)

        by_category: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for suggestion in safe:
            by_category[suggestion["category"]].append(suggestion)

        bulk = []
        for target_type, grouped in (("domain", by_domain), ("category", by_category)):
            for target in sorted(grouped):
                members = grouped[target]
                if len(members) < MIN_BULK_SENDERS:
                    continue
                bulk.append(
                    {
                        "action": "unsubscribe",
                        "target_type": target_type,
                        "target": target,
                        "senders": sorted(m["sender_email"] for m in members),
                        "email_count": sum(m["email_count"] for m in members),
                        "confidence": round(min(m["confidence"] for m in members), 4),
                    }
                )
        return bulk

    # ------------------------------------------------------------------
    # Action helpers
    # ------------------------------------------------------------------

    def _validate_actions(self, actions: list[dict[str, Any]]) -> list[dict[str, Any]]:
        validated = []
        for action in actions:
            name = action.get("action")
            target_type = action.get("target_type", "sender")
            target = action.get("target")
            if name not in DIGEST_ACTIONS:
                raise InvalidActionError(
                    f"Unknown digest action '{name}'. Valid actions: unsubscribe, keep"
                )
            if target_type not in TARGET_TYPES:
                raise InvalidActionError(
                    f"Unknown target type '{target_type}'. Valid types: {', '.join(TARGET_TYPES)}"
                )
            if not target:
                raise InvalidActionError(f"Digest action '{name}' is missing a target")
            validated.append({"action": name, "target_type": target_type, "target": target})
        return validated

    def _expand(self, digest: WeeklyDigest, action: dict[str, Any]) -> list[str]:
        target = str(action["target"]).lower()
        if action["target_type"] == "sender":
            return [normalize_sender(target)]

        suggestions = digest.safe_to_unsubscribe + digest.needs_review
        if action["target_type"] == "domain":
            target = registrable_domain(target)
            return sorted(
                {
                    s["sender_email"]
                    for s in suggestions
                    if registrable_domain(s["domain"]) == target
                }
            )
        return sorted({s["sender_email"] for s in suggestions if s["category"] == target})
