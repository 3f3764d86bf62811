"""Deterministic multi-factor email scoring.

The scoring engine turns an email plus a user's scoring profile into a
ScoreRecord with a named factor breakdown, a clamped final score and a
processing tier. It performs no I/O: the caller loads the profile (VIPs,
confident learned patterns, sender and domain stats, preferences) and
passes an explicit `now`, so identical inputs always produce an identical
breakdown and the engine is safe to call concurrently.

Factor table (before per-user weights):

    base                         30
    vip_boost                    active VIP score_boost
    urgency_boost                first keyword 20, +5 each further, max 30
    marketing_penalty            first signal -30, -5 each further, min -40
    provider_signal_boost        important 20, starred 15, unread 10
    time_decay                   <2h +10, 2-24h 0, then -5/day down to -20
    content_analysis             question 3, request 5, attachment 2,
                                 short body -2, bounded to [-5, 10]
    sender_reputation            (pos - neg) / (pos + neg + 2) * 10
    learned_pattern_adjustment   sum of confident pattern impacts, [-50, 50]

Usage:
    from mailpilot.classifier.scoring import ScoringEngine, ScoringProfile

    engine = ScoringEngine(config.scoring)
    profile = ScoringProfile(preferences=prefs)
    score = engine.score(email, profile, now=datetime.now(UTC))
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from mailpilot.classifier.signals import (
    EmailSignals,
    SignalExtractor,
    extract_domain,
    normalize_sender,
    subject_keywords,
)
from mailpilot.config_schema import UserPreferences
from mailpilot.core.logging import get_logger
from mailpilot.db.store import FactorBreakdown, ScoreRecord, Tier

if TYPE_CHECKING:
    from mailpilot.config_schema import ScoringKeywordsConfig
    from mailpilot.db.store import EmailRecord, LearnedPattern, SenderStats, VIPSender

logger = get_logger(__name__)

BASE_SCORE = 30.0

URGENCY_FIRST = 20.0
URGENCY_EACH_EXTRA = 5.0
URGENCY_CAP = 30.0

MARKETING_FIRST = 30.0
MARKETING_EACH_EXTRA = 5.0
MARKETING_CAP = 40.0

IMPORTANT_BOOST = 20.0
STARRED_BOOST = 15.0
UNREAD_BOOST = 10.0

RECENT_HOURS = 2.0
RECENT_BOOST = 10.0
NEUTRAL_HOURS = 24.0
DECAY_PER_DAY = 5.0
DECAY_CAP = 20.0

CONTENT_QUESTION = 3.0
CONTENT_ACTION_REQUEST = 5.0
CONTENT_ATTACHMENT = 2.0
CONTENT_SHORT_BODY = -2.0
CONTENT_MIN = -5.0
CONTENT_MAX = 10.0

REPUTATION_SCALE = 10.0
DOMAIN_REPUTATION_WEIGHT = 0.5

PATTERN_ADJUSTMENT_CAP = 50.0

# Only patterns above these limits may influence a score
MIN_PATTERN_CONFIDENCE = 0.5
MIN_PATTERN_SAMPLES = 2

# Words scanned per subject when matching subject patterns
SUBJECT_MATCH_WORDS = 50


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def determine_tier(final_score: float, preferences: UserPreferences) -> Tier:
    """Map a final score onto exactly one processing tier."""
    if final_score >= preferences.high_priority_threshold:
        return "high"
    if final_score >= preferences.medium_priority_threshold:
        return "medium"
    return "low"


def is_confident(pattern: LearnedPattern) -> bool:
    return (
        pattern.confidence_score > MIN_PATTERN_CONFIDENCE
        and pattern.sample_count >= MIN_PATTERN_SAMPLES
    )


@dataclass
class ScoringProfile:
    """Everything the engine knows about one user at scoring time.

    Attributes:
        preferences: Weights, thresholds and toggles
        vip_senders: Active VIPs keyed by normalized sender address
        patterns: Learned patterns (unconfident ones are ignored)
        sender_stats: Interaction stats keyed by normalized sender address
        domain_stats: Interaction stats keyed by domain
    """

    preferences: UserPreferences = field(default_factory=UserPreferences)
    vip_senders: dict[str, VIPSender] = field(default_factory=dict)
    patterns: list[LearnedPattern] = field(default_factory=list)
    sender_stats: dict[str, SenderStats] = field(default_factory=dict)
    domain_stats: dict[str, SenderStats] = field(default_factory=dict)


class ScoringEngine:
    """Pure, deterministic rule-based scorer."""

    def __init__(self, keywords: ScoringKeywordsConfig):
        self.signals = SignalExtractor(keywords)

    def score(self, email: EmailRecord, profile: ScoringProfile, now: datetime) -> ScoreRecord:
        """Score one email against a profile at a fixed point in time.

        Never raises for missing data: a cold-start profile (no VIPs,
        patterns or stats) still yields a valid score and tier.
        """
        prefs = profile.preferences
        signals = self.signals.extract(email)
        sender = normalize_sender(email.sender_email)
        domain = extract_domain(sender)

        factors = FactorBreakdown(
            base=BASE_SCORE,
            vip_boost=self._vip_boost(sender, profile),
            urgency_boost=_round(self._urgency_boost(signals) * prefs.urgent_keywords_weight),
            marketing_penalty=_round(
                self._marketing_penalty(signals) * prefs.marketing_penalty_weight
            ),
            provider_signal_boost=_round(self._provider_boost(email) * prefs.gmail_signals_weight),
            time_decay=_round(self._time_decay(email.received_at, now) * prefs.time_decay_weight),
            content_analysis=self._content_analysis(email, signals),
            sender_reputation=self._sender_reputation(sender, domain, profile),
            learned_pattern_adjustment=self._pattern_adjustment(email, sender, domain, profile),
        )

        raw_score = factors.total()
        final_score = clamp(raw_score, 0.0, 100.0)
        tier = determine_tier(final_score, prefs)

        logger.debug(
            "Email scored",
            email_id=email.id,
            raw_score=raw_score,
            final_score=final_score,
            tier=tier,
        )

        return ScoreRecord(
            email_id=email.id,
            user_id=email.user_id,
            raw_score=raw_score,
            final_score=final_score,
            processing_tier=tier,
            factors=factors,
            scored_at=now,
        )

    def matched_signals(self, email: EmailRecord) -> dict[str, Any]:
        """Names of the keyword and content signals found in an email."""
        signals = self.signals.extract(email)
        return {
            "urgency": list(signals.urgency),
            "marketing": list(signals.marketing),
            "content": self.signals.content_signals(email),
        }

    def _vip_boost(self, sender: str, profile: ScoringProfile) -> float:
        vip = profile.vip_senders.get(sender)
        if vip is None or vip.status != "active":
            return 0.0
        return _round(vip.score_boost * profile.preferences.vip_sender_weight)

    def _urgency_boost(self, signals: EmailSignals) -> float:
        matches = len(signals.urgency)
        if matches == 0:
            return 0.0
        return min(URGENCY_FIRST + URGENCY_EACH_EXTRA * (matches - 1), URGENCY_CAP)

    def _marketing_penalty(self, signals: EmailSignals) -> float:
        matches = len(signals.marketing)
        if matches == 0:
            return 0.0
        return -min(MARKETING_FIRST + MARKETING_EACH_EXTRA * (matches - 1), MARKETING_CAP)

    def _provider_boost(self, email: EmailRecord) -> float:
        boost = 0.0
        if email.is_important:
            boost += IMPORTANT_BOOST
        if email.is_starred:
            boost += STARRED_BOOST
        if email.is_unread:
            boost += UNREAD_BOOST
        return boost

    def _time_decay(self, received_at: datetime | None, now: datetime) -> float:
        if received_at is None:
            return 0.0
        if received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        # Future timestamps (clock skew) count as brand new
        age_hours = max(0.0, (now - received_at).total_seconds() / 3600)
        if age_hours < RECENT_HOURS:
            return RECENT_BOOST
        if age_hours <= NEUTRAL_HOURS:
            return 0.0
        days = math.floor(age_hours / 24)
        return -min(DECAY_PER_DAY * days, DECAY_CAP)

    def _content_analysis(self, email: EmailRecord, signals: EmailSignals) -> float:
        value = 0.0
        if signals.has_question:
            value += CONTENT_QUESTION
        if signals.has_action_request:
            value += CONTENT_ACTION_REQUEST
        if email.has_attachments:
            value += CONTENT_ATTACHMENT
        if signals.is_short_body:
            value += CONTENT_SHORT_BODY
        return clamp(value, CONTENT_MIN, CONTENT_MAX)

    def _sender_reputation(self, sender: str, domain: str, profile: ScoringProfile) -> float:
        stats = profile.sender_stats.get(sender)
        if stats is not None and stats.positive_count + stats.negative_count > 0:
            return _round(_reputation(stats))
        domain_stats = profile.domain_stats.get(domain)
        if domain_stats is not None and domain_stats.total - domain_stats.neutral_count > 0:
            return _round(_reputation(domain_stats) * DOMAIN_REPUTATION_WEIGHT)
        return 0.0

    def _pattern_adjustment(
        self,
        email: EmailRecord,
        sender: str,
        domain: str,
        profile: ScoringProfile,
    ) -> float:
        prefs = profile.preferences
        if not prefs.enable_pattern_learning or not profile.patterns:
            return 0.0

        observed = {
            "sender": {sender},
            "domain": {domain},
            "subject": set(subject_keywords(email.subject, SUBJECT_MATCH_WORDS)),
            "content": set(self.signals.content_signals(email)),
        }

        total = 0.0
        for pattern in profile.patterns:
            if not is_confident(pattern):
                continue
            if pattern.pattern_value in observed.get(pattern.pattern_type, ()):
                total += pattern.score_impact * prefs.pattern_weights.get(pattern.pattern_type, 1.0)

        return _round(clamp(total, -PATTERN_ADJUSTMENT_CAP, PATTERN_ADJUSTMENT_CAP))


def _reputation(stats: SenderStats) -> float:
    pos, neg = stats.positive_count, stats.negative_count
    return (pos - neg) / (pos + neg + 2) * REPUTATION_SCALE


def _round(value: float) -> float:
    # Normalize -0.0 so breakdowns compare and serialize cleanly
    return round(value, 2) + 0.0
