"""Unsubscribe confidence classifier for low-priority senders.

Confidence that a sender is safe to unsubscribe from:

    (0.5 * frequency + 0.5 * signal_ratio) * reputation * engagement

- frequency = 1 - exp(-count / frequency_scale), so more mail in the week
  never lowers confidence
- signal_ratio = share of the sender's emails carrying unsubscribe or
  promotional signals
- reputation < 1 for content-rich newsletter platforms, where the user may
  actually read what arrives
- engagement falls with the user's positive history with the sender

Scores above the safe threshold are "safe", scores between the review and
safe thresholds are "review", anything lower is not suggested.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from mailpilot.config_schema import DigestConfig
    from mailpilot.db.store import SenderStats

Recommendation = Literal["safe", "review", "none"]


@dataclass(frozen=True)
class UnsubscribeAssessment:
    sender_email: str
    confidence: float
    frequency: float
    signal_ratio: float
    reputation: float
    engagement: float
    recommendation: Recommendation


class UnsubscribeClassifier:
    """Scores senders for the weekly digest's unsubscribe suggestions."""

    def __init__(self, config: DigestConfig):
        self._config = config
        self._content_rich = tuple(d.lower() for d in config.content_rich_domains)

    def frequency(self, email_count: int) -> float:
        if email_count <= 0:
            return 0.0
        return 1.0 - math.exp(-email_count / self._config.frequency_scale)

    def reputation(self, domain: str) -> float:
        domain = domain.lower()
        if any(domain == d or domain.endswith("." + d) for d in self._content_rich):
            return self._config.content_rich_reputation
        return 1.0

    @staticmethod
    def engagement(stats: SenderStats | None) -> float:
        """1.0 without history; each positive interaction pulls it toward 0."""
        if stats is None or stats.positive_count == 0:
            return 1.0
        return 1.0 - stats.positive_count / (stats.positive_count + stats.negative_count + 1)

    def assess(
        self,
        sender_email: str,
        domain: str,
        email_count: int,
        signal_count: int,
        stats: SenderStats | None = None,
    ) -> UnsubscribeAssessment:
        frequency = self.frequency(email_count)
        signal_ratio = signal_count / email_count if email_count > 0 else 0.0
        reputation = self.reputation(domain)
        engagement = self.engagement(stats)
        confidence = round(
            (0.5 * frequency + 0.5 * signal_ratio) * reputation * engagement, 4
        )

        if confidence > self._config.safe_threshold:
            recommendation: Recommendation = "safe"
        elif confidence >= self._config.review_threshold:
            recommendation = "review"
        else:
            recommendation = "none"

        return UnsubscribeAssessment(
            sender_email=sender_email,
            confidence=confidence,
            frequency=round(frequency, 4),
            signal_ratio=round(signal_ratio, 4),
            reputation=reputation,
            engagement=round(engagement, 4),
            recommendation=recommendation,
        )
