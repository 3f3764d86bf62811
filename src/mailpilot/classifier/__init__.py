"""Email scoring and classification components.

This package provides the per-email intelligence:
- Signal extraction (keywords, sender heuristics, content signals)
- Deterministic multi-factor scoring and tiering
- Digest category inference for low-priority mail
- Claude analyzer with forced tool use, retries and model fallback
- Learning feedback loop for patterns and VIP senders
"""

from mailpilot.classifier.ai_analyzer import AIAnalyzer
from mailpilot.classifier.categories import (
    CATEGORIES,
    CategoryClassifier,
    KeywordCategoryClassifier,
)
from mailpilot.classifier.pattern_learner import ACTION_SIGNALS, FeedbackLoop, FeedbackResult
from mailpilot.classifier.prompts import ANALYZE_EMAIL_TOOL, build_user_message
from mailpilot.classifier.scoring import ScoringEngine, ScoringProfile, determine_tier
from mailpilot.classifier.signals import (
    EmailSignals,
    SignalExtractor,
    extract_domain,
    normalize_sender,
)

__all__ = [
    # AI analysis
    "AIAnalyzer",
    "ANALYZE_EMAIL_TOOL",
    "build_user_message",
    # Categories
    "CATEGORIES",
    "CategoryClassifier",
    "KeywordCategoryClassifier",
    # Feedback loop
    "ACTION_SIGNALS",
    "FeedbackLoop",
    "FeedbackResult",
    # Scoring
    "ScoringEngine",
    "ScoringProfile",
    "determine_tier",
    # Signals
    "EmailSignals",
    "SignalExtractor",
    "extract_domain",
    "normalize_sender",
]
