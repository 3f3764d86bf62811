"""Coarse category inference for low-priority mail.

The weekly digest groups low-tier email into four buckets. Inference is a
pluggable strategy: anything with a `classify(email) -> str` method can be
handed to the digest builder. The default is a keyword and sender-domain
heuristic, checked in bucket order, with `automated` as the fallback.

Usage:
    from mailpilot.classifier.categories import KeywordCategoryClassifier

    classifier = KeywordCategoryClassifier()
    category = classifier.classify(email)  # 'marketing', 'newsletters', ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from mailpilot.classifier.signals import (
    compile_keywords,
    extract_domain,
    find_keywords,
    normalize_sender,
)

if TYPE_CHECKING:
    from mailpilot.db.store import EmailRecord

CATEGORIES = ("marketing", "newsletters", "social", "automated")
DEFAULT_CATEGORY = "automated"

DEFAULT_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "marketing": ("sale", "deal", "offer", "unsubscribe", "promotion", "% off", "coupon"),
    "newsletters": ("newsletter", "digest", "this week in", "issue #", "edition"),
    "social": ("followed", "liked", "mentioned", "commented", "tagged", "connection request"),
    "automated": ("receipt", "invoice", "alert", "system", "notification", "verify", "password"),
}

DEFAULT_CATEGORY_DOMAINS: dict[str, tuple[str, ...]] = {
    "newsletters": ("substack.com", "beehiiv.com", "buttondown.email", "ghost.io", "medium.com"),
    "social": (
        "facebookmail.com",
        "linkedin.com",
        "twitter.com",
        "x.com",
        "instagram.com",
        "reddit.com",
    ),
}


class CategoryClassifier(Protocol):
    """Strategy interface for digest category inference."""

    def classify(self, email: EmailRecord) -> str: ...


class KeywordCategoryClassifier:
    """Keyword and sender-domain heuristic.

    Sender domain wins over keywords, so a Substack post that mentions a
    "deal" is still a newsletter.
    """

    def __init__(
        self,
        keywords: dict[str, tuple[str, ...]] | None = None,
        domains: dict[str, tuple[str, ...]] | None = None,
    ):
        keywords = keywords or DEFAULT_CATEGORY_KEYWORDS
        self._patterns = {
            category: compile_keywords(tuple(keywords.get(category, ())))
            for category in CATEGORIES
        }
        self._domains = domains or DEFAULT_CATEGORY_DOMAINS

    def classify(self, email: EmailRecord) -> str:
        domain = extract_domain(normalize_sender(email.sender_email))
        for category in CATEGORIES:
            for known in self._domains.get(category, ()):
                if domain == known or domain.endswith("." + known):
                    return category

        text = f"{email.subject}\n{email.snippet}"
        for category in CATEGORIES:
            if find_keywords(self._patterns[category], text):
                return category
        return DEFAULT_CATEGORY
