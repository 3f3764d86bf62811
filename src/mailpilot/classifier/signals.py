"""Keyword and content signal extraction for rule-based scoring.

Everything here is local text inspection: no I/O and no AI. The scoring
engine, the feedback loop and the digest builder all read emails through
the same SignalExtractor so that a "marketing" email means the same thing
to each of them.

CRITICAL SECURITY NOTE:
All regex operations use the `regex` library with a timeout because the
subject and snippet are attacker-controlled text.

Usage:
    from mailpilot.classifier.signals import SignalExtractor, normalize_sender

    extractor = SignalExtractor(config.scoring)
    signals = extractor.extract(email)
    if signals.urgency:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING

import regex

from mailpilot.core.logging import get_logger

if TYPE_CHECKING:
    from mailpilot.config_schema import ScoringKeywordsConfig
    from mailpilot.db.store import EmailRecord

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Bodies shorter than this count as "very short" for content analysis
SHORT_BODY_CHARS = 40

SUBJECT_PREFIX_PATTERN = regex.compile(r"^\s*(re|fw|fwd)\s*:\s*", regex.IGNORECASE)
WORD_PATTERN = regex.compile(r"[a-z][a-z0-9']{3,}")
ACTION_REQUEST_PATTERN = regex.compile(
    r"(?<!\w)(please|could you|can you|would you|let me know|need you to|kindly|"
    r"confirm|approve|sign off|respond|reply by|rsvp|your input|your approval)(?!\w)",
    regex.IGNORECASE,
)

SUBJECT_STOPWORDS = frozenset(
    {
        "about",
        "after",
        "again",
        "from",
        "have",
        "here",
        "just",
        "more",
        "only",
        "that",
        "their",
        "there",
        "this",
        "week",
        "what",
        "when",
        "with",
        "your",
        "you're",
        "will",
        "weekly",
        "update",
        "today",
    }
)


def normalize_sender(address: str) -> str:
    """Lowercase an address and strip any +tag from the local part."""
    address = (address or "").strip().lower()
    if "@" not in address:
        return address
    local, domain = address.rsplit("@", 1)
    local = local.split("+", 1)[0]
    return f"{local}@{domain}"


def extract_domain(address: str) -> str:
    """Lowercase domain of an address, or empty string if there is none."""
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().lower()


def registrable_domain(domain: str) -> str:
    """Collapse mail subdomains (news.example.com -> example.com).

    Uses the last two labels, or three when the second-level label is short
    (example.co.uk). Good enough for grouping senders; not a PSL lookup.
    """
    parts = [p for p in domain.lower().split(".") if p]
    if len(parts) <= 2:
        return ".".join(parts)
    if len(parts[-2]) <= 3 and len(parts[-1]) == 2:
        return ".".join(parts[-3:])
    return ".".join(parts[-2:])


@lru_cache(maxsize=64)
def compile_keywords(keywords: tuple[str, ...]) -> regex.Pattern | None:
    """Compile a keyword list into one case-insensitive alternation.

    Word boundaries are only enforced on keyword edges that are word
    characters, so "% off" still matches "50% off".
    """
    alternatives = []
    cleaned = {k.strip().lower() for k in keywords if k.strip()}
    for keyword in sorted(cleaned, key=len, reverse=True):
        prefix = r"(?<!\w)" if keyword[0].isalnum() else ""
        suffix = r"(?!\w)" if keyword[-1].isalnum() else ""
        alternatives.append(f"{prefix}{regex.escape(keyword)}{suffix}")
    if not alternatives:
        return None
    return regex.compile("|".join(alternatives), regex.IGNORECASE)


def find_keywords(pattern: regex.Pattern | None, text: str) -> list[str]:
    """Distinct lowercase keyword matches in order of first appearance."""
    if pattern is None or not text:
        return []
    try:
        matches = pattern.findall(text, timeout=REGEX_TIMEOUT)
    except (regex.error, TimeoutError) as e:
        logger.warning("Keyword scan aborted", error=str(e), text_length=len(text))
        return []
    return list(dict.fromkeys(m.lower() for m in matches))


def normalize_subject(subject: str) -> str:
    """Strip chained Re:/Fwd: prefixes and lowercase."""
    if not subject:
        return ""
    normalized = subject
    try:
        while True:
            stripped = SUBJECT_PREFIX_PATTERN.sub("", normalized, timeout=REGEX_TIMEOUT)
            if stripped == normalized:
                break
            normalized = stripped
    except (regex.error, TimeoutError):
        pass
    return normalized.strip().lower()


@dataclass(frozen=True)
class EmailSignals:
    """Signals detected in one email.

    Attributes:
        urgency: Distinct urgency keywords found in subject or snippet
        marketing: Distinct marketing signals (keywords, sender prefix,
            bulk-mail domain, promotional label)
        has_question: A question mark appears in subject or snippet
        has_action_request: Request phrasing ("please", "can you", ...)
        is_short_body: Snippet shorter than SHORT_BODY_CHARS
    """

    urgency: tuple[str, ...] = ()
    marketing: tuple[str, ...] = ()
    has_question: bool = False
    has_action_request: bool = False
    is_short_body: bool = False

    @property
    def is_promotional(self) -> bool:
        return bool(self.marketing)


class SignalExtractor:
    """Extracts scoring signals using the configured keyword sets."""

    def __init__(self, keywords: ScoringKeywordsConfig):
        self._urgent = compile_keywords(tuple(keywords.urgent_keywords))
        self._marketing = compile_keywords(tuple(keywords.marketing_keywords))
        self._sender_prefixes = frozenset(p.lower() for p in keywords.marketing_sender_prefixes)
        self._marketing_domains = tuple(d.lower() for d in keywords.marketing_domains)
        self._promo_labels = frozenset(label.upper() for label in keywords.promotional_labels)

    def extract(self, email: EmailRecord) -> EmailSignals:
        text = f"{email.subject}\n{email.snippet}"
        snippet = (email.snippet or "").strip()
        return EmailSignals(
            urgency=tuple(find_keywords(self._urgent, text)),
            marketing=tuple(self._marketing_signals(email, text)),
            has_question="?" in text,
            has_action_request=bool(find_keywords(ACTION_REQUEST_PATTERN, text)),
            is_short_body=len(snippet) < SHORT_BODY_CHARS,
        )

    def _marketing_signals(self, email: EmailRecord, text: str) -> list[str]:
        signals = find_keywords(self._marketing, text)

        sender = normalize_sender(email.sender_email)
        local = sender.split("@", 1)[0]
        if local in self._sender_prefixes or local.startswith(("noreply-promo", "promo")):
            signals.append(f"sender:{local}")

        domain = extract_domain(sender)
        if any(domain == d or domain.endswith("." + d) for d in self._marketing_domains):
            signals.append(f"domain:{domain}")

        for label in email.labels:
            if label.upper() in self._promo_labels:
                signals.append(f"label:{label.upper()}")

        return signals

    def content_signals(self, email: EmailRecord) -> list[str]:
        """Coarse content-pattern names used by the feedback loop."""
        signals = self.extract(email)
        names = []
        if signals.urgency:
            names.append("urgent_language")
        if signals.is_promotional:
            names.append("marketing_language")
        if signals.has_question:
            names.append("question")
        if signals.has_action_request:
            names.append("action_request")
        if email.has_attachments:
            names.append("attachment")
        return names


def subject_keywords(subject: str, limit: int) -> list[str]:
    """Distinctive subject words for subject-pattern learning."""
    if limit <= 0:
        return []
    normalized = normalize_subject(subject)
    try:
        words = WORD_PATTERN.findall(normalized, timeout=REGEX_TIMEOUT)
    except (regex.error, TimeoutError):
        return []
    keywords = [w for w in dict.fromkeys(words) if w not in SUBJECT_STOPWORDS and not w.isdigit()]
    return keywords[:limit]
