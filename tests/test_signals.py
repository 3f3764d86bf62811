"""Tests for keyword signal extraction and digest category inference."""

import pytest

from mailpilot.classifier.categories import KeywordCategoryClassifier
from mailpilot.classifier.signals import (
    SignalExtractor,
    compile_keywords,
    extract_domain,
    find_keywords,
    normalize_sender,
    normalize_subject,
    registrable_domain,
    subject_keywords,
)
from mailpilot.config_schema import ScoringKeywordsConfig


@pytest.fixture
def extractor() -> SignalExtractor:
    return SignalExtractor(ScoringKeywordsConfig())


# ---------------------------------------------------------------------------
# Address and subject helpers
# ---------------------------------------------------------------------------


class TestAddressHelpers:
    def test_normalize_sender(self):
        assert normalize_sender("  News+Weekly@Shop.COM ") == "news@shop.com"
        assert normalize_sender("plain@example.com") == "plain@example.com"
        assert normalize_sender("") == ""

    def test_extract_domain(self):
        assert extract_domain("a@Mail.Example.com") == "mail.example.com"
        assert extract_domain("no-at-sign") == ""

    @pytest.mark.parametrize(
        "domain,expected",
        [
            ("example.com", "example.com"),
            ("news.example.com", "example.com"),
            ("mail.example.co.uk", "example.co.uk"),
            ("a.b.c.example.org", "example.org"),
        ],
    )
    def test_registrable_domain(self, domain, expected):
        assert registrable_domain(domain) == expected

    def test_normalize_subject_strips_chained_prefixes(self):
        assert normalize_subject("Re: FW: re:  Budget Review") == "budget review"
        assert normalize_subject("") == ""

    def test_subject_keywords(self):
        assert subject_keywords("Re: Quarterly planning notes for this week", 3) == [
            "quarterly",
            "planning",
            "notes",
        ]
        assert subject_keywords("Weekly update", 3) == []
        assert subject_keywords("Quarterly planning", 0) == []


class TestKeywordMatching:
    def test_symbol_edges_match_inside_words(self):
        pattern = compile_keywords(("% off",))
        assert find_keywords(pattern, "Today only: 50% OFF everything") == ["% off"]

    def test_word_edges_respect_boundaries(self):
        pattern = compile_keywords(("sale",))
        assert find_keywords(pattern, "Wholesale pricing attached") == []
        assert find_keywords(pattern, "Big SALE, sale now on") == ["sale"]

    def test_empty_keyword_list(self):
        assert compile_keywords(("", "  ")) is None
        assert find_keywords(None, "anything") == []


# ---------------------------------------------------------------------------
# Signal extraction
# ---------------------------------------------------------------------------


class TestSignalExtractor:
    def test_urgency_and_request(self, extractor, make_email):
        signals = extractor.extract(
            make_email(
                subject="URGENT: contract deadline",
                snippet="Can you sign off on the contract before Friday?",
            )
        )

        assert signals.urgency == ("urgent", "deadline")
        assert signals.has_question is True
        assert signals.has_action_request is True
        assert signals.is_promotional is False

    def test_marketing_sources(self, extractor, make_email):
        signals = extractor.extract(
            make_email(
                sender_email="deals@news.mailchimp.com",
                subject="Flash sale",
                snippet="Ends tonight.",
                labels=("CATEGORY_PROMOTIONS",),
            )
        )

        assert signals.marketing == (
            "flash sale",
            "sender:deals",
            "domain:news.mailchimp.com",
            "label:CATEGORY_PROMOTIONS",
        )
        assert signals.is_short_body is True

    def test_plain_email_has_no_signals(self, extractor, make_email):
        signals = extractor.extract(make_email())

        assert signals.urgency == ()
        assert signals.marketing == ()
        assert signals.has_question is False
        assert signals.is_short_body is False

    def test_content_signal_names(self, extractor, make_email):
        email = make_email(
            subject="Please review the attached deck?",
            has_attachments=True,
        )
        assert extractor.content_signals(email) == ["question", "action_request", "attachment"]


# ---------------------------------------------------------------------------
# Category inference
# ---------------------------------------------------------------------------


class TestCategoryClassifier:
    @pytest.mark.parametrize(
        "sender,subject,expected",
        [
            ("writer@letters.substack.com", "Our best deal yet", "newsletters"),
            ("notifications@linkedin.com", "You have a new message", "social"),
            ("deals@shop.com", "Weekly newsletter: 20% off", "marketing"),
            ("team@tools.io", "The Friday digest", "newsletters"),
            ("someone@site.com", "Alice commented on your post", "social"),
            ("billing@vendor.com", "Your receipt", "automated"),
            ("someone@example.com", "Hello there", "automated"),
        ],
    )
    def test_classify(self, make_email, sender, subject, expected):
        classifier = KeywordCategoryClassifier()
        email = make_email(sender_email=sender, subject=subject, snippet="")
        assert classifier.classify(email) == expected

    def test_custom_keywords(self, make_email):
        classifier = KeywordCategoryClassifier(keywords={"social": ("meetup",)}, domains={})
        email = make_email(subject="Python meetup tonight", snippet="")
        assert classifier.classify(email) == "social"
