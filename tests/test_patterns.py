"""Tests for the built-in triage patterns.

Covers each pattern family, priority between families, the hiring switch,
sender history thresholds and regex timeouts.
"""

from unittest.mock import MagicMock

import pytest

from inbox_triage.classifier import patterns
from inbox_triage.classifier.envelope import MessageEnvelope
from inbox_triage.classifier.gatekeeper import normalize_pattern
from inbox_triage.classifier.patterns import (
    KNOWN_SENDER_RULES,
    BuiltinPatternMatcher,
)
from inbox_triage.classifier.taxonomy import Bucket, Category
from inbox_triage.config_schema import BusinessContextConfig
from inbox_triage.db.store import SenderBehaviorStat

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def _make_envelope(
    sender: str = "jane@customer.com",
    subject: str = "Question about my order",
    body: str = "Hi, when will my order ship?",
) -> MessageEnvelope:
    return MessageEnvelope(sender=sender, subject=subject, body=body)


def _make_stat(total: int, replied: int, domain: str = "customer.com") -> SenderBehaviorStat:
    return SenderBehaviorStat(
        tenant_id="acme",
        sender_domain=domain,
        total_messages=total,
        replied_count=replied,
        reply_rate=replied / total,
        avg_response_time_minutes=None,
        vip_score=0.0,
    )


@pytest.fixture
def matcher() -> BuiltinPatternMatcher:
    return BuiltinPatternMatcher()


# ---------------------------------------------------------------------------
# Tests: Automated mail
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "sender",
    [
        "noreply@shop.example",
        "No-Reply <no-reply@shop.example>",
        "MAILER-DAEMON@mx.example.net",
        "receipts@stripe.com",
        "invoices@mail.stripe.com",
        "pkginfo@ups.com",
        "alerts@dash.cloudflare.com",
    ],
)
def test_automated_senders(matcher: BuiltinPatternMatcher, sender: str):
    match = matcher.match(_make_envelope(sender=sender))

    assert match.rule_type == "automated_sender"
    assert match.bucket == Bucket.AUTO_HANDLED
    assert match.requires_reply is False
    assert match.conclusive is True


def test_person_at_payment_provider_is_not_automated(matcher: BuiltinPatternMatcher):
    assert matcher.match(_make_envelope(sender="billing@stripe.com")) is None


@pytest.mark.parametrize(
    "subject",
    [
        "Receipt for your payment",
        "Payment received - thank you",
        "Your order has shipped",
        "Out for delivery today",
        "Security alert: new sign-in",
        "Password reset requested",
        "Weekly digest for Acme",
        "Invoice paid: INV-2041",
    ],
)
def test_automated_subjects(matcher: BuiltinPatternMatcher, subject: str):
    match = matcher.match(_make_envelope(subject=subject))

    assert match.rule_type == "automated_subject"
    assert match.classification == Category.RECEIPT_CONFIRMATION
    assert match.conclusive is True


def test_subject_patterns_are_anchored(matcher: BuiltinPatternMatcher):
    assert matcher.match(_make_envelope(subject="Question about the receipt for my order")) is None


def test_newsletter_footer(matcher: BuiltinPatternMatcher):
    match = matcher.match(
        _make_envelope(
            sender="hello@brand.example",
            subject="Spring collection",
            body="New arrivals are here.\n\nUnsubscribe | Manage your preferences",
        )
    )

    assert match.rule_type == "newsletter"
    assert match.classification == Category.MARKETING_NEWSLETTER
    assert match.bucket == Bucket.AUTO_HANDLED


def test_newsletter_subject(matcher: BuiltinPatternMatcher):
    match = matcher.match(_make_envelope(subject="The March Newsletter is here"))
    assert match.rule_type == "newsletter"


# ---------------------------------------------------------------------------
# Tests: Urgent language and quick confirmations
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "body",
    [
        "This is URGENT, please call me back",
        "I want a refund for the broken kettle",
        "I have spoken to my solicitor about this",
        "Terrible service, I will leave a review",
    ],
)
def test_urgent_language_is_a_hint(matcher: BuiltinPatternMatcher, body: str):
    match = matcher.match(_make_envelope(body=body))

    assert match.rule_type == "urgent_language"
    assert match.bucket == Bucket.ACT_NOW
    assert match.requires_reply is True
    assert match.conclusive is False


def test_urgent_language_beats_automated_sender(matcher: BuiltinPatternMatcher):
    match = matcher.match(
        _make_envelope(sender="noreply@shop.example", body="Urgent: legal action pending")
    )
    assert match.rule_type == "urgent_language"


def test_quick_confirmation_subject(matcher: BuiltinPatternMatcher):
    match = matcher.match(_make_envelope(subject="Confirmation: Tuesday 10am booking"))

    assert match.rule_type == "quick_confirmation"
    assert match.bucket == Bucket.QUICK_WIN
    assert match.conclusive is False


# ---------------------------------------------------------------------------
# Tests: Business context
# ---------------------------------------------------------------------------


def test_recruitment_notice(matcher: BuiltinPatternMatcher):
    match = matcher.match(_make_envelope(subject="New applicant for Warehouse Assistant"))

    assert match.rule_type == "recruitment"
    assert match.classification == Category.RECRUITMENT_HR
    assert match.requires_reply is False


def test_recruitment_skipped_while_hiring(matcher: BuiltinPatternMatcher):
    envelope = _make_envelope(subject="New applicant for Warehouse Assistant")

    match = matcher.match(envelope, business=BusinessContextConfig(is_hiring=True))

    assert match is None


def test_vip_domain_is_a_hint(matcher: BuiltinPatternMatcher):
    business = BusinessContextConfig(vip_domains=["Customer.com"])

    match = matcher.match(_make_envelope(), business=business)

    assert match.rule_type == "vip_domain"
    assert match.bucket == Bucket.ACT_NOW
    assert match.conclusive is False


# ---------------------------------------------------------------------------
# Tests: Sender history
# ---------------------------------------------------------------------------


def test_ignored_sender_is_auto_handled(matcher: BuiltinPatternMatcher):
    match = matcher.match(_make_envelope(), stat=_make_stat(total=10, replied=1))

    assert match.rule_type == "history_ignored"
    assert match.bucket == Bucket.AUTO_HANDLED
    assert match.conclusive is True
    assert "1 of 10" in match.reason


def test_engaged_sender_is_escalated(matcher: BuiltinPatternMatcher):
    match = matcher.match(_make_envelope(), stat=_make_stat(total=5, replied=5))

    assert match.rule_type == "history_vip"
    assert match.bucket == Bucket.ACT_NOW
    assert match.conclusive is False


@pytest.mark.parametrize("total,replied", [(2, 0), (10, 5)])
def test_sender_history_without_signal(matcher: BuiltinPatternMatcher, total: int, replied: int):
    assert matcher.match(_make_envelope(), stat=_make_stat(total, replied)) is None


def test_content_patterns_beat_sender_history(matcher: BuiltinPatternMatcher):
    match = matcher.match(
        _make_envelope(body="I need to cancel today"), stat=_make_stat(total=10, replied=0)
    )
    assert match.rule_type == "urgent_language"


# ---------------------------------------------------------------------------
# Tests: Robustness
# ---------------------------------------------------------------------------


def test_plain_message_matches_nothing(matcher: BuiltinPatternMatcher):
    assert matcher.match(_make_envelope()) is None
    assert matcher.match(MessageEnvelope(sender="")) is None


def test_timed_out_pattern_counts_as_no_match(
    matcher: BuiltinPatternMatcher, monkeypatch: pytest.MonkeyPatch
):
    slow = MagicMock()
    slow.pattern = r"(a+)+$"
    slow.search.side_effect = TimeoutError
    monkeypatch.setattr(patterns, "ACT_NOW_BODY_PATTERNS", [slow])

    assert matcher.match(_make_envelope(body="aaaaaaaaaaaaaaaaaaaaaaaaaaaa!")) is None
    slow.search.assert_called_once()


def test_known_sender_rules_are_normalized():
    for pattern, category, reason in KNOWN_SENDER_RULES:
        assert normalize_pattern(pattern) == pattern
        assert isinstance(category, Category)
        assert reason
