"""Tests for the sender-rule gatekeeper.

Covers pattern matching (domain, substring, wildcard form, empty patterns),
first-match ordering, keyword overrides, hit counting and the rule audit.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import seed_rule

from inbox_triage.classifier.envelope import MessageEnvelope, extract_domain, normalize_sender
from inbox_triage.classifier.gatekeeper import (
    Gatekeeper,
    SenderRuleMatcher,
    audit_rules,
    create_rule_for_domain,
    detect_rule_overlaps,
    detect_stale_rules,
    domain_pattern,
    normalize_pattern,
    pattern_matches,
)
from inbox_triage.classifier.taxonomy import Category
from inbox_triage.core.errors import DatabaseError
from inbox_triage.db.store import DatabaseStore, SenderRule

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def _make_rule(
    pattern: str,
    classification: str = "automated_notification",
    requires_reply: bool = False,
    rule_id: int | None = None,
    **kwargs,
) -> SenderRule:
    return SenderRule(
        tenant_id="acme",
        pattern=pattern,
        default_classification=classification,
        default_requires_reply=requires_reply,
        id=rule_id,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Tests: Sender normalization
# ---------------------------------------------------------------------------


def test_normalize_sender_strips_display_name():
    assert normalize_sender("Jane Doe <Jane@Customer.COM>") == "jane@customer.com"


def test_normalize_sender_empty():
    assert normalize_sender(None) == ""
    assert normalize_sender("   ") == ""


def test_extract_domain():
    assert extract_domain("billing@stripe.com") == "stripe.com"
    assert extract_domain("no-at-sign") == ""


# ---------------------------------------------------------------------------
# Tests: Pattern matching
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "pattern,sender,expected",
    [
        ("@stripe.com", "billing@stripe.com", True),
        ("@stripe.com", "billing@mail.stripe.com", False),
        ("*@stripe.com", "billing@stripe.com", True),
        ("billing", "billing@stripe.com", True),
        ("stripe", "billing@stripe.com", True),
        ("@Stripe.com", "BILLING@STRIPE.COM", True),
        ("noreply", "jane@customer.com", False),
    ],
)
def test_pattern_matches(pattern: str, sender: str, expected: bool):
    address = normalize_sender(sender)
    assert pattern_matches(pattern, address, extract_domain(address)) is expected


@pytest.mark.parametrize("pattern", ["", "   ", "@", "*@", None])
def test_empty_patterns_never_match(pattern):
    assert normalize_pattern(pattern) is None
    assert pattern_matches(pattern, "anyone@anywhere.com", "anywhere.com") is False


def test_first_match_wins_in_insertion_order():
    rules = [
        _make_rule("billing", "supplier_invoice", rule_id=1),
        _make_rule("@stripe.com", "receipt_confirmation", rule_id=2),
    ]
    match = SenderRuleMatcher().match("billing@stripe.com", rules)
    assert match is not None
    assert match.rule.id == 1
    assert match.classification == Category.SUPPLIER_INVOICE


def test_inactive_rules_are_skipped():
    rules = [
        _make_rule("@stripe.com", "supplier_invoice", rule_id=1, is_active=False),
        _make_rule("@stripe.com", "receipt_confirmation", rule_id=2),
    ]
    match = SenderRuleMatcher().match("billing@stripe.com", rules)
    assert match.rule.id == 2


def test_rule_with_unknown_classification_is_skipped():
    rules = [
        _make_rule("@stripe.com", "not_a_category", rule_id=1),
        _make_rule("stripe", "receipt_confirmation", rule_id=2),
    ]
    match = SenderRuleMatcher().match("billing@stripe.com", rules)
    assert match.rule.id == 2


def test_no_sender_never_matches():
    assert SenderRuleMatcher().match("", [_make_rule("@stripe.com")]) is None


def test_keyword_override_changes_classification_and_reply():
    rule = _make_rule(
        "@shop.com",
        "automated_notification",
        override_keywords=["refund"],
        override_classification="customer_complaint",
        override_requires_reply=True,
    )
    matcher = SenderRuleMatcher()

    plain = matcher.match("orders@shop.com", [rule], subject="Your order shipped")
    override = matcher.match("orders@shop.com", [rule], subject="Re: REFUND request")

    assert plain.classification == Category.AUTOMATED_NOTIFICATION
    assert plain.requires_reply is False
    assert override.classification == Category.CUSTOMER_COMPLAINT
    assert override.requires_reply is True
    assert override.keyword == "refund"


def test_matching_is_deterministic():
    rules = [
        _make_rule("billing", "supplier_invoice", rule_id=1),
        _make_rule("@stripe.com", "receipt_confirmation", rule_id=2),
        _make_rule("stripe", "payment_confirmation", rule_id=3),
    ]
    matcher = SenderRuleMatcher()
    results = {matcher.match("billing@stripe.com", rules).rule.id for _ in range(20)}
    assert results == {1}


# ---------------------------------------------------------------------------
# Tests: Store-backed gatekeeper
# ---------------------------------------------------------------------------


async def test_gatekeeper_loads_rules_and_counts_hits(store: DatabaseStore):
    rule_id = await seed_rule(store, "@stripe.com", "receipt_confirmation")
    gatekeeper = Gatekeeper(store)

    match = await gatekeeper.check("acme", MessageEnvelope(sender="billing@stripe.com"))

    assert match is not None
    assert match.rule.id == rule_id
    rules = await store.get_sender_rules("acme")
    assert rules[0].hit_count == 1


async def test_gatekeeper_isolates_tenants(store: DatabaseStore):
    await seed_rule(store, "@stripe.com", "receipt_confirmation", tenant_id="globex")
    match = await Gatekeeper(store).check("acme", MessageEnvelope(sender="billing@stripe.com"))
    assert match is None


async def test_gatekeeper_uses_preloaded_rules():
    store = MagicMock()
    store.get_sender_rules = AsyncMock()
    store.increment_rule_hits = AsyncMock()
    rules = [_make_rule("@stripe.com", "receipt_confirmation", rule_id=7)]

    match = await Gatekeeper(store).check(
        "acme", MessageEnvelope(sender="billing@stripe.com"), rules=rules
    )

    assert match.rule.id == 7
    store.get_sender_rules.assert_not_called()
    store.increment_rule_hits.assert_awaited_once_with(7)


async def test_gatekeeper_can_skip_hit_counting():
    store = MagicMock()
    store.increment_rule_hits = AsyncMock()
    rules = [_make_rule("@stripe.com", "receipt_confirmation", rule_id=7)]

    match = await Gatekeeper(store).check(
        "acme", MessageEnvelope(sender="billing@stripe.com"), rules=rules, record_hits=False
    )

    assert match.rule.id == 7
    store.increment_rule_hits.assert_not_called()


async def test_hit_count_failure_does_not_block_match():
    store = MagicMock()
    store.increment_rule_hits = AsyncMock(side_effect=DatabaseError("locked"))
    rules = [_make_rule("@stripe.com", "receipt_confirmation", rule_id=7)]

    match = await Gatekeeper(store).check(
        "acme", MessageEnvelope(sender="billing@stripe.com"), rules=rules
    )

    assert match is not None


# ---------------------------------------------------------------------------
# Tests: Rule helpers and audit
# ---------------------------------------------------------------------------


def test_domain_pattern_normalizes():
    assert domain_pattern(" NewVendor.com ") == "@newvendor.com"
    assert domain_pattern("@newvendor.com") == "@newvendor.com"


def test_create_rule_for_domain():
    rule = create_rule_for_domain(
        "acme", "newvendor.com", Category.CUSTOMER_INQUIRY, True, created_by="learner"
    )
    assert rule.pattern == "@newvendor.com"
    assert rule.default_classification == "customer_inquiry"
    assert rule.default_requires_reply is True
    assert rule.created_by == "learner"


def test_overlap_detection_reports_shadowed_rules():
    rules = [
        _make_rule("stripe", "receipt_confirmation", rule_id=1),
        _make_rule("@stripe.com", "supplier_invoice", rule_id=2),
        _make_rule("@other.com", "spam_phishing", rule_id=3),
    ]
    overlaps = detect_rule_overlaps(rules)

    assert len(overlaps) == 1
    assert overlaps[0].earlier_pattern == "stripe"
    assert overlaps[0].later_pattern == "@stripe.com"
    assert overlaps[0].conflicting is True


def test_distinct_domain_rules_do_not_overlap():
    rules = [
        _make_rule("@stripe.com", rule_id=1),
        _make_rule("@mail.stripe.com", rule_id=2),
    ]
    assert detect_rule_overlaps(rules) == []


def test_stale_rules():
    now = datetime.now(UTC)
    rules = [
        _make_rule("@old.com", created_at=now - timedelta(days=60)),
        _make_rule("@used.com", created_at=now - timedelta(days=60), hit_count=3),
        _make_rule("@new.com", created_at=now - timedelta(days=2)),
    ]
    assert detect_stale_rules(rules, threshold_days=30, now=now) == ["@old.com"]


def test_audit_rules_flags_malformed():
    rules = [
        _make_rule("@ok.com", "receipt_confirmation"),
        _make_rule("@", "receipt_confirmation"),
        _make_rule("@bad.com", "not_a_category"),
        _make_rule("@off.com", "spam_phishing", is_active=False),
    ]
    report = audit_rules(rules)

    assert report.total_rules == 4
    assert report.active_rules == 3
    assert set(report.malformed_rules) == {"@", "@bad.com"}
