"""Tests for sender-rule learning from corrections and behavior stats, and seeding."""

import pytest
from factories import seed_rule

from inbox_triage.classifier.patterns import KNOWN_SENDER_RULES
from inbox_triage.classifier.taxonomy import Category
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import RuleCandidateNotFound
from inbox_triage.db.store import Correction, DatabaseStore, SenderBehaviorStat
from inbox_triage.learning.rule_learner import (
    MAX_SUGGESTIONS,
    RuleCandidate,
    RuleLearner,
    suggest_rule_for_stat,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _record_corrections(
    store: DatabaseStore,
    domain: str,
    count: int,
    original: str | None = "automated_notification",
    new: str = "customer_inquiry",
    tenant_id: str = "acme",
) -> None:
    for i in range(count):
        await store.record_correction(
            Correction(
                tenant_id=tenant_id,
                sender_domain=domain,
                original_classification=original,
                new_classification=new,
                conversation_id=f"{domain}-{i}",
            )
        )


def _make_stat(
    domain: str, total: int, replied: int, tenant_id: str = "acme"
) -> SenderBehaviorStat:
    return SenderBehaviorStat(
        tenant_id=tenant_id,
        sender_domain=domain,
        total_messages=total,
        replied_count=replied,
        reply_rate=replied / total,
        avg_response_time_minutes=None,
        vip_score=0.0,
        suggested_bucket=None,
    )


@pytest.fixture
def learner(store: DatabaseStore, sample_config: AppConfig) -> RuleLearner:
    return RuleLearner(store, sample_config)


# ---------------------------------------------------------------------------
# Tests: Correction candidates
# ---------------------------------------------------------------------------


async def test_candidate_at_threshold(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 2)

    candidates = await learner.find_candidates("acme")

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.pattern == "@newvendor.com"
    assert candidate.classification == Category.CUSTOMER_INQUIRY
    assert candidate.requires_reply is True
    assert candidate.evidence == 2
    assert candidate.source == "corrections"


async def test_no_candidate_below_threshold(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 1)
    assert await learner.find_candidates("acme") == []


async def test_tenant_threshold_override(store: DatabaseStore, sample_config_dict: dict):
    """newvendor.com corrected 3 times with a threshold of 3 yields one candidate."""
    sample_config_dict["tenants"] = {"acme": {"learning": {"repetition_threshold": 3}}}
    learner = RuleLearner(store, AppConfig(**sample_config_dict))

    await _record_corrections(store, "newvendor.com", 2)
    assert await learner.find_candidates("acme") == []

    await _record_corrections(store, "newvendor.com", 1)
    candidates = await learner.find_candidates("acme")
    assert [c.pattern for c in candidates] == ["@newvendor.com"]


async def test_mixed_corrections_do_not_combine(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 1, new="customer_inquiry")
    await _record_corrections(store, "newvendor.com", 1, new="spam_phishing")
    assert await learner.find_candidates("acme") == []


async def test_corrections_from_different_originals_pool(
    store: DatabaseStore, sample_config_dict: dict
):
    sample_config_dict["learning"]["repetition_threshold"] = 3
    learner = RuleLearner(store, AppConfig(**sample_config_dict))
    await _record_corrections(store, "newvendor.com", 2, original="automated_notification")
    await _record_corrections(store, "newvendor.com", 1, original=None)

    candidates = await learner.find_candidates("acme")

    assert len(candidates) == 1
    assert candidates[0].classification == Category.CUSTOMER_INQUIRY
    assert candidates[0].evidence == 3
    assert candidates[0].original_classification == "automated_notification"
    assert "automated_notification, untriaged" in candidates[0].reason


async def test_one_candidate_per_domain(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 4, new="spam_phishing")
    await _record_corrections(store, "newvendor.com", 2, new="customer_inquiry")

    candidates = await learner.find_candidates("acme")

    assert len(candidates) == 1
    assert candidates[0].classification == Category.SPAM_PHISHING


async def test_existing_pattern_not_proposed(learner: RuleLearner, store: DatabaseStore):
    rule_id = await seed_rule(store, "@newvendor.com", "automated_notification")
    await store.set_rule_active(rule_id, False)
    await _record_corrections(store, "newvendor.com", 3)

    assert await learner.find_candidates("acme") == []


async def test_candidates_are_tenant_scoped(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 3, tenant_id="globex")
    assert await learner.find_candidates("acme") == []


# ---------------------------------------------------------------------------
# Tests: Accepting candidates
# ---------------------------------------------------------------------------


async def test_accept_candidate_creates_rule(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 2)
    candidate = (await learner.find_candidates("acme"))[0]

    rule_id = await learner.accept_candidate(candidate)

    assert rule_id is not None
    rule = await store.get_rule_by_pattern("acme", "@newvendor.com")
    assert rule.id == rule_id
    assert rule.created_by == "learner"
    logs = await store.get_action_logs(tenant_id="acme")
    assert logs[0].action_type == "sender_rule_created"


async def test_accepting_twice_is_noop(learner: RuleLearner, store: DatabaseStore):
    candidate = RuleCandidate(
        tenant_id="acme",
        sender_domain="newvendor.com",
        classification=Category.CUSTOMER_INQUIRY,
        requires_reply=True,
        source="corrections",
        evidence=3,
    )

    assert await learner.accept_candidate(candidate) is not None
    assert await learner.accept_candidate(candidate) is None
    assert len(await store.get_sender_rules("acme")) == 1


async def test_accept_pattern_accepts_wildcard_form(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 2)

    rule_id = await learner.accept_pattern("acme", "*@NewVendor.com")

    assert rule_id is not None
    assert await learner.find_candidates("acme") == []


async def test_accept_pattern_from_stats(learner: RuleLearner, store: DatabaseStore):
    await store.replace_behavior_stats([_make_stat("alerts.example.com", 10, 0)])

    rule_id = await learner.accept_pattern("acme", "@alerts.example.com")

    rule = await store.get_rule_by_pattern("acme", "@alerts.example.com")
    assert rule.id == rule_id
    assert rule.created_by == "stats"


async def test_accept_unknown_pattern(learner: RuleLearner):
    with pytest.raises(RuleCandidateNotFound):
        await learner.accept_pattern("acme", "@nobody.com")


async def test_auto_apply_creates_all_candidates(learner: RuleLearner, store: DatabaseStore):
    await _record_corrections(store, "newvendor.com", 2)
    await _record_corrections(store, "spammy.biz", 2, original=None, new="spam_phishing")

    created = await learner.auto_apply("acme")

    assert sorted(created) == ["@newvendor.com", "@spammy.biz"]
    assert await learner.auto_apply("acme") == []


# ---------------------------------------------------------------------------
# Tests: Stats suggestions
# ---------------------------------------------------------------------------


def test_never_replied_suggests_automated_notification():
    candidate = suggest_rule_for_stat(_make_stat("alerts.example.com", 10, 0))

    assert candidate.classification == Category.AUTOMATED_NOTIFICATION
    assert candidate.requires_reply is False
    assert candidate.confidence == 0.9
    assert candidate.source == "stats"


def test_rarely_replied_suggests_informational():
    candidate = suggest_rule_for_stat(_make_stat("updates.example.com", 10, 2))
    assert candidate.classification == Category.INFORMATIONAL_ONLY
    assert candidate.confidence == 0.75


def test_always_replied_suggests_customer_inquiry():
    candidate = suggest_rule_for_stat(_make_stat("bigco.com", 10, 10))
    assert candidate.classification == Category.CUSTOMER_INQUIRY
    assert candidate.requires_reply is True
    assert candidate.confidence == 0.85


def test_mixed_behavior_has_no_suggestion():
    assert suggest_rule_for_stat(_make_stat("mixed.com", 10, 5)) is None


@pytest.mark.parametrize(
    "domain,category",
    [
        ("stripe.com", Category.RECEIPT_CONFIRMATION),
        ("uk.indeed.com", Category.RECRUITMENT_HR),
        ("noreply.shop.com", Category.AUTOMATED_NOTIFICATION),
    ],
)
def test_known_domains_override_behavior(domain: str, category: Category):
    candidate = suggest_rule_for_stat(_make_stat(domain, 10, 5))
    assert candidate.classification == category
    assert candidate.requires_reply is False


async def test_suggest_from_stats_filters_and_sorts(learner: RuleLearner, store: DatabaseStore):
    await seed_rule(store, "@bigco.com", "customer_inquiry", requires_reply=True)
    await store.replace_behavior_stats(
        [
            _make_stat("bigco.com", 10, 10),
            _make_stat("few.com", 2, 0),
            _make_stat("updates.example.com", 10, 2),
            _make_stat("stripe.com", 5, 0),
        ]
    )

    suggestions = await learner.suggest_from_stats("acme")

    assert [s.pattern for s in suggestions] == ["@stripe.com", "@updates.example.com"]


async def test_suggestions_are_capped(learner: RuleLearner, store: DatabaseStore):
    await store.replace_behavior_stats(
        [_make_stat(f"alerts{i}.example.com", 10, 0) for i in range(MAX_SUGGESTIONS + 5)]
    )
    assert len(await learner.suggest_from_stats("acme")) == MAX_SUGGESTIONS


# ---------------------------------------------------------------------------
# Tests: Known senders
# ---------------------------------------------------------------------------


async def test_seed_known_rules(learner: RuleLearner, store: DatabaseStore):
    created = await learner.seed_known_rules("acme")

    assert len(created) == len(KNOWN_SENDER_RULES)
    rules = {r.pattern: r for r in await store.get_sender_rules("acme")}
    stripe = rules["@stripe.com"]
    assert stripe.default_classification == "receipt_confirmation"
    assert stripe.default_requires_reply is False
    assert stripe.created_by == "seed"
    assert rules["@indeed.com"].default_classification == "recruitment_hr"

    logs = await store.get_action_logs(tenant_id="acme")
    assert logs[0].action_type == "sender_rules_seeded"


async def test_seeding_keeps_existing_rules(learner: RuleLearner, store: DatabaseStore):
    await seed_rule(store, "@stripe.com", "customer_inquiry", requires_reply=True)

    created = await learner.seed_known_rules("acme")
    again = await learner.seed_known_rules("acme")

    assert "@stripe.com" not in created
    assert again == []
    rules = {r.pattern: r for r in await store.get_sender_rules("acme")}
    assert rules["@stripe.com"].default_classification == "customer_inquiry"
