"""Tests for batch retriage.

Covers paging, idempotence, dry-run and rules-only modes, built-in patterns,
limit clamping, rate limiting, cancellation, per-item failures and the
audit trail.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import (
    BASE_TIME,
    make_stored_decision,
    seed_behavior_stat,
    seed_conversation,
    seed_rule,
)
from rich.console import Console

from inbox_triage.classifier.claude_classifier import ClassificationResult
from inbox_triage.classifier.taxonomy import Category
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import PersistenceWriteFailed, RateLimitExceeded
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.batch_retriage import BatchRetriageProcessor, print_retriage_report

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_classifier() -> MagicMock:
    classifier = MagicMock()
    classifier.classify_or_default = AsyncMock(
        return_value=ClassificationResult(
            category=Category.CUSTOMER_INQUIRY,
            requires_reply=True,
            confidence=0.92,
            why_this_needs_you="Customer question",
        )
    )
    return classifier


@pytest.fixture
def processor(
    store: DatabaseStore, sample_config: AppConfig, mock_classifier: MagicMock
) -> BatchRetriageProcessor:
    return BatchRetriageProcessor(store, sample_config, classifier=mock_classifier)


async def _seed_page(store: DatabaseStore, count: int, **kwargs) -> None:
    for i in range(count):
        await seed_conversation(
            store,
            conversation_id=f"conv-{i}",
            created_at=BASE_TIME + timedelta(minutes=i),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Tests: Core run
# ---------------------------------------------------------------------------


async def test_run_writes_changed_decisions(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 3)

    summary = await processor.run("acme")

    assert summary.processed == 3
    assert summary.changed == 3
    assert summary.applied == 3
    assert {r.id for r in summary.results} == {"conv-0", "conv-1", "conv-2"}
    stored = await store.get_conversation("conv-1")
    assert stored.decision.decision_bucket == "quick_win"


async def test_second_run_changes_nothing(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 3)

    await processor.run("acme")
    second = await processor.run("acme")

    assert second.processed == 3
    assert second.changed == 0
    assert second.applied == 0


async def test_unchanged_decision_is_not_rewritten(
    processor: BatchRetriageProcessor, store: DatabaseStore, monkeypatch
):
    await seed_conversation(store, decision=make_stored_decision(confidence=0.7))
    write = AsyncMock()
    monkeypatch.setattr(store, "update_triage_decision", write)

    summary = await processor.run("acme")

    assert summary.changed == 0
    write.assert_not_called()


async def test_dry_run_reports_without_writing(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 2)

    summary = await processor.run("acme", dry_run=True)

    assert summary.changed == 2
    assert summary.applied == 0
    assert (await store.get_conversation("conv-0")).decision is None
    assert await store.get_action_logs(tenant_id="acme") == []


async def test_page_uses_offset_newest_first(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 5)

    summary = await processor.run("acme", limit=2, offset=1, dry_run=True)

    assert [r.id for r in summary.results] == ["conv-3", "conv-2"]


async def test_human_decisions_are_skipped(
    processor: BatchRetriageProcessor, store: DatabaseStore, mock_classifier: MagicMock
):
    await seed_conversation(
        store, decision=make_stored_decision("spam_phishing", "auto_handled", False, 1.0, "human")
    )

    summary = await processor.run("acme")

    assert summary.changed == 0
    assert [s.reason for s in summary.skipped] == ["human_decision"]
    mock_classifier.classify_or_default.assert_not_called()


# ---------------------------------------------------------------------------
# Tests: Rules-only mode
# ---------------------------------------------------------------------------


async def test_skip_ai_keeps_unmatched_decisions(
    processor: BatchRetriageProcessor, store: DatabaseStore, mock_classifier: MagicMock
):
    await seed_conversation(
        store,
        conversation_id="vendor",
        sender="billing@stripe.com",
        decision=make_stored_decision("customer_inquiry", "act_now", True, 0.3),
    )
    await seed_conversation(store, conversation_id="customer", decision=make_stored_decision())
    await seed_rule(store, "@stripe.com", "receipt_confirmation")

    summary = await processor.run("acme", skip_ai=True)

    assert summary.changed == 1
    assert summary.results[0].id == "vendor"
    assert summary.results[0].path == "gatekeeper"
    assert summary.results[0].rule_applied is not None
    assert [s.reason for s in summary.skipped] == ["no_rule_matched"]
    mock_classifier.classify_or_default.assert_not_called()


async def test_dry_runs_leave_rule_hits_unchanged(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await seed_conversation(store, sender="billing@stripe.com")
    await seed_rule(store, "@stripe.com", "receipt_confirmation")

    for _ in range(3):
        summary = await processor.run("acme", skip_ai=True, dry_run=True)
        assert summary.changed == 1

    rules = await store.get_sender_rules("acme")
    assert rules[0].hit_count == 0

    await processor.run("acme", skip_ai=True)

    rules = await store.get_sender_rules("acme")
    assert rules[0].hit_count == 1


async def test_skip_ai_applies_builtin_patterns(
    processor: BatchRetriageProcessor, store: DatabaseStore, mock_classifier: MagicMock
):
    await seed_conversation(
        store,
        sender="no-reply@shop.example",
        subject="Your weekly deals",
        decision=make_stored_decision("customer_inquiry", "act_now", True, 0.3),
    )

    summary = await processor.run("acme", skip_ai=True)

    assert summary.applied == 1
    assert summary.results[0].path == "pattern"
    stored = await store.get_conversation("conv-001")
    assert stored.decision.decision_bucket == "auto_handled"
    assert stored.decision.source == "pattern"
    mock_classifier.classify_or_default.assert_not_called()


async def test_sender_history_is_loaded_once_per_run(
    processor: BatchRetriageProcessor, store: DatabaseStore, mock_classifier: MagicMock
):
    await seed_behavior_stat(store, "customer.com", total=10, replied=0)
    await _seed_page(store, 3)
    store.get_behavior_stat = AsyncMock()

    summary = await processor.run("acme", dry_run=True)

    assert {r.path for r in summary.results} == {"pattern"}
    assert {r.new["decision_bucket"] for r in summary.results} == {"auto_handled"}
    store.get_behavior_stat.assert_not_called()
    mock_classifier.classify_or_default.assert_not_called()


async def test_no_classifier_forces_rules_only(store: DatabaseStore, sample_config: AppConfig):
    await seed_conversation(store, decision=make_stored_decision())
    processor = BatchRetriageProcessor(store, sample_config)

    summary = await processor.run("acme", limit=100)

    assert summary.skip_ai is True
    assert summary.limit == 100
    assert summary.changed == 0


# ---------------------------------------------------------------------------
# Tests: Limits
# ---------------------------------------------------------------------------


async def test_effective_limit_defaults_and_caps(processor: BatchRetriageProcessor):
    assert processor.effective_limit(None, skip_ai=True) == 50
    assert processor.effective_limit(10_000, skip_ai=True) == 500
    assert processor.effective_limit(None, skip_ai=False) == 10
    assert processor.effective_limit(3, skip_ai=False) == 3


@pytest.mark.parametrize("limit", [0, -5])
async def test_effective_limit_rejects_non_positive(
    processor: BatchRetriageProcessor, limit: int
):
    with pytest.raises(ValueError):
        processor.effective_limit(limit, skip_ai=True)


async def test_negative_offset_rejected(processor: BatchRetriageProcessor):
    with pytest.raises(ValueError):
        await processor.run("acme", offset=-1)


async def test_ai_run_is_capped(
    processor: BatchRetriageProcessor, store: DatabaseStore, mock_classifier: MagicMock
):
    await _seed_page(store, 12)

    summary = await processor.run("acme", limit=50, dry_run=True)

    assert summary.limit == 10
    assert summary.processed == 10
    assert mock_classifier.classify_or_default.await_count == 10


# ---------------------------------------------------------------------------
# Tests: Cancellation and failures
# ---------------------------------------------------------------------------


async def test_cancelled_run_starts_nothing(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 3)
    cancel = asyncio.Event()
    cancel.set()

    summary = await processor.run("acme", cancel_event=cancel)

    assert summary.cancelled is True
    assert summary.processed == 0
    assert summary.applied == 0


async def test_rate_limit_failure_is_per_item(
    processor: BatchRetriageProcessor, store: DatabaseStore, mock_classifier: MagicMock
):
    await _seed_page(store, 2)
    good = mock_classifier.classify_or_default.return_value
    mock_classifier.classify_or_default.side_effect = [RateLimitExceeded("slow down"), good]

    summary = await processor.run("acme")

    assert summary.processed == 2
    assert len(summary.failures) == 1
    assert summary.failures[0].error_kind == "RateLimitExceeded"
    assert summary.applied == 1


async def test_low_request_rate_slows_items_instead_of_failing(
    store: DatabaseStore,
    sample_config_dict: dict,
    mock_classifier: MagicMock,
    monkeypatch: pytest.MonkeyPatch,
):
    sample_config_dict["batch"]["requests_per_minute"] = 2
    processor = BatchRetriageProcessor(
        store, AppConfig(**sample_config_dict), classifier=mock_classifier
    )
    sleep = AsyncMock()
    monkeypatch.setattr("inbox_triage.core.rate_limiter.asyncio.sleep", sleep)
    await _seed_page(store, 3)

    summary = await processor.run("acme", dry_run=True)

    assert summary.failures == []
    assert summary.changed == 3
    assert mock_classifier.classify_or_default.await_count == 3
    assert sleep.await_count >= 2


async def test_write_failure_does_not_stop_batch(
    processor: BatchRetriageProcessor, store: DatabaseStore, monkeypatch
):
    await _seed_page(store, 3)
    real_update = store.update_triage_decision

    async def flaky_update(conversation_id, decision):
        if conversation_id == "conv-1":
            raise PersistenceWriteFailed("disk full", conversation_id=conversation_id)
        await real_update(conversation_id, decision)

    monkeypatch.setattr(store, "update_triage_decision", flaky_update)

    summary = await processor.run("acme")

    assert summary.changed == 3
    assert summary.applied == 2
    assert [f.conversation_id for f in summary.failures] == ["conv-1"]
    assert (await store.get_conversation("conv-1")).decision is None


# ---------------------------------------------------------------------------
# Tests: Audit trail and report
# ---------------------------------------------------------------------------


async def test_run_is_logged_with_trigger(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 1)

    summary = await processor.run("acme", triggered_by="api")

    logs = await store.get_action_logs(tenant_id="acme")
    assert len(logs) == 1
    assert logs[0].action_type == "batch_retriage"
    assert logs[0].target_id == summary.run_id
    assert logs[0].triggered_by == "api"
    assert logs[0].details["applied"] == 1
    assert await store.get_state("last_retriage:acme") is not None


async def test_summary_to_dict_and_report(
    processor: BatchRetriageProcessor, store: DatabaseStore
):
    await _seed_page(store, 2)
    summary = await processor.run("acme", dry_run=True)

    data = summary.to_dict()
    assert data["processed"] == 2
    assert data["results"][0]["new"]["decision_bucket"] == "quick_win"

    console = Console(record=True, width=120)
    print_retriage_report(summary, console)
    output = console.export_text()
    assert "Retriage acme" in output
    assert "conv-1" in output
