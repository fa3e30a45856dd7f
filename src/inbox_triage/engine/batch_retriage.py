"""Batch retriage over a bounded page of existing conversations.

Re-runs the single-item pipeline for each conversation in one page
(newest first), compares the new decision with the stored one, and writes
only the conversations whose classification, bucket or reply flag changed.
Because the comparison is against what's stored, running the same batch
twice in a row changes nothing the second time.

Modes are independent:
- dry_run: compute and report changes, write nothing
- skip_ai: sender rules and built-in patterns only; unmatched conversations
  keep their decision

Classifier calls are rate-limited by a token bucket and capped by a
semaphore. A cancel event is checked before each item starts; a cancelled
run still writes the items it completed.

Usage:
    from inbox_triage.engine.batch_retriage import BatchRetriageProcessor

    processor = BatchRetriageProcessor(store, config, classifier=message_classifier)
    summary = await processor.run("acme", limit=50, dry_run=True)
    print_retriage_report(summary, console)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

from inbox_triage.classifier.envelope import MessageEnvelope
from inbox_triage.classifier.taxonomy import DecisionSource
from inbox_triage.core.errors import DatabaseError, PersistenceWriteFailed, RateLimitExceeded
from inbox_triage.core.logging import get_logger, set_run_id
from inbox_triage.core.rate_limiter import TokenBucket
from inbox_triage.engine.pipeline import (
    TriagePipeline,
    decision_changed,
    resolve_retriage_decision,
)

if TYPE_CHECKING:
    from inbox_triage.classifier.claude_classifier import ClassificationResult, Classifier
    from inbox_triage.config_schema import AppConfig, BusinessContextConfig
    from inbox_triage.db.store import (
        DatabaseStore,
        RetriageItem,
        SenderBehaviorStat,
        SenderRule,
        StoredDecision,
    )
    from inbox_triage.engine.decision_policy import Thresholds

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class RetriageChange:
    """One conversation whose decision changed."""

    id: str
    original: dict[str, Any] | None
    new: dict[str, Any]
    path: str
    rule_applied: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original": self.original,
            "new": self.new,
            "path": self.path,
            "rule_applied": self.rule_applied,
        }


@dataclass
class ItemFailure:
    """A conversation that couldn't be evaluated or written."""

    conversation_id: str
    error: str
    error_kind: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class SkippedItem:
    """A conversation left untouched, with the reason."""

    conversation_id: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"conversation_id": self.conversation_id, "reason": self.reason}


@dataclass
class BatchRetriageSummary:
    """Result of one batch retriage run."""

    run_id: str
    tenant_id: str
    dry_run: bool
    skip_ai: bool
    offset: int
    limit: int
    processed: int = 0
    changed: int = 0
    applied: int = 0
    results: list[RetriageChange] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant_id,
            "processed": self.processed,
            "changed": self.changed,
            "applied": self.applied,
            "results": [r.to_dict() for r in self.results],
            "failures": [f.to_dict() for f in self.failures],
            "skipped": [s.to_dict() for s in self.skipped],
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "skip_ai": self.skip_ai,
            "offset": self.offset,
            "limit": self.limit,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _Evaluation:
    """Internal result of evaluating one conversation."""

    conversation_id: str
    change: RetriageChange | None = None
    pending: StoredDecision | None = None
    skipped_reason: str | None = None
    failure: ItemFailure | None = None


class RateLimitedClassifier:
    """Wraps a classifier so every call first takes a token from the bucket.

    Raises RateLimitExceeded instead of classifying when the wait would be
    too long; the batch records that as a per-item failure.
    """

    def __init__(self, classifier: Classifier, bucket: TokenBucket):
        self._classifier = classifier
        self._bucket = bucket

    async def classify_or_default(
        self,
        envelope: MessageEnvelope,
        business: BusinessContextConfig | None = None,
    ) -> ClassificationResult:
        await self._bucket.consume()
        return await self._classifier.classify_or_default(envelope, business)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class BatchRetriageProcessor:
    """Retriages a page of a tenant's conversations.

    Attributes:
        _store: DatabaseStore for the page read, writes and audit trail
        _config: Application configuration (batch limits, thresholds)
        _classifier: Unwrapped classifier, or None when only rules are available
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        classifier: Classifier | None = None,
    ):
        self._store = store
        self._config = config
        self._classifier = classifier

    def effective_limit(self, limit: int | None, skip_ai: bool) -> int:
        """Clamp a requested page size to the configured caps."""
        cfg = self._config.batch
        requested = cfg.default_limit if limit is None else limit
        if requested < 1:
            raise ValueError(f"limit must be at least 1, got {requested}")
        effective = min(requested, cfg.max_limit)
        if not skip_ai and self._classifier is not None:
            effective = min(effective, cfg.max_ai_limit)
        return effective

    async def run(
        self,
        tenant_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        dry_run: bool = False,
        skip_ai: bool = False,
        confidence_threshold: float | None = None,
        cancel_event: asyncio.Event | None = None,
        triggered_by: str = "operator",
    ) -> BatchRetriageSummary:
        """Retriage one page of conversations.

        Args:
            tenant_id: Tenant whose conversations are retriaged
            limit: Page size (config default if None; capped by config)
            offset: Number of newest conversations to skip
            dry_run: Report changes without writing them
            skip_ai: Sender rules and built-in patterns only, no classifier calls
            confidence_threshold: Replaces the high threshold for this run
            cancel_event: When set, no further items are started
            triggered_by: Recorded in the action log ('operator', 'scheduler', 'api')

        Returns:
            BatchRetriageSummary with per-item changes, failures and skips

        Raises:
            ValueError: If limit or offset is out of range
            DatabaseError: If the page, rules or sender stats can't be read
        """
        if offset < 0:
            raise ValueError(f"offset must be non-negative, got {offset}")
        if not skip_ai and self._classifier is None:
            logger.info("batch_retriage_rules_only", tenant_id=tenant_id, reason="no_classifier")
            skip_ai = True

        run_id = str(uuid.uuid4())
        set_run_id(run_id)
        start_time = time.monotonic()

        effective_limit = self.effective_limit(limit, skip_ai)
        summary = BatchRetriageSummary(
            run_id=run_id,
            tenant_id=tenant_id,
            dry_run=dry_run,
            skip_ai=skip_ai,
            offset=offset,
            limit=effective_limit,
        )

        logger.info(
            "batch_retriage_start",
            tenant_id=tenant_id,
            limit=effective_limit,
            offset=offset,
            dry_run=dry_run,
            skip_ai=skip_ai,
            confidence_threshold=confidence_threshold,
        )

        try:
            pipeline = self._build_pipeline(skip_ai)
            thresholds = pipeline.thresholds_for(tenant_id, confidence_threshold)
            items = await self._store.get_conversations_for_retriage(
                tenant_id, offset=offset, limit=effective_limit
            )
            rules = await self._store.get_sender_rules(tenant_id, active_only=True)
            sender_stats = {
                stat.sender_domain: stat
                for stat in await self._store.get_behavior_stats(tenant_id)
            }

            semaphore = asyncio.Semaphore(self._config.batch.max_concurrency)

            async def evaluate(item: RetriageItem) -> _Evaluation | None:
                async with semaphore:
                    if cancel_event is not None and cancel_event.is_set():
                        return None
                    return await self._evaluate(
                        pipeline,
                        tenant_id,
                        item,
                        rules,
                        sender_stats,
                        thresholds,
                        skip_ai=skip_ai,
                        dry_run=dry_run,
                    )

            evaluations = await asyncio.gather(*(evaluate(item) for item in items))

            pending: list[tuple[str, StoredDecision]] = []
            for evaluation in evaluations:
                if evaluation is None:
                    summary.cancelled = True
                    continue
                summary.processed += 1
                if evaluation.failure is not None:
                    summary.failures.append(evaluation.failure)
                elif evaluation.skipped_reason is not None:
                    summary.skipped.append(
                        SkippedItem(evaluation.conversation_id, evaluation.skipped_reason)
                    )
                elif evaluation.change is not None and evaluation.pending is not None:
                    summary.changed += 1
                    summary.results.append(evaluation.change)
                    pending.append((evaluation.conversation_id, evaluation.pending))

            if summary.cancelled:
                logger.warning(
                    "batch_retriage_cancelled",
                    tenant_id=tenant_id,
                    completed=summary.processed,
                    page_size=len(items),
                )

            if not dry_run and pending:
                await self._apply_writes(pending, summary)

            if not dry_run:
                await self._record_run(summary, triggered_by)

        finally:
            summary.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "batch_retriage_complete",
                tenant_id=tenant_id,
                processed=summary.processed,
                changed=summary.changed,
                applied=summary.applied,
                failures=len(summary.failures),
                skipped=len(summary.skipped),
                cancelled=summary.cancelled,
                dry_run=dry_run,
                duration_ms=summary.duration_ms,
            )
            set_run_id(None)

        return summary

    def _build_pipeline(self, skip_ai: bool) -> TriagePipeline:
        classifier: Classifier | None = None
        if not skip_ai and self._classifier is not None:
            bucket = TokenBucket.per_minute(self._config.batch.requests_per_minute)
            classifier = RateLimitedClassifier(self._classifier, bucket)
        return TriagePipeline(self._store, self._config, classifier=classifier)

    async def _evaluate(
        self,
        pipeline: TriagePipeline,
        tenant_id: str,
        item: RetriageItem,
        rules: list[SenderRule],
        sender_stats: dict[str, SenderBehaviorStat],
        thresholds: Thresholds,
        *,
        skip_ai: bool,
        dry_run: bool,
    ) -> _Evaluation:
        conversation = item.conversation
        stored = conversation.decision
        evaluation = _Evaluation(conversation_id=conversation.id)

        if stored is not None and stored.source == DecisionSource.HUMAN:
            evaluation.skipped_reason = "human_decision"
            return evaluation
        if item.first_inbound is None:
            evaluation.skipped_reason = "no_inbound_message"
            return evaluation

        envelope = MessageEnvelope.from_message(item.first_inbound, conversation.channel)
        try:
            outcome = await pipeline.triage(
                tenant_id,
                envelope,
                skip_ai=skip_ai,
                thresholds=thresholds,
                rules=rules,
                sender_stats=sender_stats,
                record_hits=not dry_run,
            )
        except (RateLimitExceeded, DatabaseError) as e:
            logger.warning(
                "batch_retriage_item_failed",
                conversation_id=conversation.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            evaluation.failure = ItemFailure(conversation.id, str(e), type(e).__name__)
            return evaluation

        new = resolve_retriage_decision(outcome, stored, thresholds)
        if new is None:
            evaluation.skipped_reason = "no_rule_matched"
            return evaluation

        if decision_changed(stored, new):
            evaluation.pending = new
            evaluation.change = RetriageChange(
                id=conversation.id,
                original=stored.summary() if stored else None,
                new=new.summary(),
                path=outcome.path,
                rule_applied=outcome.matched_rule_id,
            )
        return evaluation

    async def _apply_writes(
        self,
        pending: list[tuple[str, StoredDecision]],
        summary: BatchRetriageSummary,
    ) -> None:
        """Write changed decisions one row at a time; failures never stop the rest."""
        for conversation_id, decision in pending:
            try:
                await self._store.update_triage_decision(conversation_id, decision)
                summary.applied += 1
            except PersistenceWriteFailed as e:
                logger.error(
                    "batch_retriage_write_failed",
                    conversation_id=conversation_id,
                    error=str(e),
                )
                summary.failures.append(
                    ItemFailure(conversation_id, str(e), type(e).__name__)
                )

    async def _record_run(self, summary: BatchRetriageSummary, triggered_by: str) -> None:
        """Audit trail and last-run state. Failures here are logged, not raised."""
        try:
            await self._store.log_action(
                action_type="batch_retriage",
                tenant_id=summary.tenant_id,
                target_id=summary.run_id,
                details={
                    "processed": summary.processed,
                    "changed": summary.changed,
                    "applied": summary.applied,
                    "failures": len(summary.failures),
                    "skip_ai": summary.skip_ai,
                    "offset": summary.offset,
                    "limit": summary.limit,
                    "cancelled": summary.cancelled,
                },
                triggered_by=triggered_by,
            )
            await self._store.set_state(
                f"last_retriage:{summary.tenant_id}", datetime.now(UTC).isoformat()
            )
        except DatabaseError as e:
            logger.warning("batch_retriage_audit_failed", run_id=summary.run_id, error=str(e))


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def print_retriage_report(
    summary: BatchRetriageSummary,
    console: Console | None = None,
    max_rows: int = 25,
) -> None:
    """Print a batch summary for operators."""
    console = console or Console()
    mode = "dry run" if summary.dry_run else "applied"
    if summary.skip_ai:
        mode += ", rules only"

    console.print(f"\n[bold]Retriage {summary.tenant_id}[/bold] ({mode})")
    console.print(
        f"Processed: [cyan]{summary.processed}[/cyan]"
        f"  |  Changed: [yellow]{summary.changed}[/yellow]"
        f"  |  Applied: [green]{summary.applied}[/green]"
        f"  |  Failed: [red]{len(summary.failures)}[/red]"
        f"  |  Skipped: {len(summary.skipped)}"
        f"  |  Duration: {summary.duration_ms / 1000:.1f}s"
    )
    if summary.cancelled:
        console.print("[yellow]Run was cancelled before the page finished.[/yellow]")

    if summary.results:
        table = Table(box=None, padding=(0, 2))
        table.add_column("Conversation", style="cyan")
        table.add_column("Original")
        table.add_column("New")
        table.add_column("Via", style="dim")

        for change in summary.results[:max_rows]:
            original = (
                f"{change.original['classification']} / {change.original['decision_bucket']}"
                if change.original
                else "(untriaged)"
            )
            via = change.path
            if change.rule_applied is not None:
                via += f" #{change.rule_applied}"
            table.add_row(
                change.id,
                original,
                f"{change.new['classification']} / {change.new['decision_bucket']}",
                via,
            )
        console.print(table)
        if len(summary.results) > max_rows:
            console.print(f"  [dim]... and {len(summary.results) - max_rows} more[/dim]")

    for failure in summary.failures:
        console.print(
            f"  [red]x[/red] {failure.conversation_id}: {failure.error_kind}: {failure.error}"
        )
