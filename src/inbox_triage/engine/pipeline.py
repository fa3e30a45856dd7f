"""Single-item triage pipeline.

Routes one message through Gatekeeper -> built-in patterns -> (fallback) AI
classifier -> Decision Policy. Used on ingest and for single-conversation
retriage; the batch processor runs the same ``triage`` call per conversation.

States: GATEKEEPING -> CLASSIFYING -> DECIDED. A sender-rule match or a
conclusive built-in pattern skips CLASSIFYING entirely. A non-conclusive
pattern (urgent language, VIP sender) is passed to the decision policy as a
hint alongside the classifier result. In rules-only mode (``skip_ai``) no
classifier call is made: a hint is decided on its own, and a message with
no match at all ends DECIDED without a new decision, so a retriage keeps
whatever decision is already stored.

Usage:
    from inbox_triage.engine.pipeline import TriagePipeline

    pipeline = TriagePipeline(store, config, classifier=message_classifier)
    outcome = await pipeline.triage("acme", envelope)
    result = await pipeline.retriage_conversation("conv-123", dry_run=True)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.claude_classifier import ClassificationResult, safe_default_result
from inbox_triage.classifier.envelope import MessageEnvelope
from inbox_triage.classifier.gatekeeper import Gatekeeper
from inbox_triage.classifier.patterns import BuiltinPatternMatcher
from inbox_triage.classifier.taxonomy import DecisionSource
from inbox_triage.core.errors import ConversationNotFound, PersistenceWriteFailed
from inbox_triage.core.logging import get_logger, get_run_id, set_run_id
from inbox_triage.engine.decision_policy import Thresholds, TriageDecision, decide

if TYPE_CHECKING:
    from inbox_triage.classifier.claude_classifier import Classifier
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import (
        Conversation,
        DatabaseStore,
        Message,
        SenderBehaviorStat,
        SenderRule,
        StoredDecision,
    )

logger = get_logger(__name__)


class PipelineState(StrEnum):
    """Where a message is in the pipeline."""

    GATEKEEPING = "gatekeeping"
    CLASSIFYING = "classifying"
    DECIDED = "decided"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TriageOutcome:
    """Result of triaging one message.

    Attributes:
        decision: The new decision, or None when rules-only mode found no rule
        state: Final pipeline state (always DECIDED once triage returns)
        path: 'gatekeeper', 'pattern', 'classifier' or 'unmatched'
        matched_rule_id: ID of the sender rule that matched, if any
        pattern_type: Built-in pattern family that fired, if any
        classification: Classifier result when the classifier ran
        error_kind: Classifier failure that forced the safe default, if any
    """

    decision: TriageDecision | None
    state: PipelineState = PipelineState.DECIDED
    path: str = "classifier"
    matched_rule_id: int | None = None
    pattern_type: str | None = None
    classification: ClassificationResult | None = None
    error_kind: str | None = None


@dataclass
class RetriageResult:
    """Result of retriaging a single conversation."""

    conversation_id: str
    changed: bool = False
    original: dict[str, Any] | None = None
    updated: dict[str, Any] | None = None
    applied: bool = False
    skipped_reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "changed": self.changed,
            "original": self.original,
            "updated": self.updated,
            "applied": self.applied,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }


def decision_changed(stored: StoredDecision | None, new: StoredDecision) -> bool:
    """Whether a new decision differs from the stored one in a field operators see.

    Only classification, bucket and requires_reply count. Confidence and the
    explanation text drift between runs without changing what a human does.
    """
    if stored is None:
        return True
    return (
        stored.classification != new.classification
        or stored.decision_bucket != new.decision_bucket
        or stored.requires_reply != new.requires_reply
    )


def resolve_retriage_decision(
    outcome: TriageOutcome,
    stored: StoredDecision | None,
    thresholds: Thresholds,
) -> StoredDecision | None:
    """The decision a retriage should compare against what's stored.

    Returns None when the stored decision should be kept as is (rules-only
    mode with no matching rule or pattern). A conversation that was never triaged gets
    the safe fallback instead, so it still reaches a human.
    """
    if outcome.decision is not None:
        return outcome.decision.to_record()
    if stored is not None:
        return None
    fallback = safe_default_result("Rules-only retriage: no sender rule or pattern matched")
    return decide(fallback, thresholds).to_record()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TriagePipeline:
    """Gatekeeper -> patterns -> classifier -> decision policy for one message.

    Attributes:
        _store: DatabaseStore for rules, conversations and decisions
        _config: Application configuration (tenant settings resolved per call)
        _classifier: Classifier adapter, or None for rules-only operation
        _gatekeeper: Sender-rule gatekeeper
        _patterns: Built-in pattern matcher
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        classifier: Classifier | None = None,
        gatekeeper: Gatekeeper | None = None,
        patterns: BuiltinPatternMatcher | None = None,
    ):
        self._store = store
        self._config = config
        self._classifier = classifier
        self._gatekeeper = gatekeeper or Gatekeeper(store)
        self._patterns = patterns or BuiltinPatternMatcher()

    @property
    def has_classifier(self) -> bool:
        return self._classifier is not None

    def update_config(self, config: AppConfig) -> None:
        """Swap in a reloaded config for subsequent calls."""
        self._config = config

    def thresholds_for(self, tenant_id: str, high_override: float | None = None) -> Thresholds:
        """Effective thresholds for a tenant, optionally replacing the high one."""
        settings = self._config.for_tenant(tenant_id)
        return Thresholds.from_config(settings.thresholds, high_override)

    async def triage(
        self,
        tenant_id: str,
        envelope: MessageEnvelope,
        *,
        skip_ai: bool = False,
        thresholds: Thresholds | None = None,
        rules: list[SenderRule] | None = None,
        sender_stats: dict[str, SenderBehaviorStat] | None = None,
        record_hits: bool = True,
    ) -> TriageOutcome:
        """Triage one message. Never raises for classifier failures.

        Args:
            tenant_id: Tenant whose rules and settings apply
            envelope: The message being triaged
            skip_ai: Rules-only mode; no classifier call is made
            thresholds: Thresholds to decide with (tenant's configured ones if None)
            rules: Preloaded active rules, to avoid a read per message in batches
            sender_stats: Preloaded behavior stats keyed by sender domain
            record_hits: Count a sender-rule match towards its hit count

        Raises:
            DatabaseError: If the tenant's rules or sender stats can't be read
        """
        thresholds = thresholds or self.thresholds_for(tenant_id)
        settings = self._config.for_tenant(tenant_id)

        # GATEKEEPING
        match = await self._gatekeeper.check(
            tenant_id, envelope, rules=rules, record_hits=record_hits
        )
        if match is not None:
            decision = decide(match, thresholds)
            logger.debug(
                "triage_gatekeeper_match",
                tenant_id=tenant_id,
                message_id=envelope.message_id,
                rule_id=match.rule.id,
                bucket=decision.bucket.value,
            )
            return TriageOutcome(
                decision=decision,
                path="gatekeeper",
                matched_rule_id=match.rule.id,
            )

        pattern = None
        if settings.patterns.enabled:
            stat = None
            if settings.patterns.use_sender_history and envelope.sender_domain:
                if sender_stats is not None:
                    stat = sender_stats.get(envelope.sender_domain)
                else:
                    stat = await self._store.get_behavior_stat(tenant_id, envelope.sender_domain)
            pattern = self._patterns.match(envelope, stat=stat, business=settings.business)

        if pattern is not None and (pattern.conclusive or skip_ai):
            decision = decide(pattern, thresholds)
            logger.debug(
                "triage_pattern_match",
                tenant_id=tenant_id,
                message_id=envelope.message_id,
                rule_type=pattern.rule_type,
                bucket=decision.bucket.value,
            )
            return TriageOutcome(
                decision=decision,
                path="pattern",
                pattern_type=pattern.rule_type,
            )

        if skip_ai:
            return TriageOutcome(decision=None, path="unmatched")

        # CLASSIFYING
        if self._classifier is None:
            result = safe_default_result("No classifier configured", "ClassifierUnavailable")
        else:
            result = await self._classifier.classify_or_default(
                envelope, business=settings.business
            )

        decision = decide(result, thresholds, hint=pattern)
        if result.error_kind:
            logger.warning(
                "triage_classifier_fallback",
                tenant_id=tenant_id,
                message_id=envelope.message_id,
                error_kind=result.error_kind,
                bucket=decision.bucket.value,
            )
        return TriageOutcome(
            decision=decision,
            path="classifier",
            pattern_type=pattern.rule_type if pattern else None,
            classification=result,
            error_kind=result.error_kind,
        )

    async def ingest(self, conversation: Conversation, message: Message) -> TriageOutcome | None:
        """Persist a message and, for a conversation's first inbound message, its decision.

        Outbound messages record the conversation's first response time.
        Follow-up inbound messages are stored without retriaging a
        conversation that already has a decision.

        Returns:
            The triage outcome, or None when nothing was triaged

        Raises:
            DatabaseError: If the conversation or message can't be stored
            PersistenceWriteFailed: If the decision write fails
        """
        existing = await self._store.get_conversation(conversation.id)
        await self._store.save_conversation(conversation)
        await self._store.save_message(message)

        if message.direction == "outbound":
            await self._store.set_first_response(
                conversation.id, message.created_at or datetime.now(UTC)
            )
            return None

        if existing is not None and existing.decision is not None:
            logger.debug(
                "ingest_followup_stored",
                conversation_id=conversation.id,
                message_id=message.id,
            )
            return None

        owns_run_id = get_run_id() is None
        if owns_run_id:
            set_run_id(str(uuid.uuid4()))
        try:
            envelope = MessageEnvelope.from_message(message, conversation.channel)
            outcome = await self.triage(conversation.tenant_id, envelope)
            await self._store.update_triage_decision(
                conversation.id, outcome.decision.to_record()
            )
            logger.info(
                "message_ingested",
                conversation_id=conversation.id,
                message_id=message.id,
                path=outcome.path,
                bucket=outcome.decision.bucket.value,
                needs_human_review=outcome.decision.needs_human_review,
            )
            return outcome
        finally:
            if owns_run_id:
                set_run_id(None)

    async def retriage_conversation(
        self,
        conversation_id: str,
        *,
        skip_ai: bool = False,
        dry_run: bool = False,
        confidence_threshold: float | None = None,
    ) -> RetriageResult:
        """Re-run triage for one conversation and write the result if it changed.

        Always returns a result object; a failed write is reported in
        ``error`` rather than raised.

        Raises:
            ConversationNotFound: If the conversation doesn't exist
        """
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        set_run_id(str(uuid.uuid4()))
        try:
            stored = conversation.decision
            result = RetriageResult(
                conversation_id=conversation_id,
                original=stored.summary() if stored else None,
            )

            if stored is not None and stored.source == DecisionSource.HUMAN:
                result.skipped_reason = "human_decision"
                return result

            message = await self._store.get_first_inbound_message(conversation_id)
            if message is None:
                result.skipped_reason = "no_inbound_message"
                return result

            thresholds = self.thresholds_for(conversation.tenant_id, confidence_threshold)
            envelope = MessageEnvelope.from_message(message, conversation.channel)
            outcome = await self.triage(
                conversation.tenant_id,
                envelope,
                skip_ai=skip_ai,
                thresholds=thresholds,
                record_hits=not dry_run,
            )

            new = resolve_retriage_decision(outcome, stored, thresholds)
            if new is None:
                result.skipped_reason = "no_rule_matched"
                return result

            result.updated = new.summary()
            result.changed = decision_changed(stored, new)
            if result.changed and not dry_run:
                try:
                    await self._store.update_triage_decision(conversation_id, new)
                    result.applied = True
                except PersistenceWriteFailed as e:
                    logger.error(
                        "retriage_write_failed", conversation_id=conversation_id, error=str(e)
                    )
                    result.error = str(e)

            logger.info(
                "conversation_retriaged",
                conversation_id=conversation_id,
                path=outcome.path,
                changed=result.changed,
                applied=result.applied,
                dry_run=dry_run,
            )
            return result
        finally:
            set_run_id(None)
