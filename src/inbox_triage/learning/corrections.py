"""Correction ledger: human overrides of triage decisions.

A correction appends one row to the ledger and replaces the conversation's
decision with a human decision. The ledger is append-only; the rule learner
aggregates it into sender-rule candidates, and with a tenant's ``auto_apply``
flag on those candidates become rules straight after the correction.

Usage:
    from inbox_triage.learning.corrections import CorrectionLedger

    ledger = CorrectionLedger(store, config, learner)
    result = await ledger.record_correction("conv-123", Category.CUSTOMER_INQUIRY)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.envelope import extract_domain, normalize_sender
from inbox_triage.classifier.taxonomy import Category, parse_enum
from inbox_triage.core.errors import ConversationNotFound, DatabaseError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import Correction
from inbox_triage.engine.decision_policy import human_decision

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import Conversation, DatabaseStore
    from inbox_triage.learning.rule_learner import RuleLearner

logger = get_logger(__name__)


@dataclass
class CorrectionResult:
    """Outcome of recording one correction."""

    conversation_id: str
    changed: bool
    original_classification: str | None
    new_classification: str
    sender_domain: str = ""
    decision: dict[str, Any] | None = None
    rules_created: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "changed": self.changed,
            "original_classification": self.original_classification,
            "new_classification": self.new_classification,
            "sender_domain": self.sender_domain,
            "decision": self.decision,
            "rules_created": list(self.rules_created),
        }


class CorrectionLedger:
    """Records corrections and triggers rule learning."""

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        learner: RuleLearner | None = None,
    ):
        self._store = store
        self._config = config
        self._learner = learner

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def record_correction(
        self,
        conversation_id: str,
        new_classification: Category | str,
        corrected_by: str = "operator",
    ) -> CorrectionResult:
        """Apply a human classification to a conversation.

        No-op (nothing written) when the classification is unchanged.

        Raises:
            ValueError: If the category isn't in the closed vocabulary
            ConversationNotFound: If the conversation doesn't exist
            PersistenceWriteFailed: If the decision can't be written
            DatabaseError: If the ledger row can't be written
        """
        category = parse_enum(Category, new_classification)
        if category is None:
            raise ValueError(f"Unknown category '{new_classification}'")

        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        original = conversation.decision.classification if conversation.decision else None
        result = CorrectionResult(
            conversation_id=conversation_id,
            changed=False,
            original_classification=original,
            new_classification=category.value,
        )
        if original == category.value:
            logger.debug(
                "correction_unchanged", conversation_id=conversation_id, category=category.value
            )
            return result

        domain = await self._sender_domain(conversation)
        result.sender_domain = domain

        await self._store.record_correction(
            Correction(
                tenant_id=conversation.tenant_id,
                conversation_id=conversation_id,
                sender_domain=domain,
                original_classification=original,
                new_classification=category.value,
            )
        )

        decision = human_decision(category).to_record()
        await self._store.update_triage_decision(conversation_id, decision)
        result.changed = True
        result.decision = decision.summary()

        logger.info(
            "triage_corrected",
            tenant_id=conversation.tenant_id,
            conversation_id=conversation_id,
            sender_domain=domain,
            original=original,
            new=category.value,
        )
        try:
            await self._store.log_action(
                action_type="triage_correction",
                tenant_id=conversation.tenant_id,
                target_id=conversation_id,
                details={"original": original, "new": category.value, "sender_domain": domain},
                triggered_by=corrected_by,
            )
        except DatabaseError as e:
            logger.warning(
                "correction_audit_log_failed", conversation_id=conversation_id, error=str(e)
            )

        settings = self._config.for_tenant(conversation.tenant_id)
        if settings.learning.auto_apply and self._learner is not None and domain:
            result.rules_created = await self._learner.auto_apply(conversation.tenant_id)

        return result

    async def _sender_domain(self, conversation: Conversation) -> str:
        """Domain of the conversation's first inbound sender, else of the customer email."""
        message = await self._store.get_first_inbound_message(conversation.id)
        sender = message.sender if message and message.sender else conversation.customer_email
        return extract_domain(normalize_sender(sender))
