"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the inbox triage engine. It uses aiosqlite for async access
and maps rows to dataclasses.

The store keeps enum-valued columns as plain strings. Parsing into the closed
vocabularies happens in the engine, so a legacy or hand-edited row can never
crash a read.

Usage:
    from inbox_triage.db.store import DatabaseStore

    store = DatabaseStore("data/inbox_triage.db")
    await store.initialize()

    rules = await store.get_sender_rules("acme")
    page = await store.get_conversations_for_retriage("acme", offset=0, limit=50)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from inbox_triage.core.errors import DatabaseError, DuplicateRuleCandidate, PersistenceWriteFailed
from inbox_triage.core.logging import get_logger, get_run_id
from inbox_triage.db.models import init_database

logger = get_logger(__name__)

# Bodies are stored for classification only; anything longer is truncated
MAX_BODY_LENGTH = 20000

Direction = Literal["inbound", "outbound"]
RuleOrigin = Literal["admin", "learner", "stats", "seed"]


def _now() -> datetime:
    return datetime.now(UTC)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    """Parse a stored timestamp, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _opt_bool(value: int | None) -> bool | None:
    return None if value is None else bool(value)


@dataclass
class SenderRule:
    """Gatekeeper rule record."""

    tenant_id: str
    pattern: str
    default_classification: str
    default_requires_reply: bool = False
    override_keywords: list[str] = field(default_factory=list)
    override_classification: str | None = None
    override_requires_reply: bool | None = None
    is_active: bool = True
    hit_count: int = 0
    created_by: RuleOrigin = "admin"
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class StoredDecision:
    """Triage decision fields persisted on a conversation."""

    classification: str
    decision_bucket: str
    confidence: float
    requires_reply: bool
    why_this_needs_you: str | None = None
    risk_level: str | None = None
    urgency: str | None = None
    needs_human_review: bool = False
    source: str | None = None

    def summary(self) -> dict[str, Any]:
        """The fields shown to operators when comparing decisions."""
        return {
            "classification": self.classification,
            "decision_bucket": self.decision_bucket,
            "requires_reply": self.requires_reply,
            "confidence": self.confidence,
        }


@dataclass
class Conversation:
    """Conversation record with its latest triage decision (if any)."""

    id: str
    tenant_id: str
    channel: str = "email"
    customer_email: str | None = None
    created_at: datetime | None = None
    first_response_at: datetime | None = None
    decision: StoredDecision | None = None
    triaged_at: datetime | None = None


@dataclass
class Message:
    """Message record."""

    id: str
    conversation_id: str
    direction: Direction = "inbound"
    sender: str | None = None
    recipient: str | None = None
    subject: str | None = None
    body: str | None = None
    created_at: datetime | None = None


@dataclass
class RetriageItem:
    """A conversation with its earliest inbound message, as read for retriage."""

    conversation: Conversation
    first_inbound: Message | None


@dataclass
class Correction:
    """Correction ledger entry."""

    tenant_id: str
    sender_domain: str
    original_classification: str | None
    new_classification: str
    conversation_id: str | None = None
    corrected_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class CorrectionGroup:
    """Corrections aggregated by (domain, original, new)."""

    sender_domain: str
    original_classification: str | None
    new_classification: str
    count: int
    last_corrected_at: datetime | None = None


@dataclass
class SenderBehaviorStat:
    """Per-domain reply statistics."""

    tenant_id: str
    sender_domain: str
    total_messages: int
    replied_count: int
    reply_rate: float
    avg_response_time_minutes: float | None
    vip_score: float
    suggested_bucket: str | None = None
    computed_at: datetime | None = None


@dataclass(frozen=True)
class InboundHistoryRow:
    """One inbound message joined with its conversation's response timing."""

    sender: str | None
    conversation_created_at: datetime | None
    first_response_at: datetime | None


@dataclass
class ActionLogEntry:
    """Action log entry from the database."""

    id: int
    timestamp: datetime | None
    action_type: str
    tenant_id: str | None = None
    target_id: str | None = None
    details: dict[str, Any] | None = None
    triggered_by: str | None = None


class DatabaseStore:
    """Database store for all inbox triage data.

    Each operation opens its own connection, so concurrent batch runs for
    different tenants share nothing but the database file.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets busy_timeout for concurrent batch runs and the API server,
        foreign_keys ON, and NORMAL synchronous mode (safe with WAL).
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Sender Rule Operations
    # =========================================================================

    async def create_sender_rule(self, rule: SenderRule) -> int:
        """Insert a sender rule at the end of the tenant's match order.

        Returns:
            The new rule ID

        Raises:
            DuplicateRuleCandidate: If the tenant already has a rule with this pattern
            DatabaseError: If the operation fails
        """
        pattern = rule.pattern.strip().lower()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO sender_rules (
                        tenant_id, pattern, default_classification,
                        default_requires_reply, override_keywords_json,
                        override_classification, override_requires_reply,
                        is_active, hit_count, created_by, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.tenant_id,
                        pattern,
                        rule.default_classification,
                        int(rule.default_requires_reply),
                        json.dumps([k.lower() for k in rule.override_keywords]),
                        rule.override_classification,
                        None
                        if rule.override_requires_reply is None
                        else int(rule.override_requires_reply),
                        int(rule.is_active),
                        rule.hit_count,
                        rule.created_by,
                        _to_iso(rule.created_at or _now()),
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.IntegrityError as e:
            raise DuplicateRuleCandidate(
                f"Sender rule '{pattern}' already exists for tenant '{rule.tenant_id}'",
                tenant_id=rule.tenant_id,
                pattern=pattern,
            ) from e
        except aiosqlite.Error as e:
            logger.error("sender_rule_create_failed", pattern=pattern, error=str(e))
            raise DatabaseError(f"Failed to create sender rule: {e}") from e

    async def get_sender_rules(self, tenant_id: str, active_only: bool = True) -> list[SenderRule]:
        """Get a tenant's rules in match order (insertion order)."""
        query = "SELECT * FROM sender_rules WHERE tenant_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY id ASC"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, (tenant_id,))
                rows = await cursor.fetchall()
                return [self._row_to_rule(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("sender_rules_read_failed", tenant_id=tenant_id, error=str(e))
            raise DatabaseError(f"Failed to get sender rules: {e}") from e

    async def get_rule_by_pattern(self, tenant_id: str, pattern: str) -> SenderRule | None:
        """Point lookup of a rule by (tenant, pattern), active or not."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_rules WHERE tenant_id = ? AND pattern = ?",
                    (tenant_id, pattern.strip().lower()),
                )
                row = await cursor.fetchone()
                return self._row_to_rule(row) if row else None

        except aiosqlite.Error as e:
            logger.error("sender_rule_lookup_failed", pattern=pattern, error=str(e))
            raise DatabaseError(f"Failed to look up sender rule: {e}") from e

    async def get_rule_patterns(self, tenant_id: str) -> set[str]:
        """All patterns a tenant has, including disabled rules."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT pattern FROM sender_rules WHERE tenant_id = ?", (tenant_id,)
                )
                return {row["pattern"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get rule patterns: {e}") from e

    async def set_rule_active(self, rule_id: int, is_active: bool) -> bool:
        """Enable or soft-disable a rule. Returns False if the rule doesn't exist."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE sender_rules SET is_active = ? WHERE id = ?",
                    (int(is_active), rule_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("sender_rule_update_failed", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to update sender rule: {e}") from e

    async def increment_rule_hits(self, rule_id: int) -> None:
        """Add one to a rule's hit counter."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE sender_rules SET hit_count = hit_count + 1 WHERE id = ?",
                    (rule_id,),
                )
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to increment hit count for rule {rule_id}: {e}") from e

    def _row_to_rule(self, row: aiosqlite.Row) -> SenderRule:
        keywords = json.loads(row["override_keywords_json"]) if row["override_keywords_json"] else []
        return SenderRule(
            id=row["id"],
            tenant_id=row["tenant_id"],
            pattern=row["pattern"],
            default_classification=row["default_classification"],
            default_requires_reply=bool(row["default_requires_reply"]),
            override_keywords=keywords,
            override_classification=row["override_classification"],
            override_requires_reply=_opt_bool(row["override_requires_reply"]),
            is_active=bool(row["is_active"]),
            hit_count=row["hit_count"],
            created_by=row["created_by"] or "admin",
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Conversation and Message Operations
    # =========================================================================

    async def save_conversation(self, conversation: Conversation) -> None:
        """Insert or update a conversation's metadata (not its decision)."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO conversations (
                        id, tenant_id, channel, customer_email, created_at, first_response_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        channel = excluded.channel,
                        customer_email = excluded.customer_email,
                        first_response_at = COALESCE(
                            conversations.first_response_at, excluded.first_response_at
                        )
                    """,
                    (
                        conversation.id,
                        conversation.tenant_id,
                        conversation.channel,
                        conversation.customer_email,
                        _to_iso(conversation.created_at or _now()),
                        _to_iso(conversation.first_response_at),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("conversation_save_failed", conversation_id=conversation.id, error=str(e))
            raise DatabaseError(f"Failed to save conversation: {e}") from e

    async def save_message(self, message: Message) -> None:
        """Insert or update a message.

        Raises:
            DatabaseError: If the operation fails (including an unknown conversation)
        """
        body = message.body
        if body and len(body) > MAX_BODY_LENGTH:
            body = body[:MAX_BODY_LENGTH]
            logger.warning(
                "message_body_truncated",
                message_id=message.id,
                original_length=len(message.body),
            )

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO messages (
                        id, conversation_id, direction, sender, recipient,
                        subject, body, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        sender = excluded.sender,
                        recipient = excluded.recipient,
                        subject = excluded.subject,
                        body = excluded.body
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.direction,
                        message.sender,
                        message.recipient,
                        message.subject,
                        body,
                        _to_iso(message.created_at or _now()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("message_save_failed", message_id=message.id, error=str(e))
            raise DatabaseError(f"Failed to save message: {e}") from e

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_conversation(row) if row else None

        except aiosqlite.Error as e:
            logger.error("conversation_read_failed", conversation_id=conversation_id, error=str(e))
            raise DatabaseError(f"Failed to get conversation: {e}") from e

    async def get_first_inbound_message(self, conversation_id: str) -> Message | None:
        """Get the earliest inbound message of a conversation."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM messages
                    WHERE conversation_id = ? AND direction = 'inbound'
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                    """,
                    (conversation_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_message(row) if row else None

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get first inbound message: {e}") from e

    async def get_conversations_for_retriage(
        self, tenant_id: str, offset: int = 0, limit: int = 50
    ) -> list[RetriageItem]:
        """Read one page of a tenant's conversations, newest first.

        Each item carries the conversation's earliest inbound message, or None
        when the conversation has no inbound message.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM conversations
                    WHERE tenant_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    (tenant_id, limit, offset),
                )
                conversations = [self._row_to_conversation(r) for r in await cursor.fetchall()]
                if not conversations:
                    return []

                placeholders = ",".join("?" for _ in conversations)
                cursor = await db.execute(
                    f"""
                    SELECT m.* FROM messages m
                    WHERE m.direction = 'inbound'
                      AND m.conversation_id IN ({placeholders})
                    ORDER BY m.conversation_id, m.created_at ASC, m.id ASC
                    """,
                    [c.id for c in conversations],
                )
                first_by_conversation: dict[str, Message] = {}
                for row in await cursor.fetchall():
                    first_by_conversation.setdefault(
                        row["conversation_id"], self._row_to_message(row)
                    )

                return [
                    RetriageItem(conversation=c, first_inbound=first_by_conversation.get(c.id))
                    for c in conversations
                ]

        except aiosqlite.Error as e:
            logger.error("retriage_page_read_failed", tenant_id=tenant_id, error=str(e))
            raise DatabaseError(f"Failed to read conversations for retriage: {e}") from e

    async def count_conversations(self, tenant_id: str) -> int:
        """Count a tenant's conversations."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM conversations WHERE tenant_id = ?", (tenant_id,)
                )
                return (await cursor.fetchone())[0]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count conversations: {e}") from e

    async def list_tenants(self) -> list[str]:
        """Tenants that have at least one conversation."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT DISTINCT tenant_id FROM conversations ORDER BY tenant_id"
                )
                return [row["tenant_id"] for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list tenants: {e}") from e

    async def update_triage_decision(self, conversation_id: str, decision: StoredDecision) -> None:
        """Overwrite a conversation's triage decision with a single-row update.

        Raises:
            PersistenceWriteFailed: If the row is missing or the write fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE conversations SET
                        classification = ?,
                        decision_bucket = ?,
                        confidence = ?,
                        requires_reply = ?,
                        why_this_needs_you = ?,
                        risk_level = ?,
                        urgency = ?,
                        needs_human_review = ?,
                        decision_source = ?,
                        triaged_at = ?
                    WHERE id = ?
                    """,
                    (
                        decision.classification,
                        decision.decision_bucket,
                        decision.confidence,
                        int(decision.requires_reply),
                        decision.why_this_needs_you,
                        decision.risk_level,
                        decision.urgency,
                        int(decision.needs_human_review),
                        decision.source,
                        _to_iso(_now()),
                        conversation_id,
                    ),
                )
                await db.commit()
                updated = cursor.rowcount

        except aiosqlite.Error as e:
            logger.error(
                "triage_decision_write_failed", conversation_id=conversation_id, error=str(e)
            )
            raise PersistenceWriteFailed(
                f"Failed to write triage decision for {conversation_id}: {e}",
                conversation_id=conversation_id,
            ) from e

        if updated == 0:
            raise PersistenceWriteFailed(
                f"Conversation {conversation_id} no longer exists",
                conversation_id=conversation_id,
            )

    async def set_first_response(self, conversation_id: str, responded_at: datetime) -> None:
        """Record the first outbound response time, keeping an earlier one if set."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE conversations SET first_response_at = ?
                    WHERE id = ? AND first_response_at IS NULL
                    """,
                    (_to_iso(responded_at), conversation_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to set first response: {e}") from e

    def _row_to_conversation(self, row: aiosqlite.Row) -> Conversation:
        decision = None
        if row["classification"] is not None and row["decision_bucket"] is not None:
            decision = StoredDecision(
                classification=row["classification"],
                decision_bucket=row["decision_bucket"],
                confidence=row["confidence"] if row["confidence"] is not None else 0.0,
                requires_reply=bool(row["requires_reply"]),
                why_this_needs_you=row["why_this_needs_you"],
                risk_level=row["risk_level"],
                urgency=row["urgency"],
                needs_human_review=bool(row["needs_human_review"]),
                source=row["decision_source"],
            )
        return Conversation(
            id=row["id"],
            tenant_id=row["tenant_id"],
            channel=row["channel"] or "email",
            customer_email=row["customer_email"],
            created_at=_parse_dt(row["created_at"]),
            first_response_at=_parse_dt(row["first_response_at"]),
            decision=decision,
            triaged_at=_parse_dt(row["triaged_at"]),
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            direction=row["direction"],
            sender=row["sender"],
            recipient=row["recipient"],
            subject=row["subject"],
            body=row["body"],
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Correction Ledger Operations
    # =========================================================================

    async def record_correction(self, correction: Correction) -> int:
        """Append a correction to the ledger. Returns the new row ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO triage_corrections (
                        tenant_id, conversation_id, sender_domain,
                        original_classification, new_classification, corrected_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        correction.tenant_id,
                        correction.conversation_id,
                        correction.sender_domain.lower(),
                        correction.original_classification,
                        correction.new_classification,
                        _to_iso(correction.corrected_at or _now()),
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("correction_write_failed", tenant_id=correction.tenant_id, error=str(e))
            raise DatabaseError(f"Failed to record correction: {e}") from e

    async def get_corrections(self, tenant_id: str, limit: int = 200) -> list[Correction]:
        """Most recent corrections for a tenant."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM triage_corrections
                    WHERE tenant_id = ?
                    ORDER BY corrected_at DESC, id DESC
                    LIMIT ?
                    """,
                    (tenant_id, limit),
                )
                return [
                    Correction(
                        id=row["id"],
                        tenant_id=row["tenant_id"],
                        conversation_id=row["conversation_id"],
                        sender_domain=row["sender_domain"],
                        original_classification=row["original_classification"],
                        new_classification=row["new_classification"],
                        corrected_at=_parse_dt(row["corrected_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get corrections: {e}") from e

    async def get_correction_groups(
        self, tenant_id: str, min_count: int = 1
    ) -> list[CorrectionGroup]:
        """Aggregate corrections by (domain, original, new), most frequent first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT sender_domain, original_classification, new_classification,
                           COUNT(*) AS n, MAX(corrected_at) AS last_corrected_at
                    FROM triage_corrections
                    WHERE tenant_id = ?
                    GROUP BY sender_domain, original_classification, new_classification
                    HAVING COUNT(*) >= ?
                    ORDER BY n DESC, sender_domain ASC
                    """,
                    (tenant_id, min_count),
                )
                return [
                    CorrectionGroup(
                        sender_domain=row["sender_domain"],
                        original_classification=row["original_classification"],
                        new_classification=row["new_classification"],
                        count=row["n"],
                        last_corrected_at=_parse_dt(row["last_corrected_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("correction_groups_read_failed", tenant_id=tenant_id, error=str(e))
            raise DatabaseError(f"Failed to aggregate corrections: {e}") from e

    # =========================================================================
    # Sender Behavior Stats Operations
    # =========================================================================

    async def get_inbound_history(self, tenant_id: str) -> list[InboundHistoryRow]:
        """Every inbound message of a tenant with its conversation's response timing."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT m.sender, c.created_at, c.first_response_at
                    FROM messages m
                    JOIN conversations c ON c.id = m.conversation_id
                    WHERE c.tenant_id = ? AND m.direction = 'inbound'
                    """,
                    (tenant_id,),
                )
                return [
                    InboundHistoryRow(
                        sender=row["sender"],
                        conversation_created_at=_parse_dt(row["created_at"]),
                        first_response_at=_parse_dt(row["first_response_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to read inbound history: {e}") from e

    async def replace_behavior_stats(self, stats: list[SenderBehaviorStat]) -> int:
        """Replace stats rows per (tenant, domain) in one transaction.

        Returns:
            Number of rows written
        """
        if not stats:
            return 0
        now = _to_iso(_now())
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT OR REPLACE INTO sender_behavior_stats (
                        tenant_id, sender_domain, total_messages, replied_count,
                        reply_rate, avg_response_time_minutes, vip_score,
                        suggested_bucket, computed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            s.tenant_id,
                            s.sender_domain,
                            s.total_messages,
                            s.replied_count,
                            s.reply_rate,
                            s.avg_response_time_minutes,
                            s.vip_score,
                            s.suggested_bucket,
                            _to_iso(s.computed_at) or now,
                        )
                        for s in stats
                    ],
                )
                await db.commit()
                return len(stats)

        except aiosqlite.Error as e:
            logger.error("behavior_stats_write_failed", error=str(e))
            raise DatabaseError(f"Failed to write behavior stats: {e}") from e

    async def get_behavior_stats(self, tenant_id: str) -> list[SenderBehaviorStat]:
        """A tenant's behavior stats, highest VIP score first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sender_behavior_stats
                    WHERE tenant_id = ?
                    ORDER BY vip_score DESC, sender_domain ASC
                    """,
                    (tenant_id,),
                )
                return [self._row_to_stat(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get behavior stats: {e}") from e

    async def get_behavior_stat(
        self, tenant_id: str, sender_domain: str
    ) -> SenderBehaviorStat | None:
        """One domain's behavior stats, if computed."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_behavior_stats WHERE tenant_id = ? AND sender_domain = ?",
                    (tenant_id, sender_domain.lower()),
                )
                row = await cursor.fetchone()
                return self._row_to_stat(row) if row else None

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get behavior stat: {e}") from e

    def _row_to_stat(self, row: aiosqlite.Row) -> SenderBehaviorStat:
        return SenderBehaviorStat(
            tenant_id=row["tenant_id"],
            sender_domain=row["sender_domain"],
            total_messages=row["total_messages"],
            replied_count=row["replied_count"],
            reply_rate=row["reply_rate"],
            avg_response_time_minutes=row["avg_response_time_minutes"],
            vip_score=row["vip_score"],
            suggested_bucket=row["suggested_bucket"],
            computed_at=_parse_dt(row["computed_at"]),
        )

    # =========================================================================
    # Agent State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get an agent state value, or None if not set."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("state_read_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        """Set an agent state value."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _to_iso(_now())),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("state_write_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

    # =========================================================================
    # Logging Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]] | None,
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        message_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log a classifier request for debugging. Returns the log entry ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, message_id, run_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        message_id,
                        get_run_id(),
                        json.dumps(prompt) if prompt is not None else None,
                        json.dumps(response) if response is not None else None,
                        json.dumps(tool_call) if tool_call is not None else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("llm_request_log_failed", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def log_action(
        self,
        action_type: str,
        tenant_id: str | None = None,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "operator",
    ) -> int:
        """Log an action for the audit trail. Returns the log entry ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (
                        action_type, tenant_id, target_id, details_json, triggered_by, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        action_type,
                        tenant_id,
                        target_id,
                        json.dumps(details) if details else None,
                        triggered_by,
                        _to_iso(_now()),
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("action_log_failed", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self, tenant_id: str | None = None, limit: int = 50
    ) -> list[ActionLogEntry]:
        """Most recent audit entries, optionally for one tenant."""
        query = "SELECT * FROM action_log"
        params: list[Any] = []
        if tenant_id is not None:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [
                    ActionLogEntry(
                        id=row["id"],
                        timestamp=_parse_dt(row["timestamp"]),
                        action_type=row["action_type"],
                        tenant_id=row["tenant_id"],
                        target_id=row["target_id"],
                        details=json.loads(row["details_json"]) if row["details_json"] else None,
                        triggered_by=row["triggered_by"],
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get action logs: {e}") from e
