"""Database layer for the inbox triage engine.

This module provides SQLite database access with async operations.

Usage:
    from inbox_triage.db import DatabaseStore, SenderRule

    store = DatabaseStore("data/inbox_triage.db")
    await store.initialize()

    rule_id = await store.create_sender_rule(
        SenderRule(
            tenant_id="acme",
            pattern="@stripe.com",
            default_classification="receipt_confirmation",
        )
    )
"""

from inbox_triage.db.models import REQUIRED_TABLES, SCHEMA_VERSION, init_database, verify_schema
from inbox_triage.db.store import (
    MAX_BODY_LENGTH,
    ActionLogEntry,
    Conversation,
    Correction,
    DatabaseStore,
    Message,
    SenderBehaviorStat,
    SenderRule,
    StoredDecision,
)

__all__ = [
    # Models
    "REQUIRED_TABLES",
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_BODY_LENGTH",
    # Dataclasses
    "ActionLogEntry",
    "Conversation",
    "Correction",
    "Message",
    "SenderBehaviorStat",
    "SenderRule",
    "StoredDecision",
]
