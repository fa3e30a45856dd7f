"""SQLite database schema and initialization for the inbox triage engine.

Tables:
- sender_rules: Ordered per-tenant gatekeeper rules with hit counters
- conversations: Conversation metadata plus the latest triage decision
- messages: Inbound and outbound messages per conversation
- triage_corrections: Append-only ledger of human classification overrides
- sender_behavior_stats: Per-domain reply statistics, replaced on each run
- agent_state: Key-value state persistence
- llm_request_log: Claude API call logging for debugging
- action_log: Audit trail of retriage runs, corrections and rule changes

Usage:
    from inbox_triage.db.models import init_database

    await init_database("data/inbox_triage.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- Gatekeeper rules. Matching order is insertion order (id ascending).
CREATE TABLE IF NOT EXISTS sender_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    pattern TEXT NOT NULL,                  -- '@domain.com' or substring of the address
    default_classification TEXT NOT NULL,
    default_requires_reply INTEGER NOT NULL DEFAULT 0,
    override_keywords_json TEXT,            -- JSON array of lowercase keywords
    override_classification TEXT,
    override_requires_reply INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    hit_count INTEGER NOT NULL DEFAULT 0,
    created_by TEXT DEFAULT 'admin',        -- 'admin', 'learner', 'stats', 'seed'
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (tenant_id, pattern)
);

CREATE INDEX IF NOT EXISTS idx_sender_rules_tenant ON sender_rules(tenant_id, is_active);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    channel TEXT DEFAULT 'email',           -- 'email', 'sms', 'chat'
    customer_email TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    first_response_at DATETIME,
    -- Latest triage decision
    classification TEXT,
    decision_bucket TEXT,                   -- 'auto_handled', 'quick_win', 'act_now', 'wait'
    confidence REAL,
    requires_reply INTEGER,
    why_this_needs_you TEXT,
    risk_level TEXT,
    urgency TEXT,
    needs_human_review INTEGER DEFAULT 0,
    decision_source TEXT,  -- 'gatekeeper', 'pattern', 'classifier', 'fallback', 'human'
    triaged_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_conversations_tenant ON conversations(tenant_id, created_at);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    direction TEXT NOT NULL,                -- 'inbound', 'outbound'
    sender TEXT,
    recipient TEXT,
    subject TEXT,
    body TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, direction, created_at);

-- Append-only. Rows are never updated or deleted.
CREATE TABLE IF NOT EXISTS triage_corrections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    conversation_id TEXT,
    sender_domain TEXT NOT NULL,
    original_classification TEXT,
    new_classification TEXT NOT NULL,
    corrected_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_corrections_tenant_domain ON triage_corrections(tenant_id, sender_domain);

CREATE TABLE IF NOT EXISTS sender_behavior_stats (
    tenant_id TEXT NOT NULL,
    sender_domain TEXT NOT NULL,
    total_messages INTEGER NOT NULL,
    replied_count INTEGER NOT NULL,
    reply_rate REAL NOT NULL,
    avg_response_time_minutes REAL,
    vip_score REAL NOT NULL,
    suggested_bucket TEXT,
    computed_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (tenant_id, sender_domain)
);

-- Key-value state (last retriage run, last stats run)
CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- LLM request/response log for debugging classification issues
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'triage', 'retriage'
    model TEXT,
    message_id TEXT,
    run_id TEXT,                            -- Correlation ID for the run
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_run ON llm_request_log(run_id);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT,                       -- 'batch_retriage', 'retriage', 'correction', 'rule_created'
    tenant_id TEXT,
    target_id TEXT,                         -- Conversation ID or rule pattern
    details_json TEXT,
    triggered_by TEXT                       -- 'operator', 'scheduler', 'learner', 'human'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
"""

REQUIRED_TABLES = (
    "sender_rules",
    "conversations",
    "messages",
    "triage_corrections",
    "sender_behavior_stats",
    "agent_state",
    "llm_request_log",
    "action_log",
)


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Message bodies are customer PII: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Return True if every required table exists in the database."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
