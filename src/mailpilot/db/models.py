"""SQLite database schema and initialization for mailpilot.

This module defines the database schema with all 10 tables:
- emails: Ingested email metadata and provider flags
- email_scores: One score record per email (factors, tier, AI outcome)
- vip_senders: Explicit and learned VIP senders per user
- learned_patterns: Score adjustments learned from user behavior
- sender_stats: Interaction counts per sender and per domain
- user_preferences: Per-user scoring configuration (JSON)
- ai_budgets: Daily/monthly AI spend ledger per user
- user_actions: Audit trail of feedback events (idempotency keys)
- weekly_digests: One low-priority digest per user and week
- llm_request_log: Claude API call logging for debugging and cost audit

Usage:
    from mailpilot.db.models import init_database

    await init_database("data/mailpilot.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailpilot.core.errors import DatabaseError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,                    -- Provider message ID
    user_id TEXT NOT NULL,
    thread_id TEXT,
    subject TEXT,
    sender_email TEXT NOT NULL,
    sender_name TEXT,
    snippet TEXT,                           -- Truncated body preview
    received_at DATETIME,
    is_important INTEGER DEFAULT 0,
    is_starred INTEGER DEFAULT 0,
    is_unread INTEGER DEFAULT 1,
    has_attachments INTEGER DEFAULT 0,
    labels_json TEXT,                       -- JSON array of provider labels
    ingested_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_emails_user_received ON emails(user_id, received_at);
CREATE INDEX IF NOT EXISTS idx_emails_sender ON emails(user_id, sender_email);

CREATE TABLE IF NOT EXISTS email_scores (
    email_id TEXT PRIMARY KEY REFERENCES emails(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    raw_score REAL NOT NULL,                -- Unclamped factor sum
    final_score REAL NOT NULL CHECK (final_score >= 0 AND final_score <= 100),
    processing_tier TEXT NOT NULL CHECK (processing_tier IN ('high', 'medium', 'low')),
    factors_json TEXT NOT NULL,             -- FactorBreakdown, named fields
    ai_processed INTEGER DEFAULT 0,
    ai_status TEXT DEFAULT 'none',          -- 'none', 'queued', 'completed', 'skipped_budget',
                                            -- 'breaker_open', 'failed', 'deferred'
    ai_result_json TEXT,                    -- AIAnalysis when ai_processed
    category_override TEXT,                 -- User category correction
    scored_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_scores_user_tier ON email_scores(user_id, processing_tier);
CREATE INDEX IF NOT EXISTS idx_scores_user_ai_status ON email_scores(user_id, ai_status);

CREATE TABLE IF NOT EXISTS vip_senders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    sender_email TEXT NOT NULL,             -- Normalized (lowercase, +tag stripped)
    sender_name TEXT,
    score_boost INTEGER DEFAULT 30 CHECK (score_boost >= 0 AND score_boost <= 50),
    auto_category TEXT,
    confidence_score REAL DEFAULT 1.0 CHECK (confidence_score >= 0 AND confidence_score <= 1),
    usage_count INTEGER DEFAULT 0,
    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'suggested')),
    learned INTEGER DEFAULT 0,              -- 1 if promoted by the feedback loop
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    last_used_at DATETIME,
    UNIQUE (user_id, sender_email)
);

CREATE INDEX IF NOT EXISTS idx_vip_user_status ON vip_senders(user_id, status);

CREATE TABLE IF NOT EXISTS learned_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    pattern_type TEXT NOT NULL CHECK (pattern_type IN ('sender', 'subject', 'content', 'domain')),
    pattern_value TEXT NOT NULL,
    score_impact REAL DEFAULT 0 CHECK (score_impact >= -50 AND score_impact <= 50),
    confidence_score REAL DEFAULT 0 CHECK (confidence_score >= 0 AND confidence_score <= 1),
    sample_count INTEGER DEFAULT 0,
    positive_count INTEGER DEFAULT 0,
    success_rate REAL DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    last_seen_at DATETIME,
    UNIQUE (user_id, pattern_type, pattern_value)
);

-- Only confident patterns are read for scoring
CREATE INDEX IF NOT EXISTS idx_patterns_confident
    ON learned_patterns(user_id, confidence_score, sample_count);

CREATE TABLE IF NOT EXISTS sender_stats (
    user_id TEXT NOT NULL,
    scope TEXT NOT NULL CHECK (scope IN ('sender', 'domain')),
    key TEXT NOT NULL,                      -- Normalized sender address or domain
    positive_count INTEGER DEFAULT 0,
    negative_count INTEGER DEFAULT 0,
    neutral_count INTEGER DEFAULT 0,
    vip_confidence REAL DEFAULT 0.5,
    last_action_at DATETIME,
    PRIMARY KEY (user_id, scope, key)
);

CREATE TABLE IF NOT EXISTS user_preferences (
    user_id TEXT PRIMARY KEY,
    preferences_json TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS ai_budgets (
    user_id TEXT PRIMARY KEY,
    daily_used_cents INTEGER DEFAULT 0 CHECK (daily_used_cents >= 0),
    daily_limit_cents INTEGER NOT NULL,
    daily_window TEXT NOT NULL,             -- ISO date of the current daily window
    monthly_used_cents INTEGER DEFAULT 0 CHECK (monthly_used_cents >= 0),
    monthly_limit_cents INTEGER NOT NULL,
    monthly_window TEXT NOT NULL,           -- 'YYYY-MM' of the current monthly window
    reserved_cents INTEGER DEFAULT 0 CHECK (reserved_cents >= 0),  -- In-flight holds
    alert_threshold_percent INTEGER DEFAULT 80,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    email_id TEXT,                          -- NULL for sender-level digest actions
    sender_email TEXT,
    action TEXT NOT NULL,
    context_json TEXT,
    action_id TEXT,                         -- Client idempotency key
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, action_id)
);

CREATE INDEX IF NOT EXISTS idx_user_actions_user ON user_actions(user_id, created_at);

CREATE TABLE IF NOT EXISTS weekly_digests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    week_start DATE NOT NULL,               -- Always a Monday
    week_end DATE NOT NULL,
    categories_json TEXT NOT NULL,
    safe_to_unsubscribe_json TEXT NOT NULL,
    needs_review_json TEXT NOT NULL,
    bulk_actions_json TEXT NOT NULL,
    user_actions_json TEXT NOT NULL,
    total_low_priority_emails INTEGER DEFAULT 0,
    estimated_cost_savings_cents REAL DEFAULT 0,
    errors_json TEXT,
    generated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    actions_completed_at DATETIME,
    UNIQUE (user_id, week_start)
);

CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'analyze'
    model TEXT,
    email_id TEXT,
    user_id TEXT,
    run_id TEXT,                            -- Correlation ID for the batch or request
    attempt INTEGER,
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    cost_cents REAL,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_email ON llm_request_log(email_id);
CREATE INDEX IF NOT EXISTS idx_llm_log_run ON llm_request_log(run_id);
"""

REQUIRED_TABLES = (
    "emails",
    "email_scores",
    "vip_senders",
    "learned_patterns",
    "sender_stats",
    "user_preferences",
    "ai_budgets",
    "user_actions",
    "weekly_digests",
    "llm_request_log",
)


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode and
    creates all tables and indexes. Safe to call repeatedly.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only: the database holds email subjects and senders
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that every required table exists."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("Missing database tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
