"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for mailpilot, plus the dataclasses that travel between the
scoring engine, the router, the feedback loop and the digest builder.
It uses aiosqlite for async access.

Usage:
    from mailpilot.db.store import DatabaseStore

    store = DatabaseStore("data/mailpilot.db")
    await store.initialize()

    await store.save_email(email)
    await store.save_score(score)
    score = await store.get_score("message_id")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from mailpilot.config_schema import PatternType
from mailpilot.core.errors import DatabaseError
from mailpilot.core.logging import get_correlation_id, get_logger
from mailpilot.db.models import init_database

logger = get_logger(__name__)

# Security limit: the store never keeps full message bodies
MAX_SNIPPET_LENGTH = 2000

Tier = Literal["high", "medium", "low"]
AIStatus = Literal[
    "none",
    "queued",
    "completed",
    "skipped_budget",
    "breaker_open",
    "failed",
    "deferred",
]
VIPStatus = Literal["active", "suggested"]
SenderScope = Literal["sender", "domain"]
Outcome = Literal["positive", "negative", "neutral"]


def _to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as UTC ISO-8601. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding unparsable JSON column", value_prefix=value[:40])
        return default


@dataclass
class EmailRecord:
    """Ingested email. Immutable once stored except for provider flags."""

    id: str
    user_id: str
    sender_email: str
    subject: str = ""
    sender_name: str | None = None
    thread_id: str | None = None
    snippet: str = ""
    received_at: datetime | None = None
    is_important: bool = False
    is_starred: bool = False
    is_unread: bool = True
    has_attachments: bool = False
    labels: tuple[str, ...] = ()

    @property
    def sender_domain(self) -> str:
        return self.sender_email.rsplit("@", 1)[-1].lower() if "@" in self.sender_email else ""


@dataclass(frozen=True)
class FactorBreakdown:
    """Named contribution of every scoring factor.

    The field names are part of the external vocabulary and appear verbatim
    in API responses and persisted JSON.
    """

    base: float = 0.0
    vip_boost: float = 0.0
    urgency_boost: float = 0.0
    marketing_penalty: float = 0.0
    provider_signal_boost: float = 0.0
    time_decay: float = 0.0
    content_analysis: float = 0.0
    sender_reputation: float = 0.0
    learned_pattern_adjustment: float = 0.0

    def total(self) -> float:
        return round(sum(getattr(self, f.name) for f in fields(self)), 2)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FactorBreakdown:
        return cls(**{f.name: float(data.get(f.name, 0.0)) for f in fields(cls)})


@dataclass(frozen=True)
class AIAnalysis:
    """Result of one successful AI analysis."""

    category: str
    priority: int
    summary: str
    action_items: tuple[str, ...] = ()
    confidence: float = 0.0
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: float = 0.0
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action_items"] = list(self.action_items)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AIAnalysis:
        return cls(
            category=data.get("category", "other"),
            priority=int(data.get("priority", 5)),
            summary=data.get("summary", ""),
            action_items=tuple(data.get("action_items") or ()),
            confidence=float(data.get("confidence", 0.0)),
            model=data.get("model", ""),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cost_cents=float(data.get("cost_cents", 0.0)),
            latency_ms=int(data.get("latency_ms", 0)),
        )


@dataclass
class ScoreRecord:
    """Score record, one per email."""

    email_id: str
    user_id: str
    raw_score: float
    final_score: float
    processing_tier: Tier
    factors: FactorBreakdown
    ai_processed: bool = False
    ai_status: AIStatus = "none"
    ai_result: AIAnalysis | None = None
    category_override: str | None = None
    scored_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "user_id": self.user_id,
            "raw_score": self.raw_score,
            "final_score": self.final_score,
            "processing_tier": self.processing_tier,
            "factors": self.factors.to_dict(),
            "ai_processed": self.ai_processed,
            "ai_status": self.ai_status,
            "ai_result": self.ai_result.to_dict() if self.ai_result else None,
            "category_override": self.category_override,
            "scored_at": _to_iso(self.scored_at),
        }


@dataclass
class VIPSender:
    """VIP sender record. Only active VIPs boost scores."""

    user_id: str
    sender_email: str
    sender_name: str | None = None
    score_boost: int = 30
    auto_category: str | None = None
    confidence_score: float = 1.0
    usage_count: int = 0
    status: VIPStatus = "active"
    learned: bool = False
    id: int | None = None
    created_at: datetime | None = None
    last_used_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _to_iso(self.created_at)
        data["last_used_at"] = _to_iso(self.last_used_at)
        return data


@dataclass
class LearnedPattern:
    """A score adjustment learned from user behavior."""

    user_id: str
    pattern_type: PatternType
    pattern_value: str
    score_impact: float = 0.0
    confidence_score: float = 0.0
    sample_count: int = 0
    positive_count: int = 0
    success_rate: float = 0.0
    id: int | None = None
    created_at: datetime | None = None
    last_seen_at: datetime | None = None


@dataclass
class SenderStats:
    """Interaction counts for one sender address or domain."""

    user_id: str
    scope: SenderScope
    key: str
    positive_count: int = 0
    negative_count: int = 0
    neutral_count: int = 0
    vip_confidence: float = 0.5
    last_action_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.positive_count + self.negative_count + self.neutral_count


@dataclass
class BudgetEntry:
    """Per-user AI spend ledger row. Amounts are integer cents."""

    user_id: str
    daily_used_cents: int
    daily_limit_cents: int
    daily_window: str
    monthly_used_cents: int
    monthly_limit_cents: int
    monthly_window: str
    reserved_cents: int = 0
    alert_threshold_percent: int = 80
    updated_at: datetime | None = None


@dataclass
class WeeklyDigest:
    """Weekly aggregation of low-tier mail with unsubscribe suggestions."""

    user_id: str
    week_start: date
    week_end: date
    categories: dict[str, dict[str, Any]] = field(default_factory=dict)
    safe_to_unsubscribe: list[dict[str, Any]] = field(default_factory=list)
    needs_review: list[dict[str, Any]] = field(default_factory=list)
    bulk_actions: list[dict[str, Any]] = field(default_factory=list)
    user_actions: dict[str, list[str]] = field(
        default_factory=lambda: {"unsubscribed": [], "marked_keep": []}
    )
    total_low_priority_emails: int = 0
    estimated_cost_savings_cents: float = 0.0
    errors: list[str] = field(default_factory=list)
    id: int | None = None
    generated_at: datetime | None = None
    actions_completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["week_start"] = self.week_start.isoformat()
        data["week_end"] = self.week_end.isoformat()
        data["generated_at"] = _to_iso(self.generated_at)
        data["actions_completed_at"] = _to_iso(self.actions_completed_at)
        return data


@dataclass
class UserAction:
    """Audit row for one feedback event."""

    id: int
    user_id: str
    action: str
    email_id: str | None = None
    sender_email: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    action_id: str | None = None
    created_at: datetime | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    model: str | None = None
    email_id: str | None = None
    user_id: str | None = None
    run_id: str | None = None
    attempt: int | None = None
    tool_call_json: dict[str, Any] | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_cents: float | None = None
    duration_ms: int | None = None
    error: str | None = None


_SCORE_COLUMNS = """
    s.email_id, s.raw_score, s.final_score, s.processing_tier, s.factors_json,
    s.ai_processed, s.ai_status, s.ai_result_json, s.category_override, s.scored_at
"""


class DatabaseStore:
    """Database store for all mailpilot data.

    Handles connection management, JSON serialization and type conversion.
    Every aiosqlite failure is logged and re-raised as DatabaseError.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets busy_timeout for concurrent writers, enforces foreign keys and
        uses NORMAL synchronous mode (safe with WAL).
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block inside one BEGIN IMMEDIATE transaction.

        The write lock is taken up front so read-check-write sequences cannot
        interleave with another writer. Any exception, including task
        cancellation, rolls the whole block back.
        """
        async with self._db() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep the WAL file bounded."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("WAL checkpoint complete")
        except aiosqlite.Error as e:
            logger.warning("WAL checkpoint failed", error=str(e))

    # =========================================================================
    # Email Operations
    # =========================================================================

    async def save_email(self, email: EmailRecord) -> None:
        """Insert an email, or refresh only its provider flags if it exists.

        Raises:
            DatabaseError: If the operation fails
        """
        snippet = email.snippet or ""
        if len(snippet) > MAX_SNIPPET_LENGTH:
            logger.warning(
                "Truncated oversized snippet",
                email_id=email.id,
                original_length=len(snippet),
            )
            snippet = snippet[:MAX_SNIPPET_LENGTH]

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO emails (
                        id, user_id, thread_id, subject, sender_email, sender_name,
                        snippet, received_at, is_important, is_starred, is_unread,
                        has_attachments, labels_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        is_important = excluded.is_important,
                        is_starred = excluded.is_starred,
                        is_unread = excluded.is_unread,
                        labels_json = excluded.labels_json
                    """,
                    (
                        email.id,
                        email.user_id,
                        email.thread_id,
                        email.subject,
                        email.sender_email,
                        email.sender_name,
                        snippet,
                        _to_iso(email.received_at),
                        1 if email.is_important else 0,
                        1 if email.is_starred else 0,
                        1 if email.is_unread else 0,
                        1 if email.has_attachments else 0,
                        json.dumps(list(email.labels)),
                    ),
                )
                await db.commit()
            logger.debug("Email saved", email_id=email.id)

        except aiosqlite.Error as e:
            logger.error("Failed to save email", email_id=email.id, error=str(e))
            raise DatabaseError(f"Failed to save email {email.id}: {e}") from e

    async def get_email(self, email_id: str) -> EmailRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
                row = await cursor.fetchone()
                return self._row_to_email(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get email {email_id}: {e}") from e

    async def get_unscored_emails(self, user_id: str, limit: int = 100) -> list[EmailRecord]:
        """Emails ingested for a user that have no score record yet."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT e.* FROM emails e
                    LEFT JOIN email_scores s ON s.email_id = e.id
                    WHERE e.user_id = ? AND s.email_id IS NULL
                    ORDER BY e.received_at DESC
                    LIMIT ?
                    """,
                    (user_id, limit),
                )
                return [self._row_to_email(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list unscored emails for {user_id}: {e}") from e

    def _row_to_email(self, row: aiosqlite.Row) -> EmailRecord:
        return EmailRecord(
            id=row["id"],
            user_id=row["user_id"],
            thread_id=row["thread_id"],
            subject=row["subject"] or "",
            sender_email=row["sender_email"],
            sender_name=row["sender_name"],
            snippet=row["snippet"] or "",
            received_at=_parse_dt(row["received_at"]),
            is_important=bool(row["is_important"]),
            is_starred=bool(row["is_starred"]),
            is_unread=bool(row["is_unread"]),
            has_attachments=bool(row["has_attachments"]),
            labels=tuple(_loads(row["labels_json"], [])),
        )

    # =========================================================================
    # Score Operations
    # =========================================================================

    async def save_score(self, score: ScoreRecord) -> None:
        """Insert or replace the score record for an email.

        Raises:
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO email_scores (
                        email_id, user_id, raw_score, final_score, processing_tier,
                        factors_json, ai_processed, ai_status, ai_result_json,
                        category_override, scored_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email_id) DO UPDATE SET
                        raw_score = excluded.raw_score,
                        final_score = excluded.final_score,
                        processing_tier = excluded.processing_tier,
                        factors_json = excluded.factors_json,
                        ai_processed = excluded.ai_processed,
                        ai_status = excluded.ai_status,
                        ai_result_json = excluded.ai_result_json,
                        category_override = COALESCE(
                            excluded.category_override, email_scores.category_override
                        ),
                        scored_at = excluded.scored_at
                    """,
                    (
                        score.email_id,
                        score.user_id,
                        score.raw_score,
                        score.final_score,
                        score.processing_tier,
                        json.dumps(score.factors.to_dict()),
                        1 if score.ai_processed else 0,
                        score.ai_status,
                        json.dumps(score.ai_result.to_dict()) if score.ai_result else None,
                        score.category_override,
                        _to_iso(score.scored_at or datetime.now(UTC)),
                    ),
                )
                await db.commit()
            logger.debug(
                "Score saved",
                email_id=score.email_id,
                tier=score.processing_tier,
                ai_status=score.ai_status,
            )

        except aiosqlite.Error as e:
            logger.error("Failed to save score", email_id=score.email_id, error=str(e))
            raise DatabaseError(f"Failed to save score for {score.email_id}: {e}") from e

    async def get_score(self, email_id: str) -> ScoreRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT s.user_id, {_SCORE_COLUMNS}
                    FROM email_scores s WHERE s.email_id = ?
                    """,
                    (email_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_score(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get score for {email_id}: {e}") from e

    async def update_score_ai(
        self,
        email_id: str,
        ai_status: AIStatus,
        ai_result: AIAnalysis | None = None,
    ) -> None:
        """Record the AI outcome for an already-scored email.

        ai_processed is set exactly when an analysis result is stored.
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE email_scores
                    SET ai_status = ?, ai_processed = ?, ai_result_json = ?
                    WHERE email_id = ?
                    """,
                    (
                        ai_status,
                        1 if ai_result is not None else 0,
                        json.dumps(ai_result.to_dict()) if ai_result else None,
                        email_id,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to update AI status", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to update AI status for {email_id}: {e}") from e

    async def set_category_override(self, email_id: str, category: str) -> bool:
        """Store a user category correction. Returns False if the email is unscored."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE email_scores SET category_override = ? WHERE email_id = ?",
                    (category, email_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to set category for {email_id}: {e}") from e

    async def get_scored_emails_by_status(
        self,
        ai_status: AIStatus,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[tuple[EmailRecord, ScoreRecord]]:
        """Scored emails with a given AI status, highest score first."""
        query = f"""
            SELECT e.*, {_SCORE_COLUMNS}
            FROM email_scores s JOIN emails e ON e.id = s.email_id
            WHERE s.ai_status = ?
        """
        params: list[Any] = [ai_status]
        if user_id is not None:
            query += " AND s.user_id = ?"
            params.append(user_id)
        query += " ORDER BY s.final_score DESC, e.received_at ASC LIMIT ?"
        params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [(self._row_to_email(row), self._row_to_score(row)) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list scores with status {ai_status}: {e}") from e

    async def get_low_tier_emails(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> list[tuple[EmailRecord, ScoreRecord]]:
        """Low-tier scored emails received in [start, end)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT e.*, {_SCORE_COLUMNS}
                    FROM email_scores s JOIN emails e ON e.id = s.email_id
                    WHERE s.user_id = ? AND s.processing_tier = 'low'
                      AND e.received_at >= ? AND e.received_at < ?
                    ORDER BY e.received_at ASC
                    """,
                    (user_id, _to_iso(start), _to_iso(end)),
                )
                rows = await cursor.fetchall()
                return [(self._row_to_email(row), self._row_to_score(row)) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list low-tier emails for {user_id}: {e}") from e

    def _row_to_score(self, row: aiosqlite.Row) -> ScoreRecord:
        ai_data = _loads(row["ai_result_json"], None)
        return ScoreRecord(
            email_id=row["email_id"],
            user_id=row["user_id"],
            raw_score=row["raw_score"],
            final_score=row["final_score"],
            processing_tier=row["processing_tier"],
            factors=FactorBreakdown.from_dict(_loads(row["factors_json"], {})),
            ai_processed=bool(row["ai_processed"]),
            ai_status=row["ai_status"],
            ai_result=AIAnalysis.from_dict(ai_data) if ai_data else None,
            category_override=row["category_override"],
            scored_at=_parse_dt(row["scored_at"]),
        )

    # =========================================================================
    # VIP Sender Operations
    # =========================================================================

    async def get_vip_senders(
        self,
        user_id: str,
        status: VIPStatus | None = None,
    ) -> list[VIPSender]:
        query = "SELECT * FROM vip_senders WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY confidence_score DESC, sender_email"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_vip(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list VIP senders for {user_id}: {e}") from e

    async def get_vip_sender(self, user_id: str, sender_email: str) -> VIPSender | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM vip_senders WHERE user_id = ? AND sender_email = ?",
                    (user_id, sender_email),
                )
                row = await cursor.fetchone()
                return self._row_to_vip(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get VIP sender {sender_email}: {e}") from e

    async def upsert_vip_sender(self, vip: VIPSender) -> VIPSender:
        """Insert or update a VIP sender keyed by (user_id, sender_email).

        Returns:
            The stored row, including its id and timestamps
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO vip_senders (
                        user_id, sender_email, sender_name, score_boost, auto_category,
                        confidence_score, usage_count, status, learned, last_used_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, sender_email) DO UPDATE SET
                        sender_name = COALESCE(excluded.sender_name, vip_senders.sender_name),
                        score_boost = excluded.score_boost,
                        auto_category = excluded.auto_category,
                        confidence_score = excluded.confidence_score,
                        usage_count = excluded.usage_count,
                        status = excluded.status,
                        learned = excluded.learned,
                        last_used_at = excluded.last_used_at
                    """,
                    (
                        vip.user_id,
                        vip.sender_email,
                        vip.sender_name,
                        vip.score_boost,
                        vip.auto_category,
                        vip.confidence_score,
                        vip.usage_count,
                        vip.status,
                        1 if vip.learned else 0,
                        _to_iso(vip.last_used_at),
                    ),
                )
                await db.commit()
                cursor = await db.execute(
                    "SELECT * FROM vip_senders WHERE user_id = ? AND sender_email = ?",
                    (vip.user_id, vip.sender_email),
                )
                row = await cursor.fetchone()
            logger.debug(
                "VIP sender saved",
                user_id=vip.user_id,
                sender=vip.sender_email,
                status=vip.status,
            )
            return self._row_to_vip(row)

        except aiosqlite.Error as e:
            logger.error("Failed to save VIP sender", sender=vip.sender_email, error=str(e))
            raise DatabaseError(f"Failed to save VIP sender {vip.sender_email}: {e}") from e

    async def delete_vip_sender(self, user_id: str, sender_email: str) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM vip_senders WHERE user_id = ? AND sender_email = ?",
                    (user_id, sender_email),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to delete VIP sender {sender_email}: {e}") from e

    async def record_vip_usage(self, user_id: str, sender_email: str, when: datetime) -> None:
        """Bump usage_count and last_used_at after a VIP boost was applied."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE vip_senders
                    SET usage_count = usage_count + 1, last_used_at = ?
                    WHERE user_id = ? AND sender_email = ?
                    """,
                    (_to_iso(when), user_id, sender_email),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record VIP usage for {sender_email}: {e}") from e

    def _row_to_vip(self, row: aiosqlite.Row) -> VIPSender:
        return VIPSender(
            id=row["id"],
            user_id=row["user_id"],
            sender_email=row["sender_email"],
            sender_name=row["sender_name"],
            score_boost=row["score_boost"],
            auto_category=row["auto_category"],
            confidence_score=row["confidence_score"],
            usage_count=row["usage_count"],
            status=row["status"],
            learned=bool(row["learned"]),
            created_at=_parse_dt(row["created_at"]),
            last_used_at=_parse_dt(row["last_used_at"]),
        )

    # =========================================================================
    # Learned Pattern Operations
    # =========================================================================

    async def get_confident_patterns(
        self,
        user_id: str,
        min_confidence: float = 0.5,
        min_samples: int = 2,
    ) -> list[LearnedPattern]:
        """Patterns allowed to influence scoring (confidence > min, samples >= min)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM learned_patterns
                    WHERE user_id = ? AND confidence_score > ? AND sample_count >= ?
                    ORDER BY pattern_type, pattern_value
                    """,
                    (user_id, min_confidence, min_samples),
                )
                return [self._row_to_pattern(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to load patterns for {user_id}: {e}") from e

    async def get_patterns(self, user_id: str, limit: int = 200) -> list[LearnedPattern]:
        """All patterns for a user, strongest absolute impact first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM learned_patterns WHERE user_id = ?
                    ORDER BY ABS(score_impact) DESC LIMIT ?
                    """,
                    (user_id, limit),
                )
                return [self._row_to_pattern(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list patterns for {user_id}: {e}") from e

    async def get_pattern(
        self,
        user_id: str,
        pattern_type: PatternType,
        pattern_value: str,
    ) -> LearnedPattern | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM learned_patterns
                    WHERE user_id = ? AND pattern_type = ? AND pattern_value = ?
                    """,
                    (user_id, pattern_type, pattern_value),
                )
                row = await cursor.fetchone()
                return self._row_to_pattern(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get pattern {pattern_type}:{pattern_value}: {e}") from e

    async def save_pattern(self, pattern: LearnedPattern) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO learned_patterns (
                        user_id, pattern_type, pattern_value, score_impact,
                        confidence_score, sample_count, positive_count, success_rate,
                        last_seen_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, pattern_type, pattern_value) DO UPDATE SET
                        score_impact = excluded.score_impact,
                        confidence_score = excluded.confidence_score,
                        sample_count = excluded.sample_count,
                        positive_count = excluded.positive_count,
                        success_rate = excluded.success_rate,
                        last_seen_at = excluded.last_seen_at
                    """,
                    (
                        pattern.user_id,
                        pattern.pattern_type,
                        pattern.pattern_value,
                        pattern.score_impact,
                        pattern.confidence_score,
                        pattern.sample_count,
                        pattern.positive_count,
                        pattern.success_rate,
                        _to_iso(pattern.last_seen_at),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error(
                "Failed to save pattern",
                pattern_type=pattern.pattern_type,
                pattern_value=pattern.pattern_value,
                error=str(e),
            )
            raise DatabaseError(f"Failed to save pattern {pattern.pattern_value}: {e}") from e

    def _row_to_pattern(self, row: aiosqlite.Row) -> LearnedPattern:
        return LearnedPattern(
            id=row["id"],
            user_id=row["user_id"],
            pattern_type=row["pattern_type"],
            pattern_value=row["pattern_value"],
            score_impact=row["score_impact"],
            confidence_score=row["confidence_score"],
            sample_count=row["sample_count"],
            positive_count=row["positive_count"],
            success_rate=row["success_rate"],
            created_at=_parse_dt(row["created_at"]),
            last_seen_at=_parse_dt(row["last_seen_at"]),
        )

    # =========================================================================
    # Sender Stats Operations
    # =========================================================================

    async def get_sender_stats(
        self,
        user_id: str,
        scope: SenderScope,
        keys: Iterable[str],
    ) -> dict[str, SenderStats]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM sender_stats
                    WHERE user_id = ? AND scope = ? AND key IN ({placeholders})
                    """,
                    (user_id, scope, *keys),
                )
                return {row["key"]: self._row_to_stats(row) for row in await cursor.fetchall()}
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to load {scope} stats for {user_id}: {e}") from e

    async def record_sender_interaction(
        self,
        user_id: str,
        scope: SenderScope,
        key: str,
        outcome: Outcome,
        confidence_step: float,
        confidence_target: float | None,
        when: datetime,
    ) -> SenderStats:
        """Atomically count one interaction and move vip_confidence.

        vip_confidence moves by confidence_step toward confidence_target;
        a None target leaves it unchanged.
        """
        positive = 1 if outcome == "positive" else 0
        negative = 1 if outcome == "negative" else 0
        neutral = 1 if outcome == "neutral" else 0
        target = 0.5 if confidence_target is None else confidence_target
        step = 0.0 if confidence_target is None else confidence_step

        try:
            async with self._transaction() as db:
                await db.execute(
                    """
                    INSERT INTO sender_stats (
                        user_id, scope, key, positive_count, negative_count,
                        neutral_count, vip_confidence, last_action_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0.5 + ? * (? - 0.5), ?)
                    ON CONFLICT(user_id, scope, key) DO UPDATE SET
                        positive_count = sender_stats.positive_count + excluded.positive_count,
                        negative_count = sender_stats.negative_count + excluded.negative_count,
                        neutral_count = sender_stats.neutral_count + excluded.neutral_count,
                        vip_confidence = CASE WHEN ? = 0 THEN sender_stats.vip_confidence
                            ELSE sender_stats.vip_confidence
                                 + ? * (? - sender_stats.vip_confidence) END,
                        last_action_at = excluded.last_action_at
                    """,
                    (
                        user_id,
                        scope,
                        key,
                        positive,
                        negative,
                        neutral,
                        step,
                        target,
                        _to_iso(when),
                        step,
                        step,
                        target,
                    ),
                )
                cursor = await db.execute(
                    "SELECT * FROM sender_stats WHERE user_id = ? AND scope = ? AND key = ?",
                    (user_id, scope, key),
                )
                row = await cursor.fetchone()
            return self._row_to_stats(row)

        except aiosqlite.Error as e:
            logger.error("Failed to record sender interaction", key=key, error=str(e))
            raise DatabaseError(f"Failed to record interaction for {key}: {e}") from e

    def _row_to_stats(self, row: aiosqlite.Row) -> SenderStats:
        return SenderStats(
            user_id=row["user_id"],
            scope=row["scope"],
            key=row["key"],
            positive_count=row["positive_count"],
            negative_count=row["negative_count"],
            neutral_count=row["neutral_count"],
            vip_confidence=row["vip_confidence"],
            last_action_at=_parse_dt(row["last_action_at"]),
        )

    # =========================================================================
    # User Preferences
    # =========================================================================

    async def get_user_preferences(self, user_id: str) -> dict[str, Any] | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT preferences_json FROM user_preferences WHERE user_id = ?",
                    (user_id,),
                )
                row = await cursor.fetchone()
                return _loads(row["preferences_json"], None) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to load preferences for {user_id}: {e}") from e

    async def save_user_preferences(self, user_id: str, preferences: dict[str, Any]) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO user_preferences (user_id, preferences_json, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(user_id) DO UPDATE SET
                        preferences_json = excluded.preferences_json,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (user_id, json.dumps(preferences)),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to save preferences for {user_id}: {e}") from e

    # =========================================================================
    # AI Budget Ledger
    # =========================================================================

    async def _ensure_budget_row(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        daily_window: str,
        monthly_window: str,
        daily_limit_cents: int,
        monthly_limit_cents: int,
        alert_threshold_percent: int,
    ) -> None:
        """Create the ledger row if missing and roll expired windows.

        Must run inside a transaction. A window resets only when its stored
        key differs from the current one, so each boundary resets once.
        """
        await db.execute(
            """
            INSERT INTO ai_budgets (
                user_id, daily_limit_cents, daily_window,
                monthly_limit_cents, monthly_window, alert_threshold_percent
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (
                user_id,
                daily_limit_cents,
                daily_window,
                monthly_limit_cents,
                monthly_window,
                alert_threshold_percent,
            ),
        )
        await db.execute(
            """
            UPDATE ai_budgets
            SET daily_used_cents = 0, daily_window = ?, reserved_cents = 0,
                updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND daily_window != ?
            """,
            (daily_window, user_id, daily_window),
        )
        await db.execute(
            """
            UPDATE ai_budgets
            SET monthly_used_cents = 0, monthly_window = ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND monthly_window != ?
            """,
            (monthly_window, user_id, monthly_window),
        )

    async def _fetch_budget(self, db: aiosqlite.Connection, user_id: str) -> BudgetEntry:
        cursor = await db.execute("SELECT * FROM ai_budgets WHERE user_id = ?", (user_id,))
        return self._row_to_budget(await cursor.fetchone())

    async def get_budget_entry(
        self,
        user_id: str,
        daily_window: str,
        monthly_window: str,
        daily_limit_cents: int,
        monthly_limit_cents: int,
        alert_threshold_percent: int,
    ) -> BudgetEntry:
        """Return the ledger row, creating it or rolling its windows first."""
        try:
            async with self._transaction() as db:
                await self._ensure_budget_row(
                    db,
                    user_id,
                    daily_window,
                    monthly_window,
                    daily_limit_cents,
                    monthly_limit_cents,
                    alert_threshold_percent,
                )
                return await self._fetch_budget(db, user_id)
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to load budget for {user_id}: {e}") from e

    async def try_reserve_budget(
        self,
        user_id: str,
        amount_cents: int,
        enforce_limit: bool,
        daily_window: str,
        monthly_window: str,
        daily_limit_cents: int,
        monthly_limit_cents: int,
        alert_threshold_percent: int,
    ) -> tuple[bool, BudgetEntry]:
        """Atomically place a hold of amount_cents if the budget allows it.

        With enforce_limit, the hold is granted only while settled spend plus
        outstanding holds is below both the daily and monthly limits. The
        check and the increment are one conditional UPDATE inside one
        BEGIN IMMEDIATE transaction.

        Returns:
            Tuple of (granted, ledger row after the attempt)
        """
        try:
            async with self._transaction() as db:
                await self._ensure_budget_row(
                    db,
                    user_id,
                    daily_window,
                    monthly_window,
                    daily_limit_cents,
                    monthly_limit_cents,
                    alert_threshold_percent,
                )
                if enforce_limit:
                    cursor = await db.execute(
                        """
                        UPDATE ai_budgets
                        SET reserved_cents = reserved_cents + ?, updated_at = CURRENT_TIMESTAMP
                        WHERE user_id = ?
                          AND daily_used_cents + reserved_cents < daily_limit_cents
                          AND monthly_used_cents + reserved_cents < monthly_limit_cents
                        """,
                        (amount_cents, user_id),
                    )
                else:
                    cursor = await db.execute(
                        """
                        UPDATE ai_budgets
                        SET reserved_cents = reserved_cents + ?, updated_at = CURRENT_TIMESTAMP
                        WHERE user_id = ?
                        """,
                        (amount_cents, user_id),
                    )
                granted = cursor.rowcount > 0
                return granted, await self._fetch_budget(db, user_id)

        except aiosqlite.Error as e:
            logger.error("Budget reservation failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to reserve budget for {user_id}: {e}") from e

    async def settle_budget(
        self,
        user_id: str,
        held_cents: int,
        charged_cents: int,
        daily_window: str,
        monthly_window: str,
        daily_limit_cents: int,
        monthly_limit_cents: int,
        alert_threshold_percent: int,
    ) -> BudgetEntry:
        """Drop a hold and add the incurred charge to both accumulators.

        Holds taken in an earlier daily window were already cleared by the
        roll, so the hold release is floored at zero.
        """
        try:
            async with self._transaction() as db:
                await self._ensure_budget_row(
                    db,
                    user_id,
                    daily_window,
                    monthly_window,
                    daily_limit_cents,
                    monthly_limit_cents,
                    alert_threshold_percent,
                )
                await db.execute(
                    """
                    UPDATE ai_budgets
                    SET reserved_cents = MAX(0, reserved_cents - ?),
                        daily_used_cents = daily_used_cents + ?,
                        monthly_used_cents = monthly_used_cents + ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE user_id = ?
                    """,
                    (held_cents, charged_cents, charged_cents, user_id),
                )
                return await self._fetch_budget(db, user_id)

        except aiosqlite.Error as e:
            logger.error("Budget settlement failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to settle budget for {user_id}: {e}") from e

    async def set_budget_limits(
        self,
        user_id: str,
        daily_limit_cents: int | None = None,
        monthly_limit_cents: int | None = None,
        alert_threshold_percent: int | None = None,
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE ai_budgets
                    SET daily_limit_cents = COALESCE(?, daily_limit_cents),
                        monthly_limit_cents = COALESCE(?, monthly_limit_cents),
                        alert_threshold_percent = COALESCE(?, alert_threshold_percent),
                        updated_at = CURRENT_TIMESTAMP
                    WHERE user_id = ?
                    """,
                    (daily_limit_cents, monthly_limit_cents, alert_threshold_percent, user_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update budget limits for {user_id}: {e}") from e

    async def roll_budget_windows(self, daily_window: str, monthly_window: str) -> int:
        """Reset every ledger row whose window has expired.

        Returns:
            Number of rows with at least one window reset
        """
        try:
            async with self._transaction() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM ai_budgets
                    WHERE daily_window != ? OR monthly_window != ?
                    """,
                    (daily_window, monthly_window),
                )
                count = (await cursor.fetchone())[0]
                await db.execute(
                    """
                    UPDATE ai_budgets
                    SET daily_used_cents = 0, daily_window = ?, reserved_cents = 0,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE daily_window != ?
                    """,
                    (daily_window, daily_window),
                )
                await db.execute(
                    """
                    UPDATE ai_budgets
                    SET monthly_used_cents = 0, monthly_window = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE monthly_window != ?
                    """,
                    (monthly_window, monthly_window),
                )
                return count
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to roll budget windows: {e}") from e

    def _row_to_budget(self, row: aiosqlite.Row) -> BudgetEntry:
        return BudgetEntry(
            user_id=row["user_id"],
            daily_used_cents=row["daily_used_cents"],
            daily_limit_cents=row["daily_limit_cents"],
            daily_window=row["daily_window"],
            monthly_used_cents=row["monthly_used_cents"],
            monthly_limit_cents=row["monthly_limit_cents"],
            monthly_window=row["monthly_window"],
            reserved_cents=row["reserved_cents"],
            alert_threshold_percent=row["alert_threshold_percent"],
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # User Actions (feedback audit)
    # =========================================================================

    async def record_user_action(
        self,
        user_id: str,
        action: str,
        email_id: str | None = None,
        sender_email: str | None = None,
        context: dict[str, Any] | None = None,
        action_id: str | None = None,
    ) -> bool:
        """Append a feedback event.

        Returns:
            False if action_id was already recorded for this user (duplicate)
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO user_actions (
                        user_id, email_id, sender_email, action, context_json, action_id
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, action_id) DO NOTHING
                    """,
                    (
                        user_id,
                        email_id,
                        sender_email,
                        action,
                        json.dumps(context) if context else None,
                        action_id,
                    ),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("Failed to record user action", action=action, error=str(e))
            raise DatabaseError(f"Failed to record action {action}: {e}") from e

    async def release_user_action(self, user_id: str, action_id: str) -> None:
        """Forget a claimed action_id so the same action can be recorded again."""
        try:
            async with self._db() as db:
                await db.execute(
                    "DELETE FROM user_actions WHERE user_id = ? AND action_id = ?",
                    (user_id, action_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to release user action", action_id=action_id, error=str(e))
            raise DatabaseError(f"Failed to release action {action_id}: {e}") from e

    async def get_user_actions(self, user_id: str, limit: int = 100) -> list[UserAction]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM user_actions WHERE user_id = ?
                    ORDER BY created_at DESC, id DESC LIMIT ?
                    """,
                    (user_id, limit),
                )
                return [
                    UserAction(
                        id=row["id"],
                        user_id=row["user_id"],
                        action=row["action"],
                        email_id=row["email_id"],
                        sender_email=row["sender_email"],
                        context=_loads(row["context_json"], {}),
                        action_id=row["action_id"],
                        created_at=_parse_dt(row["created_at"]),
                    )
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list actions for {user_id}: {e}") from e

    # =========================================================================
    # Weekly Digest Operations
    # =========================================================================

    async def get_weekly_digest(self, user_id: str, week_start: date) -> WeeklyDigest | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM weekly_digests WHERE user_id = ? AND week_start = ?",
                    (user_id, week_start.isoformat()),
                )
                row = await cursor.fetchone()
                return self._row_to_digest(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get digest for {user_id} {week_start}: {e}") from e

    async def get_weekly_digest_by_id(self, digest_id: int) -> WeeklyDigest | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM weekly_digests WHERE id = ?",
                    (digest_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_digest(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get digest {digest_id}: {e}") from e

    async def save_weekly_digest(self, digest: WeeklyDigest) -> WeeklyDigest:
        """Write a fully built digest in one transaction, replacing any prior row.

        Actions already recorded against the week survive a regeneration.

        Returns:
            The stored digest with id and generated_at populated
        """
        try:
            async with self._transaction() as db:
                await db.execute(
                    """
                    INSERT INTO weekly_digests (
                        user_id, week_start, week_end, categories_json,
                        safe_to_unsubscribe_json, needs_review_json, bulk_actions_json,
                        user_actions_json, total_low_priority_emails,
                        estimated_cost_savings_cents, errors_json, generated_at,
                        actions_completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, week_start) DO UPDATE SET
                        week_end = excluded.week_end,
                        categories_json = excluded.categories_json,
                        safe_to_unsubscribe_json = excluded.safe_to_unsubscribe_json,
                        needs_review_json = excluded.needs_review_json,
                        bulk_actions_json = excluded.bulk_actions_json,
                        total_low_priority_emails = excluded.total_low_priority_emails,
                        estimated_cost_savings_cents = excluded.estimated_cost_savings_cents,
                        errors_json = excluded.errors_json,
                        generated_at = excluded.generated_at
                    """,
                    (
                        digest.user_id,
                        digest.week_start.isoformat(),
                        digest.week_end.isoformat(),
                        json.dumps(digest.categories),
                        json.dumps(digest.safe_to_unsubscribe),
                        json.dumps(digest.needs_review),
                        json.dumps(digest.bulk_actions),
                        json.dumps(digest.user_actions),
                        digest.total_low_priority_emails,
                        digest.estimated_cost_savings_cents,
                        json.dumps(digest.errors) if digest.errors else None,
                        _to_iso(digest.generated_at or datetime.now(UTC)),
                        _to_iso(digest.actions_completed_at),
                    ),
                )
                cursor = await db.execute(
                    "SELECT * FROM weekly_digests WHERE user_id = ? AND week_start = ?",
                    (digest.user_id, digest.week_start.isoformat()),
                )
                row = await cursor.fetchone()
            return self._row_to_digest(row)

        except aiosqlite.Error as e:
            logger.error("Failed to save weekly digest", user_id=digest.user_id, error=str(e))
            raise DatabaseError(
                f"Failed to save digest for {digest.user_id} {digest.week_start}: {e}"
            ) from e

    async def update_digest_user_actions(
        self,
        digest_id: int,
        user_actions: dict[str, list[str]],
        completed_at: datetime,
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE weekly_digests
                    SET user_actions_json = ?, actions_completed_at = ?
                    WHERE id = ?
                    """,
                    (json.dumps(user_actions), _to_iso(completed_at), digest_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update actions for digest {digest_id}: {e}") from e

    def _row_to_digest(self, row: aiosqlite.Row) -> WeeklyDigest:
        return WeeklyDigest(
            id=row["id"],
            user_id=row["user_id"],
            week_start=date.fromisoformat(row["week_start"]),
            week_end=date.fromisoformat(row["week_end"]),
            categories=_loads(row["categories_json"], {}),
            safe_to_unsubscribe=_loads(row["safe_to_unsubscribe_json"], []),
            needs_review=_loads(row["needs_review_json"], []),
            bulk_actions=_loads(row["bulk_actions_json"], []),
            user_actions=_loads(row["user_actions_json"], {"unsubscribed": [], "marked_keep": []}),
            total_low_priority_emails=row["total_low_priority_emails"],
            estimated_cost_savings_cents=row["estimated_cost_savings_cents"],
            errors=_loads(row["errors_json"], []),
            generated_at=_parse_dt(row["generated_at"]),
            actions_completed_at=_parse_dt(row["actions_completed_at"]),
        )

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]] | None,
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cost_cents: float | None = None,
        duration_ms: int | None = None,
        email_id: str | None = None,
        user_id: str | None = None,
        attempt: int | None = None,
        error: str | None = None,
        task_type: str = "analyze",
    ) -> int:
        """Log one LLM attempt for debugging and cost audit.

        Logging failures are swallowed after a warning; they must never fail
        the analysis they describe.

        Returns:
            The log entry ID, or -1 if the write failed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, email_id, user_id, run_id, attempt,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, cost_cents, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        email_id,
                        user_id,
                        get_correlation_id(),
                        attempt,
                        json.dumps(prompt) if prompt is not None else None,
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        cost_cents,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.warning("Failed to log LLM request", model=model, error=str(e))
            return -1

    async def get_llm_logs(
        self,
        email_id: str | None = None,
        limit: int = 50,
    ) -> list[LLMLogEntry]:
        query = "SELECT * FROM llm_request_log"
        params: list[Any] = []
        if email_id is not None:
            query += " WHERE email_id = ?"
            params.append(email_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [
                    LLMLogEntry(
                        id=row["id"],
                        timestamp=_parse_dt(row["timestamp"]),
                        task_type=row["task_type"],
                        model=row["model"],
                        email_id=row["email_id"],
                        user_id=row["user_id"],
                        run_id=row["run_id"],
                        attempt=row["attempt"],
                        tool_call_json=_loads(row["tool_call_json"], None),
                        input_tokens=row["input_tokens"],
                        output_tokens=row["output_tokens"],
                        cost_cents=row["cost_cents"],
                        duration_ms=row["duration_ms"],
                        error=row["error"],
                    )
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to read LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM log rows older than the retention window."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < datetime('now', ?)",
                    (f"-{retention_days} days",),
                )
                await db.commit()
                deleted = cursor.rowcount
            if deleted:
                logger.info(
                    "Pruned LLM request logs", deleted=deleted, retention_days=retention_days
                )
            return deleted
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e
