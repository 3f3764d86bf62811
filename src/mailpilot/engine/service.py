"""Intelligence service: the public facade over scoring, routing and learning.

Pipeline per inbound email (score_email):
1. Validate the inbound dict at the boundary (InboundEmail)
2. Persist the email
3. Load the user's preferences and scoring profile
4. Score it with the deterministic engine and persist the rule-based score,
   keeping any AI outcome already stored for a re-delivered email
5. Route it (AI analysis for high/medium under budget and breaker control);
   an email that already has an AI result is not routed again
6. Persist the final score record

Batch work (draining the queued medium tier, backfilling unscored mail)
runs under an asyncio.Semaphore sized by processing.batch_concurrency.
Database writes are retried a bounded number of times before the error
propagates.

Usage:
    from mailpilot.engine.service import IntelligenceService

    service = IntelligenceService(store, config, anthropic.AsyncAnthropic(max_retries=0))
    score = await service.score_email({"id": "m1", "user_id": "u1", ...})
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mailpilot.classifier.ai_analyzer import AIAnalyzer
from mailpilot.classifier.pattern_learner import FeedbackLoop
from mailpilot.classifier.scoring import (
    MIN_PATTERN_CONFIDENCE,
    MIN_PATTERN_SAMPLES,
    ScoringEngine,
    ScoringProfile,
)
from mailpilot.classifier.signals import extract_domain, normalize_sender
from mailpilot.config import format_validation_errors
from mailpilot.config_schema import UserPreferences
from mailpilot.core.circuit_breaker import CircuitBreaker
from mailpilot.core.errors import (
    ConfigValidationError,
    DatabaseError,
    EmailValidationError,
    InvalidActionError,
)
from mailpilot.core.logging import get_logger, run_scope, user_scope
from mailpilot.db.store import MAX_SNIPPET_LENGTH, EmailRecord, VIPSender
from mailpilot.engine.budget import BudgetLedger
from mailpilot.engine.router import TierRouter
from mailpilot.engine.weekly_digest import WeeklyDigestBuilder

if TYPE_CHECKING:
    import anthropic

    from mailpilot.classifier.categories import CategoryClassifier
    from mailpilot.classifier.pattern_learner import FeedbackResult
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import DatabaseStore, ScoreRecord, VIPStatus, WeeklyDigest
    from mailpilot.engine.budget import BudgetAlert, BudgetStatus

logger = get_logger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Ingestion boundary
# ---------------------------------------------------------------------------


class InboundEmail(BaseModel):
    """An inbound email as delivered by the ingestion layer."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    id: str = Field(min_length=1, max_length=512)
    user_id: str = Field(min_length=1, max_length=256)
    sender_email: str = Field(min_length=3, max_length=320)
    sender_name: str | None = None
    subject: str = ""
    thread_id: str | None = None
    snippet: str = ""
    received_at: datetime | None = None
    is_important: bool = False
    is_starred: bool = False
    is_unread: bool = True
    has_attachments: bool = False
    labels: list[str] = Field(default_factory=list)

    @field_validator("sender_email")
    @classmethod
    def validate_sender(cls, v: str) -> str:
        local, _, domain = v.rpartition("@")
        if not local or "." not in domain:
            raise ValueError(f"'{v}' is not a valid email address")
        return v

    @field_validator("snippet")
    @classmethod
    def truncate_snippet(cls, v: str) -> str:
        return v[:MAX_SNIPPET_LENGTH]

    @field_validator("received_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def to_record(self) -> EmailRecord:
        return EmailRecord(
            id=self.id,
            user_id=self.user_id,
            sender_email=self.sender_email,
            sender_name=self.sender_name,
            subject=self.subject,
            thread_id=self.thread_id,
            snippet=self.snippet,
            received_at=self.received_at,
            is_important=self.is_important,
            is_starred=self.is_starred,
            is_unread=self.is_unread,
            has_attachments=self.has_attachments,
            labels=tuple(self.labels),
        )


def validate_inbound(raw: dict[str, Any] | InboundEmail) -> EmailRecord:
    """Validate an inbound email dict.

    Raises:
        EmailValidationError: With the offending field when validation fails
    """
    if isinstance(raw, InboundEmail):
        return raw.to_record()
    try:
        return InboundEmail.model_validate(raw).to_record()
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(loc) for loc in first["loc"]) or None
        email_id = raw.get("id") if isinstance(raw, dict) else None
        raise EmailValidationError(
            f"Inbound email rejected:\n{format_validation_errors(e)}",
            email_id=str(email_id) if email_id else None,
            field=field_name,
        ) from e


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Result of a batch run (queue drain or backfill)."""

    run_id: str
    processed: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


class IntelligenceService:
    """Facade exposing the email intelligence operations.

    Args:
        store: Initialized database store
        config: Application configuration
        anthropic_client: Async Anthropic client (construct with max_retries=0);
            only needed when no analyzer is injected
        analyzer, breaker, ledger: Optional injected collaborators (tests)
        category_classifier: Digest category strategy
        clock: Returns the current UTC time
        on_budget_alert: Callback for budget threshold alerts
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        anthropic_client: anthropic.AsyncAnthropic | None = None,
        *,
        analyzer: AIAnalyzer | None = None,
        breaker: CircuitBreaker | None = None,
        ledger: BudgetLedger | None = None,
        category_classifier: CategoryClassifier | None = None,
        clock: Callable[[], datetime] | None = None,
        on_budget_alert: Callable[[BudgetAlert], Any] | None = None,
    ) -> None:
        if analyzer is None:
            if anthropic_client is None:
                raise ValueError("Either anthropic_client or analyzer is required")
            analyzer = AIAnalyzer(anthropic_client, store, config)

        self._store = store
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._engine = ScoringEngine(config.scoring)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=config.circuit_breaker.failure_threshold,
            window_seconds=config.circuit_breaker.window_seconds,
            cooldown_seconds=config.circuit_breaker.cooldown_seconds,
        )
        self.ledger = ledger or BudgetLedger(
            store, config.budget, clock=self._clock, on_alert=on_budget_alert
        )
        self.router = TierRouter(analyzer, self.ledger, self.breaker)
        self.feedback = FeedbackLoop(store, config, clock=self._clock)
        self.digests = WeeklyDigestBuilder(
            store, config, self.feedback, category_classifier, clock=self._clock
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def score_email(
        self,
        raw: dict[str, Any] | InboundEmail,
        allow_sync_medium: bool = True,
    ) -> ScoreRecord:
        """Validate, score, route and persist one inbound email.

        Raises:
            EmailValidationError: The inbound email is malformed
            DatabaseError: Persistence failed after retries
        """
        email = validate_inbound(raw)
        with user_scope(email.user_id):
            await self._with_db_retry(self._store.save_email, email)
            return await self._score_and_route(email, allow_sync_medium)

    async def get_score(self, email_id: str) -> ScoreRecord | None:
        return await self._store.get_score(email_id)

    async def explain_score(self, email_id: str) -> dict[str, Any] | None:
        """Stored score plus the keyword and content signals found in the email."""
        score = await self._store.get_score(email_id)
        email = await self._store.get_email(email_id)
        if score is None or email is None:
            return None
        explanation = score.to_dict()
        explanation["signals"] = self._engine.matched_signals(email)
        return explanation

    async def _score_and_route(self, email: EmailRecord, allow_sync_medium: bool) -> ScoreRecord:
        prefs = await self.get_preferences(email.user_id)
        profile = await self._load_profile(email, prefs)
        now = self._clock()

        existing = await self._store.get_score(email.id)
        score = self._engine.score(email, profile, now)
        if existing is not None:
            # Re-delivery keeps whatever AI outcome is already stored
            score = replace(
                score,
                ai_processed=existing.ai_processed,
                ai_status=existing.ai_status,
                ai_result=existing.ai_result,
                category_override=existing.category_override,
            )
        await self._with_db_retry(self._store.save_score, score)

        if existing is not None and existing.ai_result is not None:
            logger.info(
                "email_rescored",
                email_id=email.id,
                user_id=email.user_id,
                final_score=score.final_score,
                tier=score.processing_tier,
            )
            return score

        if score.factors.vip_boost and existing is None:
            await self._with_db_retry(
                self._store.record_vip_usage,
                email.user_id,
                normalize_sender(email.sender_email),
                now,
            )

        decision = await self.router.route(email, score, prefs, allow_sync_medium)
        await self._with_db_retry(self._store.save_score, decision.score)

        logger.info(
            "email_processed",
            email_id=email.id,
            user_id=email.user_id,
            final_score=decision.score.final_score,
            tier=decision.tier,
            ai_status=decision.ai_decision,
        )
        return decision.score

    async def _load_profile(self, email: EmailRecord, prefs: UserPreferences) -> ScoringProfile:
        user_id = email.user_id
        sender = normalize_sender(email.sender_email)
        domain = extract_domain(sender)

        vips = await self._store.get_vip_senders(user_id, status="active")
        patterns = []
        if prefs.enable_pattern_learning:
            patterns = await self._store.get_confident_patterns(
                user_id, MIN_PATTERN_CONFIDENCE, MIN_PATTERN_SAMPLES
            )

        return ScoringProfile(
            preferences=prefs,
            vip_senders={normalize_sender(v.sender_email): v for v in vips},
            patterns=patterns,
            sender_stats=await self._store.get_sender_stats(user_id, "sender", [sender]),
            domain_stats=await self._store.get_sender_stats(user_id, "domain", [domain]),
        )

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def process_queued(
        self,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> BatchResult:
        """Drain queued medium-tier emails through the router."""
        rows = await self._store.get_scored_emails_by_status(
            "queued", user_id=user_id, limit=limit or self._config.processing.batch_size
        )

        async def route_one(email: EmailRecord) -> str:
            prefs = await self.get_preferences(email.user_id)
            score = await self._store.get_score(email.id)
            if score is None:
                raise DatabaseError(f"Score for queued email {email.id} disappeared")
            decision = await self.router.route(email, score, prefs, allow_sync_medium=True)
            await self._with_db_retry(
                self._store.update_score_ai,
                email.id,
                decision.ai_decision,
                decision.score.ai_result,
            )
            return decision.ai_decision

        return await self._run_batch("process_queued", [email for email, _ in rows], route_one)

    async def backfill_scores(self, user_id: str, limit: int | None = None) -> BatchResult:
        """Score stored emails that have no score yet.

        Medium-tier results are queued rather than analyzed inline; drain
        them with process_queued().
        """
        emails = await self._store.get_unscored_emails(
            user_id, limit=limit or self._config.processing.batch_size
        )

        async def score_one(email: EmailRecord) -> str:
            score = await self._score_and_route(email, allow_sync_medium=False)
            return score.ai_status

        return await self._run_batch("backfill_scores", emails, score_one)

    async def _run_batch(
        self,
        name: str,
        emails: list[EmailRecord],
        work: Callable[[EmailRecord], Awaitable[str]],
    ) -> BatchResult:
        semaphore = asyncio.Semaphore(self._config.processing.batch_concurrency)
        statuses: Counter[str] = Counter()

        with run_scope() as run_id:
            started = datetime.now(UTC)
            result = BatchResult(run_id=run_id)

            async def guarded(email: EmailRecord) -> None:
                async with semaphore:
                    with user_scope(email.user_id):
                        try:
                            statuses[await work(email)] += 1
                            result.processed += 1
                        except DatabaseError as e:
                            logger.error(
                                "batch_email_failed", batch=name, email_id=email.id, error=str(e)
                            )
                            result.errors.append(f"{email.id}: {e}")

            logger.info("batch_started", batch=name, emails=len(emails))
            try:
                await asyncio.gather(*(guarded(email) for email in emails))
            finally:
                result.by_status = dict(statuses)
                result.duration_ms = int((datetime.now(UTC) - started).total_seconds() * 1000)
                logger.info(
                    "batch_complete",
                    batch=name,
                    processed=result.processed,
                    by_status=result.by_status,
                    errors=len(result.errors),
                    duration_ms=result.duration_ms,
                )
        return result

    # ------------------------------------------------------------------
    # Feedback and VIP senders
    # ------------------------------------------------------------------

    async def submit_feedback(
        self,
        user_id: str,
        email_id: str,
        action: str,
        context: dict[str, Any] | None = None,
        action_id: str | None = None,
    ) -> FeedbackResult:
        with user_scope(user_id):
            prefs = await self.get_preferences(user_id)
            return await self.feedback.record_action(
                user_id, email_id, action, context=context, action_id=action_id, preferences=prefs
            )

    async def list_vip_senders(
        self,
        user_id: str,
        status: VIPStatus | None = None,
    ) -> list[VIPSender]:
        return await self._store.get_vip_senders(user_id, status=status)

    async def upsert_vip_sender(
        self,
        user_id: str,
        sender_email: str,
        sender_name: str | None = None,
        score_boost: int = 30,
        auto_category: str | None = None,
    ) -> VIPSender:
        """Add or update an explicit (user-managed, active) VIP sender."""
        sender = normalize_sender(sender_email)
        if not extract_domain(sender):
            raise EmailValidationError(
                f"Invalid VIP sender address '{sender_email}'", field="sender_email"
            )
        if not 0 <= score_boost <= 50:
            raise InvalidActionError(f"score_boost must be between 0 and 50, got {score_boost}")

        existing = await self._store.get_vip_sender(user_id, sender)
        vip = VIPSender(
            user_id=user_id,
            sender_email=sender,
            sender_name=sender_name,
            score_boost=score_boost,
            auto_category=auto_category,
            confidence_score=1.0,
            usage_count=existing.usage_count if existing else 0,
            status="active",
            learned=False,
            last_used_at=existing.last_used_at if existing else None,
        )
        saved = await self._with_db_retry(self._store.upsert_vip_sender, vip)
        logger.info("vip_sender_upserted", user_id=user_id, sender=sender, score_boost=score_boost)
        return saved

    # ------------------------------------------------------------------
    # Weekly digest
    # ------------------------------------------------------------------

    async def generate_weekly_digest(
        self,
        user_id: str,
        week_start: date | None = None,
        force_regenerate: bool = False,
    ) -> WeeklyDigest | None:
        with user_scope(user_id):
            prefs = await self.get_preferences(user_id)
            return await self.digests.build(
                user_id,
                week_start or self._clock().date(),
                force_regenerate=force_regenerate,
                preferences=prefs,
            )

    async def execute_digest_actions(
        self,
        digest_id: int,
        actions: list[dict[str, Any]],
    ) -> WeeklyDigest:
        digest = await self._store.get_weekly_digest_by_id(digest_id)
        prefs = await self.get_preferences(digest.user_id) if digest else None
        return await self.digests.execute_actions(digest_id, actions, preferences=prefs)

    # ------------------------------------------------------------------
    # Budget and preferences
    # ------------------------------------------------------------------

    async def get_budget_status(self, user_id: str) -> BudgetStatus:
        prefs = await self.get_preferences(user_id)
        return await self.ledger.status(user_id, daily_limit_cents=prefs.daily_limit_cents)

    async def get_preferences(self, user_id: str) -> UserPreferences:
        """Stored preferences layered over the configured defaults."""
        stored = await self._store.get_user_preferences(user_id)
        if not stored:
            return self._config.defaults
        merged = self._config.defaults.model_dump()
        merged.update(stored)
        try:
            return UserPreferences.model_validate(merged)
        except ValidationError as e:
            logger.warning(
                "stored_preferences_invalid",
                user_id=user_id,
                errors=format_validation_errors(e),
            )
            return self._config.defaults

    async def update_preferences(self, user_id: str, updates: dict[str, Any]) -> UserPreferences:
        """Merge updates into the user's preferences and persist them.

        Raises:
            ConfigValidationError: The merged preferences are invalid
        """
        unknown = sorted(set(updates) - set(UserPreferences.model_fields))
        if unknown:
            raise ConfigValidationError(
                f"Unknown preference fields for {user_id}: {', '.join(unknown)}"
            )

        current = await self.get_preferences(user_id)
        merged = current.model_dump()
        merged.update(updates)
        try:
            prefs = UserPreferences.model_validate(merged)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Invalid preferences for {user_id}:\n{format_validation_errors(e)}"
            ) from e

        await self._with_db_retry(
            self._store.save_user_preferences, user_id, prefs.model_dump(mode="json")
        )
        if prefs.daily_limit_cents != current.daily_limit_cents:
            await self.ledger.set_limits(user_id, daily_limit_cents=prefs.daily_limit_cents)
        logger.info("preferences_updated", user_id=user_id, fields=sorted(updates))
        return prefs

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(self) -> dict[str, int]:
        """Roll expired budget windows, prune old LLM logs and checkpoint the WAL.

        Safe to run from a timer; every step is idempotent.
        """
        budgets_reset = await self.ledger.reset_expired_windows()
        logs_pruned = await self._store.prune_llm_logs(self._config.llm_logging.retention_days)
        await self._store.checkpoint_wal()
        logger.info("maintenance_complete", budgets_reset=budgets_reset, logs_pruned=logs_pruned)
        return {"budgets_reset": budgets_reset, "logs_pruned": logs_pruned}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_db_retry(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        processing = self._config.processing
        attempt = 1
        while True:
            try:
                return await operation(*args)
            except DatabaseError as e:
                if attempt >= processing.db_retry_attempts:
                    raise
                logger.warning(
                    "db_write_retry",
                    operation=getattr(operation, "__name__", str(operation)),
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(processing.db_retry_delay_seconds * attempt)
                attempt += 1
