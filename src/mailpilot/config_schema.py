"""Pydantic configuration schema for mailpilot.

This module defines the configuration schema that mirrors config.yaml
structure. Application-level settings (models, breaker, budget defaults,
learning and digest thresholds) live in AppConfig; the per-user tuning
surface lives in UserPreferences and is persisted per user in the database,
seeded from AppConfig.defaults.

Usage:
    from mailpilot.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

PatternType = Literal["sender", "subject", "content", "domain"]

PATTERN_TYPES: tuple[PatternType, ...] = ("sender", "subject", "content", "domain")


class UserPreferences(BaseModel):
    """Per-user scoring, threshold, budget and feature configuration."""

    # Scoring weights (multipliers for individual factors)
    vip_sender_weight: float = Field(default=1.0, ge=0.0, le=2.0)
    urgent_keywords_weight: float = Field(default=1.0, ge=0.0, le=2.0)
    marketing_penalty_weight: float = Field(default=1.0, ge=0.0, le=2.0)
    time_decay_weight: float = Field(default=1.0, ge=0.0, le=2.0)
    gmail_signals_weight: float = Field(default=1.0, ge=0.0, le=2.0)
    pattern_weights: dict[PatternType, float] = Field(
        default_factory=lambda: {t: 1.0 for t in PATTERN_TYPES},
        description="Multiplier applied to learned patterns of each type",
    )

    # Tier thresholds
    high_priority_threshold: int = Field(default=80, ge=50, le=100)
    medium_priority_threshold: int = Field(default=40, ge=10, le=80)

    # AI budget
    max_ai_cost_per_day: float = Field(
        default=1.00,
        ge=0.0,
        le=1000.0,
        description="Daily AI spend limit in dollars",
    )

    # Feature toggles
    enable_pattern_learning: bool = True
    enable_weekly_digest: bool = True
    enable_bulk_unsubscribe: bool = True

    @field_validator("pattern_weights")
    @classmethod
    def validate_pattern_weights(cls, v: dict[str, float]) -> dict[str, float]:
        """Fill missing pattern types and bound every weight to [0, 2]."""
        merged = {t: 1.0 for t in PATTERN_TYPES}
        for key, weight in v.items():
            if weight < 0.0 or weight > 2.0:
                raise ValueError(f"Pattern weight for '{key}' must be between 0 and 2")
            merged[key] = weight
        return merged

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "UserPreferences":
        """Ensure the medium threshold sits strictly below the high threshold."""
        if self.medium_priority_threshold >= self.high_priority_threshold:
            raise ValueError(
                f"medium_priority_threshold ({self.medium_priority_threshold}) must be "
                f"lower than high_priority_threshold ({self.high_priority_threshold})"
            )
        return self

    @property
    def daily_limit_cents(self) -> int:
        """Daily AI spend limit in whole cents."""
        return int(round(self.max_ai_cost_per_day * 100))


class DatabaseConfig(BaseModel):
    """SQLite persistence configuration."""

    path: str = Field(default="data/mailpilot.db", description="Path to the SQLite database")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path is non-empty and has no traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ModelPricing(BaseModel):
    """Token pricing for one model, in cents per million tokens."""

    input_cents_per_mtok: float = Field(ge=0.0)
    output_cents_per_mtok: float = Field(ge=0.0)


class ModelsConfig(BaseModel):
    """Claude model selection for AI analysis."""

    primary: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model tried first for email analysis",
    )
    fallback: str | None = Field(
        default="claude-3-haiku-20240307",
        description="Cheaper model used when the primary keeps failing",
    )
    pricing: dict[str, ModelPricing] = Field(
        default_factory=lambda: {
            "claude-haiku-4-5-20251001": ModelPricing(
                input_cents_per_mtok=100.0, output_cents_per_mtok=500.0
            ),
            "claude-3-haiku-20240307": ModelPricing(
                input_cents_per_mtok=25.0, output_cents_per_mtok=125.0
            ),
            "claude-sonnet-4-5-20250929": ModelPricing(
                input_cents_per_mtok=300.0, output_cents_per_mtok=1500.0
            ),
        },
        description="Per-model pricing used to cost every invocation",
    )


class AIConfig(BaseModel):
    """AI invocation limits, retry and timeout behavior."""

    max_tokens: int = Field(default=512, ge=64, le=4096)
    timeout_seconds: float = Field(default=20.0, gt=0.0, le=120.0)
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=6,
        description="Attempts per model before falling back",
    )
    backoff_base_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    backoff_max_seconds: float = Field(default=8.0, ge=0.0, le=120.0)
    max_snippet_chars: int = Field(default=1000, ge=100, le=10000)


class CircuitBreakerConfig(BaseModel):
    """Failure isolation for the AI capability."""

    failure_threshold: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Consecutive failures inside the window that open the breaker",
    )
    window_seconds: float = Field(default=60.0, gt=0.0)
    cooldown_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Time the breaker stays open before allowing a trial call",
    )


class BudgetConfig(BaseModel):
    """Default budget ledger limits for users without explicit entries."""

    default_daily_limit_cents: int = Field(default=100, ge=0)
    default_monthly_limit_cents: int = Field(default=2000, ge=0)
    alert_threshold_percent: int = Field(default=80, ge=1, le=100)


class ProcessingConfig(BaseModel):
    """Batch processing and persistence retry configuration."""

    batch_concurrency: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Concurrent AI calls while draining the medium-tier queue",
    )
    batch_size: int = Field(default=50, ge=1, le=1000)
    db_retry_attempts: int = Field(default=3, ge=1, le=10)
    db_retry_delay_seconds: float = Field(default=0.2, ge=0.0, le=10.0)


class ScoringKeywordsConfig(BaseModel):
    """Keyword sets used by the rule-based scoring heuristics."""

    urgent_keywords: list[str] = Field(
        default=[
            "urgent",
            "asap",
            "immediately",
            "deadline",
            "overdue",
            "critical",
            "action required",
            "time sensitive",
            "due today",
            "due tomorrow",
            "end of day",
            "eod",
        ],
        description="Urgency phrases matched in subject and snippet (case-insensitive)",
    )
    marketing_keywords: list[str] = Field(
        default=[
            "unsubscribe",
            "% off",
            "percent off",
            "sale",
            "deal",
            "limited time",
            "coupon",
            "promo",
            "promotion",
            "offer",
            "clearance",
            "flash sale",
            "newsletter",
            "view in browser",
            "manage preferences",
        ],
        description="Promotional phrases matched in subject and snippet",
    )
    marketing_sender_prefixes: list[str] = Field(
        default=[
            "promo",
            "promotions",
            "deals",
            "offers",
            "marketing",
            "newsletter",
            "news",
            "sales",
            "shop",
        ],
        description="Sender local parts that indicate bulk marketing mail",
    )
    marketing_domains: list[str] = Field(
        default=[
            "mailchimp.com",
            "mcsv.net",
            "sendgrid.net",
            "klaviyomail.com",
            "constantcontact.com",
            "hubspotemail.net",
            "exacttarget.com",
        ],
        description="Known bulk-mail sending domains",
    )
    promotional_labels: list[str] = Field(
        default=["PROMOTIONS", "CATEGORY_PROMOTIONS"],
        description="Provider labels that mark promotional mail",
    )


class LearningConfig(BaseModel):
    """Feedback-loop thresholds. Every promotion or confidence cutoff is named here."""

    learning_rate: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="Fraction of the gap to the observed outcome applied per observation",
    )
    pattern_target_impact: float = Field(
        default=30.0,
        ge=1.0,
        le=50.0,
        description="score_impact a pattern converges to under consistent full-strength signals",
    )
    confidence_scale: float = Field(
        default=2.5,
        gt=0.0,
        description="Samples needed for pattern confidence to reach ~63%",
    )
    vip_promotion_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    vip_demotion_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    vip_min_samples: int = Field(
        default=3,
        ge=1,
        description="Positive interactions required before a sender can be promoted",
    )
    auto_promote_vips: bool = Field(
        default=False,
        description="Apply learned VIP promotions directly instead of suggesting them",
    )
    learned_vip_boost: int = Field(default=15, ge=0, le=50)
    max_subject_keywords: int = Field(default=3, ge=0, le=10)


class DigestConfig(BaseModel):
    """Weekly low-priority digest and unsubscribe classification settings."""

    safe_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    review_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    frequency_scale: float = Field(
        default=4.0,
        gt=0.0,
        description="Weekly message count at which the frequency component reaches ~63%",
    )
    sample_subjects: int = Field(default=3, ge=0, le=20)
    content_rich_domains: list[str] = Field(
        default=[
            "substack.com",
            "medium.com",
            "ghost.io",
            "beehiiv.com",
            "buttondown.email",
            "revue.co",
            "techcrunch.com",
            "nytimes.com",
        ],
        description="Long-form newsletter platforms where unsubscribing deserves review",
    )
    content_rich_reputation: float = Field(default=0.7, ge=0.0, le=1.0)
    estimated_ai_cost_cents: float = Field(
        default=0.05,
        ge=0.0,
        description="Per-email AI cost avoided by deferring low-tier mail",
    )

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "DigestConfig":
        """Ensure the review threshold is below the safe threshold."""
        if self.review_threshold >= self.safe_threshold:
            raise ValueError("digest.review_threshold must be lower than digest.safe_threshold")
        return self


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(default=30, ge=1, le=365)
    log_prompts: bool = Field(default=True, description="Store full prompts")
    log_responses: bool = Field(default=True, description="Store full responses")


class AppConfig(BaseModel):
    """Root configuration schema for mailpilot.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    scoring: ScoringKeywordsConfig = Field(default_factory=ScoringKeywordsConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    digest: DigestConfig = Field(default_factory=DigestConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)

    defaults: UserPreferences = Field(
        default_factory=UserPreferences,
        description="Preferences applied to users who have not customized theirs",
    )
