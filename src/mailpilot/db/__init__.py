"""Database layer for mailpilot.

This module provides SQLite database access with async operations.

Usage:
    from mailpilot.db import DatabaseStore, EmailRecord

    store = DatabaseStore("data/mailpilot.db")
    await store.initialize()

    await store.save_email(EmailRecord(id="abc123", user_id="u1", sender_email="a@b.com"))
"""

from mailpilot.db.models import SCHEMA_VERSION, init_database, verify_schema
from mailpilot.db.store import (
    MAX_SNIPPET_LENGTH,
    AIAnalysis,
    BudgetEntry,
    DatabaseStore,
    EmailRecord,
    FactorBreakdown,
    LearnedPattern,
    LLMLogEntry,
    ScoreRecord,
    SenderStats,
    UserAction,
    VIPSender,
    WeeklyDigest,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_SNIPPET_LENGTH",
    # Dataclasses
    "AIAnalysis",
    "BudgetEntry",
    "EmailRecord",
    "FactorBreakdown",
    "LearnedPattern",
    "LLMLogEntry",
    "ScoreRecord",
    "SenderStats",
    "UserAction",
    "VIPSender",
    "WeeklyDigest",
]
