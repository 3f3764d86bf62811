"""Email processing engines.

This package provides the stateful orchestration around the classifiers:
- Budget ledger for per-user AI spend (daily and monthly windows)
- Tier router deciding AI analysis per processing tier
- Weekly digest builder with unsubscribe suggestions
- Intelligence service facade used by the CLI and embedding applications
"""

from mailpilot.engine.budget import BudgetAlert, BudgetLedger, BudgetStatus, Reservation
from mailpilot.engine.router import RoutingDecision, TierRouter
from mailpilot.engine.service import BatchResult, InboundEmail, IntelligenceService
from mailpilot.engine.unsubscribe import UnsubscribeAssessment, UnsubscribeClassifier
from mailpilot.engine.weekly_digest import WeeklyDigestBuilder, week_start_for

__all__ = [
    # Budget
    "BudgetAlert",
    "BudgetLedger",
    "BudgetStatus",
    "Reservation",
    # Routing
    "RoutingDecision",
    "TierRouter",
    # Service
    "BatchResult",
    "InboundEmail",
    "IntelligenceService",
    # Weekly digest
    "UnsubscribeAssessment",
    "UnsubscribeClassifier",
    "WeeklyDigestBuilder",
    "week_start_for",
]
