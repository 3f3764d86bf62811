"""Custom exception types for the mailpilot email intelligence engine.

All exceptions follow the same message standard:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)

Budget exhaustion is deliberately absent: running out of AI budget is a
routing decision, not an error.
"""


class MailPilotError(Exception):
    """Base exception for all mailpilot errors."""

    pass


class ConfigValidationError(MailPilotError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailPilotError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class EmailValidationError(MailPilotError):
    """Raised at the ingestion boundary when an inbound email is malformed.

    A rejected email never reaches the scoring engine.

    Attributes:
        email_id: Provider message ID, if one could be read
        field: The offending field name, if known
    """

    def __init__(self, message: str, email_id: str | None = None, field: str | None = None):
        super().__init__(message)
        self.email_id = email_id
        self.field = field


class AIInvocationError(MailPilotError):
    """Raised when AI analysis fails after retries and model fallback.

    Callers fall back to the rule-based score; this never surfaces to the
    user as a scoring failure.

    Attributes:
        email_id: The message that was being analyzed
        attempts: Total attempts across all models
        models_tried: Models attempted, in order
        incurred_cost_cents: Cost of tokens consumed by failed attempts
    """

    def __init__(
        self,
        message: str,
        email_id: str | None = None,
        attempts: int = 0,
        models_tried: tuple[str, ...] = (),
        incurred_cost_cents: float = 0.0,
    ):
        super().__init__(message)
        self.email_id = email_id
        self.attempts = attempts
        self.models_tried = models_tried
        self.incurred_cost_cents = incurred_cost_cents


class CircuitOpenError(MailPilotError):
    """Raised when the AI circuit breaker rejects a call without attempting it.

    Distinct from AIInvocationError so callers can choose between waiting
    for the breaker to recover and accepting the rule-based fallback.

    Attributes:
        retry_after: Seconds until the breaker will allow a trial call
    """

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class DatabaseError(MailPilotError):
    """Raised when SQLite operations fail."""

    pass


class DigestNotFoundError(MailPilotError):
    """Raised when a weekly digest referenced by ID does not exist."""

    def __init__(self, message: str, digest_id: int | None = None):
        super().__init__(message)
        self.digest_id = digest_id


class InvalidActionError(MailPilotError):
    """Raised when a feedback or digest action is unknown or missing context."""

    pass
