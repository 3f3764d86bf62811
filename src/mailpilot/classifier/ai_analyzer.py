"""AI email analysis using Claude tool use, with retries and model fallback.

Uses forced tool_choice so every successful response is a structured
`analyze_email` tool call.

Error handling strategy:
- Transient errors (timeout, connection, 429, 5xx, malformed tool output):
  app-level retry with exponential backoff and jitter, up to
  `ai.max_attempts` per model
- Other 4xx errors: not retryable on this model, move to the fallback
- All models exhausted: AIInvocationError carrying the cost already
  incurred, so the ledger can still be charged

The SDK client should be constructed with max_retries=0; retries happen
here so that every attempt is timed, costed and logged.

Usage:
    from mailpilot.classifier.ai_analyzer import AIAnalyzer

    analyzer = AIAnalyzer(anthropic.AsyncAnthropic(max_retries=0), store, config)
    analysis = await analyzer.analyze(email, score)
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import anthropic

from mailpilot.classifier.prompts import (
    ANALYZE_EMAIL_TOOL,
    SYSTEM_PROMPT,
    VALID_CATEGORIES,
    build_user_message,
)
from mailpilot.core.errors import AIInvocationError
from mailpilot.core.logging import get_logger
from mailpilot.db.store import AIAnalysis

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig, ModelPricing
    from mailpilot.db.store import DatabaseStore, EmailRecord, ScoreRecord

logger = get_logger(__name__)

# Rough chars-per-token ratio used for pre-call cost estimates
CHARS_PER_TOKEN = 3.5
# Tool schema and framing overhead not visible in the message text
PROMPT_OVERHEAD_TOKENS = 350


class _TransientFailure(Exception):
    """Attempt failed in a way worth retrying on the same model."""

    def __init__(self, message: str, cost_cents: float = 0.0):
        super().__init__(message)
        self.cost_cents = cost_cents


class _ModelRejected(Exception):
    """Attempt failed in a way that retrying this model cannot fix."""


class AIAnalyzer:
    """Analyzes single emails with Claude.

    Attributes:
        _client: Async Anthropic client (max_retries=0)
        _store: Database store for LLM request logging (optional)
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        store: DatabaseStore | None,
        config: AppConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config
        self._sleep = sleep
        self._jitter = jitter

    @property
    def models(self) -> list[str]:
        """Models tried in order: primary, then fallback if configured."""
        models = [self._config.models.primary]
        fallback = self._config.models.fallback
        if fallback and fallback not in models:
            models.append(fallback)
        return models

    def pricing_for(self, model: str) -> ModelPricing:
        """Pricing for a model; unknown models are costed at the highest known rate."""
        pricing = self._config.models.pricing
        if model in pricing:
            return pricing[model]
        logger.warning("model_pricing_missing", model=model)
        return max(pricing.values(), key=lambda p: p.output_cents_per_mtok)

    def compute_cost_cents(self, model: str, input_tokens: int, output_tokens: int) -> float:
        pricing = self.pricing_for(model)
        return (
            input_tokens * pricing.input_cents_per_mtok
            + output_tokens * pricing.output_cents_per_mtok
        ) / 1_000_000

    def estimate_cost_cents(self, email: EmailRecord, score: ScoreRecord | None = None) -> int:
        """Conservative whole-cent estimate for one analysis call.

        Assumes the full output allowance is used at the priciest model in
        the chain, so the real charge should not exceed it.
        """
        message = build_user_message(email, score, self._config.ai.max_snippet_chars)
        input_tokens = int((len(SYSTEM_PROMPT) + len(message)) / CHARS_PER_TOKEN)
        input_tokens += PROMPT_OVERHEAD_TOKENS
        cost = max(
            self.compute_cost_cents(model, input_tokens, self._config.ai.max_tokens)
            for model in self.models
        )
        return max(1, math.ceil(cost))

    async def analyze(self, email: EmailRecord, score: ScoreRecord | None = None) -> AIAnalysis:
        """Analyze one email, retrying and falling back across models.

        Returns:
            AIAnalysis whose cost_cents covers every attempt made for it

        Raises:
            AIInvocationError: After all attempts on all models fail
        """
        ai_cfg = self._config.ai
        user_message = build_user_message(email, score, ai_cfg.max_snippet_chars)
        messages = [{"role": "user", "content": user_message}]

        total_attempts = 0
        incurred_cents = 0.0
        models_tried: list[str] = []
        last_error: str | None = None

        for model in self.models:
            models_tried.append(model)
            for attempt in range(1, ai_cfg.max_attempts + 1):
                total_attempts += 1
                try:
                    analysis, cost = await self._attempt(email, model, messages, total_attempts)
                    incurred_cents += cost
                    if total_attempts > 1:
                        logger.info(
                            "ai_analysis_recovered",
                            email_id=email.id,
                            model=model,
                            attempts=total_attempts,
                        )
                    return _with_cost(analysis, incurred_cents)

                except _TransientFailure as e:
                    incurred_cents += e.cost_cents
                    last_error = str(e)
                    if attempt < ai_cfg.max_attempts:
                        await self._sleep(self._backoff_delay(attempt))

                except _ModelRejected as e:
                    last_error = str(e)
                    break

            logger.warning(
                "ai_model_exhausted",
                email_id=email.id,
                model=model,
                last_error=last_error,
            )

        raise AIInvocationError(
            f"AI analysis failed for email {email.id} after {total_attempts} attempts "
            f"across {', '.join(models_tried)}. Last error: {last_error}",
            email_id=email.id,
            attempts=total_attempts,
            models_tried=tuple(models_tried),
            incurred_cost_cents=incurred_cents,
        )

    async def _attempt(
        self,
        email: EmailRecord,
        model: str,
        messages: list[dict[str, Any]],
        attempt: int,
    ) -> tuple[AIAnalysis, float]:
        """Make one API call.

        Raises:
            _TransientFailure: Retryable failure, with any cost already incurred
            _ModelRejected: Request this model will never accept
        """
        ai_cfg = self._config.ai
        start_time = time.monotonic()
        response = None

        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=model,
                    max_tokens=ai_cfg.max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=messages,
                    tools=[ANALYZE_EMAIL_TOOL],
                    tool_choice={"type": "tool", "name": "analyze_email"},
                ),
                timeout=ai_cfg.timeout_seconds,
            )
        except TimeoutError:
            await self._fail(email, model, messages, attempt, start_time, "timeout", "ai_timeout")
            raise _TransientFailure(f"Timed out after {ai_cfg.timeout_seconds}s") from None
        except anthropic.RateLimitError as e:
            await self._fail(email, model, messages, attempt, start_time, str(e), "ai_rate_limited")
            raise _TransientFailure(f"Rate limited: {e}") from e
        except anthropic.APIConnectionError as e:
            await self._fail(
                email, model, messages, attempt, start_time, str(e), "ai_connection_error"
            )
            raise _TransientFailure(f"API connection error: {e}") from e
        except anthropic.APIStatusError as e:
            error = f"API status error {e.status_code}: {e.message}"
            await self._fail(email, model, messages, attempt, start_time, error, "ai_api_error")
            if e.status_code >= 500:
                raise _TransientFailure(error) from e
            raise _ModelRejected(error) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        cost = self.compute_cost_cents(model, input_tokens, output_tokens)

        tool_call = _extract_tool_call(response)
        error = (
            "No tool call in response (unexpected with forced tool_choice)"
            if tool_call is None
            else _validate_tool_call(tool_call)
        )
        await self._log_request(
            model=model,
            messages=messages,
            response=response,
            tool_call=tool_call,
            cost_cents=cost,
            duration_ms=duration_ms,
            email=email,
            attempt=attempt,
            error=error,
        )
        if error:
            logger.warning(
                "ai_invalid_response",
                email_id=email.id,
                model=model,
                attempt=attempt,
                error=error,
            )
            raise _TransientFailure(error, cost_cents=cost)

        logger.info(
            "ai_analysis_complete",
            email_id=email.id,
            model=model,
            attempt=attempt,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_cents=round(cost, 4),
            latency_ms=duration_ms,
        )
        return _build_analysis(tool_call, model, input_tokens, output_tokens, duration_ms), cost

    async def _fail(
        self,
        email: EmailRecord,
        model: str,
        messages: list[dict[str, Any]],
        attempt: int,
        start_time: float,
        error: str,
        event: str,
    ) -> None:
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.warning(event, email_id=email.id, model=model, attempt=attempt, error=error)
        await self._log_request(
            model=model,
            messages=messages,
            response=None,
            tool_call=None,
            cost_cents=0.0,
            duration_ms=duration_ms,
            email=email,
            attempt=attempt,
            error=error,
        )

    def _backoff_delay(self, attempt: int) -> float:
        ai_cfg = self._config.ai
        base = ai_cfg.backoff_base_seconds * (2 ** (attempt - 1))
        return min(ai_cfg.backoff_max_seconds, base + self._jitter() * ai_cfg.backoff_base_seconds)

    async def _log_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        tool_call: dict[str, Any] | None,
        cost_cents: float,
        duration_ms: int,
        email: EmailRecord,
        attempt: int,
        error: str | None = None,
    ) -> None:
        """Write one attempt to llm_request_log. Never raises."""
        if self._store is None or not self._config.llm_logging.enabled:
            return

        try:
            prompt_data: dict[str, Any] | None = None
            if self._config.llm_logging.log_prompts:
                prompt_data = {"system": SYSTEM_PROMPT, "messages": messages}

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None
            if response is not None:
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
                if self._config.llm_logging.log_responses:
                    response_data = {
                        "id": response.id,
                        "model": response.model,
                        "stop_reason": response.stop_reason,
                        "content": [_content_block_to_dict(block) for block in response.content],
                    }

            await self._store.log_llm_request(
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_cents=cost_cents,
                duration_ms=duration_ms,
                email_id=email.id,
                user_id=email.user_id,
                attempt=attempt,
                error=error,
            )
        except Exception as e:
            # Logging failures should never block analysis
            logger.warning("llm_log_failed", error=str(e), email_id=email.id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == "analyze_email":
            return block.input
    return None


def _validate_tool_call(data: dict[str, Any]) -> str | None:
    """Return an error message if the tool input is unusable, else None."""
    required = ("category", "priority", "summary", "action_items", "confidence")
    missing = [f for f in required if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    if data["category"] not in VALID_CATEGORIES:
        return f"Invalid category: '{data['category']}'"

    priority = data["priority"]
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 10:
        return f"Invalid priority: {priority}. Must be an integer between 1 and 10"

    confidence = data["confidence"]
    if not isinstance(confidence, int | float) or not 0.0 <= confidence <= 1.0:
        return f"Invalid confidence: {confidence}. Must be a number between 0.0 and 1.0"

    if not isinstance(data["summary"], str) or not data["summary"].strip():
        return "Empty summary"

    items = data["action_items"]
    if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
        return "action_items must be a list of strings"

    return None


def _build_analysis(
    tool_call: dict[str, Any],
    model: str,
    input_tokens: int,
    output_tokens: int,
    latency_ms: int,
) -> AIAnalysis:
    return AIAnalysis(
        category=tool_call["category"],
        priority=int(tool_call["priority"]),
        summary=tool_call["summary"].strip(),
        action_items=tuple(i.strip() for i in tool_call["action_items"] if i.strip()),
        confidence=float(tool_call["confidence"]),
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency_ms=latency_ms,
    )


def _with_cost(analysis: AIAnalysis, cost_cents: float) -> AIAnalysis:
    return replace(analysis, cost_cents=round(cost_cents, 6))


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}
