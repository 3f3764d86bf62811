"""Tests for Claude-backed email analysis (retries, fallback, costing)."""

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from mailpilot.classifier.ai_analyzer import AIAnalyzer
from mailpilot.classifier.prompts import build_user_message
from mailpilot.config_schema import AppConfig
from mailpilot.core.errors import AIInvocationError

PRIMARY = "claude-haiku-4-5-20251001"
FALLBACK = "claude-3-haiku-20240307"

VALID_INPUT = {
    "category": "action_required",
    "priority": 9,
    "summary": "  Sign the contract before the end of the day.  ",
    "action_items": ["Sign the contract", "  "],
    "confidence": 0.92,
}


# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------


def _tool_block(tool_input: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(type="tool_use", id="toolu_1", name="analyze_email", input=tool_input)


def _response(
    content: list[SimpleNamespace],
    model: str = PRIMARY,
    input_tokens: int = 100,
    output_tokens: int = 50,
) -> SimpleNamespace:
    """Create a mock Anthropic Message response."""
    return SimpleNamespace(
        id="msg_1",
        content=content,
        model=model,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason="tool_use",
    )


def _client(side_effect: list[Any]) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=side_effect)
    return client


def _bad_request() -> anthropic.APIStatusError:
    return anthropic.APIStatusError(
        message="invalid model",
        response=MagicMock(status_code=400, headers={}),
        body=None,
    )


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


def _analyzer(client, store, config: AppConfig, sleep) -> AIAnalyzer:
    return AIAnalyzer(client, store, config, sleep=sleep, jitter=lambda: 0.0)


# ---------------------------------------------------------------------------
# Successful analysis
# ---------------------------------------------------------------------------


class TestAnalyze:
    async def test_first_attempt_success(self, store, sample_config, sleep, make_email):
        client = _client([_response([_tool_block(VALID_INPUT)])])
        analyzer = _analyzer(client, store, sample_config, sleep)

        analysis = await analyzer.analyze(make_email())

        assert analysis.category == "action_required"
        assert analysis.priority == 9
        assert analysis.summary == "Sign the contract before the end of the day."
        assert analysis.action_items == ("Sign the contract",)
        assert analysis.model == PRIMARY
        # 100 input tokens at 100c/Mtok + 50 output tokens at 500c/Mtok
        assert analysis.cost_cents == pytest.approx(0.035)
        sleep.assert_not_awaited()

    async def test_request_forces_tool_choice(self, store, sample_config, sleep, make_email):
        client = _client([_response([_tool_block(VALID_INPUT)])])
        analyzer = _analyzer(client, store, sample_config, sleep)

        await analyzer.analyze(make_email())

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == PRIMARY
        assert kwargs["tool_choice"] == {"type": "tool", "name": "analyze_email"}
        assert kwargs["tools"][0]["name"] == "analyze_email"
        assert "<email>" in kwargs["messages"][0]["content"]

    async def test_attempts_are_logged(self, store, sample_config, sleep, make_email):
        client = _client([_response([_tool_block(VALID_INPUT)])])
        analyzer = _analyzer(client, store, sample_config, sleep)

        await analyzer.analyze(make_email("msg-log"))

        logs = await store.get_llm_logs(email_id="msg-log")
        assert len(logs) == 1
        assert logs[0].model == PRIMARY
        assert logs[0].error is None
        assert logs[0].tool_call_json["category"] == "action_required"

    async def test_logging_disabled(self, store, sample_config, sleep, make_email):
        sample_config.llm_logging.enabled = False
        client = _client([_response([_tool_block(VALID_INPUT)])])
        analyzer = _analyzer(client, store, sample_config, sleep)

        await analyzer.analyze(make_email("msg-quiet"))

        assert await store.get_llm_logs(email_id="msg-quiet") == []


# ---------------------------------------------------------------------------
# Retries and fallback
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_invalid_tool_output_is_retried_and_costed(
        self, store, sample_config, sleep, make_email
    ):
        bad = dict(VALID_INPUT, category="spam")
        client = _client([_response([_tool_block(bad)]), _response([_tool_block(VALID_INPUT)])])
        analyzer = _analyzer(client, store, sample_config, sleep)

        analysis = await analyzer.analyze(make_email())

        assert client.messages.create.await_count == 2
        assert analysis.cost_cents == pytest.approx(0.07)
        sleep.assert_awaited_once()

    async def test_timeouts_fall_back_to_second_model(
        self, store, sample_config, sleep, make_email
    ):
        client = _client(
            [
                TimeoutError(),
                TimeoutError(),
                _response([_tool_block(VALID_INPUT)], model=FALLBACK),
            ]
        )
        analyzer = _analyzer(client, store, sample_config, sleep)

        analysis = await analyzer.analyze(make_email())

        assert analysis.model == FALLBACK
        models = [c.kwargs["model"] for c in client.messages.create.call_args_list]
        assert models == [PRIMARY, PRIMARY, FALLBACK]

    async def test_client_error_skips_remaining_attempts(
        self, store, sample_config, sleep, make_email
    ):
        client = _client([_bad_request(), _response([_tool_block(VALID_INPUT)], model=FALLBACK)])
        analyzer = _analyzer(client, store, sample_config, sleep)

        analysis = await analyzer.analyze(make_email())

        assert client.messages.create.await_count == 2
        assert analysis.model == FALLBACK

    async def test_exhaustion_reports_incurred_cost(
        self, store, sample_config, sleep, make_email
    ):
        text_only = SimpleNamespace(type="text", text="I think this is spam.")
        client = _client([_response([text_only]) for _ in range(4)])
        analyzer = _analyzer(client, store, sample_config, sleep)

        with pytest.raises(AIInvocationError) as exc_info:
            await analyzer.analyze(make_email("msg-fail"))

        error = exc_info.value
        assert error.email_id == "msg-fail"
        assert error.attempts == 4
        assert error.models_tried == (PRIMARY, FALLBACK)
        # Two primary attempts (0.035 each) plus two fallback attempts
        # (100 * 25 + 50 * 125) / 1e6 = 0.00875 each
        assert error.incurred_cost_cents == pytest.approx(0.0875)

    async def test_no_fallback_configured(self, store, sample_config, sleep, make_email):
        sample_config.models.fallback = None
        client = _client([TimeoutError(), TimeoutError()])
        analyzer = _analyzer(client, store, sample_config, sleep)

        with pytest.raises(AIInvocationError) as exc_info:
            await analyzer.analyze(make_email())

        assert exc_info.value.models_tried == (PRIMARY,)
        assert exc_info.value.incurred_cost_cents == 0.0


# ---------------------------------------------------------------------------
# Costing helpers
# ---------------------------------------------------------------------------


class TestCosting:
    def test_unknown_model_uses_highest_pricing(self, sample_config):
        analyzer = AIAnalyzer(MagicMock(), None, sample_config)
        pricing = analyzer.pricing_for("claude-unknown")
        assert pricing.output_cents_per_mtok == 1500.0

    def test_estimate_is_whole_cents_and_positive(self, sample_config, make_email):
        analyzer = AIAnalyzer(MagicMock(), None, sample_config)
        estimate = analyzer.estimate_cost_cents(make_email())
        assert isinstance(estimate, int)
        assert estimate >= 1

    def test_backoff_doubles_and_caps(self):
        config = AppConfig(ai={"backoff_base_seconds": 1.0, "backoff_max_seconds": 5.0})
        analyzer = AIAnalyzer(MagicMock(), None, config, jitter=lambda: 0.0)
        delays = [analyzer._backoff_delay(n) for n in range(1, 5)]
        assert delays == [1.0, 2.0, 4.0, 5.0]


class TestUserMessage:
    def test_snippet_truncated_and_wrapped(self, make_email):
        email = make_email(snippet="x" * 500, labels=("INBOX",), has_attachments=True)

        message = build_user_message(email, None, max_snippet_chars=100)

        assert message.startswith("<email>\nFrom: A Colleague <colleague@example.com>")
        assert "x" * 100 in message
        assert "x" * 101 not in message
        assert "Labels: INBOX" in message
        assert "Attachments: yes" in message
        assert message.endswith("</email>")
