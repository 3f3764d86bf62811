"""Tests for the command-line interface."""

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from mailpilot import cli as cli_module
from mailpilot.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at a config whose database lives in tmp_path."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f'database:\n  path: "{tmp_path / "cli.db"}"\n')
    monkeypatch.setenv("MAILPILOT_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    return tmp_path


class TestValidateConfig:
    def test_valid(self, runner, config_file):
        result = runner.invoke(cli, ["validate-config", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_invalid(self, runner, temp_config_dir):
        bad = temp_config_dir / "bad.yaml"
        bad.write_text("budget:\n  alert_threshold_percent: 0\n")

        result = runner.invoke(cli, ["validate-config", "--config", str(bad)])

        assert result.exit_code == 1
        assert "Validation error" in result.output


class TestCommands:
    def test_score_and_explain(self, runner, cli_env):
        email = {
            "id": "msg-1",
            "user_id": "user-1",
            "sender_email": "colleague@example.com",
            "subject": "Notes",
            "snippet": "Here are the notes from the planning session on Monday.",
            "received_at": (datetime.now(UTC) - timedelta(hours=5)).isoformat(),
            "is_unread": False,
        }
        source = cli_env / "emails.json"
        source.write_text(json.dumps([email, {"id": "bad", "user_id": "user-1"}]))

        result = runner.invoke(cli, ["score", str(source)])

        assert result.exit_code == 0, result.output
        assert "Skipped" in result.output
        assert "msg-1" in result.output
        assert "deferred" in result.output

        result = runner.invoke(cli, ["explain", "msg-1"])
        assert result.exit_code == 0, result.output
        assert '"processing_tier": "low"' in result.output
        assert '"signals"' in result.output

    def test_explain_unknown(self, runner, cli_env):
        result = runner.invoke(cli, ["explain", "missing"])
        assert result.exit_code == 1
        assert "No score stored" in result.output

    def test_score_invalid_json(self, runner, cli_env):
        result = runner.invoke(cli, ["score", "-"], input="{not json")
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_vip_add_and_list(self, runner, cli_env):
        result = runner.invoke(cli, ["vip", "add", "user-1", "Boss@Example.com", "--boost", "40"])
        assert result.exit_code == 0, result.output
        assert "boss@example.com is a VIP (boost 40)" in result.output

        result = runner.invoke(cli, ["vip", "list", "user-1"])
        assert result.exit_code == 0, result.output
        assert "boss@example.com" in result.output

    def test_budget(self, runner, cli_env):
        result = runner.invoke(cli, ["budget", "user-1"])
        assert result.exit_code == 0, result.output
        assert "$1.00" in result.output
        assert "$20.00" in result.output

    def test_prefs_update(self, runner, cli_env):
        result = runner.invoke(
            cli, ["prefs", "user-1", "--set", "high_priority_threshold=70"]
        )
        assert result.exit_code == 0, result.output
        assert '"high_priority_threshold": 70' in result.output

    def test_prefs_invalid_value(self, runner, cli_env):
        result = runner.invoke(
            cli, ["prefs", "user-1", "--set", "high_priority_threshold=20"]
        )
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_prefs_malformed_assignment(self, runner, cli_env):
        result = runner.invoke(cli, ["prefs", "user-1", "--set", "no-equals-sign"])
        assert result.exit_code == 1
        assert "expected KEY=VALUE" in result.output

    def test_digest_action_unknown_digest(self, runner, cli_env):
        result = runner.invoke(cli, ["digest-action", "42", "keep", "a@example.com"])
        assert result.exit_code == 1
        assert "42" in result.output

    def test_maintenance(self, runner, cli_env):
        result = runner.invoke(cli, ["maintenance"])
        assert result.exit_code == 0, result.output
        assert "Budget rows reset: 0" in result.output
        assert "LLM log rows pruned: 0" in result.output


def test_main_loads_dotenv_from_working_directory(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("MAILPILOT_DOTENV_CHECK=loaded\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAILPILOT_DOTENV_CHECK", "placeholder")
    monkeypatch.delenv("MAILPILOT_DOTENV_CHECK")
    monkeypatch.setattr(cli_module, "cli", lambda: None)

    cli_module.main()

    assert os.environ["MAILPILOT_DOTENV_CHECK"] == "loaded"
