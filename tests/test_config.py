"""Tests for configuration loading, validation and hot reload."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from mailpilot.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from mailpilot.config_schema import AppConfig, DigestConfig, UserPreferences
from mailpilot.core.errors import ConfigLoadError, ConfigValidationError


def _touch_later(path: Path, content: str) -> None:
    """Rewrite a file and push its mtime forward so the change is detectable."""
    path.write_text(content)
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_defaults(self):
        config = AppConfig()

        assert config.schema_version == 1
        assert config.models.primary == "claude-haiku-4-5-20251001"
        assert config.budget.default_daily_limit_cents == 100
        assert config.defaults.high_priority_threshold == 80
        assert config.defaults.medium_priority_threshold == 40
        assert config.learning.learning_rate == 0.2

    def test_pattern_weights_are_filled_in(self):
        prefs = UserPreferences(pattern_weights={"sender": 1.5})
        assert prefs.pattern_weights == {
            "sender": 1.5,
            "subject": 1.0,
            "content": 1.0,
            "domain": 1.0,
        }

    def test_pattern_weight_out_of_range(self):
        with pytest.raises(ValidationError, match="between 0 and 2"):
            UserPreferences(pattern_weights={"domain": 2.5})

    def test_unknown_pattern_type(self):
        with pytest.raises(ValidationError):
            UserPreferences(pattern_weights={"thread": 1.0})

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError, match="must be lower than"):
            UserPreferences(high_priority_threshold=60, medium_priority_threshold=60)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("vip_sender_weight", -0.1),
            ("time_decay_weight", 2.1),
            ("high_priority_threshold", 101),
            ("medium_priority_threshold", 5),
            ("max_ai_cost_per_day", -1.0),
        ],
    )
    def test_preference_bounds(self, field, value):
        with pytest.raises(ValidationError):
            UserPreferences(**{field: value})

    def test_daily_limit_cents(self):
        assert UserPreferences(max_ai_cost_per_day=0.456).daily_limit_cents == 46
        assert UserPreferences(max_ai_cost_per_day=0.0).daily_limit_cents == 0

    def test_digest_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError, match="review_threshold"):
            DigestConfig(safe_threshold=0.5, review_threshold=0.5)

    def test_database_path_traversal(self):
        with pytest.raises(ValidationError, match="path traversal"):
            AppConfig(database={"path": "../elsewhere.db"})


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_load_valid_file(self, config_file: Path):
        config = load_config(config_file)

        assert config.database.path == "data/test.db"
        assert config.processing.batch_concurrency == 2
        # Unspecified sections keep their defaults
        assert config.circuit_breaker.failure_threshold == 3

    def test_missing_explicit_file(self, temp_config_dir: Path):
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(temp_config_dir / "missing.yaml")

    def test_missing_default_file_uses_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MAILPILOT_CONFIG_PATH", raising=False)

        assert load_config() == AppConfig()

    def test_env_path_is_explicit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MAILPILOT_CONFIG_PATH", str(tmp_path / "nope.yaml"))
        with pytest.raises(ConfigLoadError):
            load_config()

    def test_empty_file_uses_defaults(self, temp_config_dir: Path):
        path = temp_config_dir / "empty.yaml"
        path.write_text("")
        assert load_config(path) == AppConfig()

    def test_invalid_yaml(self, temp_config_dir: Path):
        path = temp_config_dir / "broken.yaml"
        path.write_text("budget: [unclosed\n")
        with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
            load_config(path)

    def test_non_mapping(self, temp_config_dir: Path):
        path = temp_config_dir / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigLoadError, match="must be a YAML mapping"):
            load_config(path)

    def test_validation_error_names_field(self, temp_config_dir: Path):
        path = temp_config_dir / "bad.yaml"
        path.write_text("ai:\n  max_attempts: 0\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(path)

        assert "Field 'ai.max_attempts'" in str(exc_info.value)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path):
        path = temp_config_dir / "future.yaml"
        path.write_text("schema_version: 99\n")
        with pytest.raises(ConfigValidationError, match="newer than supported"):
            load_config(path)

    def test_shipped_example_is_valid(self):
        example = Path(__file__).resolve().parent.parent / "config" / "config.yaml.example"
        is_valid, message = validate_config_file(example)
        assert is_valid, message


class TestValidateConfigFile:
    def test_valid(self, config_file: Path):
        is_valid, message = validate_config_file(config_file)
        assert is_valid
        assert "schema version 1" in message
        assert "high >= 80" in message

    def test_load_error(self, temp_config_dir: Path):
        is_valid, message = validate_config_file(temp_config_dir / "missing.yaml")
        assert not is_valid
        assert message.startswith("Load error")

    def test_validation_error(self, temp_config_dir: Path):
        path = temp_config_dir / "bad.yaml"
        path.write_text("defaults:\n  high_priority_threshold: 30\n")
        is_valid, message = validate_config_file(path)
        assert not is_valid
        assert message.startswith("Validation error")


# ---------------------------------------------------------------------------
# Singleton and hot reload
# ---------------------------------------------------------------------------


class TestSingleton:
    def test_get_config_is_cached(self, set_config_env):
        assert get_config() is get_config()

    def test_no_reload_without_change(self, set_config_env):
        get_config()
        assert reload_config_if_changed() is False

    def test_reload_picks_up_edit(self, set_config_env, config_file: Path, sample_config_yaml):
        assert get_config().processing.batch_concurrency == 2

        _touch_later(
            config_file, sample_config_yaml.replace("batch_concurrency: 2", "batch_concurrency: 6")
        )

        assert reload_config_if_changed() is True
        assert get_config().processing.batch_concurrency == 6

    def test_invalid_edit_keeps_previous(self, set_config_env, config_file: Path):
        previous = get_config()

        _touch_later(config_file, "processing:\n  batch_concurrency: 99\n")

        assert reload_config_if_changed() is False
        assert get_config() is previous
        # The broken file is not retried until it changes again
        assert reload_config_if_changed() is False

    def test_reload_before_first_load(self):
        assert reload_config_if_changed() is False
