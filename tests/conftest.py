"""Pytest fixtures and configuration for mailpilot tests.

Provides common fixtures for configuration, database, clocks and emails.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator

import pytest

from mailpilot.config import reset_config
from mailpilot.config_schema import AppConfig
from mailpilot.db.store import DatabaseStore, EmailRecord

# Wednesday, so the week starts on 2025-03-10
NOW = datetime(2025, 3, 12, 15, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock for time-dependent components."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

database:
  path: "data/test.db"

budget:
  default_daily_limit_cents: 100
  default_monthly_limit_cents: 2000

processing:
  batch_concurrency: 2
  db_retry_delay_seconds: 0

defaults:
  high_priority_threshold: 80
  medium_priority_threshold: 40
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": "data/test.db"},
        "ai": {"max_attempts": 2, "backoff_base_seconds": 0.0, "timeout_seconds": 5},
        "processing": {"batch_concurrency": 2, "db_retry_delay_seconds": 0},
        "llm_logging": {"enabled": True},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILPILOT_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILPILOT_CONFIG_PATH")
    os.environ["MAILPILOT_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILPILOT_CONFIG_PATH"]
    else:
        os.environ["MAILPILOT_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_email() -> Callable[..., EmailRecord]:
    """Factory for EmailRecord with sensible defaults (received 3h before NOW)."""

    def _make(email_id: str = "msg-1", **overrides: Any) -> EmailRecord:
        fields: dict[str, Any] = {
            "id": email_id,
            "user_id": "user-1",
            "sender_email": "colleague@example.com",
            "sender_name": "A Colleague",
            "subject": "Quarterly planning notes",
            "snippet": "Here are the notes from the planning session we had on Monday afternoon.",
            "received_at": NOW - timedelta(hours=3),
            "is_unread": False,
        }
        fields.update(overrides)
        return EmailRecord(**fields)

    return _make
