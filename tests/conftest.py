"""Pytest fixtures and configuration for MailPilot tests.

Provides common fixtures for configuration, the database store, and a
mocked mail provider.
"""

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailpilot.config import reset_config
from mailpilot.config_schema import AppConfig
from mailpilot.db.store import DatabaseStore, Mailbox

# Fixed reference time so window and cooldown boundaries are exact
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

USER_ID = "user-1"
MAILBOX_ID = "mailbox-1"
MAILBOX_EMAIL = "alex@example.com"
HOLDING_FOLDER_ID = "holding-folder-id"


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

auth:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

staging:
  grace_period_hours: 24
  sweep_chunk_size: 5
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
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
    """Create and initialize a DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
async def mailbox(store: DatabaseStore) -> Mailbox:
    """Register the default test mailbox."""
    box = Mailbox(
        id=MAILBOX_ID,
        user_id=USER_ID,
        email=MAILBOX_EMAIL,
        display_name="Alex",
        created_at=NOW,
    )
    await store.save_mailbox(box)
    return box


@pytest.fixture
def mock_provider() -> MagicMock:
    """Return a mock MailProvider whose calls all succeed."""
    provider = MagicMock()
    provider.move_message = AsyncMock(return_value={"id": "moved"})
    provider.patch_message = AsyncMock(return_value={})
    provider.list_messages = AsyncMock()
    provider.find_or_create_folder = AsyncMock(return_value=HOLDING_FOLDER_ID)
    return provider
