"""Pytest configuration and shared fixtures.

Everything runs in-process: the provider is an AsyncMock with the
ProviderClient interface and the store is a MemoryStateStore unless a test
needs the SQL store explicitly.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from tempalias.core.config import LifecycleSettings, Settings
from tempalias.core.settings import clear_settings_cache
from tempalias.services.notifications import NotificationScheduler
from tempalias.services.provider_client import CreatedAlias, ProviderClient
from tempalias.services.storage import MemoryStateStore
from tests.factories import FakeClock, RecordingSink


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> Settings:
    """Settings with default lifecycle timings and no API key."""
    return Settings(_env_file=None, lifecycle=LifecycleSettings())


# ---------------------------------------------------------------------------
# State and collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier(sink: RecordingSink) -> NotificationScheduler:
    return NotificationScheduler(sink, default_duration_ms=5000)


@pytest.fixture
def provider_client() -> AsyncMock:
    """AsyncMock with the ProviderClient interface and benign defaults."""
    client = AsyncMock(spec=ProviderClient)
    client.get_account.return_value = {"account": {"email": "owner@example.org"}}
    client.create_alias.return_value = CreatedAlias(success=True, alias_remote_id="9001")
    client.delete_alias.return_value = None
    client.fetch_logs.return_value = []
    return client
