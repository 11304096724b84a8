"""
Shared fixtures for the PageFlow test suite.

Stores run against a temporary SQLite file, locks against an in-memory
backend with a controllable clock, and the generation service is replaced by
a scripted fake so retry behaviour can be asserted exactly.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from pageflow.config import Config, LockConfig, StorageConfig
from pageflow.locking import MemoryLockStore, StageLockManager
from pageflow.observability import RecordingEventSink
from pageflow.storage import PageStore
from tests.helpers.fakes import FakeClock, RecordingSleep


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Time
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


# ============================================================================
# Storage and locks
# ============================================================================


@pytest.fixture
def storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(db_path=tmp_path / "pages.db", assets_dir=tmp_path / "assets")


@pytest_asyncio.fixture
async def page_store(storage_config: StorageConfig) -> AsyncGenerator[PageStore, None]:
    store = PageStore(storage_config)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def memory_locks(clock: FakeClock) -> MemoryLockStore:
    return MemoryLockStore(clock=clock)


@pytest.fixture
def lock_manager(memory_locks: MemoryLockStore, events: RecordingEventSink) -> StageLockManager:
    return StageLockManager(memory_locks, ttl_seconds=10, events=events)


@pytest.fixture
def test_config(storage_config: StorageConfig) -> Config:
    """Configuration with a temporary database and in-memory locks."""
    config = Config(storage=storage_config, locks=LockConfig(backend="memory"))
    config.generator.model = "test-model"
    return config
