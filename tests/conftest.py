"""
Pytest configuration for the Dasharr metrics engine tests.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from dasharr.database.connection import ConnectionPool
from dasharr.metrics.storage import MetricsStore
from dasharr.security.cipher import CredentialCipher

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

TEST_ENCRYPTION_KEY = "test-encryption-key-for-unit-tests"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Path of a database file that does not exist yet."""
    return tmp_path / "dasharr.db"


@pytest.fixture
def cipher(tmp_path: Path) -> CredentialCipher:
    """Cipher with a fixed configured key."""
    return CredentialCipher(key=TEST_ENCRYPTION_KEY, config_dir=tmp_path)


@pytest.fixture
async def store(temp_db_path: Path, cipher: CredentialCipher) -> AsyncIterator[MetricsStore]:
    """An initialized MetricsStore with one read connection."""
    pool = ConnectionPool(temp_db_path, read_connections=1, checkpoint_interval_seconds=None)
    store = MetricsStore(pool, cipher)
    await store.initialize()
    yield store
    await store.close()
