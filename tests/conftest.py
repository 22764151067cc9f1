"""pytest configuration for InkBridge tests."""

import pytest

from inkbridge.db import close_db, init_db


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def store(tmp_path):
    """A page status store on a fresh temp database."""
    from inkbridge.store import PageStatusStore

    init_db(tmp_path / "test.db")
    yield PageStatusStore()
    close_db()
