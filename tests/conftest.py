"""Shared fixtures for cache tests.

Each test gets its own file-backed SQLite database and, where expiry
timing matters, a controllable clock patched into the engine.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from sqlcache import CacheEngine, CacheOptions


class FakeClock:
    """Deterministic replacement for ``utcnow``."""

    def __init__(self, start: datetime = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"


@pytest.fixture
def options(database_url):
    """Options with background cleanup and compression off."""
    return CacheOptions(
        database_url=database_url,
        auto_cleanup=False,
        enable_compression=False,
    )


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr("sqlcache.core.cache.utcnow", fake)
    return fake


@pytest_asyncio.fixture
async def cache(options):
    engine = CacheEngine(options)
    await engine.startup()
    try:
        yield engine
    finally:
        await engine.shutdown()
