"""Tests for the record store against SQLite."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.dialects import mysql, postgresql
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import NullPool
from sqlalchemy.schema import CreateTable

from sqlcache import CacheOptions, CacheRecord
from sqlcache.core.database import RecordStore, is_unavailable
from sqlcache.core.exceptions import ConfigurationError, StoreError, StoreUnavailableError
from sqlcache.models.cache import build_cache_table

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_record(key: str, value: bytes = b"payload", **overrides) -> CacheRecord:
    fields = dict(
        cache_key=key,
        value=value,
        expires_at=NOW + timedelta(minutes=5),
        sliding_enabled=False,
        last_access_time=NOW,
        created_time=NOW,
    )
    fields.update(overrides)
    return CacheRecord(**fields)


@pytest_asyncio.fixture
async def store(options):
    record_store = RecordStore(options)
    await record_store.startup()
    try:
        yield record_store
    finally:
        await record_store.shutdown()


class TestSchema:

    @pytest.mark.asyncio
    async def test_bootstrap_creates_table(self, store):
        async with store.begin() as conn:
            assert await store.table_exists(conn) is True

    @pytest.mark.asyncio
    async def test_no_bootstrap_when_disabled(self, database_url):
        store = RecordStore(CacheOptions(database_url=database_url, create_table=False))
        await store.startup()
        try:
            async with store.begin() as conn:
                assert await store.table_exists(conn) is False
            await store.ensure_schema()
            async with store.begin() as conn:
                assert await store.table_exists(conn) is True
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_custom_table_name(self, database_url):
        store = RecordStore(CacheOptions(database_url=database_url, table_name="app_cache"))
        await store.startup()
        try:
            assert store.table.name == "app_cache"
            async with store.begin() as conn:
                await store.upsert(conn, make_record("k"))
                assert (await store.get_by_key(conn, "k")).value == b"payload"
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_unsupported_dialect(self):
        store = RecordStore(CacheOptions(database_url="oracle+oracledb://u:p@localhost/db"))
        with pytest.raises(ConfigurationError):
            await store.startup()

    @pytest.mark.asyncio
    async def test_connect_before_startup(self, options):
        store = RecordStore(options)
        with pytest.raises(StoreUnavailableError):
            async with store.connect():
                pass


class TestKeyedOperations:

    @pytest.mark.asyncio
    async def test_upsert_inserts_then_updates(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("k", b"first"))
            await store.upsert(conn, make_record(
                "k", b"second",
                created_time=NOW + timedelta(minutes=1),
                last_access_time=NOW + timedelta(minutes=1),
            ))
            record = await store.get_by_key(conn, "k")

        assert record.value == b"second"
        assert record.created_time == NOW
        assert record.last_access_time == NOW + timedelta(minutes=1)
        assert record.expires_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_many_filters_expired(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("live"))
            await store.upsert(conn, make_record("dead", expires_at=NOW - timedelta(seconds=1)))
            records = await store.get_many(conn, ["live", "dead", "absent"], NOW)
        assert [r.cache_key for r in records] == ["live"]

    @pytest.mark.asyncio
    async def test_exists_uses_expiry(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("k", expires_at=NOW + timedelta(seconds=1)))
            assert await store.exists(conn, "k", NOW) is True
            assert await store.exists(conn, "k", NOW + timedelta(seconds=1)) is False

    @pytest.mark.asyncio
    async def test_refresh_clamps_to_absolute(self, store):
        ceiling = NOW + timedelta(seconds=30)
        async with store.begin() as conn:
            await store.upsert(conn, make_record(
                "k",
                expires_at=NOW + timedelta(seconds=10),
                sliding_enabled=True,
                sliding_interval=10.0,
                absolute_expiration=ceiling,
            ))
            assert await store.refresh(conn, "k", NOW + timedelta(seconds=20), NOW) == 1
            assert (await store.get_by_key(conn, "k")).expires_at == NOW + timedelta(seconds=20)

            assert await store.refresh(conn, "k", NOW + timedelta(minutes=5), NOW) == 1
            assert (await store.get_by_key(conn, "k")).expires_at == ceiling

    @pytest.mark.asyncio
    async def test_refresh_ignores_non_sliding_and_expired(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("fixed"))
            await store.upsert(conn, make_record(
                "stale", sliding_enabled=True, expires_at=NOW - timedelta(seconds=1)
            ))
            assert await store.refresh(conn, "fixed", NOW + timedelta(minutes=1), NOW) == 0
            assert await store.refresh(conn, "stale", NOW + timedelta(minutes=1), NOW) == 0
            assert await store.refresh(conn, "absent", NOW + timedelta(minutes=1), NOW) == 0

    @pytest.mark.asyncio
    async def test_delete_by_key(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("k"))
            assert await store.delete_by_key(conn, "k") == 1
            assert await store.delete_by_key(conn, "k") == 0

    @pytest.mark.asyncio
    async def test_delete_expired_counts_rows(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("a", expires_at=NOW - timedelta(minutes=1)))
            await store.upsert(conn, make_record("b", expires_at=NOW))
            await store.upsert(conn, make_record("c"))
            assert await store.delete_expired(conn, NOW) == 2
            assert await store.delete_expired(conn, NOW) == 0
            assert await store.get_by_key(conn, "c") is not None

    @pytest.mark.asyncio
    async def test_truncate_all(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("a"))
            await store.upsert(conn, make_record("b"))
            await store.truncate_all(conn)
            assert await store.aggregate(conn, NOW) == (0, 0, 0)


class TestAggregate:

    @pytest.mark.asyncio
    async def test_counts_bytes_and_expiring_soon(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("a", b"12345", expires_at=NOW + timedelta(minutes=5)))
            await store.upsert(conn, make_record("b", b"123", expires_at=NOW + timedelta(minutes=30)))
            await store.upsert(conn, make_record("c", b"1", expires_at=NOW + timedelta(minutes=9)))
            count, size, soon = await store.aggregate(conn, NOW)

        assert count == 3
        assert size == 9
        assert soon == 2

    @pytest.mark.asyncio
    async def test_empty_table(self, store):
        async with store.begin() as conn:
            assert await store.aggregate(conn, NOW) == (0, 0, 0)


class TestDialectSchema:
    """DDL rendered for the server dialects."""

    def test_mysql_keys_are_binary_collated(self):
        ddl = str(CreateTable(build_cache_table()).compile(dialect=mysql.dialect()))
        assert "cache_key VARCHAR(449) COLLATE utf8mb4_bin" in ddl
        assert "value LONGBLOB" in ddl

    def test_mysql_timestamps_keep_microseconds(self):
        ddl = str(CreateTable(build_cache_table()).compile(dialect=mysql.dialect()))
        assert "expires_at DATETIME(6)" in ddl
        assert "absolute_expiration DATETIME(6)" in ddl

    def test_postgresql_timestamps_are_timezone_aware(self):
        ddl = str(CreateTable(build_cache_table()).compile(dialect=postgresql.dialect()))
        assert "expires_at TIMESTAMP WITH TIME ZONE" in ddl
        assert "COLLATE" not in ddl

    @pytest.mark.asyncio
    async def test_keys_are_case_sensitive(self, store):
        async with store.begin() as conn:
            await store.upsert(conn, make_record("Key", b"upper"))
            await store.upsert(conn, make_record("key", b"lower"))
            assert (await store.get_by_key(conn, "Key")).value == b"upper"
            assert (await store.get_by_key(conn, "key")).value == b"lower"
            assert await store.get_by_key(conn, "KEY") is None
            records = await store.get_many(conn, ["KEY", "key"], NOW)
        assert [r.cache_key for r in records] == ["key"]


class TestErrorClassification:
    """Only connectivity failures count as an unavailable store."""

    def test_disconnect_is_unavailable(self):
        error = OperationalError("SELECT 1", {}, Exception("server closed the connection"),
                                 connection_invalidated=True)
        assert is_unavailable(error) is True

    def test_pool_timeout_is_unavailable(self):
        assert is_unavailable(PoolTimeoutError("QueuePool limit reached")) is True

    @pytest.mark.parametrize("error", [
        OperationalError("SELECT", {}, Exception("no such table: distributed_cache")),
        ProgrammingError("SELECT", {}, Exception('relation "distributed_cache" does not exist')),
        IntegrityError("INSERT", {}, Exception("duplicate key")),
    ])
    def test_statement_failures_are_not_unavailable(self, error):
        assert is_unavailable(error) is False

    @pytest.mark.asyncio
    async def test_missing_table_surfaces_as_store_error(self, database_url):
        store = RecordStore(CacheOptions(database_url=database_url, create_table=False))
        await store.startup()
        try:
            with pytest.raises(StoreError) as exc:
                async with store.begin() as conn:
                    await store.get_by_key(conn, "k")
            assert not isinstance(exc.value, StoreUnavailableError)
        finally:
            await store.shutdown()


class TestLockEngine:

    @pytest.mark.asyncio
    async def test_lock_sessions_use_a_separate_unpooled_engine(self, store):
        conn = await store.acquire_lock_connection()
        try:
            assert store.lock_engine is not None
            assert store.lock_engine is not store.engine
            assert conn.engine is store.lock_engine
            assert isinstance(store.lock_engine.sync_engine.pool, NullPool)
        finally:
            await conn.close()

        await store.shutdown()
        assert store.lock_engine is None

    @pytest.mark.asyncio
    async def test_lock_connection_requires_startup(self, options):
        with pytest.raises(StoreUnavailableError):
            await RecordStore(options).acquire_lock_connection()
