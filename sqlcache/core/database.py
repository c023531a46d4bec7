"""Async record store for the cache table with SQLAlchemy 2.0.

Every method takes the caller's connection so the engine decides the
transaction boundaries (single statement, sliding refresh, whole batch).
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from sqlalchemy import case, delete, func, inspect, literal, select, text, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, InterfaceError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from ..constants import EXPIRING_SOON_WINDOW, GET_MANY_CHUNK_SIZE
from ..models.cache import CacheRecord, UTCDateTime, build_cache_table
from .config import CacheOptions
from .exceptions import ConfigurationError, StoreError, StoreUnavailableError
from .logging import get_logger

logger = get_logger(__name__)

SUPPORTED_DIALECTS = ("sqlite", "postgresql", "mysql", "mariadb")

def is_unavailable(error: BaseException) -> bool:
    """True when ``error`` means the store cannot be reached.

    Driver errors count only when SQLAlchemy flagged the connection as
    invalidated (a disconnect); statement-level failures stay ``StoreError``.
    """
    if isinstance(error, (InterfaceError, PoolTimeoutError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


def _connect_args(database_url, command_timeout: float) -> dict:
    """Per-driver statement/busy timeout."""
    driver = make_url(database_url).get_driver_name()
    if driver == "aiosqlite":
        return {"timeout": command_timeout}
    if driver == "asyncpg":
        return {"command_timeout": command_timeout}
    if driver in ("aiomysql", "asyncmy"):
        return {"connect_timeout": int(command_timeout)}
    return {}


class RecordStore:
    """Keyed record operations against one cache table."""

    def __init__(self, options: CacheOptions, engine: Optional[AsyncEngine] = None):
        self.options = options
        self.table = build_cache_table(options.table_name, options.schema_name)
        self.engine = engine
        self._owns_engine = engine is None
        # Lock sessions never draw from the pool the cache operations use
        self.lock_engine: Optional[AsyncEngine] = None

    @property
    def dialect(self) -> str:
        if self.engine is None:
            return make_url(self.options.database_url).get_backend_name()
        return self.engine.dialect.name

    async def startup(self) -> None:
        """Create the engine (unless injected) and bootstrap the table."""
        if self.dialect not in SUPPORTED_DIALECTS:
            raise ConfigurationError(f"Unsupported cache dialect '{self.dialect}'")

        if self.engine is None:
            self.engine = create_async_engine(
                self.options.database_url,
                echo=self.options.database_echo,
                connect_args=_connect_args(self.options.database_url, self.options.command_timeout),
            )

        if self.options.create_table:
            await self.ensure_schema()

        logger.info("Record store ready", dialect=self.dialect, table=self.options.full_table_name)

    async def shutdown(self) -> None:
        """Dispose the lock engine, and the main engine if this store created it."""
        if self.lock_engine is not None:
            await self.lock_engine.dispose()
            self.lock_engine = None
        if self.engine is not None and self._owns_engine:
            await self.engine.dispose()
            self.engine = None
            logger.info("Record store connections closed")

    async def ensure_schema(self) -> None:
        """Create the cache table and its indexes if they are missing."""
        async with self.begin() as conn:
            await conn.run_sync(self.table.metadata.create_all)

    # ============================================================================
    # Connections
    # ============================================================================

    async def acquire_connection(self) -> AsyncConnection:
        """Check out a pooled connection; the caller must close it."""
        if self.engine is None:
            raise StoreUnavailableError("Record store not started")
        return await self._open(self.engine)

    async def acquire_lock_connection(self) -> AsyncConnection:
        """Open an unpooled session for an advisory lock; the caller must close it.

        The lock stays held while its owner runs cache operations, so the
        session comes from a separate ``NullPool`` engine on the same URL.
        Closing it ends the session and drops its advisory locks.
        """
        if self.engine is None:
            raise StoreUnavailableError("Record store not started")
        if self.lock_engine is None:
            self.lock_engine = create_async_engine(
                self.engine.url,
                poolclass=NullPool,
                connect_args=_connect_args(self.engine.url, self.options.command_timeout),
            )
        return await self._open(self.lock_engine)

    @staticmethod
    async def _open(engine: AsyncEngine) -> AsyncConnection:
        try:
            return await engine.connect()
        except (DBAPIError, PoolTimeoutError, OSError) as e:
            raise StoreUnavailableError(f"Cannot connect to cache store: {e}") from e

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        """Short-lived connection, closed on every exit path."""
        conn = await self.acquire_connection()
        try:
            yield conn
        except (DBAPIError, PoolTimeoutError) as e:
            if is_unavailable(e):
                raise StoreUnavailableError(f"Cache store unavailable: {e}") from e
            raise StoreError(f"Cache store error: {e}") from e
        finally:
            await conn.close()

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncConnection]:
        """Connection with one transaction, committed on success, rolled back on error."""
        async with self.connect() as conn:
            async with conn.begin():
                yield conn

    # ============================================================================
    # Keyed operations
    # ============================================================================

    async def get_by_key(self, conn: AsyncConnection, key: str) -> Optional[CacheRecord]:
        result = await conn.execute(select(self.table).where(self.table.c.cache_key == key))
        row = result.mappings().first()
        return CacheRecord.model_validate(dict(row)) if row else None

    async def get_many(self, conn: AsyncConnection, keys: Sequence[str],
                       cutoff: datetime) -> List[CacheRecord]:
        """Unexpired records for ``keys``, queried in chunks."""
        records: List[CacheRecord] = []
        for start in range(0, len(keys), GET_MANY_CHUNK_SIZE):
            chunk = keys[start:start + GET_MANY_CHUNK_SIZE]
            stmt = select(self.table).where(
                self.table.c.cache_key.in_(chunk),
                self.table.c.expires_at > cutoff,
            )
            result = await conn.execute(stmt)
            records.extend(CacheRecord.model_validate(dict(row)) for row in result.mappings())
        return records

    async def exists(self, conn: AsyncConnection, key: str, now: datetime) -> bool:
        stmt = select(self.table.c.id).where(
            self.table.c.cache_key == key,
            self.table.c.expires_at > now,
        ).limit(1)
        result = await conn.execute(stmt)
        return result.first() is not None

    async def upsert(self, conn: AsyncConnection, record: CacheRecord) -> None:
        """Insert-or-update keyed on ``cache_key`` in one statement."""
        await conn.execute(self._upsert_statement(record.to_row()))

    def _upsert_statement(self, row: dict):
        # created_time survives overwrites
        updated = [name for name in row if name not in ("cache_key", "created_time")]

        if self.dialect == "sqlite":
            stmt = sqlite_insert(self.table).values(**row)
            return stmt.on_conflict_do_update(
                index_elements=[self.table.c.cache_key],
                set_={name: stmt.excluded[name] for name in updated},
            )
        if self.dialect == "postgresql":
            stmt = postgresql_insert(self.table).values(**row)
            return stmt.on_conflict_do_update(
                index_elements=[self.table.c.cache_key],
                set_={name: stmt.excluded[name] for name in updated},
            )
        if self.dialect in ("mysql", "mariadb"):
            stmt = mysql_insert(self.table).values(**row)
            return stmt.on_duplicate_key_update(
                {name: stmt.inserted[name] for name in updated}
            )
        raise ConfigurationError(f"Atomic upsert not supported for dialect '{self.dialect}'")

    async def refresh(self, conn: AsyncConnection, key: str, candidate: datetime,
                      now: datetime) -> int:
        """Slide a live sliding record to ``candidate``, clamped to its absolute ceiling.

        Returns the number of rows updated (0 for absent, expired or
        non-sliding records).
        """
        c = self.table.c
        candidate_value = literal(candidate, UTCDateTime())
        stmt = (
            update(self.table)
            .where(
                c.cache_key == key,
                c.sliding_enabled.is_(True),
                c.expires_at > now,
            )
            .values(
                expires_at=case(
                    (c.absolute_expiration.isnot(None) & (c.absolute_expiration < candidate_value),
                     c.absolute_expiration),
                    else_=candidate_value,
                ),
                last_access_time=now,
            )
        )
        result = await conn.execute(stmt)
        return result.rowcount

    async def delete_by_key(self, conn: AsyncConnection, key: str) -> int:
        result = await conn.execute(delete(self.table).where(self.table.c.cache_key == key))
        return result.rowcount

    async def delete_expired(self, conn: AsyncConnection, cutoff: datetime) -> int:
        result = await conn.execute(delete(self.table).where(self.table.c.expires_at <= cutoff))
        return result.rowcount

    async def truncate_all(self, conn: AsyncConnection) -> None:
        if self.dialect == "sqlite":
            await conn.execute(delete(self.table))
            return
        table_name = conn.dialect.identifier_preparer.format_table(self.table)
        await conn.execute(text(f"TRUNCATE TABLE {table_name}"))

    # ============================================================================
    # Statistics
    # ============================================================================

    async def table_exists(self, conn: AsyncConnection) -> bool:
        name, schema = self.table.name, self.table.schema
        return await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).has_table(name, schema=schema)
        )

    async def aggregate(self, conn: AsyncConnection, now: datetime) -> Tuple[int, int, int]:
        """(item count, total payload bytes, rows expiring within 10 minutes)."""
        c = self.table.c
        length = func.octet_length if self.dialect == "postgresql" else func.length
        soon = literal(now + EXPIRING_SOON_WINDOW, UTCDateTime())
        stmt = select(
            func.count(c.id),
            func.coalesce(func.sum(length(c.value)), 0),
            func.coalesce(func.sum(case((c.expires_at < soon, 1), else_=0)), 0),
        )
        row = (await conn.execute(stmt)).one()
        return int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)
