"""Named distributed locks for GetOrAdd.

Backends:
- DatabaseLock: the store's own advisory lock, held on an unpooled
  connection (separate from the cache operations' pool) for the lock's
  lifetime (``pg_try_advisory_lock`` polling on PostgreSQL, ``GET_LOCK``
  on MySQL). A connection that dies releases it.
- RedisLock: ``SET NX PX`` lease with a token-checked release.
- LocalLock: per-name ``asyncio.Lock``. Used directly for single-process
  deployments and as the degraded mode when the store has no advisory
  lock primitive (SQLite, or the function is missing/forbidden). Degraded
  mode only excludes callers inside this process.
"""

import asyncio
import hashlib
import math
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, Optional, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncConnection

from ..constants import LOCK_POLL_INTERVAL, LOCK_RESOURCE_PREFIX
from .config import CacheOptions
from .database import RecordStore
from .exceptions import LockTimeoutError, StoreError, StoreUnavailableError
from .logging import get_logger

logger = get_logger(__name__)

# MySQL lock names are limited to 64 characters
_MYSQL_MAX_NAME = 64


class LockOutcome(str, Enum):
    GRANTED = "granted"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass
class LockHandle:
    """A granted lock; pass it back to ``release``."""

    resource: str
    token: str = field(default_factory=lambda: str(uuid.uuid4()))
    connection: Optional[AsyncConnection] = None
    local_lock: Optional[asyncio.Lock] = None
    degraded: bool = False


def ensure_str(value: Union[str, bytes, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def advisory_lock_id(resource: str) -> int:
    """Stable signed 64-bit id for PostgreSQL advisory locks."""
    digest = hashlib.blake2b(resource.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def mysql_lock_name(resource: str) -> str:
    if len(resource) <= _MYSQL_MAX_NAME:
        return resource
    return LOCK_RESOURCE_PREFIX + hashlib.sha1(resource.encode("utf-8")).hexdigest()


class DistributedLock(ABC):
    """Exclusive-per-name lock with an acquisition timeout."""

    degraded: bool = False

    @staticmethod
    def resource_name(key: str) -> str:
        """Lock resource for a cache key; equal keys contend, different keys never do."""
        return f"{LOCK_RESOURCE_PREFIX}{key}"

    @abstractmethod
    async def _acquire(self, resource: str, timeout: float) -> Optional[LockHandle]:
        """Return a handle, ``None`` on timeout, or raise on store failure."""

    @abstractmethod
    async def _release(self, handle: LockHandle) -> None:
        ...

    async def try_acquire(self, resource: str, timeout: float) -> Tuple[LockOutcome, Optional[LockHandle]]:
        """Acquire without raising on timeout or store failure."""
        try:
            handle = await self._acquire(resource, timeout)
        except (StoreError, DBAPIError) as e:
            logger.warning("Lock acquisition failed", resource=resource, error=str(e))
            return LockOutcome.ERROR, None
        if handle is None:
            return LockOutcome.TIMED_OUT, None
        return LockOutcome.GRANTED, handle

    async def acquire(self, resource: str, timeout: float) -> LockHandle:
        """Acquire or raise ``LockTimeoutError`` / ``StoreUnavailableError``."""
        handle = await self._acquire(resource, timeout)
        if handle is None:
            raise LockTimeoutError(resource, timeout)
        logger.debug("Lock acquired", resource=resource, token=handle.token[:8], degraded=handle.degraded)
        return handle

    async def release(self, handle: LockHandle) -> None:
        """Best-effort release; failures are logged, never raised."""
        try:
            await self._release(handle)
            logger.debug("Lock released", resource=handle.resource)
        except Exception as e:
            logger.warning("Lock release failed", resource=handle.resource, error=str(e))

    @asynccontextmanager
    async def hold(self, resource: str, timeout: float) -> AsyncIterator[LockHandle]:
        handle = await self.acquire(resource, timeout)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def close(self) -> None:
        """Release backend resources."""


@dataclass
class _LocalEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class LocalLock(DistributedLock):
    """In-process lock per resource name."""

    def __init__(self, degraded: bool = False):
        self.degraded = degraded
        self._entries: Dict[str, _LocalEntry] = {}

    async def _acquire(self, resource: str, timeout: float) -> Optional[LockHandle]:
        entry = self._entries.setdefault(resource, _LocalEntry())
        entry.users += 1
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            self._forget(resource, entry)
            return None
        except BaseException:
            self._forget(resource, entry)
            raise
        return LockHandle(resource=resource, local_lock=entry.lock, degraded=self.degraded)

    async def _release(self, handle: LockHandle) -> None:
        entry = self._entries.get(handle.resource)
        handle.local_lock.release()
        if entry is not None:
            self._forget(handle.resource, entry)

    def _forget(self, resource: str, entry: _LocalEntry) -> None:
        entry.users -= 1
        if entry.users <= 0 and self._entries.get(resource) is entry:
            del self._entries[resource]


class DatabaseLock(DistributedLock):
    """Advisory lock provided by the backing relational store."""

    def __init__(self, store: RecordStore, poll_interval: float = LOCK_POLL_INTERVAL):
        self.store = store
        self.poll_interval = poll_interval
        self._fallback = LocalLock(degraded=True)
        self._primitive_missing = False
        self._warned = False

    @property
    def degraded(self) -> bool:
        return self._primitive_missing or self.store.dialect not in ("postgresql", "mysql", "mariadb")

    def _warn_degraded(self, reason: str) -> None:
        if not self._warned:
            self._warned = True
            logger.warning(
                "Distributed lock degraded to in-process lock; GetOrAdd is not serialized across processes",
                dialect=self.store.dialect,
                reason=reason,
            )

    async def _acquire(self, resource: str, timeout: float) -> Optional[LockHandle]:
        if self.degraded:
            self._warn_degraded("no advisory lock primitive")
            return await self._fallback._acquire(resource, timeout)

        conn = await self.store.acquire_lock_connection()
        try:
            granted = await self._try_lock(conn, resource, timeout)
        except ProgrammingError as e:
            await conn.close()
            self._primitive_missing = True
            self._warn_degraded(str(e))
            return await self._fallback._acquire(resource, timeout)
        except DBAPIError as e:
            await conn.close()
            raise StoreUnavailableError(f"Lock acquisition failed for '{resource}': {e}") from e
        except BaseException:
            await conn.close()
            raise

        if not granted:
            await conn.close()
            return None
        return LockHandle(resource=resource, connection=conn)

    async def _try_lock(self, conn: AsyncConnection, resource: str, timeout: float) -> bool:
        if self.store.dialect == "postgresql":
            return await self._acquire_postgres(conn, resource, timeout)
        return await self._acquire_mysql(conn, resource, timeout)

    async def _unlock(self, conn: AsyncConnection, resource: str) -> None:
        if self.store.dialect == "postgresql":
            await conn.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": advisory_lock_id(resource)},
            )
        else:
            await conn.execute(
                text("SELECT RELEASE_LOCK(:name)"),
                {"name": mysql_lock_name(resource)},
            )

    async def _acquire_postgres(self, conn: AsyncConnection, resource: str, timeout: float) -> bool:
        lock_id = advisory_lock_id(resource)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await conn.execute(text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id})
            granted = bool(result.scalar())
            # Session-level lock outlives the transaction
            await conn.commit()
            if granted:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _acquire_mysql(self, conn: AsyncConnection, resource: str, timeout: float) -> bool:
        result = await conn.execute(
            text("SELECT GET_LOCK(:name, :timeout)"),
            {"name": mysql_lock_name(resource), "timeout": max(0, math.ceil(timeout))},
        )
        outcome = result.scalar()
        await conn.commit()
        if outcome is None:
            raise StoreError(f"GET_LOCK returned NULL for '{resource}'")
        return int(outcome) == 1

    async def _release(self, handle: LockHandle) -> None:
        if handle.local_lock is not None:
            await self._fallback._release(handle)
            return

        conn = handle.connection
        try:
            await self._unlock(conn, handle.resource)
            await conn.commit()
        except Exception:
            # Dropping the session drops its advisory locks
            await conn.invalidate()
            raise
        finally:
            await conn.close()


class RedisLock(DistributedLock):
    """Lease lock in Redis (Conductor pattern).

    The lease expiry stands in for session-scoped auto-release: a crashed
    holder frees the lock after ``lease`` seconds.
    """

    def __init__(self, client: "redis.Redis", lease: float, poll_interval: float = LOCK_POLL_INTERVAL):
        self.client = client
        self.lease = lease
        self.poll_interval = poll_interval

    @classmethod
    def from_url(cls, url: str, lease: float) -> "RedisLock":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        return cls(client, lease)

    @staticmethod
    def _key(resource: str) -> str:
        return f"lock:{resource}"

    async def _acquire(self, resource: str, timeout: float) -> Optional[LockHandle]:
        handle = LockHandle(resource=resource)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                acquired = await self.client.set(
                    self._key(resource), handle.token,
                    px=int(self.lease * 1000),
                    nx=True,
                )
            except (RedisConnectionError, RedisTimeoutError) as e:
                raise StoreUnavailableError(f"Redis unavailable for lock '{resource}': {e}") from e
            if acquired:
                return handle
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _release(self, handle: LockHandle) -> None:
        key = self._key(handle.resource)
        # Only release if we still hold the lease
        current = ensure_str(await self.client.get(key))
        if current is not None and current == handle.token:
            await self.client.delete(key)

    async def close(self) -> None:
        await self.client.aclose()


def create_lock(options: CacheOptions, store: RecordStore) -> DistributedLock:
    """Build the configured lock backend."""
    if options.lock_backend == "redis":
        return RedisLock.from_url(options.redis_url, options.redis_lock_lease.total_seconds())
    return DatabaseLock(store)
