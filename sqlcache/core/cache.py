"""Distributed cache engine backed by a relational store.

Every public operation opens its own short-lived connection and closes it
before returning. Expired records are logically absent even before the
reaper deletes them. GetOrAdd serializes cache-miss computation per key
through the configured distributed lock.
"""

import inspect
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

from ..constants import DEFAULT_SLIDING_EXPIRATION, MAX_KEY_LENGTH
from ..models.cache import CacheRecord, CacheStatistics
from .cleanup import Reaper
from .config import CacheOptions
from .database import RecordStore
from .exceptions import InvalidArgumentError
from .expiration import compute_expiration, refresh_interval, slide, utcnow
from .locks import DistributedLock, create_lock
from .logging import get_logger, log_cache_operation
from .serialization import CacheSerializer, create_serializer
from .statistics import StatisticsTracker

logger = get_logger(__name__)

ValueFactory = Callable[[], Union[Any, Awaitable[Any]]]


def validate_key(key: str) -> None:
    if not key:
        raise InvalidArgumentError("key", "cache key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidArgumentError("key", f"cache key exceeds {MAX_KEY_LENGTH} characters")


class CacheEngine:
    """SQL-backed distributed cache.

    Usage::

        async with CacheEngine(CacheOptions(database_url=...)) as cache:
            await cache.set("user:1", profile, sliding_expiration=timedelta(minutes=5))
            profile = await cache.get("user:1")

    ``startup()`` bootstraps the table and starts the reaper when
    ``auto_cleanup`` is enabled; ``shutdown()`` stops it and releases the
    store and lock resources.
    """

    def __init__(
        self,
        options: Optional[CacheOptions] = None,
        store: Optional[RecordStore] = None,
        lock: Optional[DistributedLock] = None,
        serializer: Optional[CacheSerializer] = None,
    ):
        self.options = options or CacheOptions()
        self.store = store or RecordStore(self.options)
        self.lock = lock or create_lock(self.options, self.store)
        self.serializer = serializer or create_serializer(
            self.options.serializer, compress=self.options.enable_compression
        )
        self.stats = StatisticsTracker()
        self.reaper: Optional[Reaper] = None

    @classmethod
    async def create(cls, options: Optional[CacheOptions] = None, **kwargs) -> "CacheEngine":
        """Construct and start an engine."""
        engine = cls(options, **kwargs)
        await engine.startup()
        return engine

    async def startup(self) -> None:
        await self.store.startup()
        if self.options.auto_cleanup:
            self.reaper = Reaper(self, self.options.cleanup_interval.total_seconds())
            await self.reaper.start()
        logger.info(
            "Cache engine started",
            table=self.options.full_table_name,
            serializer=self.serializer.name,
            lock=type(self.lock).__name__,
            lock_degraded=self.lock.degraded,
            auto_cleanup=self.options.auto_cleanup,
        )

    async def shutdown(self) -> None:
        if self.reaper:
            await self.reaper.stop()
            self.reaper = None
        await self.lock.close()
        await self.store.shutdown()
        logger.info("Cache engine stopped")

    async def __aenter__(self) -> "CacheEngine":
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ============================================================================
    # Reads
    # ============================================================================

    async def get(self, key: str) -> Any:
        """Value for ``key``, or ``None`` when absent or expired.

        A hit on a sliding record pushes its expiry forward (best effort).
        """
        validate_key(key)
        now = utcnow()

        async with self.store.connect() as conn:
            async with conn.begin():
                record = await self.store.get_by_key(conn, key)

            if record is None or record.is_expired(now):
                self.stats.record_miss()
                log_cache_operation(logger, "get", key, hit=False)
                return None

            value = self.serializer.decode(record.value)
            if record.sliding_enabled:
                await self._slide(conn, record, now)

        self.stats.record_hit()
        log_cache_operation(logger, "get", key, hit=True)
        return value

    async def try_get(self, key: str) -> Tuple[Any, bool]:
        """``(value, found)``; never raises."""
        if not key:
            return None, False
        try:
            value = await self.get(key)
        except Exception as e:
            logger.warning("Cache try_get failed", key=key, error=str(e))
            return None, False
        return value, value is not None

    async def exists(self, key: str) -> bool:
        """True if ``key`` is present and unexpired. Does not slide the expiry."""
        if not key:
            return False
        async with self.store.begin() as conn:
            return await self.store.exists(conn, key, utcnow())

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Present, unexpired values for ``keys``; absent keys are omitted."""
        if keys is None:
            raise InvalidArgumentError("keys", "keys must not be None")

        wanted = list(dict.fromkeys(k for k in keys if k))
        if not wanted:
            return {}

        now = utcnow()
        result: Dict[str, Any] = {}
        async with self.store.connect() as conn:
            async with conn.begin():
                records = await self.store.get_many(conn, wanted, now)

            for record in records:
                result[record.cache_key] = self.serializer.decode(record.value)
                if record.sliding_enabled:
                    await self._slide(conn, record, now)

        self.stats.record_hit(len(result))
        self.stats.record_miss(len(wanted) - len(result))
        log_cache_operation(logger, "get_many", ",".join(wanted[:10]),
                            requested=len(wanted), found=len(result))
        return result

    async def _slide(self, conn, record: CacheRecord, now: datetime) -> None:
        """Persist a sliding extension; a failure here never fails the read."""
        interval = refresh_interval(now, record.expires_at, record.sliding_window)
        expires_at = slide(now, interval, record.absolute_expiration)
        try:
            async with conn.begin():
                await self.store.refresh(conn, record.cache_key, expires_at, now)
        except Exception as e:
            logger.warning("Sliding refresh failed", key=record.cache_key, error=str(e))

    # ============================================================================
    # Writes
    # ============================================================================

    def _resolve_expiration(
        self,
        sliding_expiration: Optional[timedelta],
        absolute_expiration: Optional[datetime],
    ) -> Tuple[Optional[timedelta], Optional[datetime]]:
        if sliding_expiration is None:
            sliding_expiration = self.options.default_sliding_expiration
        if absolute_expiration is None:
            absolute_expiration = self.options.default_absolute_expiration
        if sliding_expiration is not None and sliding_expiration <= timedelta(0):
            raise InvalidArgumentError("sliding_expiration", "must be a positive interval")
        return sliding_expiration, absolute_expiration

    def _build_record(
        self,
        key: str,
        value: Any,
        sliding_expiration: Optional[timedelta],
        absolute_expiration: Optional[datetime],
        now: datetime,
    ) -> CacheRecord:
        validate_key(key)
        if value is None:
            raise InvalidArgumentError("value", "cannot cache None")

        sliding, absolute = self._resolve_expiration(sliding_expiration, absolute_expiration)
        expiration = compute_expiration(now, sliding, absolute)

        return CacheRecord(
            cache_key=key,
            value=self.serializer.encode(value),
            expires_at=expiration.expires_at,
            sliding_enabled=expiration.sliding_enabled,
            sliding_interval=(
                expiration.sliding_interval.total_seconds() if expiration.sliding_interval else None
            ),
            absolute_expiration=expiration.absolute_expiration,
            last_access_time=now,
            created_time=now,
        )

    async def set(
        self,
        key: str,
        value: Any,
        sliding_expiration: Optional[timedelta] = None,
        absolute_expiration: Optional[datetime] = None,
    ) -> None:
        """Insert or overwrite ``key`` with one atomic upsert."""
        record = self._build_record(key, value, sliding_expiration, absolute_expiration, utcnow())
        async with self.store.begin() as conn:
            await self.store.upsert(conn, record)
        log_cache_operation(logger, "set", key, expires_at=record.expires_at.isoformat(),
                            sliding=record.sliding_enabled)

    async def set_many(
        self,
        items: Mapping[str, Any],
        sliding_expiration: Optional[timedelta] = None,
        absolute_expiration: Optional[datetime] = None,
    ) -> None:
        """Write every item or none of them."""
        if items is None:
            raise InvalidArgumentError("items", "items must not be None")
        if not items:
            return

        now = utcnow()
        async with self.store.begin() as conn:
            for key, value in items.items():
                record = self._build_record(key, value, sliding_expiration, absolute_expiration, now)
                await self.store.upsert(conn, record)
        log_cache_operation(logger, "set_many", ",".join(list(items)[:10]), count=len(items))

    async def get_or_add(
        self,
        key: str,
        factory: ValueFactory,
        sliding_expiration: Optional[timedelta] = None,
        absolute_expiration: Optional[datetime] = None,
        lock_timeout: Optional[timedelta] = None,
    ) -> Any:
        """Cached value for ``key``, computing and storing it on a miss.

        On a miss the factory runs under the per-key distributed lock after
        a second lookup, so concurrent callers anywhere compute it once and
        the rest read the stored result. ``factory`` may be sync or async.
        """
        validate_key(key)
        if factory is None:
            raise InvalidArgumentError("factory", "factory must not be None")

        value = await self.get(key)
        if value is not None:
            return value

        timeout = (lock_timeout or self.options.lock_timeout).total_seconds()
        async with self.lock.hold(self.lock.resource_name(key), timeout):
            value = await self.get(key)
            if value is not None:
                return value

            value = factory()
            if inspect.isawaitable(value):
                value = await value

            await self.set(key, value, sliding_expiration, absolute_expiration)
            log_cache_operation(logger, "get_or_add", key, computed=True)
            return value

    async def refresh(self, key: str, sliding_expiration: Optional[timedelta] = None) -> bool:
        """Slide a live sliding record from now without reading its value.

        Uses ``sliding_expiration`` if given, else the configured default,
        else 30 minutes. False when the key is absent, expired or non-sliding.
        """
        if not key:
            return False
        if sliding_expiration is not None and sliding_expiration <= timedelta(0):
            raise InvalidArgumentError("sliding_expiration", "must be a positive interval")
        interval = sliding_expiration or self.options.default_sliding_expiration or DEFAULT_SLIDING_EXPIRATION
        now = utcnow()
        async with self.store.begin() as conn:
            updated = await self.store.refresh(conn, key, now + interval, now)
        log_cache_operation(logger, "refresh", key, refreshed=updated > 0)
        return updated > 0

    async def remove(self, key: str) -> bool:
        """True if a record existed and was deleted."""
        if not key:
            return False
        async with self.store.begin() as conn:
            deleted = await self.store.delete_by_key(conn, key)
        log_cache_operation(logger, "remove", key, deleted=deleted > 0)
        return deleted > 0

    # ============================================================================
    # Maintenance
    # ============================================================================

    async def flush_expired(self) -> int:
        """Delete every expired record; returns the number removed."""
        async with self.store.begin() as conn:
            removed = await self.store.delete_expired(conn, utcnow())
        if removed > 0:
            logger.info("Flushed expired cache entries", count=removed)
        return removed

    async def clear(self) -> None:
        """Remove every record regardless of expiry."""
        async with self.store.begin() as conn:
            await self.store.truncate_all(conn)
        logger.info("Cache cleared", table=self.options.full_table_name)

    async def get_statistics(self) -> CacheStatistics:
        """Store aggregates plus the hit ratio; never raises."""
        ratio = self.stats.hit_ratio
        try:
            async with self.store.connect() as conn:
                async with conn.begin():
                    if not await self.store.table_exists(conn):
                        return CacheStatistics(cache_hit_ratio=ratio)
                    count, size, soon = await self.store.aggregate(conn, utcnow())
        except Exception as e:
            logger.error("Failed to read cache statistics", error=str(e))
            return CacheStatistics.empty()

        return CacheStatistics(
            item_count=count,
            total_size_bytes=size,
            expiring_within_10_minutes=soon,
            cache_hit_ratio=ratio,
        )
