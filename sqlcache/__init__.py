"""SQL-backed distributed cache.

Key-addressed entries with sliding/absolute expiration stored in a
relational table, cross-process GetOrAdd through advisory locks, hit/miss
statistics and a background reaper for expired rows.
"""

from .core.cache import CacheEngine
from .core.config import CacheOptions
from .core.exceptions import (
    CacheError,
    ConfigurationError,
    InvalidArgumentError,
    LockTimeoutError,
    SerializationError,
    StoreError,
    StoreUnavailableError,
)
from .core.locks import DatabaseLock, DistributedLock, LocalLock, LockOutcome, RedisLock
from .core.serialization import (
    CacheSerializer,
    CompressedSerializer,
    JsonSerializer,
    PickleSerializer,
)
from .models.cache import CacheRecord, CacheStatistics

__all__ = [
    "CacheEngine",
    "CacheOptions",
    "CacheRecord",
    "CacheStatistics",
    # Errors
    "CacheError",
    "ConfigurationError",
    "InvalidArgumentError",
    "LockTimeoutError",
    "SerializationError",
    "StoreError",
    "StoreUnavailableError",
    # Locks
    "DistributedLock",
    "DatabaseLock",
    "LocalLock",
    "RedisLock",
    "LockOutcome",
    # Serializers
    "CacheSerializer",
    "PickleSerializer",
    "JsonSerializer",
    "CompressedSerializer",
]
