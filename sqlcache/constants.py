"""Centralized defaults for the SQL-backed distributed cache.

Single source of truth for the expiration, cleanup and locking defaults
shared by the engine, the settings model and the record store.
"""

from datetime import timedelta

# =============================================================================
# EXPIRATION
# =============================================================================

# Applied when neither a sliding nor an absolute expiration is resolved
DEFAULT_SLIDING_EXPIRATION: timedelta = timedelta(minutes=30)

# Window used by the "expiring soon" statistics aggregate
EXPIRING_SOON_WINDOW: timedelta = timedelta(minutes=10)

# =============================================================================
# STORAGE
# =============================================================================

DEFAULT_TABLE_NAME: str = "distributed_cache"
MAX_KEY_LENGTH: int = 449
DEFAULT_COMMAND_TIMEOUT: float = 30.0

# Keys per IN (...) query when reading many records at once
GET_MANY_CHUNK_SIZE: int = 500

# =============================================================================
# BACKGROUND CLEANUP
# =============================================================================

DEFAULT_CLEANUP_INTERVAL: timedelta = timedelta(minutes=5)

# =============================================================================
# LOCKING
# =============================================================================

DEFAULT_LOCK_TIMEOUT: timedelta = timedelta(seconds=10)
LOCK_RESOURCE_PREFIX: str = "Cache_"
LOCK_POLL_INTERVAL: float = 0.05
DEFAULT_REDIS_LOCK_LEASE: timedelta = timedelta(seconds=30)
