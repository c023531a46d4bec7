"""Cache data models."""

from .cache import CacheRecord, CacheStatistics, UTCDateTime, build_cache_table

__all__ = [
    "CacheRecord",
    "CacheStatistics",
    "UTCDateTime",
    "build_cache_table",
]
