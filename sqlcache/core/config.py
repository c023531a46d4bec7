"""Environment-driven cache configuration with Pydantic v2."""

import re
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..constants import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_REDIS_LOCK_LEASE,
    DEFAULT_TABLE_NAME,
)
from .expiration import ensure_utc

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class CacheOptions(BaseSettings):
    """Cache settings, read once when the engine is constructed.

    Every field can be set through a ``SQLCACHE_``-prefixed environment
    variable (e.g. ``SQLCACHE_DATABASE_URL``, ``SQLCACHE_CLEANUP_INTERVAL=PT2M``).
    """

    # Backing store
    database_url: str = Field(default="sqlite+aiosqlite:///./sqlcache.db")
    database_echo: bool = Field(default=False)
    table_name: str = Field(default=DEFAULT_TABLE_NAME)
    schema_name: Optional[str] = Field(default=None)
    command_timeout: float = Field(default=DEFAULT_COMMAND_TIMEOUT, gt=0)
    create_table: bool = Field(default=True)

    # Serialization
    serializer: Literal["pickle", "json"] = Field(default="pickle")
    enable_compression: bool = Field(default=True)

    # Expiration defaults (explicit per-call arguments override these)
    default_sliding_expiration: Optional[timedelta] = Field(default=None)
    default_absolute_expiration: Optional[datetime] = Field(default=None)

    # Background cleanup
    auto_cleanup: bool = Field(default=True)
    cleanup_interval: timedelta = Field(default=DEFAULT_CLEANUP_INTERVAL)

    # GetOrAdd locking
    lock_timeout: timedelta = Field(default=DEFAULT_LOCK_TIMEOUT)
    lock_backend: Literal["database", "redis"] = Field(default="database")
    redis_url: Optional[str] = Field(default=None)
    redis_lock_lease: timedelta = Field(default=DEFAULT_REDIS_LOCK_LEASE)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("table_name", "schema_name")
    @classmethod
    def validate_identifier(cls, v):
        """Table and schema names are interpolated into DDL; keep them plain."""
        if v is not None and not _IDENTIFIER.match(v):
            raise ValueError(f"'{v}' is not a plain SQL identifier")
        return v

    @field_validator("default_sliding_expiration", "cleanup_interval", "lock_timeout", "redis_lock_lease")
    @classmethod
    def validate_positive_interval(cls, v):
        if v is not None and v <= timedelta(0):
            raise ValueError("interval must be positive")
        return v

    @field_validator("default_absolute_expiration")
    @classmethod
    def validate_absolute(cls, v):
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_lock_backend(self):
        if self.lock_backend == "redis" and not self.redis_url:
            raise ValueError("redis_url is required when lock_backend is 'redis'")
        return self

    @property
    def full_table_name(self) -> str:
        """Schema-qualified table name, for log context."""
        if self.schema_name:
            return f"{self.schema_name}.{self.table_name}"
        return self.table_name

    model_config = {
        "env_prefix": "SQLCACHE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "frozen": True,
    }
