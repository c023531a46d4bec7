"""SQL-backed cache record model.

The physical table is built per configured name and schema (several caches
may share one database), so the table itself is declared with SQLAlchemy Core
and rows are validated into the SQLModel ``CacheRecord`` data model.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from ..constants import DEFAULT_TABLE_NAME, MAX_KEY_LENGTH
from ..core.expiration import ensure_utc, utcnow

# SQLite only autoincrements an INTEGER PRIMARY KEY
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")
# MySQL BLOB stops at 64KB
_VALUE_TYPE = LargeBinary().with_variant(mysql.LONGBLOB(), "mysql", "mariadb")
# Keys are case-sensitive; MySQL's default collations are not
_KEY_TYPE = String(MAX_KEY_LENGTH).with_variant(
    mysql.VARCHAR(MAX_KEY_LENGTH, collation="utf8mb4_bin"), "mysql", "mariadb"
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamp on every dialect.

    PostgreSQL keeps the offset natively; SQLite and MySQL store naive UTC
    so that string/temporal comparisons in SQL stay consistent. MySQL gets
    microsecond precision, since plain ``DATETIME`` truncates to seconds.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def load_dialect_impl(self, dialect: Any):
        if dialect.name in ("mysql", "mariadb"):
            return dialect.type_descriptor(mysql.DATETIME(fsp=6))
        return dialect.type_descriptor(DateTime(timezone=True))

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "postgresql":
            return value
        return value.replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)


def build_cache_table(
    table_name: str = DEFAULT_TABLE_NAME,
    schema: Optional[str] = None,
    metadata: Optional[MetaData] = None,
) -> Table:
    """Declare the cache table.

    Surrogate ``id`` primary key, unique ``cache_key`` and an index on
    ``expires_at`` for the expired sweep and the "expiring soon" aggregate.
    """
    metadata = metadata if metadata is not None else MetaData()
    return Table(
        table_name,
        metadata,
        Column("id", _ID_TYPE, primary_key=True, autoincrement=True),
        Column("cache_key", _KEY_TYPE, nullable=False),
        Column("value", _VALUE_TYPE, nullable=False),
        Column("expires_at", UTCDateTime(), nullable=False),
        Column("sliding_enabled", Boolean(), nullable=False, default=False),
        Column("sliding_interval", Float(), nullable=True),  # seconds
        Column("absolute_expiration", UTCDateTime(), nullable=True),
        Column("last_access_time", UTCDateTime(), nullable=False),
        Column("created_time", UTCDateTime(), nullable=False),
        UniqueConstraint("cache_key", name=f"uq_{table_name}_cache_key"),
        Index(f"ix_{table_name}_expires_at", "expires_at"),
        schema=schema,
    )


class CacheRecord(SQLModel):
    """One persisted cache entry."""

    id: Optional[int] = None
    cache_key: str = Field(min_length=1, max_length=MAX_KEY_LENGTH)
    value: bytes
    expires_at: datetime
    sliding_enabled: bool = False
    sliding_interval: Optional[float] = None
    absolute_expiration: Optional[datetime] = None
    last_access_time: datetime = Field(default_factory=utcnow)
    created_time: datetime = Field(default_factory=utcnow)

    @property
    def sliding_window(self) -> Optional[timedelta]:
        """Sliding interval established by the write, if persisted."""
        if self.sliding_interval is None:
            return None
        return timedelta(seconds=self.sliding_interval)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Lazy expiry: a record at or past its deadline is logically absent."""
        now = now or utcnow()
        return ensure_utc(self.expires_at) <= now

    def to_row(self) -> dict:
        """Column values for insert/upsert (``id`` is store-generated)."""
        return self.model_dump(exclude={"id"})


class CacheStatistics(BaseModel):
    """Point-in-time cache statistics snapshot."""

    item_count: int = 0
    total_size_bytes: int = 0
    expiring_within_10_minutes: int = 0
    cache_hit_ratio: float = 0.0

    @classmethod
    def empty(cls) -> "CacheStatistics":
        return cls()
