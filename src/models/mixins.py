"""Mixins and column types for SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, func
from sqlalchemy.types import TypeDecorator

from src.clock import ensure_utc


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        value = ensure_utc(value)
        if value is not None and dialect.name == "sqlite":
            # SQLite stores text; keep everything in UTC wall time
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        return ensure_utc(value)


class TimestampMixin:
    """Mixin to add created_at and updated_at timestamp columns."""

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        UTCDateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
