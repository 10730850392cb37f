"""
Shared column types and mixins for ORM models.

Timestamps are stored as naive UTC and handed back timezone-aware, so
comparisons behave the same on PostgreSQL and on SQLite in tests.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC datetime."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at = Column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
        comment="Row creation time (UTC)"
    )
    updated_at = Column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Last modification time (UTC)"
    )
