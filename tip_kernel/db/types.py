"""
Column types shared by every tip kernel model.

UUIDString and DecimalString keep storage portable between PostgreSQL and
SQLite. UTCDateTime guarantees that every datetime leaving the database is
timezone-aware UTC, whatever the backend stores.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID as PyUUID

from sqlalchemy import DateTime, String
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID stored as String(36)."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return PyUUID(value)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime, normalised to UTC on the way in and out.

    SQLite has no timezone storage and hands back naive values; those are
    UTC by construction because binding always converts first. Naive input
    is rejected so local wall-clock times can never leak into the ledger.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, datetime):
            return value
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r} cannot be stored; attach a timezone")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DecimalString(TypeDecorator):
    """Exact decimal stored as text (percentages, weights)."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)
