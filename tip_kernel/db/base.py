"""
Module: tip_kernel.db.base
Responsibility: Declarative base and audit-timestamp mixin for every ORM
    model in the tip kernel.
Architecture position: Kernel > DB. Imports only db/types.py and SQLAlchemy.
Invariants enforced:
    - Every row has a uuid4 primary key stored as String(36).
    - datetime columns are UTCDateTime (aware UTC in Python on every backend).
    - int columns are BigInteger so minor-unit amounts never overflow.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tip_kernel.db.types import DecimalString, UTCDateTime, UUIDString


class Base(DeclarativeBase):
    """Declarative base for all tip kernel models."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: DecimalString(),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """Adds server-side created/updated timestamps.

    Timestamps are bookkeeping metadata; business instants (joined_at,
    occurred_at, start_time) always come from the injected Clock.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


UUID = PyUUID
