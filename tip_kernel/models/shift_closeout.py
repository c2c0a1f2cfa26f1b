"""Shift closeout guard row."""

from datetime import date, datetime

from sqlalchemy import Date, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import TrackedBase
from tip_kernel.db.types import UTCDateTime
from tip_kernel.domain.enums import CloseoutStatus


class ShiftCloseout(TrackedBase):
    """One row per shift; locked FOR UPDATE while tip-outs are evaluated."""

    __tablename__ = "shift_closeouts"

    __table_args__ = (UniqueConstraint("shift_id", name="uq_shift_closeout_shift"),)

    shift_id: Mapped[str] = mapped_column(String(100), nullable=False)

    shift_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[CloseoutStatus] = mapped_column(String(10), nullable=False)

    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
