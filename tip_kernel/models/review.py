"""Operator review queue."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import TrackedBase
from tip_kernel.db.types import UTCDateTime, UUIDString
from tip_kernel.domain.enums import ReviewFlagKind


class ReviewFlag(TrackedBase):
    """An anomaly that was handled without failing the operation but needs a human."""

    __tablename__ = "review_flags"

    __table_args__ = (
        Index("idx_review_flag_open", "resolved_at"),
        Index("idx_review_flag_reference", "source_reference"),
    )

    kind: Mapped[ReviewFlagKind] = mapped_column(String(30), nullable=False)

    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    group_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    source_reference: Mapped[str | None] = mapped_column(String(300), nullable=True)

    amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    flagged_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
