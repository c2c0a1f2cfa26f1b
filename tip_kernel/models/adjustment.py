"""Audit record of a correction to already posted tips."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import TrackedBase
from tip_kernel.db.types import UTCDateTime, UUIDString
from tip_kernel.domain.enums import AdjustmentKind


class TipAdjustment(TrackedBase):
    """
    One manual adjustment or recalculation run.

    A recalculation run's entries carry ``adjustment_id`` in their
    metadata under a ``recalculation_reference``; a manual adjustment
    keeps its ``adjustment_reference`` in ``context``. ``context`` also
    holds the per-worker net cents before and after, so the run can be
    audited without replaying it. Rows are never updated.
    """

    __tablename__ = "tip_adjustments"

    __table_args__ = (
        Index("idx_tip_adjustment_time", "adjusted_at"),
        Index("idx_tip_adjustment_group", "group_id"),
    )

    kind: Mapped[AdjustmentKind] = mapped_column(String(20), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    group_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    tip_transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    adjusted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
