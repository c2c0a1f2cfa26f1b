"""
Tip group, membership, active-group index and segment models.

The open segment of a group is the one row with ``end_time IS NULL``; there
is no pointer column to keep in sync. ActiveWorkerGroup is the explicit
"which group is this worker in right now" index, written in the same
transaction as the membership change it mirrors.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import TrackedBase
from tip_kernel.db.types import DecimalString, UTCDateTime, UUIDString
from tip_kernel.domain.enums import GroupStatus, MembershipStatus, SplitMode


class TipGroup(TrackedBase):
    """
    A transient pooling unit.

    The row doubles as the per-group serialisation point: every timeline
    mutation and every group ledger post locks it FOR UPDATE first.
    """

    __tablename__ = "tip_groups"

    __table_args__ = (
        Index("idx_tip_group_status", "status"),
        Index("idx_tip_group_owner", "owner_id"),
    )

    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)

    split_mode: Mapped[SplitMode] = mapped_column(String(20), nullable=False)

    status: Mapped[GroupStatus] = mapped_column(
        String(10), nullable=False, default=GroupStatus.ACTIVE
    )

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    location_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == GroupStatus.ACTIVE


class GroupMembership(TrackedBase):
    """One occupancy of a worker in a group (a rejoin is a new row)."""

    __tablename__ = "group_memberships"

    __table_args__ = (
        Index("idx_membership_group_status", "group_id", "status"),
        Index("idx_membership_worker", "worker_id", "joined_at"),
    )

    group_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tip_groups.id"), nullable=False
    )

    worker_id: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[MembershipStatus] = mapped_column(String(20), nullable=False)

    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Null while PENDING_APPROVAL or DECLINED
    joined_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    left_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Role tier for ROLE_WEIGHTED splits
    weight: Mapped[Decimal] = mapped_column(
        DecimalString(), nullable=False, default=Decimal("1")
    )

    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)


class ActiveWorkerGroup(TrackedBase):
    """Current ACTIVE group per worker. Unique worker_id is the guard."""

    __tablename__ = "active_worker_groups"

    __table_args__ = (
        UniqueConstraint("worker_id", name="uq_active_worker_group_worker"),
        Index("idx_active_worker_group_group", "group_id"),
    )

    worker_id: Mapped[str] = mapped_column(String(100), nullable=False)

    group_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tip_groups.id"), nullable=False
    )


class GroupSegment(TrackedBase):
    """
    An interval [start_time, end_time) of fixed composition and split.

    Contract:
        Segments of a group are numbered by seq from 1 and tile the group's
        lifetime. Only end_time may change, once, from NULL.
        split_map values are decimal strings summing to exactly 100.
    """

    __tablename__ = "group_segments"

    __table_args__ = (
        UniqueConstraint("group_id", "seq", name="uq_segment_group_seq"),
        Index("idx_segment_group_start", "group_id", "start_time"),
    )

    group_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tip_groups.id"), nullable=False
    )

    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    member_count: Mapped[int] = mapped_column(Integer, nullable=False)

    split_map: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
