"""
Group read side: group state, membership history, segment timelines and
earnings breakdowns for display.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select

from tip_kernel.domain.dtos import GroupInfo, MembershipInfo, SegmentInfo
from tip_kernel.domain.enums import EntryDirection, MembershipStatus, SourceType
from tip_kernel.exceptions import GroupNotFoundError
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.review import ReviewFlag
from tip_kernel.models.tip_group import ActiveWorkerGroup, GroupMembership, GroupSegment, TipGroup
from tip_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class SegmentEarnings:
    """What one segment of a group paid out, per member."""

    segment: SegmentInfo
    credits_by_worker: Mapping[str, int]
    fees_by_worker: Mapping[str, int]
    payment_count: int

    @property
    def total_cents(self) -> int:
        return sum(self.credits_by_worker.values())


@dataclass(frozen=True)
class SegmentShare:
    group_id: UUID
    segment_id: UUID
    start_time: datetime
    end_time: datetime | None
    percentage: Decimal | None
    earned_cents: int


@dataclass(frozen=True)
class CheckoutBreakdown:
    """A worker's allocated tips over a window, solo vs. per group segment."""

    worker_id: str
    solo_cents: int
    segments: tuple[SegmentShare, ...] = field(default_factory=tuple)
    fee_cents: int = 0
    tip_out_cents: int = 0

    @property
    def group_cents(self) -> int:
        return sum(s.earned_cents for s in self.segments)

    @property
    def net_cents(self) -> int:
        return self.solo_cents + self.group_cents - self.fee_cents - self.tip_out_cents


@dataclass(frozen=True)
class ReviewFlagInfo:
    id: UUID
    kind: str
    worker_id: str | None
    group_id: UUID | None
    source_reference: str | None
    amount_cents: int | None
    detail: str | None
    flagged_at: datetime


class GroupSelector(BaseSelector[TipGroup]):

    def get_group(self, group_id: UUID) -> GroupInfo:
        group = self.session.get(TipGroup, group_id)
        if group is None:
            raise GroupNotFoundError(str(group_id))
        return GroupInfo.from_model(group)

    def active_group_for_worker(self, worker_id: str) -> GroupInfo | None:
        group = self.session.execute(
            select(TipGroup)
            .join(ActiveWorkerGroup, ActiveWorkerGroup.group_id == TipGroup.id)
            .where(ActiveWorkerGroup.worker_id == worker_id)
        ).scalar_one_or_none()
        return GroupInfo.from_model(group) if group is not None else None

    def group_at(self, worker_id: str, instant: datetime) -> UUID | None:
        """Group the worker was an active member of at ``instant``, if any."""
        return self.session.execute(
            select(GroupMembership.group_id)
            .where(
                GroupMembership.worker_id == worker_id,
                GroupMembership.status.in_(
                    [MembershipStatus.ACTIVE.value, MembershipStatus.LEFT.value]
                ),
                GroupMembership.joined_at <= instant,
                or_(GroupMembership.left_at.is_(None), GroupMembership.left_at > instant),
            )
            .order_by(GroupMembership.joined_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def members(self, group_id: UUID, status: MembershipStatus | None = None) -> list[MembershipInfo]:
        stmt = select(GroupMembership).where(GroupMembership.group_id == group_id)
        if status is not None:
            stmt = stmt.where(GroupMembership.status == MembershipStatus(status).value)
        stmt = stmt.order_by(GroupMembership.requested_at, GroupMembership.worker_id)
        return [MembershipInfo.from_model(m) for m in self.session.execute(stmt).scalars()]

    def segments(self, group_id: UUID) -> list[SegmentInfo]:
        rows = self.session.execute(
            select(GroupSegment).where(GroupSegment.group_id == group_id).order_by(GroupSegment.seq)
        ).scalars()
        return [SegmentInfo.from_model(r) for r in rows]

    def segment_earnings(self, group_id: UUID) -> list[SegmentEarnings]:
        """Per-segment payment credits and fee deductions, for timeline display."""
        entries = self.session.execute(
            select(LedgerEntry).where(
                LedgerEntry.group_id == group_id,
                LedgerEntry.source_type.in_(
                    [SourceType.PAYMENT_ALLOCATION.value, SourceType.FEE_DEDUCTION.value]
                ),
            )
        ).scalars()

        credits: dict[UUID, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        fees: dict[UUID, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        payments: dict[UUID, set] = defaultdict(set)
        for e in entries:
            if e.segment_id is None:
                continue
            if e.source_type == SourceType.PAYMENT_ALLOCATION and e.direction == EntryDirection.CREDIT:
                credits[e.segment_id][e.worker_id] += e.amount_cents
                payments[e.segment_id].add(e.tip_transaction_id)
            elif e.source_type == SourceType.FEE_DEDUCTION:
                fees[e.segment_id][e.worker_id] += e.amount_cents

        return [
            SegmentEarnings(
                segment=seg,
                credits_by_worker=dict(credits.get(seg.id, {})),
                fees_by_worker=dict(fees.get(seg.id, {})),
                payment_count=len(payments.get(seg.id, ())),
            )
            for seg in self.segments(group_id)
        ]

    def checkout_breakdown(self, worker_id: str, start: datetime, end: datetime) -> CheckoutBreakdown:
        """Tips a worker earned in [start, end), split into solo and group segments."""
        entries = list(
            self.session.execute(
                select(LedgerEntry)
                .where(
                    LedgerEntry.worker_id == worker_id,
                    LedgerEntry.occurred_at >= start,
                    LedgerEntry.occurred_at < end,
                )
                .order_by(LedgerEntry.occurred_at)
            ).scalars()
        )

        solo = 0
        fee = 0
        tip_out = 0
        per_segment: dict[UUID, int] = defaultdict(int)
        segment_group: dict[UUID, UUID] = {}
        for e in entries:
            if e.source_type == SourceType.PAYMENT_ALLOCATION and e.direction == EntryDirection.CREDIT:
                if e.segment_id is None:
                    solo += e.amount_cents
                else:
                    per_segment[e.segment_id] += e.amount_cents
                    segment_group[e.segment_id] = e.group_id
            elif e.source_type == SourceType.FEE_DEDUCTION:
                fee += e.amount_cents
            elif e.source_type == SourceType.TIP_OUT:
                # Paid out is positive; a pool receiving tip-outs goes negative.
                tip_out += e.amount_cents if e.direction == EntryDirection.DEBIT else -e.amount_cents

        shares = []
        if per_segment:
            segments = {
                s.id: SegmentInfo.from_model(s)
                for s in self.session.execute(
                    select(GroupSegment).where(GroupSegment.id.in_(list(per_segment)))
                ).scalars()
            }
            for seg_id in sorted(per_segment, key=lambda sid: segments[sid].start_time):
                seg = segments[seg_id]
                shares.append(
                    SegmentShare(
                        group_id=segment_group[seg_id],
                        segment_id=seg_id,
                        start_time=seg.start_time,
                        end_time=seg.end_time,
                        percentage=seg.split_map.get(worker_id),
                        earned_cents=per_segment[seg_id],
                    )
                )

        return CheckoutBreakdown(
            worker_id=worker_id,
            solo_cents=solo,
            segments=tuple(shares),
            fee_cents=fee,
            tip_out_cents=tip_out,
        )

    def open_review_flags(self) -> list[ReviewFlagInfo]:
        rows = self.session.execute(
            select(ReviewFlag).where(ReviewFlag.resolved_at.is_(None)).order_by(ReviewFlag.flagged_at)
        ).scalars()
        return [
            ReviewFlagInfo(
                id=r.id,
                kind=r.kind,
                worker_id=r.worker_id,
                group_id=r.group_id,
                source_reference=r.source_reference,
                amount_cents=r.amount_cents,
                detail=r.detail,
                flagged_at=r.flagged_at,
            )
            for r in rows
        ]
