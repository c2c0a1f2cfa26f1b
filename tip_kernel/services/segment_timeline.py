"""
Module: tip_kernel.services.segment_timeline
Responsibility: Maintain each tip group's ordered, gap-free series of
    segments, and answer "which split applied at instant T".
Architecture position: Kernel > Services. Driven by GroupLifecycleService,
    read by the allocation pipeline. Callers hold the group row lock.
Invariants enforced:
    - close_and_reopen is the only writer of segment boundaries.
    - The new split is computed before the open segment is closed, so an
      InvalidSplitError leaves the timeline exactly as it was.
    - Segments of a group tile [started_at, closed_at or now); the open
      segment is identified by end_time IS NULL.
Failure modes:
    - InvalidSplitError from the split calculator.
    - SegmentBoundaryError if the transition instant precedes the open
      segment's start.
    - SegmentNotFoundError from find_segment_at.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tip_kernel.domain.clock import Clock
from tip_kernel.domain.dtos import SegmentInfo
from tip_kernel.domain.enums import GroupStatus, SplitMode
from tip_kernel.domain.splits import HUNDRED, MemberSnapshot, SplitCalculator, split_total
from tip_kernel.exceptions import SegmentBoundaryError, SegmentNotFoundError, TimelineError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.tip_group import GroupSegment, TipGroup
from tip_kernel.services.base import BaseService

logger = get_logger("services.segment_timeline")


@dataclass(frozen=True)
class SegmentTransition:
    """Result of one timeline mutation."""

    group_id: UUID
    closed: SegmentInfo | None
    opened: SegmentInfo | None


def _serialize_split(split: Mapping[str, Decimal]) -> dict[str, str]:
    return {wid: str(pct) for wid, pct in sorted(split.items())}


class SegmentTimeline(BaseService[GroupSegment]):
    """Per-group segment arena indexed by (group_id, start_time)."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        split_calculator: SplitCalculator | None = None,
    ):
        super().__init__(session, clock)
        self.splits = split_calculator or SplitCalculator()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def open_first_segment(
        self,
        group: TipGroup,
        members: Sequence[MemberSnapshot],
        custom_split: Mapping[str, Decimal] | None = None,
    ) -> SegmentInfo:
        """Open segment #1 at group.started_at. Called once, at group creation."""
        if self._last_segment(group.id) is not None:
            raise TimelineError(f"Group {group.id} already has segments")

        split = self.splits.compute(
            SplitMode(group.split_mode),
            members,
            group.owner_id,
            at=group.started_at,
            custom=custom_split,
        )
        segment = self._insert(group.id, 1, group.started_at, split)

        logger.info(
            "segment_opened",
            extra={
                "group_id": str(group.id),
                "seq": 1,
                "start_time": group.started_at,
                "member_count": len(split),
            },
        )
        return SegmentInfo.from_model(segment)

    def close_and_reopen(
        self,
        group: TipGroup,
        now: datetime,
        snapshot: Sequence[MemberSnapshot],
        custom_split: Mapping[str, Decimal] | None = None,
    ) -> SegmentTransition:
        """
        Close the open segment at ``now`` and open the next one.

        An empty snapshot closes without reopening (group closing).
        """
        current = self._open_segment_row(group.id)
        if current is None:
            raise SegmentNotFoundError(str(group.id), now)
        if now < current.start_time:
            raise SegmentBoundaryError(str(group.id), current.start_time, now)

        new_split: dict[str, Decimal] | None = None
        if snapshot:
            new_split = self.splits.compute(
                SplitMode(group.split_mode),
                snapshot,
                group.owner_id,
                at=now,
                custom=custom_split,
                previous={k: Decimal(v) for k, v in current.split_map.items()},
            )

        current.end_time = now
        self.session.flush()
        closed = SegmentInfo.from_model(current)

        opened: SegmentInfo | None = None
        if new_split is not None:
            opened = SegmentInfo.from_model(
                self._insert(group.id, current.seq + 1, now, new_split)
            )

        logger.info(
            "segment_transition",
            extra={
                "group_id": str(group.id),
                "closed_seq": closed.seq,
                "opened_seq": opened.seq if opened else None,
                "at": now,
                "member_count": opened.member_count if opened else 0,
            },
        )
        return SegmentTransition(group_id=group.id, closed=closed, opened=opened)

    def close_final_segment(self, group: TipGroup, now: datetime) -> SegmentInfo:
        transition = self.close_and_reopen(group, now, ())
        assert transition.closed is not None
        return transition.closed

    def _insert(
        self, group_id: UUID, seq: int, start: datetime, split: Mapping[str, Decimal]
    ) -> GroupSegment:
        total = split_total(split)
        if total != HUNDRED:
            raise TimelineError(f"split for group {group_id} sums to {total}")
        segment = GroupSegment(
            group_id=group_id,
            seq=seq,
            start_time=start,
            end_time=None,
            member_count=len(split),
            split_map=_serialize_split(split),
        )
        self.session.add(segment)
        self.session.flush()
        return segment

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_segment_at(self, group_id: UUID, timestamp: datetime) -> SegmentInfo:
        """The segment whose [start_time, end_time) contains ``timestamp``."""
        segment = self.session.execute(
            select(GroupSegment)
            .where(
                GroupSegment.group_id == group_id,
                GroupSegment.start_time <= timestamp,
                or_(GroupSegment.end_time.is_(None), GroupSegment.end_time > timestamp),
            )
            .order_by(GroupSegment.start_time.desc(), GroupSegment.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        if segment is None:
            raise SegmentNotFoundError(str(group_id), timestamp)
        return SegmentInfo.from_model(segment)

    def open_segment(self, group_id: UUID) -> SegmentInfo | None:
        row = self._open_segment_row(group_id)
        return SegmentInfo.from_model(row) if row is not None else None

    def segments_for(self, group_id: UUID) -> list[SegmentInfo]:
        rows = self.session.execute(
            select(GroupSegment)
            .where(GroupSegment.group_id == group_id)
            .order_by(GroupSegment.seq)
        ).scalars().all()
        return [SegmentInfo.from_model(r) for r in rows]

    def verify_partition(self, group: TipGroup, now: datetime | None = None) -> list[str]:
        """
        Check that segments tile the group's lifetime exactly.

        Returns human-readable violations; an empty list means the timeline
        is sound.
        """
        segments = self.segments_for(group.id)
        problems: list[str] = []
        if not segments:
            return [f"group {group.id} has no segments"]

        if segments[0].start_time != group.started_at:
            problems.append(
                f"first segment starts {segments[0].start_time}, group started {group.started_at}"
            )
        for prev, nxt in zip(segments, segments[1:]):
            if prev.end_time is None:
                problems.append(f"segment {prev.seq} is open but not last")
            elif prev.end_time != nxt.start_time:
                problems.append(
                    f"segment {prev.seq} ends {prev.end_time}, segment {nxt.seq} starts {nxt.start_time}"
                )
            if nxt.seq != prev.seq + 1:
                problems.append(f"segment seq jumps {prev.seq} -> {nxt.seq}")
        for seg in segments:
            if seg.end_time is not None and seg.end_time < seg.start_time:
                problems.append(f"segment {seg.seq} ends before it starts")
            if split_total(seg.split_map) != HUNDRED:
                problems.append(f"segment {seg.seq} split sums to {split_total(seg.split_map)}")

        last = segments[-1]
        if group.status == GroupStatus.CLOSED:
            if last.end_time is None:
                problems.append("closed group still has an open segment")
            elif last.end_time != group.closed_at:
                problems.append(f"last segment ends {last.end_time}, group closed {group.closed_at}")
        else:
            if last.end_time is not None:
                problems.append("active group has no open segment")
            if now is not None and last.start_time > now:
                problems.append(f"open segment starts in the future ({last.start_time})")
        return problems

    def _open_segment_row(self, group_id: UUID) -> GroupSegment | None:
        return self.session.execute(
            select(GroupSegment)
            .where(GroupSegment.group_id == group_id, GroupSegment.end_time.is_(None))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _last_segment(self, group_id: UUID) -> GroupSegment | None:
        return self.session.execute(
            select(GroupSegment)
            .where(GroupSegment.group_id == group_id)
            .order_by(GroupSegment.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
