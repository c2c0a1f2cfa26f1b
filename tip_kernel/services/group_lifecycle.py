"""
Module: tip_kernel.services.group_lifecycle
Responsibility: Create and close tip groups, admit and remove members and
    move ownership, driving the segment timeline on every composition change.
Architecture position: Kernel > Services. Uses SegmentTimeline; consumed by
    the event dispatcher (clock-out) and the group management surface.
Invariants enforced:
    - Every mutation holds the group row lock (SELECT ... FOR UPDATE) for
      its whole read-modify-write, so two concurrent membership changes can
      never both close the same open segment.
    - A worker holds at most one ACTIVE membership system-wide; the
      active_worker_groups row is written in the same savepoint as the
      membership it mirrors.
    - Each mutation is one savepoint: a rejected split or boundary leaves
      memberships, index and timeline untouched.
Failure modes:
    - GroupNotFoundError, GroupNotActiveError, AlreadyInGroupError,
      AlreadyMemberOrPendingError, NotGroupMemberError, NotGroupOwnerError,
      PendingRequestNotFoundError, plus timeline errors.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tip_kernel.domain.clock import Clock, ensure_utc
from tip_kernel.domain.dtos import GroupInfo, MembershipInfo, SegmentInfo
from tip_kernel.domain.enums import GroupStatus, MembershipStatus, SplitMode
from tip_kernel.domain.splits import MemberSnapshot
from tip_kernel.exceptions import (
    AlreadyInGroupError,
    AlreadyMemberOrPendingError,
    GroupNotActiveError,
    GroupNotFoundError,
    NotGroupMemberError,
    NotGroupOwnerError,
    PendingRequestNotFoundError,
)
from tip_kernel.logging_config import get_logger
from tip_kernel.models.tip_group import ActiveWorkerGroup, GroupMembership, TipGroup
from tip_kernel.services.base import BaseService
from tip_kernel.services.segment_timeline import SegmentTimeline, SegmentTransition

logger = get_logger("services.group_lifecycle")

_DEFAULT_WEIGHT = Decimal("1")


@dataclass(frozen=True)
class GroupStarted:
    group: GroupInfo
    members: tuple[str, ...]
    segment: SegmentInfo


@dataclass(frozen=True)
class MembershipChange:
    group: GroupInfo
    worker_id: str
    transition: SegmentTransition | None
    group_closed: bool = False
    new_owner_id: str | None = None


@dataclass(frozen=True)
class ClockOutOutcome:
    worker_id: str
    group_id: UUID | None
    ownership_transferred_to: str | None
    change: MembershipChange | None


class GroupLifecycleService(BaseService[TipGroup]):
    """Group state machine: start, join, approve, add, remove, transfer, close."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        timeline: SegmentTimeline | None = None,
    ):
        super().__init__(session, clock)
        self.timeline = timeline or SegmentTimeline(session, self.clock)

    # ------------------------------------------------------------------
    # Locking and lookups
    # ------------------------------------------------------------------

    def lock_group(self, group_id: UUID) -> TipGroup:
        """Acquire the per-group serialisation lock and return the fresh row."""
        group = self.session.execute(
            select(TipGroup)
            .where(TipGroup.id == group_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if group is None:
            raise GroupNotFoundError(str(group_id))
        return group

    def _lock_active_group(self, group_id: UUID) -> TipGroup:
        group = self.lock_group(group_id)
        if group.status != GroupStatus.ACTIVE:
            raise GroupNotActiveError(str(group_id), group.status)
        return group

    def _memberships(self, group_id: UUID, status: MembershipStatus) -> list[GroupMembership]:
        return list(
            self.session.execute(
                select(GroupMembership)
                .where(
                    GroupMembership.group_id == group_id,
                    GroupMembership.status == status.value,
                )
                .order_by(GroupMembership.joined_at, GroupMembership.worker_id)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def _membership(
        self, group_id: UUID, worker_id: str, statuses: Iterable[MembershipStatus]
    ) -> GroupMembership | None:
        return self.session.execute(
            select(GroupMembership)
            .where(
                GroupMembership.group_id == group_id,
                GroupMembership.worker_id == worker_id,
                GroupMembership.status.in_([s.value for s in statuses]),
            )
            .execution_options(populate_existing=True)
        ).scalars().first()

    @staticmethod
    def _snapshot(memberships: Iterable[GroupMembership]) -> list[MemberSnapshot]:
        return [
            MemberSnapshot(worker_id=m.worker_id, joined_at=m.joined_at, weight=m.weight)
            for m in memberships
        ]

    # ------------------------------------------------------------------
    # Active-group index
    # ------------------------------------------------------------------

    def _claim_active_slot(self, worker_id: str, group_id: UUID) -> None:
        existing = self.session.execute(
            select(ActiveWorkerGroup.group_id).where(ActiveWorkerGroup.worker_id == worker_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise AlreadyInGroupError(worker_id, str(existing))
        try:
            with self.session.begin_nested():
                self.session.add(ActiveWorkerGroup(worker_id=worker_id, group_id=group_id))
                self.session.flush()
        except IntegrityError:
            raise AlreadyInGroupError(worker_id) from None

    def _release_active_slot(self, worker_id: str, group_id: UUID) -> None:
        self.session.execute(
            delete(ActiveWorkerGroup)
            .where(
                ActiveWorkerGroup.worker_id == worker_id,
                ActiveWorkerGroup.group_id == group_id,
            )
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_group(
        self,
        owner_id: str,
        initial_members: Iterable[str] = (),
        split_mode: SplitMode = SplitMode.EQUAL,
        *,
        custom_split: Mapping[str, Decimal] | None = None,
        weights: Mapping[str, Decimal] | None = None,
        name: str | None = None,
        location_id: str | None = None,
        at: datetime | None = None,
    ) -> GroupStarted:
        """
        Create an ACTIVE group with the owner plus ``initial_members``.

        Raises AlreadyInGroupError if any of them is in another active group.
        """
        now = ensure_utc(at) if at else self.clock.now()
        members: list[str] = [owner_id]
        for wid in initial_members:
            if wid not in members:
                members.append(wid)
        weights = weights or {}

        with self.session.begin_nested():
            group = TipGroup(
                owner_id=owner_id,
                split_mode=SplitMode(split_mode).value,
                status=GroupStatus.ACTIVE.value,
                started_at=now,
                name=name,
                location_id=location_id,
            )
            self.session.add(group)
            self.session.flush()

            memberships = []
            for wid in members:
                self._claim_active_slot(wid, group.id)
                membership = GroupMembership(
                    group_id=group.id,
                    worker_id=wid,
                    status=MembershipStatus.ACTIVE.value,
                    requested_at=now,
                    joined_at=now,
                    weight=Decimal(weights.get(wid, _DEFAULT_WEIGHT)),
                )
                self.session.add(membership)
                memberships.append(membership)
            self.session.flush()

            segment = self.timeline.open_first_segment(
                group, self._snapshot(memberships), custom_split
            )

        logger.info(
            "group_started",
            extra={
                "group_id": str(group.id),
                "owner_id": owner_id,
                "split_mode": group.split_mode,
                "members": members,
            },
        )
        return GroupStarted(group=GroupInfo.from_model(group), members=tuple(members), segment=segment)

    # ------------------------------------------------------------------
    # Join requests
    # ------------------------------------------------------------------

    def request_join(self, group_id: UUID, worker_id: str) -> MembershipInfo:
        """Record a PENDING_APPROVAL membership awaiting the owner."""
        with self.session.begin_nested():
            self._lock_active_group(group_id)
            existing = self._membership(
                group_id,
                worker_id,
                (MembershipStatus.ACTIVE, MembershipStatus.PENDING_APPROVAL),
            )
            if existing is not None:
                raise AlreadyMemberOrPendingError(str(group_id), worker_id, existing.status)
            current = self.session.execute(
                select(ActiveWorkerGroup.group_id).where(ActiveWorkerGroup.worker_id == worker_id)
            ).scalar_one_or_none()
            if current is not None:
                raise AlreadyInGroupError(worker_id, str(current))

            membership = GroupMembership(
                group_id=group_id,
                worker_id=worker_id,
                status=MembershipStatus.PENDING_APPROVAL.value,
                requested_at=self.clock.now(),
                weight=_DEFAULT_WEIGHT,
            )
            self.session.add(membership)
            self.session.flush()

        logger.info("join_requested", extra={"group_id": str(group_id), "worker_id": worker_id})
        return MembershipInfo.from_model(membership)

    def approve_join(
        self,
        group_id: UUID,
        worker_id: str,
        approver_id: str,
        *,
        manager_override: bool = False,
        weight: Decimal | None = None,
        custom_split: Mapping[str, Decimal] | None = None,
        at: datetime | None = None,
    ) -> MembershipChange:
        """Owner (or a manager with override) admits a pending worker."""
        now = ensure_utc(at) if at else self.clock.now()
        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            if approver_id != group.owner_id and not manager_override:
                raise NotGroupOwnerError(str(group_id), approver_id)
            pending = self._membership(group_id, worker_id, (MembershipStatus.PENDING_APPROVAL,))
            if pending is None:
                raise PendingRequestNotFoundError(str(group_id), worker_id)

            self._claim_active_slot(worker_id, group_id)
            pending.status = MembershipStatus.ACTIVE.value
            pending.joined_at = now
            pending.approved_by = approver_id
            if weight is not None:
                pending.weight = Decimal(weight)
            self.session.flush()

            transition = self.timeline.close_and_reopen(
                group, now, self._snapshot(self._memberships(group_id, MembershipStatus.ACTIVE)), custom_split
            )

        logger.info(
            "join_approved",
            extra={"group_id": str(group_id), "worker_id": worker_id, "approver_id": approver_id},
        )
        return MembershipChange(group=GroupInfo.from_model(group), worker_id=worker_id, transition=transition)

    def decline_join(
        self,
        group_id: UUID,
        worker_id: str,
        approver_id: str,
        *,
        manager_override: bool = False,
    ) -> MembershipInfo:
        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            if approver_id != group.owner_id and not manager_override:
                raise NotGroupOwnerError(str(group_id), approver_id)
            pending = self._membership(group_id, worker_id, (MembershipStatus.PENDING_APPROVAL,))
            if pending is None:
                raise PendingRequestNotFoundError(str(group_id), worker_id)
            pending.status = MembershipStatus.DECLINED.value
            pending.approved_by = approver_id
            self.session.flush()

        logger.info(
            "join_declined",
            extra={"group_id": str(group_id), "worker_id": worker_id, "approver_id": approver_id},
        )
        return MembershipInfo.from_model(pending)

    # ------------------------------------------------------------------
    # Direct membership changes
    # ------------------------------------------------------------------

    def add_member(
        self,
        group_id: UUID,
        worker_id: str,
        *,
        weight: Decimal | None = None,
        custom_split: Mapping[str, Decimal] | None = None,
        at: datetime | None = None,
    ) -> MembershipChange:
        """Owner- or manager-initiated add; no approval step."""
        now = ensure_utc(at) if at else self.clock.now()
        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            if self._membership(group_id, worker_id, (MembershipStatus.ACTIVE,)) is not None:
                raise AlreadyMemberOrPendingError(str(group_id), worker_id, MembershipStatus.ACTIVE.value)

            self._claim_active_slot(worker_id, group_id)
            membership = self._membership(group_id, worker_id, (MembershipStatus.PENDING_APPROVAL,))
            if membership is None:
                membership = GroupMembership(
                    group_id=group_id,
                    worker_id=worker_id,
                    requested_at=now,
                )
                self.session.add(membership)
            membership.status = MembershipStatus.ACTIVE.value
            membership.joined_at = now
            membership.weight = Decimal(weight) if weight is not None else (membership.weight or _DEFAULT_WEIGHT)
            self.session.flush()

            transition = self.timeline.close_and_reopen(
                group, now, self._snapshot(self._memberships(group_id, MembershipStatus.ACTIVE)), custom_split
            )

        logger.info("member_added", extra={"group_id": str(group_id), "worker_id": worker_id})
        return MembershipChange(group=GroupInfo.from_model(group), worker_id=worker_id, transition=transition)

    def remove_member(
        self,
        group_id: UUID,
        worker_id: str,
        *,
        custom_split: Mapping[str, Decimal] | None = None,
        at: datetime | None = None,
    ) -> MembershipChange:
        """
        Mark the worker LEFT and re-split among the rest.

        Removing the last active member closes the group. Removing the owner
        while others remain hands ownership to the most senior of them.
        """
        now = ensure_utc(at) if at else self.clock.now()
        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            change = self._remove_locked(group, worker_id, now, custom_split)

        logger.info(
            "member_removed",
            extra={
                "group_id": str(group_id),
                "worker_id": worker_id,
                "group_closed": change.group_closed,
                "new_owner_id": change.new_owner_id,
            },
        )
        return change

    def _remove_locked(
        self,
        group: TipGroup,
        worker_id: str,
        now: datetime,
        custom_split: Mapping[str, Decimal] | None,
    ) -> MembershipChange:
        membership = self._membership(group.id, worker_id, (MembershipStatus.ACTIVE,))
        if membership is None:
            raise NotGroupMemberError(str(group.id), worker_id)

        remaining = [
            m for m in self._memberships(group.id, MembershipStatus.ACTIVE) if m.worker_id != worker_id
        ]
        if not remaining:
            final = self._close_locked(group, now)
            return MembershipChange(
                group=GroupInfo.from_model(group),
                worker_id=worker_id,
                transition=SegmentTransition(group_id=group.id, closed=final, opened=None),
                group_closed=True,
            )

        new_owner_id = None
        if group.owner_id == worker_id:
            new_owner_id = self._most_senior(remaining).worker_id
            group.owner_id = new_owner_id

        membership.status = MembershipStatus.LEFT.value
        membership.left_at = now
        self._release_active_slot(worker_id, group.id)
        self.session.flush()

        transition = self.timeline.close_and_reopen(group, now, self._snapshot(remaining), custom_split)
        return MembershipChange(
            group=GroupInfo.from_model(group),
            worker_id=worker_id,
            transition=transition,
            new_owner_id=new_owner_id,
        )

    @staticmethod
    def _most_senior(memberships: Iterable[GroupMembership]) -> GroupMembership:
        return min(memberships, key=lambda m: (m.joined_at, m.worker_id))

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def transfer_ownership(self, group_id: UUID, new_owner_id: str) -> GroupInfo:
        """Hand the group to another ACTIVE member. Segments are unaffected."""
        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            if self._membership(group_id, new_owner_id, (MembershipStatus.ACTIVE,)) is None:
                raise NotGroupMemberError(str(group_id), new_owner_id)
            previous = group.owner_id
            group.owner_id = new_owner_id
            self.session.flush()

        logger.info(
            "ownership_transferred",
            extra={"group_id": str(group_id), "from_owner": previous, "to_owner": new_owner_id},
        )
        return GroupInfo.from_model(group)

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close_group(self, group_id: UUID, *, at: datetime | None = None) -> SegmentInfo:
        """Explicit close. Everyone leaves; the final segment is closed."""
        now = ensure_utc(at) if at else self.clock.now()
        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            final = self._close_locked(group, now)
        return final

    def _close_locked(self, group: TipGroup, now: datetime) -> SegmentInfo:
        # Close the timeline first so a boundary error leaves members intact.
        final = self.timeline.close_final_segment(group, now)

        for membership in self._memberships(group.id, MembershipStatus.ACTIVE):
            membership.status = MembershipStatus.LEFT.value
            membership.left_at = now
            self._release_active_slot(membership.worker_id, group.id)
        for pending in self._memberships(group.id, MembershipStatus.PENDING_APPROVAL):
            pending.status = MembershipStatus.DECLINED.value

        group.status = GroupStatus.CLOSED.value
        group.closed_at = now
        self.session.flush()

        logger.info(
            "group_closed",
            extra={"group_id": str(group.id), "closed_at": now, "final_seq": final.seq},
        )
        return final

    # ------------------------------------------------------------------
    # Clock-out
    # ------------------------------------------------------------------

    def handle_clock_out(self, worker_id: str, *, at: datetime | None = None) -> ClockOutOutcome:
        """
        A worker clocked out: pass ownership on if needed, then leave.

        Ownership goes to the remaining member with the earliest joined_at
        (ties broken by worker id). A worker in no group is a no-op.
        """
        now = ensure_utc(at) if at else self.clock.now()
        group_id = self.session.execute(
            select(ActiveWorkerGroup.group_id).where(ActiveWorkerGroup.worker_id == worker_id)
        ).scalar_one_or_none()
        if group_id is None:
            return ClockOutOutcome(worker_id=worker_id, group_id=None, ownership_transferred_to=None, change=None)

        with self.session.begin_nested():
            group = self._lock_active_group(group_id)
            # Re-read under the lock; a concurrent removal may have won.
            if self._membership(group.id, worker_id, (MembershipStatus.ACTIVE,)) is None:
                return ClockOutOutcome(worker_id=worker_id, group_id=group_id, ownership_transferred_to=None, change=None)
            change = self._remove_locked(group, worker_id, now, None)

        logger.info(
            "clock_out_processed",
            extra={
                "worker_id": worker_id,
                "group_id": str(group_id),
                "new_owner_id": change.new_owner_id,
                "group_closed": change.group_closed,
            },
        )
        return ClockOutOutcome(
            worker_id=worker_id,
            group_id=group_id,
            ownership_transferred_to=change.new_owner_id,
            change=change,
        )
