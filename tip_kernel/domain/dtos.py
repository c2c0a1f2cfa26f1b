"""
DTOs -- immutable data crossing the kernel boundary.

Services accept and return these, never ORM entities. ``from_model``
converters exist for the service and selector layers; domain logic never
calls them.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from uuid import UUID

from tip_kernel.domain.enums import (
    EntryDirection,
    GroupStatus,
    MembershipStatus,
    PostStatus,
    SourceType,
    SplitMode,
)
from tip_kernel.exceptions import InvalidAmountError

if TYPE_CHECKING:
    from tip_kernel.models.tip_group import GroupMembership, GroupSegment, TipGroup


@dataclass(frozen=True)
class LedgerEntryCandidate:
    """A fully formed entry waiting to be appended."""

    worker_id: str
    direction: EntryDirection
    amount_cents: int
    source_type: SourceType
    source_reference: str
    occurred_at: datetime
    currency: str = "USD"
    memo: str | None = None
    group_id: UUID | None = None
    segment_id: UUID | None = None
    tip_transaction_id: UUID | None = None
    shift_id: str | None = None
    rule_id: UUID | None = None
    was_capped: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.amount_cents, int) or self.amount_cents <= 0:
            raise InvalidAmountError(self.amount_cents, "ledger amounts must be positive minor units")
        if not self.source_reference:
            raise ValueError("source_reference is required")
        if not self.worker_id:
            raise ValueError("worker_id is required")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def signed_cents(self) -> int:
        return self.direction.sign * self.amount_cents


@dataclass(frozen=True)
class PostResult:
    status: PostStatus
    entry_id: UUID
    worker_id: str
    amount_cents: int
    source_reference: str

    @property
    def is_duplicate(self) -> bool:
        return self.status is PostStatus.ALREADY_POSTED


@dataclass(frozen=True)
class ReconciliationResult:
    worker_id: str
    cached_cents: int
    computed_cents: int
    frozen: bool

    @property
    def consistent(self) -> bool:
        return self.cached_cents == self.computed_cents


@dataclass(frozen=True)
class ShiftSalesSnapshot:
    """Per-shift sales aggregates supplied by the order subsystem at close."""

    food_sales: Decimal = Decimal("0")
    bar_sales: Decimal = Decimal("0")
    total_sales: Decimal = Decimal("0")
    net_sales: Decimal = Decimal("0")
    tips_earned: Decimal = Decimal("0")
    category_sales: Mapping[str, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "category_sales",
            MappingProxyType({k: Decimal(v) for k, v in self.category_sales.items()}),
        )


@dataclass(frozen=True)
class GroupInfo:
    id: UUID
    owner_id: str
    split_mode: SplitMode
    status: GroupStatus
    started_at: datetime
    closed_at: datetime | None
    name: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is GroupStatus.ACTIVE

    @classmethod
    def from_model(cls, group: TipGroup) -> GroupInfo:
        return cls(
            id=group.id,
            owner_id=group.owner_id,
            split_mode=SplitMode(group.split_mode),
            status=GroupStatus(group.status),
            started_at=group.started_at,
            closed_at=group.closed_at,
            name=group.name,
        )


@dataclass(frozen=True)
class MembershipInfo:
    group_id: UUID
    worker_id: str
    status: MembershipStatus
    requested_at: datetime
    joined_at: datetime | None
    left_at: datetime | None
    weight: Decimal

    @classmethod
    def from_model(cls, membership: GroupMembership) -> MembershipInfo:
        return cls(
            group_id=membership.group_id,
            worker_id=membership.worker_id,
            status=MembershipStatus(membership.status),
            requested_at=membership.requested_at,
            joined_at=membership.joined_at,
            left_at=membership.left_at,
            weight=membership.weight,
        )


@dataclass(frozen=True)
class SegmentInfo:
    """A closed or open interval of fixed group composition."""

    id: UUID
    group_id: UUID
    seq: int
    start_time: datetime
    end_time: datetime | None
    member_count: int
    split_map: Mapping[str, Decimal]

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def contains(self, instant: datetime) -> bool:
        if instant < self.start_time:
            return False
        return self.end_time is None or instant < self.end_time

    @classmethod
    def from_model(cls, segment: GroupSegment) -> SegmentInfo:
        return cls(
            id=segment.id,
            group_id=segment.group_id,
            seq=segment.seq,
            start_time=segment.start_time,
            end_time=segment.end_time,
            member_count=segment.member_count,
            split_map=MappingProxyType(
                {k: Decimal(v) for k, v in segment.split_map.items()}
            ),
        )
