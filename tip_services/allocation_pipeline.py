"""
tip_services.allocation_pipeline -- Route a captured payment into the ledger.

Responsibility:
    For one captured payment, decide who gets credited and post every
    credit (and any processing-fee deduction) in a single atomic unit.

Architecture position:
    Services -- composes LedgerStore, SegmentTimeline, the group lock from
    GroupLifecycleService, ReviewQueue and the pure ShareAllocator.

Resolution per paying worker (or per co-owner slice):
    1. ACTIVE member of a group at ``occurred_at`` -> split by the segment
       containing ``occurred_at``; no segment, or a locked segment that no
       longer lists the worker -> direct credit + review flag.
    2. Current active group started after ``occurred_at`` (clock skew or a
       payment that predates the group) -> direct credit + review flag.
    3. Otherwise a single direct credit.

Invariants enforced:
    - Idempotent under redelivery: a second call with the same
      ``source_reference`` returns the first allocation, flagged duplicate.
    - All credits, fee debits, review flags and the transaction row are
      written in one savepoint.
    - Every touched group is locked in ascending id order before its
      segment is read.
    - Shares are floored to the minor unit; leftover units go to the group
      owner so the credits sum to the payment exactly.

Failure modes:
    - InvalidAmountError for a non-positive amount or a fee above it.
    - InvalidSplitError for a malformed co-owner map.
    - SegmentNotFoundError never escapes; it becomes a review flag.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tip_engines.allocation import ShareAllocator, prorate
from tip_kernel.domain.clock import Clock, ensure_utc
from tip_kernel.domain.dtos import LedgerEntryCandidate
from tip_kernel.domain.enums import EntryDirection, ReviewFlagKind, SourceType, TipTransactionStatus
from tip_kernel.domain.money import require_positive, to_minor_units
from tip_kernel.domain.splits import DEFAULT_TOLERANCE, custom_split
from tip_kernel.exceptions import InvalidAmountError, InvalidSplitError, SegmentNotFoundError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.review import ReviewFlag
from tip_kernel.models.tip_transaction import TipTransaction
from tip_kernel.selectors.group_selector import GroupSelector
from tip_kernel.services.group_lifecycle import GroupLifecycleService
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.services.review_queue import ReviewQueue
from tip_kernel.services.segment_timeline import SegmentTimeline
from tip_kernel.utils.source_reference import fee_reference, member_reference

logger = get_logger("services.allocation")


@dataclass(frozen=True)
class AllocationLine:
    worker_id: str
    amount_cents: int
    source_reference: str
    group_id: UUID | None = None
    segment_id: UUID | None = None
    entry_id: UUID | None = None


@dataclass(frozen=True)
class AllocationResult:
    tip_transaction_id: UUID
    source_reference: str
    worker_id: str
    total_cents: int
    fee_cents: int
    credits: tuple[AllocationLine, ...]
    fees: tuple[AllocationLine, ...] = ()
    review_flag_ids: tuple[UUID, ...] = ()
    duplicate: bool = False
    currency: str = "USD"

    def credited_cents(self, worker_id: str) -> int:
        return sum(c.amount_cents for c in self.credits if c.worker_id == worker_id)

    def net_cents(self, worker_id: str) -> int:
        return self.credited_cents(worker_id) - sum(
            f.amount_cents for f in self.fees if f.worker_id == worker_id
        )

    @property
    def credited_by_worker(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for c in self.credits:
            totals[c.worker_id] = totals.get(c.worker_id, 0) + c.amount_cents
        return totals

    @property
    def flagged(self) -> bool:
        return bool(self.review_flag_ids)


@dataclass(frozen=True)
class AllocationPlan:
    """Credits and fee debits a payment resolves to, before anything is posted."""

    credits: tuple[AllocationLine, ...]
    fees: tuple[AllocationLine, ...] = ()
    unrouted: tuple[tuple[str, str], ...] = ()

    @property
    def net_by_worker(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for c in self.credits:
            totals[c.worker_id] = totals.get(c.worker_id, 0) + c.amount_cents
        for f in self.fees:
            totals[f.worker_id] = totals.get(f.worker_id, 0) - f.amount_cents
        return totals

    def line_for(self, worker_id: str) -> AllocationLine | None:
        return next((c for c in self.credits if c.worker_id == worker_id), None)


@dataclass
class _Slice:
    """One owner's share of a payment and where it is routed."""

    owner_id: str
    amount_cents: int
    reference: str
    group_id: UUID | None = None
    flag_reason: str | None = None
    lines: list[AllocationLine] = field(default_factory=list)


class _AlreadyAllocated(Exception):
    pass


class AllocationPipeline:
    """Allocates captured payments to workers, solo or through tip groups."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        ledger: LedgerStore,
        timeline: SegmentTimeline,
        lifecycle: GroupLifecycleService,
        review_queue: ReviewQueue,
        groups: GroupSelector | None = None,
        allocator: ShareAllocator | None = None,
        currency: str = "USD",
        split_tolerance: Decimal = DEFAULT_TOLERANCE,
    ):
        self.session = session
        self.clock = clock
        self.ledger = ledger
        self.timeline = timeline
        self.lifecycle = lifecycle
        self.review_queue = review_queue
        self.groups = groups or GroupSelector(session)
        self.allocator = allocator or ShareAllocator()
        self.currency = currency
        self.split_tolerance = Decimal(split_tolerance)

    def allocate_for_payment(
        self,
        worker_id: str,
        amount: Decimal,
        occurred_at: datetime,
        source_reference: str,
        *,
        fee_amount: Decimal | None = None,
        co_owners: Mapping[str, Decimal] | None = None,
    ) -> AllocationResult:
        """
        Credit the tip of one captured payment.

        Args:
            fee_amount: Processing fee already computed upstream; deducted
                from the credited workers in proportion to their shares.
            co_owners: Shared-ownership percentages by worker. Must include
                ``worker_id``; the first-listed owner absorbs rounding.
        """
        total_cents = require_positive(amount, self.currency)
        fee_cents = to_minor_units(fee_amount, self.currency) if fee_amount is not None else 0
        if fee_cents < 0 or fee_cents > total_cents:
            raise InvalidAmountError(fee_amount, "fee must be between zero and the payment amount")
        occurred_at = ensure_utc(occurred_at)

        existing = self._find_transaction(source_reference)
        if existing is not None:
            return self._replay(existing)

        slices = self._ownership_slices(worker_id, total_cents, source_reference, co_owners)

        try:
            with self.session.begin_nested():
                result = self._allocate(
                    worker_id, total_cents, fee_cents, occurred_at, source_reference, slices, co_owners
                )
        except _AlreadyAllocated:
            logger.info("payment_allocation_race", extra={"source_reference": source_reference})
            return self._replay(self._find_transaction(source_reference))

        logger.info(
            "payment_allocated",
            extra={
                "source_reference": source_reference,
                "worker_id": worker_id,
                "amount_cents": total_cents,
                "fee_cents": fee_cents,
                "credit_count": len(result.credits),
                "flagged": result.flagged,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _ownership_slices(
        self,
        worker_id: str,
        total_cents: int,
        source_reference: str,
        co_owners: Mapping[str, Decimal] | None,
    ) -> list[_Slice]:
        if not co_owners:
            return [_Slice(owner_id=worker_id, amount_cents=total_cents, reference=source_reference)]

        owners = list(co_owners)
        if worker_id not in co_owners:
            raise InvalidSplitError(f"paying worker {worker_id} is not among the co-owners")
        shares = custom_split(
            {k: Decimal(v) for k, v in co_owners.items()}, owners, owners[0], self.split_tolerance
        )
        allocation = self.allocator.allocate(
            total_cents=total_cents, split_map=shares, owner_id=owners[0]
        )
        amounts = {line.worker_id: line.amount_cents for line in allocation.lines}
        return [
            _Slice(
                owner_id=owner,
                amount_cents=amounts[owner],
                reference=member_reference(source_reference, owner),
            )
            for owner in owners
            if amounts[owner] > 0
        ]

    def _route(self, s: _Slice, occurred_at: datetime) -> None:
        group_id = self.groups.group_at(s.owner_id, occurred_at)
        if group_id is not None:
            s.group_id = group_id
            return
        current = self.groups.active_group_for_worker(s.owner_id)
        if current is not None and current.started_at > occurred_at:
            s.flag_reason = (
                f"payment at {occurred_at.isoformat()} precedes group {current.id} "
                f"started {current.started_at.isoformat()}"
            )

    def _allocate(
        self,
        worker_id: str,
        total_cents: int,
        fee_cents: int,
        occurred_at: datetime,
        source_reference: str,
        slices: list[_Slice],
        co_owners: Mapping[str, Decimal] | None,
    ) -> AllocationResult:
        txn = TipTransaction(
            source_reference=source_reference,
            worker_id=worker_id,
            amount_cents=total_cents,
            fee_cents=fee_cents,
            currency=self.currency,
            occurred_at=occurred_at,
            co_owners={k: str(v) for k, v in co_owners.items()} if co_owners else None,
            status=TipTransactionStatus.ALLOCATED.value,
        )
        try:
            with self.session.begin_nested():
                self.session.add(txn)
                self.session.flush()
        except IntegrityError:
            raise _AlreadyAllocated() from None

        credits = self._resolve(slices, occurred_at)
        fees = self._fee_lines(credits, fee_cents, worker_id)

        candidates = [
            self._candidate(line, EntryDirection.CREDIT, SourceType.PAYMENT_ALLOCATION, txn, occurred_at)
            for line in credits
        ] + [
            self._candidate(line, EntryDirection.DEBIT, SourceType.FEE_DEDUCTION, txn, occurred_at)
            for line in fees
        ]
        entry_ids = [p.entry_id for p in self.ledger.post_batch(candidates)]
        credit_ids, fee_ids = entry_ids[: len(credits)], entry_ids[len(credits) :]
        credits = [replace(line, entry_id=eid) for line, eid in zip(credits, credit_ids)]
        fees = [replace(line, entry_id=eid) for line, eid in zip(fees, fee_ids)]

        flag_ids = []
        for s in slices:
            if s.flag_reason is None:
                continue
            flag = self.review_queue.flag(
                ReviewFlagKind.SEGMENT_NOT_FOUND,
                worker_id=s.owner_id,
                group_id=s.group_id,
                source_reference=s.reference,
                amount_cents=s.amount_cents,
                detail=s.flag_reason,
            )
            flag_ids.append(flag.id)

        primary = next((s for s in slices if s.owner_id == worker_id), slices[0])
        if primary.flag_reason is None and primary.group_id is not None:
            txn.group_id = primary.group_id
            txn.segment_id = primary.lines[0].segment_id if primary.lines else None
        self.session.flush()

        return AllocationResult(
            tip_transaction_id=txn.id,
            source_reference=source_reference,
            worker_id=worker_id,
            total_cents=total_cents,
            fee_cents=fee_cents,
            credits=tuple(credits),
            fees=tuple(fees),
            review_flag_ids=tuple(flag_ids),
            currency=self.currency,
        )

    def plan_for(
        self, txn: TipTransaction, co_owners: Mapping[str, Decimal] | None = None
    ) -> AllocationPlan:
        """
        Resolve an already allocated payment against the timeline as it
        stands now, without posting anything.

        ``co_owners`` replaces the ownership recorded on the transaction.
        Groups touched are locked exactly as allocation locks them.
        """
        if co_owners is None and txn.co_owners:
            co_owners = {k: Decimal(v) for k, v in txn.co_owners.items()}
        slices = self._ownership_slices(txn.worker_id, txn.amount_cents, txn.source_reference, co_owners)
        credits = self._resolve(slices, txn.occurred_at)
        return AllocationPlan(
            credits=tuple(credits),
            fees=tuple(self._fee_lines(credits, txn.fee_cents, txn.worker_id)),
            unrouted=tuple((s.owner_id, s.flag_reason) for s in slices if s.flag_reason is not None),
        )

    def _resolve(self, slices: list[_Slice], occurred_at: datetime) -> list[AllocationLine]:
        for s in slices:
            self._route(s, occurred_at)

        locked = {}
        for group_id in sorted({s.group_id for s in slices if s.group_id is not None}, key=str):
            locked[group_id] = self.lifecycle.lock_group(group_id)

        for s in slices:
            if s.group_id is None:
                s.lines.append(AllocationLine(s.owner_id, s.amount_cents, s.reference))
                continue
            try:
                segment = self.timeline.find_segment_at(s.group_id, occurred_at)
            except SegmentNotFoundError:
                s.flag_reason = f"no segment of group {s.group_id} contains {occurred_at.isoformat()}"
                s.lines.append(AllocationLine(s.owner_id, s.amount_cents, s.reference))
                continue
            if s.owner_id not in segment.split_map:
                # Membership changed between routing and the lock.
                s.flag_reason = (
                    f"{s.owner_id} is not in segment {segment.seq} of group {s.group_id} "
                    f"at {occurred_at.isoformat()}"
                )
                s.lines.append(AllocationLine(s.owner_id, s.amount_cents, s.reference))
                continue
            allocation = self.allocator.allocate(
                total_cents=s.amount_cents,
                split_map=segment.split_map,
                owner_id=locked[s.group_id].owner_id,
            )
            for line in allocation.lines:
                if line.amount_cents == 0:
                    continue
                s.lines.append(
                    AllocationLine(
                        worker_id=line.worker_id,
                        amount_cents=line.amount_cents,
                        source_reference=member_reference(s.reference, line.worker_id),
                        group_id=s.group_id,
                        segment_id=segment.id,
                    )
                )

        return [line for s in slices for line in s.lines]

    def _fee_lines(self, credits: list[AllocationLine], fee_cents: int, payer_id: str) -> list[AllocationLine]:
        if fee_cents == 0 or not credits:
            return []
        weights = {line.source_reference: line.amount_cents for line in credits}
        # Leftover fee cents land on the largest credit, the payer's on a tie.
        recipient = min(
            credits, key=lambda c: (-c.amount_cents, c.worker_id != payer_id, c.source_reference)
        ).source_reference
        shares = prorate(fee_cents, weights, recipient)
        return [
            AllocationLine(
                worker_id=line.worker_id,
                amount_cents=shares[line.source_reference],
                source_reference=fee_reference(line.source_reference),
                group_id=line.group_id,
                segment_id=line.segment_id,
            )
            for line in credits
            if shares[line.source_reference] > 0
        ]

    def _candidate(
        self,
        line: AllocationLine,
        direction: EntryDirection,
        source_type: SourceType,
        txn: TipTransaction,
        occurred_at: datetime,
    ) -> LedgerEntryCandidate:
        return LedgerEntryCandidate(
            worker_id=line.worker_id,
            direction=direction,
            amount_cents=line.amount_cents,
            source_type=source_type,
            source_reference=line.source_reference,
            occurred_at=occurred_at,
            currency=self.currency,
            group_id=line.group_id,
            segment_id=line.segment_id,
            tip_transaction_id=txn.id,
        )

    # ------------------------------------------------------------------
    # Idempotent replay
    # ------------------------------------------------------------------

    def _find_transaction(self, source_reference: str) -> TipTransaction | None:
        return self.session.execute(
            select(TipTransaction).where(TipTransaction.source_reference == source_reference)
        ).scalar_one_or_none()

    def _replay(self, txn: TipTransaction) -> AllocationResult:
        entries = self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.tip_transaction_id == txn.id)
            .order_by(LedgerEntry.source_reference)
        ).scalars().all()
        slice_references = [txn.source_reference] + [
            member_reference(txn.source_reference, owner) for owner in txn.co_owners or ()
        ]
        flag_ids = self.session.execute(
            select(ReviewFlag.id).where(
                ReviewFlag.source_reference.in_(slice_references),
                ReviewFlag.kind == ReviewFlagKind.SEGMENT_NOT_FOUND.value,
            )
        ).scalars().all()

        def line(e: LedgerEntry) -> AllocationLine:
            return AllocationLine(
                worker_id=e.worker_id,
                amount_cents=e.amount_cents,
                source_reference=e.source_reference,
                group_id=e.group_id,
                segment_id=e.segment_id,
                entry_id=e.id,
            )

        logger.info(
            "payment_already_allocated",
            extra={"source_reference": txn.source_reference, "tip_transaction_id": str(txn.id)},
        )
        return AllocationResult(
            tip_transaction_id=txn.id,
            source_reference=txn.source_reference,
            worker_id=txn.worker_id,
            total_cents=txn.amount_cents,
            fee_cents=txn.fee_cents,
            credits=tuple(line(e) for e in entries if e.source_type == SourceType.PAYMENT_ALLOCATION),
            fees=tuple(line(e) for e in entries if e.source_type == SourceType.FEE_DEDUCTION),
            review_flag_ids=tuple(flag_ids),
            duplicate=True,
            currency=txn.currency,
        )

