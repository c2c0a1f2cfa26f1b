"""
tip_services.recalculation_service -- Re-derive allocated tips after the
facts they were split on have changed.

Responsibility:
    Replays allocated payments against the group timeline and ownership
    as they stand now, and posts the per-worker difference as ADJUSTMENT
    entries under ``recalc:{adjustmentId}:{paymentReference}``. Every run
    that changes something is recorded as a TipAdjustment.

Architecture position:
    Services -- composes AllocationPipeline.plan_for (the same routing,
    split and fee rounding as the first allocation) and LedgerStore.

When a run is needed:
    - A membership change was recorded at an instant earlier than payments
      already split under the segment it closed.
    - The co-owners of a payment were corrected after it was allocated.

Invariants enforced:
    - After a run, a worker's net from a payment (credits, minus fees,
      plus earlier corrections) equals what a fresh allocation gives them.
    - The corrections for one payment sum to zero.
    - A run posts every correction or none (one savepoint).
    - A run with nothing to correct writes nothing, so repeating it is a
      no-op.
    - REVERSED payments are never recalculated.

Failure modes:
    - TipTransactionNotFoundError, GroupNotFoundError, TimelineError for
      an unknown payment, group or segment.
    - InvalidSplitError for a malformed replacement co-owner map.
    - InsufficientBalanceError when a correction would overdraw a worker
      and negative balances are not permitted; nothing is written.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tip_kernel.domain.clock import Clock
from tip_kernel.domain.dtos import LedgerEntryCandidate
from tip_kernel.domain.enums import AdjustmentKind, EntryDirection, SourceType, TipTransactionStatus
from tip_kernel.exceptions import TimelineError, TipTransactionNotFoundError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.adjustment import TipAdjustment
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.tip_group import GroupMembership
from tip_kernel.models.tip_transaction import TipTransaction
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.utils.source_reference import is_recalculation_reference, recalculation_reference
from tip_services.allocation_pipeline import AllocationPipeline, AllocationPlan

logger = get_logger("services.recalculation")


@dataclass(frozen=True)
class RecalculationLine:
    worker_id: str
    payment_reference: str
    previous_cents: int
    expected_cents: int
    entry_id: UUID | None = None

    @property
    def delta_cents(self) -> int:
        return self.expected_cents - self.previous_cents


@dataclass(frozen=True)
class RecalculationResult:
    kind: AdjustmentKind
    adjustment_id: UUID | None
    lines: tuple[RecalculationLine, ...] = ()
    payments_checked: int = 0
    skipped_reversed: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.lines)

    def delta_cents(self, worker_id: str) -> int:
        return sum(line.delta_cents for line in self.lines if line.worker_id == worker_id)


@dataclass
class _PaymentDelta:
    txn: TipTransaction
    plan: AllocationPlan
    previous: dict[str, int] = field(default_factory=dict)

    def changes(self) -> list[tuple[str, int, int]]:
        expected = self.plan.net_by_worker
        return [
            (w, self.previous.get(w, 0), expected.get(w, 0))
            for w in sorted(set(self.previous) | set(expected))
            if self.previous.get(w, 0) != expected.get(w, 0)
        ]


class RecalculationService:
    """Posts corrective deltas so allocated tips match the current timeline."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        ledger: LedgerStore,
        allocation: AllocationPipeline,
    ):
        self.session = session
        self.clock = clock
        self.ledger = ledger
        self.allocation = allocation
        self.groups = allocation.groups

    def recalculate_transaction(
        self,
        source_reference: str,
        *,
        reason: str,
        actor_id: str | None = None,
        co_owners: Mapping[str, Decimal] | None = None,
    ) -> RecalculationResult:
        """
        Recalculate one payment.

        ``co_owners`` replaces the payment's recorded ownership before it
        is replayed; the replacement is kept on the transaction.
        """
        _require_reason(reason)
        kind = AdjustmentKind.OWNERSHIP_SPLIT if co_owners is not None else AdjustmentKind.GROUP_MEMBERSHIP
        with self.session.begin_nested():
            txn = self.session.execute(
                select(TipTransaction)
                .where(TipTransaction.source_reference == source_reference)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if txn is None:
                raise TipTransactionNotFoundError(source_reference)
            if txn.status == TipTransactionStatus.REVERSED:
                logger.info("recalculation_skipped_reversed", extra={"source_reference": source_reference})
                return RecalculationResult(kind, None, payments_checked=1, skipped_reversed=(source_reference,))

            if co_owners is not None:
                co_owners = {k: Decimal(v) for k, v in co_owners.items()}
            delta = self._delta(txn, co_owners)
            if co_owners is not None:
                txn.co_owners = {k: str(v) for k, v in co_owners.items()}
                self.session.flush()

            return self._apply(
                kind,
                [delta],
                reason=reason,
                actor_id=actor_id,
                group_id=txn.group_id,
                tip_transaction_id=txn.id,
                checked=1,
            )

    def recalculate_group(
        self,
        group_id: UUID,
        *,
        reason: str,
        actor_id: str | None = None,
        segment_id: UUID | None = None,
    ) -> RecalculationResult:
        """
        Recalculate every payment the group touched, or could have touched.

        A payment qualifies when one of its entries names the group, or its
        paying worker was ever a member, and it occurred inside the group's
        lifetime (or inside ``segment_id``'s interval when given).
        """
        _require_reason(reason)
        with self.session.begin_nested():
            txns = self._group_transactions(group_id, segment_id)
            deltas: list[_PaymentDelta] = []
            skipped: list[str] = []
            for txn in txns:
                if txn.status == TipTransactionStatus.REVERSED:
                    skipped.append(txn.source_reference)
                    continue
                deltas.append(self._delta(txn))
            return self._apply(
                AdjustmentKind.GROUP_MEMBERSHIP,
                deltas,
                reason=reason,
                actor_id=actor_id,
                group_id=group_id,
                checked=len(txns),
                skipped=tuple(skipped),
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _group_transactions(self, group_id: UUID, segment_id: UUID | None) -> list[TipTransaction]:
        group = self.groups.get_group(group_id)
        start, end = group.started_at, group.closed_at
        if segment_id is not None:
            segment = next((s for s in self.groups.segments(group_id) if s.id == segment_id), None)
            if segment is None:
                raise TimelineError(f"Segment {segment_id} does not belong to group {group_id}")
            start, end = segment.start_time, segment.end_time

        touched = select(LedgerEntry.tip_transaction_id).where(
            LedgerEntry.group_id == group_id,
            LedgerEntry.tip_transaction_id.is_not(None),
        )
        members = select(GroupMembership.worker_id).where(
            GroupMembership.group_id == group_id,
            GroupMembership.joined_at.is_not(None),
        )
        stmt = select(TipTransaction).where(
            or_(TipTransaction.id.in_(touched), TipTransaction.worker_id.in_(members)),
            TipTransaction.occurred_at >= start,
        )
        if end is not None:
            stmt = stmt.where(TipTransaction.occurred_at < end)
        stmt = (
            stmt.order_by(TipTransaction.occurred_at, TipTransaction.source_reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars())

    def _delta(self, txn: TipTransaction, co_owners: Mapping[str, Decimal] | None = None) -> _PaymentDelta:
        delta = _PaymentDelta(txn, self.allocation.plan_for(txn, co_owners))
        entries = self.session.execute(
            select(LedgerEntry).where(LedgerEntry.tip_transaction_id == txn.id)
        ).scalars()
        for e in entries:
            if e.source_type == SourceType.ADJUSTMENT and not is_recalculation_reference(e.source_reference):
                continue
            signed = EntryDirection(e.direction).sign * e.amount_cents
            delta.previous[e.worker_id] = delta.previous.get(e.worker_id, 0) + signed
        return delta

    def _apply(
        self,
        kind: AdjustmentKind,
        deltas: Sequence[_PaymentDelta],
        *,
        reason: str,
        actor_id: str | None,
        group_id: UUID | None = None,
        tip_transaction_id: UUID | None = None,
        checked: int = 0,
        skipped: tuple[str, ...] = (),
    ) -> RecalculationResult:
        changed = [(d, w, previous, expected) for d in deltas for w, previous, expected in d.changes()]
        if not changed:
            logger.info(
                "recalculation_no_change",
                extra={
                    "kind": kind.value,
                    "group_id": str(group_id) if group_id else None,
                    "payments_checked": checked,
                },
            )
            return RecalculationResult(kind, None, payments_checked=checked, skipped_reversed=skipped)

        before: dict[str, int] = {}
        after: dict[str, int] = {}
        for _, w, previous, expected in changed:
            before[w] = before.get(w, 0) + previous
            after[w] = after.get(w, 0) + expected

        now = self.clock.now()
        adjustment = TipAdjustment(
            kind=kind.value,
            reason=reason,
            actor_id=actor_id,
            group_id=group_id,
            tip_transaction_id=tip_transaction_id,
            context={
                "before": before,
                "after": after,
                "payments": sorted({d.txn.source_reference for d, *_ in changed}),
            },
            adjusted_at=now,
        )
        self.session.add(adjustment)
        self.session.flush()

        candidates = []
        for d, w, previous, expected in changed:
            line = d.plan.line_for(w)
            amount = expected - previous
            candidates.append(
                LedgerEntryCandidate(
                    worker_id=w,
                    direction=EntryDirection.CREDIT if amount > 0 else EntryDirection.DEBIT,
                    amount_cents=abs(amount),
                    source_type=SourceType.ADJUSTMENT,
                    source_reference=recalculation_reference(adjustment.id, d.txn.source_reference),
                    occurred_at=now,
                    currency=d.txn.currency,
                    memo=f"recalculation: {reason}",
                    group_id=line.group_id if line else None,
                    segment_id=line.segment_id if line else None,
                    tip_transaction_id=d.txn.id,
                    metadata={
                        "adjustment_id": str(adjustment.id),
                        "previous_cents": previous,
                        "expected_cents": expected,
                    },
                )
            )
        posted = self.ledger.post_batch(candidates)

        lines = tuple(
            RecalculationLine(w, d.txn.source_reference, previous, expected, p.entry_id)
            for (d, w, previous, expected), p in zip(changed, posted)
        )
        logger.warning(
            "tips_recalculated",
            extra={
                "adjustment_id": str(adjustment.id),
                "kind": kind.value,
                "group_id": str(group_id) if group_id else None,
                "actor_id": actor_id,
                "payments_checked": checked,
                "payments_changed": len(adjustment.context["payments"]),
                "line_count": len(lines),
            },
        )
        return RecalculationResult(kind, adjustment.id, lines, checked, skipped)


def _require_reason(reason: str) -> None:
    if not reason:
        raise ValueError("a recalculation needs a reason")
