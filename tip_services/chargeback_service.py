"""
tip_services.chargeback_service -- Reverse a card payment's tip.

Two location policies:

* BUSINESS_ABSORBS -- the transaction is marked REVERSED; the workers keep
  what they were credited.
* EMPLOYEE_CHARGEBACK -- each worker credited from the payment is debited
  their net share (credit minus fee, plus any recalculation corrections)
  as an ADJUSTMENT under ``chargeback:{creditReference}``. When negative
  balances are not permitted a debit is capped at the worker's balance
  and the shortfall goes to the review queue as CHARGEBACK_UNCOLLECTED.

A second chargeback for the same payment returns the first outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from tip_config.schema import ChargebackPolicy
from tip_kernel.domain.clock import Clock, ensure_utc
from tip_kernel.domain.dtos import LedgerEntryCandidate
from tip_kernel.domain.enums import EntryDirection, ReviewFlagKind, SourceType, TipTransactionStatus
from tip_kernel.exceptions import TipTransactionNotFoundError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.review import ReviewFlag
from tip_kernel.models.tip_transaction import TipTransaction
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.services.review_queue import ReviewQueue
from tip_kernel.utils.source_reference import (
    chargeback_reference,
    fee_reference,
    is_recalculation_reference,
    member_reference,
)

logger = get_logger("services.chargebacks")


@dataclass(frozen=True)
class ChargebackLine:
    worker_id: str
    source_reference: str
    owed_cents: int
    collected_cents: int

    @property
    def uncollected_cents(self) -> int:
        return self.owed_cents - self.collected_cents


@dataclass(frozen=True)
class ChargebackResult:
    source_reference: str
    tip_transaction_id: UUID
    policy: ChargebackPolicy
    lines: tuple[ChargebackLine, ...] = ()
    review_flag_ids: tuple[UUID, ...] = ()
    duplicate: bool = False

    @property
    def collected_cents(self) -> int:
        return sum(line.collected_cents for line in self.lines)

    @property
    def uncollected_cents(self) -> int:
        return sum(line.uncollected_cents for line in self.lines)


@dataclass
class _Claim:
    worker_id: str
    credit_reference: str
    owed_cents: int
    currency: str
    group_id: UUID | None = None
    segment_id: UUID | None = None


class ChargebackService:

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        ledger: LedgerStore,
        review_queue: ReviewQueue,
        policy: ChargebackPolicy = ChargebackPolicy.BUSINESS_ABSORBS,
    ):
        self.session = session
        self.clock = clock
        self.ledger = ledger
        self.review_queue = review_queue
        self.policy = ChargebackPolicy(policy)

    def handle_chargeback(self, source_reference: str, occurred_at: datetime | None = None) -> ChargebackResult:
        when = ensure_utc(occurred_at) if occurred_at else self.clock.now()
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
                logger.info("chargeback_already_handled", extra={"source_reference": source_reference})
                return self._prior_result(txn)

            lines: tuple[ChargebackLine, ...] = ()
            flag_ids: tuple[UUID, ...] = ()
            if self.policy is ChargebackPolicy.EMPLOYEE_CHARGEBACK:
                lines, flag_ids = self._recover(txn, when)

            txn.status = TipTransactionStatus.REVERSED.value
            txn.reversed_at = when
            self.session.flush()

        result = ChargebackResult(
            source_reference=source_reference,
            tip_transaction_id=txn.id,
            policy=self.policy,
            lines=lines,
            review_flag_ids=flag_ids,
        )
        logger.warning(
            "chargeback_processed",
            extra={
                "source_reference": source_reference,
                "policy": self.policy.value,
                "collected_cents": result.collected_cents,
                "uncollected_cents": result.uncollected_cents,
            },
        )
        return result

    def _claims(self, txn: TipTransaction) -> list[_Claim]:
        """What each credited worker netted from the payment, per credit."""
        entries = self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.tip_transaction_id == txn.id)
            .order_by(LedgerEntry.worker_id, LedgerEntry.source_reference)
        ).scalars().all()
        fees = {
            e.source_reference: e.amount_cents
            for e in entries
            if e.source_type == SourceType.FEE_DEDUCTION
        }

        claims: dict[str, _Claim] = {}
        first_credit: dict[str, str] = {}
        for e in entries:
            if e.source_type != SourceType.PAYMENT_ALLOCATION:
                continue
            owed = e.amount_cents - fees.get(fee_reference(e.source_reference), 0)
            claims[e.source_reference] = _Claim(
                e.worker_id, e.source_reference, owed, e.currency, e.group_id, e.segment_id
            )
            first_credit.setdefault(e.worker_id, e.source_reference)

        # Recalculation corrections land on the worker's first credit.
        for e in entries:
            if e.source_type != SourceType.ADJUSTMENT or not is_recalculation_reference(e.source_reference):
                continue
            reference = first_credit.setdefault(e.worker_id, member_reference(txn.source_reference, e.worker_id))
            if reference not in claims:
                claims[reference] = _Claim(e.worker_id, reference, 0, e.currency, e.group_id, e.segment_id)
            claims[reference].owed_cents += EntryDirection(e.direction).sign * e.amount_cents

        return sorted(claims.values(), key=lambda c: (c.worker_id, c.credit_reference))

    def _recover(self, txn: TipTransaction, when: datetime) -> tuple[tuple[ChargebackLine, ...], tuple[UUID, ...]]:
        claims = [c for c in self._claims(txn) if c.owed_cents > 0]

        available: dict[str, int] = {}
        if not self.ledger.allow_negative_balances:
            available = {
                worker_id: max(0, cents)
                for worker_id, cents in self.ledger.locked_balances(c.worker_id for c in claims).items()
            }
        lines: list[ChargebackLine] = []
        candidates: list[LedgerEntryCandidate] = []
        for claim in claims:
            owed = claim.owed_cents
            collected = owed
            if not self.ledger.allow_negative_balances:
                collected = min(owed, available[claim.worker_id])
                available[claim.worker_id] -= collected

            reference = chargeback_reference(claim.credit_reference)
            lines.append(ChargebackLine(claim.worker_id, reference, owed, collected))
            if collected > 0:
                candidates.append(
                    LedgerEntryCandidate(
                        worker_id=claim.worker_id,
                        direction=EntryDirection.DEBIT,
                        amount_cents=collected,
                        source_type=SourceType.ADJUSTMENT,
                        source_reference=reference,
                        occurred_at=when,
                        currency=claim.currency,
                        memo="chargeback",
                        group_id=claim.group_id,
                        segment_id=claim.segment_id,
                        tip_transaction_id=txn.id,
                        metadata={"owed_cents": owed},
                    )
                )

        if candidates:
            self.ledger.post_batch(candidates)

        flag_ids = []
        for line in lines:
            if line.uncollected_cents > 0:
                flag = self.review_queue.flag(
                    ReviewFlagKind.CHARGEBACK_UNCOLLECTED,
                    worker_id=line.worker_id,
                    source_reference=line.source_reference,
                    amount_cents=line.uncollected_cents,
                    detail=f"balance covered {line.collected_cents} of {line.owed_cents}",
                )
                flag_ids.append(flag.id)
        return tuple(lines), tuple(flag_ids)

    def _prior_result(self, txn: TipTransaction) -> ChargebackResult:
        references = {chargeback_reference(c.credit_reference) for c in self._claims(txn)}
        debits = self.session.execute(
            select(LedgerEntry).where(
                LedgerEntry.tip_transaction_id == txn.id,
                LedgerEntry.source_type == SourceType.ADJUSTMENT.value,
                LedgerEntry.source_reference.in_(references),
            )
        ).scalars().all() if references else []
        flags = {
            f.source_reference: f
            for f in self.session.execute(
                select(ReviewFlag).where(
                    ReviewFlag.kind == ReviewFlagKind.CHARGEBACK_UNCOLLECTED.value,
                    ReviewFlag.source_reference.in_(references),
                )
            ).scalars()
        } if references else {}
        lines = []
        seen = set()
        for e in debits:
            seen.add(e.source_reference)
            short = flags[e.source_reference].amount_cents if e.source_reference in flags else 0
            lines.append(ChargebackLine(e.worker_id, e.source_reference, e.amount_cents + short, e.amount_cents))
        for ref, f in flags.items():
            if ref not in seen:
                lines.append(ChargebackLine(f.worker_id, ref, f.amount_cents, 0))
        return ChargebackResult(
            source_reference=txn.source_reference,
            tip_transaction_id=txn.id,
            policy=self.policy,
            lines=tuple(lines),
            review_flag_ids=tuple(f.id for f in flags.values()),
            duplicate=True,
        )
