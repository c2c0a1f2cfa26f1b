"""
tip_services.transfer_service -- Manual transfers, payouts and adjustments.

Bookkeeping only: nothing here talks to a payment rail. Each operation
is one LedgerStore post (or one atomic batch for the two legs of a
transfer) under a deterministic reference, so retrying with the same id
is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from tip_kernel.domain.clock import Clock, ensure_utc
from tip_kernel.domain.dtos import LedgerEntryCandidate, PostResult
from tip_kernel.domain.enums import AdjustmentKind, EntryDirection, PayoutMethod, SourceType
from tip_kernel.domain.money import from_minor_units, require_positive, to_minor_units
from tip_kernel.exceptions import InvalidAmountError, InvalidTransferError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.adjustment import TipAdjustment
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.utils.source_reference import (
    adjustment_reference,
    payout_reference,
    transfer_reference,
)

logger = get_logger("services.transfers")


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    source_reference: str
    debit: PostResult
    credit: PostResult

    @property
    def is_duplicate(self) -> bool:
        return self.debit.is_duplicate and self.credit.is_duplicate


@dataclass(frozen=True)
class PayoutResult:
    payout_id: str
    worker_id: str
    method: PayoutMethod
    amount: Decimal
    entry: PostResult | None

    @property
    def paid(self) -> bool:
        return self.entry is not None


class TransferService:
    """Worker-to-worker transfers, cash/payroll payouts and manual adjustments."""

    def __init__(self, session: Session, clock: Clock, *, ledger: LedgerStore, currency: str = "USD"):
        self.session = session
        self.clock = clock
        self.ledger = ledger
        self.currency = currency

    def transfer(
        self,
        from_worker_id: str,
        to_worker_id: str,
        amount: Decimal,
        memo: str | None = None,
        *,
        transfer_id: UUID | str | None = None,
        occurred_at: datetime | None = None,
    ) -> TransferResult:
        """
        Move ``amount`` from one worker to another.

        Both legs share ``transfer:{transfer_id}`` and post atomically; an
        InsufficientBalanceError leaves both balances unchanged.
        """
        if from_worker_id == to_worker_id:
            raise InvalidTransferError(from_worker_id, to_worker_id, "cannot transfer to self")
        cents = require_positive(amount, self.currency)
        transfer_id = str(transfer_id or uuid4())
        reference = transfer_reference(transfer_id)
        when = ensure_utc(occurred_at) if occurred_at else self.clock.now()

        def leg(worker_id: str, direction: EntryDirection) -> LedgerEntryCandidate:
            return LedgerEntryCandidate(
                worker_id=worker_id,
                direction=direction,
                amount_cents=cents,
                source_type=SourceType.MANUAL_TRANSFER,
                source_reference=reference,
                occurred_at=when,
                currency=self.currency,
                memo=memo,
                metadata={"from_worker_id": from_worker_id, "to_worker_id": to_worker_id},
            )

        debit, credit = self.ledger.post_batch(
            [leg(from_worker_id, EntryDirection.DEBIT), leg(to_worker_id, EntryDirection.CREDIT)]
        )
        logger.info(
            "transfer_posted",
            extra={
                "transfer_id": transfer_id,
                "from_worker_id": from_worker_id,
                "to_worker_id": to_worker_id,
                "amount_cents": cents,
                "duplicate": debit.is_duplicate and credit.is_duplicate,
            },
        )
        return TransferResult(transfer_id=transfer_id, source_reference=reference, debit=debit, credit=credit)

    def payout(
        self,
        worker_id: str,
        amount: Decimal | None = None,
        method: PayoutMethod = PayoutMethod.CASH,
        *,
        payout_id: UUID | str | None = None,
    ) -> PayoutResult:
        """
        Record a cash or payroll disbursement as a PAYOUT debit.

        ``amount=None`` pays out the full cached balance; a zero balance
        then posts nothing.
        """
        method = PayoutMethod(method)
        payout_id = str(payout_id or uuid4())
        if amount is None:
            cents = self.ledger.locked_balances([worker_id])[worker_id]
            if cents <= 0:
                logger.info("payout_nothing_due", extra={"worker_id": worker_id, "balance_cents": cents})
                return PayoutResult(payout_id, worker_id, method, from_minor_units(0, self.currency), None)
        else:
            cents = require_positive(amount, self.currency)

        result = self.ledger.post(
            LedgerEntryCandidate(
                worker_id=worker_id,
                direction=EntryDirection.DEBIT,
                amount_cents=cents,
                source_type=SourceType.PAYOUT,
                source_reference=payout_reference(payout_id),
                occurred_at=self.clock.now(),
                currency=self.currency,
                memo=f"{method.value.lower()} payout",
                metadata={"method": method.value},
            )
        )
        logger.info(
            "payout_posted",
            extra={
                "payout_id": payout_id,
                "worker_id": worker_id,
                "method": method.value,
                "amount_cents": cents,
                "duplicate": result.is_duplicate,
            },
        )
        return PayoutResult(payout_id, worker_id, method, from_minor_units(cents, self.currency), result)

    def adjust(
        self,
        worker_id: str,
        amount: Decimal,
        reason: str,
        *,
        adjustment_id: UUID | str | None = None,
        actor_id: str | None = None,
    ) -> PostResult:
        """Signed manual correction: positive credits, negative debits."""
        cents = to_minor_units(amount, self.currency)
        if cents == 0:
            raise InvalidAmountError(amount, "adjustment must be non-zero")
        if not reason:
            raise ValueError("an adjustment needs a reason")
        adjustment_id = str(adjustment_id or uuid4())
        reference = adjustment_reference(adjustment_id)
        now = self.clock.now()
        with self.session.begin_nested():
            result = self.ledger.post(
                LedgerEntryCandidate(
                    worker_id=worker_id,
                    direction=EntryDirection.CREDIT if cents > 0 else EntryDirection.DEBIT,
                    amount_cents=abs(cents),
                    source_type=SourceType.ADJUSTMENT,
                    source_reference=reference,
                    occurred_at=now,
                    currency=self.currency,
                    memo=reason,
                    metadata={"actor_id": actor_id} if actor_id else {},
                )
            )
            if not result.is_duplicate:
                self.session.add(
                    TipAdjustment(
                        kind=AdjustmentKind.MANUAL.value,
                        reason=reason,
                        actor_id=actor_id,
                        context={
                            "source_reference": reference,
                            "before": {worker_id: 0},
                            "after": {worker_id: cents},
                        },
                        adjusted_at=now,
                    )
                )
                self.session.flush()
        logger.warning(
            "manual_adjustment_posted",
            extra={
                "adjustment_id": adjustment_id,
                "worker_id": worker_id,
                "amount_cents": cents,
                "actor_id": actor_id,
                "duplicate": result.is_duplicate,
            },
        )
        return result
