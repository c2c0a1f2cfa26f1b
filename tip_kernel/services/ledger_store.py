"""
Module: tip_kernel.services.ledger_store
Responsibility: Append ledger entries idempotently and keep the per-worker
    balance cache in step with them.
Architecture position: Kernel > Services. Every component that moves money
    (allocation, tip-out, transfers, payouts, chargebacks) posts through
    LedgerStore; nothing else writes ledger_entries or worker_balances.
Invariants enforced:
    - (source_type, source_reference, worker_id) posts at most once.
    - Cached balance == sum(CREDIT) - sum(DEBIT); checked by reconcile().
    - Balance updates are transactional increments under a row lock.
    - A batch is all-or-nothing (savepoint).
Failure modes:
    - InsufficientBalanceError when a DEBIT would take a balance below zero
      and negative balances are not permitted (recoverable, nothing written).
    - LedgerCorruptionError when posting to a worker frozen by a failed
      reconcile (fatal, must not be swallowed).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import Decimal

from sqlalchemy import func, select, union, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tip_kernel.domain.clock import Clock
from tip_kernel.domain.dtos import LedgerEntryCandidate, PostResult, ReconciliationResult
from tip_kernel.domain.enums import EntryDirection, PostStatus
from tip_kernel.domain.money import from_minor_units
from tip_kernel.exceptions import InsufficientBalanceError, LedgerCorruptionError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.ledger import LedgerEntry, WorkerBalance, signed_amount_expr
from tip_kernel.services.base import BaseService

logger = get_logger("services.ledger_store")


class LedgerStore(BaseService[LedgerEntry]):
    """Append-only ledger with a transactionally maintained balance cache."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        allow_negative_balances: bool = False,
        currency: str = "USD",
    ):
        super().__init__(session, clock)
        self.allow_negative_balances = allow_negative_balances
        self.currency = currency

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post(self, candidate: LedgerEntryCandidate) -> PostResult:
        """
        Append one entry.

        Returns ALREADY_POSTED with the existing entry id when the same
        (source_type, source_reference, worker_id) was posted before.
        """
        with self.session.begin_nested():
            return self._post_one(candidate)

    def post_batch(self, candidates: Sequence[LedgerEntryCandidate]) -> list[PostResult]:
        """Append several entries atomically: all are written or none are."""
        with self.session.begin_nested():
            # Fixed lock order across workers prevents deadlocks between
            # concurrent batches touching the same people.
            for worker_id in sorted({c.worker_id for c in candidates}):
                self._lock_balance(worker_id)
            return [self._post_one(c) for c in candidates]

    def _post_one(self, candidate: LedgerEntryCandidate) -> PostResult:
        balance = self._lock_balance(candidate.worker_id)

        existing_id = self._find_existing(candidate)
        if existing_id is not None:
            logger.info(
                "ledger_entry_already_posted",
                extra={
                    "worker_id": candidate.worker_id,
                    "source_type": candidate.source_type.value,
                    "source_reference": candidate.source_reference,
                    "entry_id": str(existing_id),
                },
            )
            return PostResult(
                status=PostStatus.ALREADY_POSTED,
                entry_id=existing_id,
                worker_id=candidate.worker_id,
                amount_cents=candidate.amount_cents,
                source_reference=candidate.source_reference,
            )

        if balance.is_frozen:
            logger.critical(
                "ledger_write_blocked_frozen_worker",
                extra={
                    "worker_id": candidate.worker_id,
                    "source_reference": candidate.source_reference,
                    "frozen_reason": balance.frozen_reason,
                },
            )
            raise LedgerCorruptionError(candidate.worker_id)

        delta = candidate.signed_cents
        resulting = balance.balance_cents + delta
        if delta < 0 and resulting < 0 and not self.allow_negative_balances:
            logger.warning(
                "ledger_insufficient_balance",
                extra={
                    "worker_id": candidate.worker_id,
                    "balance_cents": balance.balance_cents,
                    "requested_cents": candidate.amount_cents,
                    "source_reference": candidate.source_reference,
                },
            )
            raise InsufficientBalanceError(
                candidate.worker_id,
                from_minor_units(balance.balance_cents, candidate.currency),
                from_minor_units(candidate.amount_cents, candidate.currency),
            )

        entry = LedgerEntry(
            worker_id=candidate.worker_id,
            direction=candidate.direction.value,
            amount_cents=candidate.amount_cents,
            currency=candidate.currency,
            source_type=candidate.source_type.value,
            source_reference=candidate.source_reference,
            occurred_at=candidate.occurred_at,
            posted_at=self.clock.now(),
            memo=candidate.memo,
            group_id=candidate.group_id,
            segment_id=candidate.segment_id,
            tip_transaction_id=candidate.tip_transaction_id,
            shift_id=candidate.shift_id,
            rule_id=candidate.rule_id,
            was_capped=candidate.was_capped,
            entry_metadata=dict(candidate.metadata) or None,
        )
        try:
            with self.session.begin_nested():
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            # A concurrent transaction committed the same source first.
            existing_id = self._find_existing(candidate)
            if existing_id is None:
                raise
            logger.info(
                "ledger_entry_duplicate_race",
                extra={
                    "worker_id": candidate.worker_id,
                    "source_reference": candidate.source_reference,
                },
            )
            return PostResult(
                status=PostStatus.ALREADY_POSTED,
                entry_id=existing_id,
                worker_id=candidate.worker_id,
                amount_cents=candidate.amount_cents,
                source_reference=candidate.source_reference,
            )

        self.session.execute(
            update(WorkerBalance)
            .where(WorkerBalance.id == balance.id)
            .values(balance_cents=WorkerBalance.balance_cents + delta)
            .execution_options(synchronize_session=False)
        )

        logger.info(
            "ledger_entry_posted",
            extra={
                "entry_id": str(entry.id),
                "worker_id": candidate.worker_id,
                "direction": candidate.direction.value,
                "amount_cents": candidate.amount_cents,
                "source_type": candidate.source_type.value,
                "source_reference": candidate.source_reference,
                "balance_cents": resulting,
            },
        )
        return PostResult(
            status=PostStatus.POSTED,
            entry_id=entry.id,
            worker_id=candidate.worker_id,
            amount_cents=candidate.amount_cents,
            source_reference=candidate.source_reference,
        )

    def _find_existing(self, candidate: LedgerEntryCandidate):
        return self.session.execute(
            select(LedgerEntry.id).where(
                LedgerEntry.source_type == candidate.source_type.value,
                LedgerEntry.source_reference == candidate.source_reference,
                LedgerEntry.worker_id == candidate.worker_id,
            )
        ).scalar_one_or_none()

    def _lock_balance(self, worker_id: str) -> WorkerBalance:
        """Lock the worker's balance row, creating it on first use."""
        stmt = (
            select(WorkerBalance)
            .where(WorkerBalance.worker_id == worker_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        try:
            with self.session.begin_nested():
                balance = WorkerBalance(
                    worker_id=worker_id, balance_cents=0, currency=self.currency
                )
                self.session.add(balance)
                self.session.flush()
            return balance
        except IntegrityError:
            logger.debug("worker_balance_create_race", extra={"worker_id": worker_id})
            return self.session.execute(stmt).scalar_one()

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_balance_cents(self, worker_id: str) -> int:
        value = self.session.execute(
            select(WorkerBalance.balance_cents).where(WorkerBalance.worker_id == worker_id)
        ).scalar_one_or_none()
        return value or 0

    def locked_balances(self, worker_ids: Iterable[str]) -> dict[str, int]:
        """Lock the workers' balance rows in id order and return their cents.

        The locks are held until the enclosing transaction ends, so a debit
        sized from these figures cannot be undercut by a concurrent post.
        """
        return {w: self._lock_balance(w).balance_cents for w in sorted(set(worker_ids))}

    def get_balance(self, worker_id: str) -> Decimal:
        """Cached balance in major units; zero for a worker with no entries."""
        return from_minor_units(self.get_balance_cents(worker_id), self.currency)

    def computed_balance_cents(self, worker_id: str) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(signed_amount_expr()), 0)).where(
                LedgerEntry.worker_id == worker_id
            )
        ).scalar_one()
        return int(total)

    def is_frozen(self, worker_id: str) -> bool:
        frozen = self.session.execute(
            select(WorkerBalance.is_frozen).where(WorkerBalance.worker_id == worker_id)
        ).scalar_one_or_none()
        return bool(frozen)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, worker_id: str) -> ReconciliationResult:
        """
        Recompute the balance from entries and compare with the cache.

        On mismatch the worker is frozen: every later post for them raises
        LedgerCorruptionError until rebuild_balance() is run by an operator.
        The freeze is flushed; it becomes durable when the caller commits.
        """
        balance = self._lock_balance(worker_id)
        computed = self.computed_balance_cents(worker_id)
        cached = balance.balance_cents

        if cached == computed:
            logger.debug(
                "ledger_reconciled",
                extra={"worker_id": worker_id, "balance_cents": cached},
            )
            return ReconciliationResult(
                worker_id=worker_id,
                cached_cents=cached,
                computed_cents=computed,
                frozen=balance.is_frozen,
            )

        balance.is_frozen = True
        balance.frozen_reason = f"reconcile mismatch: cached={cached} computed={computed}"
        balance.frozen_at = self.clock.now()
        self.session.flush()

        logger.critical(
            "ledger_corruption_detected",
            extra={
                "worker_id": worker_id,
                "cached_cents": cached,
                "computed_cents": computed,
            },
        )
        return ReconciliationResult(
            worker_id=worker_id,
            cached_cents=cached,
            computed_cents=computed,
            frozen=True,
        )

    def reconcile_all(self) -> list[ReconciliationResult]:
        """Reconcile every worker known to the ledger; return the mismatches."""
        worker_ids = self.session.execute(
            union(
                select(WorkerBalance.worker_id),
                select(LedgerEntry.worker_id),
            )
        ).scalars().all()
        results = [self.reconcile(w) for w in sorted(worker_ids)]
        return [r for r in results if not r.consistent]

    def rebuild_balance(self, worker_id: str, actor_id: str) -> ReconciliationResult:
        """Manual reconciliation: overwrite the cache from entries and unfreeze."""
        balance = self._lock_balance(worker_id)
        computed = self.computed_balance_cents(worker_id)
        previous = balance.balance_cents

        balance.balance_cents = computed
        balance.is_frozen = False
        balance.frozen_reason = None
        balance.frozen_at = None
        self.session.flush()

        logger.warning(
            "ledger_balance_rebuilt",
            extra={
                "worker_id": worker_id,
                "actor_id": actor_id,
                "previous_cents": previous,
                "balance_cents": computed,
            },
        )
        return ReconciliationResult(
            worker_id=worker_id,
            cached_cents=computed,
            computed_cents=computed,
            frozen=False,
        )
