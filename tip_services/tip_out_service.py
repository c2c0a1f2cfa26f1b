"""
tip_services.tip_out_service -- Shift-close tip-out posting.

Responsibility:
    Re-evaluates every tip-out rule server-side at shift close and posts,
    per rule, DEBITs against the tipped workers and one CREDIT to the
    rule's recipient.

Architecture position:
    Services -- composes TipOutRuleService, LedgerStore and the pure
    TipOutEvaluator. Triggered by ShiftClosed.

Invariants enforced:
    - One writer per shift: the shift_closeouts row is locked FOR UPDATE
      for the whole run. A COMPLETED shift returns its prior result and
      posts nothing.
    - Each rule's debit/credit pair is one savepoint.
    - Client-submitted figures are never posted; a disagreement or an
      unreadable figure is logged and the closeout carries on.

Failure modes:
    - InsufficientBalanceError on one rule marks that rule FAILED and the
      closeout PARTIAL; other rules still post. Re-running retries only
      the rules that did not post.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tip_engines.allocation import prorate
from tip_engines.tip_out import SkippedRule, TipOutComputation, TipOutEvaluation, TipOutEvaluator, TipOutRuleSpec
from tip_kernel.domain.clock import Clock
from tip_kernel.domain.dtos import LedgerEntryCandidate, ShiftSalesSnapshot
from tip_kernel.domain.enums import CloseoutStatus, EntryDirection, PostStatus, SourceType
from tip_kernel.domain.money import to_minor_units
from tip_kernel.exceptions import InsufficientBalanceError, InvalidAmountError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.shift_closeout import ShiftCloseout
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.services.tip_out_rule_service import TipOutRuleService
from tip_kernel.utils.source_reference import tip_out_reference

logger = get_logger("services.tip_out")


class RuleOutcomeStatus(str, Enum):
    POSTED = "POSTED"
    ALREADY_POSTED = "ALREADY_POSTED"
    NOTHING_DUE = "NOTHING_DUE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RuleOutcome:
    rule_id: UUID
    status: RuleOutcomeStatus
    recipient_id: str | None
    amount_cents: int
    debits: Mapping[str, int] = field(default_factory=dict)
    was_capped: bool = False
    computation: TipOutComputation | None = None
    error: str | None = None


@dataclass(frozen=True)
class TipOutResult:
    shift_id: str
    shift_date: date
    status: CloseoutStatus
    outcomes: tuple[RuleOutcome, ...]
    skipped: tuple[SkippedRule, ...] = ()
    replayed: bool = False

    def outcome_for(self, rule_id: UUID) -> RuleOutcome:
        for outcome in self.outcomes:
            if outcome.rule_id == rule_id:
                return outcome
        raise KeyError(rule_id)

    @property
    def failed(self) -> tuple[RuleOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status is RuleOutcomeStatus.FAILED)


class TipOutService:
    """Evaluates and posts tip-outs at shift close."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        ledger: LedgerStore,
        rules: TipOutRuleService,
        evaluator: TipOutEvaluator | None = None,
        currency: str = "USD",
        location_id: str | None = None,
    ):
        self.session = session
        self.clock = clock
        self.ledger = ledger
        self.rules = rules
        self.currency = currency
        self.evaluator = evaluator or TipOutEvaluator(currency)
        self.location_id = location_id

    def preview(
        self,
        sales: ShiftSalesSnapshot,
        tips_earned_by_worker: Mapping[str, Decimal],
        shift_date: date | None = None,
    ) -> TipOutEvaluation:
        """What compute_payouts would post, without locking or posting."""
        day = shift_date or self.clock.now().date()
        return self.evaluator.evaluate(
            rules=self._rule_specs(),
            sales=sales,
            shift_date=day,
            tips_earned_total=_total(tips_earned_by_worker),
        )

    def compute_payouts(
        self,
        shift_id: str,
        sales: ShiftSalesSnapshot,
        tips_earned_by_worker: Mapping[str, Decimal],
        *,
        shift_date: date | None = None,
        client_reported: Mapping[str, Decimal] | None = None,
    ) -> TipOutResult:
        """
        Evaluate every rule in force for the shift and post the tip-outs.

        Args:
            tips_earned_by_worker: Server-side tips per tipped worker for the
                shift. Their total is the TIPS_EARNED basis and the cap base.
            client_reported: Tip-out amounts a terminal claimed, by rule id.
                Compared for logging only.
        """
        day = shift_date or self.clock.now().date()
        with self.session.begin_nested():
            closeout = self._lock_closeout(shift_id, day)
            if closeout.status == CloseoutStatus.COMPLETED:
                logger.info("tip_out_shift_already_closed", extra={"shift_id": shift_id})
                return self._prior_result(closeout)

            evaluation = self.evaluator.evaluate(
                rules=self._rule_specs(),
                sales=sales,
                shift_date=day,
                tips_earned_total=_total(tips_earned_by_worker),
            )
            self._compare_client_figures(shift_id, evaluation, client_reported)

            tipped = {
                worker: to_minor_units(amount, self.currency)
                for worker, amount in sorted(tips_earned_by_worker.items())
                if Decimal(amount) > 0
            }
            outcomes = tuple(
                self._post_rule(shift_id, comp, tipped, evaluation) for comp in evaluation.computations
            )

            status = (
                CloseoutStatus.PARTIAL
                if any(o.status is RuleOutcomeStatus.FAILED for o in outcomes)
                else CloseoutStatus.COMPLETED
            )
            closeout.status = status.value
            closeout.closed_at = self.clock.now()
            self.session.flush()

        logger.info(
            "tip_out_shift_closed",
            extra={
                "shift_id": shift_id,
                "shift_date": day.isoformat(),
                "status": status.value,
                "rules_posted": sum(1 for o in outcomes if o.status is RuleOutcomeStatus.POSTED),
                "rules_failed": sum(1 for o in outcomes if o.status is RuleOutcomeStatus.FAILED),
                "rules_skipped": len(evaluation.skipped),
            },
        )
        return TipOutResult(
            shift_id=shift_id,
            shift_date=day,
            status=status,
            outcomes=outcomes,
            skipped=evaluation.skipped,
        )

    # ------------------------------------------------------------------

    def _rule_specs(self) -> list[TipOutRuleSpec]:
        return [
            TipOutRuleSpec.from_model(r)
            for r in self.rules.list_rules(location_id=self.location_id, include_inactive=True)
        ]

    def _lock_closeout(self, shift_id: str, shift_date: date) -> ShiftCloseout:
        stmt = (
            select(ShiftCloseout)
            .where(ShiftCloseout.shift_id == shift_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        closeout = self.session.execute(stmt).scalar_one_or_none()
        if closeout is not None:
            return closeout
        try:
            with self.session.begin_nested():
                closeout = ShiftCloseout(
                    shift_id=shift_id, shift_date=shift_date, status=CloseoutStatus.RUNNING.value
                )
                self.session.add(closeout)
                self.session.flush()
            return closeout
        except IntegrityError:
            return self.session.execute(stmt).scalar_one()

    def _compare_client_figures(
        self,
        shift_id: str,
        evaluation: TipOutEvaluation,
        client_reported: Mapping[str, Decimal] | None,
    ) -> None:
        if not client_reported:
            return
        for comp in evaluation.computations:
            claimed = client_reported.get(str(comp.rule_id))
            if claimed is None:
                continue
            try:
                claimed_cents = to_minor_units(claimed, self.currency)
            except InvalidAmountError as exc:
                logger.warning(
                    "tip_out_client_figure_invalid",
                    extra={
                        "shift_id": shift_id,
                        "rule_id": str(comp.rule_id),
                        "client_value": str(claimed),
                        "reason": exc.reason,
                        "server_cents": comp.amount_cents,
                    },
                )
                continue
            if claimed_cents != comp.amount_cents:
                logger.warning(
                    "tip_out_client_figure_mismatch",
                    extra={
                        "shift_id": shift_id,
                        "rule_id": str(comp.rule_id),
                        "client_cents": claimed_cents,
                        "server_cents": comp.amount_cents,
                    },
                )

    def _post_rule(
        self,
        shift_id: str,
        comp: TipOutComputation,
        tipped: Mapping[str, int],
        evaluation: TipOutEvaluation,
    ) -> RuleOutcome:
        if comp.amount_cents == 0:
            return RuleOutcome(
                rule_id=comp.rule_id,
                status=RuleOutcomeStatus.NOTHING_DUE,
                recipient_id=comp.recipient_id,
                amount_cents=0,
                was_capped=comp.was_capped,
                computation=comp,
            )

        # The recipient is never debited toward their own tip-out.
        payers = {w: cents for w, cents in tipped.items() if w != comp.recipient_id}
        if not payers:
            logger.warning(
                "tip_out_no_tipped_workers",
                extra={"shift_id": shift_id, "rule_id": str(comp.rule_id)},
            )
            return RuleOutcome(
                rule_id=comp.rule_id,
                status=RuleOutcomeStatus.FAILED,
                recipient_id=comp.recipient_id,
                amount_cents=comp.amount_cents,
                was_capped=comp.was_capped,
                computation=comp,
                error="no tipped workers to debit",
            )

        top_earner = min(payers, key=lambda w: (-payers[w], w))
        debits = {w: c for w, c in prorate(comp.amount_cents, payers, top_earner).items() if c > 0}
        reference = tip_out_reference(shift_id, comp.rule_id)
        occurred_at = self.clock.now()
        metadata = {
            "basis_type": comp.basis_type.value,
            "basis_amount": str(comp.basis_amount),
            "percentage": str(comp.percentage),
            "raw_cents": comp.raw_cents,
            "cap_cents": comp.cap_cents,
            "shift_date": evaluation.shift_date.isoformat(),
        }

        def candidate(worker_id: str, direction: EntryDirection, cents: int) -> LedgerEntryCandidate:
            return LedgerEntryCandidate(
                worker_id=worker_id,
                direction=direction,
                amount_cents=cents,
                source_type=SourceType.TIP_OUT,
                source_reference=reference,
                occurred_at=occurred_at,
                currency=self.currency,
                memo=comp.rule_name,
                shift_id=shift_id,
                rule_id=comp.rule_id,
                was_capped=comp.was_capped,
                metadata=metadata,
            )

        candidates = [candidate(w, EntryDirection.DEBIT, c) for w, c in debits.items()]
        candidates.append(candidate(comp.recipient_id, EntryDirection.CREDIT, comp.amount_cents))

        try:
            results = self.ledger.post_batch(candidates)
        except InsufficientBalanceError as exc:
            logger.warning(
                "tip_out_rule_failed",
                extra={
                    "shift_id": shift_id,
                    "rule_id": str(comp.rule_id),
                    "worker_id": exc.worker_id,
                    "amount_cents": comp.amount_cents,
                },
            )
            return RuleOutcome(
                rule_id=comp.rule_id,
                status=RuleOutcomeStatus.FAILED,
                recipient_id=comp.recipient_id,
                amount_cents=comp.amount_cents,
                debits=debits,
                was_capped=comp.was_capped,
                computation=comp,
                error=str(exc),
            )

        already = all(r.status is PostStatus.ALREADY_POSTED for r in results)
        logger.info(
            "tip_out_rule_posted",
            extra={
                "shift_id": shift_id,
                "rule_id": str(comp.rule_id),
                "recipient_id": comp.recipient_id,
                "amount_cents": comp.amount_cents,
                "was_capped": comp.was_capped,
                "already_posted": already,
            },
        )
        return RuleOutcome(
            rule_id=comp.rule_id,
            status=RuleOutcomeStatus.ALREADY_POSTED if already else RuleOutcomeStatus.POSTED,
            recipient_id=comp.recipient_id,
            amount_cents=comp.amount_cents,
            debits=debits,
            was_capped=comp.was_capped,
            computation=comp,
        )

    def _prior_result(self, closeout: ShiftCloseout) -> TipOutResult:
        entries = self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.shift_id == closeout.shift_id,
                LedgerEntry.source_type == SourceType.TIP_OUT.value,
            )
            .order_by(LedgerEntry.rule_id, LedgerEntry.worker_id)
        ).scalars().all()

        debits: dict[UUID, dict[str, int]] = defaultdict(dict)
        credits: dict[UUID, LedgerEntry] = {}
        for e in entries:
            if e.direction == EntryDirection.DEBIT:
                debits[e.rule_id][e.worker_id] = e.amount_cents
            else:
                credits[e.rule_id] = e

        outcomes = tuple(
            RuleOutcome(
                rule_id=rule_id,
                status=RuleOutcomeStatus.ALREADY_POSTED,
                recipient_id=credit.worker_id,
                amount_cents=credit.amount_cents,
                debits=dict(debits.get(rule_id, {})),
                was_capped=credit.was_capped,
            )
            for rule_id, credit in credits.items()
        )
        return TipOutResult(
            shift_id=closeout.shift_id,
            shift_date=closeout.shift_date,
            status=CloseoutStatus.COMPLETED,
            outcomes=outcomes,
            replayed=True,
        )


def _total(amounts: Mapping[str, Decimal]) -> Decimal:
    return sum((Decimal(v) for v in amounts.values()), Decimal(0))
