"""
tip_services.tip_bank -- Wires every tip service over one session.

Responsibility:
    Constructs each kernel service and each service-layer component
    exactly once, in dependency order, sharing one Session, one Clock and
    one TipBankSettings. No component constructs its collaborators.

Non-goals:
    - Does NOT manage transaction boundaries (caller's responsibility).
    - Does NOT own the Session lifecycle (no commit/rollback).

Usage:
    with session_scope() as session:
        bank = TipBank(session, get_active_config("downtown"), SystemClock())
        bank.allocation.allocate_for_payment("w-1", Decimal("5.00"), at, "order-1:pay-1")
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from tip_config.schema import TipBankSettings
from tip_engines.allocation import ShareAllocator
from tip_engines.tip_out import TipOutEvaluator
from tip_kernel.domain.clock import Clock, SystemClock
from tip_kernel.domain.enums import SplitMode
from tip_kernel.domain.splits import SplitCalculator
from tip_kernel.selectors.adjustment_selector import AdjustmentSelector
from tip_kernel.selectors.group_selector import GroupSelector
from tip_kernel.selectors.ledger_selector import LedgerSelector
from tip_kernel.services.group_lifecycle import GroupLifecycleService, GroupStarted
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.services.review_queue import ReviewQueue
from tip_kernel.services.segment_timeline import SegmentTimeline
from tip_kernel.services.tip_out_rule_service import TipOutRuleService
from tip_services.allocation_pipeline import AllocationPipeline
from tip_services.chargeback_service import ChargebackService
from tip_services.recalculation_service import RecalculationService
from tip_services.tip_out_service import TipOutService
from tip_services.transfer_service import TransferService


class TipBank:
    """All tip services for one unit of work."""

    def __init__(
        self,
        session: Session,
        settings: TipBankSettings | None = None,
        clock: Clock | None = None,
    ):
        self.session = session
        self.settings = settings or TipBankSettings()
        self.clock = clock or SystemClock()
        currency = self.settings.currency

        # Kernel
        self.ledger = LedgerStore(
            session,
            self.clock,
            allow_negative_balances=self.settings.allow_negative_balances,
            currency=currency,
        )
        self.split_calculator = SplitCalculator(self.settings.split_tolerance)
        self.timeline = SegmentTimeline(session, self.clock, self.split_calculator)
        self.groups = GroupLifecycleService(session, self.clock, self.timeline)
        self.review_queue = ReviewQueue(session, self.clock)
        self.rules = TipOutRuleService(session, self.clock)

        # Read side
        self.group_selector = GroupSelector(session)
        self.ledger_selector = LedgerSelector(session, currency)
        self.adjustment_selector = AdjustmentSelector(session)

        # Services
        self.allocation = AllocationPipeline(
            session,
            self.clock,
            ledger=self.ledger,
            timeline=self.timeline,
            lifecycle=self.groups,
            review_queue=self.review_queue,
            groups=self.group_selector,
            allocator=ShareAllocator(),
            currency=currency,
            split_tolerance=self.settings.split_tolerance,
        )
        self.tip_outs = TipOutService(
            session,
            self.clock,
            ledger=self.ledger,
            rules=self.rules,
            evaluator=TipOutEvaluator(currency),
            currency=currency,
            location_id=self.settings.location_id,
        )
        self.transfers = TransferService(session, self.clock, ledger=self.ledger, currency=currency)
        self.chargebacks = ChargebackService(
            session,
            self.clock,
            ledger=self.ledger,
            review_queue=self.review_queue,
            policy=self.settings.chargeback_policy,
        )
        self.recalculation = RecalculationService(
            session, self.clock, ledger=self.ledger, allocation=self.allocation
        )

    def start_group(
        self,
        owner_id: str,
        initial_members: Iterable[str] = (),
        split_mode: SplitMode | None = None,
        *,
        custom_split: Mapping[str, Decimal] | None = None,
        weights: Mapping[str, Decimal] | None = None,
        name: str | None = None,
        at: datetime | None = None,
    ) -> GroupStarted:
        """start_group with the location's default split mode."""
        return self.groups.start_group(
            owner_id,
            initial_members,
            split_mode or self.settings.default_split_mode,
            custom_split=custom_split,
            weights=weights,
            name=name,
            location_id=self.settings.location_id,
            at=at,
        )
