"""
Tests for TipOutService: shift-close evaluation and posting, caps,
partial failure and idempotent re-runs.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from tip_kernel.domain.dtos import ShiftSalesSnapshot
from tip_kernel.domain.enums import BasisType, CloseoutStatus
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.shift_closeout import ShiftCloseout
from tip_services.tip_out_service import RuleOutcomeStatus

TIPS = {"alice": Decimal("120.00"), "bob": Decimal("80.00")}


@pytest.fixture
def sales():
    return ShiftSalesSnapshot(
        food_sales=Decimal("1200.00"),
        bar_sales=Decimal("400.00"),
        total_sales=Decimal("1600.00"),
        net_sales=Decimal("1500.00"),
        tips_earned=Decimal("200.00"),
    )


@pytest.fixture
def tipped(allocation, deterministic_clock):
    """Credit the tips the workers earned during the shift."""
    now = deterministic_clock.now()
    for worker, amount in TIPS.items():
        allocation.allocate_for_payment(worker, amount, now, f"shift-1:{worker}:tips")
    return TIPS


@pytest.fixture
def kitchen_rule(bank):
    return bank.rules.create_rule(
        name="kitchen",
        basis_type=BasisType.FOOD_SALES,
        percentage=Decimal("3"),
        max_percentage_cap=Decimal("5"),
        recipient_id="kitchen-pool",
    )


@pytest.fixture
def bar_rule(bank):
    return bank.rules.create_rule(
        name="bar",
        basis_type=BasisType.BAR_SALES,
        percentage=Decimal("2"),
        recipient_id="bar-pool",
    )


class TestComputePayouts:

    def test_cap_applied_and_posted(self, tip_outs, ledger, sales, tipped, kitchen_rule):
        result = tip_outs.compute_payouts("shift-1", sales, tipped)

        outcome = result.outcome_for(kitchen_rule.id)
        assert result.status is CloseoutStatus.COMPLETED
        assert outcome.status is RuleOutcomeStatus.POSTED
        assert outcome.amount_cents == 1000
        assert outcome.was_capped
        assert outcome.computation.raw_cents == 3600
        assert dict(outcome.debits) == {"alice": 600, "bob": 400}
        assert ledger.get_balance_cents("kitchen-pool") == 1000
        assert ledger.get_balance_cents("alice") == 12000 - 600
        assert ledger.get_balance_cents("bob") == 8000 - 400

    def test_entries_carry_rule_context(self, tip_outs, session, sales, tipped, kitchen_rule):
        tip_outs.compute_payouts("shift-1", sales, tipped)

        credit = session.execute(
            select(LedgerEntry).where(LedgerEntry.worker_id == "kitchen-pool")
        ).scalar_one()
        assert credit.rule_id == kitchen_rule.id
        assert credit.shift_id == "shift-1"
        assert credit.was_capped is True
        assert credit.memo == "kitchen"
        assert credit.source_reference == f"tipout:shift-1:{kitchen_rule.id}"
        assert credit.entry_metadata["raw_cents"] == 3600
        assert credit.entry_metadata["cap_cents"] == 1000

    def test_closeout_recorded(self, tip_outs, session, sales, tipped, kitchen_rule, deterministic_clock):
        tip_outs.compute_payouts("shift-1", sales, tipped)
        closeout = session.execute(
            select(ShiftCloseout).where(ShiftCloseout.shift_id == "shift-1")
        ).scalar_one()
        assert closeout.status == CloseoutStatus.COMPLETED
        assert closeout.shift_date == date(2024, 1, 1)
        assert closeout.closed_at == deterministic_clock.now()

    def test_server_tip_total_is_cap_base(self, tip_outs, sales, tipped, kitchen_rule):
        # The client snapshot claims more tips than the server recorded.
        inflated = ShiftSalesSnapshot(food_sales=sales.food_sales, tips_earned=Decimal("900.00"))
        result = tip_outs.compute_payouts("shift-1", inflated, tipped)
        assert result.outcome_for(kitchen_rule.id).amount_cents == 1000

    def test_recipient_not_debited(self, bank, tip_outs, ledger, sales, tipped):
        rule = bank.rules.create_rule(
            name="lead", basis_type=BasisType.TIPS_EARNED, percentage=Decimal("10"), recipient_id="alice"
        )
        result = tip_outs.compute_payouts("shift-1", sales, tipped)

        assert dict(result.outcome_for(rule.id).debits) == {"bob": 2000}
        assert ledger.get_balance_cents("alice") == 12000 + 2000

    def test_nothing_due(self, bank, tip_outs, tipped):
        rule = bank.rules.create_rule(
            name="bar", basis_type=BasisType.BAR_SALES, percentage=Decimal("2"), recipient_id="bar-pool"
        )
        result = tip_outs.compute_payouts("shift-1", ShiftSalesSnapshot(), tipped)
        assert result.outcome_for(rule.id).status is RuleOutcomeStatus.NOTHING_DUE
        assert result.status is CloseoutStatus.COMPLETED

    def test_no_tipped_workers_fails_rule(self, tip_outs, sales, bar_rule):
        result = tip_outs.compute_payouts("shift-1", sales, {"alice": Decimal("0")})
        assert result.outcome_for(bar_rule.id).status is RuleOutcomeStatus.FAILED
        assert result.status is CloseoutStatus.PARTIAL

    def test_expired_rule_skipped(self, bank, tip_outs, sales, tipped, kitchen_rule):
        old = bank.rules.create_rule(
            name="old-host",
            basis_type=BasisType.TOTAL_SALES,
            percentage=Decimal("1"),
            recipient_id="host",
            expires_at=date(2023, 12, 31),
        )
        result = tip_outs.compute_payouts("shift-1", sales, tipped)
        assert [s.rule_id for s in result.skipped] == [old.id]
        with pytest.raises(KeyError):
            result.outcome_for(old.id)


class TestPartialFailure:

    def test_failed_rule_posts_nothing(self, allocation, tip_outs, ledger, sales, kitchen_rule, bar_rule, deterministic_clock):
        now = deterministic_clock.now()
        allocation.allocate_for_payment("alice", Decimal("120.00"), now, "pay-a")
        allocation.allocate_for_payment("bob", Decimal("1.00"), now, "pay-b")

        result = tip_outs.compute_payouts("shift-1", sales, TIPS)

        kitchen = result.outcome_for(kitchen_rule.id)
        bar = result.outcome_for(bar_rule.id)
        assert result.status is CloseoutStatus.PARTIAL
        assert kitchen.status is RuleOutcomeStatus.FAILED
        assert bar.status is RuleOutcomeStatus.FAILED
        assert ledger.get_balance_cents("alice") == 12000
        assert ledger.get_balance_cents("kitchen-pool") == 0

    def test_rerun_retries_failed_rules_only(self, allocation, tip_outs, ledger, sales, kitchen_rule, bar_rule, deterministic_clock):
        now = deterministic_clock.now()
        allocation.allocate_for_payment("alice", Decimal("120.00"), now, "pay-a")
        allocation.allocate_for_payment("bob", Decimal("5.00"), now, "pay-b")

        first = tip_outs.compute_payouts("shift-1", sales, TIPS)
        assert first.outcome_for(bar_rule.id).status is RuleOutcomeStatus.POSTED
        assert first.outcome_for(kitchen_rule.id).status is RuleOutcomeStatus.FAILED

        allocation.allocate_for_payment("bob", Decimal("75.00"), now, "pay-c")
        second = tip_outs.compute_payouts("shift-1", sales, TIPS)

        assert second.status is CloseoutStatus.COMPLETED
        assert second.outcome_for(bar_rule.id).status is RuleOutcomeStatus.ALREADY_POSTED
        assert second.outcome_for(kitchen_rule.id).status is RuleOutcomeStatus.POSTED
        assert ledger.get_balance_cents("bar-pool") == 800


class TestIdempotency:

    def test_completed_shift_replays(self, tip_outs, ledger, sales, tipped, kitchen_rule):
        first = tip_outs.compute_payouts("shift-1", sales, tipped)
        second = tip_outs.compute_payouts("shift-1", sales, tipped)

        assert second.replayed
        outcome = second.outcome_for(kitchen_rule.id)
        assert outcome.status is RuleOutcomeStatus.ALREADY_POSTED
        assert outcome.amount_cents == first.outcome_for(kitchen_rule.id).amount_cents
        assert dict(outcome.debits) == {"alice": 600, "bob": 400}
        assert ledger.get_balance_cents("kitchen-pool") == 1000

    def test_rule_edit_after_close_does_not_repost(self, bank, tip_outs, ledger, sales, tipped, kitchen_rule):
        tip_outs.compute_payouts("shift-1", sales, tipped)
        bank.rules.update_rule(kitchen_rule.id, percentage=Decimal("1"))
        tip_outs.compute_payouts("shift-1", sales, tipped)
        assert ledger.get_balance_cents("kitchen-pool") == 1000


class TestClientFigures:

    def test_mismatch_logged_not_posted(self, tip_outs, ledger, sales, tipped, kitchen_rule, captured_logs):
        tip_outs.compute_payouts(
            "shift-1", sales, tipped, client_reported={str(kitchen_rule.id): Decimal("36.00")}
        )

        warnings = [r for r in captured_logs() if r["message"] == "tip_out_client_figure_mismatch"]
        assert len(warnings) == 1
        assert warnings[0]["client_cents"] == 3600
        assert warnings[0]["server_cents"] == 1000
        assert ledger.get_balance_cents("kitchen-pool") == 1000

    @pytest.mark.parametrize("claimed", [Decimal("0.005"), 36.0, "thirty-six"])
    def test_unreadable_figure_does_not_block_closeout(
        self, tip_outs, ledger, sales, tipped, kitchen_rule, captured_logs, claimed
    ):
        result = tip_outs.compute_payouts(
            "shift-1", sales, tipped, client_reported={str(kitchen_rule.id): claimed}
        )

        assert result.status is CloseoutStatus.COMPLETED
        assert ledger.get_balance_cents("kitchen-pool") == 1000
        warnings = [r for r in captured_logs() if r["message"] == "tip_out_client_figure_invalid"]
        assert len(warnings) == 1
        assert warnings[0]["level"] == "WARNING"
        assert warnings[0]["client_value"] == str(claimed)
        assert warnings[0]["server_cents"] == 1000

    def test_preview_posts_nothing(self, tip_outs, ledger, session, sales, tipped, kitchen_rule):
        evaluation = tip_outs.preview(sales, tipped)
        assert evaluation.total_cents == 1000
        assert ledger.get_balance_cents("kitchen-pool") == 0
        assert session.execute(select(ShiftCloseout)).first() is None
