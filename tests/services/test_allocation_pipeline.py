"""
Tests for AllocationPipeline: solo credits, segment-based group splits,
shared ownership, fee deduction and idempotent redelivery.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from tip_kernel.domain.enums import ReviewFlagKind, SourceType, SplitMode, TipTransactionStatus
from tip_kernel.exceptions import InvalidAmountError, InvalidSplitError
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.models.review import ReviewFlag
from tip_kernel.models.tip_transaction import TipTransaction


@pytest.fixture
def t0(deterministic_clock):
    return deterministic_clock.now()


@pytest.fixture
def boundary(t0):
    """Instant carol joins the alice+bob group in ``three_way_group``."""
    return t0 + timedelta(minutes=10)


@pytest.fixture
def three_way_group(lifecycle, boundary):
    group_id = lifecycle.start_group("alice", ["bob"]).group.id
    lifecycle.add_member(group_id, "carol", at=boundary)
    return group_id


class TestSoloAllocation:

    def test_direct_credit(self, allocation, ledger, t0):
        result = allocation.allocate_for_payment("alice", Decimal("7.25"), t0, "order-1:pay-1")

        assert result.credited_by_worker == {"alice": 725}
        assert result.credits[0].source_reference == "order-1:pay-1"
        assert result.credits[0].group_id is None
        assert not result.flagged
        assert ledger.get_balance_cents("alice") == 725

    def test_transaction_recorded(self, allocation, session, t0):
        result = allocation.allocate_for_payment("alice", Decimal("5.00"), t0, "order-1:pay-1")
        txn = session.get(TipTransaction, result.tip_transaction_id)
        assert txn.status == TipTransactionStatus.ALLOCATED
        assert txn.amount_cents == 500
        assert txn.group_id is None

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00"), Decimal("1.005")])
    def test_invalid_amount(self, allocation, ledger, t0, amount):
        with pytest.raises(InvalidAmountError):
            allocation.allocate_for_payment("alice", amount, t0, "order-1:pay-1")
        assert ledger.get_balance_cents("alice") == 0

    def test_float_amount_rejected(self, allocation, t0):
        with pytest.raises(InvalidAmountError):
            allocation.allocate_for_payment("alice", 5.0, t0, "order-1:pay-1")


class TestGroupAllocation:

    def test_custom_sixty_forty(self, lifecycle, allocation, ledger, t0):
        group_id = lifecycle.start_group(
            "alice",
            ["bob"],
            SplitMode.CUSTOM,
            custom_split={"alice": Decimal("60"), "bob": Decimal("40")},
        ).group.id

        result = allocation.allocate_for_payment("bob", Decimal("10.00"), t0 + timedelta(minutes=1), "order-2:pay-1")

        assert result.credited_by_worker == {"alice": 600, "bob": 400}
        assert {c.source_reference for c in result.credits} == {"order-2:pay-1:alice", "order-2:pay-1:bob"}
        assert all(c.group_id == group_id for c in result.credits)
        assert ledger.get_balance_cents("alice") == 600

    def test_payment_before_boundary_uses_old_segment(self, three_way_group, allocation, boundary):
        result = allocation.allocate_for_payment(
            "alice", Decimal("10.00"), boundary - timedelta(seconds=1), "order-3:pay-1"
        )
        assert result.credited_by_worker == {"alice": 500, "bob": 500}

    def test_payment_after_boundary_uses_new_segment(self, three_way_group, allocation, boundary):
        result = allocation.allocate_for_payment(
            "alice", Decimal("10.00"), boundary + timedelta(seconds=1), "order-3:pay-2"
        )
        assert result.credited_by_worker == {"alice": 334, "bob": 333, "carol": 333}

    def test_payment_at_boundary_uses_new_segment(self, three_way_group, allocation, boundary):
        result = allocation.allocate_for_payment("bob", Decimal("10.00"), boundary, "order-3:pay-3")
        assert set(result.credited_by_worker) == {"alice", "bob", "carol"}

    def test_rounding_leftover_goes_to_current_owner(self, three_way_group, lifecycle, allocation, boundary):
        lifecycle.transfer_ownership(three_way_group, "carol")
        result = allocation.allocate_for_payment(
            "alice", Decimal("10.00"), boundary + timedelta(seconds=1), "order-3:pay-4"
        )
        assert result.credited_by_worker == {"alice": 333, "bob": 333, "carol": 334}

    def test_late_event_for_departed_member(self, lifecycle, allocation, t0):
        group_id = lifecycle.start_group("alice", ["bob"]).group.id
        lifecycle.remove_member(group_id, "bob", at=t0 + timedelta(minutes=30))

        # Delivered after bob left, but occurred while he was a member
        result = allocation.allocate_for_payment("bob", Decimal("4.00"), t0 + timedelta(minutes=5), "order-4:pay-1")

        assert result.credited_by_worker == {"alice": 200, "bob": 200}

    def test_member_after_leaving_is_solo(self, lifecycle, allocation, t0):
        group_id = lifecycle.start_group("alice", ["bob"]).group.id
        lifecycle.remove_member(group_id, "bob", at=t0 + timedelta(minutes=30))

        result = allocation.allocate_for_payment("bob", Decimal("4.00"), t0 + timedelta(minutes=31), "order-4:pay-2")

        assert result.credited_by_worker == {"bob": 400}

    def test_transaction_linked_to_segment(self, three_way_group, allocation, timeline, session, boundary):
        at = boundary + timedelta(seconds=1)
        result = allocation.allocate_for_payment("alice", Decimal("3.00"), at, "order-5:pay-1")
        txn = session.get(TipTransaction, result.tip_transaction_id)
        assert txn.group_id == three_way_group
        assert txn.segment_id == timeline.find_segment_at(three_way_group, at).id

    def test_credits_always_sum_to_payment(self, three_way_group, allocation, boundary):
        for i, cents in enumerate([1, 2, 7, 100, 101, 9999]):
            amount = Decimal(cents) / 100
            result = allocation.allocate_for_payment(
                "bob", amount, boundary + timedelta(seconds=i), f"order-6:pay-{i}"
            )
            assert sum(result.credited_by_worker.values()) == cents


class TestFallback:

    def test_payment_before_group_started_is_flagged(self, lifecycle, allocation, session, ledger, t0):
        group_id = lifecycle.start_group("alice", ["bob"]).group.id

        result = allocation.allocate_for_payment("alice", Decimal("6.00"), t0 - timedelta(minutes=5), "order-7:pay-1")

        assert result.credited_by_worker == {"alice": 600}
        assert result.flagged
        flag = session.get(ReviewFlag, result.review_flag_ids[0])
        assert flag.kind == ReviewFlagKind.SEGMENT_NOT_FOUND
        assert flag.worker_id == "alice"
        assert flag.amount_cents == 600
        assert ledger.get_balance_cents("bob") == 0
        assert session.get(TipTransaction, result.tip_transaction_id).group_id is None
        assert str(group_id) in flag.detail

    def test_membership_changed_after_routing(self, lifecycle, allocation, session, ledger, t0, monkeypatch):
        group_id = lifecycle.start_group("alice", ["bob"]).group.id
        lifecycle.remove_member(group_id, "bob", at=t0 + timedelta(minutes=10))
        # bob's membership was read just before his removal committed
        monkeypatch.setattr(allocation.groups, "group_at", lambda worker_id, instant: group_id)

        result = allocation.allocate_for_payment("bob", Decimal("4.00"), t0 + timedelta(minutes=20), "order-7:pay-2")

        assert result.credited_by_worker == {"bob": 400}
        assert ledger.get_balance_cents("alice") == 0
        flag = session.get(ReviewFlag, result.review_flag_ids[0])
        assert flag.kind == ReviewFlagKind.SEGMENT_NOT_FOUND
        assert flag.worker_id == "bob"
        assert flag.group_id == group_id
        assert session.get(TipTransaction, result.tip_transaction_id).group_id is None


class TestSharedOwnership:

    def test_each_slice_routed_independently(self, lifecycle, allocation, t0):
        lifecycle.start_group("alice", ["carol"])

        result = allocation.allocate_for_payment(
            "alice",
            Decimal("10.00"),
            t0 + timedelta(minutes=1),
            "order-8:pay-1",
            co_owners={"alice": Decimal("70"), "bob": Decimal("30")},
        )

        assert result.credited_by_worker == {"alice": 350, "carol": 350, "bob": 300}
        refs = {c.worker_id: c.source_reference for c in result.credits}
        assert refs["bob"] == "order-8:pay-1:bob"
        assert refs["carol"] == "order-8:pay-1:alice:carol"

    def test_first_listed_owner_absorbs_rounding(self, allocation, t0):
        result = allocation.allocate_for_payment(
            "bob",
            Decimal("0.01"),
            t0,
            "order-8:pay-2",
            co_owners={"bob": Decimal("50"), "alice": Decimal("50")},
        )
        assert result.credited_by_worker == {"bob": 1}

    def test_payer_must_be_co_owner(self, allocation, t0):
        with pytest.raises(InvalidSplitError):
            allocation.allocate_for_payment(
                "zed", Decimal("1.00"), t0, "order-8:pay-3", co_owners={"alice": Decimal("100")}
            )

    def test_co_owner_percentages_must_sum(self, allocation, t0):
        with pytest.raises(InvalidSplitError):
            allocation.allocate_for_payment(
                "alice",
                Decimal("1.00"),
                t0,
                "order-8:pay-4",
                co_owners={"alice": Decimal("50"), "bob": Decimal("40")},
            )


class TestFees:

    def test_fee_prorated_over_credits(self, three_way_group, allocation, ledger, boundary):
        result = allocation.allocate_for_payment(
            "alice",
            Decimal("10.00"),
            boundary + timedelta(seconds=1),
            "order-9:pay-1",
            fee_amount=Decimal("1.00"),
        )

        assert {f.worker_id: f.amount_cents for f in result.fees} == {"alice": 34, "bob": 33, "carol": 33}
        assert result.net_cents("alice") == 300
        assert ledger.get_balance_cents("bob") == 300
        assert all(f.source_reference.endswith(":fee") for f in result.fees)

    def test_solo_fee(self, allocation, ledger, t0):
        result = allocation.allocate_for_payment(
            "alice", Decimal("5.00"), t0, "order-9:pay-2", fee_amount=Decimal("0.15")
        )
        assert result.fee_cents == 15
        assert ledger.get_balance_cents("alice") == 485

    def test_fee_above_amount_rejected(self, allocation, t0):
        with pytest.raises(InvalidAmountError):
            allocation.allocate_for_payment(
                "alice", Decimal("1.00"), t0, "order-9:pay-3", fee_amount=Decimal("1.01")
            )

    def test_fee_entries_are_fee_deductions(self, allocation, session, t0):
        allocation.allocate_for_payment("alice", Decimal("2.00"), t0, "order-9:pay-4", fee_amount=Decimal("0.10"))
        types = session.execute(
            select(LedgerEntry.source_type).where(LedgerEntry.worker_id == "alice")
        ).scalars().all()
        assert sorted(types) == [SourceType.FEE_DEDUCTION.value, SourceType.PAYMENT_ALLOCATION.value]


class TestIdempotency:

    def test_redelivery_returns_first_allocation(self, three_way_group, allocation, ledger, boundary):
        at = boundary + timedelta(seconds=1)
        first = allocation.allocate_for_payment("alice", Decimal("10.00"), at, "order-10:pay-1", fee_amount=Decimal("0.30"))
        second = allocation.allocate_for_payment("alice", Decimal("10.00"), at, "order-10:pay-1", fee_amount=Decimal("0.30"))

        assert second.duplicate and not first.duplicate
        assert second.tip_transaction_id == first.tip_transaction_id
        assert second.credited_by_worker == first.credited_by_worker
        assert {f.entry_id for f in second.fees} == {f.entry_id for f in first.fees}
        assert ledger.get_balance_cents("alice") == 334 - 12

    def test_redelivery_after_membership_change_keeps_original_split(
        self, three_way_group, lifecycle, allocation, ledger, boundary
    ):
        at = boundary + timedelta(seconds=1)
        allocation.allocate_for_payment("alice", Decimal("10.00"), at, "order-10:pay-2")
        lifecycle.remove_member(three_way_group, "carol", at=boundary + timedelta(minutes=1))

        again = allocation.allocate_for_payment("alice", Decimal("10.00"), at, "order-10:pay-2")

        assert again.duplicate
        assert again.credited_by_worker == {"alice": 334, "bob": 333, "carol": 333}
        assert ledger.get_balance_cents("carol") == 333

    def test_redelivered_flag_reported(self, lifecycle, allocation, t0):
        lifecycle.start_group("alice")
        first = allocation.allocate_for_payment("alice", Decimal("1.00"), t0 - timedelta(seconds=1), "order-10:pay-3")
        again = allocation.allocate_for_payment("alice", Decimal("1.00"), t0 - timedelta(seconds=1), "order-10:pay-3")
        assert again.review_flag_ids == first.review_flag_ids

    def test_redelivery_reports_only_its_own_flags(self, lifecycle, allocation, t0):
        lifecycle.start_group("alice")
        before = t0 - timedelta(seconds=1)
        first = allocation.allocate_for_payment("alice", Decimal("1.00"), before, "order-12")
        allocation.allocate_for_payment("alice", Decimal("2.00"), before, "order-12:retry")
        allocation.allocate_for_payment("alice", Decimal("3.00"), before, "order_12")

        again = allocation.allocate_for_payment("alice", Decimal("1.00"), before, "order-12")

        assert again.duplicate
        assert len(again.review_flag_ids) == 1
        assert again.review_flag_ids == first.review_flag_ids
