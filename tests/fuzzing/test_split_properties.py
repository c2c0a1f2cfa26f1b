"""
Property-based tests for the money-splitting primitives.

Invariants checked over generated inputs:
- Every split map sums to exactly 100 with no negative share
- Share allocation and proration conserve every cent
- A capped tip-out never exceeds its cap or goes negative
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from tip_engines.allocation import ShareAllocator, prorate
from tip_engines.tip_out import TipOutEvaluator, TipOutRuleSpec
from tip_kernel.domain.dtos import ShiftSalesSnapshot
from tip_kernel.domain.enums import BasisType, SplitMode
from tip_kernel.domain.splits import (
    HUNDRED,
    SPLIT_QUANTUM,
    MemberSnapshot,
    SplitCalculator,
    equal_split,
    split_total,
    weighted_split,
)

pytestmark = pytest.mark.slow

NOW = datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)

worker_ids = st.lists(
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=8),
    min_size=1,
    max_size=25,
    unique=True,
)


@st.composite
def weighted_members(draw):
    ids = draw(worker_ids)
    weights = {wid: Decimal(draw(st.integers(min_value=0, max_value=10_000))) for wid in ids}
    owner = draw(st.one_of(st.none(), st.sampled_from(ids)))
    return weights, owner


@st.composite
def basis_point_partition(draw):
    """Percentages over distinct workers that sum to exactly 100."""
    ids = draw(worker_ids)
    cuts = sorted(draw(st.lists(st.integers(0, 10_000), min_size=len(ids) - 1, max_size=len(ids) - 1)))
    bounds = [0, *cuts, 10_000]
    return {wid: Decimal(bounds[i + 1] - bounds[i]) / 100 for i, wid in enumerate(ids)}


def _assert_valid_split(split):
    assert split_total(split) == HUNDRED
    for pct in split.values():
        assert pct >= 0
        assert pct == pct.quantize(SPLIT_QUANTUM)


class TestSplitProperties:

    @given(ids=worker_ids, data=st.data())
    def test_equal_split(self, ids, data):
        owner = data.draw(st.one_of(st.none(), st.sampled_from(ids)))
        split = equal_split(ids, owner)
        _assert_valid_split(split)
        assert set(split) == set(ids)
        recipient = owner if owner is not None else min(ids)
        others = [pct for wid, pct in split.items() if wid != recipient]
        assert all(pct <= split[recipient] for pct in others)

    @given(weighted_members())
    def test_weighted_split(self, case):
        weights, owner = case
        _assert_valid_split(weighted_split(weights, owner))

    @given(case=basis_point_partition(), data=st.data())
    def test_custom_split_passes_through(self, case, data):
        owner = data.draw(st.sampled_from(sorted(case)))
        members = [MemberSnapshot(worker_id=wid) for wid in case]
        split = SplitCalculator().compute(SplitMode.CUSTOM, members, owner, NOW, custom=case)
        assert split == {wid: case[wid] for wid in sorted(case)}

    @given(ids=worker_ids, minutes=st.lists(st.integers(0, 720), min_size=25, max_size=25))
    def test_hours_weighted_split(self, ids, minutes):
        members = [
            MemberSnapshot(worker_id=wid, joined_at=NOW - timedelta(minutes=minutes[i]))
            for i, wid in enumerate(ids)
        ]
        split = SplitCalculator().compute(SplitMode.HOURS_WEIGHTED, members, ids[0], NOW)
        _assert_valid_split(split)

    @given(case=basis_point_partition(), data=st.data())
    def test_rescale_after_departure(self, case, data):
        ids = sorted(case)
        if len(ids) < 2:
            return
        leaver = data.draw(st.sampled_from(ids))
        remaining = [MemberSnapshot(worker_id=wid) for wid in ids if wid != leaver]
        split = SplitCalculator().compute(
            SplitMode.CUSTOM, remaining, ids[0], NOW, previous=case
        )
        _assert_valid_split(split)
        assert leaver not in split


class TestConservation:

    @settings(max_examples=200)
    @given(case=weighted_members(), total_cents=st.integers(0, 10_000_000))
    def test_share_allocation_sums_to_total(self, case, total_cents):
        weights, owner = case
        split = weighted_split(weights, owner)
        allocation = ShareAllocator().allocate(total_cents=total_cents, split_map=split, owner_id=owner)

        assert sum(line.amount_cents for line in allocation.lines) == total_cents
        assert all(line.amount_cents >= 0 for line in allocation.lines)
        assert 0 <= allocation.remainder_cents < len(split)

    @given(
        weights=st.dictionaries(
            st.sampled_from("abcdefgh"), st.integers(0, 100_000), min_size=1
        ),
        total_cents=st.integers(0, 1_000_000),
        data=st.data(),
    )
    def test_prorate_sums_to_total(self, weights, total_cents, data):
        recipient = data.draw(st.sampled_from(sorted(weights)))
        shares = prorate(total_cents, weights, recipient)
        assert sum(shares.values()) == total_cents
        assert all(v >= 0 for v in shares.values())
        assert set(shares) == set(weights)


class TestTipOutCap:

    @given(
        basis=st.integers(0, 10_000_000),
        tips=st.integers(0, 1_000_000),
        pct=st.integers(1, 10_000),
        cap=st.integers(1, 10_000),
    )
    def test_capped_amount_bounded(self, basis, tips, pct, cap):
        rule = TipOutRuleSpec(
            rule_id=uuid4(),
            name="kitchen",
            basis_type=BasisType.FOOD_SALES,
            percentage=Decimal(pct) / 100,
            recipient_id="kitchen-pool",
            max_percentage_cap=Decimal(cap) / 100,
        )
        sales = ShiftSalesSnapshot(
            food_sales=Decimal(basis) / 100,
            tips_earned=Decimal(tips) / 100,
        )
        result = TipOutEvaluator().compute(rule, sales)

        assert 0 <= result.amount_cents <= result.raw_cents
        assert result.amount_cents <= result.cap_cents
        assert result.was_capped == (result.raw_cents > result.cap_cents)
