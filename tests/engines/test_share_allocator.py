"""
Tests for the share allocation engine.

Shares are floored to the minor unit and the leftover goes to a single
recipient, so the lines always sum to the input.
"""

from decimal import Decimal

import pytest

from tip_engines.allocation import ShareAllocator, prorate


@pytest.fixture
def allocator():
    return ShareAllocator()


class TestShareAllocator:

    def test_sixty_forty(self, allocator):
        result = allocator.allocate(
            total_cents=1000, split_map={"a": Decimal("60"), "b": Decimal("40")}, owner_id="a"
        )
        assert result.amounts() == {"a": 600, "b": 400}
        assert result.remainder_cents == 0

    def test_three_way_leftover_to_owner(self, allocator):
        split = {"a": Decimal("33.3334"), "b": Decimal("33.3333"), "c": Decimal("33.3333")}
        result = allocator.allocate(total_cents=1000, split_map=split, owner_id="a")
        assert result.amounts() == {"a": 334, "b": 333, "c": 333}
        assert result.remainder_recipient == "a"
        assert [line.received_remainder for line in result.lines] == [True, False, False]

    def test_owner_not_in_map_lowest_id_gets_leftover(self, allocator):
        split = {"b": Decimal("50"), "c": Decimal("50")}
        result = allocator.allocate(total_cents=101, split_map=split, owner_id="a")
        assert result.amounts() == {"b": 51, "c": 50}

    def test_zero_percentage_members_are_zero(self, allocator):
        split = {"a": Decimal("100"), "b": Decimal("0")}
        result = allocator.allocate(total_cents=999, split_map=split, owner_id="a")
        assert result.amounts() == {"a": 999}
        assert [line.amount_cents for line in result.lines] == [999, 0]

    def test_single_cent(self, allocator):
        split = {"a": Decimal("50"), "b": Decimal("50")}
        result = allocator.allocate(total_cents=1, split_map=split, owner_id="b")
        assert result.amounts() == {"b": 1}

    def test_lines_sorted_by_worker(self, allocator):
        split = {"z": Decimal("50"), "m": Decimal("50")}
        result = allocator.allocate(total_cents=100, split_map=split, owner_id="z")
        assert [line.worker_id for line in result.lines] == ["m", "z"]

    def test_over_hundred_rejected(self, allocator):
        with pytest.raises(ValueError):
            allocator.allocate(total_cents=100, split_map={"a": Decimal("60"), "b": Decimal("60")}, owner_id="a")

    def test_empty_map_rejected(self, allocator):
        with pytest.raises(ValueError):
            allocator.allocate(total_cents=100, split_map={}, owner_id=None)

    def test_emits_engine_trace(self, allocator, captured_logs):
        allocator.allocate(total_cents=100, split_map={"a": Decimal("100")}, owner_id="a")
        traces = [r for r in captured_logs() if r["message"] == "TIP_ENGINE_TRACE"]
        assert traces and traces[-1]["engine_name"] == "share_allocation"
        assert len(traces[-1]["input_fingerprint"]) == 16


class TestProrate:

    def test_proportional(self):
        assert prorate(100, {"a": 300, "b": 100}, "a") == {"a": 75, "b": 25}

    def test_leftover_to_recipient(self):
        assert prorate(10, {"a": 1, "b": 1, "c": 1}, "b") == {"a": 3, "b": 4, "c": 3}

    def test_zero_weights_all_to_recipient(self):
        assert prorate(50, {"a": 0, "b": 0}, "b") == {"a": 0, "b": 50}

    def test_recipient_must_have_weight(self):
        with pytest.raises(ValueError):
            prorate(10, {"a": 1}, "b")
