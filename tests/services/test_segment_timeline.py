"""
Tests for SegmentTimeline: half-open segment lookup, partition integrity,
and the immutability of closed segments.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from tip_kernel.domain.splits import MemberSnapshot
from tip_kernel.exceptions import (
    ImmutabilityViolationError,
    SegmentBoundaryError,
    SegmentNotFoundError,
    TimelineError,
)
from tip_kernel.models.tip_group import GroupSegment


@pytest.fixture
def t0(deterministic_clock):
    return deterministic_clock.now()


@pytest.fixture
def group_id(lifecycle, t0):
    """alice+bob from t0, carol joins at t0+60s, bob leaves at t0+120s."""
    gid = lifecycle.start_group("alice", ["bob"]).group.id
    lifecycle.add_member(gid, "carol", at=t0 + timedelta(seconds=60))
    lifecycle.remove_member(gid, "bob", at=t0 + timedelta(seconds=120))
    return gid


class TestFindSegmentAt:

    def test_interior_instant(self, timeline, group_id, t0):
        seg = timeline.find_segment_at(group_id, t0 + timedelta(seconds=30))
        assert seg.seq == 1
        assert set(seg.split_map) == {"alice", "bob"}

    def test_boundary_belongs_to_later_segment(self, timeline, group_id, t0):
        assert timeline.find_segment_at(group_id, t0 + timedelta(seconds=60)).seq == 2

    def test_just_before_boundary(self, timeline, group_id, t0):
        seg = timeline.find_segment_at(group_id, t0 + timedelta(seconds=59, microseconds=999000))
        assert seg.seq == 1

    def test_group_start_is_inclusive(self, timeline, group_id, t0):
        assert timeline.find_segment_at(group_id, t0).seq == 1

    def test_open_segment_covers_future(self, timeline, group_id, t0):
        seg = timeline.find_segment_at(group_id, t0 + timedelta(days=1))
        assert seg.seq == 3 and seg.is_open

    def test_before_group_start(self, timeline, group_id, t0):
        with pytest.raises(SegmentNotFoundError):
            timeline.find_segment_at(group_id, t0 - timedelta(seconds=1))

    def test_after_close(self, lifecycle, timeline, group_id, t0):
        lifecycle.close_group(group_id, at=t0 + timedelta(minutes=5))
        with pytest.raises(SegmentNotFoundError):
            timeline.find_segment_at(group_id, t0 + timedelta(minutes=5))
        assert timeline.find_segment_at(group_id, t0 + timedelta(minutes=4)).seq == 3


class TestPartition:

    def test_segments_tile_lifetime(self, lifecycle, timeline, group_id, t0):
        group = lifecycle.lock_group(group_id)
        assert timeline.verify_partition(group, now=t0 + timedelta(minutes=10)) == []

        segments = timeline.segments_for(group_id)
        assert [s.seq for s in segments] == [1, 2, 3]
        assert segments[0].end_time == segments[1].start_time
        assert segments[1].end_time == segments[2].start_time
        for seg in segments:
            assert sum(seg.split_map.values()) == Decimal("100")

    def test_closed_group_partition(self, lifecycle, timeline, group_id, t0):
        lifecycle.close_group(group_id, at=t0 + timedelta(minutes=5))
        assert timeline.verify_partition(lifecycle.lock_group(group_id)) == []

    def test_transition_before_open_segment_rejected(self, lifecycle, timeline, group_id, t0):
        group = lifecycle.lock_group(group_id)
        with pytest.raises(SegmentBoundaryError):
            timeline.close_and_reopen(
                group, t0 + timedelta(seconds=90), [MemberSnapshot("alice"), MemberSnapshot("carol")]
            )
        assert timeline.open_segment(group_id).seq == 3

    def test_zero_length_segment_allowed(self, lifecycle, timeline, group_id, t0):
        at = t0 + timedelta(seconds=120)
        lifecycle.add_member(group_id, "dave", at=at)
        seg = timeline.find_segment_at(group_id, at)
        assert seg.seq == 4
        assert timeline.verify_partition(lifecycle.lock_group(group_id)) == []

    def test_first_segment_only_once(self, lifecycle, timeline, group_id):
        group = lifecycle.lock_group(group_id)
        with pytest.raises(TimelineError):
            timeline.open_first_segment(group, [MemberSnapshot("alice")])


class TestSegmentImmutability:

    def test_closed_segment_end_time_fixed(self, session, group_id):
        seg = session.execute(
            select(GroupSegment).where(GroupSegment.group_id == group_id, GroupSegment.seq == 1)
        ).scalar_one()
        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                seg.end_time = seg.end_time + timedelta(seconds=1)
                session.flush()

    def test_split_map_fixed(self, session, group_id):
        seg = session.execute(
            select(GroupSegment).where(GroupSegment.group_id == group_id, GroupSegment.seq == 3)
        ).scalar_one()
        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                seg.split_map = {"alice": "100"}
                session.flush()
