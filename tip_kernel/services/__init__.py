"""Services for the tip kernel (write side)."""

from tip_kernel.services.group_lifecycle import (
    ClockOutOutcome,
    GroupLifecycleService,
    GroupStarted,
    MembershipChange,
)
from tip_kernel.services.ledger_store import LedgerStore
from tip_kernel.services.review_queue import ReviewQueue
from tip_kernel.services.segment_timeline import SegmentTimeline, SegmentTransition
from tip_kernel.services.tip_out_rule_service import TipOutRuleService

__all__ = [
    "ClockOutOutcome",
    "GroupLifecycleService",
    "GroupStarted",
    "LedgerStore",
    "MembershipChange",
    "ReviewQueue",
    "SegmentTimeline",
    "SegmentTransition",
    "TipOutRuleService",
]
