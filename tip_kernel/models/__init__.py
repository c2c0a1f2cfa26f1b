"""ORM models. Importing this package registers every table on Base.metadata."""

from tip_kernel.models.adjustment import TipAdjustment
from tip_kernel.models.ledger import LedgerEntry, WorkerBalance
from tip_kernel.models.review import ReviewFlag
from tip_kernel.models.shift_closeout import ShiftCloseout
from tip_kernel.models.tip_group import (
    ActiveWorkerGroup,
    GroupMembership,
    GroupSegment,
    TipGroup,
)
from tip_kernel.models.tip_out_rule import TipOutRule
from tip_kernel.models.tip_transaction import TipTransaction

__all__ = [
    "ActiveWorkerGroup",
    "GroupMembership",
    "GroupSegment",
    "LedgerEntry",
    "ReviewFlag",
    "ShiftCloseout",
    "TipAdjustment",
    "TipGroup",
    "TipOutRule",
    "TipTransaction",
    "WorkerBalance",
]
