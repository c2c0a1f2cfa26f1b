"""Closed vocabularies shared by models, services and engines."""

from enum import Enum


class EntryDirection(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"

    @property
    def sign(self) -> int:
        return 1 if self is EntryDirection.CREDIT else -1


class SourceType(str, Enum):
    """What produced a ledger entry. Part of the idempotency key."""

    PAYMENT_ALLOCATION = "PAYMENT_ALLOCATION"
    MANUAL_TRANSFER = "MANUAL_TRANSFER"
    PAYOUT = "PAYOUT"
    ADJUSTMENT = "ADJUSTMENT"
    FEE_DEDUCTION = "FEE_DEDUCTION"
    TIP_OUT = "TIP_OUT"


class SplitMode(str, Enum):
    EQUAL = "EQUAL"
    CUSTOM = "CUSTOM"
    ROLE_WEIGHTED = "ROLE_WEIGHTED"
    HOURS_WEIGHTED = "HOURS_WEIGHTED"


class GroupStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LEFT = "LEFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    DECLINED = "DECLINED"


class BasisType(str, Enum):
    """Aggregate a tip-out percentage is computed against."""

    TIPS_EARNED = "TIPS_EARNED"
    FOOD_SALES = "FOOD_SALES"
    BAR_SALES = "BAR_SALES"
    TOTAL_SALES = "TOTAL_SALES"
    NET_SALES = "NET_SALES"


class PostStatus(str, Enum):
    POSTED = "POSTED"
    ALREADY_POSTED = "ALREADY_POSTED"


class TipTransactionStatus(str, Enum):
    ALLOCATED = "ALLOCATED"
    REVERSED = "REVERSED"


class ReviewFlagKind(str, Enum):
    SEGMENT_NOT_FOUND = "SEGMENT_NOT_FOUND"
    CHARGEBACK_UNCOLLECTED = "CHARGEBACK_UNCOLLECTED"


class CloseoutStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"


class PayoutMethod(str, Enum):
    CASH = "CASH"
    PAYROLL = "PAYROLL"


class AdjustmentKind(str, Enum):
    """Why a correction was posted; recorded on every TipAdjustment."""

    GROUP_MEMBERSHIP = "GROUP_MEMBERSHIP"
    OWNERSHIP_SPLIT = "OWNERSHIP_SPLIT"
    MANUAL = "MANUAL"
