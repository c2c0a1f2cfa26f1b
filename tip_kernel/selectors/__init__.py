"""Selectors for the tip kernel (read side)."""

from tip_kernel.selectors.adjustment_selector import AdjustmentInfo, AdjustmentPage, AdjustmentSelector
from tip_kernel.selectors.group_selector import (
    CheckoutBreakdown,
    GroupSelector,
    ReviewFlagInfo,
    SegmentEarnings,
    SegmentShare,
)
from tip_kernel.selectors.ledger_selector import BalanceCheck, LedgerEntryInfo, LedgerSelector

__all__ = [
    "AdjustmentInfo",
    "AdjustmentPage",
    "AdjustmentSelector",
    "BalanceCheck",
    "CheckoutBreakdown",
    "GroupSelector",
    "LedgerEntryInfo",
    "LedgerSelector",
    "ReviewFlagInfo",
    "SegmentEarnings",
    "SegmentShare",
]
