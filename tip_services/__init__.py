"""
tip_services -- Stateful orchestration over the tip kernel and engines.

Architecture position:
    Services -- may import tip_kernel, tip_engines and tip_config. Nothing
    below this package imports it.

Usage:
    from tip_services import TipBank, TipEventDispatcher
    from tip_services.events import PaymentCaptured
"""

from tip_services.allocation_pipeline import AllocationLine, AllocationPipeline, AllocationPlan, AllocationResult
from tip_services.chargeback_service import ChargebackLine, ChargebackResult, ChargebackService
from tip_services.event_dispatcher import TipEventDispatcher
from tip_services.events import ClockedOut, PaymentCaptured, PaymentReversed, ShiftClosed
from tip_services.recalculation_service import RecalculationLine, RecalculationResult, RecalculationService
from tip_services.tip_bank import TipBank
from tip_services.tip_out_service import RuleOutcome, RuleOutcomeStatus, TipOutResult, TipOutService
from tip_services.transfer_service import PayoutResult, TransferResult, TransferService

__all__ = [
    "AllocationLine",
    "AllocationPipeline",
    "AllocationPlan",
    "AllocationResult",
    "ChargebackLine",
    "ChargebackResult",
    "ChargebackService",
    "ClockedOut",
    "PaymentCaptured",
    "PaymentReversed",
    "RecalculationLine",
    "RecalculationResult",
    "RecalculationService",
    "RuleOutcome",
    "RuleOutcomeStatus",
    "ShiftClosed",
    "TipBank",
    "TipEventDispatcher",
    "TipOutResult",
    "TipOutService",
    "TransferResult",
    "TransferService",
]
