"""
Tip bank settings schema.

Per-location knobs, parsed from YAML by the loader. Frozen: a settings
object is read once per dispatcher and shared by every handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from tip_kernel.domain.enums import SplitMode
from tip_kernel.domain.splits import DEFAULT_TOLERANCE


class ChargebackPolicy(str, Enum):
    """Who bears a reversed card payment's tip."""

    BUSINESS_ABSORBS = "BUSINESS_ABSORBS"
    EMPLOYEE_CHARGEBACK = "EMPLOYEE_CHARGEBACK"


@dataclass(frozen=True)
class TipBankSettings:
    location_id: str = "default"
    currency: str = "USD"
    allow_negative_balances: bool = False
    split_tolerance: Decimal = DEFAULT_TOLERANCE
    chargeback_policy: ChargebackPolicy = ChargebackPolicy.BUSINESS_ABSORBS
    default_split_mode: SplitMode = SplitMode.EQUAL
    checksum: str = ""
