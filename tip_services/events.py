"""
Events consumed from the order/payment subsystem.

Immutable; ``event_id`` doubles as the correlation id on every log line
the handler emits.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from tip_kernel.domain.dtos import ShiftSalesSnapshot


def _event_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class PaymentCaptured:
    worker_id: str
    amount: Decimal
    occurred_at: datetime
    source_reference: str
    fee_amount: Decimal | None = None
    co_owners: Mapping[str, Decimal] | None = None
    event_id: str = field(default_factory=_event_id)


@dataclass(frozen=True)
class ShiftClosed:
    shift_id: str
    sales: ShiftSalesSnapshot
    tips_earned_by_worker: Mapping[str, Decimal]
    shift_date: date | None = None
    client_reported: Mapping[str, Decimal] | None = None
    event_id: str = field(default_factory=_event_id)


@dataclass(frozen=True)
class ClockedOut:
    worker_id: str
    at: datetime
    event_id: str = field(default_factory=_event_id)


@dataclass(frozen=True)
class PaymentReversed:
    """A captured card payment was charged back."""

    source_reference: str
    occurred_at: datetime | None = None
    event_id: str = field(default_factory=_event_id)


TipEvent = PaymentCaptured | ShiftClosed | ClockedOut | PaymentReversed
