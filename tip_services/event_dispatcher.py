"""
tip_services.event_dispatcher -- Runs each consumed event in its own transaction.

Responsibility:
    Maps an event type to a handler, opens a session scope, builds a
    TipBank over it, runs the handler and commits. The handler's typed
    result is returned to the caller.

Architecture position:
    Services -- the outermost layer of this package. The only place that
    owns a transaction boundary.

Invariants enforced:
    - One event, one transaction: a handler that raises leaves nothing
      behind (session_scope rolls back).
    - Every log line emitted while handling carries the event's
      correlation id (LogContext).
    - Handlers are registered by event type; new event types are added
      with ``register`` without touching ``dispatch``.

Failure modes:
    - TypeError for an event type with no registered handler.
    - Any handler exception propagates after rollback. Recoverable
      conditions (duplicates, missing segments) are not exceptions; they
      arrive as fields on the returned result.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from tip_config.schema import TipBankSettings
from tip_kernel.db.engine import session_scope
from tip_kernel.domain.clock import Clock, SystemClock
from tip_kernel.logging_config import LogContext, get_logger
from tip_services.events import ClockedOut, PaymentCaptured, PaymentReversed, ShiftClosed
from tip_services.tip_bank import TipBank

logger = get_logger("services.event_dispatcher")

Handler = Callable[[TipBank, Any], Any]


def _on_payment_captured(bank: TipBank, event: PaymentCaptured):
    return bank.allocation.allocate_for_payment(
        event.worker_id,
        event.amount,
        event.occurred_at,
        event.source_reference,
        fee_amount=event.fee_amount,
        co_owners=event.co_owners,
    )


def _on_shift_closed(bank: TipBank, event: ShiftClosed):
    return bank.tip_outs.compute_payouts(
        event.shift_id,
        event.sales,
        event.tips_earned_by_worker,
        shift_date=event.shift_date,
        client_reported=event.client_reported,
    )


def _on_clocked_out(bank: TipBank, event: ClockedOut):
    return bank.groups.handle_clock_out(event.worker_id, at=event.at)


def _on_payment_reversed(bank: TipBank, event: PaymentReversed):
    return bank.chargebacks.handle_chargeback(event.source_reference, event.occurred_at)


class TipEventDispatcher:
    """Dispatch consumed events to their handlers, one transaction each."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: TipBankSettings | None = None,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or TipBankSettings()
        self.clock = clock or SystemClock()
        self._handlers: dict[type, Handler] = {
            PaymentCaptured: _on_payment_captured,
            ShiftClosed: _on_shift_closed,
            ClockedOut: _on_clocked_out,
            PaymentReversed: _on_payment_reversed,
        }

    def register(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type] = handler

    def dispatch(self, event: Any) -> Any:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"No handler registered for {type(event).__name__}")

        event_type = type(event).__name__
        with LogContext.bind(
            correlation_id=event.event_id,
            worker_id=getattr(event, "worker_id", None),
            shift_id=getattr(event, "shift_id", None),
            source_reference=getattr(event, "source_reference", None),
        ):
            logger.info("tip_event_received", extra={"event_type": event_type})
            t0 = time.monotonic()
            with session_scope(self.session_factory) as session:
                result = handler(TipBank(session, self.settings, self.clock), event)
            logger.info(
                "tip_event_handled",
                extra={
                    "event_type": event_type,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return result
