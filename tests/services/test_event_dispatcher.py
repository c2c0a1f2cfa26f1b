"""
Tests for TipEventDispatcher: each event runs in its own committed
transaction, with the event id bound as the log correlation id.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

import pytest

from tip_config.schema import ChargebackPolicy, TipBankSettings
from tip_kernel.db.engine import session_scope
from tip_kernel.domain.clock import DeterministicClock
from tip_kernel.domain.dtos import ShiftSalesSnapshot
from tip_kernel.domain.enums import BasisType, CloseoutStatus
from tip_kernel.exceptions import InvalidAmountError
from tip_services.event_dispatcher import TipEventDispatcher
from tip_services.events import ClockedOut, PaymentCaptured, PaymentReversed, ShiftClosed
from tip_services.tip_bank import TipBank

pytestmark = pytest.mark.slow


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def settings():
    return TipBankSettings(chargeback_policy=ChargebackPolicy.EMPLOYEE_CHARGEBACK)


@pytest.fixture
def dispatcher(session_factory, settings, clock):
    return TipEventDispatcher(session_factory, settings, clock)


@pytest.fixture
def read(session_factory, settings, clock):
    """Run ``fn(bank)`` in a fresh committed session and return its result."""

    def _read(fn):
        with session_scope(session_factory) as s:
            return fn(TipBank(s, settings, clock))

    return _read


class TestPaymentCaptured:

    def test_allocation_committed(self, dispatcher, read, clock):
        dispatcher.dispatch(PaymentCaptured("alice", Decimal("8.00"), clock.now(), "order-1:pay-1"))
        assert read(lambda b: b.ledger.get_balance_cents("alice")) == 800

    def test_redelivery(self, dispatcher, read, clock):
        event = PaymentCaptured("alice", Decimal("8.00"), clock.now(), "order-1:pay-1")
        dispatcher.dispatch(event)
        result = dispatcher.dispatch(event)
        assert result.duplicate
        assert read(lambda b: b.ledger.get_balance_cents("alice")) == 800

    def test_failure_rolls_back(self, dispatcher, read, clock):
        with pytest.raises(InvalidAmountError):
            dispatcher.dispatch(
                PaymentCaptured("alice", Decimal("1.00"), clock.now(), "order-1:pay-1", fee_amount=Decimal("2.00"))
            )
        assert read(lambda b: b.ledger.get_balance_cents("alice")) == 0

    def test_correlation_id_on_every_record(self, dispatcher, clock, captured_logs):
        event = PaymentCaptured("alice", Decimal("1.00"), clock.now(), "order-1:pay-1")
        dispatcher.dispatch(event)

        records = [r for r in captured_logs() if r.get("correlation_id") == event.event_id]
        messages = [r["message"] for r in records]
        assert messages[0] == "tip_event_received"
        assert "payment_allocated" in messages
        assert messages[-1] == "tip_event_handled"
        assert all(r["source_reference"] == "order-1:pay-1" for r in records)


class TestOtherEvents:

    def test_clock_out_leaves_group(self, dispatcher, read, clock):
        read(lambda b: b.start_group("alice", ["bob"]))
        clock.advance(minutes=30)

        outcome = dispatcher.dispatch(ClockedOut("alice", clock.now()))

        assert outcome.ownership_transferred_to == "bob"
        assert read(lambda b: b.group_selector.active_group_for_worker("alice")) is None

    def test_shift_closed_posts_tip_outs(self, dispatcher, read, clock):
        read(
            lambda b: b.rules.create_rule(
                name="bar", basis_type=BasisType.BAR_SALES, percentage=Decimal("5"), recipient_id="bar-pool"
            )
        )
        dispatcher.dispatch(PaymentCaptured("alice", Decimal("40.00"), clock.now(), "order-1:pay-1"))

        result = dispatcher.dispatch(
            ShiftClosed("shift-1", ShiftSalesSnapshot(bar_sales=Decimal("200.00")), {"alice": Decimal("40.00")})
        )

        assert result.status is CloseoutStatus.COMPLETED
        assert read(lambda b: b.ledger.get_balance_cents("bar-pool")) == 1000

    def test_payment_reversed(self, dispatcher, read, clock):
        dispatcher.dispatch(PaymentCaptured("alice", Decimal("8.00"), clock.now(), "order-1:pay-1"))
        result = dispatcher.dispatch(PaymentReversed("order-1:pay-1", clock.now() + timedelta(days=3)))
        assert result.collected_cents == 800
        assert read(lambda b: b.ledger.get_balance_cents("alice")) == 0


class TestRegistration:

    def test_unknown_event_rejected(self, dispatcher):
        @dataclass(frozen=True)
        class TableSeated:
            table_id: str
            event_id: str = "evt-1"

        with pytest.raises(TypeError):
            dispatcher.dispatch(TableSeated("t-4"))

    def test_custom_handler(self, dispatcher):
        @dataclass(frozen=True)
        class TableSeated:
            table_id: str
            event_id: str = "evt-1"

        seen = []
        dispatcher.register(TableSeated, lambda bank, event: seen.append(event.table_id))
        dispatcher.dispatch(TableSeated("t-4"))
        assert seen == ["t-4"]
