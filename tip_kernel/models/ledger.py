"""
Ledger entry and balance cache models.

LedgerEntry is the source of truth: one immutable signed fact per row,
append-only. WorkerBalance is a projection of it, kept in step by a
transactional increment on every post and rebuildable from entries alone.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Index,
    String,
    Text,
    UniqueConstraint,
    case,
)
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import Base, TrackedBase
from tip_kernel.db.types import UTCDateTime, UUIDString
from tip_kernel.domain.enums import EntryDirection, SourceType


class LedgerEntry(Base):
    """
    One immutable currency movement for one worker.

    Contract:
        (source_type, source_reference, worker_id) is unique, which is what
        makes at-least-once event delivery safe. amount_cents is always
        positive; direction carries the sign.

    Non-goals:
        No settled flag. A payout is itself a DEBIT entry; settlement is
        read from the entry history, not written back onto credits.
    """

    __tablename__ = "ledger_entries"

    __table_args__ = (
        UniqueConstraint(
            "source_type", "source_reference", "worker_id", name="uq_ledger_source"
        ),
        CheckConstraint("amount_cents > 0", name="ck_ledger_amount_positive"),
        Index("idx_ledger_worker_occurred", "worker_id", "occurred_at"),
        Index("idx_ledger_group", "group_id"),
        Index("idx_ledger_tip_transaction", "tip_transaction_id"),
    )

    worker_id: Mapped[str] = mapped_column(String(100), nullable=False)

    direction: Mapped[EntryDirection] = mapped_column(String(6), nullable=False)

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    source_type: Mapped[SourceType] = mapped_column(String(30), nullable=False)

    # Opaque upstream reference; idempotency key together with source_type
    source_reference: Mapped[str] = mapped_column(String(300), nullable=False)

    # When the economic event happened (payment time, shift close, ...)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # When the ledger accepted it
    posted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    memo: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provenance for group allocations
    group_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    segment_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    tip_transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Provenance for tip-outs
    shift_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    was_capped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    entry_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    @property
    def signed_cents(self) -> int:
        if self.direction == EntryDirection.CREDIT:
            return self.amount_cents
        return -self.amount_cents

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.worker_id} {self.direction} {self.amount_cents} "
            f"{self.source_type}:{self.source_reference}>"
        )


class WorkerBalance(TrackedBase):
    """
    Materialized balance per worker.

    balance_cents is only ever changed with
    ``UPDATE ... SET balance_cents = balance_cents + :delta`` so concurrent
    posts for one worker serialise on the row instead of losing updates.
    A frozen row rejects every further post until an operator rebuilds it.
    """

    __tablename__ = "worker_balances"

    __table_args__ = (
        UniqueConstraint("worker_id", name="uq_worker_balance_worker"),
    )

    worker_id: Mapped[str] = mapped_column(String(100), nullable=False)

    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    frozen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    frozen_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


def signed_amount_expr():
    """SQL expression: +amount_cents for CREDIT rows, -amount_cents for DEBIT rows."""
    return case(
        (LedgerEntry.direction == EntryDirection.CREDIT.value, LedgerEntry.amount_cents),
        else_=-LedgerEntry.amount_cents,
    )
