"""Allocated payment record."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import TrackedBase
from tip_kernel.db.types import UTCDateTime, UUIDString
from tip_kernel.domain.enums import TipTransactionStatus


class TipTransaction(TrackedBase):
    """
    One captured payment that went through allocation.

    Links the payment to the ledger entries it produced (via
    LedgerEntry.tip_transaction_id) so chargebacks, recalculation and
    checkout breakdowns can find them. Only status/reversed_at change, plus
    co_owners when a recalculation corrects the ownership.
    """

    __tablename__ = "tip_transactions"

    __table_args__ = (
        UniqueConstraint("source_reference", name="uq_tip_transaction_source"),
        Index("idx_tip_transaction_worker", "worker_id", "occurred_at"),
    )

    source_reference: Mapped[str] = mapped_column(String(300), nullable=False)

    worker_id: Mapped[str] = mapped_column(String(100), nullable=False)

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Primary group/segment of the paying worker's slice, if any
    group_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    segment_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Shared ownership percentages, null for a single owner
    co_owners: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    status: Mapped[TipTransactionStatus] = mapped_column(
        String(10), nullable=False, default=TipTransactionStatus.ALLOCATED
    )

    reversed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
