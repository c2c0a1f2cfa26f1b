"""Tip-out rule configuration model."""

from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, Date, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from tip_kernel.db.base import TrackedBase
from tip_kernel.db.types import DecimalString
from tip_kernel.domain.enums import BasisType


class TipOutRule(TrackedBase):
    """
    A standing redistribution rule, evaluated fresh at every shift close.

    percentage and max_percentage_cap are percentage points (3 means 3%).
    The rule applies to shifts dated in [effective_date, expires_at); a null
    bound is open.
    """

    __tablename__ = "tip_out_rules"

    __table_args__ = (
        Index("idx_tip_out_rule_active", "is_active", "location_id"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    basis_type: Mapped[BasisType] = mapped_column(String(20), nullable=False)

    percentage: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    max_percentage_cap: Mapped[Decimal | None] = mapped_column(DecimalString(), nullable=True)

    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    expires_at: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Restricts sales bases to these categories; null means all sales
    category_ids: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)

    # Role paying out (informational)
    from_role: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Ledger account credited, e.g. "pool:bussers"
    recipient_id: Mapped[str] = mapped_column(String(100), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    location_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
