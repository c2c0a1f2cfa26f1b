"""
Adjustment read side: the audit history of manual adjustments and
recalculation runs, newest first, and the entries each one posted.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from tip_kernel.domain.enums import AdjustmentKind, SourceType
from tip_kernel.models.adjustment import TipAdjustment
from tip_kernel.models.ledger import LedgerEntry
from tip_kernel.selectors.base import BaseSelector
from tip_kernel.selectors.ledger_selector import LedgerEntryInfo
from tip_kernel.utils.source_reference import recalculation_reference

DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class AdjustmentInfo:
    id: UUID
    kind: AdjustmentKind
    reason: str
    actor_id: str | None
    group_id: UUID | None
    tip_transaction_id: UUID | None
    adjusted_at: datetime
    before: Mapping[str, int]
    after: Mapping[str, int]

    def delta_cents(self, worker_id: str) -> int:
        return self.after.get(worker_id, 0) - self.before.get(worker_id, 0)

    @classmethod
    def from_model(cls, adjustment: TipAdjustment) -> AdjustmentInfo:
        context: Mapping[str, Any] = adjustment.context or {}
        return cls(
            id=adjustment.id,
            kind=AdjustmentKind(adjustment.kind),
            reason=adjustment.reason,
            actor_id=adjustment.actor_id,
            group_id=adjustment.group_id,
            tip_transaction_id=adjustment.tip_transaction_id,
            adjusted_at=adjustment.adjusted_at,
            before={k: int(v) for k, v in context.get("before", {}).items()},
            after={k: int(v) for k, v in context.get("after", {}).items()},
        )


@dataclass(frozen=True)
class AdjustmentPage:
    adjustments: tuple[AdjustmentInfo, ...]
    total: int


class AdjustmentSelector(BaseSelector[TipAdjustment]):

    def adjustment_history(
        self,
        *,
        kind: AdjustmentKind | None = None,
        group_id: UUID | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> AdjustmentPage:
        """Adjustments newest first; ``since`` and ``until`` are both inclusive."""
        filters = []
        if kind is not None:
            filters.append(TipAdjustment.kind == AdjustmentKind(kind).value)
        if group_id is not None:
            filters.append(TipAdjustment.group_id == group_id)
        if since is not None:
            filters.append(TipAdjustment.adjusted_at >= since)
        if until is not None:
            filters.append(TipAdjustment.adjusted_at <= until)

        total = self.session.execute(
            select(func.count()).select_from(TipAdjustment).where(*filters)
        ).scalar_one()
        rows = self.session.execute(
            select(TipAdjustment)
            .where(*filters)
            .order_by(TipAdjustment.adjusted_at.desc(), TipAdjustment.id)
            .limit(limit)
            .offset(offset)
        ).scalars()
        return AdjustmentPage(tuple(AdjustmentInfo.from_model(a) for a in rows), int(total))

    def entries_for_adjustment(self, adjustment_id: UUID) -> list[LedgerEntryInfo]:
        """Ledger entries posted by one adjustment or recalculation run."""
        adjustment = self.session.get(TipAdjustment, adjustment_id)
        if adjustment is None:
            return []
        manual_reference = (adjustment.context or {}).get("source_reference")
        if manual_reference is not None:
            matches = LedgerEntry.source_reference == manual_reference
        else:
            matches = LedgerEntry.source_reference.startswith(
                recalculation_reference(adjustment.id, ""), autoescape=True
            )
        entries = self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.source_type == SourceType.ADJUSTMENT.value, matches)
            .order_by(LedgerEntry.source_reference, LedgerEntry.worker_id)
        ).scalars()
        return [LedgerEntryInfo.from_model(e) for e in entries]
