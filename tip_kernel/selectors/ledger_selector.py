"""
Ledger read side: balances, entry history and conservation checks.

Everything here is derived from ledger_entries except get_balance, which
deliberately reads the cache so callers can compare the two.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tip_kernel.domain.enums import EntryDirection, SourceType
from tip_kernel.domain.money import from_minor_units
from tip_kernel.models.ledger import LedgerEntry, WorkerBalance, signed_amount_expr
from tip_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LedgerEntryInfo:
    id: UUID
    worker_id: str
    direction: EntryDirection
    amount_cents: int
    currency: str
    source_type: SourceType
    source_reference: str
    occurred_at: datetime
    posted_at: datetime
    memo: str | None
    group_id: UUID | None
    segment_id: UUID | None
    shift_id: str | None
    rule_id: UUID | None
    was_capped: bool
    metadata: Mapping[str, Any]

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents, self.currency)

    @property
    def signed_cents(self) -> int:
        return self.direction.sign * self.amount_cents

    @classmethod
    def from_model(cls, entry: LedgerEntry) -> LedgerEntryInfo:
        return cls(
            id=entry.id,
            worker_id=entry.worker_id,
            direction=EntryDirection(entry.direction),
            amount_cents=entry.amount_cents,
            currency=entry.currency,
            source_type=SourceType(entry.source_type),
            source_reference=entry.source_reference,
            occurred_at=entry.occurred_at,
            posted_at=entry.posted_at,
            memo=entry.memo,
            group_id=entry.group_id,
            segment_id=entry.segment_id,
            shift_id=entry.shift_id,
            rule_id=entry.rule_id,
            was_capped=entry.was_capped,
            metadata=dict(entry.entry_metadata or {}),
        )


@dataclass(frozen=True)
class BalanceCheck:
    """Cache vs. entry-derived balance for one worker."""

    worker_id: str
    cached_cents: int
    computed_cents: int

    @property
    def drift_cents(self) -> int:
        return self.cached_cents - self.computed_cents


class LedgerSelector(BaseSelector[LedgerEntry]):

    def __init__(self, session: Session, currency: str = "USD"):
        super().__init__(session)
        self.currency = currency

    def get_balance(self, worker_id: str) -> Decimal:
        cents = self.session.execute(
            select(WorkerBalance.balance_cents).where(WorkerBalance.worker_id == worker_id)
        ).scalar_one_or_none()
        return from_minor_units(cents or 0, self.currency)

    def computed_balance(self, worker_id: str) -> Decimal:
        cents = self.session.execute(
            select(func.coalesce(func.sum(signed_amount_expr()), 0)).where(
                LedgerEntry.worker_id == worker_id
            )
        ).scalar_one()
        return from_minor_units(int(cents), self.currency)

    def entry_history(
        self,
        worker_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        source_types: Iterable[SourceType] | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntryInfo]:
        """Entries for a worker in occurrence order; ``until`` is exclusive."""
        stmt = select(LedgerEntry).where(LedgerEntry.worker_id == worker_id)
        if since is not None:
            stmt = stmt.where(LedgerEntry.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(LedgerEntry.occurred_at < until)
        if source_types is not None:
            stmt = stmt.where(LedgerEntry.source_type.in_([SourceType(s).value for s in source_types]))
        stmt = stmt.order_by(LedgerEntry.occurred_at, LedgerEntry.posted_at, LedgerEntry.source_reference)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [LedgerEntryInfo.from_model(e) for e in self.session.execute(stmt).scalars()]

    def entries_for_reference(self, source_type: SourceType, source_reference_prefix: str) -> list[LedgerEntryInfo]:
        """Entries whose reference equals the prefix or extends it with ':'."""
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.source_type == SourceType(source_type).value,
                (LedgerEntry.source_reference == source_reference_prefix)
                | LedgerEntry.source_reference.startswith(f"{source_reference_prefix}:", autoescape=True),
            )
            .order_by(LedgerEntry.source_reference, LedgerEntry.worker_id)
        )
        return [LedgerEntryInfo.from_model(e) for e in self.session.execute(stmt).scalars()]

    def totals_by_source(self, worker_id: str) -> dict[SourceType, Decimal]:
        """Net signed amount per source type for one worker."""
        rows = self.session.execute(
            select(LedgerEntry.source_type, func.sum(signed_amount_expr()))
            .where(LedgerEntry.worker_id == worker_id)
            .group_by(LedgerEntry.source_type)
        ).all()
        return {SourceType(st): from_minor_units(int(total), self.currency) for st, total in rows}

    def conservation_violations(self) -> list[BalanceCheck]:
        """Workers whose cached balance differs from their entry history."""
        computed_sq = (
            select(
                LedgerEntry.worker_id.label("worker_id"),
                func.sum(signed_amount_expr()).label("computed"),
            )
            .group_by(LedgerEntry.worker_id)
            .subquery()
        )
        cached = {
            w: c
            for w, c in self.session.execute(
                select(WorkerBalance.worker_id, WorkerBalance.balance_cents)
            ).all()
        }
        computed = {
            w: int(c) for w, c in self.session.execute(
                select(computed_sq.c.worker_id, computed_sq.c.computed)
            ).all()
        }
        violations = []
        for worker_id in sorted(set(cached) | set(computed)):
            c = cached.get(worker_id, 0)
            e = computed.get(worker_id, 0)
            if c != e:
                violations.append(BalanceCheck(worker_id=worker_id, cached_cents=c, computed_cents=e))
        return violations
