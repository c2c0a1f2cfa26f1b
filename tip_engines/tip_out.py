"""
Tip-out rule evaluation.

Given the rules in force and one shift's sales snapshot, computes what each
rule takes:

    raw    = round_half_up(basis * percentage / 100)
    cap    = round_half_up(tips_earned * max_percentage_cap / 100)
    amount = max(0, min(raw, cap))

A rule restricted to categories replaces its sales basis with the sum of
those categories' sales. Rules outside their effective window, or
inactive, are reported as skipped rather than evaluated.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from types import MappingProxyType
from typing import Any
from uuid import UUID

from tip_engines.tracer import traced_engine
from tip_kernel.domain.dtos import ShiftSalesSnapshot
from tip_kernel.domain.enums import BasisType
from tip_kernel.domain.money import from_minor_units, round_to_minor_units
from tip_kernel.domain.splits import HUNDRED

BasisExtractor = Callable[[ShiftSalesSnapshot], Decimal]

BASIS_EXTRACTORS: Mapping[BasisType, BasisExtractor] = MappingProxyType(
    {
        BasisType.TIPS_EARNED: lambda s: s.tips_earned,
        BasisType.FOOD_SALES: lambda s: s.food_sales,
        BasisType.BAR_SALES: lambda s: s.bar_sales,
        BasisType.TOTAL_SALES: lambda s: s.total_sales,
        BasisType.NET_SALES: lambda s: s.net_sales,
    }
)


@dataclass(frozen=True)
class TipOutRuleSpec:
    """Engine-side view of a tip-out rule."""

    rule_id: UUID
    name: str
    basis_type: BasisType
    percentage: Decimal
    recipient_id: str
    max_percentage_cap: Decimal | None = None
    effective_date: date | None = None
    expires_at: date | None = None
    category_ids: tuple[str, ...] = ()
    is_active: bool = True

    @classmethod
    def from_model(cls, rule: Any) -> TipOutRuleSpec:
        return cls(
            rule_id=rule.id,
            name=rule.name,
            basis_type=BasisType(rule.basis_type),
            percentage=Decimal(rule.percentage),
            recipient_id=rule.recipient_id,
            max_percentage_cap=(
                Decimal(rule.max_percentage_cap) if rule.max_percentage_cap is not None else None
            ),
            effective_date=rule.effective_date,
            expires_at=rule.expires_at,
            category_ids=tuple(rule.category_ids or ()),
            is_active=bool(rule.is_active),
        )

    def in_force_on(self, day: date) -> bool:
        if self.effective_date is not None and day < self.effective_date:
            return False
        if self.expires_at is not None and day >= self.expires_at:
            return False
        return True


@dataclass(frozen=True)
class TipOutComputation:
    rule_id: UUID
    rule_name: str
    basis_type: BasisType
    basis_amount: Decimal
    percentage: Decimal
    raw_cents: int
    cap_cents: int | None
    amount_cents: int
    was_capped: bool
    recipient_id: str
    currency: str = "USD"

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents, self.currency)


@dataclass(frozen=True)
class SkippedRule:
    rule_id: UUID
    reason: str


@dataclass(frozen=True)
class TipOutEvaluation:
    shift_date: date
    tips_earned: Decimal
    computations: tuple[TipOutComputation, ...]
    skipped: tuple[SkippedRule, ...] = ()

    @property
    def total_cents(self) -> int:
        return sum(c.amount_cents for c in self.computations)


class TipOutEvaluator:
    def __init__(self, currency: str = "USD"):
        self.currency = currency

    def basis_for(self, rule: TipOutRuleSpec, sales: ShiftSalesSnapshot) -> Decimal:
        if rule.category_ids and rule.basis_type is not BasisType.TIPS_EARNED:
            return sum(
                (sales.category_sales.get(cat, Decimal(0)) for cat in rule.category_ids),
                Decimal(0),
            )
        return Decimal(BASIS_EXTRACTORS[rule.basis_type](sales))

    def compute(self, rule: TipOutRuleSpec, sales: ShiftSalesSnapshot) -> TipOutComputation:
        basis = self.basis_for(rule, sales)
        raw = round_to_minor_units(basis * rule.percentage / HUNDRED, self.currency)
        cap = None
        if rule.max_percentage_cap is not None:
            cap = round_to_minor_units(
                Decimal(sales.tips_earned) * rule.max_percentage_cap / HUNDRED, self.currency
            )
        amount = raw if cap is None else min(raw, cap)
        return TipOutComputation(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            basis_type=rule.basis_type,
            basis_amount=basis,
            percentage=rule.percentage,
            raw_cents=raw,
            cap_cents=cap,
            amount_cents=max(0, amount),
            was_capped=cap is not None and raw > cap,
            recipient_id=rule.recipient_id,
            currency=self.currency,
        )

    @traced_engine(
        "tip_out",
        "1.0",
        fingerprint_fields=("rules", "sales", "shift_date", "tips_earned_total"),
    )
    def evaluate(
        self,
        *,
        rules: Sequence[TipOutRuleSpec],
        sales: ShiftSalesSnapshot,
        shift_date: date,
        tips_earned_total: Decimal | None = None,
    ) -> TipOutEvaluation:
        """Evaluate every rule against one shift.

        ``tips_earned_total`` overrides ``sales.tips_earned`` with the
        server-side figure when the caller has one.
        """
        if tips_earned_total is not None:
            sales = dataclasses.replace(sales, tips_earned=Decimal(tips_earned_total))

        computed: list[TipOutComputation] = []
        skipped: list[SkippedRule] = []
        for rule in sorted(rules, key=lambda r: (r.name, str(r.rule_id))):
            if not rule.is_active:
                skipped.append(SkippedRule(rule.rule_id, "inactive"))
            elif not rule.in_force_on(shift_date):
                skipped.append(SkippedRule(rule.rule_id, "outside_effective_window"))
            else:
                computed.append(self.compute(rule, sales))

        return TipOutEvaluation(
            shift_date=shift_date,
            tips_earned=Decimal(sales.tips_earned),
            computations=tuple(computed),
            skipped=tuple(skipped),
        )
