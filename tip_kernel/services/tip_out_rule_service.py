"""
Tip-out rule CRUD.

Rules are configuration, not history: they can be edited, expired and
deactivated. Evaluation never mutates them. Ledger entries keep the rule id
they were computed from, so past tip-outs stay traceable after an edit.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select

from tip_kernel.domain.enums import BasisType
from tip_kernel.exceptions import InvalidRuleError, RuleNotFoundError
from tip_kernel.logging_config import get_logger
from tip_kernel.models.tip_out_rule import TipOutRule
from tip_kernel.services.base import BaseService

logger = get_logger("services.tip_out_rules")

_HUNDRED = Decimal("100")

_EDITABLE_FIELDS = frozenset(
    {
        "name",
        "basis_type",
        "percentage",
        "max_percentage_cap",
        "effective_date",
        "expires_at",
        "category_ids",
        "from_role",
        "recipient_id",
        "is_active",
    }
)


def _validate(rule: TipOutRule) -> None:
    if not rule.name:
        raise InvalidRuleError("name", "is required")
    if not rule.recipient_id:
        raise InvalidRuleError("recipient_id", "is required")
    try:
        BasisType(rule.basis_type)
    except ValueError:
        raise InvalidRuleError("basis_type", f"unknown basis {rule.basis_type!r}") from None
    if rule.percentage is None or not (Decimal(0) < Decimal(rule.percentage) <= _HUNDRED):
        raise InvalidRuleError("percentage", "must be in (0, 100]")
    if rule.max_percentage_cap is not None and not (
        Decimal(0) < Decimal(rule.max_percentage_cap) <= _HUNDRED
    ):
        raise InvalidRuleError("max_percentage_cap", "must be in (0, 100]")
    if rule.effective_date and rule.expires_at and rule.expires_at <= rule.effective_date:
        raise InvalidRuleError("expires_at", "must be after effective_date")


class TipOutRuleService(BaseService[TipOutRule]):
    """Create, update, expire and look up tip-out rules."""

    def create_rule(
        self,
        *,
        name: str,
        basis_type: BasisType,
        percentage: Decimal,
        recipient_id: str,
        max_percentage_cap: Decimal | None = None,
        effective_date: date | None = None,
        expires_at: date | None = None,
        category_ids: Iterable[str] | None = None,
        from_role: str | None = None,
        location_id: str | None = None,
    ) -> TipOutRule:
        rule = TipOutRule(
            name=name,
            basis_type=BasisType(basis_type).value,
            percentage=Decimal(percentage),
            max_percentage_cap=Decimal(max_percentage_cap) if max_percentage_cap is not None else None,
            effective_date=effective_date,
            expires_at=expires_at,
            category_ids=list(category_ids) if category_ids is not None else None,
            from_role=from_role,
            recipient_id=recipient_id,
            is_active=True,
            location_id=location_id,
        )
        _validate(rule)
        self.session.add(rule)
        self.session.flush()
        logger.info(
            "tip_out_rule_created",
            extra={
                "rule_id": str(rule.id),
                "basis_type": rule.basis_type,
                "percentage": rule.percentage,
                "max_percentage_cap": rule.max_percentage_cap,
            },
        )
        return rule

    def get_rule(self, rule_id: UUID) -> TipOutRule:
        rule = self.session.get(TipOutRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(str(rule_id))
        return rule

    def update_rule(self, rule_id: UUID, **changes: Any) -> TipOutRule:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise InvalidRuleError(", ".join(sorted(unknown)), "not an editable field")
        with self.session.begin_nested():
            rule = self.get_rule(rule_id)
            for field_name, value in changes.items():
                if field_name == "basis_type" and value is not None:
                    value = BasisType(value).value
                elif field_name in ("percentage", "max_percentage_cap") and value is not None:
                    value = Decimal(value)
                elif field_name == "category_ids" and value is not None:
                    value = list(value)
                setattr(rule, field_name, value)
            _validate(rule)
            self.session.flush()
        logger.info("tip_out_rule_updated", extra={"rule_id": str(rule_id), "fields": sorted(changes)})
        return rule

    def expire_rule(self, rule_id: UUID, as_of: date) -> TipOutRule:
        """Stop the rule applying to shifts dated ``as_of`` or later."""
        return self.update_rule(rule_id, expires_at=as_of)

    def deactivate_rule(self, rule_id: UUID) -> TipOutRule:
        return self.update_rule(rule_id, is_active=False)

    def list_rules(
        self,
        *,
        active_on: date | None = None,
        location_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[TipOutRule]:
        stmt = select(TipOutRule)
        if not include_inactive:
            stmt = stmt.where(TipOutRule.is_active.is_(True))
        if location_id is not None:
            stmt = stmt.where(
                or_(TipOutRule.location_id == location_id, TipOutRule.location_id.is_(None))
            )
        if active_on is not None:
            stmt = stmt.where(
                or_(TipOutRule.effective_date.is_(None), TipOutRule.effective_date <= active_on),
                or_(TipOutRule.expires_at.is_(None), TipOutRule.expires_at > active_on),
            )
        return list(self.session.execute(stmt.order_by(TipOutRule.name, TipOutRule.id)).scalars())
