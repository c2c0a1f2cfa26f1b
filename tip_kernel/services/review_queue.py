"""Operator review queue for anomalies that must not fail the operation."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from tip_kernel.domain.enums import ReviewFlagKind
from tip_kernel.logging_config import get_logger
from tip_kernel.models.review import ReviewFlag
from tip_kernel.services.base import BaseService

logger = get_logger("services.review_queue")


class ReviewQueue(BaseService[ReviewFlag]):

    def flag(
        self,
        kind: ReviewFlagKind,
        *,
        worker_id: str | None = None,
        group_id: UUID | None = None,
        source_reference: str | None = None,
        amount_cents: int | None = None,
        detail: str | None = None,
    ) -> ReviewFlag:
        flag = ReviewFlag(
            kind=kind.value,
            worker_id=worker_id,
            group_id=group_id,
            source_reference=source_reference,
            amount_cents=amount_cents,
            detail=detail,
            flagged_at=self.clock.now(),
        )
        self.session.add(flag)
        self.session.flush()
        logger.warning(
            "review_flag_raised",
            extra={
                "flag_id": str(flag.id),
                "kind": kind.value,
                "worker_id": worker_id,
                "group_id": str(group_id) if group_id else None,
                "source_reference": source_reference,
                "amount_cents": amount_cents,
            },
        )
        return flag

    def resolve(self, flag_id: UUID, resolved_by: str) -> ReviewFlag:
        flag = self.session.execute(
            select(ReviewFlag).where(ReviewFlag.id == flag_id).with_for_update()
        ).scalar_one()
        if flag.resolved_at is None:
            flag.resolved_at = self.clock.now()
            flag.resolved_by = resolved_by
            self.session.flush()
            logger.info("review_flag_resolved", extra={"flag_id": str(flag_id), "resolved_by": resolved_by})
        return flag
