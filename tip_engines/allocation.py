"""
Share allocation engine.

Splits an integer number of minor units across a percentage map. Each
share is floored; the leftover cents go to a single remainder recipient
(the owner when present, else the lowest worker id) so the shares always
sum to the input exactly.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from tip_engines.tracer import traced_engine
from tip_kernel.domain.splits import HUNDRED, remainder_recipient


@dataclass(frozen=True)
class ShareLine:
    worker_id: str
    percentage: Decimal
    amount_cents: int
    received_remainder: bool = False


@dataclass(frozen=True)
class ShareAllocation:
    total_cents: int
    lines: tuple[ShareLine, ...]
    remainder_cents: int
    remainder_recipient: str

    def amounts(self) -> dict[str, int]:
        """Non-zero shares by worker."""
        return {line.worker_id: line.amount_cents for line in self.lines if line.amount_cents}


def prorate(total_cents: int, weights: Mapping[str, int | Decimal], recipient: str) -> dict[str, int]:
    """Split ``total_cents`` in proportion to ``weights``.

    Floors each share and hands the leftover to ``recipient``. When every
    weight is zero the whole amount goes to ``recipient``.
    """
    if total_cents < 0:
        raise ValueError("total_cents must not be negative")
    if recipient not in weights:
        raise ValueError(f"remainder recipient {recipient} has no weight entry")
    total_weight = sum((Decimal(w) for w in weights.values()), Decimal(0))
    if total_weight <= 0:
        return {wid: (total_cents if wid == recipient else 0) for wid in weights}

    shares = {
        wid: int((Decimal(total_cents) * Decimal(w) / total_weight).to_integral_value(rounding=ROUND_FLOOR))
        for wid, w in weights.items()
    }
    shares[recipient] += total_cents - sum(shares.values())
    return shares


class ShareAllocator:
    """Splits a payment across a segment split map."""

    @traced_engine(
        "share_allocation",
        "1.0",
        fingerprint_fields=("total_cents", "split_map", "owner_id"),
    )
    def allocate(
        self,
        *,
        total_cents: int,
        split_map: Mapping[str, Decimal],
        owner_id: str | None,
    ) -> ShareAllocation:
        if not isinstance(total_cents, int) or total_cents < 0:
            raise ValueError(f"total_cents must be a non-negative int, got {total_cents!r}")
        if not split_map:
            raise ValueError("split map is empty")

        worker_ids = sorted(split_map)
        recipient = remainder_recipient(owner_id, worker_ids)
        percentages = {wid: Decimal(split_map[wid]) for wid in worker_ids}
        floors = {
            wid: int((Decimal(total_cents) * pct / HUNDRED).to_integral_value(rounding=ROUND_FLOOR))
            for wid, pct in percentages.items()
        }
        remainder = total_cents - sum(floors.values())
        if remainder < 0:
            raise ValueError("split map sums to more than 100")
        floors[recipient] += remainder

        lines = tuple(
            ShareLine(
                worker_id=wid,
                percentage=percentages[wid],
                amount_cents=floors[wid],
                received_remainder=(wid == recipient and remainder > 0),
            )
            for wid in worker_ids
        )
        return ShareAllocation(
            total_cents=total_cents,
            lines=lines,
            remainder_cents=remainder,
            remainder_recipient=recipient,
        )
