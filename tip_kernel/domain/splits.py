"""
Split computation for tip-group segments.

A split map assigns each member a percentage of the group's tips, to four
decimal places, and always sums to exactly 100. Integer-style truncation
leaves a residual; the residual goes to the group owner, or to the first
member by worker id when the owner is not part of the snapshot.

Pure functions only. The segment timeline calls ``SplitCalculator.compute``
before it closes anything, so an InvalidSplitError leaves the timeline
untouched.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from tip_kernel.domain.enums import SplitMode
from tip_kernel.exceptions import InvalidSplitError

HUNDRED = Decimal("100")
SPLIT_QUANTUM = Decimal("0.0001")
DEFAULT_TOLERANCE = Decimal("0.01")
_SECONDS_PER_HOUR = Decimal("3600")


@dataclass(frozen=True)
class MemberSnapshot:
    """One ACTIVE member as seen at a segment transition."""

    worker_id: str
    joined_at: datetime | None = None
    weight: Decimal = Decimal("1")


def remainder_recipient(owner_id: str | None, worker_ids: Sequence[str]) -> str:
    if owner_id is not None and owner_id in worker_ids:
        return owner_id
    return min(worker_ids)


def _truncate(value: Decimal) -> Decimal:
    return value.quantize(SPLIT_QUANTUM, rounding=ROUND_DOWN)


def _settle(shares: dict[str, Decimal], recipient: str) -> dict[str, Decimal]:
    residual = HUNDRED - sum(shares.values(), Decimal(0))
    shares[recipient] = shares[recipient] + residual
    if shares[recipient] < 0:
        raise InvalidSplitError(
            f"residual {residual} would make {recipient}'s share negative"
        )
    return dict(sorted(shares.items()))


def equal_split(worker_ids: Sequence[str], owner_id: str | None) -> dict[str, Decimal]:
    if not worker_ids:
        raise InvalidSplitError("a split needs at least one member")
    each = _truncate(HUNDRED / len(worker_ids))
    shares = {wid: each for wid in worker_ids}
    return _settle(shares, remainder_recipient(owner_id, worker_ids))


def weighted_split(weights: Mapping[str, Decimal], owner_id: str | None) -> dict[str, Decimal]:
    """Normalise weights to percentages. All-zero weights split equally."""
    if not weights:
        raise InvalidSplitError("a split needs at least one member")
    for wid, w in weights.items():
        if w < 0:
            raise InvalidSplitError(f"weight for {wid} is negative")
    total = sum(weights.values(), Decimal(0))
    ids = list(weights)
    if total == 0:
        return equal_split(ids, owner_id)
    shares = {wid: _truncate(w * HUNDRED / total) for wid, w in weights.items()}
    return _settle(shares, remainder_recipient(owner_id, ids))


def custom_split(
    custom: Mapping[str, Decimal],
    worker_ids: Sequence[str],
    owner_id: str | None,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> dict[str, Decimal]:
    """Validate caller-supplied percentages and normalise them to exactly 100."""
    if not worker_ids:
        raise InvalidSplitError("a split needs at least one member")
    if set(custom) != set(worker_ids):
        missing = sorted(set(worker_ids) - set(custom))
        extra = sorted(set(custom) - set(worker_ids))
        raise InvalidSplitError(
            f"custom split members do not match (missing={missing}, unexpected={extra})"
        )
    values = {wid: Decimal(custom[wid]) for wid in worker_ids}
    for wid, pct in values.items():
        if pct < 0:
            raise InvalidSplitError(f"percentage for {wid} is negative")
    total = sum(values.values(), Decimal(0))
    if abs(total - HUNDRED) > tolerance:
        raise InvalidSplitError(f"percentages sum to {total}, expected 100", total=total)
    shares = {wid: _truncate(pct) for wid, pct in values.items()}
    return _settle(shares, remainder_recipient(owner_id, worker_ids))


def hours_in_group(member: MemberSnapshot, at: datetime) -> Decimal:
    if member.joined_at is None or at <= member.joined_at:
        return Decimal(0)
    seconds = Decimal(str((at - member.joined_at).total_seconds()))
    return seconds / _SECONDS_PER_HOUR


class SplitCalculator:
    """Computes a segment split map for any split mode."""

    def __init__(self, tolerance: Decimal = DEFAULT_TOLERANCE):
        self.tolerance = Decimal(tolerance)

    def compute(
        self,
        mode: SplitMode,
        members: Sequence[MemberSnapshot],
        owner_id: str | None,
        at: datetime,
        custom: Mapping[str, Decimal] | None = None,
        previous: Mapping[str, Decimal] | None = None,
    ) -> dict[str, Decimal]:
        """
        Args:
            custom: Explicit percentages; overrides ``mode`` for this transition.
            previous: Split map of the segment being closed. In CUSTOM mode a
                transition without ``custom`` rescales it over the remaining
                members.
        """
        worker_ids = sorted(m.worker_id for m in members)
        if len(set(worker_ids)) != len(worker_ids):
            raise InvalidSplitError("duplicate worker in member snapshot")

        if custom is not None:
            return custom_split(custom, worker_ids, owner_id, self.tolerance)

        match mode:
            case SplitMode.EQUAL:
                return equal_split(worker_ids, owner_id)
            case SplitMode.CUSTOM:
                return self._rescale_previous(worker_ids, owner_id, previous)
            case SplitMode.ROLE_WEIGHTED:
                return weighted_split(
                    {m.worker_id: Decimal(m.weight) for m in members}, owner_id
                )
            case SplitMode.HOURS_WEIGHTED:
                return weighted_split(
                    {m.worker_id: hours_in_group(m, at) for m in members}, owner_id
                )
            case _:
                raise InvalidSplitError(f"unknown split mode {mode!r}")

    @staticmethod
    def _rescale_previous(
        worker_ids: Sequence[str],
        owner_id: str | None,
        previous: Mapping[str, Decimal] | None,
    ) -> dict[str, Decimal]:
        if previous is None:
            return equal_split(worker_ids, owner_id)
        newcomers = sorted(set(worker_ids) - set(previous))
        if newcomers:
            raise InvalidSplitError(
                f"CUSTOM split needs explicit percentages for new members {newcomers}"
            )
        return weighted_split(
            {wid: Decimal(previous[wid]) for wid in worker_ids}, owner_id
        )


def split_total(split_map: Mapping[str, Decimal]) -> Decimal:
    return sum((Decimal(v) for v in split_map.values()), Decimal(0))
