"""
Kernel invariants contract.

These guarantees hold regardless of location configuration. Settings may
change *what* gets posted (negative-balance permission, chargeback policy,
split tolerance) but never whether these rules apply.

Enforcement is spread across LedgerStore, SegmentTimeline,
GroupLifecycleService, the immutability listeners and triggers, and the
unique constraints on the ORM models.
"""

from enum import Enum, unique


@unique
class TipInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    BALANCE_CONSERVATION = "balance_conservation"
    """Cached balance equals sum(CREDIT) - sum(DEBIT) over the worker's
    entries. Checked by LedgerStore.reconcile; a mismatch freezes the worker."""

    APPEND_ONLY_LEDGER = "append_only_ledger"
    """Ledger entries are never updated or deleted. Enforced by ORM listeners
    (tip_kernel.db.immutability) and PostgreSQL triggers."""

    SOURCE_IDEMPOTENCY = "source_idempotency"
    """At most one entry per (source_type, source_reference, worker_id).
    Enforced by a unique constraint and LedgerStore.post."""

    SEGMENT_PARTITION = "segment_partition"
    """A group's segments tile [started_at, closed_at or now) without gaps or
    overlaps. SegmentTimeline is the only writer of segment boundaries."""

    SPLIT_SUM = "split_sum"
    """Every segment split map sums to exactly 100."""

    SINGLE_ACTIVE_GROUP = "single_active_group"
    """A worker holds at most one ACTIVE membership system-wide. Enforced by
    the unique worker_id on active_worker_groups."""

    ATOMIC_MULTI_POST = "atomic_multi_post"
    """Multi-entry posts (group allocation, transfer, tip-out pair) are
    all-or-nothing. Enforced with savepoints around each batch."""

    SHIFT_SINGLE_WRITER = "shift_single_writer"
    """Tip-out evaluation never runs concurrently for the same shift.
    Enforced by a row lock on shift_closeouts."""


KERNEL_INVARIANTS: frozenset[TipInvariant] = frozenset(TipInvariant)
