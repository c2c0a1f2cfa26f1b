"""
Typed exception hierarchy for the tip kernel.

Callers catch by type and read structured attributes; they never parse
messages. Every exception carries a machine-readable ``code``.

    try:
        ledger.post(candidate)
    except InsufficientBalanceError as e:
        surface_to_operator(code=e.code, worker=e.worker_id, short=e.shortfall)

Hierarchy:

    TipKernelError (base)
    |
    +-- LedgerError
    |   +-- DuplicateSourceError
    |   +-- InsufficientBalanceError
    |   +-- LedgerCorruptionError         (fatal, never caught in-engine)
    |   +-- InvalidAmountError
    |   +-- InvalidTransferError
    |   +-- TipTransactionNotFoundError
    |
    +-- TimelineError
    |   +-- SegmentNotFoundError
    |   +-- InvalidSplitError
    |   +-- SegmentBoundaryError
    |
    +-- GroupError
    |   +-- GroupNotFoundError
    |   +-- GroupNotActiveError
    |   +-- AlreadyInGroupError
    |   +-- AlreadyMemberOrPendingError
    |   +-- NotGroupMemberError
    |   +-- NotGroupOwnerError
    |   +-- PendingRequestNotFoundError
    |
    +-- RuleError
    |   +-- RuleNotFoundError
    |   +-- InvalidRuleError
    |
    +-- ImmutabilityViolationError

Only LedgerCorruptionError is meant to escape to the process boundary.
Everything else is a recoverable, typed outcome of the operation that
raised it, and the surrounding savepoint guarantees nothing was written.
"""

from __future__ import annotations

from decimal import Decimal


class TipKernelError(Exception):
    """Base exception for all tip kernel errors."""

    code: str = "TIP_KERNEL_ERROR"


# =============================================================================
# Ledger
# =============================================================================


class LedgerError(TipKernelError):
    code: str = "LEDGER_ERROR"


class DuplicateSourceError(LedgerError):
    """An entry with the same (source_type, source_reference, worker_id) exists.

    The ledger converts this into an ALREADY_POSTED result; it only
    propagates from code that asks for strict posting.
    """

    code: str = "DUPLICATE_SOURCE"

    def __init__(self, source_type: str, source_reference: str, worker_id: str, existing_entry_id: str):
        self.source_type = source_type
        self.source_reference = source_reference
        self.worker_id = worker_id
        self.existing_entry_id = existing_entry_id
        super().__init__(
            f"{source_type} {source_reference} already posted for worker "
            f"{worker_id} as entry {existing_entry_id}"
        )


class InsufficientBalanceError(LedgerError):
    """The write would leave a worker balance below zero."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(self, worker_id: str, balance: Decimal, requested: Decimal):
        self.worker_id = worker_id
        self.balance = balance
        self.requested = requested
        self.shortfall = requested - balance
        super().__init__(
            f"Worker {worker_id} balance {balance} cannot cover debit of {requested}"
        )


class LedgerCorruptionError(LedgerError):
    """Cached balance disagrees with the entry history.

    Writes for the worker stay halted until the balance is rebuilt by an
    operator.
    """

    code: str = "LEDGER_CORRUPTION"

    def __init__(self, worker_id: str, cached_cents: int | None = None, computed_cents: int | None = None):
        self.worker_id = worker_id
        self.cached_cents = cached_cents
        self.computed_cents = computed_cents
        if cached_cents is None:
            msg = f"Ledger for worker {worker_id} is frozen pending manual reconciliation"
        else:
            msg = (
                f"Ledger corruption for worker {worker_id}: cached {cached_cents} "
                f"!= computed {computed_cents} (minor units)"
            )
        super().__init__(msg)


class InvalidAmountError(LedgerError):
    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class InvalidTransferError(LedgerError):
    code: str = "INVALID_TRANSFER"

    def __init__(self, from_worker_id: str, to_worker_id: str, reason: str):
        self.from_worker_id = from_worker_id
        self.to_worker_id = to_worker_id
        self.reason = reason
        super().__init__(f"Invalid transfer {from_worker_id} -> {to_worker_id}: {reason}")


class TipTransactionNotFoundError(LedgerError):
    code: str = "TIP_TRANSACTION_NOT_FOUND"

    def __init__(self, source_reference: str):
        self.source_reference = source_reference
        super().__init__(f"No allocated tip transaction for {source_reference}")


# =============================================================================
# Segment timeline
# =============================================================================


class TimelineError(TipKernelError):
    code: str = "TIMELINE_ERROR"


class SegmentNotFoundError(TimelineError):
    """No segment of the group contains the timestamp."""

    code: str = "SEGMENT_NOT_FOUND"

    def __init__(self, group_id: str, timestamp: object):
        self.group_id = group_id
        self.timestamp = timestamp
        super().__init__(f"No segment of group {group_id} contains {timestamp}")


class InvalidSplitError(TimelineError):
    """Split percentages are malformed or do not sum to 100."""

    code: str = "INVALID_SPLIT"

    def __init__(self, reason: str, total: Decimal | None = None):
        self.reason = reason
        self.total = total
        super().__init__(f"Invalid split: {reason}")


class SegmentBoundaryError(TimelineError):
    """Transition instant precedes the open segment's start."""

    code: str = "SEGMENT_BOUNDARY"

    def __init__(self, group_id: str, segment_start: object, at: object):
        self.group_id = group_id
        self.segment_start = segment_start
        self.at = at
        super().__init__(
            f"Cannot close segment of group {group_id} starting {segment_start} at {at}"
        )


# =============================================================================
# Group lifecycle
# =============================================================================


class GroupError(TipKernelError):
    code: str = "GROUP_ERROR"


class GroupNotFoundError(GroupError):
    code: str = "GROUP_NOT_FOUND"

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Tip group {group_id} not found")


class GroupNotActiveError(GroupError):
    code: str = "GROUP_NOT_ACTIVE"

    def __init__(self, group_id: str, status: str):
        self.group_id = group_id
        self.status = status
        super().__init__(f"Tip group {group_id} is {status}")


class AlreadyInGroupError(GroupError):
    """Worker already holds an ACTIVE membership; they must leave first."""

    code: str = "ALREADY_IN_GROUP"

    def __init__(self, worker_id: str, group_id: str | None = None):
        self.worker_id = worker_id
        self.group_id = group_id
        where = f" {group_id}" if group_id else ""
        super().__init__(f"Worker {worker_id} is already in active group{where}")


class AlreadyMemberOrPendingError(GroupError):
    code: str = "ALREADY_MEMBER_OR_PENDING"

    def __init__(self, group_id: str, worker_id: str, status: str):
        self.group_id = group_id
        self.worker_id = worker_id
        self.status = status
        super().__init__(f"Worker {worker_id} is already {status} in group {group_id}")


class NotGroupMemberError(GroupError):
    code: str = "NOT_GROUP_MEMBER"

    def __init__(self, group_id: str, worker_id: str):
        self.group_id = group_id
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} is not an active member of group {group_id}")


class NotGroupOwnerError(GroupError):
    code: str = "NOT_GROUP_OWNER"

    def __init__(self, group_id: str, worker_id: str):
        self.group_id = group_id
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} does not own group {group_id}")


class PendingRequestNotFoundError(GroupError):
    code: str = "PENDING_REQUEST_NOT_FOUND"

    def __init__(self, group_id: str, worker_id: str):
        self.group_id = group_id
        self.worker_id = worker_id
        super().__init__(f"No pending join request from {worker_id} for group {group_id}")


# =============================================================================
# Tip-out rules
# =============================================================================


class RuleError(TipKernelError):
    code: str = "RULE_ERROR"


class RuleNotFoundError(RuleError):
    code: str = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Tip-out rule {rule_id} not found")


class InvalidRuleError(RuleError):
    code: str = "INVALID_RULE"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid tip-out rule {field}: {reason}")


# =============================================================================
# Persistence guards
# =============================================================================


class ImmutabilityViolationError(TipKernelError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
