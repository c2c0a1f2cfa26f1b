"""
Source reference builders.

A ledger entry's idempotency key is (source_type, source_reference,
worker_id). These helpers are the only place reference strings are
assembled, so a redelivered event always rebuilds byte-identical keys.
"""

from uuid import UUID


def member_reference(source_reference: str, *worker_ids: str) -> str:
    """
    Reference for one member's slice of a payment.

    Example:
        >>> member_reference("order-9:pay-2", "alice")
        "order-9:pay-2:alice"
        >>> member_reference("order-9:pay-2", "alice", "bob")
        "order-9:pay-2:alice:bob"
    """
    return ":".join((source_reference, *worker_ids))


def fee_reference(credit_reference: str) -> str:
    return f"{credit_reference}:fee"


def transfer_reference(transfer_id: UUID | str) -> str:
    return f"transfer:{transfer_id}"


def payout_reference(payout_id: UUID | str) -> str:
    return f"payout:{payout_id}"


def adjustment_reference(adjustment_id: UUID | str) -> str:
    return f"adjustment:{adjustment_id}"


def tip_out_reference(shift_id: str, rule_id: UUID | str) -> str:
    return f"tipout:{shift_id}:{rule_id}"


def chargeback_reference(credit_reference: str) -> str:
    return f"chargeback:{credit_reference}"


RECALCULATION_PREFIX = "recalc:"


def recalculation_reference(adjustment_id: UUID | str, payment_reference: str) -> str:
    """
    Reference for the correction one recalculation run posts against one
    payment. Each run has its own adjustment id, so a later run can post
    again for the same payment and worker.

    Example:
        >>> recalculation_reference("5f0c...", "order-9:pay-2")
        "recalc:5f0c...:order-9:pay-2"
    """
    return f"{RECALCULATION_PREFIX}{adjustment_id}:{payment_reference}"


def is_recalculation_reference(source_reference: str) -> bool:
    return source_reference.startswith(RECALCULATION_PREFIX)
