"""
ORM-level immutability enforcement.

Three record kinds are append-only:

Entity          | Rule
----------------|-------------------------------------------------------
LedgerEntry     | never updated, never deleted
GroupSegment    | only ``end_time`` may change, and only from NULL;
                | never deleted
TipAdjustment   | never updated, never deleted

The listeners fire on ``before_update`` / ``before_delete`` so the SQL is
never sent. db/triggers.py enforces the same rules in PostgreSQL for code
that bypasses the ORM.

    from tip_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup
"""

from sqlalchemy import event, inspect

from tip_kernel.exceptions import ImmutabilityViolationError
from tip_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id: object, operation: str, reason: str) -> ImmutabilityViolationError:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(entity_type, str(entity_id), reason)


def _check_ledger_entry_update(mapper, connection, target):
    changed = [a.key for a in inspect(target).attrs if a.history.has_changes()]
    if changed:
        raise _blocked("LedgerEntry", target.id, "UPDATE", f"entries are append-only (fields {changed})")


def _check_ledger_entry_delete(mapper, connection, target):
    raise _blocked("LedgerEntry", target.id, "DELETE", "entries are append-only")


def _check_adjustment_update(mapper, connection, target):
    changed = [a.key for a in inspect(target).attrs if a.history.has_changes()]
    if changed:
        raise _blocked("TipAdjustment", target.id, "UPDATE", f"adjustments are append-only (fields {changed})")


def _check_adjustment_delete(mapper, connection, target):
    raise _blocked("TipAdjustment", target.id, "DELETE", "adjustments are append-only")


def _check_segment_update(mapper, connection, target):
    insp = inspect(target)
    for attr in insp.attrs:
        hist = attr.history
        if not hist.has_changes():
            continue
        if attr.key != "end_time":
            raise _blocked("GroupSegment", target.id, "UPDATE", f"field '{attr.key}' is fixed at creation")
        previous = hist.deleted[0] if hist.deleted else None
        if previous is not None:
            raise _blocked("GroupSegment", target.id, "UPDATE", "segment is already closed")


def _check_segment_delete(mapper, connection, target):
    raise _blocked("GroupSegment", target.id, "DELETE", "segments are never deleted")


_LISTENERS = (
    ("LedgerEntry", "before_update", _check_ledger_entry_update),
    ("LedgerEntry", "before_delete", _check_ledger_entry_delete),
    ("GroupSegment", "before_update", _check_segment_update),
    ("GroupSegment", "before_delete", _check_segment_delete),
    ("TipAdjustment", "before_update", _check_adjustment_update),
    ("TipAdjustment", "before_delete", _check_adjustment_delete),
)


def _models() -> dict:
    from tip_kernel.models.adjustment import TipAdjustment
    from tip_kernel.models.ledger import LedgerEntry
    from tip_kernel.models.tip_group import GroupSegment

    return {"LedgerEntry": LedgerEntry, "GroupSegment": GroupSegment, "TipAdjustment": TipAdjustment}


def register_immutability_listeners() -> None:
    models = _models()
    for name, event_name, fn in _LISTENERS:
        if not event.contains(models[name], event_name, fn):
            event.listen(models[name], event_name, fn)


def unregister_immutability_listeners() -> None:
    """Tests only: allows deliberate tampering to verify detection."""
    models = _models()
    for name, event_name, fn in _LISTENERS:
        if event.contains(models[name], event_name, fn):
            event.remove(models[name], event_name, fn)
