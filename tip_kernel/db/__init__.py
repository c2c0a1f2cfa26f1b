"""Database layer - engine, base classes, types and immutability guards."""

from tip_kernel.db.base import Base, TrackedBase
from tip_kernel.db.engine import create_tables, get_engine, get_session, session_scope
from tip_kernel.db.types import DecimalString, UTCDateTime, UUIDString

__all__ = [
    "Base",
    "DecimalString",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session",
    "session_scope",
]
