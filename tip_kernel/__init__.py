"""
Tip Kernel

Append-only tip ledger and time-segmented tip-group timeline:
- Idempotent ledger posting keyed by source reference
- Transactionally maintained balance cache with reconciliation
- Per-group segment timeline with atomic close-and-reopen
- Explicit single-active-group index per worker
"""

__version__ = "0.1.0"
