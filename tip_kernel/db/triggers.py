"""
Module: tip_kernel.db.triggers
Responsibility: Install and remove the PostgreSQL triggers that back the
    ORM immutability listeners at the database level, so raw SQL and bulk
    statements cannot rewrite ledger history or reopen a closed segment.
Architecture position: Kernel > DB. Reads SQL files from db/sql/.
Failure modes:
    - Trigger violations surface as DBAPI errors (restrict_violation) wrapped
      by SQLAlchemy.
    - Tables must exist before installation; drop_all must run after removal.
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

from tip_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

SQL_DIR = Path(__file__).parent / "sql"

TRIGGER_FILES = [
    "01_ledger_entries.sql",
    "02_group_segments.sql",
]

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = [
    "trg_ledger_entry_immutability_update",
    "trg_ledger_entry_immutability_delete",
    "trg_group_segment_guard_update",
    "trg_group_segment_guard_delete",
]


def _load_sql_file(filename: str) -> str:
    return (SQL_DIR / filename).read_text(encoding="utf-8")


def install_immutability_triggers(engine: Engine) -> None:
    """Install all triggers. Idempotent (CREATE OR REPLACE / DROP IF EXISTS)."""
    sql = "\n".join(_load_sql_file(name) for name in TRIGGER_FILES)
    with engine.connect() as conn:
        conn.execute(text(sql))
        conn.commit()
    logger.info("immutability_triggers_installed", extra={"triggers": ALL_TRIGGER_NAMES})


def uninstall_immutability_triggers(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text(_load_sql_file(DROP_FILE)))
        conn.commit()


def triggers_installed(engine: Engine) -> bool:
    """True when every trigger in ALL_TRIGGER_NAMES exists."""
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                "SELECT tgname FROM pg_trigger "
                "WHERE NOT tgisinternal AND tgname = ANY(:names)"
            ),
            {"names": ALL_TRIGGER_NAMES},
        ).scalars().all()
    return set(rows) == set(ALL_TRIGGER_NAMES)
