"""SQLite connection helpers."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

_SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def get_db(db_path: str, timeout: float | None = None) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Enables WAL mode, foreign keys, and sqlite3.Row factory.  *timeout* is
    how long a writer waits on another writer's lock before failing with
    ``sqlite3.OperationalError``; it defaults to ``settings.db_busy_timeout``.
    """
    if timeout is None:
        from config import settings

        timeout = settings.db_busy_timeout
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Hold the database write lock for the duration of the block.

    Temporarily switches to autocommit (isolation_level = None) so the
    explicit BEGIN IMMEDIATE is not mixed with Python's implicit
    transaction management.  Commits on success, rolls back on any
    exception, and restores the original isolation_level either way.
    Model helpers called inside the block must use ``commit=False``.
    """
    original_isolation = conn.isolation_level
    try:
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
    finally:
        conn.isolation_level = original_isolation


def init_database(db_path: str) -> None:
    """Create all tables by executing schema.sql.

    Safe to call repeatedly; uses CREATE TABLE IF NOT EXISTS and
    INSERT OR IGNORE for the seeded code registry.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_db(db_path)
    try:
        conn.executescript(_SCHEMA_PATH.read_text())
    finally:
        conn.close()
