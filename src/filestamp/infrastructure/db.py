"""SQLite connection layer: connection factory, pragmas, transactions."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import TYPE_CHECKING

from filestamp.errors import StoreUnavailable

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger(__name__)

# Name of the single file-state table.
FILES_TABLE = "files"

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=MEMORY",
)

_TRANSACTION_MODES = frozenset({"DEFERRED", "IMMEDIATE", "EXCLUSIVE"})


def open_db(db_path: Path, *, busy_timeout_sec: float = 5.0) -> sqlite3.Connection:
    """Open (or create) the store file with the cache PRAGMAs.

    Sets WAL journal mode (persistent per-file) so readers in other
    connections proceed while one writer holds the lock.  The connection is
    in autocommit mode: every write goes through :func:`transaction`.

    Returns a connection with ``sqlite3.Row`` row factory.

    Raises
    ------
    StoreUnavailable
        If the file cannot be opened, created, or is not a SQLite database.
    """
    try:
        conn = sqlite3.connect(
            str(db_path),
            timeout=busy_timeout_sec,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"cannot open store {db_path}: {exc}") from exc

    try:
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMAS:
            conn.execute(pragma)
    except sqlite3.Error as exc:
        conn.close()
        raise StoreUnavailable(f"cannot open store {db_path}: {exc}") from exc

    logger.debug("Opened store %s", db_path)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
    """Run the body inside ``BEGIN <mode>`` … ``COMMIT``.

    Any exception rolls the transaction back and propagates unchanged, so a
    failed write never leaves a partial change visible.
    """
    if mode not in _TRANSACTION_MODES:
        raise ValueError(f"unknown transaction mode: {mode!r}")
    conn.execute(f"BEGIN {mode}")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Return True if *table* exists in the main schema."""
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    """Return column names of *table* in declaration order (empty if absent)."""
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def index_names(conn: sqlite3.Connection, table: str) -> set[str]:
    """Return names of all indexes on *table*, automatic ones included."""
    return {row["name"] for row in conn.execute(f"PRAGMA index_list({table})").fetchall()}
