"""Schema migrator: ordered, versioned, atomic upgrades of the store.

The recorded version lives in ``PRAGMA user_version``.  Each step runs in
its own exclusive transaction together with the version bump, so a store is
always at exactly one valid version, even after a crash mid-upgrade.

Version history:

1. create ``files`` with an explicit index on ``path``
2. drop that index (the primary key already carries an automatic one)
3. rebuild any ``files`` table that is not exactly the canonical layout:
   the legacy lineage, which stored the mtime in a ``datetime`` column, and
   tables with the canonical names but looser types or constraints
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING

from filestamp.errors import MigrationError
from filestamp.infrastructure.db import FILES_TABLE, table_columns, transaction

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

CANONICAL_COLUMNS = ("path", "modified_since_epoch_sec", "size", "checksum")
LEGACY_COLUMNS = ("path", "datetime", "size", "checksum")

# (name, declared type, not null, default, primary key) as in PRAGMA table_info.
CANONICAL_LAYOUT = (
    ("path", "TEXT", 1, None, 1),
    ("modified_since_epoch_sec", "REAL", 1, None, 0),
    ("size", "INTEGER", 1, None, 0),
    ("checksum", "BLOB", 1, None, 0),
)

_SIZE_CHECK_RE = re.compile(r"CHECK\s*\(\s*size\s*>=\s*0\s*\)", re.IGNORECASE)

# Explicit index created by version 1 and dropped by version 2.
LEGACY_PATH_INDEX = "files_path_idx"


def _files_ddl(table: str, *, if_not_exists: bool = False) -> str:
    guard = "IF NOT EXISTS " if if_not_exists else ""
    return (
        f"CREATE TABLE {guard}{table} (\n"
        "    path                     TEXT PRIMARY KEY NOT NULL,\n"
        "    modified_since_epoch_sec REAL NOT NULL,\n"
        "    size                     INTEGER NOT NULL CHECK (size >= 0),\n"
        "    checksum                 BLOB NOT NULL\n"
        ") STRICT"
    )


@dataclass(frozen=True)
class Migration:
    """One schema-evolution step, applied at most once per store."""

    version: int
    description: str
    apply: Callable[[sqlite3.Connection], None]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _create_files_table(conn: sqlite3.Connection) -> None:
    # IF NOT EXISTS adopts an unversioned table left by an older tool;
    # step 3 normalises its layout.
    conn.execute(_files_ddl(FILES_TABLE, if_not_exists=True))
    conn.execute(f"CREATE INDEX IF NOT EXISTS {LEGACY_PATH_INDEX} ON {FILES_TABLE}(path)")


def _drop_path_index(conn: sqlite3.Connection) -> None:
    conn.execute(f"DROP INDEX IF EXISTS {LEGACY_PATH_INDEX}")


def _is_canonical_layout(conn: sqlite3.Connection) -> bool:
    layout = tuple(
        (row[1], row[2].upper(), row[3], row[4], row[5])
        for row in conn.execute(f"PRAGMA table_info({FILES_TABLE})").fetchall()
    )
    if layout != CANONICAL_LAYOUT:
        return False
    strict = conn.execute(f"PRAGMA table_list({FILES_TABLE})").fetchone()
    sql = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (FILES_TABLE,)
    ).fetchone()
    return bool(strict[5]) and _SIZE_CHECK_RE.search(sql[0]) is not None


def _normalise_files_table(conn: sqlite3.Connection) -> None:
    columns = tuple(table_columns(conn, FILES_TABLE))
    if columns == CANONICAL_COLUMNS:
        if _is_canonical_layout(conn):
            return
        mtime_column = "modified_since_epoch_sec"
    elif columns == LEGACY_COLUMNS:
        mtime_column = "datetime"
    else:
        raise MigrationError(
            f"table '{FILES_TABLE}' has an unrecognised layout: {', '.join(columns) or '(none)'}"
        )

    rebuilt = f"{FILES_TABLE}_canonical"
    conn.execute(_files_ddl(rebuilt))
    conn.execute(
        f"INSERT INTO {rebuilt} (path, modified_since_epoch_sec, size, checksum) "
        f"SELECT path, {mtime_column}, size, checksum FROM {FILES_TABLE}"
    )
    conn.execute(f"DROP TABLE {FILES_TABLE}")
    conn.execute(f"ALTER TABLE {rebuilt} RENAME TO {FILES_TABLE}")


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "create files table", _create_files_table),
    Migration(2, "drop redundant index on files.path", _drop_path_index),
    Migration(3, "rebuild non-canonical files table layouts", _normalise_files_table),
)

SCHEMA_VERSION = MIGRATIONS[-1].version


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the recorded schema version (0 for a fresh store)."""
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0])


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    # PRAGMA arguments cannot be bound; version is always an int here.
    conn.execute(f"PRAGMA user_version = {int(version)}")


def validate_migrations(migrations: Sequence[Migration]) -> None:
    """Check that *migrations* are numbered exactly ``1..N`` in order.

    Raises
    ------
    MigrationError
        On an empty registry, a gap, a duplicate, or an out-of-order step.
    """
    if not migrations:
        raise MigrationError("no migrations registered")
    for expected, migration in enumerate(migrations, start=1):
        if migration.version != expected:
            raise MigrationError(
                f"migration history is corrupted: expected version {expected}, "
                f"found {migration.version} ({migration.description})"
            )


def _resolve_target(
    current: int,
    target: int | None,
    migrations: Sequence[Migration],
) -> int:
    latest = migrations[-1].version
    if current < 0:
        raise MigrationError(f"store records an invalid schema version {current}")
    if current > latest:
        raise MigrationError(
            f"store is at schema version {current}, newer than the latest known "
            f"version {latest}; it was written by a newer tool"
        )
    if target is None:
        return latest
    if target < 0 or target > latest:
        raise MigrationError(f"unknown target schema version {target} (latest is {latest})")
    if target < current:
        raise MigrationError(
            f"store is at schema version {current}; downgrading to {target} is not supported"
        )
    return target


def pending_migrations(
    conn: sqlite3.Connection,
    target: int | None = None,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> list[Migration]:
    """Return the steps that :func:`migrate_to_latest` would apply."""
    validate_migrations(migrations)
    current = get_schema_version(conn)
    resolved = _resolve_target(current, target, migrations)
    return [m for m in migrations if current < m.version <= resolved]


def migrate_to_latest(
    conn: sqlite3.Connection,
    target: int | None = None,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> list[int]:
    """Apply every pending step up to *target* (default: the latest).

    Each step runs inside ``BEGIN EXCLUSIVE`` and re-reads the recorded
    version first, so a step already applied by a concurrent migrator is
    skipped rather than replayed.

    Returns
    -------
    list[int]
        Versions applied by this call; empty when already up to date.

    Raises
    ------
    MigrationError
        If the store cannot be upgraded; the store is left at the last
        version that completed.
    """
    applied: list[int] = []
    for migration in pending_migrations(conn, target, migrations):
        try:
            with transaction(conn, "EXCLUSIVE"):
                recorded = get_schema_version(conn)
                if recorded >= migration.version:
                    logger.debug("Migration %d already applied", migration.version)
                    continue
                if recorded != migration.version - 1:
                    raise MigrationError(
                        f"cannot apply migration {migration.version} on top of "
                        f"version {recorded}"
                    )
                migration.apply(conn)
                _set_schema_version(conn, migration.version)
        except MigrationError:
            raise
        except sqlite3.Error as exc:
            raise MigrationError(
                f"migration {migration.version} ({migration.description}) failed: {exc}"
            ) from exc
        logger.info("Applied migration %d: %s", migration.version, migration.description)
        applied.append(migration.version)
    return applied
