"""Change-detection cache over the persisted ``files`` table.

Classification is split in two phases.  :meth:`FileStateCache.classify`
compares the cheap filesystem metadata (mtime and size) against the stored
record and never touches file content.  Only when it reports
``POSSIBLY_CHANGED`` or ``NEW`` does the caller hash the file and call
:meth:`FileStateCache.confirm`.

A file rewritten with identical size and mtime inside one timestamp tick is
reported ``UNCHANGED``.  Callers that cannot accept that must hash every file
and confirm it regardless of the classification.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from filestamp.errors import MigrationError, RecordCorrupt, StoreUnavailable
from filestamp.infrastructure.db import FILES_TABLE, open_db, transaction
from filestamp.infrastructure.migrations import (
    SCHEMA_VERSION,
    get_schema_version,
    migrate_to_latest,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from pathlib import Path

    from filestamp.config import CacheConfig

logger = logging.getLogger(__name__)

DEFAULT_SCAN_BATCH_SIZE = 500

_SELECT_COLUMNS = "path, modified_since_epoch_sec, size, checksum"


class FileStatus(Enum):
    """Outcome of the cheap metadata comparison."""

    UNCHANGED = "unchanged"
    POSSIBLY_CHANGED = "possibly_changed"
    NEW = "new"


@dataclass(frozen=True)
class FileRecord:
    """Last observation of one tracked path."""

    path: str
    modified_since_epoch_sec: float
    size: int
    checksum: bytes


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _record_from_row(row: Sequence[Any]) -> FileRecord:
    """Decode a ``(path, mtime, size, checksum)`` row, checking invariants."""
    path = row[0]
    mtime, size, checksum = row[1], row[2], row[3]
    if not _is_number(mtime) or not math.isfinite(mtime):
        raise RecordCorrupt(path, f"modification time is not a finite number: {mtime!r}")
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise RecordCorrupt(path, f"size is not a non-negative integer: {size!r}")
    if not isinstance(checksum, bytes) or not checksum:
        raise RecordCorrupt(path, "checksum is missing or empty")
    return FileRecord(
        path=path,
        modified_since_epoch_sec=float(mtime),
        size=size,
        checksum=checksum,
    )


def _validate_observation(path: str, mtime: float, size: int) -> None:
    if not isinstance(path, str) or not path:
        raise ValueError(f"path must be a non-empty string, got {path!r}")
    if not _is_number(mtime) or not math.isfinite(mtime):
        raise ValueError(f"mtime must be a finite number, got {mtime!r}")
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise ValueError(f"size must be a non-negative integer, got {size!r}")


class FileStateCache:
    """Lookups and atomic updates of file observations in one store.

    Each :meth:`confirm` and :meth:`remove` is its own transaction, so a pass
    over a tree can be aborted between two paths without corrupting the
    store.  Writes through one instance are serialised; with WAL mode, readers in
    other connections are not blocked.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
    ) -> None:
        if scan_batch_size <= 0:
            raise ValueError(f"scan_batch_size must be positive, got {scan_batch_size}")
        self._conn: sqlite3.Connection | None = conn
        self._scan_batch_size = scan_batch_size
        self._lock = threading.Lock()

    # -- lifecycle ---------------------------------------------------------

    def __enter__(self) -> FileStateCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailable("store is closed")
        return self._conn

    def close(self) -> None:
        """Flush pending writes and release the connection.  Safe to repeat."""
        with self._lock:
            if self._conn is None:
                return
            conn, self._conn = self._conn, None
            try:
                if conn.in_transaction:
                    conn.execute("COMMIT")
            finally:
                conn.close()

    @property
    def schema_version(self) -> int:
        with self._lock:
            try:
                return get_schema_version(self._connection())
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"cannot read schema version: {exc}") from exc

    # -- reads -------------------------------------------------------------

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            conn = self._connection()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"cannot read store: {exc}") from exc

    def lookup(self, path: str) -> FileRecord | None:
        """Return the stored record for *path*, or None if never observed.

        Raises
        ------
        RecordCorrupt
            If the stored row violates the record invariants.
        StoreUnavailable
            If the store cannot be read.
        """
        rows = self._query(
            f"SELECT {_SELECT_COLUMNS} FROM {FILES_TABLE} WHERE path = ?",
            (path,),
        )
        if not rows:
            return None
        return _record_from_row(rows[0])

    def classify(self, path: str, observed_mtime: float, observed_size: int) -> FileStatus:
        """Compare freshly observed metadata with the stored record.

        ``UNCHANGED`` only when both mtime and size match exactly; the
        checksum is not consulted.
        """
        record = self.lookup(path)
        if record is None:
            return FileStatus.NEW
        if (
            record.modified_since_epoch_sec == float(observed_mtime)
            and record.size == observed_size
        ):
            return FileStatus.UNCHANGED
        return FileStatus.POSSIBLY_CHANGED

    def matches_content(self, path: str, size: int, checksum: bytes) -> bool:
        """Return True if *path* is stored with this size and checksum.

        The mtime is ignored: a match means only the metadata moved
        (e.g. the file was touched or copied over with identical bytes).
        """
        record = self.lookup(path)
        return record is not None and record.size == size and record.checksum == bytes(checksum)

    def scan_all(self, *, strict: bool = False) -> Iterator[FileRecord]:
        """Yield every stored record in path order.

        Rows are fetched in batches by key range, so no cursor stays open
        between batches and each call restarts from the first path.

        A corrupt row is logged and skipped, and the scan goes on with the
        next path.  With *strict* it raises :class:`RecordCorrupt` instead.
        """
        last_path: str | None = None
        while True:
            if last_path is None:
                rows = self._query(
                    f"SELECT {_SELECT_COLUMNS} FROM {FILES_TABLE} ORDER BY path LIMIT ?",
                    (self._scan_batch_size,),
                )
            else:
                rows = self._query(
                    f"SELECT {_SELECT_COLUMNS} FROM {FILES_TABLE} "
                    "WHERE path > ? ORDER BY path LIMIT ?",
                    (last_path, self._scan_batch_size),
                )
            for row in rows:
                try:
                    record = _record_from_row(row)
                except RecordCorrupt as exc:
                    if strict:
                        raise
                    logger.warning("Skipping %s", exc)
                    continue
                yield record
            if len(rows) < self._scan_batch_size:
                return
            last_path = rows[-1][0]

    def paths(self) -> set[str]:
        """Return every stored path without decoding the records."""
        rows = self._query(f"SELECT path FROM {FILES_TABLE}")
        return {row[0] for row in rows}

    def __len__(self) -> int:
        rows = self._query(f"SELECT count(*) FROM {FILES_TABLE}")
        return int(rows[0][0])

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        rows = self._query(f"SELECT 1 FROM {FILES_TABLE} WHERE path = ?", (path,))
        return bool(rows)

    # -- writes ------------------------------------------------------------

    def confirm(self, path: str, mtime: float, size: int, checksum: bytes) -> None:
        """Insert or replace the record for *path* in one transaction.

        Raises
        ------
        ValueError
            On invalid arguments; the store is not touched.
        StoreUnavailable
            If the write fails; the previous record is left intact.
        """
        _validate_observation(path, mtime, size)
        if not isinstance(checksum, (bytes, bytearray, memoryview)) or len(checksum) == 0:
            raise ValueError(f"checksum must be non-empty bytes, got {checksum!r}")
        digest = bytes(checksum)

        with self._lock:
            conn = self._connection()
            try:
                with transaction(conn):
                    conn.execute(
                        f"INSERT INTO {FILES_TABLE} ({_SELECT_COLUMNS}) VALUES (?, ?, ?, ?) "
                        "ON CONFLICT(path) DO UPDATE SET "
                        "modified_since_epoch_sec = excluded.modified_since_epoch_sec, "
                        "size = excluded.size, checksum = excluded.checksum",
                        (path, float(mtime), size, digest),
                    )
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"cannot record {path!r}: {exc}") from exc
        logger.debug("Confirmed %s (mtime=%s, size=%d)", path, mtime, size)

    def remove(self, path: str) -> None:
        """Delete the record for *path*; a missing record is not an error."""
        with self._lock:
            conn = self._connection()
            try:
                with transaction(conn):
                    conn.execute(f"DELETE FROM {FILES_TABLE} WHERE path = ?", (path,))
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"cannot remove {path!r}: {exc}") from exc
        logger.debug("Removed %s", path)


def open_store(
    db_path: Path,
    *,
    busy_timeout_sec: float = 5.0,
    scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
    migrate: bool = True,
) -> FileStateCache:
    """Open the store at *db_path*, migrate it, and return a cache over it.

    With ``migrate=False`` the store must already be at the latest schema
    version, otherwise :class:`MigrationError` is raised.
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StoreUnavailable(f"cannot create directory for {db_path}: {exc}") from exc

    conn = open_db(db_path, busy_timeout_sec=busy_timeout_sec)
    try:
        if migrate:
            migrate_to_latest(conn)
        else:
            version = get_schema_version(conn)
            if version != SCHEMA_VERSION:
                raise MigrationError(
                    f"store is at schema version {version}, expected {SCHEMA_VERSION}; "
                    "run the migrator first"
                )
    except BaseException:
        conn.close()
        raise
    return FileStateCache(conn, scan_batch_size=scan_batch_size)


def open_from_config(config: CacheConfig, *, migrate: bool = True) -> FileStateCache:
    """Open the store described by *config*."""
    return open_store(
        config.db_path,
        busy_timeout_sec=config.busy_timeout_sec,
        scan_batch_size=config.scan_batch_size,
        migrate=migrate,
    )
