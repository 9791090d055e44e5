"""Shared test fixtures for Filestamp."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

from filestamp.store import open_store

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from filestamp.store import FileStateCache

# DDL of the legacy lineage, as shipped by the tool's first releases.
LEGACY_DDL = """\
CREATE TABLE files (
    path TEXT PRIMARY KEY,
    datetime REAL NOT NULL,
    size INT NOT NULL,
    checksum BLOB NOT NULL
) STRICT;
"""

LEGACY_INDEX_DDL = "CREATE INDEX files_path_idx ON files(path);"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "filestamp.sqlite"


@pytest.fixture()
def cache(db_path: Path) -> Iterator[FileStateCache]:
    """A freshly migrated store, closed after the test."""
    c = open_store(db_path)
    yield c
    c.close()


@pytest.fixture()
def make_legacy_store(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a store in the legacy ``datetime`` column layout."""

    def _make(
        rows: list[tuple[str, float, int, bytes]],
        *,
        version: int = 1,
        with_index: bool = True,
        name: str = "legacy.sqlite",
    ) -> Path:
        path = tmp_path / name
        conn = sqlite3.connect(str(path))
        conn.executescript(LEGACY_DDL)
        if with_index:
            conn.executescript(LEGACY_INDEX_DDL)
        conn.executemany(
            "INSERT INTO files (path, datetime, size, checksum) VALUES (?, ?, ?, ?)",
            rows,
        )
        conn.execute(f"PRAGMA user_version = {version}")
        conn.commit()
        conn.close()
        return path

    return _make
