"""Tests for filestamp.detector: reconciliation of observed files against the store."""

from __future__ import annotations

import os
import sqlite3
from typing import TYPE_CHECKING

import pytest

from filestamp.checksum import file_checksum
from filestamp.config import CacheConfig
from filestamp.detector import ChangeKind, ChangeReport, Observation, detect_changes, reconcile
from filestamp.errors import ConfigError
from filestamp.infrastructure.migrations import SCHEMA_VERSION
from filestamp.store import open_store

if TYPE_CHECKING:
    from pathlib import Path

    from filestamp.store import FileStateCache


class CountingChecksum:
    """Checksum callable that records which files were hashed."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def __call__(self, path: Path) -> bytes:
        self.calls.append(path.name)
        return file_checksum(path)


@pytest.fixture()
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_text("<h1>hello</h1>")
    (root / "css" / "main.css").write_text("body { color: red; }")
    (root / "robots.txt").write_text("User-agent: *")
    return root


def _observe(root: Path) -> list[Observation]:
    return [
        Observation.from_file(p, root=root) for p in sorted(root.rglob("*")) if p.is_file()
    ]


def _set_mtime(path: Path, mtime_ns: int) -> None:
    os.utime(path, ns=(mtime_ns, mtime_ns))


class TestObservation:
    def test_from_file_relative_key(self, tree: Path) -> None:
        obs = Observation.from_file(tree / "css" / "main.css", root=tree)
        assert obs.path == "css/main.css"
        assert obs.size == len("body { color: red; }")
        assert obs.source() == tree / "css" / "main.css"

    def test_from_file_without_root(self, tree: Path) -> None:
        target = tree / "index.html"
        obs = Observation.from_file(target)
        assert obs.path == str(target)
        assert obs.modified_since_epoch_sec == target.stat().st_mtime

    def test_source_defaults_to_path(self) -> None:
        obs = Observation("some/file.txt", 1.0, 1)
        assert str(obs.source()) == os.path.join("some", "file.txt")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            Observation.from_file(tmp_path / "nope")


class TestFirstPass:
    def test_everything_added(self, cache: FileStateCache, tree: Path) -> None:
        checksum = CountingChecksum()
        report = detect_changes(cache, _observe(tree), checksum)

        assert sorted(report.added) == ["css/main.css", "index.html", "robots.txt"]
        assert report.modified == report.unchanged == report.removed == []
        assert len(checksum.calls) == 3
        assert cache.paths() == {"css/main.css", "index.html", "robots.txt"}

    def test_records_match_files(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        record = cache.lookup("index.html")
        assert record is not None
        assert record.checksum == file_checksum(tree / "index.html")
        assert record.size == (tree / "index.html").stat().st_size


class TestSecondPass:
    def test_nothing_changed_skips_hashing(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        checksum = CountingChecksum()

        report = detect_changes(cache, _observe(tree), checksum)

        assert sorted(report.unchanged) == ["css/main.css", "index.html", "robots.txt"]
        assert report.changed == []
        assert checksum.calls == []

    def test_content_change_is_modified(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        (tree / "index.html").write_text("<h1>hello, world</h1>")

        report = detect_changes(cache, _observe(tree), file_checksum)

        assert report.modified == ["index.html"]
        assert report.changed == ["index.html"]
        record = cache.lookup("index.html")
        assert record is not None
        assert record.checksum == file_checksum(tree / "index.html")

    def test_touch_without_content_change(self, cache: FileStateCache, tree: Path) -> None:
        target = tree / "robots.txt"
        _set_mtime(target, 1_600_000_000_000_000_000)
        detect_changes(cache, _observe(tree), file_checksum)
        _set_mtime(target, 1_700_000_000_000_000_000)

        report = detect_changes(cache, _observe(tree), file_checksum)

        assert report.touched == ["robots.txt"]
        assert report.changed == []
        record = cache.lookup("robots.txt")
        assert record is not None
        assert record.modified_since_epoch_sec == target.stat().st_mtime
        # Refreshed metadata makes the next pass cheap again.
        checksum = CountingChecksum()
        detect_changes(cache, _observe(tree), checksum)
        assert checksum.calls == []

    def test_added_file(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        (tree / "css" / "print.css").write_text("@media print {}")

        report = detect_changes(cache, _observe(tree), file_checksum)

        assert report.added == ["css/print.css"]

    def test_same_size_same_mtime_rewrite_is_missed(
        self, cache: FileStateCache, tree: Path
    ) -> None:
        target = tree / "index.html"
        _set_mtime(target, 1_650_000_000_000_000_000)
        detect_changes(cache, _observe(tree), file_checksum)
        target.write_text("<h1>HELLO</h1>")
        _set_mtime(target, 1_650_000_000_000_000_000)

        cheap = detect_changes(cache, _observe(tree), file_checksum)
        assert "index.html" in cheap.unchanged

        deep = detect_changes(cache, _observe(tree), file_checksum, force_deep_check=True)
        assert deep.modified == ["index.html"]
        assert sorted(deep.unchanged) == ["css/main.css", "robots.txt"]


class TestRemovals:
    def test_deleted_file_pruned(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        (tree / "robots.txt").unlink()

        report = detect_changes(cache, _observe(tree), file_checksum)

        assert report.removed == ["robots.txt"]
        assert "robots.txt" not in cache

    def test_deleted_file_kept_without_prune(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        (tree / "robots.txt").unlink()

        report = detect_changes(cache, _observe(tree), file_checksum, prune_missing=False)

        assert report.removed == ["robots.txt"]
        assert "robots.txt" in cache


class TestErrors:
    def test_unreadable_file_reported(self, cache: FileStateCache, tree: Path) -> None:
        detect_changes(cache, _observe(tree), file_checksum)
        before = cache.lookup("index.html")
        (tree / "index.html").write_text("changed content, longer than before")

        def _flaky(path: Path) -> bytes:
            if path.name == "index.html":
                raise PermissionError(f"denied: {path}")
            return file_checksum(path)

        report = detect_changes(cache, _observe(tree), _flaky)

        assert len(report.errors) == 1
        assert report.errors[0].startswith("index.html:")
        assert report.removed == []
        assert cache.lookup("index.html") == before

    def test_vanished_between_stat_and_hash(self, cache: FileStateCache, tree: Path) -> None:
        observations = _observe(tree)
        (tree / "robots.txt").unlink()

        report = detect_changes(cache, observations, file_checksum)

        assert len(report.errors) == 1
        assert "robots.txt" not in cache

    def test_corrupt_record_is_reobserved(self, tmp_path: Path, tree: Path) -> None:
        db = tmp_path / "loose.sqlite"
        raw = sqlite3.connect(str(db))
        raw.execute(
            "CREATE TABLE files (path TEXT PRIMARY KEY, modified_since_epoch_sec REAL, "
            "size INTEGER, checksum BLOB)"
        )
        raw.execute("INSERT INTO files VALUES ('index.html', 1.0, 1, NULL)")
        raw.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        raw.commit()
        raw.close()

        with open_store(db) as cache:
            report = detect_changes(cache, _observe(tree), file_checksum)
            assert report.modified == ["index.html"]
            record = cache.lookup("index.html")
            assert record is not None
            assert record.checksum == file_checksum(tree / "index.html")


class TestReconcile:
    def test_uses_configured_algorithm(self, cache: FileStateCache, tree: Path) -> None:
        config = CacheConfig(checksum_algorithm="md5")
        reconcile(cache, _observe(tree), config)
        record = cache.lookup("robots.txt")
        assert record is not None
        assert record.checksum == file_checksum(tree / "robots.txt", "md5")

    def test_force_deep_check_from_config(self, cache: FileStateCache, tree: Path) -> None:
        target = tree / "index.html"
        _set_mtime(target, 1_650_000_000_000_000_000)
        reconcile(cache, _observe(tree), CacheConfig())
        target.write_text("<h1>HELLO</h1>")
        _set_mtime(target, 1_650_000_000_000_000_000)

        report = reconcile(cache, _observe(tree), CacheConfig(force_deep_check=True))

        assert report.modified == ["index.html"]

    def test_variable_length_algorithm_rejected_before_any_write(
        self, cache: FileStateCache, tree: Path
    ) -> None:
        config = CacheConfig(checksum_algorithm="shake_128")
        with pytest.raises(ConfigError, match="no fixed digest size"):
            reconcile(cache, _observe(tree), config)
        assert len(cache) == 0


class TestChangeReport:
    def test_summary(self) -> None:
        report = ChangeReport(unchanged=["a", "b"], added=["c"], removed=["d"])
        assert report.summary() == (
            "2 unchanged, 0 touched, 0 modified, 1 added, 1 removed, 0 errors"
        )

    def test_paths_for(self) -> None:
        report = ChangeReport(modified=["m"], touched=["t"])
        assert report.paths_for(ChangeKind.MODIFIED) == ["m"]
        assert report.paths_for(ChangeKind.TOUCHED) == ["t"]
        assert report.paths_for(ChangeKind.ADDED) == []
