"""Reconciliation pass: classify, hash when needed, confirm, detect removals."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from filestamp.checksum import checksum_fn
from filestamp.errors import RecordCorrupt
from filestamp.paths import relative_key
from filestamp.store import FileStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from filestamp.config import CacheConfig
    from filestamp.store import FileStateCache

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """What a reconciliation pass concluded for one path."""

    UNCHANGED = "unchanged"
    TOUCHED = "touched"
    MODIFIED = "modified"
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class Observation:
    """Freshly observed metadata for one file, supplied by the tree walker.

    ``path`` is the store key; ``location`` is where the content is read
    from when it must be hashed (defaults to ``path`` itself).
    """

    path: str
    modified_since_epoch_sec: float
    size: int
    location: Path | None = None

    @classmethod
    def from_file(cls, file_path: Path, *, root: Path | None = None) -> Observation:
        """Stat *file_path*; key it relative to *root* when given."""
        st = file_path.stat()
        key = relative_key(root, file_path) if root is not None else str(file_path)
        return cls(
            path=key,
            modified_since_epoch_sec=st.st_mtime,
            size=st.st_size,
            location=file_path,
        )

    def source(self) -> Path:
        return self.location if self.location is not None else Path(self.path)


@dataclass
class ChangeReport:
    """Summary of a reconciliation pass, one list of paths per outcome."""

    unchanged: list[str] = field(default_factory=list)
    touched: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> list[str]:
        """Paths whose content differs from the last observation."""
        return self.added + self.modified

    def paths_for(self, kind: ChangeKind) -> list[str]:
        return list(getattr(self, kind.value))

    def summary(self) -> str:
        return (
            f"{len(self.unchanged)} unchanged, {len(self.touched)} touched, "
            f"{len(self.modified)} modified, {len(self.added)} added, "
            f"{len(self.removed)} removed, {len(self.errors)} errors"
        )


def detect_changes(
    cache: FileStateCache,
    observations: Iterable[Observation],
    checksum: Callable[[Path], bytes],
    *,
    force_deep_check: bool = False,
    prune_missing: bool = True,
) -> ChangeReport:
    """Reconcile *observations* against the store and record the results.

    Parameters
    ----------
    cache:
        Open store to read and update.
    observations:
        Every file currently present, as produced by the caller's walk.
    checksum:
        Content digest function; only called for files whose metadata
        changed, or for every file with *force_deep_check*.
    force_deep_check:
        Hash every file instead of trusting matching mtime and size.
    prune_missing:
        Delete records of stored paths that were not observed.

    Returns
    -------
    ChangeReport
        Paths grouped by outcome.  Files that could not be hashed are listed
        in ``errors`` and their records are left untouched.
    """
    report = ChangeReport()
    observed: set[str] = set()

    for obs in observations:
        observed.add(obs.path)
        corrupt = False
        try:
            status = cache.classify(obs.path, obs.modified_since_epoch_sec, obs.size)
        except RecordCorrupt as exc:
            logger.warning("%s; re-observing as new", exc)
            status = FileStatus.NEW
            corrupt = True

        if status is FileStatus.UNCHANGED and not force_deep_check:
            report.unchanged.append(obs.path)
            continue

        try:
            digest = checksum(obs.source())
        except OSError as exc:
            logger.warning("Cannot hash %s: %s", obs.path, exc)
            report.errors.append(f"{obs.path}: {exc}")
            continue

        if status is not FileStatus.NEW and cache.matches_content(obs.path, obs.size, digest):
            if status is FileStatus.UNCHANGED:
                report.unchanged.append(obs.path)
                continue
            cache.confirm(obs.path, obs.modified_since_epoch_sec, obs.size, digest)
            logger.debug("Touched %s", obs.path)
            report.touched.append(obs.path)
            continue

        cache.confirm(obs.path, obs.modified_since_epoch_sec, obs.size, digest)
        if status is FileStatus.NEW and not corrupt:
            logger.debug("Added %s", obs.path)
            report.added.append(obs.path)
        else:
            logger.debug("Modified %s", obs.path)
            report.modified.append(obs.path)

    for path in sorted(cache.paths() - observed):
        if prune_missing:
            cache.remove(path)
        logger.debug("Removed %s", path)
        report.removed.append(path)

    logger.info("Reconciled %d paths: %s", len(observed), report.summary())
    return report


def reconcile(
    cache: FileStateCache,
    observations: Iterable[Observation],
    config: CacheConfig,
    *,
    prune_missing: bool = True,
) -> ChangeReport:
    """Run :func:`detect_changes` with the checksum and deep-check settings of *config*."""
    return detect_changes(
        cache,
        observations,
        checksum_fn(config.checksum_algorithm),
        force_deep_check=config.force_deep_check,
        prune_missing=prune_missing,
    )
