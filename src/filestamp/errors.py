"""Exception hierarchy shared by the store, the migrator and the CLI."""

from __future__ import annotations


class FilestampError(Exception):
    """Base class for every error raised by filestamp."""


class StoreUnavailable(FilestampError):
    """The store file cannot be opened, created or written."""


class MigrationError(FilestampError):
    """The store cannot be brought to the target schema version."""


class ConfigError(FilestampError):
    """The configuration file is unreadable or holds invalid values."""


class RecordCorrupt(FilestampError):
    """A stored row violates the record invariants.

    Recoverable: callers may treat the path as never observed and
    re-confirm it.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"corrupt record for {path!r}: {reason}")
        self.path = path
        self.reason = reason
