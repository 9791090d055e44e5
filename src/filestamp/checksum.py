"""Default content digests, streamed with :mod:`hashlib`."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any

from filestamp.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

CHUNK_SIZE = 1 << 16
DEFAULT_ALGORITHM = "sha256"


def _new_hasher(algorithm: str) -> Any:
    try:
        hasher = hashlib.new(algorithm)
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"unsupported checksum algorithm: {algorithm!r}") from exc
    # SHAKE digests take a length argument; only fixed-size digests are stored.
    if hasher.digest_size == 0:
        raise ConfigError(f"checksum algorithm {algorithm!r} has no fixed digest size")
    return hasher


def validate_algorithm(algorithm: str) -> None:
    """Raise :class:`ConfigError` unless *algorithm* yields fixed-size digests."""
    _new_hasher(algorithm)


def file_checksum(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> bytes:
    """Hash the content of *path* in fixed-size chunks.

    Raises ``OSError`` if the file cannot be read.
    """
    hasher = _new_hasher(algorithm)
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.digest()


def checksum_fn(algorithm: str = DEFAULT_ALGORITHM) -> Callable[[Path], bytes]:
    """Return a one-argument hashing callable bound to *algorithm*.

    The algorithm is checked eagerly so a bad name fails before any file is
    read.
    """
    validate_algorithm(algorithm)

    def _checksum(path: Path) -> bytes:
        return file_checksum(path, algorithm)

    return _checksum
