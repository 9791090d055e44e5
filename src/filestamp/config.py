"""Configuration loading from ``filestamp.yml``."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from filestamp.checksum import validate_algorithm
from filestamp.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "filestamp.yml"
DEFAULT_DB_NAME = "filestamp.sqlite"


@dataclass
class CacheConfig:
    """Settings for opening and driving a file-state store."""

    db_path: Path = field(default_factory=lambda: Path(DEFAULT_DB_NAME))
    busy_timeout_sec: float = 5.0
    checksum_algorithm: str = "sha256"
    force_deep_check: bool = False
    scan_batch_size: int = 500


_KNOWN_KEYS = frozenset(f.name for f in fields(CacheConfig))


def _require_number(key: str, value: Any, *, minimum: float, strict: bool = False) -> float:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    if value < minimum or (strict and value == minimum):
        bound = ">" if strict else ">="
        raise ConfigError(f"'{key}' must be {bound} {minimum}, got {value!r}")
    return value


def _parse(data: dict[str, Any], base_dir: Path) -> CacheConfig:
    config = CacheConfig()

    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

    if "db_path" in data:
        db_path = data["db_path"]
        if not isinstance(db_path, str) or not db_path:
            raise ConfigError(f"'db_path' must be a non-empty string, got {db_path!r}")
        config.db_path = Path(db_path)
    if not config.db_path.is_absolute():
        config.db_path = base_dir / config.db_path

    if "busy_timeout_sec" in data:
        config.busy_timeout_sec = float(
            _require_number("busy_timeout_sec", data["busy_timeout_sec"], minimum=0)
        )

    if "checksum_algorithm" in data:
        algorithm = data["checksum_algorithm"]
        if not isinstance(algorithm, str) or algorithm not in hashlib.algorithms_available:
            raise ConfigError(f"'checksum_algorithm' is not a hashlib algorithm: {algorithm!r}")
        try:
            validate_algorithm(algorithm)
        except ConfigError as exc:
            raise ConfigError(f"'checksum_algorithm': {exc}") from exc
        config.checksum_algorithm = algorithm

    if "force_deep_check" in data:
        flag = data["force_deep_check"]
        if not isinstance(flag, bool):
            raise ConfigError(f"'force_deep_check' must be true or false, got {flag!r}")
        config.force_deep_check = flag

    if "scan_batch_size" in data:
        size = data["scan_batch_size"]
        if isinstance(size, bool) or not isinstance(size, int):
            raise ConfigError(f"'scan_batch_size' must be an integer, got {size!r}")
        config.scan_batch_size = int(_require_number("scan_batch_size", size, minimum=0, strict=True))

    return config


def load_config(path: Path | None = None) -> CacheConfig:
    """Load configuration from *path* (default: ``./filestamp.yml``).

    A missing file yields the defaults, with ``db_path`` resolved against
    the directory the file would live in.  Relative ``db_path`` values are
    resolved against the config file's directory.
    """
    config_path = path if path is not None else Path.cwd() / DEFAULT_CONFIG_NAME
    base_dir = config_path.parent

    if not config_path.exists():
        logger.debug("No config at %s, using defaults", config_path)
        return _parse({}, base_dir)

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"cannot read {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    return _parse(data, base_dir)
