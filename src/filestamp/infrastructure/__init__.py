"""Infrastructure layer: SQLite connection handling and schema migrations."""

from filestamp.infrastructure.db import (
    FILES_TABLE,
    index_names,
    open_db,
    table_columns,
    table_exists,
    transaction,
)
from filestamp.infrastructure.migrations import (
    MIGRATIONS,
    SCHEMA_VERSION,
    Migration,
    get_schema_version,
    migrate_to_latest,
    pending_migrations,
    validate_migrations,
)

__all__ = [
    "FILES_TABLE",
    "MIGRATIONS",
    "SCHEMA_VERSION",
    "Migration",
    "get_schema_version",
    "index_names",
    "migrate_to_latest",
    "open_db",
    "pending_migrations",
    "table_columns",
    "table_exists",
    "transaction",
    "validate_migrations",
]
