"""Filestamp CLI entry point: store maintenance commands."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click

from filestamp import __version__
from filestamp.config import load_config
from filestamp.errors import FilestampError

if TYPE_CHECKING:
    from filestamp.config import CacheConfig
    from filestamp.store import FileStateCache


def _fail(exc: Exception) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


def _config(ctx: click.Context) -> CacheConfig:
    config: CacheConfig = ctx.obj["config"]
    return config


def _open(ctx: click.Context, *, migrate: bool) -> FileStateCache:
    from filestamp.store import open_from_config

    try:
        return open_from_config(_config(ctx), migrate=migrate)
    except FilestampError as exc:
        _fail(exc)


@click.group()
@click.version_option(version=__version__, prog_name="filestamp")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ./filestamp.yml).",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Store file (overrides db_path from the config).",
)
@click.pass_context
def main(
    ctx: click.Context,
    *,
    verbose: bool,
    quiet: bool,
    config_path: Path | None,
    db_path: Path | None,
) -> None:
    """Filestamp - persisted file-state cache for change detection."""
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(config_path)
    except FilestampError as exc:
        _fail(exc)
    if db_path is not None:
        config.db_path = db_path

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


@main.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Bring the store to the latest schema version."""
    from filestamp.infrastructure.db import open_db
    from filestamp.infrastructure.migrations import get_schema_version, migrate_to_latest

    config = _config(ctx)
    try:
        config.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = open_db(config.db_path, busy_timeout_sec=config.busy_timeout_sec)
    except (OSError, FilestampError) as exc:
        _fail(exc)
    try:
        before = get_schema_version(conn)
        applied = migrate_to_latest(conn)
        after = get_schema_version(conn)
    except FilestampError as exc:
        _fail(exc)
    finally:
        conn.close()

    if ctx.obj["quiet"]:
        return
    if applied:
        steps = ", ".join(str(v) for v in applied)
        click.echo(f"Migrated {config.db_path}: version {before} -> {after} (steps {steps})")
    else:
        click.echo(f"{config.db_path} is up to date (version {after})")


@main.command()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, *, output_json: bool) -> None:
    """Show schema version and record count without modifying the store."""
    from filestamp.infrastructure.db import FILES_TABLE, open_db, table_exists
    from filestamp.infrastructure.migrations import (
        SCHEMA_VERSION,
        get_schema_version,
        pending_migrations,
    )

    config = _config(ctx)
    if not config.db_path.exists():
        _fail(
            FilestampError(f"store not found: {config.db_path}. Run `filestamp migrate` first.")
        )

    try:
        conn = open_db(config.db_path, busy_timeout_sec=config.busy_timeout_sec)
    except FilestampError as exc:
        _fail(exc)
    try:
        version = get_schema_version(conn)
        pending = [m.version for m in pending_migrations(conn)]
        records = 0
        if table_exists(conn, FILES_TABLE):
            records = conn.execute(f"SELECT count(*) FROM {FILES_TABLE}").fetchone()[0]
    except FilestampError as exc:
        _fail(exc)
    finally:
        conn.close()

    if output_json:
        data = {
            "db_path": str(config.db_path),
            "schema_version": version,
            "latest_version": SCHEMA_VERSION,
            "pending": pending,
            "records": records,
        }
        click.echo(json.dumps(data, ensure_ascii=False, indent=2))
        return

    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(title=f"Filestamp v{__version__}", show_header=False, box=None, padding=(0, 1))
    table.add_column("metric", style="cyan")
    table.add_column("value", justify="right")
    table.add_row("Store", str(config.db_path))
    table.add_row("Schema version", f"{version}/{SCHEMA_VERSION}")
    table.add_row("Pending steps", ", ".join(str(v) for v in pending) or "none")
    table.add_row("Records", str(records))
    console.print(table)


@main.command("ls")
@click.argument("prefix", required=False, default="")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def ls_cmd(ctx: click.Context, *, prefix: str, output_json: bool) -> None:
    """List stored records, optionally only those under PREFIX."""
    with _open(ctx, migrate=False) as cache:
        try:
            records = [r for r in cache.scan_all() if r.path.startswith(prefix)]
        except FilestampError as exc:
            _fail(exc)

    if output_json:
        data = [
            {
                "path": r.path,
                "modified_since_epoch_sec": r.modified_since_epoch_sec,
                "size": r.size,
                "checksum": r.checksum.hex(),
            }
            for r in records
        ]
        click.echo(json.dumps(data, ensure_ascii=False, indent=2))
        return

    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(box=None, padding=(0, 1))
    table.add_column("path", style="cyan")
    table.add_column("mtime", justify="right")
    table.add_column("size", justify="right")
    table.add_column("checksum")
    for r in records:
        table.add_row(r.path, f"{r.modified_since_epoch_sec:.6f}", str(r.size), r.checksum.hex())
    console.print(table)
    if not ctx.obj["quiet"]:
        console.print(f"{len(records)} record(s)")


@main.command()
@click.argument("paths", nargs=-1, required=True)
@click.pass_context
def forget(ctx: click.Context, *, paths: tuple[str, ...]) -> None:
    """Remove the records of PATHS so they are treated as new next time."""
    with _open(ctx, migrate=True) as cache:
        try:
            for path in paths:
                cache.remove(path)
        except FilestampError as exc:
            _fail(exc)
    if not ctx.obj["quiet"]:
        click.echo(f"Forgot {len(paths)} path(s)")
