"""CLI tool for managing file snapshots."""

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from typing_extensions import Annotated

from snapshot_engine.config import build_repository, load_settings
from snapshot_engine.errors import SnapshotEngineError
from snapshot_engine.manager import SnapshotManager
from snapshot_engine.models.results import RestorePreview
from snapshot_engine.observability.logging import setup_logging


app = typer.Typer(help="Snapshot Engine Management CLI")


def get_manager() -> SnapshotManager:
    """Builds a manager backed by the disk repository.

    Settings come from the YAML file named by SNAPSHOT_CONFIG, if any, and
    the SNAPSHOT_* environment overrides.
    """
    settings = load_settings(os.environ.get("SNAPSHOT_CONFIG"))
    storage = settings.storage.model_copy(update={"type": "sql"})
    return SnapshotManager.from_settings(settings, repository=build_repository(storage))


@app.callback()
def main(
    log_level: Annotated[
        Optional[str], typer.Option(help="Log level (defaults to LOG_LEVEL or INFO)")
    ] = None,
):
    setup_logging(log_level)


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size} {unit}"
        size //= 1024
    return f"{size} GB"


@app.command("create")
def create(
    description: Annotated[str, typer.Argument(help="Snapshot description")],
    path: Annotated[
        Optional[Path], typer.Option("--path", "-p", help="Directory to capture")
    ] = None,
    files: Annotated[
        Optional[list[str]],
        typer.Option("--file", "-f", help="Capture only this file (repeatable)"),
    ] = None,
):
    """Captures a new snapshot."""
    manager = get_manager()
    try:
        summary = asyncio.run(
            manager.create_snapshot(
                description, base_path=path or Path.cwd(), specific_files=files or None
            )
        )
    except (ValueError, OSError, SnapshotEngineError) as e:
        typer.echo(f"Error: {str(e)}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Snapshot created: {summary.id}")
    typer.echo(f"Files: {summary.file_count} ({_format_size(summary.total_size)})")


@app.command("list")
def list_snapshots(
    limit: Annotated[Optional[int], typer.Option(help="Maximum number of snapshots")] = None,
    description: Annotated[
        Optional[str], typer.Option(help="Filter by description substring")
    ] = None,
    trigger: Annotated[
        Optional[str], typer.Option(help="Filter by trigger type")
    ] = None,
):
    """Lists snapshots, newest first."""
    manager = get_manager()
    try:
        snapshots = manager.list_snapshots(
            limit=limit, description=description, trigger_type=trigger
        )
    except ValueError as e:
        typer.echo(f"Error: {str(e)}", err=True)
        raise typer.Exit(code=1)
    if not snapshots:
        typer.echo("No snapshots found.")
        return

    for s in snapshots:
        typer.echo(
            f"[{s.trigger_type or 'manual'}] {s.id}: {s.description} "
            f"({s.file_count} files, {s.timestamp})"
        )


@app.command("show")
def show(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID or unique prefix")],
):
    """Shows the details of a snapshot as JSON."""
    manager = get_manager()
    details = manager.get_snapshot_details(snapshot_id)
    if details is None:
        typer.echo(f"Error: Snapshot not found: {snapshot_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(details, indent=2, default=str))


@app.command("restore")
def restore(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID or unique prefix")],
    preview: Annotated[
        bool, typer.Option("--preview", help="Only show what would change")
    ] = False,
    no_backup: Annotated[
        bool, typer.Option("--no-backup", help="Skip the safety snapshot")
    ] = False,
    files: Annotated[
        Optional[list[str]],
        typer.Option("--file", "-f", help="Restore only this file (repeatable)"),
    ] = None,
    detect_deletions: Annotated[
        bool,
        typer.Option("--detect-deletions", help="Preview files absent from the snapshot"),
    ] = False,
):
    """Restores a snapshot, or previews the restore."""
    manager = get_manager()
    result = asyncio.run(
        manager.restore_snapshot(
            snapshot_id,
            preview=preview,
            create_backup=False if no_backup else None,
            specific_files=files or None,
            detect_deletions=detect_deletions,
        )
    )

    if isinstance(result, RestorePreview):
        typer.echo(f"Preview of {result.snapshot_id}: {result.description}")
        for label, paths in (
            ("create", result.to_create),
            ("modify", result.to_modify),
            ("delete", result.to_delete),
        ):
            for p in paths:
                typer.echo(f"  {label}: {p}")
        typer.echo(
            f"{result.stats.impacted_files} files impacted, "
            f"{result.stats.unchanged} unchanged"
        )
        return

    if result.error:
        typer.echo(f"Error: {result.error.detail}", err=True)
        raise typer.Exit(code=1)

    if result.backup_snapshot_id:
        typer.echo(f"Backup snapshot: {result.backup_snapshot_id}")
    typer.echo(
        f"Restored {len(result.restored)} files, skipped {len(result.skipped)} unchanged"
    )
    for error in result.errors:
        typer.echo(f"Failed: {error.path} ({error.code}): {error.detail}", err=True)
    if result.errors:
        raise typer.Exit(code=1)


@app.command("delete")
def delete(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID or unique prefix")],
):
    """Deletes a snapshot."""
    manager = get_manager()
    if not manager.delete_snapshot(snapshot_id):
        typer.echo(f"Error: Snapshot not found: {snapshot_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Snapshot deleted: {snapshot_id}")


@app.command("stats")
def stats():
    """Shows storage and filtering statistics as JSON."""
    manager = get_manager()
    typer.echo(json.dumps(manager.get_system_stats(), indent=2, default=str))


@app.command("validate-config")
def validate_config(
    file_path: Annotated[
        Path, typer.Argument(help="Path to settings YAML file")
    ],
):
    """Validates a settings YAML file."""
    if not file_path.exists():
        typer.echo(f"Error: File not found: {file_path}", err=True)
        raise typer.Exit(code=1)

    try:
        load_settings(file_path)
    except yaml.YAMLError as e:
        typer.echo(f"Error parsing YAML: {str(e)}", err=True)
        raise typer.Exit(code=1)
    except ValidationError as e:
        typer.echo(f"Validation Error: {e}", err=True)
        raise typer.Exit(code=1)
    except ValueError as e:
        typer.echo(f"Error: {str(e)}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Settings file {file_path} is valid.")


if __name__ == "__main__":
    app()
