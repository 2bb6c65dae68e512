"""``cfwforge manifest-sync DIR`` — refresh manifest hashes and sizes in place.

Recomputes the hash and size of every module listed in ``DIR``'s
manifest and rewrites only the entries that differ.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from cfwforge.cli.console import configure_logging, console, fail
from cfwforge.config import settings
from cfwforge.core.errors import ForgeError, InputNotFoundError
from cfwforge.core.manifest import compute_updates, read_manifest, update_manifest


def manifest_sync_cmd(
    directory: Path = typer.Argument(..., help="Directory holding the manifest and modules."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show every module."),
) -> None:
    """Update DIR's manifest to match the modules next to it."""
    configure_logging(verbose)
    manifest = directory / settings.manifest_name
    options = {
        "list_key": settings.manifest_list_key,
        "key_field": settings.manifest_key_field,
        "hash_field": settings.manifest_hash_field,
    }
    try:
        if not manifest.is_file():
            raise InputNotFoundError(f"Manifest not found: {manifest}")
        document = read_manifest(manifest)
        updates = compute_updates(
            directory, document, algorithm=settings.manifest_hash_algorithm, **options
        )
        changed = update_manifest(manifest, updates, **options)
    except ForgeError as exc:
        raise fail(exc) from exc

    if not changed:
        console.print(f"[dim]No changes to {manifest.name}[/dim]")
        return

    table = Table(title=f"Updated {manifest.name}")
    table.add_column("Module", style="cyan")
    table.add_column(settings.manifest_hash_field)
    table.add_column("Size", justify="right")
    for name, update in updates.items():
        table.add_row(name, update.hash, str(update.size))
    console.print(table)
