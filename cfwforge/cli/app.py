"""Main Typer application — imports and registers all CLI commands.

Entry point: ``cfwforge`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import typer

from cfwforge.cli.commands.build import build_cmd
from cfwforge.cli.commands.fingerprint_cmd import fingerprint_cmd
from cfwforge.cli.commands.manifest_sync import manifest_sync_cmd

app = typer.Typer(
    name="cfwforge",
    help="cfwforge: selective, reproducible repackaging of firmware containers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build a custom firmware container.")(build_cmd)
app.command(name="fingerprint", help="Print the fingerprint of a directory tree.")(
    fingerprint_cmd
)
app.command(name="manifest-sync", help="Refresh manifest hashes and sizes in place.")(
    manifest_sync_cmd
)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
