"""``cfwforge fingerprint DIR`` — print the fingerprint of a directory tree.

One line per entry, ``path:identity:mtime:uid:gid:mode``, in the order
the build uses to decide whether a nested archive changed.  With
``--against`` the annotated difference to a second tree is shown instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from cfwforge.cli.console import configure_logging, console, fail
from cfwforge.core.errors import ForgeError
from cfwforge.core.fingerprint import diff_fingerprints, fingerprint_tree


def fingerprint_cmd(
    directory: Path = typer.Argument(..., help="Directory to fingerprint."),
    against: Optional[Path] = typer.Option(
        None,
        "--against",
        "-a",
        help="Compare DIRECTORY (as the original) to this tree.",
    ),
) -> None:
    """Print a tree fingerprint, or the difference between two trees."""
    configure_logging()
    try:
        before = fingerprint_tree(directory)
        after = fingerprint_tree(against) if against is not None else None
    except ForgeError as exc:
        raise fail(exc) from exc

    if after is None:
        for fp in before:
            typer.echo(fp.as_line())
        return

    changes = diff_fingerprints(before, after)
    if not changes:
        console.print("[green]Trees are identical[/green]")
        return
    for change in changes:
        fields = f" ({', '.join(change.fields)})" if change.fields else ""
        typer.echo(f"{change.change.value:<8} {change.path}{fields}")
