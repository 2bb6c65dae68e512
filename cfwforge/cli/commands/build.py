"""``cfwforge build INPUT`` — repackage a firmware container.

Decrypts the container, applies the patch script, rebuilds only the
nested archives that changed, synchronises the manifest and writes the
re-encrypted container.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel

from cfwforge.cli.console import configure_logging, console, fail
from cfwforge.core.codec import CommandCodec
from cfwforge.core.errors import ForgeError
from cfwforge.core.orchestrator import Orchestrator
from cfwforge.models.config import BuildConfig


def build_cmd(
    input_container: Path = typer.Argument(
        ...,
        help="Firmware container to repackage.",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output container path. Defaults to <stem>_CFW<suffix> in the current directory.",
    ),
    patch_script: Optional[Path] = typer.Option(
        None,
        "--patch",
        "-p",
        help="Patch script to run inside the extracted container.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Echo external tools and show per-file change detection.",
    ),
    keep: bool = typer.Option(
        False,
        "--keep",
        "-k",
        help="Keep the working directory after the build.",
    ),
    codec: Optional[str] = typer.Option(
        None,
        "--codec",
        help="Container transform command (decrypt|encrypt SRC DST).",
    ),
) -> None:
    """Build a custom firmware container from INPUT."""
    configure_logging(verbose)
    config = BuildConfig.for_input(
        input_container,
        output_container=output,
        patch_script=patch_script,
        verbose=verbose,
        keep_work_dir=keep,
    )
    orchestrator = Orchestrator(codec=CommandCodec(codec) if codec else None)

    try:
        result = orchestrator.run(config)
    except ForgeError as exc:
        raise fail(exc) from exc

    changed = ", ".join(result.changed_archives) or "[dim]none[/dim]"
    lines = [
        "[bold green]Build complete[/bold green]",
        "",
        f"[bold]Output:[/bold]          {result.output_container}",
        f"[bold]Rebuilt archives:[/bold] {changed}",
        f"[bold]Manifest:[/bold]        {'updated' if result.manifest_changed else 'unchanged'}",
    ]
    if result.work_dir is not None:
        lines.append(f"[bold]Working dir:[/bold]     {result.work_dir}")

    console.print()
    console.print(
        Panel(
            "\n".join(lines),
            title="[bold]cfwforge[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
