"""Shared Rich consoles and logging setup for CLI commands."""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from cfwforge.config import settings
from cfwforge.core.errors import ForgeError

console = Console()
err_console = Console(stderr=True)


def configure_logging(verbose: bool = False) -> None:
    """Route log records through Rich; DEBUG when *verbose*."""
    level = logging.DEBUG if verbose else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=False)],
        force=True,
    )


def fail(exc: ForgeError) -> typer.Exit:
    """Print a one-line diagnostic for *exc* and return the exit to raise."""
    where = f" ({exc.stage})" if exc.stage else ""
    err_console.print(f"[bold red]Error{escape(where)}:[/bold red] {escape(str(exc))}")
    return typer.Exit(code=1)
