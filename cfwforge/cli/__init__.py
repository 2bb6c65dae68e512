"""cfwforge CLI — Typer-based command-line interface.

Provides the ``cfwforge`` command with subcommands for building a custom
firmware container, printing a tree fingerprint and re-synchronising a
manifest in place.

All output uses Rich for formatted terminal display.
"""
