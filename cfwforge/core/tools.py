"""Synchronous execution of external tools and up-front dependency checks."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from pathlib import Path

from cfwforge.core.errors import DependencyMissingError, ForgeError

logger = logging.getLogger(__name__)


def _indent(output: str) -> str:
    return "\n".join(f"    {line}" for line in output.splitlines())


def run_tool(
    argv: Sequence[str | Path],
    *,
    cwd: Path | None = None,
    error_cls: type[ForgeError] = ForgeError,
) -> str:
    """Run *argv* to completion and return its combined stdout/stderr.

    The invocation is echoed at DEBUG as ``+ <argv>`` followed by the
    tool's output, indented.  A launch failure or non-zero exit raises
    *error_cls* carrying the exit status and the tail of the output.
    """
    args = [str(a) for a in argv]
    command = shlex.join(args)
    logger.debug("+ %s", command)
    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        raise error_cls(f"Cannot run {args[0]}: {exc}") from exc

    output = result.stdout or ""
    if output.strip():
        logger.debug("%s", _indent(output.rstrip()))
    if result.returncode != 0:
        tail = output.strip().splitlines()[-1:] if output.strip() else []
        detail = f": {tail[0]}" if tail else ""
        raise error_cls(f"{Path(args[0]).name} exited with status {result.returncode}{detail}")
    return output


def resolve_tool(tool: str | Path) -> Path | None:
    """Locate *tool* on PATH, or as a path when it contains a separator."""
    name = str(tool)
    if "/" in name:
        path = Path(name)
        return path if path.is_file() else None
    found = shutil.which(name)
    return Path(found) if found else None


def check_dependencies(tools: Iterable[str | Path]) -> dict[str, Path]:
    """Resolve every required tool; raise listing all that are missing."""
    resolved: dict[str, Path] = {}
    missing: list[str] = []
    for tool in tools:
        path = resolve_tool(tool)
        if path is None:
            missing.append(str(tool))
        else:
            resolved[str(tool)] = path
    if missing:
        raise DependencyMissingError(f"Required tool(s) not found: {', '.join(missing)}")
    for name, path in resolved.items():
        logger.debug("Found %s at %s", name, path)
    return resolved
