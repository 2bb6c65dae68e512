"""Patch application backends.

The patch collaborator mutates the extracted container tree in place.
What it changes is not interpreted here; the orchestrator detects the
effects afterwards by fingerprinting.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from cfwforge.core.errors import PatchError
from cfwforge.core.tools import run_tool


@runtime_checkable
class Patcher(Protocol):
    """Protocol for patch application backends.

    ``apply`` raises ``PatchError`` if patching did not succeed.
    """

    def apply(self, work_dir: Path, *, verbose: bool = False) -> None:
        ...


class ScriptPatcher:
    """Runs a patch executable with the extracted tree as current directory.

    ``-v`` is passed when *verbose* is requested.  A non-zero exit status
    raises ``PatchError``.
    """

    def __init__(self, script: Path) -> None:
        self.script = Path(script).resolve()

    def apply(self, work_dir: Path, *, verbose: bool = False) -> None:
        argv: list[str | Path] = [self.script]
        if verbose:
            argv.append("-v")
        run_tool(argv, cwd=Path(work_dir), error_cls=PatchError)

    def __repr__(self) -> str:
        return f"ScriptPatcher({str(self.script)!r})"
