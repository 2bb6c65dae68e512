"""Container transform backends.

Defines the ``ContainerCodec`` Protocol the orchestrator uses to unwrap
and re-wrap containers (outer and nested alike), and ``CommandCodec``,
the default backend that delegates to an external executable invoked as
``<command> decrypt|encrypt <source> <destination>``.

The transform is treated as opaque; the pipeline only relies on
``encrypt(decrypt(x))`` reproducing the archive bytes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from cfwforge.core.errors import TransformError
from cfwforge.core.tools import run_tool


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ContainerCodec(Protocol):
    """Protocol for container transform backends.

    Implementations raise ``TransformError`` on failure and must leave
    *destination* absent or incomplete only in that case.
    """

    def decrypt(self, source: Path, destination: Path) -> None:
        """Unwrap the container at *source* into a plain archive at *destination*."""
        ...

    def encrypt(self, source: Path, destination: Path) -> None:
        """Wrap the plain archive at *source* into a container at *destination*."""
        ...


# ---------------------------------------------------------------------------
# Default implementation
# ---------------------------------------------------------------------------


class CommandCodec:
    """Container transform backed by an external command.

    Parameters
    ----------
    command:
        Executable name (looked up on PATH) or path.
    """

    def __init__(self, command: str | Path) -> None:
        self.command = str(command)

    def _run(self, verb: str, source: Path, destination: Path) -> None:
        run_tool([self.command, verb, source, destination], error_cls=TransformError)
        if not Path(destination).is_file():
            raise TransformError(f"{self.command} {verb} produced no output at {destination}")

    def decrypt(self, source: Path, destination: Path) -> None:
        self._run("decrypt", source, destination)

    def encrypt(self, source: Path, destination: Path) -> None:
        self._run("encrypt", source, destination)

    def __repr__(self) -> str:
        return f"CommandCodec({self.command!r})"
