"""Error hierarchy for the repackaging pipeline.

Every fatal condition is a ``ForgeError``.  The orchestrator stamps the
stage the error was raised in onto ``stage`` before re-raising, so the CLI
can report a one-line diagnostic without knowing the pipeline internals.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cfwforge.models.session import BuildResult


class ForgeError(RuntimeError):
    """Base class for all fatal pipeline errors.

    ``result`` holds the FAILED ``BuildResult`` once the orchestrator has
    recorded the failure.
    """

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.result: BuildResult | None = None


class DependencyMissingError(ForgeError):
    """Raised when a required external tool is not available."""


class InputNotFoundError(ForgeError):
    """Raised when the container, manifest or patch script does not exist."""


class TransformError(ForgeError):
    """Raised when the external container transform exits non-zero."""


class PatchError(ForgeError):
    """Raised when the patch collaborator reports failure."""


class ArchiveError(ForgeError):
    """Raised when an archive is malformed or cannot be rebuilt."""


class FingerprintError(ForgeError):
    """Raised when a tree cannot be fingerprinted."""


class ManifestError(ForgeError):
    """Raised when the manifest cannot be parsed or its updates computed."""


class ManifestWriteError(ManifestError):
    """Raised when the manifest cannot be written back to disk."""


class BuildAbortedError(ForgeError):
    """Raised at a stage boundary after an abort was requested."""


class InvalidTransitionError(ForgeError):
    """Raised when a requested stage transition is not valid."""
