"""Fingerprint models — identity summaries of filesystem entries."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict

DIR_IDENTITY = "DIR"
SYMLINK_PREFIX = "SYM:"


class EntryKind(str, Enum):
    """Filesystem entry kinds that take part in fingerprinting."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


class Fingerprint(BaseModel):
    """Identity of one filesystem entry.

    ``identity`` is ``"DIR"`` for directories, ``"SYM:<target>"`` for
    symbolic links and the SHA-256 hex digest for regular files.
    """

    model_config = ConfigDict(frozen=True)

    path: str  # "." for the root, "./a/b" below it
    identity: str
    mtime: int
    uid: int
    gid: int
    mode: int  # permission bits, including setuid/setgid/sticky

    @property
    def kind(self) -> EntryKind:
        if self.identity == DIR_IDENTITY:
            return EntryKind.DIRECTORY
        if self.identity.startswith(SYMLINK_PREFIX):
            return EntryKind.SYMLINK
        return EntryKind.FILE

    def as_line(self) -> str:
        """Render in the ``path:identity:mtime:uid:gid:mode`` form."""
        return (
            f"{self.path}:{self.identity}:{self.mtime}:"
            f"{self.uid}:{self.gid}:{self.mode:o}"
        )


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class FingerprintChange(BaseModel):
    """One line of an annotated fingerprint diff."""

    model_config = ConfigDict(frozen=True)

    path: str
    change: ChangeKind
    fields: list[str] = []  # which tuple members differ, for MODIFIED
