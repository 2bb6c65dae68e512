"""Fingerprint engine — deterministic identity summaries of directory trees.

A tree fingerprint is the lexicographically ordered list of one
``Fingerprint`` per directory, regular file and symbolic link under a
root, the root itself included.  Symbolic links are never followed: they
are identified by their raw target text.  Two trees are considered equal
iff their fingerprint sequences are equal position by position; the
orchestrator uses nothing else to decide whether a nested archive needs
rebuilding.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

from cfwforge.core.errors import FingerprintError
from cfwforge.core.hasher import sha256_file
from cfwforge.models.fingerprint import (
    DIR_IDENTITY,
    SYMLINK_PREFIX,
    ChangeKind,
    Fingerprint,
    FingerprintChange,
)

logger = logging.getLogger(__name__)

_COMPARED_FIELDS = ("identity", "mtime", "uid", "gid", "mode")


def _relative_name(rel: str) -> str:
    return "." if not rel else f"./{rel}"


def _fingerprint_entry(path: Path, rel: str, st: os.stat_result) -> Fingerprint | None:
    if stat.S_ISDIR(st.st_mode):
        identity = DIR_IDENTITY
    elif stat.S_ISLNK(st.st_mode):
        identity = SYMLINK_PREFIX + os.readlink(path)
    elif stat.S_ISREG(st.st_mode):
        identity = sha256_file(path)
    else:
        return None
    return Fingerprint(
        path=_relative_name(rel),
        identity=identity,
        mtime=int(st.st_mtime),
        uid=st.st_uid,
        gid=st.st_gid,
        mode=stat.S_IMODE(st.st_mode),
    )


def _walk(root: Path, rel: str, out: list[tuple[str, Path, os.stat_result]]) -> None:
    with os.scandir(root / rel if rel else root) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        child_rel = f"{rel}/{entry.name}" if rel else entry.name
        st = entry.stat(follow_symlinks=False)
        out.append((child_rel, Path(entry.path), st))
        if stat.S_ISDIR(st.st_mode):
            _walk(root, child_rel, out)


def fingerprint_tree(root: Path) -> list[Fingerprint]:
    """Fingerprint every entry under *root*, sorted by path.

    Raises ``FingerprintError`` if *root* is missing, not a directory, or
    cannot be read.
    """
    root = Path(root)
    try:
        root_stat = root.lstat()
    except OSError as exc:
        raise FingerprintError(f"Cannot fingerprint {root}: {exc}") from exc
    if not stat.S_ISDIR(root_stat.st_mode):
        raise FingerprintError(f"Cannot fingerprint {root}: not a directory")

    entries: list[tuple[str, Path, os.stat_result]] = [("", root, root_stat)]
    try:
        _walk(root, "", entries)
        prints = [_fingerprint_entry(path, rel, st) for rel, path, st in entries]
    except OSError as exc:
        raise FingerprintError(f"Cannot fingerprint {root}: {exc}") from exc

    result = [fp for fp in prints if fp is not None]
    result.sort(key=lambda fp: fp.path)
    logger.debug("Fingerprinted %d entries under %s", len(result), root)
    return result


def fingerprints_equal(before: list[Fingerprint], after: list[Fingerprint]) -> bool:
    """Positional equality of two fingerprint sequences."""
    if len(before) != len(after):
        return False
    return all(a == b for a, b in zip(before, after))


def diff_fingerprints(
    before: list[Fingerprint], after: list[Fingerprint]
) -> list[FingerprintChange]:
    """Annotated per-path diff between two fingerprint sequences.

    Used for verbose reporting only; equality decisions go through
    ``fingerprints_equal``.
    """
    old = {fp.path: fp for fp in before}
    new = {fp.path: fp for fp in after}
    changes: list[FingerprintChange] = []
    for path in sorted(old.keys() | new.keys()):
        if path not in new:
            changes.append(FingerprintChange(path=path, change=ChangeKind.REMOVED))
        elif path not in old:
            changes.append(FingerprintChange(path=path, change=ChangeKind.ADDED))
        else:
            fields = [
                name for name in _COMPARED_FIELDS
                if getattr(old[path], name) != getattr(new[path], name)
            ]
            if fields:
                changes.append(
                    FingerprintChange(path=path, change=ChangeKind.MODIFIED, fields=fields)
                )
    return changes
