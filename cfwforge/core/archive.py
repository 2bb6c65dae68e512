"""Nested archive extraction and format-preserving rebuild.

``rebuild`` turns an original tar archive plus the directory its content
was extracted to (and then patched) into new tar bytes:

1. Original members are visited in their original order.  Members whose
   path still exists under the content directory are kept; their
   archived record (names, link names, device numbers, owner names) is
   reused and only modification time, owner/group ids, permission bits
   and size are refreshed from the live entry.  Regular file bytes are
   always streamed from the live file, symbolic link targets are read
   live.  Members whose path no longer exists are dropped.
2. Paths present under the content directory with no original member
   are appended afterwards in lexicographic order, with their records
   synthesised from the filesystem.

No member path is written twice.  Output uses the GNU tar format.
"""

from __future__ import annotations

import io
import logging
import os
import stat
import tarfile
import zlib
from pathlib import Path, PurePosixPath

from cfwforge.core.errors import ArchiveError

logger = logging.getLogger(__name__)

_READ_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error)


def member_key(name: str) -> str:
    """Normalise a member name: ``./etc/`` and ``etc`` both become ``etc``.

    The archive root (``.`` or ``./``) maps to the empty string.
    """
    key = name
    while key.startswith("./"):
        key = key[2:]
    key = key.strip("/")
    return "" if key == "." else key


def _check_member_name(name: str) -> str:
    if name.startswith("/"):
        raise ArchiveError(f"Absolute member path not allowed: {name!r}")
    key = member_key(name)
    if ".." in PurePosixPath(key).parts:
        raise ArchiveError(f"Member path escapes the archive root: {name!r}")
    return key


def _content_path(content_dir: Path, key: str) -> Path:
    return content_dir / key if key else content_dir


def _open_archive(source: bytes | Path) -> tarfile.TarFile:
    try:
        if isinstance(source, (bytes, bytearray)):
            return tarfile.open(fileobj=io.BytesIO(source), mode="r:*")
        return tarfile.open(Path(source), mode="r:*")
    except _READ_ERRORS as exc:
        raise ArchiveError(f"Cannot open archive: {exc}") from exc


def _read_members(source: bytes | Path) -> list[tarfile.TarInfo]:
    with _open_archive(source) as tar:
        try:
            return tar.getmembers()
        except _READ_ERRORS as exc:
            raise ArchiveError(f"Malformed archive: {exc}") from exc


# ----------------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------------


def extract_archive(source: bytes | Path, dest: Path) -> list[tarfile.TarInfo]:
    """Unpack a (possibly compressed) tar archive into *dest*.

    Permission bits, timestamps and, when running privileged, numeric
    ownership are restored, including the timestamps of symbolic links.
    Returns the archive's members in archive order.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    with _open_archive(source) as tar:
        try:
            members = tar.getmembers()
            for member in members:
                _check_member_name(member.name)
            tar.extractall(dest, numeric_owner=True, filter="fully_trusted")
        except _READ_ERRORS as exc:
            raise ArchiveError(f"Cannot extract archive into {dest}: {exc}") from exc

    if os.utime in os.supports_follow_symlinks:
        for member in members:
            if member.issym():
                link = _content_path(dest, member_key(member.name))
                os.utime(link, (member.mtime, member.mtime), follow_symlinks=False)
    logger.debug("Extracted %d members into %s", len(members), dest)
    return members


# ----------------------------------------------------------------------
# Rebuild
# ----------------------------------------------------------------------


def _refresh(info: tarfile.TarInfo, st: os.stat_result) -> None:
    info.mtime = int(st.st_mtime)
    info.mode = stat.S_IMODE(st.st_mode)
    info.uid = st.st_uid
    info.gid = st.st_gid


def _add_live(tar: tarfile.TarFile, path: Path, arcname: str) -> bool:
    """Append a member synthesised from the filesystem entry at *path*."""
    info = tar.gettarinfo(str(path), arcname=arcname)
    if info is None:
        logger.warning("Skipping unsupported file type: %s", path)
        return False
    if info.isreg():
        with path.open("rb") as f:
            tar.addfile(info, f)
    else:
        tar.addfile(info)
    return True


def _add_retained(
    tar: tarfile.TarFile, info: tarfile.TarInfo, path: Path, st: os.stat_result
) -> None:
    """Append an original member, refreshed from its live entry."""
    mode = st.st_mode
    if info.isdir() and stat.S_ISDIR(mode):
        _refresh(info, st)
        tar.addfile(info)
    elif info.issym() and stat.S_ISLNK(mode):
        _refresh(info, st)
        info.size = 0
        info.linkname = os.readlink(path)
        tar.addfile(info)
    elif info.islnk() and stat.S_ISREG(mode):
        _refresh(info, st)
        info.size = 0
        tar.addfile(info)
    elif info.isreg() and stat.S_ISREG(mode):
        _refresh(info, st)
        if info.type == tarfile.GNUTYPE_SPARSE:
            info.type = tarfile.REGTYPE  # live bytes are written densely
        info.size = st.st_size
        with path.open("rb") as f:
            tar.addfile(info, f)
    elif (info.ischr() or info.isblk() or info.isfifo()) and not (
        stat.S_ISREG(mode) or stat.S_ISDIR(mode) or stat.S_ISLNK(mode)
    ):
        _refresh(info, st)
        tar.addfile(info)
    else:
        # The entry changed kind under the same path.
        logger.debug("Member %s changed kind; re-synthesising", info.name)
        _add_live(tar, path, info.name)


def rebuild(original: bytes | Path, content_dir: Path) -> bytes:
    """Rebuild *original* from the (possibly patched) tree in *content_dir*.

    *original* is the archive as bytes or a path, compressed or not.
    Returns uncompressed tar bytes.  Raises ``ArchiveError`` if the
    original cannot be parsed or *content_dir* is missing.
    """
    content_dir = Path(content_dir)
    if not content_dir.is_dir():
        raise ArchiveError(f"Content directory does not exist: {content_dir}")

    members = _read_members(original)
    dotted = any(m.name == "." or m.name.startswith("./") for m in members)
    prefix = "./" if dotted else ""

    emitted: set[str] = set()
    dropped = 0
    buf = io.BytesIO()
    try:
        with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tar:
            for info in members:
                key = _check_member_name(info.name)
                if key in emitted:
                    continue
                path = _content_path(content_dir, key)
                try:
                    st = os.lstat(path)
                except FileNotFoundError:
                    dropped += 1
                    logger.debug("Member %s removed", info.name)
                    continue
                emitted.add(key)
                _add_retained(tar, info, path, st)

            added = _new_paths(content_dir, emitted)
            for key in added:
                if _add_live(tar, _content_path(content_dir, key), prefix + key):
                    emitted.add(key)
    except OSError as exc:
        raise ArchiveError(f"Cannot rebuild archive from {content_dir}: {exc}") from exc

    logger.debug(
        "Rebuilt archive from %s: %d members, %d dropped, %d added",
        content_dir, len(emitted), dropped, len(added),
    )
    return buf.getvalue()


def _new_paths(content_dir: Path, known: set[str]) -> list[str]:
    """Relative paths under *content_dir* with no entry in *known*, sorted."""
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(content_dir):
        rel_dir = os.path.relpath(dirpath, content_dir)
        for name in dirnames + filenames:
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            rel = rel.replace(os.sep, "/")
            if rel not in known:
                found.append(rel)
    return sorted(found)
