"""Manifest updater — minimal-diff synchronisation of module hash/size.

The manifest is a JSON document holding an ordered list of entries keyed
by a name field::

    {"ModuleInfo": [{"fullName": "net.hwfs", "md5": "…", "size": 100, …}, …]}

Downstream tooling diffs this file, so updates are applied as targeted
textual replacements of the hash and size values of the affected entries.
Nothing else in the document is re-serialised: key order, whitespace and
unrelated entries are preserved byte for byte.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from pathlib import Path, PurePosixPath

from cfwforge.core.errors import ManifestError, ManifestWriteError
from cfwforge.core.hasher import file_digest, sha256_file
from cfwforge.models.manifest import ModuleUpdate

logger = logging.getLogger(__name__)

_WS = " \t\n\r"
_decoder = json.JSONDecoder()

# (start, end) character offsets of a JSON value within the document
Span = tuple[int, int]


# ----------------------------------------------------------------------
# Scanning
# ----------------------------------------------------------------------


def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i] in _WS:
        i += 1
    return i


def _expect(text: str, i: int, char: str) -> None:
    if i >= len(text) or text[i] != char:
        found = text[i] if i < len(text) else "end of document"
        raise ManifestError(f"Malformed manifest: expected {char!r} at offset {i}, found {found!r}")


def _value_end(text: str, i: int) -> int:
    try:
        _, end = _decoder.raw_decode(text, i)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Malformed manifest: {exc}") from exc
    return end


def _object_members(text: str, start: int) -> tuple[dict[str, Span], int]:
    """Spans of the direct members of the object at *start*, and its end."""
    _expect(text, start, "{")
    members: dict[str, Span] = {}
    i = _skip_ws(text, start + 1)
    if i < len(text) and text[i] == "}":
        return members, i + 1
    while True:
        _expect(text, i, '"')
        key_end = _value_end(text, i)
        key = json.loads(text[i:key_end])
        i = _skip_ws(text, key_end)
        _expect(text, i, ":")
        value_start = _skip_ws(text, i + 1)
        value_end = _value_end(text, value_start)
        members[key] = (value_start, value_end)
        i = _skip_ws(text, value_end)
        if i < len(text) and text[i] == ",":
            i = _skip_ws(text, i + 1)
            continue
        _expect(text, i, "}")
        return members, i + 1


def _array_objects(text: str, start: int) -> Iterator[tuple[dict[str, Span], Span]]:
    """Yield (members, span) for each object element of the array at *start*."""
    _expect(text, start, "[")
    i = _skip_ws(text, start + 1)
    if i < len(text) and text[i] == "]":
        return
    while True:
        if i < len(text) and text[i] == "{":
            members, end = _object_members(text, i)
            yield members, (i, end)
        else:
            end = _value_end(text, i)
        i = _skip_ws(text, end)
        if i < len(text) and text[i] == ",":
            i = _skip_ws(text, i + 1)
            continue
        _expect(text, i, "]")
        return


def iter_entries(
    document: str, list_key: str = "ModuleInfo", key_field: str = "fullName"
) -> Iterator[tuple[str, dict[str, Span], Span]]:
    """Yield ``(name, member_spans, entry_span)`` for every manifest entry."""
    try:
        json.loads(document)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Malformed manifest: {exc}") from exc

    top, _ = _object_members(document, _skip_ws(document, 0))
    if list_key not in top:
        raise ManifestError(f"Manifest has no {list_key!r} list")
    list_start, _ = top[list_key]
    for members, span in _array_objects(document, list_start):
        if key_field not in members:
            continue
        start, end = members[key_field]
        name = json.loads(document[start:end])
        if isinstance(name, str):
            yield name, members, span


def read_entries(
    document: str, list_key: str = "ModuleInfo", key_field: str = "fullName"
) -> dict[str, dict[str, object]]:
    """Decoded entries keyed by name, in document order."""
    entries: dict[str, dict[str, object]] = {}
    for name, members, _ in iter_entries(document, list_key, key_field):
        entries[name] = {k: json.loads(document[s:e]) for k, (s, e) in members.items()}
    return entries


# ----------------------------------------------------------------------
# Merge
# ----------------------------------------------------------------------


def apply_updates(
    document: str,
    updates: Mapping[str, ModuleUpdate],
    *,
    list_key: str = "ModuleInfo",
    key_field: str = "fullName",
    hash_field: str = "md5",
) -> str | None:
    """Merge hash/size *updates* into *document*.

    Returns the new document text, or ``None`` when the merge leaves the
    document byte-identical (including when *updates* is empty).
    """
    if not updates:
        return None

    edits: list[tuple[int, int, str]] = []
    for name, members, (_, entry_end) in iter_entries(document, list_key, key_field):
        update = updates.get(name)
        if update is None:
            continue
        missing: list[str] = []
        for field, value in ((hash_field, update.hash), ("size", update.size)):
            token = json.dumps(value)
            if field in members:
                start, end = members[field]
                if document[start:end] != token:
                    edits.append((start, end, token))
            else:
                missing.append(f"{json.dumps(field)}: {token}")
        if missing:
            # Append new fields just before the entry's closing brace.
            close = entry_end - 1
            insert = ", ".join(missing)
            if members:
                insert = ", " + insert
            edits.append((close, close, insert))

    if not edits:
        return None
    result = document
    for start, end, token in sorted(edits, reverse=True):
        result = result[:start] + token + result[end:]
    return result if result != document else None


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------


def read_manifest(path: Path) -> str:
    """Return the manifest text, raising ``ManifestError`` if unreadable."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc


def _module_path(root: Path, name: str) -> Path:
    rel = PurePosixPath(name)
    if not name or rel.is_absolute() or ".." in rel.parts or "\\" in name:
        raise ManifestError(f"Unsafe module name in manifest: {name!r}")
    return root / rel


def compute_updates(
    root: Path,
    document: str,
    baseline_hashes: Mapping[str, str] | None = None,
    *,
    list_key: str = "ModuleInfo",
    key_field: str = "fullName",
    hash_field: str = "md5",
    algorithm: str = "md5",
) -> dict[str, ModuleUpdate]:
    """Compute new hash/size values for manifest entries whose file changed.

    With *baseline_hashes* (SHA-256 per file name, captured before
    patching) only files whose content changed are considered.  Without
    it, every entry is recomputed and kept when it differs from the
    recorded values.  Raises ``ManifestError`` if a referenced file is
    missing, unreadable, or named outside *root*.
    """
    root = Path(root)
    updates: dict[str, ModuleUpdate] = {}
    for name, recorded in read_entries(document, list_key, key_field).items():
        path = _module_path(root, name)
        if not path.is_file():
            raise ManifestError(f"Manifest entry {name!r} refers to a missing file: {path}")
        try:
            if baseline_hashes is not None and baseline_hashes.get(name) == sha256_file(path):
                logger.debug("module: %s", name)
                continue
            digest = file_digest(path, algorithm)
            size = path.stat().st_size
        except (OSError, ValueError) as exc:
            raise ManifestError(f"Cannot hash module {name!r}: {exc}") from exc
        hash_changed = recorded.get(hash_field) != digest
        size_changed = recorded.get("size") != size
        if hash_changed or size_changed:
            logger.info("module: %s (changed)", name)
            updates[name] = ModuleUpdate(hash=digest, size=size)
        else:
            logger.debug("module: %s", name)
        logger.debug("  %s: %s%s", hash_field, digest, " (changed)" if hash_changed else "")
        logger.debug("  size: %d%s", size, " (changed)" if size_changed else "")
    return updates


def atomic_write_text(path: Path, text: str) -> None:
    """Replace *path* with *text* via a temporary file and ``os.replace``.

    The original file's permission bits are carried over.  Raises
    ``ManifestWriteError`` on failure; the original is then untouched.
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise ManifestWriteError(f"Cannot write manifest {path}: {exc}") from exc


def update_manifest(
    path: Path,
    updates: Mapping[str, ModuleUpdate],
    *,
    list_key: str = "ModuleInfo",
    key_field: str = "fullName",
    hash_field: str = "md5",
) -> bool:
    """Apply *updates* to the manifest file at *path*.

    Returns ``True`` if the file was rewritten, ``False`` for no change.
    """
    path = Path(path)
    document = read_manifest(path)
    new_document = apply_updates(
        document, updates, list_key=list_key, key_field=key_field, hash_field=hash_field
    )
    if new_document is None:
        logger.info("No changes to %s", path.name)
        return False
    atomic_write_text(path, new_document)
    logger.info("Updated %s (%d entries)", path.name, len(updates))
    return True
