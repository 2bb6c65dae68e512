"""Outer archive handling — the ZIP held inside a decrypted container.

Extraction goes through :mod:`zipfile`.  Member replacement does not:
``zipfile`` can only rewrite an archive by recompressing every member,
which would perturb untouched members.  ``replace_members`` instead
copies the local and central-directory records of every untouched member
verbatim, relocating offsets only, and synthesises fresh records for the
replaced ones.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import struct
import tempfile
import time
import zipfile
import zlib
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import BinaryIO, NamedTuple

from cfwforge.core.errors import ArchiveError

logger = logging.getLogger(__name__)

# struct formats (all little-endian)
#   local file header:        sig ver flag meth time date crc csz usz nlen xlen
_FMT_LFH = "<4sHHHHHIIIHH"
#   central directory header: sig made ver flag meth time date crc csz usz
#                             nlen xlen clen disk iattr eattr offset
_FMT_CFH = "<4sHHHHHHIIIHHHHHII"
#   end of central directory: sig disk cddisk n_disk n_total cdsize cdoff clen
_FMT_EOCD = "<4sHHHHIIH"

_SIG_LFH = b"PK\x03\x04"
_SIG_CFH = b"PK\x01\x02"
_SIG_EOCD = b"PK\x05\x06"

_CFH_LEN = struct.calcsize(_FMT_CFH)
_EOCD_LEN = struct.calcsize(_FMT_EOCD)
_MAX_EOCD_SEARCH = _EOCD_LEN + 0xFFFF

_FLAG_ENCRYPTED = 0x0001
_FLAG_DATA_DESCRIPTOR = 0x0008
_FLAG_UTF8 = 0x0800
_SYSTEM_UNIX = 3
_COPY_CHUNK = 1024 * 1024


class _CentralRecord(NamedTuple):
    """One central directory entry, fixed header kept as raw bytes."""

    header: bytes
    made_by: int
    version: int
    flags: int
    method: int
    int_attr: int
    ext_attr: int
    offset: int
    name: bytes
    extra: bytes
    comment: bytes

    @property
    def filename(self) -> str:
        encoding = "utf-8" if self.flags & _FLAG_UTF8 else "cp437"
        return self.name.decode(encoding)

    def relocated(self, offset: int) -> bytes:
        """The full central record with its local header offset replaced."""
        header = self.header[:-4] + struct.pack("<I", offset)
        return header + self.name + self.extra + self.comment


def _check_name(name: str) -> None:
    path = PurePosixPath(name)
    if name.startswith("/") or ".." in path.parts or "\\" in name:
        raise ArchiveError(f"Unsafe member path in container archive: {name!r}")


# ----------------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------------


def extract_container(zip_path: Path, dest: Path) -> list[str]:
    """Unpack every member of *zip_path* into *dest*.

    Unix permission bits and modification times are restored; members
    recorded as symbolic links are recreated as links.  Returns member
    names in archive order.
    """
    zip_path, dest = Path(zip_path), Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(zip_path) as zf:
            infos = zf.infolist()
            for info in infos:
                _check_name(info.filename)
            for info in infos:
                _extract_member(zf, info, dest)
            # Directory times last, once their content is in place.
            for info in reversed(infos):
                if info.is_dir():
                    _restore_times(dest / info.filename, info)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ArchiveError(f"Cannot extract {zip_path}: {exc}") from exc

    logger.debug("Extracted %d members from %s", len(infos), zip_path.name)
    return [info.filename for info in infos]


def _extract_member(zf: zipfile.ZipFile, info: zipfile.ZipInfo, dest: Path) -> None:
    target = dest / info.filename
    mode = info.external_attr >> 16 if info.create_system == _SYSTEM_UNIX else 0

    if info.is_dir():
        target.mkdir(parents=True, exist_ok=True)
        if stat.S_IMODE(mode):
            target.chmod(stat.S_IMODE(mode))
        return

    target.parent.mkdir(parents=True, exist_ok=True)
    if stat.S_ISLNK(mode):
        if target.is_symlink() or target.exists():
            target.unlink()
        os.symlink(zf.read(info).decode("utf-8"), target)
        return

    with zf.open(info) as src, target.open("wb") as dst:
        shutil.copyfileobj(src, dst, _COPY_CHUNK)
    if stat.S_IMODE(mode):
        target.chmod(stat.S_IMODE(mode))
    _restore_times(target, info)


def _restore_times(path: Path, info: zipfile.ZipInfo) -> None:
    mtime = time.mktime(info.date_time + (0, 0, -1))
    os.utime(path, (mtime, mtime))


# ----------------------------------------------------------------------
# Raw record parsing
# ----------------------------------------------------------------------


def _read_eocd(f: BinaryIO) -> tuple[tuple, bytes]:
    f.seek(0, os.SEEK_END)
    file_size = f.tell()
    tail_len = min(file_size, _MAX_EOCD_SEARCH)
    f.seek(file_size - tail_len)
    tail = f.read(tail_len)

    pos = tail.rfind(_SIG_EOCD)
    while pos >= 0:
        if pos + _EOCD_LEN <= len(tail):
            fields = struct.unpack_from(_FMT_EOCD, tail, pos)
            if pos + _EOCD_LEN + fields[7] == len(tail):
                return fields, tail[pos + _EOCD_LEN:]
        pos = tail.rfind(_SIG_EOCD, 0, pos)
    raise ArchiveError("Container archive has no end-of-central-directory record")


def _read_central_directory(f: BinaryIO) -> tuple[list[_CentralRecord], int, bytes]:
    """Return (records in directory order, central directory offset, archive comment)."""
    (_, disk, cd_disk, n_disk, n_total, cd_size, cd_offset, _), comment = _read_eocd(f)
    if 0xFFFF in (n_disk, n_total) or 0xFFFFFFFF in (cd_size, cd_offset):
        raise ArchiveError("Zip64 container archives are not supported")
    if disk or cd_disk or n_disk != n_total:
        raise ArchiveError("Multi-disk container archives are not supported")

    f.seek(cd_offset)
    data = f.read(cd_size)
    if len(data) != cd_size:
        raise ArchiveError("Truncated central directory")

    records: list[_CentralRecord] = []
    pos = 0
    for _ in range(n_total):
        if data[pos:pos + 4] != _SIG_CFH or pos + _CFH_LEN > len(data):
            raise ArchiveError(f"Bad central directory record at offset {cd_offset + pos}")
        (
            _, made_by, version, flags, method, _, _, _, csize, usize,
            name_len, extra_len, comment_len, _, int_attr, ext_attr, offset,
        ) = struct.unpack_from(_FMT_CFH, data, pos)
        if 0xFFFFFFFF in (csize, usize, offset):
            raise ArchiveError("Zip64 container archives are not supported")
        header = data[pos:pos + _CFH_LEN]
        pos += _CFH_LEN
        name = data[pos:pos + name_len]
        pos += name_len
        extra = data[pos:pos + extra_len]
        pos += extra_len
        member_comment = data[pos:pos + comment_len]
        pos += comment_len
        records.append(_CentralRecord(
            header, made_by, version, flags, method, int_attr, ext_attr, offset,
            name, extra, member_comment,
        ))
    return records, cd_offset, comment


def _copy_span(src: BinaryIO, dst: BinaryIO, start: int, length: int) -> None:
    src.seek(start)
    while length > 0:
        chunk = src.read(min(_COPY_CHUNK, length))
        if not chunk:
            raise ArchiveError("Unexpected end of container archive")
        dst.write(chunk)
        length -= len(chunk)


# ----------------------------------------------------------------------
# Replacement
# ----------------------------------------------------------------------


def _dos_datetime(mtime: float) -> tuple[int, int]:
    t = time.localtime(mtime)
    if t.tm_year < 1980:
        return 0, (1 << 5) | 1
    dos_time = (t.tm_hour << 11) | (t.tm_min << 5) | (t.tm_sec // 2)
    dos_date = ((t.tm_year - 1980) << 9) | (t.tm_mon << 5) | t.tm_mday
    return dos_time, dos_date


def _encode_member(
    record: _CentralRecord, path: Path, level: int
) -> tuple[bytes, _CentralRecord]:
    """Build the local record and central entry for *record* from the file at *path*."""
    if record.flags & _FLAG_ENCRYPTED:
        raise ArchiveError(f"Cannot replace encrypted member {record.filename!r}")

    st = path.stat()
    raw = path.read_bytes()
    crc = zlib.crc32(raw) & 0xFFFFFFFF
    method = record.method
    if method not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
        logger.debug("Member %s: method %d rewritten as deflate", record.filename, method)
        method = zipfile.ZIP_DEFLATED
    if method == zipfile.ZIP_DEFLATED:
        comp = zlib.compressobj(level, zlib.DEFLATED, -15)
        payload = comp.compress(raw) + comp.flush()
    else:
        payload = raw
    if len(raw) > 0xFFFFFFFF or len(payload) > 0xFFFFFFFF:
        raise ArchiveError(f"Member {record.filename!r} would require Zip64")

    version = max(record.version, 20 if method == zipfile.ZIP_DEFLATED else 10)
    flags = record.flags & ~_FLAG_DATA_DESCRIPTOR
    dos_time, dos_date = _dos_datetime(st.st_mtime)
    ext_attr = record.ext_attr
    if record.made_by >> 8 == _SYSTEM_UNIX:
        ext_attr = (stat.S_IFMT(st.st_mode) | stat.S_IMODE(st.st_mode)) << 16 | (ext_attr & 0xFFFF)

    local = struct.pack(
        _FMT_LFH, _SIG_LFH, version, flags, method, dos_time, dos_date,
        crc, len(payload), len(raw), len(record.name), 0,
    ) + record.name + payload
    header = struct.pack(
        _FMT_CFH, _SIG_CFH, record.made_by, version, flags, method, dos_time, dos_date,
        crc, len(payload), len(raw), len(record.name), 0, len(record.comment),
        0, record.int_attr, ext_attr, 0,
    )
    central = record._replace(
        header=header, version=version, flags=flags, method=method,
        ext_attr=ext_attr, extra=b"",
    )
    return local, central


def replace_members(
    zip_path: Path, replacements: Mapping[str, Path], *, level: int = 6
) -> None:
    """Replace the named members of *zip_path* with the given live files.

    Every other member keeps its local and central records byte for byte.
    Record order is unchanged.  The archive is rewritten through a
    temporary file and ``os.replace``.  Raises ``ArchiveError`` for
    unknown member names and for Zip64 or multi-disk archives.
    """
    zip_path = Path(zip_path)
    if not replacements:
        return

    fd, tmp_name = tempfile.mkstemp(prefix=f".{zip_path.name}.", dir=zip_path.parent)
    tmp = Path(tmp_name)
    try:
        with zip_path.open("rb") as src, os.fdopen(fd, "wb") as dst:
            records, cd_offset, comment = _read_central_directory(src)
            known = {r.filename for r in records}
            unknown = sorted(set(replacements) - known)
            if unknown:
                raise ArchiveError(f"No such member(s) in {zip_path.name}: {', '.join(unknown)}")

            starts = sorted({r.offset for r in records} | {cd_offset})
            span_end = dict(zip(starts, starts[1:]))

            # Anything ahead of the first local record is kept as is.
            _copy_span(src, dst, 0, starts[0])
            new_offsets: dict[int, int] = {}
            rebuilt: dict[int, _CentralRecord] = {}
            for index, record in sorted(enumerate(records), key=lambda item: item[1].offset):
                new_offsets[index] = dst.tell()
                live = replacements.get(record.filename)
                if live is None:
                    _copy_span(src, dst, record.offset, span_end[record.offset] - record.offset)
                    continue
                local, rebuilt[index] = _encode_member(record, Path(live), level)
                dst.write(local)
                logger.debug("Replaced member %s (%d bytes)", record.filename, len(local))

            new_cd_offset = dst.tell()
            central = b"".join(
                rebuilt.get(i, record).relocated(new_offsets[i])
                for i, record in enumerate(records)
            )
            if new_cd_offset + len(central) > 0xFFFFFFFF:
                raise ArchiveError(f"{zip_path.name} would require Zip64")
            dst.write(central)
            dst.write(struct.pack(
                _FMT_EOCD, _SIG_EOCD, 0, 0, len(records), len(records),
                len(central), new_cd_offset, len(comment),
            ) + comment)
        shutil.copymode(zip_path, tmp)
        os.replace(tmp, zip_path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise ArchiveError(f"Cannot update {zip_path}: {exc}") from exc
    except ArchiveError:
        tmp.unlink(missing_ok=True)
        raise

    logger.info("Updated %s: %s", zip_path.name, ", ".join(sorted(replacements)))
