"""Deterministic gzip compression for rebuilt nested archives.

The gzip header carries a 4-byte modification time.  Rebuilt archives
reuse the timestamp of the stream they replace, so compressing identical
tar bytes always yields identical output regardless of when the build
runs.  No file name is stored in the header.
"""

from __future__ import annotations

import gzip
import io
import struct

from cfwforge.core.errors import ArchiveError

GZIP_MAGIC = b"\x1f\x8b"
_HEADER_LEN = 10


def read_reference_timestamp(data: bytes) -> int:
    """Return the MTIME field of a gzip stream's header.

    Raises ``ArchiveError`` if *data* does not start with a gzip header.
    """
    if len(data) < _HEADER_LEN or data[:2] != GZIP_MAGIC:
        raise ArchiveError("Not a gzip stream: missing gzip header")
    (mtime,) = struct.unpack_from("<I", data, 4)
    return mtime


def compress(raw: bytes, reference_timestamp: int, level: int = 6) -> bytes:
    """Gzip *raw* with the header timestamp forced to *reference_timestamp*."""
    buf = io.BytesIO()
    with gzip.GzipFile(
        fileobj=buf, mode="wb", compresslevel=level, mtime=reference_timestamp, filename=""
    ) as gz:
        gz.write(raw)
    return buf.getvalue()
