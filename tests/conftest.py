"""Shared test fixtures for cfwforge."""

from __future__ import annotations

import gzip
import hashlib
import io
import os
import shutil
import stat
import tarfile
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from cfwforge.config import ForgeSettings
from cfwforge.core.errors import PatchError
from cfwforge.models.config import BuildConfig

MEMBER_MTIME = 1_600_000_000
GZIP_MTIME = 1_650_000_000
ZIP_DATE = (2024, 3, 14, 15, 9, 26)

# Tree specs map member names to: None (directory), bytes (regular file)
# or "-> target" (symbolic link).
TreeSpec = dict[str, "bytes | str | None"]

NET_TREE: TreeSpec = {
    ".": None,
    "./etc": None,
    "./etc/config.sh": b"#!/bin/sh\nMODE=stock\n",
    "./etc/hosts": b"127.0.0.1 localhost\n",
    "./bin": None,
    "./bin/run": "-> ../etc/config.sh",
}

WEB_TREE: TreeSpec = {
    ".": None,
    "./index.html": b"<html>stock</html>\n",
}


# ---------------------------------------------------------------------------
# In-process collaborators
# ---------------------------------------------------------------------------


class IdentityCodec:
    """Container transform that copies bytes unchanged."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Path, Path]] = []

    def decrypt(self, source: Path, destination: Path) -> None:
        self.calls.append(("decrypt", Path(source), Path(destination)))
        shutil.copyfile(source, destination)

    def encrypt(self, source: Path, destination: Path) -> None:
        self.calls.append(("encrypt", Path(source), Path(destination)))
        shutil.copyfile(source, destination)


class FunctionPatcher:
    """Patcher that calls a Python function with the extracted tree."""

    def __init__(self, fn: Callable[[Path], None] | None = None) -> None:
        self.fn = fn
        self.calls: list[Path] = []

    def apply(self, work_dir: Path, *, verbose: bool = False) -> None:
        self.calls.append(Path(work_dir))
        if self.fn is not None:
            self.fn(Path(work_dir))


class FailingPatcher:
    def apply(self, work_dir: Path, *, verbose: bool = False) -> None:
        raise PatchError("patch script exited with status 1")


# ---------------------------------------------------------------------------
# Archive builders
# ---------------------------------------------------------------------------


def _tar_info(name: str, value: bytes | str | None) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mtime = MEMBER_MTIME
    info.uid = os.getuid()
    info.gid = os.getgid()
    info.uname = ""
    info.gname = ""
    if value is None:
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
    elif isinstance(value, str):
        info.type = tarfile.SYMTYPE
        info.mode = 0o777
        info.linkname = value.removeprefix("-> ")
    else:
        info.type = tarfile.REGTYPE
        info.mode = 0o755 if name.endswith(".sh") else 0o644
        info.size = len(value)
    return info


def build_tar(tree: TreeSpec) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for name, value in tree.items():
            info = _tar_info(name, value)
            if isinstance(value, bytes):
                tar.addfile(info, io.BytesIO(value))
            else:
                tar.addfile(info)
    return buf.getvalue()


def build_tarball(tree: TreeSpec, gzip_mtime: int = GZIP_MTIME) -> bytes:
    """Gzipped tar, the way the vendor ships nested archives."""
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=6, mtime=gzip_mtime, filename="") as gz:
        gz.write(build_tar(tree))
    return buf.getvalue()


def build_zip(path: Path, members: dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in members.items():
            info = zipfile.ZipInfo(name, date_time=ZIP_DATE)
            info.create_system = 3
            info.external_attr = (stat.S_IFREG | 0o644) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)
    return path


def manifest_text(modules: dict[str, bytes]) -> str:
    """Pretty-printed manifest with an extra field per entry."""
    entries = []
    for name, data in modules.items():
        entries.append(
            "        {\n"
            f'            "fullName": "{name}",\n'
            f'            "md5": "{hashlib.md5(data).hexdigest()}",\n'
            f'            "size": {len(data)},\n'
            '            "version": "1.0.3"\n'
            "        }"
        )
    return '{\n    "ModuleInfo": [\n' + ",\n".join(entries) + "\n    ]\n}\n"


@dataclass
class Firmware:
    container: Path
    members: dict[str, bytes] = field(default_factory=dict)

    @property
    def manifest(self) -> bytes:
        return self.members["ModuleInfo.json"]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_tarball() -> Callable[..., bytes]:
    """Factory fixture: gzipped tar bytes from a tree description."""
    return build_tarball


@pytest.fixture
def make_tar() -> Callable[[TreeSpec], bytes]:
    """Factory fixture: uncompressed tar bytes from a tree description."""
    return build_tar


@pytest.fixture
def make_zip() -> Callable[[Path, dict[str, bytes]], Path]:
    """Factory fixture: write a Unix ZIP with fixed timestamps."""
    return build_zip


@pytest.fixture
def firmware(tmp_path: Path) -> Firmware:
    """A container (identity-encrypted ZIP) with two nested archives and a manifest."""
    net = build_tarball(NET_TREE)
    web = build_tarball(WEB_TREE)
    members = {
        "ModuleInfo.json": manifest_text({"net.hwfs": net, "web.hwfs": web}).encode(),
        "net.hwfs": net,
        "web.hwfs": web,
        "version.txt": b"V100R001C00\n",
    }
    container = build_zip(tmp_path / "fw.bin", members)
    return Firmware(container=container, members=members)


@pytest.fixture
def settings(tmp_path: Path) -> ForgeSettings:
    """Settings with a private working directory parent."""
    return ForgeSettings(work_dir_parent=tmp_path / "work", required_tools=[])


@pytest.fixture
def net_tree() -> TreeSpec:
    return dict(NET_TREE)


@pytest.fixture
def identity_codec() -> IdentityCodec:
    return IdentityCodec()


@pytest.fixture
def make_patcher() -> Callable[..., FunctionPatcher]:
    """Factory fixture: patcher running a Python function over the tree."""
    return FunctionPatcher


@pytest.fixture
def failing_patcher() -> FailingPatcher:
    return FailingPatcher()


@pytest.fixture
def make_config(tmp_path: Path, firmware: Firmware) -> Callable[..., BuildConfig]:
    """Factory fixture: BuildConfig for the firmware fixture."""

    def _factory(**kwargs: object) -> BuildConfig:
        kwargs.setdefault("output_container", tmp_path / "out" / "fw_CFW.bin")
        return BuildConfig.for_input(firmware.container, **kwargs)

    return _factory


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Factory fixture: write an executable shell script."""

    def _factory(name: str, body: str) -> Path:
        path = tmp_path / "scripts" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(0o755)
        return path

    return _factory
