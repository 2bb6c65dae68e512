"""Tests for the manifest updater — minimal textual merge and atomic writes."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from cfwforge.core import manifest as manifest_mod
from cfwforge.core.errors import ManifestError, ManifestWriteError
from cfwforge.core.hasher import sha256_hex
from cfwforge.core.manifest import (
    apply_updates,
    compute_updates,
    read_entries,
    read_manifest,
    update_manifest,
)
from cfwforge.models.manifest import ModuleUpdate

DOC = """{
    "Product" : "HG8245",
    "ModuleInfo": [
        {
            "fullName": "net.hwfs",
            "md5": "aaa",
            "size": 100,
            "version": "1.0"
        },
        {"fullName": "web.hwfs", "md5": "bbb", "size": 200},
        {
            "fullName": "app.hwfs",
            "md5": "ccc",
            "size": 300
        }
    ]
}
"""


class TestApplyUpdates:
    def test_empty_updates_is_no_change(self):
        assert apply_updates(DOC, {}) is None

    def test_identical_values_is_no_change(self):
        assert apply_updates(DOC, {"net.hwfs": ModuleUpdate(hash="aaa", size=100)}) is None

    def test_only_targeted_fields_change(self):
        result = apply_updates(
            DOC,
            {
                "net.hwfs": ModuleUpdate(hash="d41d8cd9", size=101),
                "app.hwfs": ModuleUpdate(hash="ffff", size=300),
            },
        )
        expected = (
            DOC.replace('"md5": "aaa"', '"md5": "d41d8cd9"')
            .replace('"size": 100', '"size": 101')
            .replace('"md5": "ccc"', '"md5": "ffff"')
        )
        assert result == expected

    def test_compact_entry_formatting_preserved(self):
        result = apply_updates(DOC, {"web.hwfs": ModuleUpdate(hash="123", size=7)})
        assert '{"fullName": "web.hwfs", "md5": "123", "size": 7}' in result
        assert '"Product" : "HG8245"' in result

    def test_unknown_module_ignored(self):
        assert apply_updates(DOC, {"other.hwfs": ModuleUpdate(hash="1", size=1)}) is None

    def test_missing_fields_are_appended(self):
        doc = '{"ModuleInfo": [{"fullName": "net.hwfs"}]}'
        result = apply_updates(doc, {"net.hwfs": ModuleUpdate(hash="abc", size=5)})
        assert result == '{"ModuleInfo": [{"fullName": "net.hwfs", "md5": "abc", "size": 5}]}'

    def test_custom_hash_field(self):
        doc = '{"Modules": [{"name": "a", "sha": "0", "size": 1}]}'
        result = apply_updates(
            doc,
            {"a": ModuleUpdate(hash="f", size=1)},
            list_key="Modules",
            key_field="name",
            hash_field="sha",
        )
        assert result == '{"Modules": [{"name": "a", "sha": "f", "size": 1}]}'

    def test_malformed_document(self):
        with pytest.raises(ManifestError, match="Malformed"):
            apply_updates('{"ModuleInfo": [', {"a": ModuleUpdate(hash="1", size=1)})

    def test_missing_list(self):
        with pytest.raises(ManifestError, match="no 'ModuleInfo' list"):
            apply_updates('{"Other": []}', {"a": ModuleUpdate(hash="1", size=1)})

    def test_read_entries(self):
        entries = read_entries(DOC)
        assert list(entries) == ["net.hwfs", "web.hwfs", "app.hwfs"]
        assert entries["net.hwfs"]["version"] == "1.0"


class TestComputeUpdates:
    @pytest.fixture
    def root(self, tmp_path: Path) -> Path:
        for name, data in (("net.hwfs", b"net"), ("web.hwfs", b"web"), ("app.hwfs", b"app")):
            (tmp_path / name).write_bytes(data)
        return tmp_path

    def test_all_entries_recomputed_without_baseline(self, root: Path):
        updates = compute_updates(root, DOC)
        assert set(updates) == {"net.hwfs", "web.hwfs", "app.hwfs"}
        assert updates["net.hwfs"] == ModuleUpdate(hash=hashlib.md5(b"net").hexdigest(), size=3)

    def test_baseline_limits_to_changed_files(self, root: Path):
        baseline = {"net.hwfs": sha256_hex(b"net"), "web.hwfs": sha256_hex(b"old"),
                    "app.hwfs": sha256_hex(b"app")}
        assert set(compute_updates(root, DOC, baseline)) == {"web.hwfs"}

    def test_missing_module_file(self, root: Path):
        (root / "app.hwfs").unlink()
        with pytest.raises(ManifestError, match="app.hwfs"):
            compute_updates(root, DOC)

    def test_sha256_algorithm(self, root: Path):
        updates = compute_updates(root, DOC, algorithm="sha256")
        assert updates["web.hwfs"].hash == sha256_hex(b"web")

    @pytest.mark.parametrize("name", ["../outside.bin", "/etc/passwd", "sub/../../x.hwfs"])
    def test_rejects_names_outside_root(self, root: Path, name: str):
        doc = f'{{"ModuleInfo": [{{"fullName": "{name}", "md5": "a", "size": 1}}]}}'
        with pytest.raises(ManifestError, match="Unsafe module name"):
            compute_updates(root, doc)

    def test_unreadable_module_raises_manifest_error(self, root: Path, monkeypatch):
        def broken_digest(path, algorithm="sha256"):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(manifest_mod, "file_digest", broken_digest)
        with pytest.raises(ManifestError, match="Permission denied"):
            compute_updates(root, DOC)


class TestUpdateManifest:
    @pytest.fixture
    def path(self, tmp_path: Path) -> Path:
        path = tmp_path / "ModuleInfo.json"
        path.write_text(DOC, encoding="utf-8")
        path.chmod(0o640)
        return path

    def test_no_change_leaves_file_alone(self, path: Path):
        inode = path.stat().st_ino
        assert update_manifest(path, {}) is False
        assert path.stat().st_ino == inode
        assert path.read_text(encoding="utf-8") == DOC

    def test_writes_and_keeps_mode(self, path: Path):
        assert update_manifest(path, {"net.hwfs": ModuleUpdate(hash="x", size=1)}) is True
        assert '"md5": "x"' in path.read_text(encoding="utf-8")
        assert path.stat().st_mode & 0o777 == 0o640

    def test_failed_write_leaves_original(self, path: Path, monkeypatch):
        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(manifest_mod.os, "replace", broken_replace)
        with pytest.raises(ManifestWriteError, match="disk full"):
            update_manifest(path, {"net.hwfs": ModuleUpdate(hash="x", size=1)})
        assert path.read_text(encoding="utf-8") == DOC
        assert os.listdir(path.parent) == ["ModuleInfo.json"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ManifestError):
            update_manifest(tmp_path / "ModuleInfo.json", {})

    def test_invalid_utf8(self, path: Path):
        path.write_bytes(b"\xff\xfe broken")
        with pytest.raises(ManifestError, match="Cannot read manifest"):
            read_manifest(path)
        with pytest.raises(ManifestError):
            update_manifest(path, {"net.hwfs": ModuleUpdate(hash="x", size=1)})
        assert path.read_bytes() == b"\xff\xfe broken"
