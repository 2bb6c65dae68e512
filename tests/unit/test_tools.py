"""Tests for external tool execution and the command-backed collaborators."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from cfwforge.core.codec import CommandCodec, ContainerCodec
from cfwforge.core.errors import DependencyMissingError, PatchError, TransformError
from cfwforge.core.patcher import Patcher, ScriptPatcher
from cfwforge.core.tools import check_dependencies, resolve_tool, run_tool


class TestRunTool:
    def test_returns_output(self, write_script):
        script = write_script("hello.sh", 'echo "hello $1"\n')
        assert run_tool([script, "world"]).strip() == "hello world"

    def test_non_zero_raises_chosen_error(self, write_script):
        script = write_script("fail.sh", "echo 'bad key' >&2\nexit 3\n")
        with pytest.raises(TransformError, match="status 3: bad key"):
            run_tool([script], error_cls=TransformError)

    def test_launch_failure(self, tmp_path: Path):
        with pytest.raises(PatchError, match="Cannot run"):
            run_tool([tmp_path / "absent"], error_cls=PatchError)

    def test_echo_at_debug(self, write_script, caplog):
        script = write_script("say.sh", "echo line one\necho line two\n")
        caplog.set_level(logging.DEBUG, logger="cfwforge.core.tools")
        run_tool([script, "arg with space"])
        assert f"+ {script} 'arg with space'" in caplog.text
        assert "    line one\n    line two" in caplog.text

    def test_runs_in_cwd(self, write_script, tmp_path: Path):
        script = write_script("pwd.sh", "pwd\n")
        work = tmp_path / "work"
        work.mkdir()
        assert run_tool([script], cwd=work).strip() == str(work.resolve())


class TestCheckDependencies:
    def test_resolves_path_and_explicit(self, write_script):
        script = write_script("codec.sh", "exit 0\n")
        resolved = check_dependencies(["sh", str(script)])
        assert resolved[str(script)] == script
        assert resolved["sh"].name == "sh"

    def test_lists_all_missing(self, tmp_path: Path):
        with pytest.raises(DependencyMissingError) as exc_info:
            check_dependencies(["sh", "no-such-tool-1", str(tmp_path / "no-such-tool-2")])
        assert "no-such-tool-1" in str(exc_info.value)
        assert "no-such-tool-2" in str(exc_info.value)

    def test_resolve_missing(self):
        assert resolve_tool("definitely-not-installed-xyz") is None


class TestCommandCodec:
    def test_satisfies_protocol(self):
        assert isinstance(CommandCodec("FirmwareHWFS.sh"), ContainerCodec)

    def test_invokes_verb_source_destination(self, write_script, tmp_path: Path):
        script = write_script("codec.sh", 'echo "$1" > "$3.verb"\ncp "$2" "$3"\n')
        src = tmp_path / "in.bin"
        src.write_bytes(b"payload")
        codec = CommandCodec(script)

        codec.decrypt(src, tmp_path / "out.zip")
        assert (tmp_path / "out.zip").read_bytes() == b"payload"
        assert (tmp_path / "out.zip.verb").read_text().strip() == "decrypt"

        codec.encrypt(tmp_path / "out.zip", tmp_path / "again.bin")
        assert (tmp_path / "again.bin.verb").read_text().strip() == "encrypt"

    def test_failure_raises_transform_error(self, write_script, tmp_path: Path):
        script = write_script("broken.sh", "exit 1\n")
        src = tmp_path / "in.bin"
        src.write_bytes(b"x")
        with pytest.raises(TransformError):
            CommandCodec(script).decrypt(src, tmp_path / "out.zip")

    def test_missing_output_raises(self, write_script, tmp_path: Path):
        script = write_script("silent.sh", "exit 0\n")
        src = tmp_path / "in.bin"
        src.write_bytes(b"x")
        with pytest.raises(TransformError, match="no output"):
            CommandCodec(script).encrypt(src, tmp_path / "out.bin")


class TestScriptPatcher:
    def test_satisfies_protocol(self, write_script):
        assert isinstance(ScriptPatcher(write_script("p.sh", "exit 0\n")), Patcher)

    def test_runs_in_work_dir_with_verbose_flag(self, write_script, tmp_path: Path):
        script = write_script("patch.sh", 'echo "args:$*" > patched.txt\n')
        work = tmp_path / "unzip"
        work.mkdir()
        ScriptPatcher(script).apply(work, verbose=True)
        assert (work / "patched.txt").read_text().strip() == "args:-v"

    def test_quiet_by_default(self, write_script, tmp_path: Path):
        script = write_script("patch.sh", 'echo "args:$*" > patched.txt\n')
        ScriptPatcher(script).apply(tmp_path)
        assert (tmp_path / "patched.txt").read_text().strip() == "args:"

    def test_non_zero_raises_patch_error(self, write_script, tmp_path: Path):
        script = write_script("patch.sh", "exit 4\n")
        with pytest.raises(PatchError, match="status 4"):
            ScriptPatcher(script).apply(tmp_path)
