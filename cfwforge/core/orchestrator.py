"""Container patch orchestrator — the top-level repackaging pipeline.

The Orchestrator wires the container codec, the patcher, the fingerprint
engine, the archive rebuilder, the deterministic compressor and the
manifest updater into one strictly sequential run:

    decrypt -> extract -> snapshot -> patch -> decide/rebuild
            -> manifest -> sync outer archive -> encrypt -> finalize

All per-run state lives on a ``BuildSession``.  Any ``ForgeError`` moves
the session to FAILED and is re-raised; the only rollback is restoring
the manifest backup when the manifest update fails.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from cfwforge.config import ForgeSettings, settings as default_settings
from cfwforge.core.archive import extract_archive, rebuild
from cfwforge.core.codec import CommandCodec, ContainerCodec
from cfwforge.core.compressor import compress, read_reference_timestamp
from cfwforge.core.container_archive import extract_container, replace_members
from cfwforge.core.errors import (
    ArchiveError,
    BuildAbortedError,
    FingerprintError,
    ForgeError,
    InputNotFoundError,
)
from cfwforge.core.fingerprint import diff_fingerprints, fingerprint_tree, fingerprints_equal
from cfwforge.core.hasher import sha256_file
from cfwforge.core.manifest import compute_updates, read_manifest, update_manifest
from cfwforge.core.patcher import Patcher, ScriptPatcher
from cfwforge.core.stage_machine import BuildStageMachine
from cfwforge.core.tools import check_dependencies
from cfwforge.models.config import BuildConfig
from cfwforge.models.session import ArchiveDecision, BuildResult, BuildSession
from cfwforge.models.stages import BuildOutcome, BuildStage

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs the repackaging pipeline for one container at a time.

    Parameters
    ----------
    codec:
        Container transform.  Defaults to ``CommandCodec`` over
        ``settings.codec_command``.
    patcher:
        Patch collaborator.  Defaults to a ``ScriptPatcher`` for the
        build's patch script.
    settings:
        Tool settings.  Uses the module-level settings if not provided.
    abort_event:
        When set, the run stops at the next stage boundary with
        ``BuildAbortedError``.
    """

    def __init__(
        self,
        codec: ContainerCodec | None = None,
        patcher: Patcher | None = None,
        *,
        settings: ForgeSettings | None = None,
        abort_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.codec = codec or CommandCodec(self.settings.codec_command)
        self.patcher = patcher
        self.abort_event = abort_event
        self.stage_machine = BuildStageMachine()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run(self, config: BuildConfig) -> BuildResult:
        """Execute every stage for *config* and return the result.

        Raises the ``ForgeError`` that stopped the run, with its ``stage``
        attribute set and a FAILED ``BuildResult`` attached as ``result``.
        """
        patcher = self._prepare(config)
        keep = config.keep_work_dir or self.settings.keep_work_dir
        parent = self.settings.work_dir_parent
        if parent is not None:
            parent.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="cfwforge-", dir=parent))
        session = BuildSession(config=config, work_dir=work_dir)
        logger.info("Building %s in %s", config.input_container.name, work_dir)

        try:
            for stage, handler in self._stages(patcher):
                self._check_abort(stage)
                self.stage_machine.transition(session, stage)
                logger.info("[%s]", stage.value)
                handler(session)
            self.stage_machine.advance(session)
        except ForgeError as exc:
            if exc.stage is None:
                exc.stage = session.stage.value
            self.stage_machine.fail(session, str(exc))
            exc.result = self._result(session, keep, error=str(exc))
            raise
        except OSError as exc:
            failed = session.stage.value
            self.stage_machine.fail(session, str(exc))
            error = ForgeError(f"{failed} failed: {exc}", stage=failed)
            error.result = self._result(session, keep, error=str(error))
            raise error from exc
        finally:
            if keep:
                logger.info("Working directory retained: %s", work_dir)
            else:
                shutil.rmtree(work_dir, ignore_errors=True)

        return self._result(session, keep)

    def _result(self, session: BuildSession, keep: bool, error: str = "") -> BuildResult:
        return BuildResult(
            outcome=BuildOutcome.FAILED if error else BuildOutcome.SUCCESS,
            output_container=None if error else session.config.output_container,
            changed_archives=session.changed_archives,
            manifest_changed=session.manifest_changed,
            synced_members=session.synced_members,
            work_dir=session.work_dir if keep else None,
            history=session.history,
            error=error,
        )

    def _prepare(self, config: BuildConfig) -> Patcher:
        """Check inputs and external tools before anything touches disk."""
        if not config.input_container.is_file():
            raise InputNotFoundError(f"Input container not found: {config.input_container}")

        tools: list[str] = list(self.settings.required_tools)
        if isinstance(self.codec, CommandCodec):
            tools.insert(0, self.codec.command)
        check_dependencies(tools)

        if self.patcher is not None:
            return self.patcher
        script = config.patch_script or self.settings.resolve_patch_script()
        if not script.is_file():
            raise InputNotFoundError(f"Patch script not found: {script}")
        return ScriptPatcher(script)

    def _stages(
        self, patcher: Patcher
    ) -> list[tuple[BuildStage, Callable[[BuildSession], None]]]:
        return [
            (BuildStage.DECRYPT, self._decrypt),
            (BuildStage.EXTRACT, self._extract),
            (BuildStage.SNAPSHOT_ORIGINAL, self._snapshot_original),
            (BuildStage.APPLY_PATCHES, lambda s: self._apply_patches(s, patcher)),
            (BuildStage.DECIDE_AND_REBUILD, self._decide_and_rebuild),
            (BuildStage.UPDATE_MANIFEST, self._update_manifest),
            (BuildStage.SYNC_OUTER_ARCHIVE, self._sync_outer_archive),
            (BuildStage.ENCRYPT, self._encrypt),
            (BuildStage.FINALIZE, self._finalize),
        ]

    def _check_abort(self, next_stage: BuildStage) -> None:
        if self.abort_event is not None and self.abort_event.is_set():
            raise BuildAbortedError(f"Build aborted before {next_stage.value}")

    def _keep(self, session: BuildSession) -> bool:
        return session.config.keep_work_dir or self.settings.keep_work_dir

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _decrypt(self, session: BuildSession) -> None:
        self.codec.decrypt(session.config.input_container, session.original_archive)

    def _extract(self, session: BuildSession) -> None:
        session.container_members = extract_container(
            session.original_archive, session.extract_dir
        )
        suffix = self.settings.nested_suffix
        session.nested_archives = sorted(
            name for name in session.top_level_files
            if name.endswith(suffix) and (session.extract_dir / name).is_file()
        )
        session.intermediate_dir.mkdir(exist_ok=True)
        for name in session.nested_archives:
            content_dir = session.nested_extract_dir(name)
            if content_dir.exists() or content_dir.is_symlink():
                raise ArchiveError(f"Cannot extract {name}: {content_dir.name} already exists")
            tarball = session.nested_tarball(name)
            self.codec.decrypt(session.extract_dir / name, tarball)
            extract_archive(tarball, content_dir)
        logger.info(
            "Extracted %d members, %d nested archive(s)",
            len(session.container_members), len(session.nested_archives),
        )

    def _snapshot_original(self, session: BuildSession) -> None:
        manifest_name = self.settings.manifest_name
        if manifest_name not in session.top_level_files:
            raise InputNotFoundError(f"Container has no {manifest_name}")

        for name in session.top_level_files:
            path = session.extract_dir / name
            if path.is_file() and not path.is_symlink():
                session.top_level_hashes[name] = sha256_file(path)
        shutil.copy2(session.extract_dir / manifest_name, session.manifest_backup(manifest_name))

        for name in session.nested_archives:
            try:
                session.baseline_fingerprints[name] = fingerprint_tree(
                    session.nested_extract_dir(name)
                )
            except FingerprintError as exc:
                raise ArchiveError(f"{name}: {exc}") from exc
            logger.debug(
                "%s: %d entries fingerprinted", name, len(session.baseline_fingerprints[name])
            )

    def _apply_patches(self, session: BuildSession, patcher: Patcher) -> None:
        patcher.apply(session.extract_dir, verbose=session.config.verbose)

    def _decide_and_rebuild(self, session: BuildSession) -> None:
        shutil.copy2(session.original_archive, session.generated_archive)
        for name in session.nested_archives:
            session.decisions.append(self._decide(session, name))

        failed = [d for d in session.decisions if d.error]
        if failed:
            names = ", ".join(d.name for d in failed)
            raise ArchiveError(f"Rebuild failed for {names}: {failed[0].error}")

        rebuilt = {
            d.name: session.extract_dir / d.name for d in session.decisions if d.rebuilt
        }
        replace_members(session.generated_archive, rebuilt, level=self.settings.zip_level)
        if not rebuilt:
            logger.info("No nested archive changed")

    def _decide(self, session: BuildSession, name: str) -> ArchiveDecision:
        """Compare *name*'s tree to its baseline and rebuild it if it changed."""
        tarball = session.nested_tarball(name)
        try:
            after = fingerprint_tree(session.nested_extract_dir(name))
        except FingerprintError as exc:
            logger.error("%s: %s", name, exc)
            return ArchiveDecision(name=name, changed=True, error=str(exc))

        before = session.baseline_fingerprints[name]
        if fingerprints_equal(before, after):
            logger.info("%s: unchanged", name)
            if not self._keep(session):
                tarball.unlink(missing_ok=True)
            return ArchiveDecision(name=name, changed=False)

        logger.info("%s: changed, rebuilding", name)
        for change in diff_fingerprints(before, after):
            fields = f" ({', '.join(change.fields)})" if change.fields else ""
            logger.debug("  %-8s %s%s", change.change.value, change.path, fields)
        try:
            self._rebuild_nested(session, name)
        except ArchiveError as exc:
            logger.error("%s: %s", name, exc)
            return ArchiveDecision(name=name, changed=True, error=str(exc))
        return ArchiveDecision(name=name, changed=True, rebuilt=True)

    def _rebuild_nested(self, session: BuildSession, name: str) -> None:
        stem = Path(name).stem
        tarball = session.nested_tarball(name)
        original = tarball.read_bytes()
        reference = read_reference_timestamp(original)
        raw = rebuild(original, session.nested_extract_dir(name))

        new_tarball = session.intermediate_dir / f"{stem}_new.tar.gz"
        new_tarball.write_bytes(compress(raw, reference, level=self.settings.gzip_level))
        wrapped = session.intermediate_dir / f"{stem}_new{Path(name).suffix}"
        self.codec.encrypt(new_tarball, wrapped)

        target = session.extract_dir / name
        shutil.copymode(target, wrapped)
        os.replace(wrapped, target)
        if not self._keep(session):
            tarball.unlink(missing_ok=True)
            new_tarball.unlink(missing_ok=True)
        logger.debug("%s: rebuilt with gzip timestamp %d", name, reference)

    def _update_manifest(self, session: BuildSession) -> None:
        s = self.settings
        manifest = session.extract_dir / s.manifest_name
        backup = session.manifest_backup(s.manifest_name)
        try:
            document = read_manifest(manifest)
            session.manifest_updates = compute_updates(
                session.extract_dir,
                document,
                session.top_level_hashes,
                list_key=s.manifest_list_key,
                key_field=s.manifest_key_field,
                hash_field=s.manifest_hash_field,
                algorithm=s.manifest_hash_algorithm,
            )
            session.manifest_changed = update_manifest(
                manifest,
                session.manifest_updates,
                list_key=s.manifest_list_key,
                key_field=s.manifest_key_field,
                hash_field=s.manifest_hash_field,
            )
        except (ForgeError, OSError, ValueError):
            shutil.copy2(backup, manifest)
            logger.warning("Restored %s from its pre-patch backup", manifest.name)
            raise

    def _sync_outer_archive(self, session: BuildSession) -> None:
        replacements: dict[str, Path] = {}
        for name, digest in session.top_level_hashes.items():
            if name in session.nested_archives:
                continue
            path = session.extract_dir / name
            if not path.is_file():
                logger.warning("%s was removed by the patch; keeping the original", name)
                continue
            if sha256_file(path) != digest:
                replacements[name] = path

        known = set(session.top_level_files)
        for entry in sorted(session.extract_dir.iterdir()):
            if entry.is_file() and not entry.is_symlink() and entry.name not in known:
                logger.warning("New top-level file %s is not added to the container", entry.name)

        replace_members(session.generated_archive, replacements, level=self.settings.zip_level)
        session.synced_members = sorted(replacements)

    def _encrypt(self, session: BuildSession) -> None:
        self.codec.encrypt(session.generated_archive, session.generated_container)

    def _finalize(self, session: BuildSession) -> None:
        output = session.config.output_container
        output.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(session.generated_container, output)
        logger.info("Wrote %s", output)
