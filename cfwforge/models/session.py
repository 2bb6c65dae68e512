"""Build session — the orchestrator's transient per-run state.

A ``BuildSession`` is created when a run starts and is discarded when it
ends.  It owns the working directory and everything computed about the
container while the run is in flight: the pre-patch baseline, the
per-archive decisions and the pending manifest updates.  Stage functions
receive it explicitly instead of sharing module-level state.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from cfwforge.models.config import BuildConfig
from cfwforge.models.fingerprint import Fingerprint
from cfwforge.models.manifest import ModuleUpdate
from cfwforge.models.stages import BuildOutcome, BuildStage, StageTransition


class ArchiveDecision(BaseModel):
    """What the pipeline decided for one nested archive."""

    model_config = ConfigDict(frozen=True)

    name: str
    changed: bool
    rebuilt: bool = False
    error: str = ""


class BuildSession(BaseModel):
    """Mutable state of one repackaging run."""

    config: BuildConfig
    work_dir: Path
    stage: BuildStage = BuildStage.PENDING
    history: list[StageTransition] = Field(default_factory=list)

    # Outer archive content and the baseline captured before patching
    container_members: list[str] = Field(default_factory=list)
    top_level_hashes: dict[str, str] = Field(default_factory=dict)
    baseline_fingerprints: dict[str, list[Fingerprint]] = Field(default_factory=dict)
    nested_archives: list[str] = Field(default_factory=list)

    # Results accumulated after patching
    decisions: list[ArchiveDecision] = Field(default_factory=list)
    manifest_updates: dict[str, ModuleUpdate] = Field(default_factory=dict)
    manifest_changed: bool = False
    synced_members: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Working directory layout
    # ------------------------------------------------------------------

    @property
    def stem(self) -> str:
        return self.config.input_container.stem

    @property
    def original_archive(self) -> Path:
        """The decrypted outer archive, never modified."""
        return self.work_dir / f"{self.stem}.zip"

    @property
    def generated_archive(self) -> Path:
        """Copy of the outer archive that receives replaced members."""
        return self.work_dir / f"{self.stem}_CFW.zip"

    @property
    def generated_container(self) -> Path:
        suffix = self.config.input_container.suffix or ".hwfs"
        return self.work_dir / f"{self.stem}_CFW{suffix}"

    @property
    def extract_dir(self) -> Path:
        return self.work_dir / "unzip"

    @property
    def intermediate_dir(self) -> Path:
        """Decrypted and rebuilt nested archives."""
        return self.work_dir / "nested"

    def manifest_backup(self, manifest_name: str) -> Path:
        backup = Path(manifest_name)
        return self.work_dir / f"{backup.stem}_original{backup.suffix}"

    def nested_extract_dir(self, archive_name: str) -> Path:
        return self.extract_dir / Path(archive_name).stem

    def nested_tarball(self, archive_name: str) -> Path:
        return self.intermediate_dir / f"{Path(archive_name).stem}.tar.gz"

    @property
    def top_level_files(self) -> list[str]:
        """Outer archive members stored at the top level, directories excluded."""
        return [m for m in self.container_members if "/" not in m]

    @property
    def changed_archives(self) -> list[str]:
        return [d.name for d in self.decisions if d.changed]


class BuildResult(BaseModel):
    """Summary of a finished run, returned to callers."""

    model_config = ConfigDict(frozen=True)

    outcome: BuildOutcome
    output_container: Path | None = None
    changed_archives: list[str] = []
    manifest_changed: bool = False
    synced_members: list[str] = []
    work_dir: Path | None = None  # set only when the directory was retained
    history: list[StageTransition] = []
    error: str = ""
