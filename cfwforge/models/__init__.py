"""cfwforge data models — all Pydantic v2."""

from cfwforge.models.config import BuildConfig, default_output_path
from cfwforge.models.fingerprint import (
    ChangeKind,
    EntryKind,
    Fingerprint,
    FingerprintChange,
)
from cfwforge.models.manifest import ModuleUpdate
from cfwforge.models.session import ArchiveDecision, BuildResult, BuildSession
from cfwforge.models.stages import (
    STAGE_ORDER,
    VALID_TRANSITIONS,
    BuildOutcome,
    BuildStage,
    StageTransition,
)

__all__ = [
    # config
    "BuildConfig",
    "default_output_path",
    # fingerprints
    "EntryKind",
    "ChangeKind",
    "Fingerprint",
    "FingerprintChange",
    # manifest
    "ModuleUpdate",
    # stages
    "BuildStage",
    "BuildOutcome",
    "StageTransition",
    "STAGE_ORDER",
    "VALID_TRANSITIONS",
    # session
    "ArchiveDecision",
    "BuildSession",
    "BuildResult",
]
