"""Build stage models — the linear repackaging state machine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BuildStage(str, Enum):
    """Pipeline stages, in execution order, plus the two terminal states."""

    PENDING = "pending"
    DECRYPT = "decrypt"
    EXTRACT = "extract"
    SNAPSHOT_ORIGINAL = "snapshot_original"
    APPLY_PATCHES = "apply_patches"
    DECIDE_AND_REBUILD = "decide_and_rebuild"
    UPDATE_MANIFEST = "update_manifest"
    SYNC_OUTER_ARCHIVE = "sync_outer_archive"
    ENCRYPT = "encrypt"
    FINALIZE = "finalize"
    SUCCESS = "success"
    FAILED = "failed"


class BuildOutcome(str, Enum):
    """Terminal outcome of a build."""

    SUCCESS = "success"
    FAILED = "failed"


STAGE_ORDER: list[BuildStage] = [
    BuildStage.DECRYPT,
    BuildStage.EXTRACT,
    BuildStage.SNAPSHOT_ORIGINAL,
    BuildStage.APPLY_PATCHES,
    BuildStage.DECIDE_AND_REBUILD,
    BuildStage.UPDATE_MANIFEST,
    BuildStage.SYNC_OUTER_ARCHIVE,
    BuildStage.ENCRYPT,
    BuildStage.FINALIZE,
]

TERMINAL_STAGES: frozenset[BuildStage] = frozenset({BuildStage.SUCCESS, BuildStage.FAILED})


def _build_transitions() -> dict[BuildStage, set[BuildStage]]:
    # Each working stage may advance to its successor or fail.
    chain = [BuildStage.PENDING, *STAGE_ORDER, BuildStage.SUCCESS]
    table: dict[BuildStage, set[BuildStage]] = {}
    for current, following in zip(chain, chain[1:]):
        table[current] = {following, BuildStage.FAILED}
    table[BuildStage.SUCCESS] = set()
    table[BuildStage.FAILED] = set()
    return table


VALID_TRANSITIONS: dict[BuildStage, set[BuildStage]] = _build_transitions()


class StageTransition(BaseModel):
    """Records a single stage transition of a build session."""

    model_config = ConfigDict(frozen=True)

    from_stage: BuildStage
    to_stage: BuildStage
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail: str = ""
