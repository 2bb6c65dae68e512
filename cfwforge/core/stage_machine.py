"""Build stage state machine.

Enforces:
- Valid transitions only (VALID_TRANSITIONS table)
- Strictly sequential progress through STAGE_ORDER
- No transition out of a terminal state
- Every transition recorded in the session history
"""

from __future__ import annotations

import logging

from cfwforge.core.errors import InvalidTransitionError
from cfwforge.models.session import BuildSession
from cfwforge.models.stages import (
    STAGE_ORDER,
    TERMINAL_STAGES,
    VALID_TRANSITIONS,
    BuildStage,
    StageTransition,
)

logger = logging.getLogger(__name__)


class BuildStageMachine:
    """Drives a ``BuildSession`` through the repackaging stages."""

    def transition(
        self, session: BuildSession, target: BuildStage, detail: str = ""
    ) -> StageTransition:
        """Move *session* to *target*, recording the transition.

        Raises ``InvalidTransitionError`` if the move is not allowed from
        the session's current stage.
        """
        current = session.stage
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}",
                stage=current.value,
            )

        record = StageTransition(from_stage=current, to_stage=target, detail=detail)
        session.history.append(record)
        session.stage = target
        logger.debug("Stage %s -> %s", current.value, target.value)
        return record

    def advance(self, session: BuildSession, detail: str = "") -> StageTransition:
        """Move *session* to the stage that follows its current one."""
        return self.transition(session, self.next_stage(session.stage), detail)

    def fail(self, session: BuildSession, detail: str = "") -> StageTransition | None:
        """Move *session* to FAILED; no-op if it already ended."""
        if session.stage in TERMINAL_STAGES:
            return None
        return self.transition(session, BuildStage.FAILED, detail)

    @staticmethod
    def next_stage(stage: BuildStage) -> BuildStage:
        if stage == BuildStage.PENDING:
            return STAGE_ORDER[0]
        if stage == STAGE_ORDER[-1]:
            return BuildStage.SUCCESS
        if stage in TERMINAL_STAGES:
            raise InvalidTransitionError(
                f"Build already ended in {stage.value}", stage=stage.value
            )
        return STAGE_ORDER[STAGE_ORDER.index(stage) + 1]
