# =============================================================================
# Agent Execution Mode — Runtime-Switchable Dispatch Strategy
# =============================================================================
#
# Search jobs run either inline ("sync") or through the shared bounded
# queue ("queue"). The mode is process-wide state, initialised from
# AGENT_EXECUTION_MODE and changed by administrators at runtime through
# PUT /api/admin/settings/agent-execution-mode. Each request reads the
# mode once, when it starts dispatching searches.
# =============================================================================

from __future__ import annotations

import enum
import logging

logger = logging.getLogger(__name__)


class ExecutionMode(str, enum.Enum):
    """How search jobs are dispatched: immediately, or via the agent queue."""

    IMMEDIATE = "sync"
    QUEUED = "queue"

    @classmethod
    def parse(cls, value: str | None) -> "ExecutionMode":
        """Lenient parse used for env config: anything but "queue" is sync."""
        if value and value.strip().lower() == cls.QUEUED.value:
            return cls.QUEUED
        return cls.IMMEDIATE


class ExecutionModeState:
    """Holds the current execution mode for the whole process."""

    def __init__(self, initial: ExecutionMode = ExecutionMode.IMMEDIATE) -> None:
        self._mode = initial
        logger.info("Agent execution mode initialised: %s", initial.value)

    def get_mode(self) -> ExecutionMode:
        return self._mode

    def set_mode(self, mode: ExecutionMode) -> None:
        if mode == self._mode:
            return
        self._mode = mode
        logger.info("Agent execution mode changed: %s", mode.value)
