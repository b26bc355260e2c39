# =============================================================================
# Admin API — Runtime Agent Execution Mode
# =============================================================================
#
# Lets operators switch how search jobs are dispatched without a restart:
#
#   GET /admin/settings/agent-execution-mode  → {"mode": "sync" | "queue"}
#   PUT /admin/settings/agent-execution-mode  ← {"mode": "sync" | "queue"}
#
# A request reads the mode once when it starts searching, so a switch
# affects requests that start afterwards. Jobs already waiting in the
# queue still run there.
#
# Invalid modes are rejected by the request model (422).
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from shop_assistant.api.deps import get_execution_mode_state
from shop_assistant.models.requests import ExecutionModeRequest
from shop_assistant.models.responses import ExecutionModeResponse
from shop_assistant.services.execution_mode import ExecutionModeState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"])


@router.get(
    "/admin/settings/agent-execution-mode",
    response_model=ExecutionModeResponse,
    summary="Get the agent execution mode",
)
async def get_execution_mode(
    state: ExecutionModeState = Depends(get_execution_mode_state),
) -> ExecutionModeResponse:
    return ExecutionModeResponse(mode=state.get_mode())


@router.put(
    "/admin/settings/agent-execution-mode",
    response_model=ExecutionModeResponse,
    summary="Set the agent execution mode",
    description=(
        "'sync' runs search jobs inline. 'queue' sends them through the "
        "process-wide agent queue with bounded concurrency."
    ),
)
async def set_execution_mode(
    request: ExecutionModeRequest,
    state: ExecutionModeState = Depends(get_execution_mode_state),
) -> ExecutionModeResponse:
    logger.info("Admin set agent execution mode: %s", request.mode.value)
    state.set_mode(request.mode)
    return ExecutionModeResponse(mode=state.get_mode())
