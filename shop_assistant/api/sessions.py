# =============================================================================
# Sessions API — Conversational Shopping Endpoints
# =============================================================================
#
# Thin controlling layer over the QueryOrchestrator:
#
#   POST /sessions                                   → create session
#   POST /sessions/{id}/query                        → text / voice query
#   POST /sessions/{id}/feedback                     → refine latest search
#   GET  /sessions/{id}/results?page&limit           → search runs, paged
#   GET  /sessions/{id}/choice/{result_id}           → record choice
#   GET  /sessions/{id}/choice/{result_id}/redirect  → record choice, 302
#   GET  /sessions/{id}/messages                     → chat transcript
#   GET  /sessions/{id}/agent-communications         → inter-agent trail
#
# Unknown sessions and foreign result ids raise NotFoundError, which the
# app-level exception handler in main.py turns into a 404.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from shop_assistant.agents.orchestrator import QueryOrchestrator
from shop_assistant.api.deps import get_orchestrator
from shop_assistant.models.requests import (
    CreateSessionRequest,
    FeedbackRequest,
    QueryRequest,
)
from shop_assistant.models.responses import (
    AgentCommunicationList,
    ChoiceResponse,
    MessageList,
    QueryResponse,
    ResultsPage,
    SessionCreatedResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


@router.post(
    "",
    response_model=SessionCreatedResponse,
    status_code=201,
    summary="Start a shopping conversation",
)
async def create_session(
    request: CreateSessionRequest,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return await orchestrator.create_session(
        user_id=request.user_id,
        priorities=request.priorities,
        profile_id=request.profile_id,
    )


@router.post(
    "/{session_id}/query",
    response_model=QueryResponse,
    response_model_exclude_none=True,
    summary="Submit a text or voice query",
    description=(
        "Refines the request, splits it into product intents, searches each "
        "intent and stores the results. Multi-product requests return a "
        "`groups` breakdown per intent."
    ),
)
async def submit_query(
    session_id: int,
    request: QueryRequest,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return await orchestrator.submit_query(
        session_id,
        text=request.text,
        audio_url=request.audio_url,
        priorities=request.priorities,
        profile_id=request.profile_id,
    )


@router.post(
    "/{session_id}/feedback",
    response_model=QueryResponse,
    response_model_exclude_none=True,
    summary="Refine the latest search with feedback",
)
async def submit_feedback(
    session_id: int,
    request: FeedbackRequest,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return await orchestrator.submit_feedback(
        session_id,
        request.message,
        selected_indices=request.selected_indices,
        priorities=request.priorities,
        profile_id=request.profile_id,
    )


@router.get(
    "/{session_id}/results",
    response_model=ResultsPage,
    summary="List search runs, newest first",
)
async def get_results(
    session_id: int,
    page: int = Query(default=1, description="1-based page; values below 1 read as 1"),
    limit: int = Query(default=20, description="Page size, capped at 30"),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return await orchestrator.get_results(session_id, page=page, limit=limit)


@router.get(
    "/{session_id}/choice/{result_id}",
    response_model=ChoiceResponse,
    summary="Record the user's product choice",
)
async def choose_product(
    session_id: int,
    result_id: int,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return await orchestrator.choose_product(session_id, result_id)


@router.get(
    "/{session_id}/choice/{result_id}/redirect",
    summary="Record the choice and redirect to the product page",
    response_class=RedirectResponse,
    status_code=302,
)
async def choice_redirect(
    session_id: int,
    result_id: int,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    url = await orchestrator.choice_redirect(session_id, result_id)
    return RedirectResponse(url=url, status_code=302)


@router.get(
    "/{session_id}/messages",
    response_model=MessageList,
    summary="Chat transcript, oldest first",
)
async def list_messages(
    session_id: int,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"messages": await orchestrator.list_messages(session_id)}


@router.get(
    "/{session_id}/agent-communications",
    response_model=AgentCommunicationList,
    summary="Inter-agent audit trail, oldest first",
)
async def list_agent_communications(
    session_id: int,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"communications": await orchestrator.list_agent_communications(session_id)}
