# =============================================================================
# API Dependencies — Process-Wide Pipeline Wiring
# =============================================================================
#
# Route handlers receive their collaborators through FastAPI's Depends():
#
#   get_execution_mode_state() → current sync/queue mode (admin-switchable)
#   get_agent_queue()          → THE bounded agent queue for this process
#   get_orchestrator()         → QueryOrchestrator wired to the real clients
#
# DESIGN DECISION: lru_cache singletons.
# The agent queue caps concurrency across ALL sessions, so exactly one may
# exist per process, and the execution mode set by an admin must be seen
# by every later request. Tests swap any of these through
# app.dependency_overrides.
# =============================================================================

from __future__ import annotations

from functools import lru_cache

from shop_assistant.agents.communication_log import AgentCommunicationLogger
from shop_assistant.agents.downstream import DownstreamAgentClient
from shop_assistant.agents.orchestrator import QueryOrchestrator
from shop_assistant.agents.queue import AgentQueue
from shop_assistant.agents.search import SearchClient
from shop_assistant.config import settings
from shop_assistant.db.engine import async_session_factory
from shop_assistant.db.repository import Repository
from shop_assistant.services.execution_mode import ExecutionMode, ExecutionModeState
from shop_assistant.services.prompts import RepositoryPromptSource


@lru_cache
def get_execution_mode_state() -> ExecutionModeState:
    return ExecutionModeState(ExecutionMode.parse(settings.agent_execution_mode))


@lru_cache
def get_agent_queue() -> AgentQueue:
    return AgentQueue(settings.agent_queue_concurrency)


@lru_cache
def get_orchestrator() -> QueryOrchestrator:
    repository = Repository(async_session_factory)
    communications = AgentCommunicationLogger(repository)
    agents = DownstreamAgentClient(
        communications=communications,
        prompts=RepositoryPromptSource(repository),
    )
    return QueryOrchestrator(
        repository=repository,
        agents=agents,
        search_client=SearchClient(),
        queue=get_agent_queue(),
        execution_mode=get_execution_mode_state(),
        communications=communications,
    )
