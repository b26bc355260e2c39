# =============================================================================
# Admin Prompt Lookup — Active Instruction Template per Agent
# =============================================================================
#
# Administrators configure instruction templates (and optionally a model)
# per agent type and role. This module only READS them; creating and
# editing prompts belongs to the admin tooling.
#
# Lookup rule: first active prompt for (agent_type, role) by sort order.
# A non-default role with no prompt falls back to the default role.
#
# DESIGN DECISION: Lookup failures are not fatal. A broken prompt table
# must degrade the pipeline to "no admin prompt", never fail the request.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from shop_assistant.db.models import AgentName
from shop_assistant.db.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "default"


@dataclass(frozen=True)
class PromptConfig:
    """Admin prompt content and model override handed to a capability."""

    id: int | None
    content: str
    model: str | None = None


class PromptSource(Protocol):
    """Anything that can resolve the active prompt for an agent."""

    async def get_active_prompt(
        self,
        agent: AgentName,
        role: str = DEFAULT_ROLE,
    ) -> PromptConfig | None:
        ...


class NoPrompts:
    """PromptSource with nothing configured."""

    async def get_active_prompt(
        self,
        agent: AgentName,
        role: str = DEFAULT_ROLE,
    ) -> PromptConfig | None:
        return None


class RepositoryPromptSource:
    """PromptSource backed by the agent_prompts table."""

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def get_active_prompt(
        self,
        agent: AgentName,
        role: str = DEFAULT_ROLE,
    ) -> PromptConfig | None:
        role = role or DEFAULT_ROLE
        try:
            prompt = await self._repository.find_active_prompt(
                agent.value,
                None if role == DEFAULT_ROLE else role,
            )
        except Exception as e:
            logger.warning(
                "Prompt lookup failed for %s/%s: %s", agent.value, role, e,
            )
            return None

        if prompt is None and role != DEFAULT_ROLE:
            return await self.get_active_prompt(agent, DEFAULT_ROLE)
        if prompt is None or not prompt.content:
            return None
        return PromptConfig(id=prompt.id, content=prompt.content, model=prompt.model)
