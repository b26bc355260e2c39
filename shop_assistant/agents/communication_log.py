# =============================================================================
# Agent Communication Logger — Best-Effort Inter-Agent Audit Trail
# =============================================================================
#
# Every cross-agent step of the pipeline (COMMUNICATION → SEARCH,
# LOCATION → COMMUNICATION, ...) is mirrored as one row in
# agent_communications. Operators read the trail per session to see what
# each logical agent was asked and what it answered.
#
# DESIGN DECISION: Diagnostic, not transactional. Write failures are
# logged and swallowed; `log()` reports the outcome as a bool so the call
# site can see the best-effort contract. Availability > auditability.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from shop_assistant.config import settings
from shop_assistant.db.models import AgentName, MessageType
from shop_assistant.db.repository import Repository

logger = logging.getLogger(__name__)


class AgentCommunicationLogger:
    """Append-only writer for the inter-agent audit trail."""

    def __init__(
        self,
        repository: Repository,
        max_content_chars: int | None = None,
    ) -> None:
        self._repository = repository
        self._max_chars = max_content_chars or settings.audit_content_max_chars

    async def log(
        self,
        session_id: int,
        from_agent: AgentName,
        to_agent: AgentName,
        message_type: MessageType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Persist one audit event. Never raises.

        Returns True when the row was written, False when it was dropped.
        """
        text = (content or "")[: self._max_chars]
        logger.debug(
            "Agent communication: session=%s %s->%s %s (%d chars)",
            session_id, from_agent.value, to_agent.value,
            message_type.value, len(text),
        )
        try:
            await self._repository.create_agent_communication(
                session_id=session_id,
                from_agent=from_agent.value,
                to_agent=to_agent.value,
                message_type=message_type.value,
                content=text,
                metadata=metadata or {},
            )
        except Exception as e:
            logger.warning(
                "Failed to log agent communication for session %s: %s",
                session_id, e,
            )
            return False
        return True
