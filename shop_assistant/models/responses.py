# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API. The
# orchestrator returns plain dicts; FastAPI validates them against these
# models on the way out.
#
# DESIGN DECISION: Zero-result outcomes are ordinary responses.
# "No text or audio provided" and "No previous search to refine" come back
# as a QueryResponse with an empty `results` list and a `message`, never
# as HTTP errors.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from shop_assistant.services.execution_mode import ExecutionMode


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class SessionCreatedResponse(BaseModel):
    session_id: int


class ResultItem(BaseModel):
    """One ranked product result."""

    id: int
    title: str
    url: str
    price: str | None = None
    source: str | None = None
    position: int = Field(description="1-based rank within its search run")
    snippet: str | None = None
    image_url: str | None = None


class IntentGroup(BaseModel):
    """Results of one intent in a multi-product query."""

    query_text: str
    results: list[ResultItem]


class QueryResponse(BaseModel):
    """
    Response for POST /sessions/{id}/query and /feedback.

    `groups` is present only when the request was split into several
    product intents. `message` is set only for zero-result outcomes.
    """

    results: list[ResultItem] = Field(default_factory=list)
    query_text: str | None = None
    groups: list[IntentGroup] | None = None
    message: str | None = None


class SearchRunItem(BaseModel):
    id: int
    query_text: str
    created_at: datetime
    results: list[ResultItem]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int


class ResultsPage(BaseModel):
    """Response for GET /sessions/{id}/results — search runs newest first."""

    items: list[SearchRunItem]
    pagination: Pagination


class ChoiceResponse(BaseModel):
    product_url: str


class MessageItem(BaseModel):
    id: int
    role: str
    content_type: str
    content: str
    created_at: datetime


class MessageList(BaseModel):
    messages: list[MessageItem]


class AgentCommunicationItem(BaseModel):
    id: int
    from_agent: str
    to_agent: str
    message_type: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AgentCommunicationList(BaseModel):
    """Response for GET /sessions/{id}/agent-communications, oldest first."""

    communications: list[AgentCommunicationItem]


class ExecutionModeResponse(BaseModel):
    mode: ExecutionMode
