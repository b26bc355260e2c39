# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# These models define the records the query pipeline reads and writes.
#
# SCHEMA OVERVIEW:
#
# ┌────────────────┐      ┌──────────────────┐      ┌──────────────────┐
# │ chat_sessions  │─1:N─▶│ search_runs      │─1:N─▶│ search_results   │
# ├────────────────┤      ├──────────────────┤      ├──────────────────┤
# │ id (PK)        │      │ id (PK)          │      │ id (PK)          │
# │ user_id        │      │ session_id (FK)  │      │ search_run_id    │
# │ profile_id     │      │ query_text       │      │ title, url       │
# │ priority_order │      │ refined_params   │      │ price, source    │
# │ created_at     │      │ raw_search_resp. │      │ position, snippet│
# └────────────────┘      └──────────────────┘      └──────────────────┘
#        │ 1:N
#        ├──▶ messages              (transcript, append-only)
#        ├──▶ choices               (selected result + denormalised URL)
#        └──▶ agent_communications  (inter-agent audit trail, best-effort)
#
#   agent_prompts — administrator-configured instruction templates, read
#   by the downstream agent client (CRUD lives outside this service).
#
# DESIGN DECISIONS:
#
# 1. JSON columns use the generic `JSON` type with a JSONB variant on
#    PostgreSQL, so the same models run on SQLite in tests.
#
# 2. `created_at` gets a Python-side default (microsecond precision) as
#    well as a server default. "Latest search run" ordering depends on it,
#    and SQLite's CURRENT_TIMESTAMP only has second resolution.
#
# 3. Closed vocabularies (roles, content types, agent names, message
#    types) are string enums stored as plain strings.
# =============================================================================

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ContentType(str, enum.Enum):
    TEXT = "text"
    AUDIO_URL = "audio_url"
    TABLE = "table"


class AgentName(str, enum.Enum):
    """
    Logical agents used for audit attribution.

    These are roles, not processes: the same backend plays all of them.
    """

    COMMUNICATION = "COMMUNICATION"
    SEARCH = "SEARCH"
    LOCATION = "LOCATION"
    COMPARISON = "COMPARISON"
    PRESENTATION = "PRESENTATION"
    ASR = "ASR"
    LLM = "LLM"


class MessageType(str, enum.Enum):
    TASK = "task"
    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class ChatSession(Base):
    """
    One user conversation.

    `priority_order` is an ordered subset of {"price", "quality",
    "location"} passed to the comparison and location agents as a
    ranking hint. Null means "no preference".
    """

    __tablename__ = "chat_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    priority_order: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    search_runs: Mapped[list["SearchRun"]] = relationship(
        "SearchRun",
        back_populates="session",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ChatSession(id={self.id}, priorities={self.priority_order})>"


# ---------------------------------------------------------------------------
# Message — user-visible transcript
# ---------------------------------------------------------------------------


class Message(Base):
    """
    One line of the conversation transcript.

    Table messages store JSON text: {"headers": [...], "rows": [{...}]}.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, session={self.session_id}, "
            f"role='{self.role}', type='{self.content_type}')>"
        )


# ---------------------------------------------------------------------------
# SearchRun / SearchResult
# ---------------------------------------------------------------------------


class SearchRun(Base):
    """One invocation of the search capability for one resolved query."""

    __tablename__ = "search_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    query_text: Mapped[str] = mapped_column(Text, nullable=False)

    # Refinement parameters in effect when the run was made. Feedback
    # builds on the latest run's params.
    refined_params: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Summary of the provider response, e.g. {"items": 3}
    raw_search_response: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    session: Mapped["ChatSession"] = relationship(
        "ChatSession", back_populates="search_runs",
    )
    results: Mapped[list["SearchResult"]] = relationship(
        "SearchResult",
        back_populates="search_run",
        cascade="all, delete-orphan",
        order_by="SearchResult.position",
    )

    def __repr__(self) -> str:
        return f"<SearchRun(id={self.id}, query='{self.query_text[:40]}')>"


class SearchResult(Base):
    """One ranked item of a search run. `position` is 1-based provider rank."""

    __tablename__ = "search_results"
    __table_args__ = (
        UniqueConstraint("search_run_id", "position", name="uq_result_run_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_run_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("search_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)

    search_run: Mapped["SearchRun"] = relationship(
        "SearchRun", back_populates="results",
    )

    def __repr__(self) -> str:
        return (
            f"<SearchResult(id={self.id}, run={self.search_run_id}, "
            f"position={self.position})>"
        )


# ---------------------------------------------------------------------------
# Choice
# ---------------------------------------------------------------------------


class Choice(Base):
    """
    A product the user selected.

    `product_url` is copied from the result at selection time so history
    does not change if the result row ever does.
    """

    __tablename__ = "choices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    search_result_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("search_results.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_url: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Agent Communication — inter-agent audit trail
# ---------------------------------------------------------------------------


class AgentCommunication(Base):
    """
    One audit event: a message passed from one logical agent to another.

    Written best-effort. Losing a row is acceptable; failing a user
    request because of one is not.
    """

    __tablename__ = "agent_communications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_agent: Mapped[str] = mapped_column(String(30), nullable=False)
    to_agent: Mapped[str] = mapped_column(String(30), nullable=False)
    message_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Named `metadata_` to avoid SQLAlchemy's reserved `.metadata`.
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AgentCommunication(id={self.id}, {self.from_agent}->"
            f"{self.to_agent}, type='{self.message_type}')>"
        )


# ---------------------------------------------------------------------------
# Agent Prompt — administrator-configured instructions (read-only here)
# ---------------------------------------------------------------------------


class AgentPrompt(Base):
    """
    Instruction template and model override for one agent type.

    A null or "default" role is the fallback for every role. The first
    active prompt by `sort_order` wins.
    """

    __tablename__ = "agent_prompts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_type: Mapped[str] = mapped_column(String(30), nullable=False)
    role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Indexes
# =============================================================================
# Every pipeline read filters by session and orders by creation time.
# =============================================================================

search_run_session_idx = Index(
    "idx_search_run_session_created",
    SearchRun.session_id,
    SearchRun.created_at,
)

message_session_idx = Index(
    "idx_message_session_created",
    Message.session_id,
    Message.created_at,
)

agent_communication_session_idx = Index(
    "idx_agent_comm_session_created",
    AgentCommunication.session_id,
    AgentCommunication.created_at,
)

agent_prompt_lookup_idx = Index(
    "idx_agent_prompt_type_role",
    AgentPrompt.agent_type,
    AgentPrompt.role,
)
