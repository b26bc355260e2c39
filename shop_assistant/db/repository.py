# =============================================================================
# Persistence Gateway — Typed CRUD over the Pipeline Records
# =============================================================================
#
# Pure data access: no business rules live here. The orchestrator decides
# WHAT to write; the repository only knows HOW.
#
# DESIGN DECISION: One AsyncSession per operation.
# Multi-intent queries persist search runs from several asyncio tasks at
# the same time, and an AsyncSession cannot be used concurrently. Each
# method therefore opens its own session from the factory and commits
# before returning. Returned ORM objects are detached but fully loaded
# (expire_on_commit=False plus eager loading where relationships are read).
#
# DESIGN DECISION: A search run and its results are written in a single
# transaction, so a run is never visible without its result rows.
# =============================================================================

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from shop_assistant.db.models import (
    AgentCommunication,
    AgentPrompt,
    ChatSession,
    Choice,
    Message,
    SearchResult,
    SearchRun,
)

# Sentinel so update_session can tell "not provided" from "set to NULL"
_UNSET: Any = object()


class Repository:
    """Async persistence gateway backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str | None = None,
        priority_order: list[str] | None = None,
        profile_id: str | None = None,
    ) -> ChatSession:
        async with self._session_factory() as db:
            chat_session = ChatSession(
                user_id=user_id,
                priority_order=priority_order,
                profile_id=profile_id,
            )
            db.add(chat_session)
            await db.commit()
            await db.refresh(chat_session)
            return chat_session

    async def get_session(self, session_id: int) -> ChatSession | None:
        async with self._session_factory() as db:
            return await db.get(ChatSession, session_id)

    async def update_session(
        self,
        session_id: int,
        *,
        priority_order: list[str] | None = _UNSET,
        profile_id: str | None = _UNSET,
    ) -> ChatSession | None:
        """Last-write-wins update of the mutable session fields."""
        async with self._session_factory() as db:
            chat_session = await db.get(ChatSession, session_id)
            if chat_session is None:
                return None
            if priority_order is not _UNSET:
                chat_session.priority_order = priority_order
            if profile_id is not _UNSET:
                chat_session.profile_id = profile_id
            await db.commit()
            await db.refresh(chat_session)
            return chat_session

    async def delete_session(self, session_id: int) -> bool:
        """
        Delete a session and every record scoped to it, in one transaction.

        Children are deleted explicitly rather than through ON DELETE
        CASCADE, which SQLite only enforces with foreign keys switched on.
        Returns False when the session does not exist.
        """
        run_ids = select(SearchRun.id).where(SearchRun.session_id == session_id)
        async with self._session_factory() as db:
            if await db.get(ChatSession, session_id) is None:
                return False
            await db.execute(delete(Choice).where(Choice.session_id == session_id))
            await db.execute(
                delete(AgentCommunication).where(AgentCommunication.session_id == session_id)
            )
            await db.execute(delete(Message).where(Message.session_id == session_id))
            await db.execute(delete(SearchResult).where(SearchResult.search_run_id.in_(run_ids)))
            await db.execute(delete(SearchRun).where(SearchRun.session_id == session_id))
            await db.execute(delete(ChatSession).where(ChatSession.id == session_id))
            await db.commit()
            return True

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def create_message(
        self,
        session_id: int,
        role: str,
        content_type: str,
        content: str,
    ) -> Message:
        async with self._session_factory() as db:
            message = Message(
                session_id=session_id,
                role=role,
                content_type=content_type,
                content=content,
            )
            db.add(message)
            await db.commit()
            await db.refresh(message)
            return message

    async def list_messages(self, session_id: int) -> list[Message]:
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Search runs & results
    # -------------------------------------------------------------------------

    async def create_search_run(
        self,
        session_id: int,
        query_text: str,
        refined_params: dict | None,
        raw_search_response: dict | None,
        items: Sequence[dict[str, Any]] = (),
    ) -> tuple[SearchRun, list[SearchResult]]:
        """
        Persist one search run and its ranked results atomically.

        Each item is a mapping with title, url, position and optional
        price, source, snippet. Results come back in the order given.
        """
        async with self._session_factory() as db:
            run = SearchRun(
                session_id=session_id,
                query_text=query_text,
                refined_params=refined_params,
                raw_search_response=raw_search_response,
            )
            db.add(run)
            await db.flush()  # Get the run ID before adding results

            results = [
                SearchResult(
                    search_run_id=run.id,
                    title=item["title"],
                    url=item["url"],
                    price=item.get("price"),
                    source=item.get("source"),
                    position=item["position"],
                    snippet=item.get("snippet"),
                )
                for item in items
            ]
            db.add_all(results)
            await db.commit()
            for row in results:
                await db.refresh(row)
            await db.refresh(run)
            return run, results

    async def get_latest_search_run(self, session_id: int) -> SearchRun | None:
        stmt = (
            select(SearchRun)
            .where(SearchRun.session_id == session_id)
            .order_by(SearchRun.created_at.desc(), SearchRun.id.desc())
            .options(selectinload(SearchRun.results))
            .limit(1)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_search_runs(
        self,
        session_id: int,
        offset: int = 0,
        limit: int = 20,
    ) -> list[SearchRun]:
        """Runs newest first, each with results ordered by position."""
        stmt = (
            select(SearchRun)
            .where(SearchRun.session_id == session_id)
            .order_by(SearchRun.created_at.desc(), SearchRun.id.desc())
            .options(selectinload(SearchRun.results))
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def count_search_runs(self, session_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(SearchRun)
            .where(SearchRun.session_id == session_id)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return int(result.scalar_one())

    async def get_result_in_session(
        self,
        session_id: int,
        result_id: int,
    ) -> SearchResult | None:
        """Find a result only if its run belongs to the given session."""
        stmt = (
            select(SearchResult)
            .join(SearchRun, SearchResult.search_run_id == SearchRun.id)
            .where(
                SearchResult.id == result_id,
                SearchRun.session_id == session_id,
            )
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Choices
    # -------------------------------------------------------------------------

    async def create_choice(
        self,
        session_id: int,
        search_result_id: int,
        product_url: str,
    ) -> Choice:
        async with self._session_factory() as db:
            choice = Choice(
                session_id=session_id,
                search_result_id=search_result_id,
                product_url=product_url,
            )
            db.add(choice)
            await db.commit()
            await db.refresh(choice)
            return choice

    async def list_choices(self, session_id: int) -> list[Choice]:
        stmt = (
            select(Choice)
            .where(Choice.session_id == session_id)
            .order_by(Choice.created_at.asc(), Choice.id.asc())
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Agent communications
    # -------------------------------------------------------------------------

    async def create_agent_communication(
        self,
        session_id: int,
        from_agent: str,
        to_agent: str,
        message_type: str,
        content: str,
        metadata: dict | None = None,
    ) -> AgentCommunication:
        async with self._session_factory() as db:
            event = AgentCommunication(
                session_id=session_id,
                from_agent=from_agent,
                to_agent=to_agent,
                message_type=message_type,
                content=content,
                metadata_=metadata,
            )
            db.add(event)
            await db.commit()
            await db.refresh(event)
            return event

    async def list_agent_communications(
        self,
        session_id: int,
    ) -> list[AgentCommunication]:
        stmt = (
            select(AgentCommunication)
            .where(AgentCommunication.session_id == session_id)
            .order_by(
                AgentCommunication.created_at.asc(),
                AgentCommunication.id.asc(),
            )
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Agent prompts (read-only)
    # -------------------------------------------------------------------------

    async def find_active_prompt(
        self,
        agent_type: str,
        role: str | None,
    ) -> AgentPrompt | None:
        """
        First active prompt for the agent type and role, by sort order.

        role=None matches prompts stored with a null or "default" role.
        """
        stmt = select(AgentPrompt).where(
            AgentPrompt.agent_type == agent_type,
            AgentPrompt.is_active.is_(True),
        )
        if role is None:
            stmt = stmt.where(
                (AgentPrompt.role.is_(None)) | (AgentPrompt.role == "default")
            )
        else:
            stmt = stmt.where(AgentPrompt.role == role)
        stmt = stmt.order_by(AgentPrompt.sort_order.asc(), AgentPrompt.id.asc()).limit(1)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def add_prompt(self, prompt: AgentPrompt) -> AgentPrompt:
        """Insert a prompt row. Used by seeding scripts and tests."""
        async with self._session_factory() as db:
            db.add(prompt)
            await db.commit()
            await db.refresh(prompt)
            return prompt
