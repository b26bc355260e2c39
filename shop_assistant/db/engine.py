# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine
# FastAPI is async, so every query goes through SQLAlchemy's async engine.
# PostgreSQL uses the asyncpg driver; tests use SQLite via aiosqlite.
#
# SESSION POLICY:
# The persistence gateway (db/repository.py) opens one short-lived
# AsyncSession per operation via `async_session_factory()` and commits
# explicitly. An AsyncSession must not be shared between concurrently
# running tasks, and multi-intent queries persist runs from several tasks
# at once, so there is no request-scoped session.
# =============================================================================

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shop_assistant.config import settings
from shop_assistant.db.models import Base


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Pool sizing only applies to server databases. SQLite picks its own
    pool class and rejects `pool_size` / `max_overflow`.
    """
    kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        # pool_size=5 persistent connections, +10 overflow under load
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    expire_on_commit=False keeps loaded attributes readable after commit.
    Without it, touching an attribute would trigger a lazy refresh, which
    fails outside the session in async code.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables. Used at startup in development and by tests."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Process-wide engine and session factory
# ---------------------------------------------------------------------------
# create_async_engine does not connect until first use.
# ---------------------------------------------------------------------------
async_engine = build_engine(settings.database_url, echo=settings.debug)
async_session_factory = build_session_factory(async_engine)
