# =============================================================================
# FastAPI Application — Shop Assistant Backend
# =============================================================================
#
# Run from project root:
#   uvicorn shop_assistant.main:app --reload
#
# DESIGN DECISION: Domain errors map to HTTP in ONE place.
# The orchestrator raises NotFoundError without knowing about HTTP; the
# exception handler below turns it into 404 {"detail": ...}. Everything
# else the pipeline can survive is degraded to a fallback before it gets
# here; anything left is a genuine 500.
#
# DESIGN DECISION: Tables are created at startup (create_all).
# Migrations are out of scope; create_all is idempotent.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shop_assistant.api import admin, sessions
from shop_assistant.config import settings
from shop_assistant.db.engine import async_engine, create_all
from shop_assistant.errors import NotFoundError
from shop_assistant.models.responses import HealthResponse

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    await create_all(async_engine)
    yield
    await async_engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Conversational shopping assistant: query orchestration over search agents.",
    lifespan=lifespan,
)

app.include_router(sessions.router, prefix="/api")
app.include_router(admin.router, prefix="/api")


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
