# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# - repository: real Repository over a throwaway SQLite file (aiosqlite).
#   NullPool so no connection outlives the event loop that opened it;
#   every test drives async code through its own asyncio.run().
# - ai_service: fake AI microservice behind httpx.MockTransport. Routes are
#   keyed by the last path segment ("search", "refine-query", ...); a
#   missing route answers 404, which the clients treat as unavailable.
# - build_orchestrator: QueryOrchestrator wired to the fakes above.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import os

# Keep the module-level engine off PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from shop_assistant.agents.communication_log import AgentCommunicationLogger
from shop_assistant.agents.downstream import DownstreamAgentClient
from shop_assistant.agents.orchestrator import QueryOrchestrator
from shop_assistant.agents.queue import AgentQueue
from shop_assistant.agents.search import SearchClient
from shop_assistant.db.engine import build_session_factory, create_all
from shop_assistant.db.repository import Repository
from shop_assistant.services.execution_mode import ExecutionMode, ExecutionModeState
from shop_assistant.services.prompts import RepositoryPromptSource

AI_BASE_URL = "http://ai.test"


class FakeAIService:
    """In-memory stand-in for the AI microservice."""

    def __init__(self, routes: dict | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: list[tuple[str, dict]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content) if request.content else {}
        self.calls.append((endpoint, body))
        route = self.routes.get(endpoint)
        if route is None:
            return httpx.Response(404, json={"error": "no such endpoint"})
        if callable(route):
            route = route(body)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def bodies(self, endpoint: str) -> list[dict]:
        return [body for name, body in self.calls if name == endpoint]


def no_llm():
    raise ValueError("No LLM configured in tests")


def items(*titles: str, prefix: str = "https://shop.example/") -> list[dict]:
    """Provider-style search items, ranked in the given order."""
    return [
        {
            "title": title,
            "url": f"{prefix}{i}",
            "price": f"${10 * i}",
            "source": "Shop",
            "position": i,
            "imageUrl": f"https://img.example/{i}.jpg",
        }
        for i, title in enumerate(titles, 1)
    ]


@pytest.fixture
def repository(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool,
    )
    asyncio.run(create_all(engine))
    yield Repository(build_session_factory(engine))
    asyncio.run(engine.dispose())


@pytest.fixture
def ai_service():
    return FakeAIService()


@pytest.fixture
def build_orchestrator(repository, ai_service):
    def _build(
        llm=None,
        mode: ExecutionMode = ExecutionMode.IMMEDIATE,
        queue: AgentQueue | None = None,
        search_client: SearchClient | None = None,
    ) -> QueryOrchestrator:
        communications = AgentCommunicationLogger(repository)
        http_client = ai_service.client()
        agents = DownstreamAgentClient(
            communications=communications,
            prompts=RepositoryPromptSource(repository),
            base_url=AI_BASE_URL,
            timeout=5,
            http_client=http_client,
            llm_factory=(lambda: llm) if llm is not None else no_llm,
        )
        search = search_client or SearchClient(
            base_url=AI_BASE_URL, timeout=5, http_client=http_client,
        )
        return QueryOrchestrator(
            repository=repository,
            agents=agents,
            search_client=search,
            queue=queue or AgentQueue(3),
            execution_mode=ExecutionModeState(mode),
            communications=communications,
        )

    return _build
