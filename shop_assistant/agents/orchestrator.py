# =============================================================================
# Query Orchestrator — Session Pipeline as LangGraph State Graphs
# =============================================================================
#
# Turns one user utterance (text or audio) into persisted, presented search
# results, and refines the latest search from user feedback.
#
# QUERY GRAPH:
#   START ──▶ resolve_input ──(no text)──────────────────────────────▶ END
#                  │
#                  ▼
#         record_user_message ──▶ refine ──▶ locate ──▶ split_intents
#                                                          │
#                                    ┌──── 1 intent ───────┴─── k > 1 ────┐
#                                    ▼                                    ▼
#                              search_single                       search_fan_out
#                                    └──────────────▶ present ◀───────────┘
#                                                        │
#                                                        ▼
#                                                       END
#
# FEEDBACK GRAPH (reuses the same nodes, no intent splitting):
#   START ──▶ record_user_message ──▶ refine ──▶ locate ──▶ search_single
#         ──▶ present ──▶ END
#
# DESIGN DECISION: Conditional edges for the two real branches.
# "Nothing to search for" and "one vs several intents" are routing
# decisions, so they live on the graph. Everything inside a node is a
# straight sequence of awaits.
#
# DESIGN DECISION: Graphs compiled per orchestrator instance.
# Nodes are bound methods over the injected collaborators (repository,
# agent clients, queue), so tests can build an orchestrator around fakes.
# The app builds exactly one orchestrator at startup.
#
# DESIGN DECISION: Per-intent failures degrade, never abort.
# Each fan-out branch catches its own scheduler-level failure, records an
# empty search run and contributes zero results. The user still gets the
# results of every other intent.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from shop_assistant.agents.communication_log import AgentCommunicationLogger
from shop_assistant.agents.downstream import DownstreamAgentClient
from shop_assistant.agents.queue import AgentQueue
from shop_assistant.agents.search import SearchClient, SearchItem
from shop_assistant.config import settings
from shop_assistant.db.models import (
    AgentName,
    ChatSession,
    ContentType,
    MessageRole,
    MessageType,
    SearchResult,
)
from shop_assistant.db.repository import Repository
from shop_assistant.errors import DownstreamUnavailableError, NotFoundError
from shop_assistant.services.execution_mode import ExecutionMode, ExecutionModeState
from shop_assistant.services.priorities import effective_priority_order, normalize_priority_order

logger = logging.getLogger(__name__)

NO_INPUT_MESSAGE = "No text or audio provided"
TRANSCRIPTION_FAILED_MESSAGE = "Could not transcribe audio"
NOTHING_TO_REFINE_MESSAGE = "No previous search to refine"

SINGLE_TABLE_HEADERS = ["Title", "Price", "Source", "URL", "Image"]
MULTI_TABLE_HEADERS = ["Title", "Price", "Source", "URL"]

MAX_LIMIT_PER_INTENT = 30
MIN_LIMIT_PER_INTENT = 5


# ---------------------------------------------------------------------------
# Pipeline State
# ---------------------------------------------------------------------------


@dataclass
class IntentOutcome:
    """One intent's search: the provider items and the rows persisted for them."""

    query_text: str
    items: list[SearchItem] = field(default_factory=list)
    results: list[SearchResult] = field(default_factory=list)


class PipelineState(TypedDict, total=False):
    """
    State flowing through both graphs.

    total=False: nodes return only the keys they set.
    """

    # --- Input (set by caller) ---
    session_id: int
    text: str | None
    audio_url: str | None
    priority_order: list[str] | None
    mode: ExecutionMode

    # --- Feedback input ---
    feedback_message: str | None
    selected_indices: list[int]
    previous_params: dict[str, Any] | None

    # --- Intermediate (set by nodes) ---
    user_text: str
    from_audio: bool
    user_message_id: int
    query_text: str
    region: str | None
    refined_params: dict[str, Any]
    intents: list[str]
    outcomes: list[IntentOutcome]
    multi_intent: bool

    # --- Output ---
    response: dict[str, Any]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class QueryOrchestrator:
    """Session use cases: create, query, feedback, results, choices, listings."""

    def __init__(
        self,
        repository: Repository,
        agents: DownstreamAgentClient,
        search_client: SearchClient,
        queue: AgentQueue,
        execution_mode: ExecutionModeState,
        communications: AgentCommunicationLogger,
    ) -> None:
        self._repository = repository
        self._agents = agents
        self._search = search_client
        self._queue = queue
        self._execution_mode = execution_mode
        self._communications = communications
        self._query_graph = self._build_query_graph()
        self._feedback_graph = self._build_feedback_graph()

    # -------------------------------------------------------------------------
    # Graph Assembly
    # -------------------------------------------------------------------------

    def _add_shared_nodes(self, builder: StateGraph) -> None:
        builder.add_node("record_user_message", self._record_user_message_node)
        builder.add_node("refine", self._refine_node)
        builder.add_node("locate", self._locate_node)
        builder.add_node("search_single", self._search_single_node)
        builder.add_node("present", self._present_node)

    def _build_query_graph(self):
        builder = StateGraph(PipelineState)
        builder.add_node("resolve_input", self._resolve_input_node)
        self._add_shared_nodes(builder)
        builder.add_node("split_intents", self._split_intents_node)
        builder.add_node("search_fan_out", self._search_fan_out_node)

        builder.add_edge(START, "resolve_input")
        builder.add_conditional_edges(
            "resolve_input",
            _route_after_input,
            {"record": "record_user_message", "end": END},
        )
        builder.add_edge("record_user_message", "refine")
        builder.add_edge("refine", "locate")
        builder.add_edge("locate", "split_intents")
        builder.add_conditional_edges(
            "split_intents",
            _route_by_intent_count,
            {"single": "search_single", "multi": "search_fan_out"},
        )
        builder.add_edge("search_single", "present")
        builder.add_edge("search_fan_out", "present")
        builder.add_edge("present", END)
        return builder.compile()

    def _build_feedback_graph(self):
        builder = StateGraph(PipelineState)
        self._add_shared_nodes(builder)

        builder.add_edge(START, "record_user_message")
        builder.add_edge("record_user_message", "refine")
        builder.add_edge("refine", "locate")
        builder.add_edge("locate", "search_single")
        builder.add_edge("search_single", "present")
        builder.add_edge("present", END)
        return builder.compile()

    # -------------------------------------------------------------------------
    # Public API — sessions
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str | None = None,
        priorities: Sequence[object] | None = None,
        profile_id: str | None = None,
    ) -> dict[str, Any]:
        priority_order = normalize_priority_order(priorities)
        chat_session = await self._repository.create_session(
            user_id=user_id,
            priority_order=priority_order,
            profile_id=_clean_profile_id(profile_id),
        )
        logger.info(
            "Session created: id=%s, priority_order=%s",
            chat_session.id, priority_order,
        )
        return {"session_id": chat_session.id}

    async def submit_query(
        self,
        session_id: int,
        text: str | None = None,
        audio_url: str | None = None,
        priorities: Sequence[object] | None = None,
        profile_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Run the query graph for one utterance.

        Raises:
            NotFoundError: The session does not exist.
        """
        logger.info(
            "Query submit: session=%s, has_text=%s, has_audio=%s",
            session_id, bool(text and text.strip()), bool(audio_url),
        )
        chat_session = await self._require_session(session_id)
        priority_order = await self._apply_session_updates(chat_session, priorities, profile_id)

        state = await self._query_graph.ainvoke({
            "session_id": session_id,
            "text": text,
            "audio_url": audio_url,
            "priority_order": priority_order,
            "mode": self._execution_mode.get_mode(),
        })
        return state["response"]

    async def submit_feedback(
        self,
        session_id: int,
        message: str,
        selected_indices: Sequence[int] | None = None,
        priorities: Sequence[object] | None = None,
        profile_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Refine the latest search run of the session from user feedback.

        Returns a zero-result response (not an error) when the session
        has no search run yet.

        Raises:
            NotFoundError: The session does not exist.
        """
        logger.info(
            "Feedback submit: session=%s, message_length=%d, selected=%d",
            session_id, len(message or ""), len(selected_indices or []),
        )
        chat_session = await self._require_session(session_id)
        priority_order = await self._apply_session_updates(chat_session, priorities, profile_id)

        latest = await self._repository.get_latest_search_run(session_id)
        if latest is None:
            logger.warning("Feedback rejected: no previous search (session=%s)", session_id)
            return {"results": [], "message": NOTHING_TO_REFINE_MESSAGE}

        state = await self._feedback_graph.ainvoke({
            "session_id": session_id,
            "user_text": message,
            "from_audio": False,
            "feedback_message": message,
            "selected_indices": list(selected_indices or []),
            "previous_params": dict(latest.refined_params or {}),
            "priority_order": priority_order,
            "mode": self._execution_mode.get_mode(),
        })
        return state["response"]

    # -------------------------------------------------------------------------
    # Public API — results, choices, listings
    # -------------------------------------------------------------------------

    async def get_results(
        self,
        session_id: int,
        page: int | None = 1,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Search runs newest first, page size capped at the results ceiling."""
        await self._require_session(session_id)
        page = max(page or 1, 1)
        if not limit or limit < 1:
            limit = settings.search_result_limit
        limit = min(limit, settings.results_page_ceiling)

        runs = await self._repository.list_search_runs(
            session_id, offset=(page - 1) * limit, limit=limit,
        )
        total = await self._repository.count_search_runs(session_id)
        logger.info(
            "Results listed: session=%s, page=%d, limit=%d, total=%d",
            session_id, page, limit, total,
        )
        return {
            "items": [
                {
                    "id": run.id,
                    "query_text": run.query_text,
                    "created_at": run.created_at,
                    "results": [_result_dict(r) for r in run.results],
                }
                for run in runs
            ],
            "pagination": {"page": page, "limit": limit, "total": total},
        }

    async def choose_product(self, session_id: int, result_id: int) -> dict[str, Any]:
        """
        Record that the user picked a result and return its product URL.

        Raises:
            NotFoundError: Session absent, or the result is not from this session.
        """
        await self._require_session(session_id)
        result = await self._repository.get_result_in_session(session_id, result_id)
        if result is None:
            logger.warning(
                "Product not found in session: session=%s, result=%s",
                session_id, result_id,
            )
            raise NotFoundError("Product not found in this session")

        await self._repository.create_choice(session_id, result.id, result.url)
        logger.info("Product chosen: session=%s, result=%s", session_id, result.id)
        return {"product_url": result.url}

    async def choice_redirect(self, session_id: int, result_id: int) -> str:
        """Same as choose_product, returning only the URL to redirect to."""
        chosen = await self.choose_product(session_id, result_id)
        return chosen["product_url"]

    async def list_messages(self, session_id: int) -> list[dict[str, Any]]:
        await self._require_session(session_id)
        messages = await self._repository.list_messages(session_id)
        return [
            {
                "id": m.id,
                "role": m.role,
                "content_type": m.content_type,
                "content": m.content,
                "created_at": m.created_at,
            }
            for m in messages
        ]

    async def list_agent_communications(self, session_id: int) -> list[dict[str, Any]]:
        await self._require_session(session_id)
        events = await self._repository.list_agent_communications(session_id)
        return [
            {
                "id": e.id,
                "from_agent": e.from_agent,
                "to_agent": e.to_agent,
                "message_type": e.message_type,
                "content": e.content,
                "metadata": e.metadata_ or {},
                "created_at": e.created_at,
            }
            for e in events
        ]

    # -------------------------------------------------------------------------
    # Node Functions
    # -------------------------------------------------------------------------
    # Each node receives the full state and returns a partial update dict.
    # -------------------------------------------------------------------------

    async def _resolve_input_node(self, state: PipelineState) -> dict:
        """Trimmed text, or the transcript of the audio when text is blank."""
        user_text = (state.get("text") or "").strip()
        audio_url = state.get("audio_url")
        from_audio = False

        if not user_text and audio_url:
            try:
                transcript = await self._agents.transcribe(audio_url, state["session_id"])
            except DownstreamUnavailableError:
                logger.warning(
                    "Query rejected: transcription failed (session=%s)",
                    state["session_id"],
                )
                return {
                    "user_text": "",
                    "response": {"results": [], "message": TRANSCRIPTION_FAILED_MESSAGE},
                }
            user_text = transcript.strip()
            from_audio = True

        if not user_text:
            logger.warning("Query rejected: no text or audio (session=%s)", state["session_id"])
            return {
                "user_text": "",
                "response": {"results": [], "message": NO_INPUT_MESSAGE},
            }
        return {"user_text": user_text, "from_audio": from_audio}

    async def _record_user_message_node(self, state: PipelineState) -> dict:
        content_type = ContentType.AUDIO_URL if state.get("from_audio") else ContentType.TEXT
        message = await self._repository.create_message(
            state["session_id"], MessageRole.USER.value, content_type.value, state["user_text"],
        )
        return {"user_message_id": message.id}

    async def _refine_node(self, state: PipelineState) -> dict:
        session_id = state["session_id"]
        if state.get("feedback_message") is not None:
            refined = await self._agents.refine_from_feedback(
                state["feedback_message"],
                state.get("selected_indices") or [],
                state.get("previous_params") or {},
                session_id=session_id,
            )
        else:
            refined = await self._agents.refine_query(state["user_text"], session_id=session_id)
        return {"query_text": refined.query_text, "refined_params": refined.refined_params}

    async def _locate_node(self, state: PipelineState) -> dict:
        """Append the LOCATION agent's query fragment, if it returned one."""
        region = await self._agents.extract_delivery_region(
            state["user_text"],
            state["query_text"],
            priorities=state.get("priority_order"),
            session_id=state["session_id"],
        )
        if not region.augmented_query or not region.augmented_query.strip():
            return {"region": region.region}
        query_text = f"{state['query_text'].strip()} {region.augmented_query.strip()}".strip()
        logger.debug("Query augmented with delivery region: '%s'", query_text[:80])
        return {"query_text": query_text}

    async def _split_intents_node(self, state: PipelineState) -> dict:
        intents = await self._agents.split_into_search_intents(
            state["user_text"], state["query_text"], session_id=state["session_id"],
        )
        return {"intents": intents}

    async def _search_single_node(self, state: PipelineState) -> dict:
        session_id = state["session_id"]
        query_text = state["query_text"]
        limit = settings.search_result_limit

        await self._communications.log(
            session_id, AgentName.COMMUNICATION, AgentName.SEARCH, MessageType.TASK,
            f'Search for: "{query_text[:200]}"',
            {"query_text": query_text[:200], "limit": limit},
        )
        await self._communications.log(
            session_id, AgentName.COMMUNICATION, AgentName.SEARCH, MessageType.REQUEST,
            f'Search request: "{query_text[:200]}" (limit {limit})',
            {"query_text": query_text[:200], "limit": limit, "mode": state["mode"].value},
        )
        outcome = await self._search_intent(state, query_text, limit)
        return {"outcomes": [outcome], "multi_intent": False}

    async def _search_fan_out_node(self, state: PipelineState) -> dict:
        """Search every intent concurrently; results keep intent order."""
        intents = state["intents"]
        limit = per_intent_limit(len(intents))

        await self._communications.log(
            state["session_id"], AgentName.COMMUNICATION, AgentName.SEARCH, MessageType.TASK,
            f"Multi-product search: {len(intents)} intents ({limit} results each)",
            {"intents": intents, "limit_per_intent": limit, "mode": state["mode"].value},
        )
        outcomes = await asyncio.gather(
            *(self._search_intent(state, intent, limit) for intent in intents)
        )
        return {"outcomes": list(outcomes), "multi_intent": True}

    async def _present_node(self, state: PipelineState) -> dict:
        """Format, compare, persist the assistant messages and build the response."""
        session_id = state["session_id"]
        outcomes = state.get("outcomes") or []
        multi = state.get("multi_intent", False)
        label = "; ".join(o.query_text for o in outcomes) if multi else state["query_text"]

        rows: list[dict[str, Any]] = []
        for outcome in outcomes:
            rows.extend(_response_rows(outcome))
        presentable = [_presentable(row) for row in rows]

        formatted = await self._agents.format_results_for_presentation(
            presentable, label, session_id=session_id,
        )
        summary = await self._agents.compare_prices(
            presentable, label, priorities=state.get("priority_order"), session_id=session_id,
        )
        if summary:
            formatted = f"{formatted}\n\n---\n**Price comparison:** {summary}"

        await self._repository.create_message(
            session_id, MessageRole.ASSISTANT.value, ContentType.TEXT.value, formatted,
        )
        headers = MULTI_TABLE_HEADERS if multi else SINGLE_TABLE_HEADERS
        await self._repository.create_message(
            session_id, MessageRole.ASSISTANT.value, ContentType.TABLE.value,
            build_results_table(rows, headers),
        )

        response: dict[str, Any] = {"results": rows, "query_text": label}
        if multi:
            response["groups"] = [
                {"query_text": o.query_text, "results": _response_rows(o)}
                for o in outcomes
            ]
        logger.info(
            "Query processed: session=%s, intents=%d, results=%d, query='%s'",
            session_id, len(outcomes), len(rows), label[:80],
        )
        return {"response": response}

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    async def _search_intent(
        self,
        state: PipelineState,
        query_text: str,
        limit: int,
    ) -> IntentOutcome:
        """Dispatch one search through the queue, log it and persist the run."""
        session_id = state["session_id"]
        try:
            items = await self._queue.run(
                lambda: self._search.search(query_text, limit), state["mode"],
            )
        except Exception as e:
            logger.warning(
                "Search failed for intent '%s', continuing with no results: %s",
                query_text[:80], e,
            )
            items = []

        await self._communications.log(
            session_id, AgentName.SEARCH, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f'Search done: {len(items)} results for "{query_text[:100]}"',
            {"result_count": len(items), "query_text": query_text[:200]},
        )
        _, results = await self._repository.create_search_run(
            session_id,
            query_text,
            state.get("refined_params") or {},
            {"items": len(items)},
            [item.to_record() for item in items],
        )
        return IntentOutcome(query_text=query_text, items=list(items), results=results)

    async def _require_session(self, session_id: int) -> ChatSession:
        chat_session = await self._repository.get_session(session_id)
        if chat_session is None:
            logger.warning("Session not found: %s", session_id)
            raise NotFoundError("Session not found")
        return chat_session

    async def _apply_session_updates(
        self,
        chat_session: ChatSession,
        priorities: Sequence[object] | None,
        profile_id: str | None,
    ) -> list[str] | None:
        """Write profile/priority changes and return the effective priority order."""
        updates: dict[str, Any] = {}
        if profile_id is not None:
            cleaned = _clean_profile_id(profile_id)
            if cleaned != chat_session.profile_id:
                updates["profile_id"] = cleaned

        priority_order, needs_write = effective_priority_order(
            priorities, chat_session.priority_order,
        )
        if needs_write:
            updates["priority_order"] = priority_order

        if updates:
            await self._repository.update_session(chat_session.id, **updates)
            logger.debug("Session %s updated: %s", chat_session.id, sorted(updates))
        return priority_order


# ---------------------------------------------------------------------------
# Routing & pure helpers
# ---------------------------------------------------------------------------


def _route_after_input(state: PipelineState) -> str:
    return "record" if state.get("user_text") else "end"


def _route_by_intent_count(state: PipelineState) -> str:
    return "multi" if len(state.get("intents") or []) > 1 else "single"


def per_intent_limit(intent_count: int) -> int:
    """
    Result budget per intent for a multi-intent query.

        >>> [per_intent_limit(k) for k in (2, 3, 4, 5)]
        [10, 6, 5, 5]
    """
    share = settings.search_result_limit // max(intent_count, 1)
    return min(max(MIN_LIMIT_PER_INTENT, share), MAX_LIMIT_PER_INTENT)


def build_results_table(rows: Sequence[dict[str, Any]], headers: Sequence[str]) -> str:
    """Serialise results as the chat table payload {"headers", "rows"}."""
    columns = {
        "Title": "title",
        "Price": "price",
        "Source": "source",
        "URL": "url",
        "Image": "image_url",
    }
    table = {
        "headers": list(headers),
        "rows": [
            {header: row.get(columns[header]) or "" for header in headers}
            for row in rows
        ],
    }
    return json.dumps(table, ensure_ascii=False)


def _response_rows(outcome: IntentOutcome) -> list[dict[str, Any]]:
    """Persisted results with the provider image URL re-attached by position."""
    images = {item.position: item.image_url for item in outcome.items}
    rows = []
    for result in outcome.results:
        row = _result_dict(result)
        row["image_url"] = images.get(result.position)
        rows.append(row)
    return rows


def _result_dict(result: SearchResult) -> dict[str, Any]:
    return {
        "id": result.id,
        "title": result.title,
        "url": result.url,
        "price": result.price,
        "source": result.source,
        "position": result.position,
        "snippet": result.snippet,
    }


def _presentable(row: dict[str, Any]) -> dict[str, Any]:
    presentable = {key: row.get(key) for key in ("title", "url", "price", "source", "snippet")}
    if row.get("image_url"):
        presentable["image_url"] = row["image_url"]
    return presentable


def _clean_profile_id(profile_id: str | None) -> str | None:
    if profile_id is None:
        return None
    return profile_id.strip() or None
