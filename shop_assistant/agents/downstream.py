# =============================================================================
# Downstream Agent Client — ASR, LLM, LOCATION, PRESENTATION, COMPARISON
# =============================================================================
#
# Wraps every non-search capability the pipeline delegates to:
#
#   transcribe()                      ASR           → audio URL to text
#   refine_query()                    LLM           → canonical search query
#   refine_from_feedback()            LLM           → feedback-driven refinement
#   extract_delivery_region()         LOCATION      → region + query fragment
#   split_into_search_intents()       LLM           → 1..5 product intents
#   format_results_for_presentation() PRESENTATION  → chat-ready summary
#   compare_prices()                  COMPARISON    → prose price comparison
#
# RESILIENCE PATTERN (same for every capability):
#   1. Log a request event to the agent communication trail
#   2. Call the remote capability with a bounded timeout, or log a
#      "skipped" response when it is not configured
#   3. Parse loosely (several response field aliases accepted)
#   4. Log a response event, or an error event plus a fallback value
#
# Only transcription raises on failure: without text there is nothing to
# search for. Everything else degrades to a documented fallback.
#
# DESIGN DECISION: HTTP (httpx) against the AI microservice for all
# capabilities except intent splitting, which goes straight to the LLM
# provider (services/llm.py). Administrator prompts and model overrides
# are forwarded as `prompt_content` / `model`; for intent splitting the LLM
# prompt replaces the system prompt and its model is passed to complete().
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from shop_assistant.agents.communication_log import AgentCommunicationLogger
from shop_assistant.config import settings
from shop_assistant.db.models import AgentName, MessageType
from shop_assistant.errors import DownstreamUnavailableError
from shop_assistant.services.llm import LLMProvider, get_llm_provider
from shop_assistant.services.prompts import DEFAULT_ROLE, NoPrompts, PromptConfig, PromptSource

logger = logging.getLogger(__name__)

_API_PREFIX = "/api/shop-assistant"

MAX_INTENTS = 5
MAX_QUERY_CHARS = 200
PRESENTATION_FALLBACK_LIMIT = 20

# First bracketed array anywhere in the model output
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

_INTENT_SYSTEM = (
    "You split shopping requests into web search queries. "
    "Reply with ONLY a JSON array of strings, no other text."
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RefinedQuery:
    """Canonical search query plus the refinement parameters behind it."""

    query_text: str
    refined_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class RegionResult:
    """Delivery region found by the LOCATION agent, if any."""

    region: str | None = None
    augmented_query: str | None = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class DownstreamAgentClient:
    """Client for the agent capabilities of the AI microservice."""

    def __init__(
        self,
        communications: AgentCommunicationLogger | None = None,
        prompts: PromptSource | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        llm_factory: Callable[[], LLMProvider] = get_llm_provider,
    ) -> None:
        self._communications = communications
        self._prompts = prompts or NoPrompts()
        self._base_url = (settings.ai_service_url if base_url is None else base_url).rstrip("/")
        self._timeout = settings.ai_service_timeout if timeout is None else timeout
        self._http_client = http_client
        self._llm_factory = llm_factory

    # -------------------------------------------------------------------------
    # ASR
    # -------------------------------------------------------------------------

    async def transcribe(self, audio_url: str, session_id: int | None = None) -> str:
        """
        Transcribe an audio URL to text.

        Returns "" when no AI service is configured.

        Raises:
            DownstreamUnavailableError: The ASR call failed.
        """
        await self._event(
            session_id, AgentName.COMMUNICATION, AgentName.ASR, MessageType.REQUEST,
            f"Transcribe audio: {audio_url[:100]}",
            {"audio_url": audio_url[:200]},
        )
        if not self._base_url:
            logger.warning(
                "AI_SERVICE_URL not set, cannot transcribe (audio='%s')",
                audio_url[:80],
            )
            await self._event(
                session_id, AgentName.ASR, AgentName.COMMUNICATION, MessageType.RESPONSE,
                "Transcription skipped (AI service not configured).",
                {"transcript_length": 0},
            )
            return ""

        try:
            data = await self._post("transcribe", {"voice_file_url": audio_url})
        except DownstreamUnavailableError as e:
            await self._event(
                session_id, AgentName.ASR, AgentName.COMMUNICATION, MessageType.ERROR,
                f"ASR transcribe failed: {e}",
                {"error": str(e)},
            )
            logger.error("ASR transcribe failed: %s", e)
            raise

        transcript = _first_text(data, "transcript", "text") or ""
        await self._event(
            session_id, AgentName.ASR, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Transcript: {_preview(transcript)}",
            {"transcript_length": len(transcript)},
        )
        logger.info("ASR transcribe success: %d chars", len(transcript))
        return transcript

    # -------------------------------------------------------------------------
    # Query refinement (COMMUNICATION role prompt, LLM agent)
    # -------------------------------------------------------------------------

    async def refine_query(
        self,
        user_text: str,
        previous_params: dict[str, Any] | None = None,
        role: str = DEFAULT_ROLE,
        session_id: int | None = None,
    ) -> RefinedQuery:
        """
        Turn free text into a search query string and refinement params.

        Falls back to the trimmed raw text (and a copy of the previous
        params) when the service is unconfigured or fails.
        """
        fallback = RefinedQuery(
            query_text=user_text.strip(),
            refined_params=dict(previous_params or {}),
        )
        prompt = await self._prompt(AgentName.COMMUNICATION, role)
        body: dict[str, Any] = {"user_text": user_text, "role": role}
        if previous_params is not None:
            body["previous_params"] = previous_params
        _apply_prompt(body, prompt)

        await self._event(
            session_id, AgentName.COMMUNICATION, AgentName.LLM, MessageType.REQUEST,
            f"Refine query: {_preview(user_text)}",
            {
                "user_text_length": len(user_text),
                "has_previous_params": previous_params is not None,
                "model": prompt.model if prompt and prompt.model else "default",
            },
        )
        if not self._base_url:
            logger.debug("Refine query skipped: AI_SERVICE_URL not set, using raw text")
            await self._event(
                session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.RESPONSE,
                f"Refine query skipped (AI service not configured), using raw text: "
                f"{_preview(fallback.query_text)}",
                {"query_text_length": len(fallback.query_text)},
            )
            return fallback

        try:
            data = await self._post("refine-query", body)
        except DownstreamUnavailableError as e:
            await self._event(
                session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.ERROR,
                f"LLM refine query failed: {e}",
                {"error": str(e)},
            )
            logger.warning("LLM refine query failed, using raw text: %s", e)
            return fallback

        query_text = (_first_text(data, "query_text", "queryText") or "")[:MAX_QUERY_CHARS].strip()
        remote_params = _first_value(data, "refined_params", "refinedParams")
        result = RefinedQuery(
            query_text=query_text or fallback.query_text,
            refined_params=remote_params if isinstance(remote_params, dict) else fallback.refined_params,
        )
        await self._event(
            session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Refined query: {result.query_text}",
            {"query_text_length": len(result.query_text)},
        )
        logger.info("LLM refine query success: '%s'", result.query_text[:80])
        return result

    async def refine_from_feedback(
        self,
        feedback_message: str,
        selected_indices: Sequence[int],
        current_params: dict[str, Any],
        role: str = DEFAULT_ROLE,
        session_id: int | None = None,
    ) -> RefinedQuery:
        """Refine the previous search from a feedback message and liked indices."""
        return await self.refine_query(
            build_feedback_prompt(feedback_message, selected_indices),
            current_params,
            role,
            session_id,
        )

    # -------------------------------------------------------------------------
    # LOCATION
    # -------------------------------------------------------------------------

    async def extract_delivery_region(
        self,
        user_text: str,
        query_text: str,
        priorities: Sequence[str] | None = None,
        role: str = DEFAULT_ROLE,
        session_id: int | None = None,
    ) -> RegionResult:
        """
        Ask the LOCATION agent for a delivery region.

        Skipped (empty result) unless a LOCATION prompt is configured.
        """
        priority_note = f" Priorities: {', '.join(priorities)}" if priorities else ""
        await self._event(
            session_id, AgentName.COMMUNICATION, AgentName.LOCATION, MessageType.REQUEST,
            f"Extract delivery region. User: {user_text[:150]} Query: {query_text[:100]}{priority_note}",
            {
                "user_text_length": len(user_text),
                "query_text_length": len(query_text),
                "priority_order": list(priorities) if priorities else None,
            },
        )

        prompt = await self._prompt(AgentName.LOCATION, role)
        if not self._base_url or prompt is None:
            logger.debug("LOCATION skipped: no prompt or AI_SERVICE_URL")
            await self._event(
                session_id, AgentName.LOCATION, AgentName.COMMUNICATION, MessageType.RESPONSE,
                "Delivery region extraction skipped (no LOCATION prompt configured).",
            )
            return RegionResult()

        body: dict[str, Any] = {"user_text": user_text, "query_text": query_text, "role": role}
        _apply_prompt(body, prompt)
        if priorities:
            body["priority_order"] = list(priorities)

        try:
            data = await self._post("extract-location", body)
        except DownstreamUnavailableError as e:
            await self._event(
                session_id, AgentName.LOCATION, AgentName.COMMUNICATION, MessageType.ERROR,
                f"Extract delivery region failed: {e}",
                {"error": str(e)},
            )
            logger.warning("LOCATION failed: %s", e)
            return RegionResult()

        result = RegionResult(
            region=_first_text(data, "region"),
            augmented_query=_first_text(data, "augmented_query", "augmentedQuery"),
        )
        await self._event(
            session_id, AgentName.LOCATION, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Delivery region: {result.region[:200] if result.region else 'n/a'}",
            {"region": result.region, "augmented_query": result.augmented_query},
        )
        logger.info("LOCATION success: region=%s", result.region)
        return result

    # -------------------------------------------------------------------------
    # Intent splitting (LLM provider)
    # -------------------------------------------------------------------------

    async def split_into_search_intents(
        self,
        user_text: str,
        fallback_query: str,
        role: str = DEFAULT_ROLE,
        session_id: int | None = None,
    ) -> list[str]:
        """
        Split a shopping request into 1..5 distinct search queries.

        Always returns at least one intent: the fallback query (or the raw
        text) whenever the LLM is unavailable or answers nonsense. An LLM
        admin prompt, when configured, replaces the built-in system prompt
        and may select the model.
        """
        fallback = [fallback_query.strip() or user_text.strip()]
        prompt = await self._prompt(AgentName.LLM, role)

        await self._event(
            session_id, AgentName.COMMUNICATION, AgentName.LLM, MessageType.REQUEST,
            f"Split into search intents: {_preview(user_text)}",
            {
                "user_text_length": len(user_text),
                "model": prompt.model if prompt and prompt.model else "default",
            },
        )
        if not user_text.strip():
            await self._skip_split(session_id, "empty request", fallback)
            return fallback

        try:
            llm = self._llm_factory()
        except ValueError as e:
            logger.debug("Split intents skipped, no LLM configured: %s", e)
            await self._skip_split(session_id, "no LLM configured", fallback)
            return fallback

        try:
            response = await asyncio.wait_for(
                llm.complete(
                    messages=[{"role": "user", "content": build_intent_prompt(user_text)}],
                    system=prompt.content if prompt else _INTENT_SYSTEM,
                    temperature=0.0,
                    max_tokens=256,
                    model=prompt.model if prompt else None,
                ),
                timeout=self._timeout,
            )
        except Exception as e:
            # wait_for's TimeoutError has an empty message
            reason = str(e) or type(e).__name__
            await self._event(
                session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.ERROR,
                f"Split intents failed: {reason}",
                {"error": reason},
            )
            logger.warning("Split intents failed, using single query: %s", reason)
            return fallback

        intents = parse_intents(response.content)
        if not intents:
            await self._event(
                session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.RESPONSE,
                "No usable intents returned, using single query.",
                {"intents": fallback},
            )
            return fallback

        await self._event(
            session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Multi-product: {len(intents)} intents",
            {"intents": intents},
        )
        logger.info("Split into %d search intents", len(intents))
        return intents

    # -------------------------------------------------------------------------
    # PRESENTATION
    # -------------------------------------------------------------------------

    async def format_results_for_presentation(
        self,
        results: Sequence[dict[str, Any]],
        query_text: str,
        role: str = DEFAULT_ROLE,
        session_id: int | None = None,
    ) -> str:
        """Format results for the chat; local numbered listing on any failure."""
        await self._event(
            session_id, AgentName.SEARCH, AgentName.PRESENTATION, MessageType.REQUEST,
            f"Task: format {len(results)} search results for user. Query: {query_text[:100]}",
            {"result_count": len(results), "query_text": query_text[:200]},
        )

        if not self._base_url:
            logger.debug("PRESENTATION skipped: AI_SERVICE_URL not set, using local fallback")
            formatted = fallback_presentation(results, query_text)
        else:
            prompt = await self._prompt(AgentName.PRESENTATION, role)
            body: dict[str, Any] = {
                "results": list(results),
                "query_text": query_text,
                "role": role,
            }
            _apply_prompt(body, prompt)
            try:
                data = await self._post("format-presentation", body)
                formatted = (
                    _first_text(data, "formatted_content", "content", "text")
                    or fallback_presentation(results, query_text)
                )
            except DownstreamUnavailableError as e:
                logger.warning("PRESENTATION format failed, using fallback: %s", e)
                await self._event(
                    session_id, AgentName.PRESENTATION, AgentName.COMMUNICATION, MessageType.ERROR,
                    f"Format failed: {e}",
                    {"error": str(e)},
                )
                formatted = fallback_presentation(results, query_text)

        await self._event(
            session_id, AgentName.PRESENTATION, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Formatted content ready for user chat. Summary: {_preview(formatted)}",
            {"content_length": len(formatted)},
        )
        return formatted

    # -------------------------------------------------------------------------
    # COMPARISON
    # -------------------------------------------------------------------------

    async def compare_prices(
        self,
        results: Sequence[dict[str, Any]],
        query_text: str,
        priorities: Sequence[str] | None = None,
        role: str = DEFAULT_ROLE,
        session_id: int | None = None,
    ) -> str:
        """
        Prose price comparison, or "" when no COMPARISON prompt is configured.

        An empty string means "nothing to append", never an error.
        """
        priority_note = f" Priorities: {', '.join(priorities)}" if priorities else ""
        await self._event(
            session_id, AgentName.SEARCH, AgentName.COMPARISON, MessageType.REQUEST,
            f"Compare prices for {len(results)} results. Query: {query_text[:100]}{priority_note}",
            {
                "result_count": len(results),
                "priority_order": list(priorities) if priorities else None,
            },
        )

        prompt = await self._prompt(AgentName.COMPARISON, role)
        if not self._base_url or prompt is None:
            logger.debug("COMPARISON skipped: no prompt or AI_SERVICE_URL")
            await self._event(
                session_id, AgentName.COMPARISON, AgentName.COMMUNICATION, MessageType.RESPONSE,
                "Compare prices skipped (no COMPARISON prompt configured).",
            )
            return ""

        body: dict[str, Any] = {"results": list(results), "query_text": query_text, "role": role}
        _apply_prompt(body, prompt)
        if priorities:
            body["priority_order"] = list(priorities)

        try:
            data = await self._post("compare-prices", body)
        except DownstreamUnavailableError as e:
            logger.warning("COMPARISON failed: %s", e)
            await self._event(
                session_id, AgentName.COMPARISON, AgentName.COMMUNICATION, MessageType.ERROR,
                f"Compare prices failed: {e}",
                {"error": str(e)},
            )
            return ""

        summary = _first_text(data, "summary", "text") or ""
        await self._event(
            session_id, AgentName.COMPARISON, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Price comparison: {_preview(summary)}",
            {"content_length": len(summary)},
        )
        logger.info("COMPARISON success: %d chars", len(summary))
        return summary

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{_API_PREFIX}/{endpoint}"
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DownstreamUnavailableError(endpoint, str(e) or type(e).__name__) from e
        if not isinstance(data, dict):
            raise DownstreamUnavailableError(endpoint, "response is not a JSON object")
        return data

    async def _prompt(self, agent: AgentName, role: str) -> PromptConfig | None:
        prompt = await self._prompts.get_active_prompt(agent, role)
        if prompt is not None:
            logger.debug(
                "Using admin prompt for %s (id=%s, model=%s)",
                agent.value, prompt.id, prompt.model or "default",
            )
        return prompt

    async def _skip_split(
        self, session_id: int | None, reason: str, fallback: list[str],
    ) -> None:
        await self._event(
            session_id, AgentName.LLM, AgentName.COMMUNICATION, MessageType.RESPONSE,
            f"Split intents skipped ({reason}), using single query.",
            {"intents": fallback},
        )

    async def _event(
        self,
        session_id: int | None,
        from_agent: AgentName,
        to_agent: AgentName,
        message_type: MessageType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if session_id is None or self._communications is None:
            return
        await self._communications.log(
            session_id, from_agent, to_agent, message_type, content, metadata,
        )


# ---------------------------------------------------------------------------
# Prompt builders & parsers
# ---------------------------------------------------------------------------


def build_feedback_prompt(message: str, selected_indices: Sequence[int]) -> str:
    """
    Feedback refinement input for the LLM.

        >>> build_feedback_prompt("cheaper please", [0, 2])
        'Feedback: cheaper please. User liked results at indices: 0, 2. Tighten search.'
    """
    liked = (
        f" User liked results at indices: {', '.join(str(i) for i in selected_indices)}."
        if selected_indices
        else ""
    )
    return f"Feedback: {message}.{liked} Tighten search."


def build_intent_prompt(user_text: str) -> str:
    return (
        f'The user wants to shop. Their request: "{user_text[:500]}"\n'
        f"Output 1 to {MAX_INTENTS} distinct product search queries as a JSON "
        'array of strings. Each string is one web search query (e.g. "red silk '
        'skirt size 52", "leather handbag"). If the request is clearly for one '
        "product type, return one query. Reply with ONLY the JSON array, no "
        'other text. Example: ["query1","query2"]'
    )


def parse_intents(raw: str | None) -> list[str]:
    """
    Extract search intents from an LLM reply.

    Takes the first bracketed array in the text, keeps non-blank strings
    (trimmed, max 200 chars), drops case-insensitive duplicates and caps
    the list at five. Returns [] for anything unparseable.
    """
    if not raw:
        return []
    match = _JSON_ARRAY_RE.search(raw)
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []

    intents: list[str] = []
    seen: set[str] = set()
    for value in parsed:
        if not isinstance(value, str):
            continue
        query = value.strip()[:MAX_QUERY_CHARS].strip()
        if not query or query.lower() in seen:
            continue
        seen.add(query.lower())
        intents.append(query)
    return intents[:MAX_INTENTS]


def fallback_presentation(results: Sequence[dict[str, Any]], query_text: str) -> str:
    """Local numbered listing used when the PRESENTATION agent is unavailable."""
    lines = []
    for i, r in enumerate(results[:PRESENTATION_FALLBACK_LIMIT], 1):
        price = f" — {r['price']}" if r.get("price") else ""
        source = f" ({r['source']})" if r.get("source") else ""
        url = f"\n   {r['url']}" if r.get("url") else ""
        lines.append(f"{i}. {r.get('title', '')}{price}{source}{url}")
    listing = "\n".join(lines)
    return (
        f"Found {len(results)} results for: {query_text}\n\n"
        f"{listing}\n\nClick a link to open the product."
    )


def _apply_prompt(body: dict[str, Any], prompt: PromptConfig | None) -> None:
    if prompt is None:
        return
    body["prompt_content"] = prompt.content
    if prompt.model:
        body["model"] = prompt.model


def _first_value(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _first_text(data: dict[str, Any], *keys: str) -> str | None:
    """First non-blank alias, as trimmed text."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        text = value.strip() if isinstance(value, str) else str(value).strip()
        if text:
            return text
    return None


def _preview(text: str, limit: int = 200) -> str:
    return text[:limit] + ("…" if len(text) > limit else "")
