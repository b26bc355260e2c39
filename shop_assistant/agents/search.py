# =============================================================================
# Search Agent Client — Ranked Product Search via the AI Microservice
# =============================================================================
#
# One call = one text query against the external search capability:
#   POST <ai_service_url>/api/shop-assistant/search
#   {"query_text": "...", "limit": 20}  →  {"items": [...]}
#
# The provider (Serper etc.) lives behind the AI microservice; this client
# only speaks to the microservice.
#
# DESIGN DECISION: Never raises. An unconfigured or failing search yields
# an empty list plus a log line. The orchestrator treats "no results" as
# a normal outcome and still answers the user.
#
# DESIGN DECISION: Positions are normalised here. If the provider's
# positions are missing, duplicated or non-positive, items are renumbered
# 1..n in response order, so every persisted run has unique 1-based ranks.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from shop_assistant.config import settings
from shop_assistant.errors import DownstreamUnavailableError

logger = logging.getLogger(__name__)

SEARCH_PATH = "/api/shop-assistant/search"


@dataclass
class SearchItem:
    """One ranked item as returned by the search capability."""

    title: str
    url: str
    position: int
    price: str | None = None
    source: str | None = None
    snippet: str | None = None
    image_url: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Fields persisted on SearchResult (the image URL is not stored)."""
        record = asdict(self)
        record.pop("image_url")
        return record


class SearchClient:
    """HTTP client for the SEARCH agent."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (settings.ai_service_url if base_url is None else base_url).rstrip("/")
        self._timeout = settings.search_timeout if timeout is None else timeout
        self._http_client = http_client

    async def search(self, query_text: str, limit: int = 20) -> list[SearchItem]:
        """Run one search. Returns [] when unconfigured or on any failure."""
        if not self._base_url:
            logger.warning(
                "AI_SERVICE_URL not set, returning empty results (query='%s')",
                query_text[:80],
            )
            return []

        logger.debug("Search request: query='%s', limit=%d", query_text[:80], limit)
        try:
            data = await self._post({"query_text": query_text, "limit": limit})
        except DownstreamUnavailableError as e:
            logger.error("Search failed (query='%s'): %s", query_text[:80], e)
            return []

        items = parse_search_items(data.get("items") if isinstance(data, dict) else None)
        logger.info(
            "Search completed: query='%s', count=%d", query_text[:80], len(items),
        )
        return items

    async def _post(self, payload: dict[str, Any]) -> Any:
        url = f"{self._base_url}{SEARCH_PATH}"
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, json=payload, timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DownstreamUnavailableError("search", str(e) or type(e).__name__) from e


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def parse_search_items(raw_items: Any) -> list[SearchItem]:
    """
    Loosely parse provider items into SearchItems.

    Items without a title or url are dropped. Accepts camelCase and
    snake_case image fields.
    """
    if not isinstance(raw_items, list):
        return []

    items: list[SearchItem] = []
    raw_positions: list[Any] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        title = _as_text(raw.get("title"))
        url = _as_text(raw.get("url") or raw.get("link"))
        if not title or not url:
            continue
        raw_positions.append(raw.get("position"))
        items.append(SearchItem(
            title=title,
            url=url,
            position=0,
            price=_as_text(raw.get("price")),
            source=_as_text(raw.get("source")),
            snippet=_as_text(raw.get("snippet")),
            image_url=_as_text(raw.get("imageUrl") or raw.get("image_url")),
        ))

    if _positions_usable(raw_positions):
        for item, position in zip(items, raw_positions):
            item.position = int(position)
        items.sort(key=lambda i: i.position)
    else:
        for index, item in enumerate(items, 1):
            item.position = index
    return items


def _positions_usable(positions: list[Any]) -> bool:
    if not all(isinstance(p, int) and not isinstance(p, bool) and p > 0 for p in positions):
        return False
    return len(set(positions)) == len(positions)


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
