# =============================================================================
# Unit Tests — Downstream Agent Client
# =============================================================================
#
# The AI microservice is faked with httpx.MockTransport, the communication
# logger and prompt source with AsyncMock. Each capability is checked for
# its success parsing, its fallback and its request/response event pair.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import AI_BASE_URL, FakeAIService, no_llm
from shop_assistant.agents.downstream import (
    DownstreamAgentClient,
    RegionResult,
    build_feedback_prompt,
    fallback_presentation,
    parse_intents,
)
from shop_assistant.db.models import AgentName, MessageType
from shop_assistant.errors import DownstreamUnavailableError
from shop_assistant.services.llm import LLMResponse
from shop_assistant.services.prompts import PromptConfig

COMM = AgentName.COMMUNICATION
SESSION_ID = 7


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _prompts(configured: dict[AgentName, PromptConfig] | None = None) -> AsyncMock:
    configured = configured or {}
    source = AsyncMock()
    source.get_active_prompt.side_effect = lambda agent, role="default": configured.get(agent)
    return source


def _client(
    service: FakeAIService,
    prompts: AsyncMock | None = None,
    llm_factory=no_llm,
    base_url: str = AI_BASE_URL,
    timeout: float = 5,
) -> tuple[DownstreamAgentClient, AsyncMock]:
    communications = AsyncMock()
    client = DownstreamAgentClient(
        communications=communications,
        prompts=prompts or _prompts(),
        base_url=base_url,
        timeout=timeout,
        http_client=service.client(),
        llm_factory=llm_factory,
    )
    return client, communications


def _events(communications: AsyncMock) -> list[tuple[AgentName, AgentName, MessageType]]:
    return [
        (call.args[1], call.args[2], call.args[3])
        for call in communications.log.await_args_list
    ]


def _llm(content: str) -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=content, model="test-model", input_tokens=10, output_tokens=5,
    )
    return llm


# ---------------------------------------------------------------------------
# ASR
# ---------------------------------------------------------------------------


class TestTranscribe:
    def test_success_with_text_alias(self):
        service = FakeAIService({"transcribe": {"text": " red jacket "}})
        client, comms = _client(service)

        assert _run(client.transcribe("https://a/1.ogg", SESSION_ID)) == "red jacket"
        assert service.bodies("transcribe") == [{"voice_file_url": "https://a/1.ogg"}]
        assert _events(comms) == [
            (COMM, AgentName.ASR, MessageType.REQUEST),
            (AgentName.ASR, COMM, MessageType.RESPONSE),
        ]

    def test_failure_raises_and_logs_error(self):
        service = FakeAIService({"transcribe": httpx.Response(500)})
        client, comms = _client(service)

        with pytest.raises(DownstreamUnavailableError):
            _run(client.transcribe("https://a/1.ogg", SESSION_ID))
        assert _events(comms)[-1] == (AgentName.ASR, COMM, MessageType.ERROR)

    def test_unconfigured_returns_empty(self):
        client, comms = _client(FakeAIService(), base_url="")
        assert _run(client.transcribe("https://a/1.ogg", SESSION_ID)) == ""
        assert _events(comms) == [
            (COMM, AgentName.ASR, MessageType.REQUEST),
            (AgentName.ASR, COMM, MessageType.RESPONSE),
        ]
        assert "skipped" in comms.log.await_args_list[-1].args[4]


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


class TestRefineQuery:
    def test_camel_case_aliases(self):
        service = FakeAIService({
            "refine-query": {"queryText": "red jacket", "refinedParams": {"color": "red"}},
        })
        client, comms = _client(service)

        refined = _run(client.refine_query("I want a red jacket", session_id=SESSION_ID))
        assert refined.query_text == "red jacket"
        assert refined.refined_params == {"color": "red"}
        assert _events(comms) == [
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
        ]

    def test_query_truncated_to_200_chars(self):
        service = FakeAIService({"refine-query": {"query_text": "x" * 500}})
        client, _ = _client(service)
        assert len(_run(client.refine_query("long")).query_text) == 200

    def test_blank_remote_query_uses_raw_text(self):
        service = FakeAIService({"refine-query": {"query_text": "   "}})
        client, _ = _client(service)
        assert _run(client.refine_query("  blue scarf ")).query_text == "blue scarf"

    def test_failure_falls_back_to_raw_text_and_previous_params(self):
        service = FakeAIService({"refine-query": httpx.Response(503)})
        client, comms = _client(service)

        refined = _run(client.refine_query(" blue scarf ", {"max_price": 20}, session_id=SESSION_ID))
        assert refined.query_text == "blue scarf"
        assert refined.refined_params == {"max_price": 20}
        assert _events(comms)[-1] == (AgentName.LLM, COMM, MessageType.ERROR)

    def test_unconfigured_skips_http(self):
        service = FakeAIService()
        client, comms = _client(service, base_url="")
        refined = _run(client.refine_query(" scarf ", session_id=SESSION_ID))
        assert refined.query_text == "scarf"
        assert service.calls == []
        assert _events(comms) == [
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
        ]
        assert "skipped" in comms.log.await_args_list[-1].args[4]

    def test_admin_prompt_and_model_forwarded(self):
        service = FakeAIService({"refine-query": {"query_text": "scarf"}})
        prompts = _prompts({COMM: PromptConfig(id=1, content="Be terse", model="gpt-x")})
        client, _ = _client(service, prompts=prompts)

        _run(client.refine_query("scarf please"))
        body = service.bodies("refine-query")[0]
        assert body["prompt_content"] == "Be terse"
        assert body["model"] == "gpt-x"
        assert body["role"] == "default"
        assert "previous_params" not in body

    def test_feedback_prompt_sent_with_previous_params(self):
        service = FakeAIService({"refine-query": {"query_text": "cheap blue scarf"}})
        client, _ = _client(service)

        _run(client.refine_from_feedback("cheaper please", [0, 2], {"color": "blue"}))
        body = service.bodies("refine-query")[0]
        assert body["user_text"] == (
            "Feedback: cheaper please. User liked results at indices: 0, 2. Tighten search."
        )
        assert body["previous_params"] == {"color": "blue"}


class TestBuildFeedbackPrompt:
    def test_without_indices(self):
        assert build_feedback_prompt("cheaper", []) == "Feedback: cheaper. Tighten search."

    def test_with_indices(self):
        assert build_feedback_prompt("cheaper", [1]) == (
            "Feedback: cheaper. User liked results at indices: 1. Tighten search."
        )


# ---------------------------------------------------------------------------
# LOCATION
# ---------------------------------------------------------------------------


class TestExtractDeliveryRegion:
    def test_skipped_without_prompt(self):
        service = FakeAIService({"extract-location": {"region": "Berlin"}})
        client, comms = _client(service)

        result = _run(client.extract_delivery_region("jacket", "jacket", session_id=SESSION_ID))
        assert result == RegionResult()
        assert service.calls == []
        assert _events(comms) == [
            (COMM, AgentName.LOCATION, MessageType.REQUEST),
            (AgentName.LOCATION, COMM, MessageType.RESPONSE),
        ]
        assert "skipped" in comms.log.await_args_list[-1].args[4]

    def test_region_and_fragment(self):
        service = FakeAIService({
            "extract-location": {"region": "Berlin", "augmentedQuery": "delivery Berlin"},
        })
        prompts = _prompts({AgentName.LOCATION: PromptConfig(id=2, content="Find region")})
        client, _ = _client(service, prompts=prompts)

        result = _run(client.extract_delivery_region(
            "jacket to Berlin", "jacket", priorities=["location", "price"],
        ))
        assert result == RegionResult(region="Berlin", augmented_query="delivery Berlin")
        body = service.bodies("extract-location")[0]
        assert body["priority_order"] == ["location", "price"]
        assert body["prompt_content"] == "Find region"

    def test_failure_returns_empty(self):
        service = FakeAIService({"extract-location": httpx.Response(500)})
        prompts = _prompts({AgentName.LOCATION: PromptConfig(id=2, content="Find region")})
        client, comms = _client(service, prompts=prompts)

        result = _run(client.extract_delivery_region("a", "b", session_id=SESSION_ID))
        assert result == RegionResult()
        assert _events(comms)[-1] == (AgentName.LOCATION, COMM, MessageType.ERROR)


# ---------------------------------------------------------------------------
# Intent splitting
# ---------------------------------------------------------------------------


class TestParseIntents:
    def test_plain_array(self):
        assert parse_intents('["red jacket", "running shoes"]') == ["red jacket", "running shoes"]

    def test_array_inside_prose(self):
        raw = 'Sure! Here you go: ["red jacket", "running shoes"] Hope it helps.'
        assert parse_intents(raw) == ["red jacket", "running shoes"]

    def test_blank_and_non_string_dropped(self):
        assert parse_intents('["  ", 3, null, " scarf "]') == ["scarf"]

    def test_duplicates_dropped(self):
        assert parse_intents('["Scarf", "scarf", "hat"]') == ["Scarf", "hat"]

    def test_capped_at_five(self):
        raw = '["a", "b", "c", "d", "e", "f", "g"]'
        assert parse_intents(raw) == ["a", "b", "c", "d", "e"]

    def test_long_intent_truncated(self):
        assert len(parse_intents(f'["{"y" * 300}"]')[0]) == 200

    def test_garbage(self):
        assert parse_intents("no array here") == []
        assert parse_intents("[not json]") == []
        assert parse_intents("") == []
        assert parse_intents(None) == []


class TestSplitIntoSearchIntents:
    def test_multiple_intents(self):
        llm = _llm('["red jacket", "running shoes"]')
        client, comms = _client(FakeAIService(), llm_factory=lambda: llm)

        intents = _run(client.split_into_search_intents(
            "I need a red jacket and running shoes", "red jacket running shoes", session_id=SESSION_ID,
        ))
        assert intents == ["red jacket", "running shoes"]
        assert llm.complete.await_args.kwargs["temperature"] == 0.0
        assert _events(comms) == [
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
        ]

    def test_no_llm_uses_fallback(self):
        client, comms = _client(FakeAIService())
        intents = _run(client.split_into_search_intents("blue scarf", " scarf ", session_id=SESSION_ID))
        assert intents == ["scarf"]
        assert _events(comms) == [
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
        ]
        assert "skipped" in comms.log.await_args_list[-1].args[4]

    def test_blank_text_logs_skipped_pair(self):
        client, comms = _client(FakeAIService(), llm_factory=lambda: _llm('["x"]'))
        assert _run(client.split_into_search_intents("  ", "scarf", session_id=SESSION_ID)) == ["scarf"]
        assert _events(comms) == [
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
        ]

    def test_blank_fallback_uses_text(self):
        client, _ = _client(FakeAIService())
        assert _run(client.split_into_search_intents(" blue scarf ", "  ")) == ["blue scarf"]

    def test_llm_error_uses_fallback(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("rate limited")
        client, comms = _client(FakeAIService(), llm_factory=lambda: llm)

        assert _run(client.split_into_search_intents("scarf", "scarf", session_id=SESSION_ID)) == ["scarf"]
        assert _events(comms)[-1] == (AgentName.LLM, COMM, MessageType.ERROR)

    def test_llm_timeout_uses_fallback(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        llm = AsyncMock()
        llm.complete.side_effect = slow
        client, _ = _client(FakeAIService(), llm_factory=lambda: llm, timeout=0.01)

        assert _run(client.split_into_search_intents("scarf", "scarf")) == ["scarf"]

    def test_unparseable_reply_uses_fallback(self):
        client, _ = _client(FakeAIService(), llm_factory=lambda: _llm("one product"))
        assert _run(client.split_into_search_intents("scarf", "blue scarf")) == ["blue scarf"]

    def test_builtin_system_prompt_without_admin_prompt(self):
        llm = _llm('["scarf"]')
        client, _ = _client(FakeAIService(), llm_factory=lambda: llm)

        _run(client.split_into_search_intents("scarf", "scarf"))
        kwargs = llm.complete.await_args.kwargs
        assert kwargs["system"].startswith("You split shopping requests")
        assert kwargs["model"] is None

    def test_admin_prompt_and_model_reach_llm(self):
        llm = _llm('["red jacket", "running shoes"]')
        prompts = _prompts({
            AgentName.LLM: PromptConfig(id=4, content="Split like a stylist", model="claude-x"),
        })
        client, _ = _client(FakeAIService(), prompts=prompts, llm_factory=lambda: llm)

        intents = _run(client.split_into_search_intents(
            "red jacket and running shoes", "red jacket", role="stylist",
        ))
        assert intents == ["red jacket", "running shoes"]
        kwargs = llm.complete.await_args.kwargs
        assert kwargs["system"] == "Split like a stylist"
        assert kwargs["model"] == "claude-x"
        prompts.get_active_prompt.assert_awaited_with(AgentName.LLM, "stylist")


# ---------------------------------------------------------------------------
# PRESENTATION
# ---------------------------------------------------------------------------

RESULTS = [
    {"title": "Blue Scarf", "url": "https://x/1", "price": "$10", "source": "Shop"},
    {"title": "Wool Scarf", "url": "https://x/2", "price": None, "source": None},
]


class TestFormatResultsForPresentation:
    def test_remote_content(self):
        service = FakeAIService({"format-presentation": {"formatted_content": "Here are 2 scarves"}})
        client, comms = _client(service)

        text = _run(client.format_results_for_presentation(RESULTS, "scarf", session_id=SESSION_ID))
        assert text == "Here are 2 scarves"
        assert service.bodies("format-presentation")[0]["results"] == RESULTS
        assert _events(comms) == [
            (AgentName.SEARCH, AgentName.PRESENTATION, MessageType.REQUEST),
            (AgentName.PRESENTATION, COMM, MessageType.RESPONSE),
        ]

    def test_failure_uses_local_listing(self):
        service = FakeAIService({"format-presentation": httpx.Response(500)})
        client, comms = _client(service)

        text = _run(client.format_results_for_presentation(RESULTS, "scarf", session_id=SESSION_ID))
        assert text == fallback_presentation(RESULTS, "scarf")
        assert _events(comms) == [
            (AgentName.SEARCH, AgentName.PRESENTATION, MessageType.REQUEST),
            (AgentName.PRESENTATION, COMM, MessageType.ERROR),
            (AgentName.PRESENTATION, COMM, MessageType.RESPONSE),
        ]

    def test_empty_remote_content_uses_local_listing(self):
        service = FakeAIService({"format-presentation": {"content": ""}})
        client, _ = _client(service)
        text = _run(client.format_results_for_presentation(RESULTS, "scarf"))
        assert text.startswith("Found 2 results for: scarf")


class TestFallbackPresentation:
    def test_format(self):
        assert fallback_presentation(RESULTS, "scarf") == (
            "Found 2 results for: scarf\n\n"
            "1. Blue Scarf — $10 (Shop)\n   https://x/1\n"
            "2. Wool Scarf\n   https://x/2\n\n"
            "Click a link to open the product."
        )

    def test_lists_at_most_twenty(self):
        many = [{"title": f"item {i}", "url": f"https://x/{i}"} for i in range(25)]
        text = fallback_presentation(many, "q")
        assert text.startswith("Found 25 results for: q")
        assert "20. item 19" in text
        assert "21. " not in text


# ---------------------------------------------------------------------------
# COMPARISON
# ---------------------------------------------------------------------------


class TestComparePrices:
    def test_skipped_without_prompt(self):
        service = FakeAIService({"compare-prices": {"summary": "cheapest is #1"}})
        client, comms = _client(service)

        assert _run(client.compare_prices(RESULTS, "scarf", session_id=SESSION_ID)) == ""
        assert service.calls == []
        assert _events(comms) == [
            (AgentName.SEARCH, AgentName.COMPARISON, MessageType.REQUEST),
            (AgentName.COMPARISON, COMM, MessageType.RESPONSE),
        ]

    def test_summary_with_prompt(self):
        service = FakeAIService({"compare-prices": {"text": "cheapest is #1"}})
        prompts = _prompts({AgentName.COMPARISON: PromptConfig(id=3, content="Compare")})
        client, _ = _client(service, prompts=prompts)

        summary = _run(client.compare_prices(RESULTS, "scarf", priorities=["price"]))
        assert summary == "cheapest is #1"
        assert service.bodies("compare-prices")[0]["priority_order"] == ["price"]

    def test_failure_returns_empty(self):
        service = FakeAIService({"compare-prices": httpx.Response(500)})
        prompts = _prompts({AgentName.COMPARISON: PromptConfig(id=3, content="Compare")})
        client, comms = _client(service, prompts=prompts)

        assert _run(client.compare_prices(RESULTS, "scarf", session_id=SESSION_ID)) == ""
        assert _events(comms)[-1] == (AgentName.COMPARISON, COMM, MessageType.ERROR)


# ---------------------------------------------------------------------------
# Unconfigured service: every capability still logs a request/response pair
# ---------------------------------------------------------------------------


class TestUnconfiguredService:
    def test_every_request_is_answered(self):
        service = FakeAIService()
        client, comms = _client(service, base_url="")

        async def scenario():
            await client.transcribe("https://a/1.ogg", SESSION_ID)
            await client.refine_query("blue scarf", session_id=SESSION_ID)
            await client.extract_delivery_region("blue scarf", "blue scarf", session_id=SESSION_ID)
            await client.split_into_search_intents("blue scarf", "blue scarf", session_id=SESSION_ID)
            await client.format_results_for_presentation(RESULTS, "blue scarf", session_id=SESSION_ID)
            await client.compare_prices(RESULTS, "blue scarf", session_id=SESSION_ID)

        _run(scenario())
        assert service.calls == []
        assert _events(comms) == [
            (COMM, AgentName.ASR, MessageType.REQUEST),
            (AgentName.ASR, COMM, MessageType.RESPONSE),
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
            (COMM, AgentName.LOCATION, MessageType.REQUEST),
            (AgentName.LOCATION, COMM, MessageType.RESPONSE),
            (COMM, AgentName.LLM, MessageType.REQUEST),
            (AgentName.LLM, COMM, MessageType.RESPONSE),
            (AgentName.SEARCH, AgentName.PRESENTATION, MessageType.REQUEST),
            (AgentName.PRESENTATION, COMM, MessageType.RESPONSE),
            (AgentName.SEARCH, AgentName.COMPARISON, MessageType.REQUEST),
            (AgentName.COMPARISON, COMM, MessageType.RESPONSE),
        ]
