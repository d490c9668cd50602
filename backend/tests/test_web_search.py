"""Tests for the web search heuristic, query refinement and providers."""

import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chat_engine.errors import WebSearchError
from chat_engine.tools.web_search import WebSearchClient, refine_search_query, should_perform_web_search


def serper_client(handler, **kwargs) -> WebSearchClient:
    return WebSearchClient(
        provider="serper",
        serper_api_key="serper-key",
        max_results=3,
        serper_base_url="https://serper.test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSearchHeuristic:
    @pytest.mark.parametrize("query", [
        "What's the latest news on the Mars Rover?",
        "What's the latest news on the Mars rover in 2025?",
        "weather in Addis Ababa",
        "How does photosynthesis work",
        "Apple stock price",
        "Results of the 2024 election",
    ])
    def test_searches(self, query):
        assert should_perform_web_search(query)

    @pytest.mark.parametrize("query", [
        "What's your name?",
        "Tell me a joke",
        "how are you",
        "thanks, that helps",
    ])
    def test_does_not_search(self, query):
        assert not should_perform_web_search(query)


class TestQueryRefinement:
    def test_fillers_and_stop_words_removed(self):
        refined = refine_search_query("Hey, can you tell me about the Eiffel Tower history")
        assert refined == "eiffel tower history"

    def test_time_sensitive_query_gets_year(self):
        refined = refine_search_query("latest news on the Mars Rover", today=datetime.date(2025, 3, 1))
        assert refined == "latest news mars rover 2025"

    def test_long_query_is_cut_at_a_word(self):
        query = " ".join(["photosynthesis"] * 12)
        refined = refine_search_query(query)
        assert len(refined) <= 80
        assert refined.split(" ")[-1] == "photosynthesis"

    def test_falls_back_to_original_when_nothing_is_left(self):
        assert refine_search_query("hi") == "hi"


@pytest.mark.asyncio
async def test_serper_results_are_mapped_and_capped():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        organic = [
            {"link": f"https://example.org/{i}", "title": f"Result {i}", "snippet": f"Snippet {i}"}
            for i in range(5)
        ]
        return httpx.Response(200, json={"organic": organic})

    response = await serper_client(handler).search("latest news on the Mars Rover")

    assert response.search_performed is True
    assert seen["path"] == "/search"
    assert seen["params"]["apiKey"] == "serper-key"
    assert seen["params"]["q"] == response.refined_query
    assert [r.url for r in response.results] == [f"https://example.org/{i}" for i in range(3)]
    assert response.results[0].title == "Result 0"
    assert response.results[0].snippet == "Snippet 0"


@pytest.mark.asyncio
async def test_conversational_query_makes_no_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"organic": []})

    response = await serper_client(handler).search("What's your name?")

    assert response.search_performed is False
    assert response.results == []
    assert calls == []


@pytest.mark.asyncio
async def test_provider_error_keeps_status():
    client = serper_client(lambda request: httpx.Response(403, json={"message": "Unauthorized"}))
    with pytest.raises(WebSearchError) as exc_info:
        await client.search("latest news on the Mars Rover")
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_missing_key_raises():
    client = WebSearchClient(provider="serper", serper_api_key="")
    with pytest.raises(WebSearchError):
        await client.search("latest news on the Mars Rover")


@pytest.mark.asyncio
async def test_tavily_results_are_mapped():
    tool = MagicMock()
    tool.ainvoke = AsyncMock(return_value=[
        {"url": "https://example.org/a", "title": "A", "content": "About A"},
        {"title": "no url"},
    ])
    with patch("chat_engine.tools.web_search.TavilySearchResults", return_value=tool) as tool_class:
        client = WebSearchClient(provider="tavily", tavily_api_key="tavily-key", max_results=3)
        response = await client.search("latest news on the Mars Rover")

    tool_class.assert_called_once_with(api_key="tavily-key", max_results=3)
    assert [(r.url, r.snippet) for r in response.results] == [("https://example.org/a", "About A")]


@pytest.mark.asyncio
async def test_tavily_error_string_raises():
    """The tool reports failures as a string; that becomes a WebSearchError."""
    tool = MagicMock()
    tool.ainvoke = AsyncMock(return_value="HTTPError('401 Client Error')")
    with patch("chat_engine.tools.web_search.TavilySearchResults", return_value=tool):
        client = WebSearchClient(provider="tavily", tavily_api_key="tavily-key")
        with pytest.raises(WebSearchError):
            await client.search("latest news on the Mars Rover")
