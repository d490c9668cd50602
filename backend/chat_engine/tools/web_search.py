import datetime
import logging
import re
from typing import List, Optional

import httpx
from langchain_community.tools.tavily_search import TavilySearchResults

from ..config import settings
from ..errors import WebSearchError
from ..schemas import CamelModel, WebSearchResult

logger = logging.getLogger(__name__)

# Keywords indicating real-time or factual information needs
SEARCH_INDICATORS = [
    "latest", "recent", "news", "current", "update", "today", "this week", "this month", "this year",
    "stock price", "weather", "event", "trend", "breaking",
    "search for", "find information", "look up",
]

# Conversational queries that never need the web
EXCLUDE_PATTERNS = [
    "your name", "who are you", "what can you do", "how are you",
    "what is your", "tell me a joke", "how do you feel",
]

FILLER_WORDS = [
    "hey", "hi", "hello", "please", "could you", "can you", "i want to know",
    "tell me", "what's going on with", "give me", "about", "like", "um", "uh",
]

STOP_WORDS = {"is", "are", "was", "were", "in", "on", "at", "the", "a", "an"}

QUESTION_RE = re.compile(r"^(how|what|why|when|where|which|who)\b", re.IGNORECASE)
NAMED_ENTITY_RE = re.compile(r"[A-Z][a-z]+ [A-Z][a-z]+") # e.g. "Mars Rover"
YEAR_RE = re.compile(r"\d{4}")
FACTUAL_TERM_RE = re.compile(r"price|cost|value|weather|event", re.IGNORECASE)
FILLER_RE = re.compile(r"\b(" + "|".join(re.escape(w) for w in FILLER_WORDS) + r")\b", re.IGNORECASE)
TIME_SENSITIVE_RE = re.compile(r"latest|recent|current|today|this week|this month|this year", re.IGNORECASE)

MAX_QUERY_LENGTH = 80
MIN_CUT_POSITION = 50


def should_perform_web_search(query: str) -> bool:
    """Heuristic gate: does this query plausibly need fresh information from the web?"""
    lower_query = query.lower().strip()

    contains_indicator = any(indicator in lower_query for indicator in SEARCH_INDICATORS)
    is_question = bool(QUESTION_RE.search(lower_query)) or lower_query.endswith("?")
    is_excluded = any(pattern in lower_query for pattern in EXCLUDE_PATTERNS)
    has_named_entity = (
        bool(NAMED_ENTITY_RE.search(query))
        or bool(YEAR_RE.search(query))
        or bool(FACTUAL_TERM_RE.search(lower_query))
    )

    return (contains_indicator or is_question or has_named_entity) and not is_excluded


def refine_search_query(query: str, today: Optional[datetime.date] = None) -> str:
    """
    Rewrites a chat message into a compact search engine query: filler words and
    punctuation removed, short and stop words dropped, the current year appended
    for time-sensitive queries, capped at 80 characters.
    """
    refined = query.lower().strip()
    refined = FILLER_RE.sub("", refined)
    refined = re.sub(r"\s+", " ", refined).strip()
    refined = re.sub(r"[^\w\s'?\-]", " ", refined)
    refined = re.sub(r"\s+", " ", refined).strip()

    key_terms = [
        term for term in refined.split(" ")
        if len(term) > 2 and (any(c.isdigit() for c in term) or term not in STOP_WORDS)
    ]
    refined = " ".join(key_terms)

    if TIME_SENSITIVE_RE.search(query):
        year = (today or datetime.date.today()).year
        refined = f"{refined} {year}".strip()

    if len(refined) > MAX_QUERY_LENGTH:
        refined = refined[:MAX_QUERY_LENGTH].strip()
        last_space = refined.rfind(" ")
        if last_space > MIN_CUT_POSITION:
            refined = refined[:last_space]

    return refined or query.strip()


class WebSearchResponse(CamelModel):
    results: List[WebSearchResult] = []
    search_performed: bool = False
    refined_query: Optional[str] = None


class WebSearchClient:
    """
    Web search collaborator. Applies the search heuristic and query refinement,
    then calls Serper (default) or Tavily.
    """

    def __init__(
        self,
        provider: str = settings.SEARCH_PROVIDER,
        serper_api_key: str = settings.SERPER_API_KEY,
        tavily_api_key: str = settings.TAVILY_API_KEY,
        max_results: int = settings.WEB_SEARCH_MAX_RESULTS,
        timeout: float = settings.WEB_SEARCH_TIMEOUT,
        serper_base_url: str = settings.SERPER_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider.lower()
        self.serper_api_key = serper_api_key
        self.tavily_api_key = tavily_api_key
        self.max_results = max_results
        self.timeout = timeout
        self.serper_base_url = serper_base_url
        self._transport = transport

    async def search(self, query: str) -> WebSearchResponse:
        if not should_perform_web_search(query):
            logger.info(f"Query does not warrant web search: '{query}'")
            return WebSearchResponse(results=[], search_performed=False)

        refined_query = refine_search_query(query)
        logger.info(f"Refined search query: '{query}' -> '{refined_query}'")

        if self.provider == "tavily":
            results = await self._search_tavily(refined_query)
        else:
            results = await self._search_serper(refined_query)

        logger.info(f"Web search for '{refined_query}' returned {len(results)} results.")
        return WebSearchResponse(results=results, search_performed=True, refined_query=refined_query)

    async def _search_serper(self, query: str) -> List[WebSearchResult]:
        if not self.serper_api_key:
            raise WebSearchError("SERPER_API_KEY is not configured")

        async with httpx.AsyncClient(
            base_url=self.serper_base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                response = await client.get("/search", params={"q": query, "apiKey": self.serper_api_key})
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise WebSearchError(
                    f"Search provider returned {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                raise WebSearchError(f"Search request failed: {e.__class__.__name__} - {e}") from e
            data = response.json()

        organic = data.get("organic") or []
        return [
            WebSearchResult(url=item.get("link", ""), title=item.get("title", ""), snippet=item.get("snippet", ""))
            for item in organic[:self.max_results]
        ]

    async def _search_tavily(self, query: str) -> List[WebSearchResult]:
        if not self.tavily_api_key:
            raise WebSearchError("TAVILY_API_KEY is not configured")

        search_tool = TavilySearchResults(api_key=self.tavily_api_key, max_results=self.max_results)
        try:
            tavily_results = await search_tool.ainvoke({"query": query})
        except Exception as e:
            raise WebSearchError(f"Tavily search failed: {e}") from e

        # The tool reports provider failures as a string instead of raising
        if isinstance(tavily_results, str):
            raise WebSearchError(f"Tavily search failed: {tavily_results}")

        return [
            WebSearchResult(url=res["url"], title=res.get("title", ""), snippet=res.get("content", ""))
            for res in tavily_results[:self.max_results]
            if res.get("url")
        ]
