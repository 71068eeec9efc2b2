"""
Web search tool backed by SerpAPI.

The tool returns a SearchToolOutput: a formatted text block the model reads,
plus the numbered citations the orchestrator forwards to the turn's
CitationAggregator. Result numbers in the text match citation ids, so the
model can cite sources as [citation:N].
"""

from __future__ import annotations

import time
from typing import Any

import httpx
from pydantic import BaseModel, Field

from venuschat.chat.citations import Citation
from venuschat.config.logging import get_logger
from venuschat.config.settings import SearchSettings
from venuschat.tools.base import Tool

logger = get_logger(__name__)


class SearchResult(BaseModel):
    title: str = ""
    link: str = ""
    snippet: str = ""
    position: int | None = None
    date: str | None = None
    thumbnail: str | None = None


class SearchResponse(BaseModel):
    query: str
    organic_results: list[SearchResult] = Field(default_factory=list)
    answer_box: dict[str, Any] | None = None
    knowledge_graph: dict[str, Any] | None = None
    search_time_ms: int = 0


class SearchToolOutput(BaseModel):
    """Search tool output; `citations` is what marks it as a search result."""

    text: str
    citations: list[Citation] = Field(default_factory=list)


class WebSearchInput(BaseModel):
    query: str = Field(
        min_length=1,
        description="A clear and specific search query. Use the SAME LANGUAGE as the "
                    "user's question.",
    )


async def perform_web_search(
    query: str,
    settings: SearchSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SearchResponse:
    """
    Run one SerpAPI search.

    Args:
        query: Free-text search query
        settings: SerpAPI credentials, locale and result count
        transport: Optional httpx transport (tests inject a MockTransport)

    Raises:
        ValueError: If no SerpAPI key is configured
        httpx.HTTPError: If the request fails or returns an error status
    """
    if not settings.serpapi_api_key:
        raise ValueError("SERPAPI_API_KEY is not configured")

    started = time.monotonic()
    params = {
        "engine": settings.engine,
        "api_key": settings.serpapi_api_key,
        "q": query,
        "num": settings.num_results,
        "gl": settings.country,
        "hl": settings.language,
    }
    async with httpx.AsyncClient(timeout=settings.timeout_seconds, transport=transport) as client:
        response = await client.get(settings.endpoint, params=params)
        response.raise_for_status()
        payload = response.json()

    results = [
        SearchResult(
            title=item.get("title") or "",
            link=item.get("link") or "",
            snippet=item.get("snippet") or "",
            position=item.get("position"),
            date=item.get("date"),
            thumbnail=item.get("thumbnail"),
        )
        for item in payload.get("organic_results") or []
    ]
    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.debug(f"Search {query!r} returned {len(results)} results in {elapsed_ms}ms")

    return SearchResponse(
        query=query,
        organic_results=results,
        answer_box=payload.get("answer_box"),
        knowledge_graph=payload.get("knowledge_graph"),
        search_time_ms=elapsed_ms,
    )


def format_search_results_with_citations(response: SearchResponse) -> tuple[str, list[Citation]]:
    """
    Render search results as numbered text and build the matching citations.

    Results without a link are listed but get no citation.
    """
    lines = [f"Search query: {response.query}", ""]

    answer = (response.answer_box or {}).get("answer")
    if answer:
        lines += [f"Direct answer: {answer}", ""]

    graph = response.knowledge_graph or {}
    if graph.get("description"):
        lines += ["Knowledge graph:", graph.get("title") or "", graph["description"], ""]

    lines.append("Search results:")
    citations: list[Citation] = []
    for number, result in enumerate(response.organic_results, start=1):
        lines.append(f"[{number}] {result.title}")
        if result.snippet:
            lines.append(f"    {result.snippet}")
        if result.link:
            lines.append(f"    Source: {result.link}")
            citations.append(
                Citation(
                    id=number,
                    url=result.link,
                    title=result.title or result.link,
                    snippet=result.snippet or None,
                    thumbnail=result.thumbnail,
                )
            )
        lines.append("")

    if citations:
        lines.append("Cite sources inline using [citation:N] with the numbers above.")

    return "\n".join(lines).strip(), citations


class WebSearchTool(Tool):
    name = "webSearch"
    description = (
        "Search the web for current information, news, facts, or any information that "
        "requires up-to-date knowledge. Use this tool when the user asks about recent "
        "events, when you need to verify facts, or when the question requires information "
        "beyond your training data."
    )
    input_model = WebSearchInput

    def __init__(self, settings: SearchSettings, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    async def _run(self, params: WebSearchInput) -> SearchToolOutput:
        # Search failures keep the structured shape so callers can still read citations
        try:
            response = await perform_web_search(params.query, self._settings, self._transport)
        except Exception as e:
            logger.warning(f"Web search for {params.query!r} failed: {e}")
            return SearchToolOutput(text=f"Search failed: {e}", citations=[])

        text, citations = format_search_results_with_citations(response)
        return SearchToolOutput(text=text, citations=citations)
