"""Web search through a SearxNG instance."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import requests
from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field

from app.core.config import settings

logger = logging.getLogger(__name__)

SEARCH_TIMEOUT_SECONDS = 30


class SearxSearchInput(BaseModel):
    query: str = Field(description="The search query.")


def searx_search(
    query: str,
    api_url: Optional[str] = None,
    num_results: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> List[Dict[str, Any]]:
    """Query SearxNG's JSON API and return the top results.

    Each result is reduced to ``title``, ``link`` and ``snippet``.

    Raises:
        requests.RequestException: on connection errors or non-2xx responses.
    """
    http = session or requests
    response = http.get(
        f"{(api_url or settings.searx_search_api_url).rstrip('/')}/search",
        params={
            "q": query,
            "format": "json",
            "language": "en",
            "safesearch": 0,
        },
        timeout=SEARCH_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    results = response.json().get("results", [])
    limit = num_results or settings.searx_num_results
    return [
        {
            "title": item.get("title", ""),
            "link": item.get("url", ""),
            "snippet": item.get("content", ""),
        }
        for item in results[:limit]
    ]


def searx_search_tool(api_url: Optional[str] = None) -> BaseTool:
    def search(query: str) -> str:
        results = searx_search(query, api_url=api_url)
        logger.info(f"Searx returned {len(results)} results for {query!r}")
        if not results:
            return "No good results found."
        return json.dumps(results)

    return StructuredTool.from_function(
        func=search,
        name="searx_search",
        description=(
            "A meta search engine. Useful for when you need to answer questions about "
            "current events or look up documentation. Input should be a search query."
        ),
        args_schema=SearxSearchInput,
    )
