"""Best-effort web search used when the scores feed has nothing on an event."""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable

import httpx
from loguru import logger

from app.models import Leg
from pipelines.errors import ResearchUnavailable


class TavilyResearchClient:
    """Query the Tavily search API and flatten the reply into plain text."""

    def __init__(
        self,
        *,
        api_key: str,
        url: str = "https://api.tavily.com/search",
        max_results: int = 3,
        timeout: float = 20.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("TAVILY_API_KEY is not configured")
        self.api_key = api_key
        self.url = url
        self.max_results = max_results
        client_kwargs: dict[str, Any] = {"timeout": timeout}
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.Client(**client_kwargs)

    def search(self, query: str) -> str:
        body = {
            "api_key": self.api_key,
            "query": query,
            "search_depth": "basic",
            "include_answer": True,
            "max_results": self.max_results,
        }
        logger.info("Research search query_chars={}", len(query))
        try:
            response = self.client.post(self.url, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ResearchUnavailable(f"search failed: {exc.__class__.__name__}") from exc

        if not isinstance(payload, dict):
            raise ResearchUnavailable("search returned an unexpected payload")

        answer = payload.get("answer")
        if isinstance(answer, str) and answer.strip():
            return answer.strip()
        results = payload.get("results") or []
        snippets = [
            str(item.get("content")).strip()
            for item in results
            if isinstance(item, dict) and item.get("content")
        ]
        return "\n".join(snippets)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "TavilyResearchClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_results_query(legs: Iterable[Leg], ticket_date: date | None) -> str:
    matchups = ", ".join(
        f"{leg.matchup} ({leg.competition})" if leg.competition else leg.matchup
        for leg in legs
    )
    query = f"Exact final results: {matchups}."
    if ticket_date:
        query += f" Date: {ticket_date.isoformat()}."
    return query
