"""Web search collaborator backed by the Brave Search API.

Uses its own httpx client, separate from the backend client that carries
provider credentials.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatrelay.config import Settings
from chatrelay.i18n import Translator
from chatrelay.services.base import SearchOutcome

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
MAX_RESULTS = 10


class WebSearchError(Exception):
    """The search provider could not be queried."""


class BraveWebSearch:
    """Runs a web search and turns the results into prompt material."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient, translate: Translator) -> None:
        self._settings = settings
        self._http = http
        self._t = translate

    async def search(
        self,
        query: str,
        model: str,
        short_history: str,
        doc_scope: list[str],
        agent_name: str | None,
        prior_results: list[dict[str, Any]],
        search_type: str,
    ) -> SearchOutcome:
        # Results the client already holds (e.g. on regenerate) are reused as-is
        results = list(prior_results) if prior_results else await self.fetch(query)
        if not results:
            return SearchOutcome(query=query)
        return SearchOutcome(
            user_prompt=self.user_prompt(query, short_history, results),
            system_prompt=self._t("search_system_prompt"),
            results=results,
            query=query,
        )

    async def fetch(self, query: str) -> list[dict[str, Any]]:
        """Query Brave Search; raises WebSearchError on transport or HTTP errors."""
        if not self._settings.brave_search_api_key:
            raise WebSearchError("BRAVE_SEARCH_API_KEY not configured")

        count = min(self._settings.web_search_count, MAX_RESULTS)
        try:
            response = await self._http.get(
                BRAVE_SEARCH_URL,
                params={"q": query, "count": count},
                headers={
                    "Accept": "application/json",
                    "Accept-Encoding": "gzip",
                    "X-Subscription-Token": self._settings.brave_search_api_key,
                },
                timeout=10,
            )
        except httpx.TimeoutException as e:
            raise WebSearchError("web search timed out") from e
        except httpx.HTTPError as e:
            raise WebSearchError(f"could not connect to search service: {e}") from e

        if response.status_code != 200:
            raise WebSearchError(f"search failed (HTTP {response.status_code})")

        data = response.json()
        results = []
        for item in data.get("web", {}).get("results", [])[:count]:
            results.append({
                "title": item.get("title", ""),
                "url": item.get("url", ""),
                "content": item.get("description", ""),
            })
        logger.debug("Web search for %r returned %d results", query, len(results))
        return results

    def user_prompt(self, query: str, short_history: str, results: list[dict[str, Any]]) -> str:
        lines = [f"## {self._t('search_results')}"]
        for i, result in enumerate(results, 1):
            lines.append(f"[{i}] {result.get('title', '')}")
            if result.get("url"):
                lines.append(f"URL: {result['url']}")
            lines.append(f"{result.get('content', '')}\n")
        if short_history:
            lines.append(f"## {self._t('conversation_history')}")
            lines.append(short_history)
        lines.append(f"## {self._t('user_question')}:")
        lines.append(query)
        return "\n".join(lines)
