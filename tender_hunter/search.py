"""
search.py — Serper web search client.

Serper is a thin JSON wrapper around Google results. We only need the
organic hits: title, link, snippet and, for shopping-style results, a
priceRange that often carries the only price we will ever see for a
listing.

The missing-key case raises SearchUnavailableError instead of the usual
SearchError. The orchestrator tolerates individual queries failing, but
no key means every query of every product will fail, so the run should
stop with a clear message instead of returning a lot with zero suppliers
everywhere and a misleading "high risk" score.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import requests

from tender_hunter.config import config
from tender_hunter.errors import SearchError, SearchUnavailableError
from tender_hunter.schemas import SearchResult

logger = logging.getLogger(__name__)


class SerperClient:
    """Executes one query against the Serper search API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        gl: Optional[str] = None,
        num_results: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else config.search.api_key
        self.endpoint = endpoint or config.search.endpoint
        self.gl = gl or config.search.gl
        self.num_results = num_results or config.search.num_results
        self._session = session or requests.Session()

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def search(self, query: str) -> List[SearchResult]:
        """
        Return the ordered organic results for a query.

        Raises:
            SearchUnavailableError: no API key configured.
            SearchError: transport failure or non-2xx response.
        """
        if not self.api_key:
            raise SearchUnavailableError(
                "SERPER_API_KEY is not set. Web search is disabled."
            )

        try:
            response = self._session.post(
                self.endpoint,
                headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                json={"q": query, "gl": self.gl, "num": self.num_results},
                timeout=config.search.timeout,
            )
        except requests.RequestException as exc:
            raise SearchError(f"Failed to execute search via Serper: {exc}") from exc

        if response.status_code in (401, 403):
            raise SearchUnavailableError(
                f"Serper rejected the API key (status {response.status_code})."
            )
        if not response.ok:
            raise SearchError(
                f"Serper API responded with status {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise SearchError(f"Serper returned invalid JSON: {exc}") from exc

        results = [
            SearchResult(
                title=item.get("title") or "",
                link=item.get("link") or "",
                snippet=item.get("snippet") or "",
                price_range=item.get("priceRange"),
            )
            for item in data.get("organic") or []
            if isinstance(item, dict)
        ]
        logger.debug("Serper: %d results for %r", len(results), query)
        return results
