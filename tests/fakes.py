"""
fakes.py — In-process stand-ins for the generative model, Serper and the
page fetcher. No test in this suite touches the network.

FakeGenAI routes each prompt to a canned answer by a marker phrase that
only that stage's prompt contains. An answer can be a str (returned as is),
any JSON-able value (dumped), an Exception (raised) or a callable taking
the prompt and returning one of those.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List, Optional

from tender_hunter.schemas import SearchResult
from tender_hunter.scraper import ScrapeResult

# Marker phrases, one per stage prompt.
EXTRACT = "procurement data extraction engine"
NORMALIZE = "normalisation expert"
QUERIES = "search engine optimisation expert"
SYNTH = "meticulous procurement specialist"
SUMMARY = "expert procurement analyst"
BID = "broker for the Uzbek market"
CONTRACT = "contract analysis AI"
DETAILS = "web data extraction AI"


class FakeGenAI:
    def __init__(self):
        self.handlers: List[tuple] = []
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def on(self, marker: str, answer: Any) -> "FakeGenAI":
        self.handlers.append((marker, answer))
        return self

    def generate(self, prompt, images=None, response_schema=None):
        with self._lock:
            self.calls.append({"prompt": prompt, "images": list(images or []), "schema": response_schema})
        for marker, answer in self.handlers:
            if marker in prompt:
                if callable(answer) and not isinstance(answer, type):
                    answer = answer(prompt)
                if isinstance(answer, Exception):
                    raise answer
                if isinstance(answer, str):
                    return answer
                return json.dumps(answer, ensure_ascii=False)
        raise AssertionError(f"Unexpected prompt: {prompt[:120]!r}")

    def count(self, marker: str) -> int:
        return sum(1 for c in self.calls if marker in c["prompt"])

    def prompts(self, marker: str) -> List[str]:
        return [c["prompt"] for c in self.calls if marker in c["prompt"]]


class FakeSearch:
    """
    handler(query) -> list of SearchResult, or raises.
    Defaults to no results for every query.
    """

    def __init__(self, handler: Optional[Callable[[str], List[SearchResult]]] = None):
        self.handler = handler or (lambda q: [])
        self.queries: List[str] = []
        self._lock = threading.Lock()

    def search(self, query: str) -> List[SearchResult]:
        with self._lock:
            self.queries.append(query)
        return self.handler(query)


class FakeFetcher:
    """Stands in for scraper.PageFetcher."""

    def __init__(self, pages: Optional[Dict[str, str]] = None, deep: Optional[ScrapeResult] = None):
        self.pages = pages or {}
        self.deep = deep or ScrapeResult()
        self.fetched: List[str] = []
        self.deep_scraped: List[str] = []

    def fetch_html(self, url: str) -> str:
        self.fetched.append(url)
        return self.pages.get(url, "")

    def deep_scrape(self, url: str) -> ScrapeResult:
        self.deep_scraped.append(url)
        return self.deep


def hit(link: str, title: str = "", snippet: str = "", price_range: Optional[str] = None) -> SearchResult:
    return SearchResult(title=title or link, link=link, snippet=snippet, price_range=price_range)


def raw_product(pid: str, name: str, **fields) -> Dict[str, Any]:
    """A product as the extraction model would send it (snake_case keys)."""
    data = {"id": pid, "item_type": "PRODUCT", "name": name, "quantity": 1, "start_price": "N/A"}
    data.update(fields)
    return data


def raw_supplier(sid: str, website: str, price: str = "N/A", **fields) -> Dict[str, Any]:
    data = {
        "id": sid,
        "company_name": fields.pop("company_name", "Shop"),
        "price": price,
        "phone": "N/A",
        "website": website,
        "region": "UZ",
        "address": "N/A",
        "stock_status": "In Stock",
    }
    data.update(fields)
    return data
