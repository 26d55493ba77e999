"""
quick_search.py — "Just find me a price" search outside a full analysis.

Take the top search hits for a free-text query, fetch each page and let the
model pull the main product's price and a contact phone out of the HTML.
Pages are handled concurrently; one bad page only marks its own row.

Row markers:
    None               the page was read but had no price / phone
    "Fetch Failed"     the page could not be downloaded
    "Analysis Error"   the model call on that page failed
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from tender_hunter.config import config
from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import NA, QuickSearchResult, SearchResult
from tender_hunter.scraper import PageFetcher

logger = logging.getLogger(__name__)

MAX_RESULTS = 10
FETCH_FAILED = "Fetch Failed"
ANALYSIS_ERROR = "Analysis Error"

DETAILS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "price": {"type": "STRING", "description": "Price with currency ('15 000 000 UZS'), or 'N/A'."},
        "phone": {"type": "STRING", "description": "First valid contact phone (+998 XX XXX XX XX), or 'N/A'."},
    },
    "required": ["price", "phone"],
}

DETAILS_PROMPT = """You are a web data extraction AI for Uzbek e-commerce sites. Find the exact price and a contact phone number for ONE product in the HTML below.

CONTEXT:
- User's search query: "{query}"
- Page title: "{title}"

PROTOCOL:
1. The price MUST belong to the product that best matches the query and the page title. Ignore "you may also like", recommended products and accessories.
2. Look for price classes (`price`, `product-price`, `current-price`, `cost`) and keywords next to numbers ("narxi", "narx", "цена", "стоимость").
3. If there is an old (crossed-out) and a new price, take the NEW price.
4. Include the currency (UZS, so'm, сўм, СУМ). Look nearby if it is not next to the number.
5. No clear price, or "by agreement" ("Келишилган", "Договорная") → "N/A". Never guess or calculate.
6. Phone: the first valid contact number (header, footer, "Контакты"). None → "N/A".

HTML (first {limit} characters):
---
{html}
---

Respond with ONLY a JSON object."""


def extract_details_from_html(client, html: str, query: str, title: str) -> Tuple[Optional[str], Optional[str]]:
    """(price, phone) for the page's main product. "N/A" becomes None."""
    limit = config.scrape.quick_search_html_limit
    prompt = DETAILS_PROMPT.format(query=query, title=title, limit=limit, html=html[:limit])
    try:
        raw = client.generate(prompt, response_schema=DETAILS_SCHEMA)
    except Exception as exc:
        logger.error("Detail extraction failed for %r: %s", title, exc)
        return ANALYSIS_ERROR, ANALYSIS_ERROR

    parsed = parse_json_output(raw)
    if not isinstance(parsed, dict):
        return None, None
    return _none_if_na(parsed.get("price")), _none_if_na(parsed.get("phone"))


def perform_quick_search(
    client,
    search_client,
    query: str,
    fetcher: Optional[PageFetcher] = None,
) -> List[QuickSearchResult]:
    """
    Search, then enrich every hit with price and phone.

    Search errors (including a missing key) propagate; there is nothing
    useful to show without results.
    """
    fetcher = fetcher or PageFetcher()
    hits = search_client.search(query)[:MAX_RESULTS]
    logger.info("Quick search %r: %d hits", query, len(hits))
    if not hits:
        return []

    def enrich(hit: SearchResult) -> QuickSearchResult:
        base = {"id": hit.link, "title": hit.title, "link": hit.link, "snippet": hit.snippet}
        html = fetcher.fetch_html(hit.link)
        if not html:
            return QuickSearchResult(**base, price=FETCH_FAILED, phone=FETCH_FAILED)
        price, phone = extract_details_from_html(client, html, query, hit.title)
        return QuickSearchResult(**base, price=price, phone=phone)

    with ThreadPoolExecutor(max_workers=config.search.max_workers) as pool:
        return list(pool.map(enrich, hits))


def _none_if_na(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.upper() == NA:
        return None
    return text
