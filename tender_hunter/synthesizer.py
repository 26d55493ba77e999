"""
synthesizer.py — Search results for one product → vetted supplier records.

The model does the reading, but we don't let it have the last word. Raw
search results are full of news articles, forum threads and ministry
pages that mention the product without selling it, and the model will
happily turn a kun.uz article into "Kun.uz, price N/A, In Stock" if we let
it. So there are guards on both sides of the call:

  before:  hits from clearly informational domains/paths are dropped.
           If nothing commercial is left we return [] without calling the
           model at all.
  after:   every supplier must point at one of the links we actually gave
           the model (same idea as grounding a citation back to its source
           chunk). Anything else is a fabrication and is dropped. Then we
           dedupe by website, normalise the enum-ish fields and make ids
           unique within the product.

This stage must never raise. One weird search result should cost us that
product's suppliers, not the whole analysis.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlparse

from pydantic import ValidationError

from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import NA, Product, SearchResult, Supplier

logger = logging.getLogger(__name__)

# Hosts that publish about products but never sell them. Government
# portals are here too; procurement e-shops live on their own domains.
# Matched on the whole host or a dot boundary, so art.mebel.uz is not t.me.
_INFORMATIONAL_DOMAINS = frozenset({
    "wikipedia.org", "kun.uz", "daryo.uz", "podrobno.uz", "spot.uz", "gazeta.uz",
    "uza.uz", "lex.uz", "norma.uz", "habr.com", "reddit.com", "quora.com",
    "youtube.com", "t.me", "facebook.com", "instagram.com", "gov.uz", "gov",
})
# Whole host labels only: news.example.uz, not newsmebel.uz
_INFORMATIONAL_LABELS = frozenset({"wiki", "news", "gazeta", "forum", "blog"})
_INFORMATIONAL_PATHS = re.compile(
    r"/(news|novosti|yangiliklar|blog|forum|articles|stati|wiki)(/|$)",
    re.IGNORECASE,
)

SUPPLIER_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "STRING"},
            "company_name": {"type": "STRING"},
            "price": {"type": "STRING", "description": "Price WITH currency ('1500000 UZS', '$120'), or 'N/A'."},
            "phone": {"type": "STRING"},
            "website": {"type": "STRING"},
            "region": {"type": "STRING"},
            "address": {"type": "STRING"},
            "stock_status": {"type": "STRING"},
        },
        "required": ["id", "company_name", "price", "phone", "website", "region", "address", "stock_status"],
    },
}

SUPPLIER_PROMPT = """You are a meticulous procurement specialist for the Uzbek market. Analyse the raw web search results for ONE product and extract ONLY legitimate potential suppliers as a JSON array. No other text. Start with `[`.
{knowledge_base}
PRODUCT:
- ID: {product_id}
- Name: {product_name}
- Features: {features}

RAW SEARCH RESULTS:
{results}

PROTOCOL:
1. VETTING (most important). Keep a result ONLY if it is a real commercial source: e-commerce sites (asaxiy.uz...), company or dealer websites, marketplaces (olx.uz, prom.uz), B2B portals. DISCARD informational articles, news, Wikipedia, forums, blogs, government portals that are not shops, papers, and anything that does not offer the product for sale or inquiry. If unsure, DISCARD.
2. For every kept supplier:
   - `id`: "supplier-" + a number.
   - `company_name`: the most specific store/company name from Title or Snippet ("OLX.uz Seller" when only the marketplace is known).
   - `price`: price WITH its currency as found in Title, Snippet or Price ("1 200 000 UZS", "$150", "13500 RUB"). For a range use the lower value. If there is no price, "N/A". Never invent a currency.
   - `phone`: a phone number from the Snippet, else "N/A".
   - `website`: EXACTLY the Link value.
   - `region`: "UZ" for Uzbek cities or .uz domains; "International" only when clearly international (e.g. aliexpress.com). Default "UZ".
   - `address`: a physical address from the Snippet, else "N/A".
   - `stock_status`: "In Stock" ("в наличии", "mavjud", "in stock"), "On Order" ("под заказ"), "Out of Stock", else "N/A".
3. If no result survives vetting, respond with [].
4. NO GUESSING. Any field not present in the text is "N/A".
"""

KNOWLEDGE_BASE_BLOCK = """
INTERNAL KNOWLEDGE BASE (reference and verification only):
---
{knowledge_base}
---
"""


def is_informational(link: str) -> bool:
    """True for links that clearly point at non-commercial content."""
    if not link:
        return True
    parsed = urlparse(link if "://" in link else f"http://{link}")
    host = (parsed.hostname or "").lower()
    if not host:
        return True
    host = host.rstrip(".")
    if any(host == d or host.endswith("." + d) for d in _INFORMATIONAL_DOMAINS):
        return True
    if _INFORMATIONAL_LABELS.intersection(host.split(".")):
        return True
    return bool(_INFORMATIONAL_PATHS.search(parsed.path or ""))


def format_search_results(results: Sequence[SearchResult]) -> str:
    """Render results in the numbered block format the prompt refers to."""
    blocks = []
    for index, r in enumerate(results, start=1):
        price = f"Price: {r.price_range}\n" if r.price_range else ""
        blocks.append(
            f"[SEARCH RESULT {index}]\nTitle: {r.title}\nLink: {r.link}\n"
            f"{price}Snippet: {r.snippet}\n[END SEARCH RESULT {index}]"
        )
    return "\n\n".join(blocks)


def synthesize_suppliers(
    client,
    product: Product,
    results: Sequence[SearchResult],
    knowledge_base: Optional[str] = None,
) -> List[Supplier]:
    """
    Vet and structure suppliers for one product. Never raises.
    """
    try:
        commercial = [r for r in results if not is_informational(r.link)]
        dropped = len(results) - len(commercial)
        if dropped:
            logger.info(
                "Product %s: discarded %d informational result(s) before synthesis",
                product.id, dropped,
            )
        if not commercial:
            return []

        prompt = SUPPLIER_PROMPT.format(
            knowledge_base=KNOWLEDGE_BASE_BLOCK.format(knowledge_base=knowledge_base) if knowledge_base else "",
            product_id=product.id,
            product_name=product.name,
            features=product.features,
            results=format_search_results(commercial),
        )
        raw = client.generate(prompt, response_schema=SUPPLIER_SCHEMA)
        parsed = parse_json_output(raw)
        if parsed is None:
            logger.warning("Supplier analysis for %s returned unparseable output", product.id)
            return []
        if isinstance(parsed, dict):
            parsed = [parsed]
        if not isinstance(parsed, list):
            return []

        return _vet_suppliers(product.id, parsed, commercial)
    except Exception as exc:
        logger.warning("Supplier analysis failed for product %s. Continuing... (%s)", product.id, exc)
        return []


def _vet_suppliers(
    product_id: str,
    raw_suppliers: List[object],
    sources: Sequence[SearchResult],
) -> List[Supplier]:
    known_links: Dict[str, str] = {_link_key(r.link): r.link for r in sources if r.link}
    suppliers: List[Supplier] = []
    seen_sites = set()
    used_ids = set()

    for entry in raw_suppliers:
        if not isinstance(entry, dict):
            continue
        key = _link_key(str(entry.get("website") or ""))
        if key not in known_links:
            logger.debug(
                "Product %s: dropping supplier with unknown website %r",
                product_id, entry.get("website"),
            )
            continue
        if key in seen_sites or is_informational(known_links[key]):
            continue

        data = dict(entry)
        data["website"] = known_links[key]
        data.pop("score", None)
        try:
            supplier = Supplier.model_validate(data)
        except ValidationError as exc:
            logger.debug("Product %s: invalid supplier entry skipped: %s", product_id, exc)
            continue

        supplier_id = supplier.id.strip()
        if not supplier_id or supplier_id in used_ids:
            supplier_id = f"supplier-{len(suppliers) + 1}"
            while supplier_id in used_ids:
                supplier_id += "-x"
        used_ids.add(supplier_id)
        seen_sites.add(key)
        if supplier.company_name == NA:
            supplier = supplier.model_copy(update={"company_name": urlparse(supplier.website).hostname or NA})
        suppliers.append(supplier.model_copy(update={"id": supplier_id}))

    logger.info("Product %s: %d vetted supplier(s)", product_id, len(suppliers))
    return suppliers


def _link_key(link: str) -> str:
    """Comparable form of a URL: no scheme, no www., no trailing slash."""
    text = link.strip().lower()
    text = re.sub(r"^[a-z]+://", "", text)
    if text.startswith("www."):
        text = text[4:]
    return text.rstrip("/")
