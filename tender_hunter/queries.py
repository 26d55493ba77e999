"""
queries.py — Batch search-query generation.

One call produces five queries per product. The five slots are fixed
because each catches a different kind of listing:

  1. Uzbek Latin name + price check in Tashkent   ("... narxi Toshkent")
  2. Russian Latin name + Russian purchase intent ("... купить в Ташкенте")
  3. The most unique spec from `features` (model / part number)
  4. Two or three other key specs from `features`
  5. A marketplace-scoped search ("... olx.uz")

Slots 3 and 4 are the ones that find the exact model instead of a
similar one, which is why the prompt leans so hard on `features`.

If the batch call fails, each product gets one generic query built from
its Uzbek Latin name. Worse results, but search still runs.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List

from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import NormalizedName, Product

logger = logging.getLogger(__name__)

QUERIES_PER_PRODUCT = 5

QUERY_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "product_id": {"type": "STRING", "description": "The unique ID of the product."},
            "queries": {
                "type": "ARRAY",
                "description": "Exactly 5 search query strings for the product.",
                "items": {"type": "STRING"},
            },
        },
        "required": ["product_id", "queries"],
    },
}

QUERY_PROMPT = """You are a search engine optimisation expert for procurement in Uzbekistan. Your goal is search queries that find the EXACT product, so technical specifications from `features` take priority.

For every product below return an object with `product_id` and `queries`: exactly 5 highly diverse Google queries to find local suppliers, following this strategy:
1. Uzbek local price check with `uzbek_latin` in a major city ("Konditsioner Midea 12 narxi Toshkent").
2. Russian purchase search with `russian_latin` ("Кондиционер Midea 12 купить в Ташкенте").
3. Technical deep-dive #1: the single most unique spec from `features` (model number, part number, exact dimension) + the name ("Midea AF-12N8D6-I narxi").
4. Technical deep-dive #2: 2-3 other key specs from `features` + the name ("Konditsioner 12000 BTU inverter R32 sotib olish").
5. Marketplace search: a slightly more generic name on a local marketplace ("Konditsioner Midea 12 olx.uz").

PRODUCTS:
{products}

Respond with ONLY a JSON array of objects."""


def fallback_query(normalized: NormalizedName) -> str:
    return f"{normalized.uzbek_latin} sotib olish O'zbekiston"


def generate_queries(
    client,
    products: List[Product],
    names: Dict[str, NormalizedName],
) -> Dict[str, List[str]]:
    """
    Return {product_id: [queries]} for the given products.

    At most QUERIES_PER_PRODUCT per product. A product the model skipped
    is simply absent from the map; the orchestrator has its own fallback
    for that case.
    """
    if not products:
        return {}

    payload = json.dumps(
        [
            {
                "id": p.id,
                "name": p.name,
                "features": p.features,
                "normalized_names": names[p.id].model_dump() if p.id in names else None,
            }
            for p in products
        ],
        ensure_ascii=False,
        indent=2,
    )

    try:
        raw = client.generate(QUERY_PROMPT.format(products=payload), response_schema=QUERY_SCHEMA)
        parsed = parse_json_output(raw)
        if not isinstance(parsed, list):
            raise ValueError("query response is not a JSON array")
    except Exception as exc:
        logger.warning("Batch query generation failed, using generic queries: %s", exc)
        return {
            p.id: [fallback_query(names.get(p.id) or _identity(p))]
            for p in products
        }

    wanted = {p.id for p in products}
    result: Dict[str, List[str]] = {}
    for item in parsed:
        if not isinstance(item, dict):
            continue
        pid = str(item.get("product_id", ""))
        queries = item.get("queries")
        if pid not in wanted or not isinstance(queries, list):
            continue
        cleaned = [q.strip() for q in queries if isinstance(q, str) and q.strip()]
        if cleaned:
            result[pid] = cleaned[:QUERIES_PER_PRODUCT]

    logger.info("Generated queries for %d/%d products", len(result), len(products))
    return result


def _identity(product: Product) -> NormalizedName:
    return NormalizedName(
        id=product.id,
        original_name=product.name,
        uzbek_latin=product.name,
        russian_latin=product.name,
        english=product.name,
    )
