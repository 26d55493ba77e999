"""
suppliers.py — Per-product supplier search orchestration.

Flow for one run:

    normalize names (1 batched call)
      -> generate queries (1 batched call)
        -> for each product, in order:
             run its queries concurrently against Serper
             merge + dedupe hits by link (first occurrence wins)
             synthesize suppliers (1 call per product)

Products are processed one after another on purpose. The generative
client spaces its calls by the configured interval, and running products
in parallel would only queue them up behind the limiter while hammering
Serper. Only the search fan-out inside one product is concurrent, since
Serper is not rate limited the same way.

Fault isolation: whatever goes wrong for one product (search errors,
synthesis errors, anything) that product ends up with suppliers=[] and we
move on. The single exception is SearchUnavailableError: no key means no
product can ever get suppliers, so it aborts the run.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

from tender_hunter.config import config
from tender_hunter.errors import SearchUnavailableError
from tender_hunter.normalizer import normalize_names
from tender_hunter.queries import generate_queries
from tender_hunter.schemas import NormalizedName, Product, SearchResult, Supplier
from tender_hunter.synthesizer import synthesize_suppliers

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int, int], None]


class SupplierFinder:
    """
    Finds suppliers for a list of products.

    Usage:
        finder = SupplierFinder(genai_client, SerperClient())
        products = finder.find_suppliers(extracted_products)
    """

    def __init__(self, client, search_client, max_workers: Optional[int] = None):
        self.client = client
        self.search_client = search_client
        self.max_workers = max_workers or config.search.max_workers

    def find_suppliers(
        self,
        products: Sequence[Product],
        knowledge_base: Optional[str] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> List[Product]:
        """
        Return copies of `products` with their supplier lists filled in.

        Output order always matches input order.
        """
        total = len(products)
        to_process = [p for p in products if p.has_name]

        if not to_process:
            logger.info("No searchable product names; skipping supplier search")
            _notify(on_progress, total, total)
            return [p.model_copy(update={"suppliers": []}) for p in products]

        t0 = time.time()
        names = normalize_names(self.client, [(p.id, p.name) for p in to_process])
        queries_by_product = generate_queries(self.client, to_process, names)
        logger.info(
            "  batch normalise + query generation for %d products in %.1fs",
            len(to_process), time.time() - t0,
        )

        searchable_ids = {p.id for p in to_process}
        finished: Dict[str, Product] = {}
        processed = 0

        for product in products:
            if product.id not in searchable_ids:
                finished[product.id] = product.model_copy(update={"suppliers": []})
            else:
                suppliers: List[Supplier] = []
                try:
                    queries = list(queries_by_product.get(product.id) or [])
                    if not queries:
                        queries = _fallback_queries(product, names.get(product.id))
                    results = self._search_all(queries)
                    if results:
                        suppliers = synthesize_suppliers(
                            self.client, product, results, knowledge_base
                        )
                    else:
                        logger.info("Product %s: no search results", product.id)
                except SearchUnavailableError:
                    raise
                except Exception as exc:
                    logger.error(
                        "Failed to process product %s (%r): %s", product.id, product.name, exc
                    )
                    suppliers = []
                finished[product.id] = product.model_copy(update={"suppliers": suppliers})

            processed += 1
            _notify(on_progress, processed, total)

        return [finished[p.id] for p in products]

    def research_product(
        self,
        product: Product,
        knowledge_base: Optional[str] = None,
    ) -> Product:
        """Re-run the whole supplier search for one (possibly edited) product."""
        results = self.find_suppliers([product], knowledge_base)
        if not results:
            raise RuntimeError("Re-search failed to produce a result for the product.")
        return results[0]

    def _search_all(self, queries: List[str]) -> List[SearchResult]:
        """
        Run all queries concurrently; keep whatever succeeded.

        Results are merged in query order so "first occurrence wins" is
        deterministic, then deduplicated by link.
        """
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(queries))) as pool:
            futures = [pool.submit(self.search_client.search, q) for q in queries]

        merged: List[SearchResult] = []
        failures = 0
        for query, future in zip(queries, futures):
            try:
                merged.extend(future.result())
            except SearchUnavailableError:
                raise
            except Exception as exc:
                failures += 1
                logger.warning("Search failed for %r: %s", query, exc)

        if failures:
            logger.info("%d/%d queries failed", failures, len(queries))
        return dedupe_by_link(merged)


def dedupe_by_link(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Drop results without a link and repeats of a link already seen."""
    seen = set()
    unique: List[SearchResult] = []
    for r in results:
        if r.link and r.link not in seen:
            seen.add(r.link)
            unique.append(r)
    return unique


def _fallback_queries(product: Product, normalized: Optional[NormalizedName]) -> List[str]:
    name = normalized.uzbek_latin if normalized else product.name
    return [f"{name} narxi O'zbekiston", f"{name} купить в Ташкенте"]


def _notify(on_progress: Optional[ProgressFn], current: int, total: int) -> None:
    if on_progress is None:
        return
    try:
        on_progress(current, total)
    except Exception as exc:
        logger.warning("Progress callback raised: %s", exc)
