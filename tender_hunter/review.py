"""
review.py — User edits on a finished analysis.

After a run the user corrects things: a supplier's price was read wrong,
they know a supplier search missed, a product name needs fixing before a
re-search. Every edit returns a new AnalysisResult (results are never
mutated in place) with the potential score recomputed, since price and
stock edits move it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from tender_hunter.schemas import AnalysisResult, Product, Supplier
from tender_hunter.scoring import calculate_potential_score

logger = logging.getLogger(__name__)

# Fields a product edit may not touch: identity and the supplier list have
# their own operations.
_PROTECTED_PRODUCT_FIELDS = {"id", "suppliers"}


def rescore(result: AnalysisResult, products: List[Product], now: Optional[datetime] = None) -> AnalysisResult:
    return result.model_copy(update={
        "products": products,
        "potential_score": calculate_potential_score(products, result.deadline, now=now),
    })


def _product_index(result: AnalysisResult, product_id: str) -> int:
    for index, product in enumerate(result.products):
        if product.id == product_id:
            return index
    raise KeyError(f"Unknown product id: {product_id}")


def update_supplier(
    result: AnalysisResult,
    product_id: str,
    supplier_id: str,
    changes: Dict[str, Any],
) -> AnalysisResult:
    """Apply field changes (price, stock_status, phone...) to one supplier."""
    index = _product_index(result, product_id)
    product = result.products[index]

    suppliers = list(product.suppliers)
    for s_index, supplier in enumerate(suppliers):
        if supplier.id == supplier_id:
            data = {**supplier.model_dump(), **changes, "id": supplier.id}
            suppliers[s_index] = Supplier.model_validate(data)
            break
    else:
        raise KeyError(f"Unknown supplier id {supplier_id} for product {product_id}")

    products = list(result.products)
    products[index] = product.model_copy(update={"suppliers": suppliers})
    return rescore(result, products)


def add_supplier(result: AnalysisResult, product_id: str, data: Dict[str, Any]) -> AnalysisResult:
    """Add a manually entered supplier; it always gets a fresh id."""
    index = _product_index(result, product_id)
    product = result.products[index]

    used = {s.id for s in product.suppliers}
    supplier_id = f"manual-{int(time.time() * 1000)}"
    while supplier_id in used:
        supplier_id += "-1"
    supplier = Supplier.model_validate({**data, "id": supplier_id})

    products = list(result.products)
    products[index] = product.model_copy(update={"suppliers": [*product.suppliers, supplier]})
    logger.info("Manual supplier %s added to %s", supplier_id, product_id)
    return rescore(result, products)


def update_product(result: AnalysisResult, product_id: str, changes: Dict[str, Any]) -> AnalysisResult:
    index = _product_index(result, product_id)
    product = result.products[index]
    blocked = _PROTECTED_PRODUCT_FIELDS.intersection(changes)
    if blocked:
        raise ValueError(f"Cannot edit {', '.join(sorted(blocked))} through update_product")

    data = {**product.model_dump(), **changes}
    products = list(result.products)
    products[index] = Product.model_validate(data)
    return rescore(result, products)


def apply_research(result: AnalysisResult, researched: Product) -> AnalysisResult:
    """Swap in a re-searched product, keeping its position in the list."""
    index = _product_index(result, researched.id)
    products = list(result.products)
    products[index] = researched
    return rescore(result, products)
