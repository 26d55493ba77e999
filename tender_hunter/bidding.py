"""
bidding.py — Bid recommendation.

All money is computed here, locally. The model only writes the two
narrative fields (justification, competitor analysis). Earlier builds let
the model return the figures too and they drifted from the cost table by a
few percent, which is not something you want on a signed bid.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from tender_hunter.currency import to_uzs
from tender_hunter.errors import BidRecommendationError
from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import (
    AdditionalCosts,
    BidRecommendation,
    CostBreakdown,
    Language,
    Product,
    Supplier,
)
from tender_hunter.summary import LANGUAGE_NAMES

logger = logging.getLogger(__name__)

Selection = Sequence[Tuple[Product, Supplier]]

BID_NARRATIVE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "justification": {"type": "STRING"},
        "competitor_analysis": {"type": "STRING"},
    },
    "required": ["justification", "competitor_analysis"],
}

BID_PROMPT = """You are an expert procurement specialist and broker for the Uzbek market. In Uzbek tenders the lowest valid bid typically wins, so be strategic.

The bid figures below are FINAL and already calculated. Do not recalculate or change them.

**Selected products and supplier prices (UZS):**
{lines}

**Additional costs and margin (UZS):**
- Logistics: {logistics} UZS
- Bank guarantee: {bank_guarantee} UZS
- Broker commission: {commission} UZS
- Fixed overhead: {fixed} UZS
- Subtotal (cost price): {subtotal} UZS
- Profit margin: {margin_percent}% = {profit} UZS
- Recommended bid: {total} UZS

**Original tender document context:**
---
{context}
---

Tasks:
1. `competitor_analysis`: estimate the likely price range of competing bids from the tender context (product value, market saturation, typical margins in Uzbekistan).
2. `justification`: explain in a few sentences why the recommended bid is competitive.

Both fields MUST be written in {language}. Respond with ONLY a JSON object."""


def calculate_cost_breakdown(selected: Selection, costs: AdditionalCosts) -> CostBreakdown:
    """
    Roll the selected supplier prices and the additional costs up to a bid.

    Raises:
        ValueError: a selected supplier's price can't be resolved to UZS.
            Silently treating it as 0 would underbid.
    """
    goods_total = 0.0
    for product, supplier in selected:
        unit_price = to_uzs(supplier.price)
        if unit_price is None:
            raise ValueError(
                f"Supplier {supplier.company_name!r} for product {product.name!r} "
                f"has no usable price ({supplier.price!r})"
            )
        goods_total += unit_price * product.quantity

    subtotal = (
        goods_total
        + costs.logistics_cost
        + costs.bank_guarantee_cost
        + costs.commission_cost
        + costs.fixed_costs
    )
    profit = subtotal * costs.profit_margin_percent / 100
    return CostBreakdown(
        goods_total=goods_total,
        logistics_cost=costs.logistics_cost,
        bank_guarantee_cost=costs.bank_guarantee_cost,
        commission_cost=costs.commission_cost,
        fixed_costs=costs.fixed_costs,
        subtotal=subtotal,
        profit_margin=profit,
        total=subtotal + profit,
    )


def get_bid_recommendation(
    client,
    selected: Selection,
    costs: AdditionalCosts,
    tender_content: Optional[str],
    language: Language,
) -> BidRecommendation:
    breakdown = calculate_cost_breakdown(selected, costs)

    lines = "\n".join(
        f"- {p.name} (x{p.quantity:g}): {to_uzs(s.price) * p.quantity:.0f} UZS"
        for p, s in selected
    )
    prompt = BID_PROMPT.format(
        lines=lines or "- (none)",
        logistics=f"{costs.logistics_cost:.0f}",
        bank_guarantee=f"{costs.bank_guarantee_cost:.0f}",
        commission=f"{costs.commission_cost:.0f}",
        fixed=f"{costs.fixed_costs:.0f}",
        subtotal=f"{breakdown.subtotal:.0f}",
        margin_percent=f"{costs.profit_margin_percent:g}",
        profit=f"{breakdown.profit_margin:.0f}",
        total=f"{breakdown.total:.0f}",
        context=tender_content or "No additional context provided. Base your analysis on the product list.",
        language=LANGUAGE_NAMES.get(language, LANGUAGE_NAMES["ru"]),
    )

    try:
        raw = client.generate(prompt, response_schema=BID_NARRATIVE_SCHEMA)
        parsed = parse_json_output(raw)
        if not isinstance(parsed, dict):
            raise ValueError("Failed to parse bid recommendation from the model response")
    except Exception as exc:
        logger.error("Bid recommendation failed: %s", exc)
        raise BidRecommendationError(
            f"AI failed to generate a bid recommendation. Details: {exc}"
        ) from exc

    return BidRecommendation(
        recommended_bid=breakdown.total,
        justification=str(parsed.get("justification") or ""),
        competitor_analysis=str(parsed.get("competitor_analysis") or ""),
        cost_breakdown=breakdown,
    )
