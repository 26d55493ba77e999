"""
scoring.py — Deterministic lot scoring. No model calls in here.

Per product we start from opportunity 50 / risk 10 and adjust:

  opportunity  +15  at least one supplier
               +15  cheapest supplier is In Stock
               +10  cheapest supplier is in UZ
               +min(advantage * 50, 25)   best price below the start price
  risk         +40  no suppliers at all, otherwise:
               +min(disadvantage * 50, 25) best price above the start price
               +15  every supplier is Out of Stock
               +10  every supplier is international

Both are capped per product, then averaged across products (unweighted).
Rounding is half-up everywhere, like the dashboard always showed it.

days_remaining uses -1 for "unknown". 0 means the deadline has passed,
which is a different thing and must stay distinguishable.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional, Sequence

from dateutil import parser as date_parser

from tender_hunter.currency import to_uzs, uzs_or_inf
from tender_hunter.schemas import NA, PotentialScore, Product, Supplier

logger = logging.getLogger(__name__)

EMPTY_SCORE = PotentialScore(
    opportunity=0, risk=100, win_probability=0, potential_score=0, days_remaining=-1
)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_potential_score(
    products: Sequence[Product],
    deadline: Optional[str],
    now: Optional[datetime] = None,
) -> PotentialScore:
    """
    Score a lot from its products (with suppliers) and its deadline.

    Zero products gives the maximally pessimistic EMPTY_SCORE.
    """
    if not products:
        return EMPTY_SCORE.model_copy()

    total_opportunity = 0.0
    total_risk = 0.0
    total_start = 0.0
    total_best = 0.0

    for product in products:
        opportunity = 50.0
        risk = 10.0

        start = uzs_or_inf(product.start_price)
        best = min((uzs_or_inf(s.price) for s in product.suppliers), default=math.inf)

        if math.isfinite(start):
            total_start += start * product.quantity
        if math.isfinite(best):
            total_best += best * product.quantity

        if product.suppliers:
            opportunity += 15
            # min() keeps the first of equally priced suppliers
            cheapest = min(product.suppliers, key=lambda s: uzs_or_inf(s.price))
            if cheapest.stock_status == "In Stock":
                opportunity += 15
            if cheapest.region == "UZ":
                opportunity += 10
        if math.isfinite(start) and start > 0 and best < start:
            advantage = (start - best) / start
            opportunity += min(advantage * 50, 25)

        if not product.suppliers:
            risk += 40
        else:
            if math.isfinite(start) and start > 0 and math.isfinite(best) and best > start:
                disadvantage = (best - start) / start
                risk += min(disadvantage * 50, 25)
            if all(s.stock_status == "Out of Stock" for s in product.suppliers):
                risk += 15
            if all(s.region != "UZ" for s in product.suppliers):
                risk += 10

        total_opportunity += min(100.0, max(0.0, opportunity))
        total_risk += min(100.0, max(0.0, risk))

    count = len(products)
    avg_opportunity = round_half_up(total_opportunity / count)
    avg_risk = round_half_up(total_risk / count)

    advantage = 0.0
    if total_start > 0 and total_best > 0 and total_best < total_start:
        advantage = (total_start - total_best) / total_start

    return PotentialScore(
        opportunity=avg_opportunity,
        risk=avg_risk,
        win_probability=round(advantage * 10, 2),
        potential_score=round_half_up(avg_opportunity * 0.7 + (100 - avg_risk) * 0.3),
        days_remaining=days_until(deadline, now),
    )


def days_until(deadline: Optional[str], now: Optional[datetime] = None) -> int:
    """Ceiling of days until the deadline, 0 if passed, -1 if unknown."""
    if not deadline or deadline.strip().upper() == NA:
        return -1
    text = deadline.strip()
    try:
        # Extraction asks for ISO; the portals themselves print day-first.
        # dayfirst would turn 2025-03-02 into 3 February, so ISO goes first.
        when = date_parser.isoparse(text)
    except (ValueError, OverflowError):
        try:
            when = date_parser.parse(text, dayfirst=True)
        except (ValueError, OverflowError) as exc:
            logger.debug("Could not parse deadline %r: %s", deadline, exc)
            return -1

    if when.tzinfo is not None:
        when = when.astimezone().replace(tzinfo=None)
    current = now or datetime.now()
    seconds = (when - current).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def score_supplier(supplier: Supplier) -> int:
    """0-100 reliability score shown next to each supplier in review."""
    score = 50
    price = to_uzs(supplier.price)
    if price is not None and price > 0:
        score += 10
    else:
        score -= 20

    if supplier.stock_status == "In Stock":
        score += 30
    elif supplier.stock_status == "On Order":
        score += 10
    elif supplier.stock_status == "Out of Stock":
        score -= 30

    if supplier.region == "UZ":
        score += 15
    return max(0, min(100, score))
