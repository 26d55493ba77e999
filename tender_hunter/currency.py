"""
currency.py — The one place prices get turned into numbers.

Prices reach us as free text from three different places (the tender
document, search snippets, manual edits) plus the occasional structured
{"amount", "currency"} object. parse_price() is the only function that
looks at that raw shape. Everything after it works with Money, and
everything that compares or sums prices works in UZS via to_uzs().

A price we cannot read is "unknown", never 0. Treating an unreadable
price as free made the cheapest-supplier logic pick suppliers with no
price at all, which is how this module came to exist.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Mapping, Optional

from tender_hunter.config import config
from tender_hunter.schemas import NA, Money, PriceObject

logger = logging.getLogger(__name__)

# Order matters: the first token found wins, same as the rest of the
# tooling around these tenders expects.
_CURRENCY_TOKEN = re.compile(r"(USD|\$|EUR|€|RUB|₽|UZS|СУМ|СЎМ|SO['ʻ‘’]M)", re.IGNORECASE)
_SOM_ALIASES = {"СУМ", "СЎМ", "SO'M", "SOʻM", "SO‘M", "SO’M"}
_NON_NUMERIC = re.compile(r"[^0-9.\-]+")


def parse_price(price: Any) -> Money:
    """
    Normalise any external price representation into Money.

    Accepts "15 000 000 UZS", "$150", "13500 RUB", "1200", "N/A", None,
    a {"amount", "currency"} dict or a PriceObject.
    """
    if price is None:
        return Money()

    if isinstance(price, PriceObject):
        price = price.model_dump()

    if isinstance(price, Mapping):
        amount = _to_number(price.get("amount"))
        currency = str(price.get("currency") or "UZS").strip().upper() or "UZS"
        if currency in _SOM_ALIASES:
            currency = "UZS"
        if amount is None:
            return Money(currency_code=currency)
        return Money(amount=amount, currency_code=currency)

    if isinstance(price, (int, float)) and not isinstance(price, bool):
        return Money(amount=float(price)) if math.isfinite(price) else Money()

    text = str(price).strip()
    if not text or text.upper() == NA:
        return Money()

    currency = "UZS"
    amount_text = text
    match = _CURRENCY_TOKEN.search(text)
    if match:
        token = match.group(0).upper()
        if token in _SOM_ALIASES:
            currency = "UZS"
        elif token in config.currency.rates:
            currency = token
        amount_text = text.replace(match.group(0), "", 1).strip()

    amount = _to_number(amount_text)
    if amount is None:
        return Money()
    return Money(amount=amount, currency_code=currency)


def to_uzs(price: Any, rates: Optional[Dict[str, float]] = None) -> Optional[float]:
    """
    Price in UZS, or None when it is not available.

    Unknown currency codes fall back to a rate of 1 (they are most often
    local spellings of the sum that slipped past the token list).
    """
    money = price if isinstance(price, Money) else parse_price(price)
    if not money.is_known:
        return None
    table = rates if rates is not None else config.currency.rates
    rate = table.get(money.currency_code.upper(), 1.0)
    return float(money.amount) * rate


def uzs_or_inf(price: Any) -> float:
    """to_uzs() for comparisons: unavailable prices sort last."""
    value = to_uzs(price)
    return math.inf if value is None else value


def format_display_price(price: Any, quantity: float = 1) -> str:
    """
    "1 524 000 UZS (120 USD)" style display string, or "N/A".

    The original-currency part is only shown for non-UZS prices.
    """
    money = parse_price(price)
    uzs = to_uzs(money)
    if uzs is None:
        return NA

    formatted = f"{_group_thousands(uzs * quantity)} UZS"
    if money.currency_code.upper() not in ("UZS", "СУМ"):
        original = _group_thousands(float(money.amount) * quantity)
        formatted += f" ({original} {money.currency_code})"
    return formatted


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None

    cleaned = _NON_NUMERIC.sub("", str(value))
    # A range "1500000-2000000" reads as its lower bound
    if "-" in cleaned[1:]:
        cleaned = cleaned[0] + cleaned[1:].split("-", 1)[0]
    # "1.200.000" is a thousands-separated number, not 1.2
    if cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    if not cleaned or cleaned in ("-", ".", "-."):
        return None
    try:
        number = float(cleaned)
    except ValueError:
        logger.debug("Unparseable price amount: %r", value)
        return None
    return number if math.isfinite(number) else None


def _group_thousands(amount: float) -> str:
    if float(amount).is_integer():
        text = f"{int(amount):,}"
    else:
        text = f"{amount:,.2f}"
    return text.replace(",", " ")
