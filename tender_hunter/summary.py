"""
summary.py — The short natural-language verdict shown above the results.
"""

from __future__ import annotations

import json
import logging
from typing import List

from tender_hunter.currency import parse_price, to_uzs, uzs_or_inf
from tender_hunter.schemas import NA, Language, Product

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "uz": "Uzbek (Latin script)",
    "uz-Cyrl": "Uzbek (Cyrillic script)",
    "ru": "Russian",
}

NOTHING_TO_SUMMARIZE = "No products were found in the document to summarize."
SUMMARY_UNAVAILABLE = "Summary could not be generated."

# Service lots get a fixed budget estimate: 75% of the starting price.
SERVICE_BUDGET_RATIO = 0.75

_SERVICE_WITH_PRICE = {
    "uz": (
        "Ushbu lot xizmat ko'rsatish uchun mo'ljallangan (masalan, qurilish yoki ta'mirlash). "
        "Bozor narxini aniq belgilashning imkoni yo'q. Lotning boshlang'ich narxidan kelib chiqib, "
        "tavsiya etilgan taxminiy byudjet narxi (75%) {amount} ni tashkil etadi."
    ),
    "uz-Cyrl": (
        "Ушбу лот хизмат кўрсатиш учун мўлжалланган (масалан, қурилиш ёки таъмирлаш). "
        "Бозор нархини аниқ белгилашнинг имкони йўқ. Лотнинг бошланғич нархидан келиб чиқиб, "
        "тавсия этилган тахминий бюджет нархи (75%) {amount} ни ташкил этади."
    ),
    "ru": (
        "Этот лот представляет собой оказание услуг (например, строительство или ремонт). "
        "Точную рыночную цену определить невозможно. Исходя из стартовой цены лота, "
        "рекомендуемая оценочная бюджетная стоимость (75%) составляет {amount}."
    ),
}

_SERVICE_NO_PRICE = {
    "uz": (
        "Ushbu lot xizmat ko'rsatish uchun mo'ljallangan. Boshlang'ich narx topilmadi, "
        "shuning uchun taxminiy byudjetni hisoblashning imkoni yo'q."
    ),
    "uz-Cyrl": (
        "Ушбу лот хизмат кўрсатиш учун мўлжалланган. Бошланғич нарх топилмади, "
        "шунинг учун тахминий бюджетни ҳисоблашнинг имкони йўқ."
    ),
    "ru": (
        "Этот лот представляет собой оказание услуг. Стартовая цена не найдена, "
        "поэтому рассчитать оценочный бюджет невозможно."
    ),
}

SUMMARY_PROMPT = """You are an expert procurement analyst.
Based on the analysis data below, write a concise, 2-3 sentence expert summary.
Highlight the best value, risks (no suppliers found, prices above the starting price) and an overall recommendation.
**The summary MUST be written in {language}.**

**Analysis data:**
{data}

Respond with ONLY the summary text."""


def build_summary_data(products: List[Product]) -> str:
    rows = []
    for p in products:
        best = min((uzs_or_inf(s.price) for s in p.suppliers), default=float("inf"))
        rows.append({
            "name": p.name,
            "quantity": p.quantity,
            "start_price": p.start_price,
            "found_suppliers": len(p.suppliers),
            "best_price_uzs": best if best != float("inf") else NA,
        })
    return json.dumps(rows, ensure_ascii=False, indent=2)


def generate_summary(client, products: List[Product], language: Language) -> str:
    """
    2-3 sentence summary in the requested language.

    Model errors propagate: the orchestrator treats a failed summary as a
    failed run.
    """
    if not products:
        return NOTHING_TO_SUMMARIZE

    prompt = SUMMARY_PROMPT.format(
        language=LANGUAGE_NAMES.get(language, LANGUAGE_NAMES["ru"]),
        data=build_summary_data(products),
    )
    text = client.generate(prompt)
    return text.strip() or SUMMARY_UNAVAILABLE


def service_lot_summary(service: Product, language: Language) -> str:
    """Canned summary for a service lot: 75% of the starting price, if any."""
    start_uzs = to_uzs(parse_price(service.start_price))
    lang = language if language in _SERVICE_WITH_PRICE else "ru"
    if start_uzs is None or start_uzs <= 0:
        return _SERVICE_NO_PRICE[lang]

    estimate = round(start_uzs * SERVICE_BUDGET_RATIO)
    amount = f"{estimate:,}".replace(",", " ") + " UZS"
    return _SERVICE_WITH_PRICE[lang].format(amount=amount)
