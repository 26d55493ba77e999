"""
normalizer.py — Batch product-name normalisation for search.

Uzbek tender documents mix Russian Cyrillic, Uzbek Cyrillic and Uzbek
Latin, while local shops list the same product in whatever script their
CMS defaulted to. One batched call turns every name into three variants:

  uzbek_latin    natural Uzbek Latin name (translation where needed)
  russian_latin  phonetic transliteration of the Russian, NOT a translation
                 ("Stol ofisnyy"), which is what a lot of .uz sites use
  english        concise English name for international listings

Brand and model tokens must survive unchanged in all three.

This stage is an optimisation, not a requirement: on any failure every
variant is just the original name and the pipeline carries on.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Tuple

from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import NormalizedName

logger = logging.getLogger(__name__)

NORMALIZATION_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "STRING"},
            "original_name": {"type": "STRING"},
            "uzbek_latin": {"type": "STRING"},
            "russian_latin": {"type": "STRING"},
            "english": {"type": "STRING"},
        },
        "required": ["id", "original_name", "uzbek_latin", "russian_latin", "english"],
    },
}

NORMALIZATION_PROMPT = """You are a multilingual product-name normalisation expert for the Uzbekistan e-commerce market. Product names below may be in Russian Cyrillic or Uzbek Cyrillic. For EACH product generate search-optimised variants.

Respond with ONLY a JSON array following the schema. No markdown, no explanation.

RULES:
1. Brand names ('Midea', 'Artel'), model numbers ('RTX 3060', '12000 BTU') and technical specs are SACRED: keep them verbatim in every variant.
2. `uzbek_latin`: the most natural Uzbek Latin name ("Стол офисный" -> "Ofis stoli"; "Кондиционер Midea Brabus 12" -> "Konditsioner Midea Brabus 12").
3. `russian_latin`: a direct phonetic transliteration of the original, keeping Russian word order ("Стол офисный" -> "Stol ofisnyy"). Do NOT translate.
4. `english`: a concise English name ("Кондиционер Midea Brabus 12" -> "Midea Brabus 12 Air Conditioner").
5. Copy `id` and put the input name in `original_name`.

INPUT PRODUCTS:
{products}
"""


def identity_names(products: List[Tuple[str, str]]) -> Dict[str, NormalizedName]:
    """Fallback: every variant is the original name."""
    return {
        pid: NormalizedName(
            id=pid, original_name=name, uzbek_latin=name, russian_latin=name, english=name,
        )
        for pid, name in products
    }


def normalize_names(client, products: List[Tuple[str, str]]) -> Dict[str, NormalizedName]:
    """
    Normalise (id, name) pairs in a single model call.

    Returns a mapping for every input id. Ids the model skipped (or the
    whole batch, on error) get identity variants.
    """
    if not products:
        return {}

    fallback = identity_names(products)
    payload = json.dumps([{"id": pid, "name": name} for pid, name in products], ensure_ascii=False)

    try:
        raw = client.generate(
            NORMALIZATION_PROMPT.format(products=payload),
            response_schema=NORMALIZATION_SCHEMA,
        )
        parsed = parse_json_output(raw)
        if not isinstance(parsed, list):
            raise ValueError("normalisation response is not a JSON array")
    except Exception as exc:
        logger.warning("Batch name normalisation failed, using original names: %s", exc)
        return fallback

    result = dict(fallback)
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        pid = str(entry.get("id", ""))
        if pid not in fallback:
            continue
        original = fallback[pid].original_name
        result[pid] = NormalizedName(
            id=pid,
            original_name=original,
            uzbek_latin=_non_blank(entry.get("uzbek_latin"), original),
            russian_latin=_non_blank(entry.get("russian_latin"), original),
            english=_non_blank(entry.get("english"), original),
        )

    missing = len(fallback) - sum(1 for e in parsed if isinstance(e, dict) and str(e.get("id", "")) in fallback)
    if missing > 0:
        logger.info("Normaliser skipped %d product(s); using original names for them", missing)
    return result


def _non_blank(value, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default
