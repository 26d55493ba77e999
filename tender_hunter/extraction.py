"""
extraction.py — Stage 1: tender document → products + deadline.

This is the only stage whose failure kills the run. Everything after it
(search, scoring, bidding) is built on the product list, and the document
is the single source of truth for that list, so there is no sensible
fallback: if the model's answer does not parse, we raise ExtractionError
and the orchestrator reports it.

What we learned getting this prompt to behave:

  * Source priority has to be spelled out with literal section headers.
    When a lot page links a technical-specification file, the page itself
    repeats a truncated product list. Without the headers the model merged
    both and we got every product twice with different quantities.

  * Services need their own protocol. A construction lot has no "products"
    and the model would invent twenty line items out of the bill of works.
    We ask for exactly one SERVICE item and enforce it afterwards.

  * The name field drives web search quality more than anything else,
    so the prompt insists on merging brand + model into one searchable
    name ("Midea Brabus 12 Inverter" rather than "Konditsioner").

  * "N/A" / quantity 1 for missing data is requested in the prompt AND
    enforced by the Product validators, because the model still sends
    nulls now and then.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from tender_hunter.errors import ExtractionError
from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import NA, ExtractedLot, ImagePart, Product, TenderType

logger = logging.getLogger(__name__)

# Section headers of the content-analysis protocol. The orchestrator uses
# the same constants when assembling the document, so keep them in sync.
PRIORITY_DOCUMENT_HEADER = "**PRIORITY DOCUMENT (USE FOR PRODUCTS):**"
USER_DOCUMENT_HEADER = "**USER UPLOADED DOCUMENT (USE FOR PRODUCTS):**"
WEB_CONTEXT_HEADER = "**WEB PAGE CONTEXT (USE FOR DEADLINE ONLY):**"
WEB_PAGE_HEADER = "**WEB PAGE (USE FOR PRODUCTS AND DEADLINE):**"

SERVICE_UNIT = "xizmat"

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "deadline": {
            "type": "STRING",
            "description": "Tender submission deadline as 'YYYY-MM-DD HH:mm:ss', or 'N/A'.",
        },
        "products": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "id": {"type": "STRING", "description": "Unique ID, like positionNumber-name."},
                    "item_type": {"type": "STRING", "description": "'PRODUCT' for goods, 'SERVICE' for services."},
                    "name": {"type": "STRING", "description": "Most specific searchable name (brand + model for goods)."},
                    "position_number": {"type": "STRING", "description": "Position identifier ('#1', '№ 5') or 'N/A'."},
                    "parent_product_name": {"type": "STRING", "description": "Main position name for sub-items, else 'N/A'."},
                    "ifxt_code": {"type": "STRING", "description": "IFXT/MXIK code or 'N/A'."},
                    "manufacturer": {"type": "STRING", "description": "Manufacturer or 'N/A'."},
                    "features": {"type": "STRING", "description": "All descriptions and technical requirements, plus 'Visual Description from Images:' when images exist."},
                    "dimensions": {"type": "STRING", "description": "Physical dimensions or 'N/A'."},
                    "unit": {"type": "STRING", "description": "Unit of measurement; 'xizmat' for a SERVICE."},
                    "quantity": {"type": "NUMBER", "description": "Quantity required; 1 for a SERVICE."},
                    "start_price": {"type": "STRING", "description": "Starting price WITH currency ('15 000 000 UZS') or 'N/A'."},
                },
                "required": [
                    "id", "item_type", "name", "position_number", "parent_product_name",
                    "ifxt_code", "manufacturer", "features", "dimensions", "unit",
                    "quantity", "start_price",
                ],
            },
        },
    },
    "required": ["deadline", "products"],
}

SOURCE_PROTOCOL = f"""
**CONTENT ANALYSIS PROTOCOL (CRITICAL):**
The document content is given under specific headers. Follow these rules exactly:
1. If there is a section titled `{PRIORITY_DOCUMENT_HEADER}` or `{USER_DOCUMENT_HEADER}`, that text is your ONLY source for the `products` array.
2. A section titled `{WEB_CONTEXT_HEADER}` may ONLY be used to find the `deadline`. Never extract products from it when a priority document is present.
3. A section titled `{WEB_PAGE_HEADER}` is your only source, for BOTH `products` and `deadline`.
"""

AUCTION_PROTOCOL = """
**AUCTION PAGE PROTOCOL (HTML):**
* For each position (e.g. Lot #1) find its containing HTML element; everything you extract for that position comes from inside it.
* Extract 100% of the text of sections such as "Texnik xususiyatlari", "Описание товара", "Технические требования" VERBATIM into `features`, including hidden elements.
* If one position enumerates several items ("1. Monitor; 2. Klaviatura"), each item is a separate product with the same `position_number` and the position name as `parent_product_name`.
* Never merge data from different positions.
"""

IMAGE_PROTOCOL = """
**IMAGE ANALYSIS PROTOCOL:**
Images are attached to this request. For each product:
1. Decide which images belong to it (there may be several).
2. Combine colour, material, shape and parts from all of them into one description starting with "Visual Description from Images: " and append it to `features`.
3. Look for dimensions in every associated image (text, drawings, charts) and put them in `dimensions`, e.g. "120x60x75 cm, thickness 18mm". Use "N/A" only if no image shows any.
"""

EXTRACTION_PROMPT = """You are a procurement data extraction engine. Analyse the tender document below (and any attached images) and extract ALL product positions and the lot deadline as ONE valid JSON object following the schema. No markdown, no explanation. Start with `{{`.
{source_protocol}{image_protocol}
**STEP 1 — CLASSIFY THE LOT.** Decide whether the tender is for tangible goods or for a service (construction, repair, maintenance...).

**SERVICE LOT:** `products` contains exactly ONE object: `item_type` "SERVICE", a short descriptive `name`, `quantity` 1, `unit` "xizmat", `position_number` and `ifxt_code` "N/A".

**GOODS LOT:** `item_type` "PRODUCT" for every item. The `name` MUST be the most specific searchable name possible: merge brand and model when present (e.g. "Midea Brabus 12 Inverter"). Web search depends on it.

**DEADLINE:** find the submission deadline in the allowed source ("Tugash sanasi", "Окончание приема заявок"). Format YYYY-MM-DD HH:mm:ss, or "N/A".

**CURRENCY:** every price keeps its currency code or symbol (UZS, СУМ, USD, $).

**MISSING DATA:** every product object is complete. Missing strings are "N/A", missing `quantity` is 1. Never null, never omit a key.
{knowledge_base}
**Tender type:** {tender_type}
{auction_protocol}
**DOCUMENT CONTENT:**
---
{content}
---

Respond with ONLY the JSON object."""

KNOWLEDGE_BASE_BLOCK = """
**INTERNAL KNOWLEDGE BASE:**
Structured data from our past signed contracts. If a tender product matches one of them, use the contract's details to enrich the extracted fields.
---
{knowledge_base}
---
"""


def has_priority_document(content: Optional[str]) -> bool:
    """True if the assembled content carries a product-priority section."""
    if not content:
        return False
    return PRIORITY_DOCUMENT_HEADER in content or USER_DOCUMENT_HEADER in content


def build_extraction_prompt(
    content: str,
    tender_type: TenderType,
    has_images: bool = False,
    knowledge_base: Optional[str] = None,
) -> str:
    """Assemble the stage-1 prompt. Split out so tests can inspect it."""
    auction = (
        AUCTION_PROTOCOL
        if tender_type == TenderType.AUCTION and not has_priority_document(content)
        else ""
    )
    return EXTRACTION_PROMPT.format(
        source_protocol=SOURCE_PROTOCOL,
        image_protocol=IMAGE_PROTOCOL if has_images else "",
        knowledge_base=KNOWLEDGE_BASE_BLOCK.format(knowledge_base=knowledge_base) if knowledge_base else "",
        tender_type=tender_type.value,
        auction_protocol=auction,
        content=content,
    )


def extract_lot(
    client,
    content: str,
    tender_type: TenderType = TenderType.AUCTION,
    images: Optional[Sequence[ImagePart]] = None,
    knowledge_base: Optional[str] = None,
) -> ExtractedLot:
    """
    Run stage 1 and return the validated lot.

    Raises:
        ExtractionError: empty response, or nothing parseable as the schema.
    """
    prompt = build_extraction_prompt(
        content, tender_type, has_images=bool(images), knowledge_base=knowledge_base
    )
    raw = client.generate(prompt, images=images, response_schema=EXTRACTION_SCHEMA)
    if not raw:
        raise ExtractionError("Data extraction returned an empty response.")

    parsed = parse_json_output(raw)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("products"), list):
        raise ExtractionError(
            "Failed to parse extracted data from AI response. "
            "The response may not be valid JSON."
        )

    products = _build_products(parsed["products"])
    products = _enforce_service_lot(products)
    lot = ExtractedLot(deadline=parsed.get("deadline"), products=products)
    logger.info(
        "Extracted %d products (deadline: %s)", len(lot.products), lot.deadline
    )
    return lot


def _build_products(raw_items: List[Any]) -> List[Product]:
    """Validate raw items into Products with unique ids."""
    products: List[Product] = []
    seen_ids: Dict[str, int] = {}

    for index, item in enumerate(raw_items, start=1):
        if not isinstance(item, dict):
            logger.warning("Skipping non-object product entry #%d: %r", index, item)
            continue

        data = dict(item)
        base_id = str(data.get("id") or "").strip() or f"product-{index}"
        if base_id in seen_ids:
            seen_ids[base_id] += 1
            data["id"] = f"{base_id}-{seen_ids[base_id]}"
        else:
            seen_ids[base_id] = 1
            data["id"] = base_id
        data["suppliers"] = []

        try:
            products.append(Product.model_validate(data))
        except ValidationError as exc:
            logger.warning("Dropping product #%d (%s): %s", index, data["id"], exc)

    return products


def _enforce_service_lot(products: List[Product]) -> List[Product]:
    """
    A service lot is exactly one SERVICE product, quantity 1, unit xizmat.

    When the model splits a service into several SERVICE items anyway, we
    keep the first and fold the others' names into its features so nothing
    the document said is lost.
    """
    if not products or any(p.item_type != "SERVICE" for p in products):
        return products

    service = products[0]
    features = service.features
    if len(products) > 1:
        extra = "; ".join(p.name for p in products[1:] if p.has_name)
        logger.info("Collapsing %d SERVICE items into one", len(products))
        if extra:
            features = extra if features == NA else f"{features}; {extra}"

    return [service.model_copy(update={"quantity": 1, "unit": SERVICE_UNIT, "features": features})]
