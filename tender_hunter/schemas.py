"""
schemas.py — Pydantic v2 models for the whole analysis run.

These models are the contract between the pipeline stages and whatever
sits on top of them (API, CLI, stored history). Two rules shape them:

  1. Missing text is "N/A" and missing quantity is 1. The model is told
     this in every prompt, but it still sends null, "" and omitted keys
     often enough that we enforce it here with before-validators. Nothing
     downstream should ever have to check for None.

  2. Supplier.price is accepted in both shapes the rest of the world sends
     us: "1 200 000 UZS" or {"amount": 120, "currency": "USD"}. We keep the
     raw shape for display and round-tripping, and go through
     currency.parse_price whenever a number is needed.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

NA = "N/A"

Language = Literal["uz", "uz-Cyrl", "ru"]
AnalysisStage = Literal["scraping", "extracting", "searching", "summarizing", "done"]
StockStatus = Literal["In Stock", "On Order", "Out of Stock", "N/A"]

_STOCK_ALIASES = {
    "in stock": "In Stock",
    "on order": "On Order",
    "out of stock": "Out of Stock",
}


def _na_if_blank(value):
    if value is None:
        return NA
    if isinstance(value, str) and not value.strip():
        return NA
    return value


class TenderPlatform(str, Enum):
    UZEX = "xarid.uzex.uz"
    XT = "xt-xarid.uz"


class TenderType(str, Enum):
    AUCTION = "Auksion"
    SELECTION = "Eng yaxshi takliflarni tanlash (Otbor)"
    ESHOP = "Elektron do'kon"


class ImagePart(BaseModel):
    """An inline image for the generative model (base64 payload)."""
    mime_type: str
    data: str


class AnalysisRequest(BaseModel):
    """Immutable input to one analysis run."""
    model_config = ConfigDict(frozen=True)

    platform: TenderPlatform = TenderPlatform.UZEX
    tender_type: TenderType = TenderType.AUCTION
    url: Optional[str] = None
    content: Optional[str] = None
    file_name: Optional[str] = None
    images: List[ImagePart] = Field(default_factory=list)
    ui_language: Language = "ru"


class PriceObject(BaseModel):
    """The structured price shape some sources (and manual edits) use."""
    amount: Union[float, str]
    currency: str = "UZS"


class Money(BaseModel):
    """
    Internal tagged price value.

    amount is either a finite number or the literal "unknown". Only
    currency.parse_price builds these.
    """
    model_config = ConfigDict(frozen=True)

    amount: Union[float, Literal["unknown"]] = "unknown"
    currency_code: str = "UZS"

    @property
    def is_known(self) -> bool:
        return self.amount != "unknown"


class Supplier(BaseModel):
    id: str = ""
    company_name: str = NA
    price: Union[str, PriceObject] = NA
    phone: str = NA
    website: str = NA
    region: Literal["UZ", "International"] = "UZ"
    address: str = NA
    stock_status: StockStatus = NA
    score: Optional[int] = Field(default=None, ge=0, le=100)

    @field_validator("company_name", "phone", "website", "address", mode="before")
    @classmethod
    def _fill_na(cls, v):
        return _na_if_blank(v)

    @field_validator("price", mode="before")
    @classmethod
    def _price_na(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return _na_if_blank(v)

    @field_validator("region", mode="before")
    @classmethod
    def _region(cls, v):
        # Default to UZ unless the source is unambiguously international.
        if isinstance(v, str) and v.strip().lower() == "international":
            return "International"
        return "UZ"

    @field_validator("stock_status", mode="before")
    @classmethod
    def _stock(cls, v):
        if not isinstance(v, str):
            return NA
        return _STOCK_ALIASES.get(v.strip().lower(), NA)


class Product(BaseModel):
    id: str
    item_type: Literal["PRODUCT", "SERVICE"] = "PRODUCT"
    name: str = NA
    position_number: str = NA
    parent_product_name: str = NA
    ifxt_code: str = NA
    manufacturer: str = NA
    features: str = NA
    dimensions: str = NA
    unit: str = NA
    quantity: float = Field(default=1, ge=0)
    start_price: str = NA
    suppliers: List[Supplier] = Field(default_factory=list)

    @field_validator(
        "name", "position_number", "parent_product_name", "ifxt_code",
        "manufacturer", "features", "dimensions", "unit", "start_price",
        mode="before",
    )
    @classmethod
    def _fill_na(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return _na_if_blank(v)

    @field_validator("item_type", mode="before")
    @classmethod
    def _item_type(cls, v):
        if isinstance(v, str) and v.strip().upper() == "SERVICE":
            return "SERVICE"
        return "PRODUCT"

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v):
        if v is None or isinstance(v, bool):
            return 1
        if isinstance(v, str):
            cleaned = v.replace(" ", "").replace(",", ".")
            try:
                v = float(cleaned)
            except ValueError:
                return 1
        if isinstance(v, (int, float)) and v < 0:
            return 1
        return v

    @property
    def has_name(self) -> bool:
        return bool(self.name.strip()) and self.name.strip() != NA


class PotentialScore(BaseModel):
    opportunity: int = Field(ge=0, le=100)
    risk: int = Field(ge=0, le=100)
    win_probability: float = Field(ge=0)
    potential_score: int = Field(ge=0, le=100)
    # -1 means unknown / not applicable, which is not the same as 0.
    days_remaining: int = Field(ge=-1)


class AnalysisResult(BaseModel):
    lot_id: str
    analysis_summary: str
    products: List[Product]
    source_identifier: str
    deadline: Optional[str] = None
    potential_score: Optional[PotentialScore] = None
    tender_content: Optional[str] = None


class AnalysisProgress(BaseModel):
    stage: AnalysisStage
    current: int
    total: int


class ExtractedLot(BaseModel):
    """What the extraction stage hands to the rest of the pipeline."""
    deadline: str = NA
    products: List[Product] = Field(default_factory=list)

    @field_validator("deadline", mode="before")
    @classmethod
    def _deadline(cls, v):
        return _na_if_blank(v)


class SearchResult(BaseModel):
    title: str = ""
    link: str = ""
    snippet: str = ""
    price_range: Optional[str] = None


class NormalizedName(BaseModel):
    id: str
    original_name: str
    uzbek_latin: str
    russian_latin: str
    english: str


# ── Bid calculation ───────────────────────────────────────────────────────

class AdditionalCosts(BaseModel):
    """User-adjustable cost inputs, all in UZS except the margin."""
    logistics_cost: float = Field(default=200000, ge=0)
    bank_guarantee_cost: float = Field(default=100000, ge=0)
    commission_cost: float = Field(default=300000, ge=0)
    fixed_costs: float = Field(default=100000, ge=0)
    profit_margin_percent: float = Field(default=5, ge=0)


class CostBreakdown(BaseModel):
    goods_total: float
    logistics_cost: float
    bank_guarantee_cost: float
    commission_cost: float
    fixed_costs: float
    subtotal: float
    profit_margin: float
    total: float


class BidRecommendation(BaseModel):
    recommended_bid: float
    justification: str
    competitor_analysis: str
    cost_breakdown: CostBreakdown


# ── Knowledge base ────────────────────────────────────────────────────────

class ContractProduct(BaseModel):
    name: str
    quantity: float = 1
    unit_price: str = NA

    @field_validator("unit_price", mode="before")
    @classmethod
    def _price(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return _na_if_blank(v)


class ContractDetails(BaseModel):
    customer: str = NA
    supplier: str = NA
    total_value: str = NA
    products: List[ContractProduct] = Field(default_factory=list)


class Contract(BaseModel):
    id: str
    file_name: str
    content: str = ""
    details: Optional[ContractDetails] = None
    status: Literal["pending", "done", "error"] = "pending"
    error: Optional[str] = None


# ── History ───────────────────────────────────────────────────────────────

class AnalysisHistoryItem(BaseModel):
    analysis_result: AnalysisResult
    timestamp: int
    status: Literal["pending", "won", "lost", "no_bid"] = "pending"
    winning_bid: Optional[float] = None
    actual_cost: Optional[float] = None
    delivery_notes: Optional[str] = None

    @property
    def lot_id(self) -> str:
        return self.analysis_result.lot_id


class QuickSearchResult(BaseModel):
    id: str
    title: str
    link: str
    snippet: str
    price: Optional[str] = None
    phone: Optional[str] = None
