"""
config.py — Central configuration for TenderHunter.

All tunable params live here so we're not hunting through a dozen files
when a rate limit or an exchange rate changes. Every default can be
overridden through environment variables; components also accept explicit
arguments so tests never need to touch the environment.

The one value people ask about most is the 4.1s call interval. The free
Gemini tier allows 15 requests/minute, i.e. one every 4.0s. We add 100ms
of slack because the server-side window does not line up with our clock
and 4.0 still produced the odd 429 during a 20-product run.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict
import os
import logging

logger = logging.getLogger(__name__)


@dataclass
class GenAIConfig:
    """
    Generative-model settings (google-genai).

    The key is read from GEMINI_API_KEY first and falls back to API_KEY,
    which is what the old browser build used.
    """
    api_key: str = os.getenv("GEMINI_API_KEY", os.getenv("API_KEY", ""))
    model: str = os.getenv("GENAI_MODEL", "gemini-2.5-flash")
    # Low temperature for extraction. Query generation is the only stage
    # that benefits from variety and the prompt asks for diversity anyway.
    temperature: float = 0.2
    max_retries: int = 3
    retry_base_delay: float = 2.0
    # Minimum spacing between two consecutive generative calls, in seconds.
    min_call_interval: float = float(os.getenv("GENAI_MIN_CALL_INTERVAL", "4.1"))


@dataclass
class SearchConfig:
    """Serper (Google search API) settings."""
    api_key: str = os.getenv("SERPER_API_KEY", "")
    endpoint: str = os.getenv("SERPER_ENDPOINT", "https://google.serper.dev/search")
    # Geolocation bias. Everything we sell into is Uzbek procurement.
    gl: str = os.getenv("SEARCH_GL", "uz")
    num_results: int = int(os.getenv("SEARCH_NUM_RESULTS", "10"))
    timeout: float = 20.0
    # Upper bound on concurrent queries per product. The query generator
    # produces 5, so 5 workers is enough.
    max_workers: int = 5


@dataclass
class ScrapeConfig:
    """
    Source-page fetching.

    Tender portals are slow and xarid.uzex.uz sometimes takes 15s to render
    a lot page, so the timeout is generous. The linked-page limit keeps the
    deep scrape from wandering off across the whole portal.
    """
    timeout: float = 30.0
    user_agent: str = "Mozilla/5.0 (compatible; TenderHunter/1.0)"
    max_linked_pages: int = 2
    tech_spec_keywords: tuple = ("texnik topshiriq", "техническое задание", "спецификация")
    quick_search_html_limit: int = 50000


@dataclass
class CurrencyConfig:
    """
    Exchange rates to UZS.

    Hardcoded for now. The rates only feed comparisons and scoring, where
    a few percent of drift does not change the ranking.
    """
    rates: Dict[str, float] = field(default_factory=lambda: {
        "UZS": 1.0,
        "СУМ": 1.0,
        "USD": 12700.0,
        "$": 12700.0,
        "EUR": 13700.0,
        "€": 13700.0,
        "RUB": 140.0,
        "₽": 140.0,
    })


@dataclass
class StorageConfig:
    """Where the JSON stores (history, knowledge base) live."""
    data_dir: Path = Path(os.getenv("TENDER_HUNTER_DATA_DIR", "data"))
    history_file: str = "history.json"
    contracts_file: str = "contracts.json"


@dataclass
class Config:
    """Master config — instantiated once, used everywhere."""
    genai: GenAIConfig = field(default_factory=GenAIConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    scrape: ScrapeConfig = field(default_factory=ScrapeConfig)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    max_file_size_mb: int = 50
    supported_formats: tuple = (".pdf", ".docx", ".html", ".htm", ".txt")
    image_formats: tuple = (".jpg", ".jpeg", ".png", ".webp")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Validate config on startup so we fail fast instead of halfway
        through a 20-product supplier search."""
        if self.genai.min_call_interval < 0:
            raise ValueError(
                f"GENAI_MIN_CALL_INTERVAL must be >= 0, got {self.genai.min_call_interval}"
            )
        if not 1 <= self.search.num_results <= 100:
            raise ValueError(
                f"SEARCH_NUM_RESULTS must be in [1,100], got {self.search.num_results}"
            )
        if self.currency.rates.get("UZS") != 1.0:
            raise ValueError("UZS must be the reference currency with rate 1.0")

        if not self.genai.api_key:
            logger.warning("No GEMINI_API_KEY set. Generative stages will fail.")
        if not self.search.api_key:
            logger.warning("No SERPER_API_KEY set. Supplier search is disabled.")


# Singleton: every module imports this same instance
config = Config()
