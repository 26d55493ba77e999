"""
scraper.py — Fetching the tender page and whatever hangs off it.

Two modes:

  fetch_html(url)   plain GET, used for every platform.
  deep_scrape(url)  xarid.uzex.uz auctions only. The lot page itself is
                    often thin: product photos sit on the page and on one or
                    two linked pages, and the real specification is an attached
                    "Texnik topshiriq" file. We collect:
                      - every <img> on the page
                      - every <img> on the first N linked pages (links whose
                        text mentions the tech spec, or that leave the
                        portal), excluding direct file links
                      - the text of the first tech-spec file link
                        (pdf/docx)

Nothing in here raises for network trouble. A failed fetch logs and yields
"nothing", and the orchestrator decides whether nothing is enough.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from tender_hunter.config import config
from tender_hunter.errors import DocumentError
from tender_hunter.ingestion import extract_text_from_bytes, try_image_part
from tender_hunter.schemas import ImagePart

logger = logging.getLogger(__name__)

_FILE_LINK = re.compile(r"\.(pdf|docx|zip|xls|xlsx)$", re.IGNORECASE)
# Only formats ingestion can read; a spreadsheet must not hide a later PDF.
_SPEC_FILE_LINK = re.compile(r"\.(pdf|docx)$", re.IGNORECASE)


@dataclass
class ScrapeResult:
    html: str = ""
    file_text: str = ""
    images: List[ImagePart] = field(default_factory=list)


class PageFetcher:
    """Thin requests wrapper with the portal-friendly defaults."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", config.scrape.user_agent)
        self.timeout = timeout or config.scrape.timeout

    def get(self, url: str) -> Optional[requests.Response]:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Failed to fetch %s: %s", url, exc)
            return None
        if not response.ok:
            logger.warning("Failed to fetch %s: HTTP %d", url, response.status_code)
            return None
        return response

    def fetch_html(self, url: str) -> str:
        response = self.get(url)
        return response.text if response is not None else ""

    def fetch_image(self, url: str) -> Optional[ImagePart]:
        response = self.get(url)
        if response is None:
            return None
        return try_image_part(response.content, url)

    def fetch_file_text(self, url: str) -> str:
        """Download an attachment and extract its text; "" on any failure."""
        response = self.get(url)
        if response is None:
            return ""
        file_name = urlparse(url).path.rsplit("/", 1)[-1] or "downloaded-file"
        try:
            return extract_text_from_bytes(response.content, file_name)
        except DocumentError as exc:
            logger.warning("Could not extract text from %s: %s", url, exc)
            return ""

    def deep_scrape(self, url: str) -> ScrapeResult:
        """Page HTML, product images and the tech-spec file of a UZEX lot."""
        html = self.fetch_html(url)
        if not html:
            return ScrapeResult()

        soup = BeautifulSoup(html, "html.parser")
        image_urls = _image_urls(soup, url)
        linked_pages, spec_file = _interesting_links(soup, url)

        for link in linked_pages[: config.scrape.max_linked_pages]:
            linked_html = self.fetch_html(link)
            if linked_html:
                for src in _image_urls(BeautifulSoup(linked_html, "html.parser"), link):
                    if src not in image_urls:
                        image_urls.append(src)

        images: List[ImagePart] = []
        if image_urls:
            with ThreadPoolExecutor(max_workers=config.search.max_workers) as pool:
                for part in pool.map(self.fetch_image, image_urls):
                    if part is not None:
                        images.append(part)
        logger.info("Deep scrape: %d/%d images usable", len(images), len(image_urls))

        file_text = ""
        if spec_file:
            logger.info("Tech-spec file found: %s", spec_file)
            file_text = self.fetch_file_text(spec_file)

        return ScrapeResult(html=html, file_text=file_text, images=images)


def _image_urls(soup: BeautifulSoup, base_url: str) -> List[str]:
    urls: List[str] = []
    for img in soup.find_all("img"):
        src = img.get("src")
        if not src or src.startswith("data:"):
            continue
        absolute = urljoin(base_url, src)
        if absolute not in urls:
            urls.append(absolute)
    return urls


def _interesting_links(soup: BeautifulSoup, base_url: str) -> Tuple[List[str], Optional[str]]:
    """
    (pages worth scanning for images, first tech-spec file link).
    """
    base_host = urlparse(base_url).hostname
    keywords = config.scrape.tech_spec_keywords
    pages: List[str] = []
    spec_file: Optional[str] = None

    for anchor in soup.find_all("a"):
        href = anchor.get("href")
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        absolute = urljoin(base_url, href)
        text = anchor.get_text(" ", strip=True).lower()
        mentions_spec = any(k in text for k in keywords)
        path = urlparse(absolute).path

        if mentions_spec and spec_file is None and _SPEC_FILE_LINK.search(path):
            spec_file = absolute

        external = urlparse(absolute).hostname != base_host
        if (mentions_spec or external) and not _FILE_LINK.search(path) and absolute not in pages:
            pages.append(absolute)

    return pages, spec_file
