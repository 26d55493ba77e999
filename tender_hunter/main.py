"""
main.py — Pipeline orchestration for TenderHunter.

One run turns a tender (URL, document text, images) into an analysed lot:

    scrape -> assemble content -> extract products + deadline
        -> service lot?  yes: canned summary + score, done
                         no:  supplier search -> summary -> score

Stages report progress through a callback. The callback is wrapped so a
broken UI handler can never take down a run that has already spent ten
minutes of model calls.

Everything that can kill a run surfaces as one AnalysisError with a
readable message. Degradations (a product without suppliers, a failed
image download) are logged and the run continues.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

from tender_hunter.config import config
from tender_hunter.errors import AnalysisError, DocumentError, TenderHunterError
from tender_hunter.extraction import (
    PRIORITY_DOCUMENT_HEADER,
    USER_DOCUMENT_HEADER,
    WEB_CONTEXT_HEADER,
    WEB_PAGE_HEADER,
    extract_lot,
)
from tender_hunter.ingestion import extract_text, image_to_part
from tender_hunter.llm import GenAIClient
from tender_hunter.schemas import (
    AnalysisProgress,
    AnalysisRequest,
    AnalysisResult,
    ImagePart,
    Product,
    TenderPlatform,
    TenderType,
)
from tender_hunter.scoring import calculate_potential_score
from tender_hunter.scraper import PageFetcher, ScrapeResult
from tender_hunter.search import SerperClient
from tender_hunter.storage import AnalysisHistory
from tender_hunter.summary import generate_summary, service_lot_summary
from tender_hunter.suppliers import SupplierFinder

logger = logging.getLogger("tender_hunter")

ProgressCallback = Callable[[AnalysisProgress], None]

DEFAULT_SOURCE = "Uploaded Content"


class ProgressReporter:
    """Calls the user's callback and never lets it raise into the pipeline."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback

    def __call__(self, stage: str, current: int, total: int) -> None:
        if self.callback is None:
            return
        try:
            self.callback(AnalysisProgress(stage=stage, current=current, total=total))
        except Exception as exc:
            logger.warning("Progress callback failed at %s %d/%d: %s", stage, current, total, exc)


def assemble_content(file_text: str, user_content: str, html: str) -> str:
    """
    Build the extraction input with its source-priority headers.

    A fetched tech-spec file beats the user's document, which beats the
    web page. When a document is present the page is only kept as
    deadline context.
    """
    primary = file_text or user_content
    if primary:
        header = PRIORITY_DOCUMENT_HEADER if file_text else USER_DOCUMENT_HEADER
        content = f"{header}\n{primary}"
        if html:
            content += f"\n\n{WEB_CONTEXT_HEADER}\n{html}"
        return content.strip()
    if html:
        return f"{WEB_PAGE_HEADER}\n{html}".strip()
    raise AnalysisError("No content could be loaded for analysis.")


class TenderAnalysisPipeline:
    """
    End-to-end lot analysis.

    Usage:
        pipeline = TenderAnalysisPipeline()
        result = pipeline.run(AnalysisRequest(url="https://xarid.uzex.uz/..."))
        print(result.model_dump_json(indent=2))
    """

    def __init__(
        self,
        client=None,
        search_client=None,
        fetcher: Optional[PageFetcher] = None,
        history: Optional[AnalysisHistory] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client or GenAIClient()
        self.search_client = search_client or SerperClient()
        self.fetcher = fetcher or PageFetcher()
        self.history = history
        self.finder = SupplierFinder(self.client, self.search_client)
        self._clock = clock

    def run(
        self,
        request: AnalysisRequest,
        on_progress: Optional[ProgressCallback] = None,
        knowledge_base: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Analyse one lot.

        Raises:
            AnalysisError: anything fatal, with the cause in the message.
        """
        report = ProgressReporter(on_progress)
        t_start = time.time()
        try:
            result = self._run(request, report, knowledge_base)
        except Exception as exc:
            logger.error("Analysis failed: %s", exc)
            raise AnalysisError(f"Failed to process the request. (Details: {exc})") from exc

        logger.info("=" * 60)
        logger.info(
            "DONE in %.1fs — %d products, %d suppliers, score %s",
            time.time() - t_start,
            len(result.products),
            sum(len(p.suppliers) for p in result.products),
            result.potential_score.potential_score if result.potential_score else "n/a",
        )
        logger.info("=" * 60)

        if self.history is not None:
            try:
                self.history.record(result)
            except (OSError, ValueError) as exc:
                logger.error("Could not save %s to history: %s", result.lot_id, exc)
        return result

    def _run(
        self,
        request: AnalysisRequest,
        report: ProgressReporter,
        knowledge_base: Optional[str],
    ) -> AnalysisResult:
        if not request.content and not request.url:
            raise AnalysisError("Analysis requires either file content or a URL.")

        # ── Stage 0: Scraping ─────────────────────────────────────────────
        scraped = self._scrape(request, report)
        content = assemble_content(scraped.file_text, request.content or "", scraped.html)
        images: List[ImagePart] = [*request.images, *scraped.images]

        # ── Stage 1: Extraction ───────────────────────────────────────────
        logger.info("Stage 1: Extracting products (%d chars, %d images)", len(content), len(images))
        report("extracting", 0, 1)
        lot = extract_lot(
            self.client, content, request.tender_type, images=images, knowledge_base=knowledge_base
        )
        if not lot.products:
            raise AnalysisError("No products could be extracted from the document.")
        report("extracting", 1, 1)

        source = request.url or request.file_name or DEFAULT_SOURCE
        products = lot.products

        # ── Service lots skip the market search entirely ──────────────────
        if len(products) == 1 and products[0].item_type == "SERVICE":
            logger.info("Service lot detected, skipping supplier search")
            report("summarizing", 0, 1)
            products = [products[0].model_copy(update={"suppliers": []})]
            result = self._result(
                service_lot_summary(products[0], request.ui_language),
                products, source, lot.deadline, content,
            )
            report("done", 1, 1)
            return result

        # ── Stage 2: Supplier search ──────────────────────────────────────
        total = len(products)
        logger.info("Stage 2: Searching suppliers for %d products", total)
        report("searching", 0, total)
        products = self.finder.find_suppliers(
            products,
            knowledge_base,
            on_progress=lambda current, _total: report("searching", current, total),
        )

        # ── Stage 3: Summary ──────────────────────────────────────────────
        logger.info("Stage 3: Summarising")
        report("summarizing", 0, 1)
        summary = generate_summary(self.client, products, request.ui_language)
        report("summarizing", 1, 1)

        result = self._result(summary, products, source, lot.deadline, content)
        report("done", 1, 1)
        return result

    def _scrape(self, request: AnalysisRequest, report: ProgressReporter) -> ScrapeResult:
        if not request.url:
            return ScrapeResult()

        if request.platform == TenderPlatform.UZEX and request.tender_type == TenderType.AUCTION:
            logger.info("Stage 0: Deep scrape of %s", request.url)
            report("scraping", 0, 1)
            try:
                scraped = self.fetcher.deep_scrape(request.url)
            except Exception as exc:
                logger.error("Deep scrape failed, continuing with provided data: %s", exc)
                scraped = ScrapeResult()
            report("scraping", 1, 1)
            return scraped

        try:
            return ScrapeResult(html=self.fetcher.fetch_html(request.url))
        except Exception as exc:
            logger.error("Failed to fetch %s: %s", request.url, exc)
            return ScrapeResult()

    def _result(
        self,
        summary: str,
        products: List[Product],
        source: str,
        deadline: str,
        content: str,
    ) -> AnalysisResult:
        return AnalysisResult(
            lot_id=f"lot-{int(self._clock() * 1000)}",
            analysis_summary=summary,
            products=products,
            source_identifier=source,
            deadline=deadline,
            potential_score=calculate_potential_score(products, deadline),
            tender_content=content,
        )

    def research_product(self, product: Product, knowledge_base: Optional[str] = None) -> Product:
        """Re-run the supplier search for one product (after user edits)."""
        return self.finder.research_product(product, knowledge_base)


# ── CLI ───────────────────────────────────────────────────────────────────

_PLATFORMS = {"uzex": TenderPlatform.UZEX, "xt": TenderPlatform.XT}
_TENDER_TYPES = {
    "auction": TenderType.AUCTION,
    "selection": TenderType.SELECTION,
    "eshop": TenderType.ESHOP,
}


def build_request(args: argparse.Namespace) -> AnalysisRequest:
    content = None
    file_name = None
    if args.file:
        content = extract_text(args.file)
        file_name = Path(args.file).name
    images = [image_to_part(path) for path in args.image or []]
    return AnalysisRequest(
        platform=_PLATFORMS[args.platform],
        tender_type=_TENDER_TYPES[args.type],
        url=args.url,
        content=content,
        file_name=file_name,
        images=images,
        ui_language=args.lang,
    )


def _print_progress(progress: AnalysisProgress) -> None:
    logger.info("[%s] %d/%d", progress.stage, progress.current, progress.total)


def _write_output(payload: str, output: Optional[str]) -> None:
    if output is None:
        print(payload)
    else:
        Path(output).write_text(payload, encoding="utf-8")
        logger.info("Output written to %s", output)


def _cmd_analyze(args: argparse.Namespace) -> None:
    request = build_request(args)
    history = None if args.no_history else AnalysisHistory.default()
    pipeline = TenderAnalysisPipeline(history=history)

    knowledge_base = None
    if args.contracts:
        from tender_hunter.contracts import KnowledgeBase

        kb = KnowledgeBase.default(pipeline.client)
        for path in args.contracts:
            kb.add_file(path)
        kb.wait_all()
        kb.shutdown()
        knowledge_base = kb.aggregated_content() or None

    result = pipeline.run(request, on_progress=_print_progress, knowledge_base=knowledge_base)
    _write_output(result.model_dump_json(indent=2), args.output)


def _cmd_quick_search(args: argparse.Namespace) -> None:
    from tender_hunter.quick_search import perform_quick_search

    results = perform_quick_search(GenAIClient(), SerperClient(), args.query)
    payload = json.dumps([r.model_dump() for r in results], indent=2, ensure_ascii=False)
    _write_output(payload, args.output)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tender-hunter",
        description="TenderHunter — Analyse Uzbek procurement lots and find suppliers",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Analyse a tender lot")
    analyze.add_argument("--url", default=None, help="Lot page URL")
    analyze.add_argument("--file", default=None, help="Tender document (PDF, DOCX, HTML, TXT)")
    analyze.add_argument("--image", action="append", help="Product image; repeat for several")
    analyze.add_argument("--platform", choices=sorted(_PLATFORMS), default="uzex")
    analyze.add_argument("--type", choices=sorted(_TENDER_TYPES), default="auction")
    analyze.add_argument("--lang", choices=["uz", "uz-Cyrl", "ru"], default="ru")
    analyze.add_argument("--contracts", nargs="*", help="Past contracts for the knowledge base")
    analyze.add_argument("--no-history", action="store_true", help="Do not save the result")
    analyze.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    analyze.set_defaults(func=_cmd_analyze)

    quick = sub.add_parser("quick-search", help="Search prices for a free-text query")
    quick.add_argument("query")
    quick.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    quick.set_defaults(func=_cmd_quick_search)

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        args.func(args)
    except DocumentError as exc:
        logger.error("Invalid input: %s", exc)
        sys.exit(1)
    except TenderHunterError as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
