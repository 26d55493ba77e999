"""
test_pipeline.py — End-to-end runs of TenderAnalysisPipeline with the
model, Serper and the page fetcher all faked.

These are the tests that catch wiring regressions: stage order, progress
reporting, service-lot short-circuit, how failures surface, and what gets
written to history.

Run with:
    python tests/test_pipeline.py
    python -m pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fakes import (
    EXTRACT,
    NORMALIZE,
    QUERIES,
    SUMMARY,
    SYNTH,
    FakeFetcher,
    FakeGenAI,
    FakeSearch,
    hit,
    raw_product,
    raw_supplier,
)
from tender_hunter.errors import AnalysisError, SearchUnavailableError
from tender_hunter.extraction import (
    PRIORITY_DOCUMENT_HEADER,
    USER_DOCUMENT_HEADER,
    WEB_CONTEXT_HEADER,
    WEB_PAGE_HEADER,
)
from tender_hunter.main import TenderAnalysisPipeline, assemble_content
from tender_hunter.schemas import AnalysisRequest, ImagePart, TenderPlatform, TenderType
from tender_hunter.scraper import ScrapeResult
from tender_hunter.storage import AnalysisHistory

LOT_URL = "https://xarid.uzex.uz/auction/detail/123"
CLOCK = lambda: 1700000000.0  # noqa: E731

TWO_PRODUCTS = {
    "deadline": "N/A",
    "products": [
        raw_product("p1", "Konditsioner Midea 12", start_price="6 000 000 UZS"),
        raw_product("p2", "Printer HP 107a", start_price="2 000 000 UZS"),
    ],
}


def _full_client(extraction=TWO_PRODUCTS):
    return (
        FakeGenAI()
        .on(EXTRACT, extraction)
        .on(NORMALIZE, [])
        .on(QUERIES, [
            {"product_id": "p1", "queries": ["midea 12 narxi"]},
            {"product_id": "p2", "queries": ["hp 107a narxi"]},
        ])
        .on(SYNTH, lambda prompt: (
            [raw_supplier("supplier-1", "https://asaxiy.uz/midea", "5 000 000 UZS")]
            if "- ID: p1" in prompt else []
        ))
        .on(SUMMARY, "Midea is cheaper than the start price. No printer sellers found.")
    )


def _search(query):
    if query.startswith("midea"):
        return [hit("https://asaxiy.uz/midea")]
    return []


def _pipeline(client, search=None, fetcher=None, history=None):
    return TenderAnalysisPipeline(
        client=client,
        search_client=search or FakeSearch(_search),
        fetcher=fetcher or FakeFetcher(),
        history=history,
        clock=CLOCK,
    )


def test_document_run_end_to_end():
    client = _full_client()
    progress = []
    request = AnalysisRequest(content="Texnik topshiriq...", file_name="lot.docx", tender_type=TenderType.ESHOP)
    result = _pipeline(client).run(request, on_progress=progress.append)

    assert result.lot_id == "lot-1700000000000"
    assert result.source_identifier == "lot.docx"
    assert [p.id for p in result.products] == ["p1", "p2"]
    assert result.products[0].suppliers[0].website == "https://asaxiy.uz/midea"
    assert result.products[1].suppliers == []
    assert result.analysis_summary.startswith("Midea")
    assert result.potential_score is not None
    assert result.potential_score.days_remaining == -1
    assert result.tender_content.startswith(USER_DOCUMENT_HEADER)

    stages = [(p.stage, p.current, p.total) for p in progress]
    assert stages == [
        ("extracting", 0, 1),
        ("extracting", 1, 1),
        ("searching", 0, 2),
        ("searching", 1, 2),
        ("searching", 2, 2),
        ("summarizing", 0, 1),
        ("summarizing", 1, 1),
        ("done", 1, 1),
    ]
    print("  ✓ test_document_run_end_to_end")


def test_service_lot_never_searches():
    client = FakeGenAI().on(EXTRACT, {
        "deadline": "N/A",
        "products": [raw_product("s1", "Binoni ta'mirlash", item_type="SERVICE", start_price="100 000 000 UZS")],
    })
    search = FakeSearch(lambda q: [hit("https://should-not-happen.uz")])
    progress = []
    result = _pipeline(client, search=search).run(
        AnalysisRequest(content="Ta'mirlash ishlari", ui_language="ru"), on_progress=progress.append
    )

    assert search.queries == []
    assert client.count(SUMMARY) == 0
    assert len(result.products) == 1
    assert result.products[0].suppliers == []
    assert "75 000 000 UZS" in result.analysis_summary
    assert result.source_identifier == "Uploaded Content"
    assert [p.stage for p in progress] == ["extracting", "extracting", "summarizing", "done"]
    print("  ✓ test_service_lot_never_searches")


def test_zero_products_fails_the_run():
    client = FakeGenAI().on(EXTRACT, {"deadline": "N/A", "products": []})
    try:
        _pipeline(client).run(AnalysisRequest(content="empty"))
        raise AssertionError("expected AnalysisError")
    except AnalysisError as exc:
        assert str(exc).startswith("Failed to process the request.")
        assert "No products could be extracted" in str(exc)
    print("  ✓ test_zero_products_fails_the_run")


def test_request_without_content_or_url():
    try:
        _pipeline(FakeGenAI()).run(AnalysisRequest())
        raise AssertionError("expected AnalysisError")
    except AnalysisError as exc:
        assert "either file content or a URL" in str(exc)
    print("  ✓ test_request_without_content_or_url")


def test_unreachable_page_and_no_document():
    fetcher = FakeFetcher(pages={})
    client = FakeGenAI()
    try:
        _pipeline(client, fetcher=fetcher).run(
            AnalysisRequest(url="https://xt-xarid.uz/lot/9", platform=TenderPlatform.XT)
        )
        raise AssertionError("expected AnalysisError")
    except AnalysisError as exc:
        assert "No content could be loaded" in str(exc)
    assert client.calls == []
    print("  ✓ test_unreachable_page_and_no_document")


def test_unparseable_extraction_fails_the_run():
    client = FakeGenAI().on(EXTRACT, "Sorry, I cannot help with that.")
    try:
        _pipeline(client).run(AnalysisRequest(content="doc"))
        raise AssertionError("expected AnalysisError")
    except AnalysisError as exc:
        assert str(exc).startswith("Failed to process the request.")
    print("  ✓ test_unparseable_extraction_fails_the_run")


def test_missing_search_key_fails_the_run():
    def search(query):
        raise SearchUnavailableError("SERPER_API_KEY is not set")

    try:
        _pipeline(_full_client(), search=FakeSearch(search)).run(AnalysisRequest(content="doc"))
        raise AssertionError("expected AnalysisError")
    except AnalysisError as exc:
        assert "SERPER_API_KEY" in str(exc)
        assert isinstance(exc.__cause__, SearchUnavailableError)
    print("  ✓ test_missing_search_key_fails_the_run")


def test_broken_progress_callback_is_ignored():
    def broken(progress):
        raise RuntimeError("websocket closed")

    result = _pipeline(_full_client()).run(AnalysisRequest(content="doc"), on_progress=broken)
    assert len(result.products) == 2
    print("  ✓ test_broken_progress_callback_is_ignored")


def test_uzex_auction_uses_deep_scrape():
    image = ImagePart(mime_type="image/jpeg", data="/9j/")
    fetcher = FakeFetcher(deep=ScrapeResult(html="<html>lot</html>", file_text="Texnik topshiriq", images=[image]))
    client = _full_client()
    progress = []
    result = _pipeline(client, fetcher=fetcher).run(
        AnalysisRequest(url=LOT_URL, platform=TenderPlatform.UZEX, tender_type=TenderType.AUCTION),
        on_progress=progress.append,
    )

    assert fetcher.deep_scraped == [LOT_URL]
    assert fetcher.fetched == []
    assert result.source_identifier == LOT_URL
    assert [(p.stage, p.current) for p in progress[:2]] == [("scraping", 0), ("scraping", 1)]

    extraction_call = client.calls[0]
    assert PRIORITY_DOCUMENT_HEADER in extraction_call["prompt"]
    assert extraction_call["images"] == [image]
    print("  ✓ test_uzex_auction_uses_deep_scrape")


def test_other_platforms_fetch_the_page_only():
    fetcher = FakeFetcher(pages={"https://xt-xarid.uz/lot/9": "<html>Stol 10 dona</html>"})
    client = _full_client()
    _pipeline(client, fetcher=fetcher).run(
        AnalysisRequest(url="https://xt-xarid.uz/lot/9", platform=TenderPlatform.XT, tender_type=TenderType.SELECTION)
    )
    assert fetcher.deep_scraped == []
    assert fetcher.fetched == ["https://xt-xarid.uz/lot/9"]
    assert WEB_PAGE_HEADER in client.calls[0]["prompt"]
    print("  ✓ test_other_platforms_fetch_the_page_only")


def test_result_is_recorded_in_history():
    history = AnalysisHistory.in_memory()
    result = _pipeline(_full_client(), history=history).run(AnalysisRequest(content="doc"))
    items = history.list()
    assert len(items) == 1
    assert items[0].lot_id == result.lot_id
    assert items[0].status == "pending"
    print("  ✓ test_result_is_recorded_in_history")


def test_knowledge_base_reaches_extraction_and_synthesis():
    client = _full_client()
    kb = 'Summary of past purchases based on our contracts:\n- Product: "Midea 12", Supplier: "Artel", Unit Price: 4 900 000 UZS'
    _pipeline(client).run(AnalysisRequest(content="doc"), knowledge_base=kb)
    assert 'Supplier: "Artel"' in client.prompts(EXTRACT)[0]
    assert all('Supplier: "Artel"' in p for p in client.prompts(SYNTH))
    print("  ✓ test_knowledge_base_reaches_extraction_and_synthesis")


def test_assemble_content_priorities():
    both = assemble_content("FILE", "USER", "<html/>")
    assert both.startswith(PRIORITY_DOCUMENT_HEADER)
    assert "USER" not in both
    assert WEB_CONTEXT_HEADER in both

    user = assemble_content("", "USER", "")
    assert user == f"{USER_DOCUMENT_HEADER}\nUSER"

    page = assemble_content("", "", "<html/>")
    assert page == f"{WEB_PAGE_HEADER}\n<html/>"

    try:
        assemble_content("", "", "")
        raise AssertionError("expected AnalysisError")
    except AnalysisError:
        pass
    print("  ✓ test_assemble_content_priorities")


def run_all_tests():
    print("\n" + "=" * 60)
    print("  TenderHunter — Pipeline Tests")
    print("=" * 60 + "\n")

    tests = [
        test_document_run_end_to_end,
        test_service_lot_never_searches,
        test_zero_products_fails_the_run,
        test_request_without_content_or_url,
        test_unreachable_page_and_no_document,
        test_unparseable_extraction_fails_the_run,
        test_missing_search_key_fails_the_run,
        test_broken_progress_callback_is_ignored,
        test_uzex_auction_uses_deep_scrape,
        test_other_platforms_fetch_the_page_only,
        test_result_is_recorded_in_history,
        test_knowledge_base_reaches_extraction_and_synthesis,
        test_assemble_content_priorities,
    ]

    passed = 0
    failed = 0
    for test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as exc:
            failed += 1
            print(f"  ✗ {test_fn.__name__} FAILED: {exc}")

    print(f"\n{'=' * 60}")
    print(f"  Results: {passed} passed, {failed} failed, {len(tests)} total")
    print(f"{'=' * 60}\n")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
