"""
test_suppliers.py — Per-product supplier orchestration.

Ordering, isolation, skipping unnamed products, query fan-out and the one
error that is allowed to abort the loop (no search key).

Run with:
    python tests/test_suppliers.py
    python -m pytest tests/test_suppliers.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fakes import NORMALIZE, QUERIES, SYNTH, FakeGenAI, FakeSearch, hit, raw_supplier
from tender_hunter.errors import SearchError, SearchUnavailableError
from tender_hunter.llm import GenAIClient, RateLimiter
from tender_hunter.schemas import Product
from tender_hunter.suppliers import SupplierFinder, dedupe_by_link


def _products(*names):
    return [Product(id=f"p{i}", name=name) for i, name in enumerate(names, start=1)]


def _queries_for(products):
    return [{"product_id": p.id, "queries": [f"{p.id} q{i}" for i in range(1, 6)]} for p in products]


def _synth_by_product(prompt):
    """One supplier per product, on that product's own search hit."""
    for line in prompt.splitlines():
        if line.startswith("- ID: "):
            pid = line[len("- ID: "):].strip()
            return [raw_supplier("supplier-1", f"https://shop.uz/{pid}", "1000 UZS")]
    return []


def _search_by_query(query):
    pid = query.split()[0]
    return [hit(f"https://shop.uz/{pid}")]


def test_output_order_matches_input():
    products = _products("Stol", "Stul", "Shkaf", "Lampa")
    client = (
        FakeGenAI()
        .on(NORMALIZE, [])
        .on(QUERIES, _queries_for(products))
        .on(SYNTH, _synth_by_product)
    )
    finder = SupplierFinder(client, FakeSearch(_search_by_query))
    out = finder.find_suppliers(products)
    assert [p.id for p in out] == [p.id for p in products]
    for product in out:
        assert product.suppliers[0].website == f"https://shop.uz/{product.id}"
    print("  ✓ test_output_order_matches_input")


def test_one_failing_product_does_not_stop_the_rest():
    products = _products("Stol", "Stul", "Shkaf")

    def search(query):
        if query.startswith("p2 "):
            raise RuntimeError("unexpected parser crash")
        return _search_by_query(query)

    def synth(prompt):
        if "- ID: p3" in prompt:
            raise RuntimeError("model exploded")
        return _synth_by_product(prompt)

    client = FakeGenAI().on(NORMALIZE, []).on(QUERIES, _queries_for(products)).on(SYNTH, synth)
    progress = []
    out = SupplierFinder(client, FakeSearch(search)).find_suppliers(
        products, on_progress=lambda c, t: progress.append((c, t))
    )
    assert len(out[0].suppliers) == 1
    assert out[1].suppliers == []
    assert out[2].suppliers == []
    assert progress == [(1, 3), (2, 3), (3, 3)]
    print("  ✓ test_one_failing_product_does_not_stop_the_rest")


def test_unnamed_products_are_skipped_without_calls():
    products = [Product(id="a", name="N/A"), Product(id="b"), Product(id="c", name="  ")]
    client = FakeGenAI()
    search = FakeSearch()
    progress = []
    out = SupplierFinder(client, search).find_suppliers(
        products, on_progress=lambda c, t: progress.append((c, t))
    )
    assert [p.id for p in out] == ["a", "b", "c"]
    assert all(p.suppliers == [] for p in out)
    assert client.calls == []
    assert search.queries == []
    assert progress[-1] == (3, 3)
    print("  ✓ test_unnamed_products_are_skipped_without_calls")


def test_mixed_named_and_unnamed():
    products = [Product(id="p1", name="Stol"), Product(id="p2", name="N/A")]
    client = (
        FakeGenAI()
        .on(NORMALIZE, [])
        .on(QUERIES, _queries_for(products[:1]))
        .on(SYNTH, _synth_by_product)
    )
    search = FakeSearch(_search_by_query)
    out = SupplierFinder(client, search).find_suppliers(products)
    assert len(out[0].suppliers) == 1
    assert out[1].suppliers == []
    assert all(q.startswith("p1 ") for q in search.queries)
    print("  ✓ test_mixed_named_and_unnamed")


def test_failed_queries_are_tolerated():
    products = _products("Stol")

    def search(query):
        if query.endswith(("q1", "q3")):
            raise SearchError("HTTP 500")
        return [hit(f"https://shop.uz/p1?{query[-2:]}")]

    seen_results = []

    def synth(prompt):
        seen_results.append(prompt.count("[SEARCH RESULT "))
        return []

    client = FakeGenAI().on(NORMALIZE, []).on(QUERIES, _queries_for(products)).on(SYNTH, synth)
    search_client = FakeSearch(search)
    SupplierFinder(client, search_client).find_suppliers(products)
    assert len(search_client.queries) == 5
    assert seen_results == [3]
    print("  ✓ test_failed_queries_are_tolerated")


def test_fallback_queries_when_none_generated():
    products = _products("Stol")
    client = (
        FakeGenAI()
        .on(NORMALIZE, [{"id": "p1", "uzbek_latin": "Ofis stoli", "russian_latin": "Stol", "english": "Desk"}])
        .on(QUERIES, [])
    )
    search = FakeSearch()
    SupplierFinder(client, search).find_suppliers(products)
    assert sorted(search.queries) == sorted(["Ofis stoli narxi O'zbekiston", "Ofis stoli купить в Ташкенте"])
    print("  ✓ test_fallback_queries_when_none_generated")


def test_no_results_skips_synthesis():
    products = _products("Stol")
    client = FakeGenAI().on(NORMALIZE, []).on(QUERIES, _queries_for(products))
    out = SupplierFinder(client, FakeSearch()).find_suppliers(products)
    assert out[0].suppliers == []
    assert client.count(SYNTH) == 0
    print("  ✓ test_no_results_skips_synthesis")


def test_missing_search_key_aborts():
    products = _products("Stol", "Stul")

    def search(query):
        raise SearchUnavailableError("SERPER_API_KEY is not set")

    client = FakeGenAI().on(NORMALIZE, []).on(QUERIES, _queries_for(products))
    try:
        SupplierFinder(client, FakeSearch(search)).find_suppliers(products)
        raise AssertionError("expected SearchUnavailableError")
    except SearchUnavailableError:
        pass
    print("  ✓ test_missing_search_key_aborts")


def test_progress_callback_errors_are_swallowed():
    products = _products("Stol")
    client = FakeGenAI().on(NORMALIZE, []).on(QUERIES, _queries_for(products))

    def broken(current, total):
        raise ValueError("UI went away")

    out = SupplierFinder(client, FakeSearch()).find_suppliers(products, on_progress=broken)
    assert len(out) == 1
    print("  ✓ test_progress_callback_errors_are_swallowed")


def test_research_single_product():
    product = Product(id="p7", name="Printer HP 107a")
    client = (
        FakeGenAI()
        .on(NORMALIZE, [])
        .on(QUERIES, _queries_for([product]))
        .on(SYNTH, _synth_by_product)
    )
    researched = SupplierFinder(client, FakeSearch(_search_by_query)).research_product(product)
    assert researched.id == "p7"
    assert researched.suppliers[0].website == "https://shop.uz/p7"
    print("  ✓ test_research_single_product")


class _Response:
    def __init__(self, text):
        self.text = text


class _RoutedModels:
    """SDK models stand-in: answers through a FakeGenAI and logs each call."""

    def __init__(self, fake, events):
        self.fake = fake
        self.events = events

    def generate_content(self, model, contents, config):
        prompt = contents[0]
        self.events.append(next(m for m in (NORMALIZE, QUERIES, SYNTH) if m in prompt))
        return _Response(self.fake.generate(prompt))


class _SDK:
    def __init__(self, models):
        self.models = models


class _StoppedClock:
    """Time only moves when someone sleeps."""

    def __init__(self, events):
        self.now = 0.0
        self.events = events

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.events.append(("wait", round(seconds, 6)))
        self.now += seconds


def test_model_calls_are_spaced_and_searches_are_not():
    products = _products("Stol", "Stul")
    events = []
    clock = _StoppedClock(events)
    fake = FakeGenAI().on(NORMALIZE, []).on(QUERIES, _queries_for(products)).on(SYNTH, _synth_by_product)
    client = GenAIClient(
        api_key="test",
        limiter=RateLimiter(4.1, clock=clock, sleep=clock.sleep),
        max_retries=1,
        sleep=clock.sleep,
    )
    client._client = _SDK(_RoutedModels(fake, events))

    def search(query):
        events.append("search")
        return _search_by_query(query)

    out = SupplierFinder(client, FakeSearch(search)).find_suppliers(products)
    assert [p.suppliers[0].website for p in out] == ["https://shop.uz/p1", "https://shop.uz/p2"]

    collapsed = []
    for event in events:
        if event == "search" and collapsed and collapsed[-1] == "search":
            continue
        collapsed.append(event)
    wait = ("wait", 4.1)
    assert collapsed == [
        NORMALIZE, wait, QUERIES,
        "search", wait, SYNTH,
        "search", wait, SYNTH,
    ], collapsed
    assert events.count("search") == 10
    print("  ✓ test_model_calls_are_spaced_and_searches_are_not")


def test_dedupe_keeps_first_occurrence():
    results = [hit("https://a.uz", "first"), hit("https://b.uz"), hit("https://a.uz", "second"), hit("")]
    unique = dedupe_by_link(results)
    assert [r.link for r in unique] == ["https://a.uz", "https://b.uz"]
    assert unique[0].title == "first"
    print("  ✓ test_dedupe_keeps_first_occurrence")


def run_all_tests():
    print("\n" + "=" * 60)
    print("  TenderHunter — Supplier Orchestration Tests")
    print("=" * 60 + "\n")

    tests = [
        test_output_order_matches_input,
        test_one_failing_product_does_not_stop_the_rest,
        test_unnamed_products_are_skipped_without_calls,
        test_mixed_named_and_unnamed,
        test_failed_queries_are_tolerated,
        test_fallback_queries_when_none_generated,
        test_no_results_skips_synthesis,
        test_missing_search_key_aborts,
        test_progress_callback_errors_are_swallowed,
        test_research_single_product,
        test_model_calls_are_spaced_and_searches_are_not,
        test_dedupe_keeps_first_occurrence,
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
