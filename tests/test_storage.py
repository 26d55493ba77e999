"""
test_storage.py — JSON stores, analysis history and dashboard KPIs.

Run with:
    python tests/test_storage.py
    python -m pytest tests/test_storage.py -v
"""

from __future__ import annotations

import json
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_hunter.schemas import AnalysisResult, Product, Supplier
from tender_hunter.storage import AnalysisHistory, JsonStore, _history_key


def _result(lot_id, suppliers_per_product=(1,)):
    products = [
        Product(
            id=f"p{i}", name=f"Item {i}",
            suppliers=[Supplier(id=f"s{j}", website=f"https://shop{j}.uz") for j in range(count)],
        )
        for i, count in enumerate(suppliers_per_product, start=1)
    ]
    return AnalysisResult(
        lot_id=lot_id, analysis_summary="ok", products=products, source_identifier="Uploaded Content"
    )


def test_store_survives_reload():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nested" / "records.json"
        store = JsonStore(path, key="id")
        store.append({"id": "a", "v": 1})
        store.append({"id": "b", "v": 2})
        store.append({"id": "a", "v": 3})
        store.update("b", {"v": 20})

        reloaded = JsonStore(path, key="id")
        assert [r["id"] for r in reloaded.list()] == ["b", "a"]
        assert reloaded.get("b")["v"] == 20
        assert reloaded.get("a")["v"] == 3
        assert not (path.parent / "records.json.tmp").exists()
    print("  ✓ test_store_survives_reload")


def test_store_remove_and_missing_keys():
    store = JsonStore(None, key="id")
    store.append({"id": "a"})
    assert store.remove("a")
    assert not store.remove("a")
    assert store.get("a") is None
    try:
        store.update("a", {"x": 1})
        raise AssertionError("expected KeyError")
    except KeyError:
        pass
    print("  ✓ test_store_remove_and_missing_keys")


def test_corrupt_store_starts_empty():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "history.json"
        path.write_text("{not json", encoding="utf-8")
        assert JsonStore(path, key="id").list() == []
        path.write_text(json.dumps({"id": "a"}), encoding="utf-8")
        assert JsonStore(path, key="id").list() == []
    print("  ✓ test_corrupt_store_starts_empty")


def test_history_newest_first_and_replaces_same_lot():
    history = AnalysisHistory.in_memory()
    history.record(_result("lot-1"), timestamp=1)
    history.record(_result("lot-2"), timestamp=2)
    history.record(_result("lot-1", (3,)), timestamp=3)
    items = history.list()
    assert [i.lot_id for i in items] == ["lot-1", "lot-2"]
    assert items[0].timestamp == 3
    assert len(items[0].analysis_result.products[0].suppliers) == 3
    print("  ✓ test_history_newest_first_and_replaces_same_lot")


def test_set_outcome():
    history = AnalysisHistory.in_memory()
    history.record(_result("lot-1"), timestamp=1)
    item = history.set_outcome("lot-1", "won", winning_bid=1_000_000, actual_cost=900_000, delivery_notes="On time")
    assert item.status == "won"
    stored = history.get("lot-1")
    assert stored.winning_bid == 1_000_000
    assert stored.delivery_notes == "On time"

    for bad in (("lot-1", "maybe"), ("lot-404", "won")):
        try:
            history.set_outcome(*bad)
            raise AssertionError(f"expected failure for {bad}")
        except (KeyError, ValueError):
            pass
    assert history.get("lot-1").status == "won"
    print("  ✓ test_set_outcome")


def test_update_result_keeps_outcome():
    history = AnalysisHistory.in_memory()
    history.record(_result("lot-1"), timestamp=1)
    history.set_outcome("lot-1", "lost")
    edited = _result("lot-1", (2,)).model_copy(update={"analysis_summary": "edited"})
    history.update_result(edited)
    stored = history.get("lot-1")
    assert stored.status == "lost"
    assert stored.analysis_result.analysis_summary == "edited"
    try:
        history.update_result(_result("lot-404"))
        raise AssertionError("expected KeyError")
    except KeyError:
        pass
    print("  ✓ test_update_result_keeps_outcome")


def test_dashboard_kpis():
    history = AnalysisHistory.in_memory()
    history.record(_result("lot-1", (2, 0)), timestamp=1)
    history.record(_result("lot-2", (1,)), timestamp=2)
    history.record(_result("lot-3", (3,)), timestamp=3)
    history.set_outcome("lot-1", "won", winning_bid=1000, actual_cost=800)
    history.set_outcome("lot-2", "won")
    history.set_outcome("lot-3", "lost")

    kpis = history.dashboard_kpis(total_contracts=4)
    assert kpis["total_analyses"] == 3
    assert kpis["total_contracts"] == 4
    assert kpis["won"] == 2 and kpis["lost"] == 1
    assert abs(kpis["win_rate"] - 200 / 3) < 1e-9
    # 6 suppliers over 4 products
    assert kpis["avg_suppliers_per_product"] == 1.5
    assert kpis["total_profit"] == 200
    assert kpis["avg_margin"] == 20
    print("  ✓ test_dashboard_kpis")


def test_empty_dashboard():
    kpis = AnalysisHistory.in_memory().dashboard_kpis()
    assert kpis["total_analyses"] == 0
    assert kpis["win_rate"] == 0.0
    assert kpis["avg_margin"] == 0.0
    print("  ✓ test_empty_dashboard")


def test_history_key_handles_bad_records():
    assert _history_key({"analysis_result": {"lot_id": "lot-9"}}) == "lot-9"
    assert _history_key({}) == "None"
    print("  ✓ test_history_key_handles_bad_records")


def run_all_tests():
    print("\n" + "=" * 60)
    print("  TenderHunter — Storage Tests")
    print("=" * 60 + "\n")

    tests = [
        test_store_survives_reload,
        test_store_remove_and_missing_keys,
        test_corrupt_store_starts_empty,
        test_history_newest_first_and_replaces_same_lot,
        test_set_outcome,
        test_update_result_keeps_outcome,
        test_dashboard_kpis,
        test_empty_dashboard,
        test_history_key_handles_bad_records,
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
