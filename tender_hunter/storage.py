"""
storage.py — JSON-file persistence for analysis history and contracts.

One file per collection, the whole list rewritten on every change. That is
plenty for the volumes involved (a few hundred lots per year per team) and
keeps the files readable and diffable. Writes go to a temp file first and
are swapped in with os.replace so a crash never leaves half a file behind.

A store created with path=None lives in memory only, which is what the
tests and one-off CLI runs use.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from tender_hunter.config import config
from tender_hunter.schemas import AnalysisHistoryItem, AnalysisResult

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
KeyFn = Callable[[Record], str]


class JsonStore:
    """
    A keyed list of JSON records.

    `key` is either a top-level field name or a function of the record.
    """

    def __init__(self, path: Optional[Union[str, Path]], key: Union[str, KeyFn]):
        self.path = Path(path) if path is not None else None
        self._key: KeyFn = key if callable(key) else (lambda r, field=key: str(r.get(field)))
        self._lock = threading.RLock()
        self._records: List[Record] = self._load()

    def _load(self) -> List[Record]:
        if self.path is None or not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            # A corrupt store should not take the app down with it; keep
            # the file for inspection and start empty.
            logger.error("Could not read %s, starting empty: %s", self.path, exc)
            return []
        if not isinstance(data, list):
            logger.error("%s does not hold a JSON list, starting empty", self.path)
            return []
        return [r for r in data if isinstance(r, dict)]

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._records, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def list(self) -> List[Record]:
        with self._lock:
            return [dict(r) for r in self._records]

    def get(self, key: str) -> Optional[Record]:
        with self._lock:
            for r in self._records:
                if self._key(r) == key:
                    return dict(r)
        return None

    def append(self, record: Record, prepend: bool = False) -> None:
        """Add a record, replacing any existing record with the same key."""
        with self._lock:
            key = self._key(record)
            self._records = [r for r in self._records if self._key(r) != key]
            if prepend:
                self._records.insert(0, dict(record))
            else:
                self._records.append(dict(record))
            self._save()

    def update(self, key: str, changes: Record) -> Record:
        """Shallow-merge `changes` into the record. KeyError if absent."""
        with self._lock:
            for index, r in enumerate(self._records):
                if self._key(r) == key:
                    updated = {**r, **changes}
                    self._records[index] = updated
                    self._save()
                    return dict(updated)
        raise KeyError(key)

    def remove(self, key: str) -> bool:
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if self._key(r) != key]
            removed = len(self._records) != before
            if removed:
                self._save()
            return removed


class AnalysisHistory:
    """
    Past analyses, newest first, plus the bid outcome for each.

    Usage:
        history = AnalysisHistory.default()
        history.record(result)
        history.set_outcome(result.lot_id, "won", winning_bid=..., actual_cost=...)
    """

    def __init__(self, store: JsonStore):
        self.store = store

    @classmethod
    def default(cls) -> "AnalysisHistory":
        path = config.storage.data_dir / config.storage.history_file
        return cls(JsonStore(path, key=_history_key))

    @classmethod
    def in_memory(cls) -> "AnalysisHistory":
        return cls(JsonStore(None, key=_history_key))

    def record(self, result: AnalysisResult, timestamp: Optional[int] = None) -> AnalysisHistoryItem:
        item = AnalysisHistoryItem(
            analysis_result=result,
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        )
        self.store.append(item.model_dump(mode="json"), prepend=True)
        logger.info("History: recorded %s", result.lot_id)
        return item

    def set_outcome(
        self,
        lot_id: str,
        status: str,
        winning_bid: Optional[float] = None,
        actual_cost: Optional[float] = None,
        delivery_notes: Optional[str] = None,
    ) -> AnalysisHistoryItem:
        changes: Record = {"status": status}
        if winning_bid is not None:
            changes["winning_bid"] = winning_bid
        if actual_cost is not None:
            changes["actual_cost"] = actual_cost
        if delivery_notes is not None:
            changes["delivery_notes"] = delivery_notes
        # Validate before writing so a bad status never reaches the file.
        current = self.store.get(lot_id)
        if current is None:
            raise KeyError(lot_id)
        item = AnalysisHistoryItem.model_validate({**current, **changes})
        self.store.update(lot_id, item.model_dump(mode="json"))
        return item

    def update_result(self, result: AnalysisResult) -> AnalysisHistoryItem:
        """Store an edited result (review edits, re-research) under its lot id."""
        current = self.store.get(result.lot_id)
        if current is None:
            raise KeyError(result.lot_id)
        item = AnalysisHistoryItem.model_validate(
            {**current, "analysis_result": result.model_dump(mode="json")}
        )
        self.store.update(result.lot_id, item.model_dump(mode="json"))
        return item

    def get(self, lot_id: str) -> Optional[AnalysisHistoryItem]:
        record = self.store.get(lot_id)
        return AnalysisHistoryItem.model_validate(record) if record else None

    def remove(self, lot_id: str) -> bool:
        return self.store.remove(lot_id)

    def list(self) -> List[AnalysisHistoryItem]:
        return [AnalysisHistoryItem.model_validate(r) for r in self.store.list()]

    def dashboard_kpis(self, total_contracts: int = 0) -> Dict[str, float]:
        return dashboard_kpis(self.list(), total_contracts)


def dashboard_kpis(items: List[AnalysisHistoryItem], total_contracts: int = 0) -> Dict[str, float]:
    """
    Headline numbers for the dashboard.

    Profit and margin only count won lots that have both a winning bid and
    an actual cost filled in; everything else would skew the average.
    """
    won = [i for i in items if i.status == "won"]
    lost = [i for i in items if i.status == "lost"]
    decided = len(won) + len(lost)

    product_count = 0
    supplier_count = 0
    for item in items:
        for product in item.analysis_result.products:
            product_count += 1
            supplier_count += len(product.suppliers)

    revenue = 0.0
    profit = 0.0
    for item in won:
        if item.winning_bid is not None and item.actual_cost is not None:
            revenue += item.winning_bid
            profit += item.winning_bid - item.actual_cost

    return {
        "total_analyses": len(items),
        "total_contracts": total_contracts,
        "won": len(won),
        "lost": len(lost),
        "win_rate": (len(won) / decided * 100) if decided else 0.0,
        "avg_suppliers_per_product": (supplier_count / product_count) if product_count else 0.0,
        "total_profit": profit,
        "avg_margin": (profit / revenue * 100) if revenue else 0.0,
    }


def _history_key(record: Record) -> str:
    return str((record.get("analysis_result") or {}).get("lot_id"))
