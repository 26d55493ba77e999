"""
contracts.py — Past contracts as a knowledge base.

Every signed contract we upload is run through the model once to pull out
customer, supplier, total value and the product lines with unit prices.
The product lines are then fed back into extraction and supplier synthesis
as "what we paid last time", which is the best price sanity check we have.

Each contract record carries its own status:

    pending  -> analysis submitted, not finished
    done     -> details available
    error    -> analysis failed, `error` says why

Analyses run on an executor and add_contract() hands back the Future, so
callers can wait on one contract, all of them, or just poll list_contracts().
Only finished records are persisted; a pending one is lost on restart and
simply has to be uploaded again.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from tender_hunter.config import config
from tender_hunter.errors import ContractAnalysisError
from tender_hunter.ingestion import extract_text
from tender_hunter.llm import parse_json_output
from tender_hunter.schemas import Contract, ContractDetails
from tender_hunter.storage import JsonStore

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_TITLE = "Summary of past purchases based on our contracts:"

CONTRACT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "customer": {"type": "STRING", "description": "The buyer (заказчик, xaridor)."},
        "supplier": {"type": "STRING", "description": "The seller (поставщик, yetkazib beruvchi)."},
        "total_value": {"type": "STRING", "description": "Total contract value with currency, or 'N/A'."},
        "products": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "quantity": {"type": "NUMBER"},
                    "unit_price": {"type": "STRING", "description": "Price per unit with currency."},
                },
                "required": ["name", "quantity", "unit_price"],
            },
        },
    },
    "required": ["customer", "supplier", "total_value", "products"],
}

CONTRACT_PROMPT = """You are a highly specialised contract analysis AI. Extract structured data from the contract text below.
Identify the key parties and the COMPLETE list of goods/services with quantities and unit prices.
Respond with a single valid JSON object following the schema. No other text, no markdown. Start with `{{`.

**Contract text:**
---
{content}
---"""


class ContractAnalyzer:
    """One model call per contract text."""

    def __init__(self, client):
        self.client = client

    def analyze(self, content: str) -> ContractDetails:
        if not content or not content.strip():
            raise ValueError("Contract content is empty.")
        try:
            raw = self.client.generate(
                CONTRACT_PROMPT.format(content=content), response_schema=CONTRACT_SCHEMA
            )
            if not raw or not raw.strip():
                raise ValueError("Contract analysis returned an empty response.")
            parsed = parse_json_output(raw)
            if not isinstance(parsed, dict):
                raise ValueError("Failed to parse structured contract details from the response.")
            return ContractDetails.model_validate(parsed)
        except (ValueError, ValidationError) as exc:
            raise ContractAnalysisError(f"AI analysis of the contract failed. Details: {exc}") from exc
        except ContractAnalysisError:
            raise
        except Exception as exc:
            raise ContractAnalysisError(f"AI analysis of the contract failed. Details: {exc}") from exc


class KnowledgeBase:
    """
    Contract records plus the aggregated text the prompts consume.

    Usage:
        kb = KnowledgeBase(ContractAnalyzer(client), store=JsonStore(path, key="id"))
        kb.add_contract("dogovor-12.pdf", text)
        kb.wait_all()
        kb.aggregated_content()
    """

    def __init__(
        self,
        analyzer: ContractAnalyzer,
        store: Optional[JsonStore] = None,
        executor: Optional[Executor] = None,
    ):
        self.analyzer = analyzer
        self.store = store
        # One worker: analyses go through the same rate-limited client anyway.
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="contracts")
        self._lock = threading.Lock()
        self._contracts: Dict[str, Contract] = {}
        self._futures: Dict[str, Future] = {}

        if store is not None:
            for record in store.list():
                try:
                    contract = Contract.model_validate(record)
                except ValidationError as exc:
                    logger.warning("Skipping unreadable stored contract: %s", exc)
                    continue
                self._contracts[contract.id] = contract

    @classmethod
    def default(cls, client) -> "KnowledgeBase":
        path = config.storage.data_dir / config.storage.contracts_file
        return cls(ContractAnalyzer(client), store=JsonStore(path, key="id"))

    def add_contract(
        self,
        file_name: str,
        content: str,
        contract_id: Optional[str] = None,
    ) -> Optional[Future]:
        """
        Register a contract as pending and submit its analysis.

        Returns the Future, or None when a contract with this id exists.
        """
        contract_id = contract_id or f"{file_name}-{uuid.uuid4().hex[:8]}"
        with self._lock:
            if contract_id in self._contracts:
                logger.info("Contract %s already in the knowledge base", contract_id)
                return None
            self._contracts[contract_id] = Contract(
                id=contract_id, file_name=file_name, content=content, status="pending"
            )
        future = self._executor.submit(self._analyze, contract_id, content)
        with self._lock:
            self._futures[contract_id] = future
        future.add_done_callback(lambda f, cid=contract_id: self._forget(cid, f))
        return future

    def _forget(self, contract_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(contract_id) is future:
                del self._futures[contract_id]

    def add_file(self, file_path: Union[str, Path], contract_id: Optional[str] = None) -> Optional[Future]:
        """Extract a contract document's text and add it."""
        path = Path(file_path)
        return self.add_contract(path.name, extract_text(path), contract_id)

    def _analyze(self, contract_id: str, content: str) -> Contract:
        try:
            details = self.analyzer.analyze(content)
            changes = {"details": details, "status": "done", "error": None}
            logger.info("Contract %s analysed: %d product lines", contract_id, len(details.products))
        except Exception as exc:
            logger.error("Failed to process contract %s: %s", contract_id, exc)
            changes = {"status": "error", "error": str(exc)}

        with self._lock:
            current = self._contracts.get(contract_id)
            if current is None:
                # Removed while the analysis was running.
                return Contract(id=contract_id, file_name="", status="error", error="removed")
            finished = current.model_copy(update=changes)
            self._contracts[contract_id] = finished
            if self.store is not None:
                self.store.append(finished.model_dump(mode="json"))
        return finished

    def remove_contract(self, contract_id: str) -> bool:
        with self._lock:
            existed = self._contracts.pop(contract_id, None) is not None
            self._futures.pop(contract_id, None)
        if self.store is not None:
            self.store.remove(contract_id)
        return existed

    def get(self, contract_id: str) -> Optional[Contract]:
        with self._lock:
            return self._contracts.get(contract_id)

    def list_contracts(self) -> List[Contract]:
        with self._lock:
            return list(self._contracts.values())

    def wait_all(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            pending = list(self._futures.values())
        if pending:
            wait(pending, timeout=timeout)

    def aggregated_content(self) -> str:
        """Past purchase lines from finished contracts, or "" when there are none."""
        lines = []
        for contract in self.list_contracts():
            if contract.status != "done" or contract.details is None:
                continue
            for product in contract.details.products:
                lines.append(
                    f'- Product: "{product.name}", Supplier: "{contract.details.supplier}", '
                    f"Unit Price: {product.unit_price}"
                )
        if not lines:
            return ""
        return KNOWLEDGE_BASE_TITLE + "\n" + "\n".join(lines)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
