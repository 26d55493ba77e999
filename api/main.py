from fastapi import FastAPI, UploadFile, File, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import threading, time, uuid

from tender_hunter.bidding import get_bid_recommendation
from tender_hunter.contracts import KnowledgeBase
from tender_hunter.errors import BidRecommendationError, DocumentError, SearchError
from tender_hunter.ingestion import extract_text_from_bytes, image_bytes_to_part
from tender_hunter.main import TenderAnalysisPipeline
from tender_hunter.quick_search import perform_quick_search
from tender_hunter.review import add_supplier, apply_research, update_product, update_supplier
from tender_hunter.schemas import (
    AdditionalCosts, AnalysisProgress, AnalysisRequest, Language, Product, Supplier,
    TenderPlatform, TenderType,
)
from tender_hunter.storage import AnalysisHistory

app = FastAPI(title="TenderHunter")
app.add_middleware(CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"], allow_headers=["*"])

jobs = {}  # job_id -> {status, progress, message, lot_id, result}
_lock = threading.Lock()
_services: Dict[str, Any] = {}


def services() -> Dict[str, Any]:
    # Built on first use so importing the app never needs API keys.
    with _lock:
        if not _services:
            history = AnalysisHistory.default()
            pipeline = TenderAnalysisPipeline(history=history)
            _services["history"] = history
            _services["pipeline"] = pipeline
            _services["kb"] = KnowledgeBase.default(pipeline.client)
        return _services


# ── Analysis jobs ─────────────────────────────────────────────────────────

@app.post("/analyze")
async def analyze(
    url: Optional[str] = Form(None),
    platform: TenderPlatform = Form(TenderPlatform.UZEX),
    tender_type: TenderType = Form(TenderType.AUCTION),
    ui_language: Language = Form("ru"),
    file: Optional[UploadFile] = File(None),
    images: Optional[List[UploadFile]] = File(None),
):
    content = None
    file_name = None
    try:
        if file is not None:
            file_name = file.filename
            content = extract_text_from_bytes(await file.read(), file.filename or "upload.txt")
        image_parts = [image_bytes_to_part(await img.read(), img.filename or "image") for img in images or []]
    except DocumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    request = AnalysisRequest(
        platform=platform, tender_type=tender_type, url=url or None,
        content=content, file_name=file_name, images=image_parts, ui_language=ui_language,
    )
    job_id = str(uuid.uuid4())[:8]
    jobs[job_id] = {
        "status": "queued", "progress": None,
        "message": "Queued", "source": url or file_name,
        "job_id": job_id, "lot_id": None, "result": None,
    }
    thread = threading.Thread(target=run_pipeline_sync, args=(job_id, request), daemon=True)
    thread.start()
    return {"job_id": job_id}


def run_pipeline_sync(job_id: str, request: AnalysisRequest):
    job = jobs[job_id]

    def update(progress: AnalysisProgress):
        job["status"] = "running"
        job["progress"] = progress.model_dump()
        job["message"] = f"{progress.stage} {progress.current}/{progress.total}"

    try:
        svc = services()
        knowledge_base = svc["kb"].aggregated_content() or None
        result = svc["pipeline"].run(request, on_progress=update, knowledge_base=knowledge_base)
        job["status"] = "done"
        job["lot_id"] = result.lot_id
        job["result"] = result.model_dump(mode="json")
        job["message"] = f"Complete — {len(result.products)} products"
    except Exception as e:
        job["status"] = "error"
        job["message"] = str(e)


@app.get("/jobs/{job_id}/status")
def get_status(job_id: str):
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="not found")
    return {k: v for k, v in jobs[job_id].items() if k != "result"}


@app.get("/jobs/{job_id}/result")
def get_result(job_id: str):
    job = jobs.get(job_id)
    if not job or job["status"] != "done":
        raise HTTPException(status_code=404, detail="not ready")
    return job["result"]


@app.get("/jobs")
def list_jobs():
    return [{k: v for k, v in job.items() if k != "result"} for job in jobs.values()]


@app.delete("/jobs/{job_id}")
def delete_job(job_id: str):
    jobs.pop(job_id, None)
    return {"deleted": job_id}


# ── Review edits on a stored result ───────────────────────────────────────

def _stored_result(lot_id: str):
    item = services()["history"].get(lot_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Unknown lot {lot_id}")
    return item.analysis_result


def _save(result):
    services()["history"].update_result(result)
    return result.model_dump(mode="json")


class ProductEdit(BaseModel):
    changes: Dict[str, Any] = Field(default_factory=dict)


@app.patch("/history/{lot_id}/products/{product_id}")
def edit_product(lot_id: str, product_id: str, body: ProductEdit):
    try:
        result = update_product(_stored_result(lot_id), product_id, body.changes)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _save(result)


@app.patch("/history/{lot_id}/products/{product_id}/suppliers/{supplier_id}")
def edit_supplier(lot_id: str, product_id: str, supplier_id: str, body: ProductEdit):
    try:
        result = update_supplier(_stored_result(lot_id), product_id, supplier_id, body.changes)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _save(result)


@app.post("/history/{lot_id}/products/{product_id}/suppliers")
def create_supplier(lot_id: str, product_id: str, supplier: Supplier):
    try:
        result = add_supplier(_stored_result(lot_id), product_id, supplier.model_dump(exclude={"id"}))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _save(result)


@app.post("/history/{lot_id}/products/{product_id}/research")
def research(lot_id: str, product_id: str):
    result = _stored_result(lot_id)
    product = next((p for p in result.products if p.id == product_id), None)
    if product is None:
        raise HTTPException(status_code=404, detail=f"Unknown product id: {product_id}")
    svc = services()
    try:
        researched = svc["pipeline"].research_product(product, svc["kb"].aggregated_content() or None)
    except SearchError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _save(apply_research(result, researched))


# ── Bid recommendation ────────────────────────────────────────────────────

class SelectedItem(BaseModel):
    product: Product
    supplier: Supplier


class BidRequest(BaseModel):
    selected: List[SelectedItem]
    costs: AdditionalCosts = Field(default_factory=AdditionalCosts)
    tender_content: Optional[str] = None
    language: Language = "ru"


@app.post("/bid")
def bid(body: BidRequest):
    pairs = [(item.product, item.supplier) for item in body.selected]
    try:
        recommendation = get_bid_recommendation(
            services()["pipeline"].client, pairs, body.costs, body.tender_content, body.language
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except BidRecommendationError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return recommendation.model_dump()


# ── Knowledge base ────────────────────────────────────────────────────────

@app.post("/contracts")
async def upload_contract(file: UploadFile = File(...)):
    try:
        text = extract_text_from_bytes(await file.read(), file.filename or "contract.txt")
    except DocumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    contract_id = f"{file.filename}-{int(time.time() * 1000)}"
    services()["kb"].add_contract(file.filename or contract_id, text, contract_id)
    return {"contract_id": contract_id, "status": "pending"}


@app.get("/contracts")
def list_contracts():
    return [c.model_dump(exclude={"content"}) for c in services()["kb"].list_contracts()]


@app.delete("/contracts/{contract_id}")
def delete_contract(contract_id: str):
    return {"deleted": services()["kb"].remove_contract(contract_id)}


# ── History & dashboard ───────────────────────────────────────────────────

class OutcomeUpdate(BaseModel):
    status: str
    winning_bid: Optional[float] = None
    actual_cost: Optional[float] = None
    delivery_notes: Optional[str] = None


@app.get("/history")
def list_history():
    return [item.model_dump(mode="json") for item in services()["history"].list()]


@app.patch("/history/{lot_id}")
def set_outcome(lot_id: str, body: OutcomeUpdate):
    try:
        item = services()["history"].set_outcome(lot_id, **body.model_dump())
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown lot {lot_id}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return item.model_dump(mode="json")


@app.delete("/history/{lot_id}")
def delete_history(lot_id: str):
    return {"deleted": services()["history"].remove(lot_id)}


@app.get("/dashboard")
def dashboard():
    svc = services()
    return svc["history"].dashboard_kpis(total_contracts=len(svc["kb"].list_contracts()))


# ── Quick search ──────────────────────────────────────────────────────────

@app.get("/quick-search")
def quick_search(q: str):
    svc = services()
    try:
        results = perform_quick_search(svc["pipeline"].client, svc["pipeline"].search_client, q)
    except SearchError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return [r.model_dump() for r in results]
