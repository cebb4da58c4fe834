from typing import Any, List

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import settings
from ..db import get_conn
from ..deps import get_job_store, get_owner
from ..errors import LedgerError
from ..importers.accounts_csv import import_accounts_csv
from ..importers.batched_payments import (
    PaymentMapping,
    import_batched_payments,
    parse_payments_csv,
    suggest_payment_mapping,
)
from ..jobs import JobStore
from ..logs import json_log

router = APIRouter(prefix="/imports", tags=["imports"])

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


async def _read_text(file: UploadFile) -> str:
    raw = await file.read()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="file too large")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Spreadsheet exports from older tools are often cp1252.
        return raw.decode("latin-1")


@router.post("/accounts")
async def import_accounts(file: UploadFile = File(...), dry_run: bool = Query(default=False)):
    text = await _read_text(file)
    with get_conn() as conn:
        result = import_accounts_csv(conn, text, dry_run=dry_run)
    return JSONResponse(status_code=200 if result.ok else 400, content=result.to_dict())


@router.post("/payments/analyze")
async def analyze_payments(file: UploadFile = File(...)):
    headers, rows = parse_payments_csv(await _read_text(file))
    return {
        "headers": headers,
        "suggested_mapping": suggest_payment_mapping(headers),
        "record_count": len(rows),
        "sample": rows[:5],
    }


class PaymentsImportIn(BaseModel):
    rows: List[dict[str, Any]]
    mapping: PaymentMapping


def _run_payments_job(store: JobStore, job_id: str, rows: list, mapping: PaymentMapping, owner: str) -> None:
    store.start(job_id)
    try:
        with get_conn() as conn:
            result = import_batched_payments(conn, rows, mapping, created_by=owner, import_id=job_id)
    except LedgerError as exc:
        store.fail(job_id, exc.detail)
        return
    except Exception as exc:
        json_log("error", "ledger.import.payments.crashed", job_id=job_id, error=str(exc))
        store.fail(job_id, "internal error" if not settings.expose_errors else str(exc))
        return
    store.complete(job_id, result.to_dict())


@router.post("/payments", status_code=202)
def import_payments(
    data: PaymentsImportIn,
    background: BackgroundTasks,
    store: JobStore = Depends(get_job_store),
    owner: str = Depends(get_owner),
):
    if not data.rows:
        raise HTTPException(status_code=400, detail="no rows provided")
    if len(data.rows) > settings.import_max_rows:
        raise HTTPException(status_code=400, detail=f"too many rows (max {settings.import_max_rows})")
    job = store.create("payments", owner)
    background.add_task(_run_payments_job, store, job.id, data.rows, data.mapping, owner)
    return {"id": job.id, "state": job.state.value}


@router.get("/jobs/{job_id}")
def job_status(job_id: str, store: JobStore = Depends(get_job_store), owner: str = Depends(get_owner)):
    return store.get(job_id, owner).to_dict()
