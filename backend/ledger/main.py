from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone

from .config import settings
from .db import close_pool, get_conn
from .errors import (
    BalanceError,
    LedgerError,
    NotFoundError,
    ResolutionError,
    SchemaCapabilityError,
    TransactionError,
    ValidationError,
)
from .jobs import InMemoryJobStore
from .logs import json_log
from .routers.imports import router as imports_router
from .routers.journal_entries import router as journal_entries_router
from .routers.metrics import router as metrics_router
from .schema import get_schema

app = FastAPI(title="Fund Ledger API", version=settings.api_version)
app.state.job_store = InMemoryJobStore()
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


_STATUS = (
    (BalanceError, 400),
    (ValidationError, 400),
    (ResolutionError, 422),
    (NotFoundError, 404),
    (SchemaCapabilityError, 500),
    (TransactionError, 503),
)


@app.exception_handler(LedgerError)
def _ledger_error(req: Request, exc: LedgerError):
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
    content = exc.to_dict()
    if isinstance(exc, SchemaCapabilityError):
        # Operators need to tell "your data is wrong" from "this install is incompatible".
        content = {"error": exc.kind, "detail": "schema incompatible", "capability": exc.capability}
        json_log("error", "ledger.schema.incompatible", request_id=_current_request_id(req), capability=exc.capability, error=exc.detail)
    elif isinstance(exc, TransactionError):
        json_log("error", "ledger.transaction.failed", request_id=_current_request_id(req), error=exc.detail)
        if not settings.expose_errors:
            content = {"error": exc.kind, "detail": "transaction rolled back"}
    return JSONResponse(status_code=status, content=content)


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    content = {"detail": "invalid value"}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    content = {"detail": "invalid reference"}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    content = {"detail": "conflict"}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    content = {"detail": "constraint violation"}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.expose_errors and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    if path != "/health":
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(journal_entries_router)
app.include_router(imports_router)
app.include_router(metrics_router)


@app.get("/health")
def health():
    return {
        "ok": True,
        "version": settings.api_version,
        "env": settings.env,
        "started_at": STARTED_AT_UTC.isoformat(),
    }


@app.get("/health/schema")
def health_schema():
    # Forces a fresh catalog read, e.g. after a migration.
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"ok": True, "schema": get_schema(cur, refresh=True).summary()}


@app.on_event("shutdown")
def _shutdown():
    close_pool()
