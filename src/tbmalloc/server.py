from __future__ import annotations

import logging
import os
import time
import uuid
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import db
from .api_crud import router as crud_router
from .errors import PersistenceError, RunCancelled, StaleMaterializationError, WeightSumError
from .io import normalize_organization, normalize_period
from .pipeline import AllocationPipeline, authoritative_costs, reconciliation_status
from .roi import BenefitAssumptions, build_roi_snapshot
from .types import Stage

limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger("tbmalloc.api")

app = FastAPI(title="Cost Allocation API", version="0.1.0")
app.state.limiter = limiter

RUN_RATE_LIMIT = os.environ.get("PIPELINE_RUN_RATE_LIMIT", "30/minute")


def _request_id_from_request(request: Request) -> str:
    return getattr(request.state, "request_id", "") or request.headers.get("X-Request-ID", "")


def _http_error_code(status_code: int) -> str:
    return {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        422: "validation_error",
        429: "rate_limited",
        500: "internal_error",
        503: "service_unavailable",
    }.get(status_code, "http_error")


def _error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    detail: object,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error": {
                "code": code,
                "message": message,
                "request_id": _request_id_from_request(request),
            },
        },
    )


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_exception_handler(request: Request, _: RateLimitExceeded) -> JSONResponse:
    return _error_response(
        request,
        status_code=429,
        code="rate_limited",
        message="Rate limit exceeded",
        detail="Rate limit exceeded",
    )


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        message = str(detail.get("message") or detail.get("detail") or "Request failed")
    else:
        message = str(detail)
    return _error_response(
        request,
        status_code=exc.status_code,
        code=_http_error_code(exc.status_code),
        message=message,
        detail=detail,
    )


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(
        request,
        status_code=422,
        code="validation_error",
        message="Request validation failed",
        detail=[{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()],
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled server exception rid=%s method=%s path=%s",
        _request_id_from_request(request),
        request.method,
        request.url.path,
    )
    return _error_response(
        request,
        status_code=500,
        code="internal_error",
        message="Internal server error",
        detail="Internal server error",
    )


@app.middleware("http")
async def _request_context_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    response.headers["X-Request-ID"] = request.state.request_id
    logger.info(
        "%s %s -> %s in %.2fms rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.state.request_id,
    )
    return response


@app.on_event("startup")
def startup():
    """Initialize database tables on startup."""
    try:
        db.init_db()
    except Exception:
        logger.exception(
            "DB init failed during startup; DB-backed endpoints may fail until database is reachable"
        )


# ALLOWED_ORIGINS: comma-separated list of allowed origins for the dashboard UI.
_default_origins = "http://localhost:3000,http://127.0.0.1:3000"
_origins_env = os.environ.get("ALLOWED_ORIGINS", _default_origins)
_allowed_origins = [o.strip() for o in _origins_env.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(crud_router)


@app.get("/")
def root():
    return {"ok": True}


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/readyz")
def readyz():
    conn = None
    try:
        conn = db.get_connection()
        return {"ok": True}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {exc.__class__.__name__}") from exc
    finally:
        if conn is not None:
            conn.close()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    organization: str
    period: str
    force: bool = False


class RoiRequest(BaseModel):
    organization: str
    period: str
    revenue_uplift: Decimal = Field(default=Decimal("0"), ge=0)
    productivity_gain_hours: Decimal = Field(default=Decimal("0"), ge=0)
    avg_loaded_rate: Decimal = Field(default=Decimal("0"), ge=0)
    risk_avoided_value: Decimal = Field(default=Decimal("0"), ge=0)
    cost_avoided: Decimal = Field(default=Decimal("0"), ge=0)


def _keys(organization: str, period: str) -> tuple[str, str]:
    try:
        return normalize_organization(organization), normalize_period(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/pipeline/runs")
@limiter.limit(RUN_RATE_LIMIT)
def trigger_run(request: Request, body: RunRequest):
    organization, period = _keys(body.organization, body.period)
    conn = db.get_connection()
    try:
        summary = AllocationPipeline(conn).run(organization, period, force=body.force)
    except WeightSumError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict()) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=exc.to_dict()) from exc
    except RunCancelled as exc:
        raise HTTPException(status_code=409, detail=exc.to_dict()) from exc
    finally:
        conn.close()
    return summary.to_dict()


@app.get("/api/pipeline/status")
def pipeline_status(organization: str, period: str):
    organization, period = _keys(organization, period)
    conn = db.get_connection()
    try:
        out = reconciliation_status(conn, organization, period)
    finally:
        conn.close()
    if out is None:
        raise HTTPException(status_code=404, detail=f"No allocation run for {organization} {period}")
    return out


@app.get("/api/pipeline/runs")
def list_runs(organization: str, period: str | None = None):
    try:
        organization = normalize_organization(organization)
        period = normalize_period(period) if period else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    conn = db.get_connection()
    try:
        runs = db.list_runs(conn, organization, period)
    finally:
        conn.close()
    for run in runs:
        run["started_at"] = str(run["started_at"]) if run["started_at"] else None
        run["finished_at"] = str(run["finished_at"]) if run["finished_at"] else None
    return runs


@app.get("/api/pipeline/costs/{stage}")
def stage_costs(stage: Stage, organization: str, period: str):
    organization, period = _keys(organization, period)
    conn = db.get_connection()
    try:
        rows = authoritative_costs(conn, organization, period, stage)
    except StaleMaterializationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    finally:
        conn.close()
    return [r.to_dict() for r in rows]


@app.post("/api/roi/snapshot")
def roi_snapshot(body: RoiRequest):
    organization, period = _keys(body.organization, body.period)
    assumptions = BenefitAssumptions.from_mapping(body.model_dump(exclude={"organization", "period"}))
    conn = db.get_connection()
    try:
        snapshot = build_roi_snapshot(conn, organization, period, assumptions)
    except StaleMaterializationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    for key in ("total_cost", "total_benefit", "roi_pct"):
        snapshot[key] = str(snapshot[key])
    snapshot["created_at"] = str(snapshot["created_at"])
    return snapshot
