"""
ADL Gateway Server

FastAPI transport for the decision service.

- POST /v1/decisions/{node}           decide and chain
- POST /v1/outcomes/{decision_id}     report (upsert) an outcome, apply reward
- GET  /v1/outcomes/{decision_id}     read an outcome
- POST /v1/events                     record a business event
- GET  /v1/chain/verify               walk and recompute the decision chain
- GET  /v1/chain/head                 current head, optionally a signed anchor
- GET  /v1/stats                      in-memory operational counters
- GET  /v1/health                     liveness
- GET  /metrics                       Prometheus exposition

Every response carries an `X-Cid` header: the caller's correlation id, or a
fresh one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import ADLError, ADL_E_BAD_REQUEST, ADL_E_INTERNAL, ADL_E_LOCKDOWN_ACTIVE
from .metrics import instrument_fastapi, record_error, set_lockdown_active
from .ops_stats import OPS_STATS
from .service import DecisionService

logger = logging.getLogger("adl_gateway")

CID_HEADER = "X-Cid"


# ---------------------------
# Request Models
# ---------------------------

class DecisionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    policy_version: Optional[str] = None


class OutcomeRequest(BaseModel):
    metrics: Dict[str, Any]
    correlation_id: Optional[str] = None


class EventRequest(BaseModel):
    type: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None


def _error_response(exc: ADLError, cid: Optional[str]) -> JSONResponse:
    status = int(exc.http_status or 400)
    # Details only for client errors; server-side causes stay in the log.
    content = exc.as_dict(include_details=status < 500)
    headers = {CID_HEADER: cid} if cid else None
    return JSONResponse(status_code=status, content=content, headers=headers)


def create_app(service: Optional[DecisionService] = None) -> FastAPI:
    """Create the FastAPI application. Builds a service from the environment if none is given."""
    from . import __version__ as adl_version

    if service is None:
        service = DecisionService.from_env()

    app = FastAPI(
        title="ADL Gateway",
        description="Autonomy Decision Ledger - policy-governed decisions with a hash-chained audit trail",
        version=adl_version,
    )
    app.state.service = service

    @app.exception_handler(ADLError)
    async def _adl_error_handler(request: Request, exc: ADLError):
        record_error(exc.code)
        OPS_STATS.record_error(exc.code)
        if exc.code == ADL_E_LOCKDOWN_ACTIVE:
            OPS_STATS.record_storage_lockdown()
            set_lockdown_active(True)
        return _error_response(exc, getattr(request.state, "cid", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        err = ADLError(
            code=ADL_E_BAD_REQUEST,
            message="request validation failed",
            http_status=400,
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        )
        record_error(err.code)
        OPS_STATS.record_error(err.code)
        return _error_response(err, getattr(request.state, "cid", None))

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception):
        cid = getattr(request.state, "cid", None)
        logger.exception("unhandled error on %s %s cid=%s", request.method, request.url.path, cid)
        record_error(ADL_E_INTERNAL)
        OPS_STATS.record_error(ADL_E_INTERNAL)
        return _error_response(ADLError(code=ADL_E_INTERNAL, message="internal error", http_status=500), cid)

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("ADL_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + correlation id
    # ---------------------------
    max_request_bytes = service.settings.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        try:
            cl = req.headers.get("content-length")
            if cl is not None and int(cl) > max_request_bytes:
                return JSONResponse(status_code=413, content={"code": ADL_E_BAD_REQUEST, "message": "REQUEST_TOO_LARGE", "retryable": False})
        except ValueError:
            return JSONResponse(status_code=400, content={"code": ADL_E_BAD_REQUEST, "message": "BAD_CONTENT_LENGTH", "retryable": False})
        return await call_next(req)

    @app.middleware("http")
    async def _correlation_id(req: Request, call_next):
        cid = (req.headers.get(CID_HEADER) or "").strip() or str(uuid.uuid4())
        req.state.cid = cid
        response = await call_next(req)
        response.headers[CID_HEADER] = cid
        return response

    # ---------------------------
    # Decisions and outcomes
    # ---------------------------

    @app.post("/v1/decisions/{node}", status_code=201)
    async def make_decision(node: str, body: DecisionRequest, request: Request):
        cid = body.correlation_id or request.state.cid
        return await service.make_decision(
            node,
            body.action,
            body.data,
            correlation_id=cid,
            policy_version=body.policy_version,
        )

    @app.post("/v1/outcomes/{decision_id}", status_code=201)
    async def record_outcome(decision_id: str, body: OutcomeRequest, request: Request):
        cid = body.correlation_id or request.state.cid
        return await service.record_outcome(decision_id, body.metrics, correlation_id=cid)

    @app.get("/v1/outcomes/{decision_id}")
    async def get_outcome(decision_id: str):
        return await service.get_outcome(decision_id)

    @app.post("/v1/events", status_code=201)
    async def record_event(body: EventRequest, request: Request):
        cid = body.correlation_id or request.state.cid
        return await _run(service.record_event, body.type, body.actor, body.payload, cid)

    # ---------------------------
    # Chain audit
    # ---------------------------

    @app.get("/v1/chain/verify")
    async def verify_chain():
        return await _run(service.verify_chain)

    @app.get("/v1/chain/head")
    async def chain_head():
        return await _run(service.chain_head)

    # ---------------------------
    # Stats + health
    # ---------------------------
    stats_token = (os.getenv("ADL_STATS_TOKEN", "") or "").strip()
    raw_require = os.getenv("ADL_STATS_REQUIRE_AUTH")
    if raw_require is None:
        stats_require_auth = service.settings.is_prod
    else:
        stats_require_auth = str(raw_require).strip().lower() in ("1", "true", "yes", "on")

    def _authorize_stats(req: Request) -> bool:
        # Auth required but no token configured: deny.
        if stats_require_auth and not stats_token:
            return False
        if not stats_require_auth:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == stats_token

    @app.get("/v1/stats")
    async def stats(request: Request):
        if not _authorize_stats(request):
            return JSONResponse(
                status_code=401,
                content={"code": "ADL_E_UNAUTHORIZED", "message": "STATS_UNAUTHORIZED", "retryable": False},
            )
        lockdown = service.store.circuit.is_lockdown_active()
        set_lockdown_active(lockdown)
        return OPS_STATS.snapshot(extra={"lockdown_active": lockdown})

    @app.get("/v1/health")
    async def health_check(request: Request):
        return {"ok": True, "correlation_id": request.state.cid, "version": adl_version}

    return app


async def _run(fn, *args):
    return await asyncio.to_thread(fn, *args)


def main():
    """
    Main entry point for the adl-gateway command.

    Usage:
        adl-gateway                    # Start on default port 8000
        adl-gateway --port 9000        # Start on custom port
        adl-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="ADL Gateway - policy-governed decision service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    ADL_DB_PATH                   Path to SQLite database (default: adl_ledger.db)
    ADL_REQUEST_TIMEOUT_SECONDS   Decision deadline (default: 5)
    ADL_POLICY_CACHE_TTL_SECONDS  Policy cache TTL (default: 60)
    ADL_BANDIT_ENABLED            Route among published policy versions (default: 1)
    ADL_ANCHOR_SIGNING_KEY        Hex Ed25519 seed for signed chain-head anchors
    ADL_ENV                       'prod' makes /v1/stats require ADL_STATS_TOKEN
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    print(f"Starting ADL Gateway on {args.host}:{args.port}")
    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level, proxy_headers=args.proxy_headers)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
