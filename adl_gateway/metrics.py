"""Prometheus metrics for the decision gateway.

Metrics goals:
- low-cardinality labels (node, autonomy level, outcome; never decision ids)
- internal observability for decisions, rewards, bandit picks, storage errors
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "adl_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "adl_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
DECISIONS_TOTAL = Counter(
    "adl_decisions_total",
    "Total decisions chained",
    ["node", "autonomy_level", "approved"],
)
DECISION_LATENCY_MS = Histogram(
    "adl_decision_latency_ms",
    "Decision latency in milliseconds, request start to chained record",
    buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
)
OUTCOMES_TOTAL = Counter(
    "adl_outcomes_total",
    "Total outcome reports",
)
REWARDS_TOTAL = Counter(
    "adl_rewards_total",
    "Rewards applied to variants",
    ["result"],
)
BANDIT_SELECTIONS_TOTAL = Counter(
    "adl_bandit_selections_total",
    "Variant picks by the Thompson sampler",
    ["variant"],
)
ERRORS_TOTAL = Counter(
    "adl_errors_total",
    "Errors returned to callers by code",
    ["code"],
)
LOCKDOWN_ACTIVE = Gauge(
    "adl_lockdown_active",
    "1 if storage lockdown is active",
)


def record_decision(node: str, autonomy_level: int, approved: bool, latency_ms: float) -> None:
    DECISIONS_TOTAL.labels(node=str(node), autonomy_level=str(autonomy_level), approved=str(bool(approved)).lower()).inc()
    DECISION_LATENCY_MS.observe(float(latency_ms))


def record_outcome(reward_result: str) -> None:
    OUTCOMES_TOTAL.inc()
    REWARDS_TOTAL.labels(result=str(reward_result)).inc()


def record_bandit_selection(variant: str) -> None:
    BANDIT_SELECTIONS_TOTAL.labels(variant=str(variant)).inc()


def record_error(code: str) -> None:
    ERRORS_TOTAL.labels(code=str(code)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    Disabled entirely with ADL_METRICS_ENABLED=0.
    """
    if not _env_bool("ADL_METRICS_ENABLED", True):
        return

    from fastapi import Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(
                time.perf_counter() - start
            )

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
