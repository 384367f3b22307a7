"""
Exception handlers for admission denials and persistence failures.

Usage:
    from src.utils.error_handlers import register_exception_handlers

    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.config.tiers import tier_policy
from src.services.prometheus_metrics import rate_limited_requests
from src.utils.exceptions import (
    AbuseDetected,
    CapacityExceeded,
    PersistenceError,
    QuotaExceeded,
    error_body,
)

logger = logging.getLogger(__name__)

CAPACITY_MESSAGE = "Service temporarily at capacity. Please try again later."
ABUSE_MESSAGE = "Too many requests from your IP. Please try again later."
QUOTA_MESSAGE = "Generation limit reached"
USAGE_UNAVAILABLE_MESSAGE = "Usage service temporarily unavailable. Please try again shortly."


async def capacity_exceeded_handler(request: Request, exc: CapacityExceeded) -> JSONResponse:
    rate_limited_requests.labels(limit_type=exc.limit_type).inc()
    return JSONResponse(
        status_code=429,
        content=error_body(CAPACITY_MESSAGE, "SERVICE_AT_CAPACITY"),
        headers=exc.headers,
    )


async def abuse_detected_handler(request: Request, exc: AbuseDetected) -> JSONResponse:
    rate_limited_requests.labels(limit_type=exc.limit_type).inc()
    # Deliberately generic: no threshold or window details
    return JSONResponse(
        status_code=429,
        content=error_body(ABUSE_MESSAGE, "TOO_MANY_REQUESTS"),
        headers={**exc.headers, "Retry-After": str(exc.retry_after)},
    )


def quota_exceeded_body(exc: QuotaExceeded) -> dict:
    decision = exc.decision
    tier_config = tier_policy.lookup(decision.tier)
    return error_body(
        QUOTA_MESSAGE,
        "RATE_LIMITED",
        tier=decision.tier.value,
        tierName=tier_config.display_name,
        limit=decision.limit,
        used=decision.used,
        remaining=0,
        resetAt=decision.reset_at.isoformat() if decision.reset_at else None,
        upgradeUrl=exc.upgrade_url,
        message=tier_policy.upgrade_message(decision.tier),
    )


async def quota_exceeded_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
    rate_limited_requests.labels(limit_type=exc.limit_type).inc()
    return JSONResponse(status_code=429, content=quota_exceeded_body(exc), headers=exc.headers)


async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error(f"Usage store unavailable for {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content=error_body(USAGE_UNAVAILABLE_MESSAGE, "USAGE_UNAVAILABLE"),
        headers={"Retry-After": "30"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CapacityExceeded, capacity_exceeded_handler)
    app.add_exception_handler(AbuseDetected, abuse_detected_handler)
    app.add_exception_handler(QuotaExceeded, quota_exceeded_handler)
    app.add_exception_handler(PersistenceError, persistence_error_handler)
