"""Health check endpoints.

Liveness says the process is up; readiness says the services are wired
and the chunk buffer answers.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_REQUIRED_SERVICES = ("orchestrator", "dispatcher", "directory", "ledger", "chunk_store")


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness check.  Does not touch downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse | ORJSONResponse:
    checks: dict[str, str] = {}
    all_ok = True

    for name in _REQUIRED_SERVICES:
        if getattr(request.app.state, name, None) is None:
            checks[name] = "missing"
            all_ok = False
        else:
            checks[name] = "ok"

    buffer = getattr(request.app.state, "chunk_buffer", None)
    if buffer is not None:
        try:
            await buffer.fetch("_health_check", "audio")
            checks["chunk_buffer"] = "redis" if buffer.uses_redis else "memory"
        except Exception:
            logger.warning("health.chunk_buffer_failed", exc_info=True)
            checks["chunk_buffer"] = "error"
            all_ok = False

    if not all_ok:
        return ORJSONResponse(
            status_code=503,
            content=ReadinessResponse(status="degraded", checks=checks).model_dump(),
        )
    return ReadinessResponse(status="ready", checks=checks)
