"""Main API router combining all v1 route modules under ``/api/v1``.

Includes:
    * Incidents: raise SOS, respond, cancel, distress readings, reports,
      live event feed
    * Evidence: chunked upload, custody records, signed access, audit
    * Responders: registration, heartbeat, nearby ranking, statistics
    * Health: liveness and readiness
"""

from __future__ import annotations

from fastapi import APIRouter

from saferelay.api.v1 import evidence, health, incidents, responders

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(incidents.router)
api_router.include_router(evidence.router)
api_router.include_router(responders.router)
api_router.include_router(health.router)
