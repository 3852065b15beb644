"""Admin API key authentication for evidence audit endpoints.

Validates the ``X-Admin-API-Key`` header against
``SAFERELAY_ADMIN_API_KEY`` with a constant-time comparison.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> str:
    """FastAPI dependency guarding audit routes.

    Without a configured key, development deployments let requests
    through with a warning and production deployments answer 503.
    """
    configured_key = settings.admin_api_key
    client_ip = request.client.host if request.client else "unknown"

    if not configured_key:
        if not settings.is_production:
            logger.warning("auth.admin_key_not_configured", path=request.url.path)
            return ""
        logger.error("auth.admin_key_not_configured_production")
        raise HTTPException(status_code=503, detail="Admin authentication is not configured.")

    if not api_key:
        logger.warning("auth.missing_api_key", path=request.url.path, client_ip=client_ip)
        raise HTTPException(
            status_code=401,
            detail="Missing X-Admin-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not hmac.compare_digest(api_key.encode(), configured_key.encode()):
        logger.warning("auth.invalid_api_key", path=request.url.path, client_ip=client_ip)
        raise HTTPException(status_code=403, detail="Invalid API key.")

    return api_key
