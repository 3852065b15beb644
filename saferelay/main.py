"""SafeRelay FastAPI application entry point.

Creates the FastAPI app, registers the domain error handler, includes the
routers, and manages the lifecycle of every backend service (chunk buffer,
chunk store, evidence ledger, responder directory, channels, dispatcher,
orchestrator).
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import settings
from saferelay.api.router import api_router
from saferelay.services.errors import SafeRelayError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire every service onto ``app.state`` and tear them down on exit.

    Gateway channels are used when their URLs are configured; otherwise
    alerts are only logged.  Evidence blobs go to disk when a storage
    directory is configured and to memory otherwise.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env)
    app.state.start_time = time.time()

    # -- 1. Evidence custody --------------------------------------------------
    from saferelay.services.chunk_buffer import ChunkBuffer
    from saferelay.services.chunk_store import EvidenceChunkStore
    from saferelay.services.evidence_ledger import EvidenceLedger
    from saferelay.services.ids import UUIDGenerator
    from saferelay.services.object_storage import (
        FileSystemObjectStorage,
        InMemoryObjectStorage,
        ObjectStorage,
    )
    from saferelay.services.signing import ReferenceSigner

    ids = UUIDGenerator()
    chunk_buffer = ChunkBuffer(redis_url=settings.redis_url or None)
    chunk_store = EvidenceChunkStore(
        chunk_buffer,
        ids,
        ttl_seconds=settings.chunk_session_ttl_seconds,
        max_chunk_bytes=settings.max_chunk_bytes,
        gc_interval_seconds=settings.chunk_gc_interval_seconds,
    )
    chunk_store.start()

    storage: ObjectStorage
    if settings.evidence_storage_dir:
        storage = FileSystemObjectStorage(settings.evidence_storage_dir)
    else:
        storage = InMemoryObjectStorage()
    ledger = EvidenceLedger(
        storage,
        ReferenceSigner(settings.signing_secret, ttl_seconds=settings.access_reference_ttl_seconds),
        ids,
    )
    logger.info("app.evidence_initialised", storage=type(storage).__name__)

    # -- 2. Responders and channels ------------------------------------------
    from saferelay.services.channels import (
        HttpPushChannel,
        HttpSmsChannel,
        LoggingMeshChannel,
        LoggingPushChannel,
        LoggingSmsChannel,
        PushChannel,
        SmsChannel,
    )
    from saferelay.services.responder_directory import ResponderDirectory

    directory = ResponderDirectory(
        recency_window_hours=settings.recency_window_hours,
        offline_after_minutes=settings.offline_after_minutes,
    )

    push: PushChannel
    sms: SmsChannel
    if settings.push_gateway_url:
        push = HttpPushChannel(settings.push_gateway_url, settings.push_gateway_token)
    else:
        push = LoggingPushChannel()
    if settings.sms_gateway_url:
        sms = HttpSmsChannel(settings.sms_gateway_url, settings.sms_api_key, settings.sms_sender_id)
    else:
        sms = LoggingSmsChannel()
    mesh = LoggingMeshChannel()
    logger.info(
        "app.channels_initialised",
        push=type(push).__name__,
        sms=type(sms).__name__,
    )

    # -- 3. Dispatch and orchestration ---------------------------------------
    from saferelay.services.dispatcher import DispatchPolicy, NotificationDispatcher
    from saferelay.services.distress import DistressAnalyzer
    from saferelay.services.identity import (
        HttpIdentityDirectory,
        IdentityDirectory,
        InMemoryIdentityDirectory,
    )
    from saferelay.services.incident_store import IncidentStore
    from saferelay.services.orchestrator import IncidentOrchestrator

    dispatcher = NotificationDispatcher(
        push,
        sms,
        mesh,
        ids,
        policy=DispatchPolicy(
            fanout_size=settings.fanout_size,
            tier_deadline_seconds=settings.tier_deadline_seconds,
            max_tier=settings.max_tier,
            send_timeout_seconds=settings.channel_send_timeout_seconds,
            retry_backoff_seconds=settings.channel_retry_backoff_seconds,
        ),
        directory=directory,
    )
    identity: IdentityDirectory
    if settings.identity_service_url:
        identity = HttpIdentityDirectory(settings.identity_service_url, settings.identity_service_token)
    else:
        logger.warning("app.identity_in_memory", note="no identity service configured; users must be seeded")
        identity = InMemoryIdentityDirectory()
    orchestrator = IncidentOrchestrator(
        IncidentStore(),
        directory,
        dispatcher,
        ledger,
        chunk_store,
        identity,
        sms,
        ids,
        analyzer=DistressAnalyzer(critical_threshold=settings.escalation_distress_threshold),
        search_radius_meters=settings.default_search_radius_meters,
        max_candidates=settings.max_candidates,
        authority_phone=settings.authority_phone,
    )

    # -- 4. Store on app.state ------------------------------------------------
    app.state.ids = ids
    app.state.chunk_buffer = chunk_buffer
    app.state.chunk_store = chunk_store
    app.state.ledger = ledger
    app.state.directory = directory
    app.state.identity = identity
    app.state.dispatcher = dispatcher
    app.state.orchestrator = orchestrator
    app.state.search_radius_meters = settings.default_search_radius_meters

    logger.info("app.startup_complete", chunk_buffer_redis=bool(settings.redis_url))

    yield

    # -- Shutdown -------------------------------------------------------------
    logger.info("app.shutdown_start")
    await dispatcher.shutdown()
    await chunk_store.stop()
    for channel in (push, sms):
        if isinstance(channel, (HttpPushChannel, HttpSmsChannel)):
            await channel.close()
    if isinstance(identity, HttpIdentityDirectory):
        await identity.close()
    await chunk_buffer.close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SafeRelay API",
    description=(
        "SafeRelay -- SOS incident fan-out to guardians and nearby volunteers, "
        "with tamper-evident evidence custody."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Authorization", "X-Admin-API-Key"],
)


@app.exception_handler(SafeRelayError)
async def domain_error_handler(request: Request, exc: SafeRelayError) -> ORJSONResponse:
    """Map the domain error taxonomy to JSON responses."""
    if exc.status_code >= 500:
        logger.error("app.domain_error", path=request.url.path, error=exc.code, detail=exc.detail)
    else:
        logger.info("app.request_rejected", path=request.url.path, error=exc.code, status=exc.status_code)
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    return {
        "name": "SafeRelay API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
    }
