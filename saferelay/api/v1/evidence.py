"""Evidence upload, custody and audit endpoints.

Chunks are sent as raw request bodies to an index-addressed URL so that a
client can upload in parallel and resend any chunk after a drop.
Finalizing commits the evidence to the immutable ledger.  Evidence cannot
be deleted: ``DELETE`` always answers 403.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from saferelay.middleware.auth import require_admin_api_key
from saferelay.models.enums import ShareParty, StreamType
from saferelay.services.chunk_store import EvidenceChunkStore
from saferelay.services.evidence_ledger import EvidenceLedger
from saferelay.services.orchestrator import IncidentOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/evidence", tags=["evidence"])


class BeginUploadRequest(BaseModel):
    incident_id: str = Field(..., min_length=1)
    streams: dict[StreamType, int] = Field(..., min_length=1)


class ShareRequest(BaseModel):
    party: ShareParty


class AccessRequest(BaseModel):
    stream_type: StreamType
    ttl_seconds: int | None = Field(default=None, ge=1, le=86_400)


def _service(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail="Evidence service is not available.")
    return service


def _ledger(request: Request) -> EvidenceLedger:
    return _service(request, "ledger")


def _chunk_store(request: Request) -> EvidenceChunkStore:
    return _service(request, "chunk_store")


def _orchestrator(request: Request) -> IncidentOrchestrator:
    return _service(request, "orchestrator")


# ---------------------------------------------------------------------------
# Upload sessions
# ---------------------------------------------------------------------------


@router.post("/sessions", status_code=201)
async def begin_upload(body: BeginUploadRequest, request: Request) -> dict:
    session_id = await _orchestrator(request).begin_evidence_upload(
        body.incident_id, {str(k): v for k, v in body.streams.items()}
    )
    return {"session_id": session_id}


@router.get("/sessions/{session_id}")
async def upload_status(session_id: str, request: Request) -> dict:
    status = await _chunk_store(request).session_status(session_id)
    return {**status.model_dump(mode="json"), "complete": status.complete}


@router.put("/sessions/{session_id}/streams/{stream_type}/chunks/{chunk_index}")
async def put_chunk(session_id: str, stream_type: str, chunk_index: int, request: Request) -> dict:
    data = await request.body()
    receipt = await _chunk_store(request).put_chunk(session_id, stream_type, chunk_index, data)
    return receipt.model_dump(mode="json")


@router.post("/sessions/{session_id}/finalize", status_code=201)
async def finalize_upload(session_id: str, request: Request) -> dict:
    """Assemble the upload and commit it.  409 lists any missing chunks."""
    record = await _orchestrator(request).finalize_evidence_upload(session_id)
    return record.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@router.get("/records")
async def list_records(request: Request, incident_id: str = Query(..., min_length=1)) -> dict:
    records = _ledger(request).list_for_incident(incident_id)
    return {"records": [r.model_dump(mode="json") for r in records]}


@router.get("/records/{evidence_id}")
async def get_record(evidence_id: str, request: Request) -> dict:
    return _ledger(request).get(evidence_id).model_dump(mode="json")


@router.post("/records/{evidence_id}/share")
async def share_record(evidence_id: str, body: ShareRequest, request: Request) -> dict:
    record = await _ledger(request).grant_share(evidence_id, body.party)
    return record.model_dump(mode="json")


@router.delete("/records/{evidence_id}")
async def delete_record(evidence_id: str, request: Request) -> None:
    """Always refused with 403; evidence is kept for legal use."""
    client = request.client.host if request.client else "unknown"
    await _ledger(request).request_deletion(evidence_id, requested_by=client)


@router.post("/records/{evidence_id}/access", status_code=201)
async def issue_access(evidence_id: str, body: AccessRequest, request: Request) -> dict:
    """Issue a short-lived signed reference to one stream."""
    reference = _ledger(request).issue_access_reference(
        evidence_id, body.stream_type, ttl_seconds=body.ttl_seconds
    )
    return reference.model_dump(mode="json")


@router.get("/access/{token}")
async def open_access(token: str, request: Request) -> Response:
    record, stream, blob = await _ledger(request).open_access_reference(token)
    logger.info("api.evidence.access_opened", evidence_id=record.evidence_id, stream=str(stream))
    return Response(
        content=blob,
        media_type="application/octet-stream",
        headers={
            "X-Evidence-Id": record.evidence_id,
            "X-Stream-Type": str(stream),
            "X-Content-SHA256": record.streams[stream].content_hash,
        },
    )


# ---------------------------------------------------------------------------
# Audit (admin only)
# ---------------------------------------------------------------------------


@router.post("/records/{evidence_id}/verify", dependencies=[Depends(require_admin_api_key)])
async def verify_record(evidence_id: str, request: Request) -> dict:
    report = await _ledger(request).verify(evidence_id)
    return report.model_dump(mode="json")


@router.get("/chain/verify", dependencies=[Depends(require_admin_api_key)])
async def verify_chain(request: Request) -> dict:
    return _ledger(request).verify_chain().model_dump(mode="json")


@router.get("/metrics")
async def evidence_metrics(request: Request) -> dict:
    metrics = _chunk_store(request).metrics()
    return {**metrics.model_dump(mode="json"), "records": _ledger(request).size}
