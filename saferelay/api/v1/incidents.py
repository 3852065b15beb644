"""SOS incident endpoints.

Raising an SOS, following it, answering it as a responder, marking the
user safe, and streaming live incident events to dispatched responders.
"""

from __future__ import annotations

import orjson
import structlog
from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from saferelay.models.enums import IncidentType, ResponseAction
from saferelay.models.incident import AudioFeatures, Incident
from saferelay.models.responder import GeoPoint
from saferelay.services.errors import NotFoundError
from saferelay.services.orchestrator import IncidentOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/incidents", tags=["incidents"])

# responder contact details never leave the service
_PRIVATE_CANDIDATE_FIELDS = {"candidate_queue": {"__all__": {"phone", "push_token"}}}


class RaiseSOSRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    incident_type: IncidentType = IncidentType.MANUAL
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    silent: bool = False
    description: str = Field(default="", max_length=2000)
    radius_meters: float | None = Field(default=None, gt=0)


class RespondRequest(BaseModel):
    responder_id: str = Field(..., min_length=1)
    action: ResponseAction


class ResolveEscalationRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)


def _orchestrator(request: Request) -> IncidentOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Incident service is not available.")
    return orchestrator


def _incident_payload(incident: Incident) -> dict:
    return incident.model_dump(mode="json", exclude=_PRIVATE_CANDIDATE_FIELDS)


@router.post("", status_code=201)
async def raise_sos(body: RaiseSOSRequest, request: Request) -> dict:
    """Raise an SOS and start notifying responders."""
    incident = await _orchestrator(request).raise_sos(
        body.user_id,
        body.incident_type,
        GeoPoint(latitude=body.latitude, longitude=body.longitude),
        silent=body.silent,
        description=body.description,
        radius_meters=body.radius_meters,
    )
    return _incident_payload(incident)


@router.get("")
async def incident_history(
    request: Request,
    user_id: str = Query(..., min_length=1),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict:
    incidents, total = _orchestrator(request).history(user_id, page=page, limit=limit)
    return {
        "incidents": [_incident_payload(i) for i in incidents],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/{incident_id}")
async def get_incident(incident_id: str, request: Request) -> dict:
    return _incident_payload(_orchestrator(request).get(incident_id))


@router.post("/{incident_id}/responses", status_code=201)
async def respond(incident_id: str, body: RespondRequest, request: Request) -> dict:
    """A dispatched responder accepts or declines."""
    response = await _orchestrator(request).record_response(
        incident_id, body.responder_id, body.action
    )
    return response.model_dump(mode="json")


@router.get("/{incident_id}/responses")
async def list_responses(incident_id: str, request: Request) -> dict:
    responses = _orchestrator(request).responses(incident_id)
    return {"responses": [r.model_dump(mode="json") for r in responses]}


@router.post("/{incident_id}/cancel")
async def cancel_incident(incident_id: str, request: Request) -> dict:
    """The user is safe.  Stops dispatch and resolves the incident."""
    return _incident_payload(await _orchestrator(request).cancel(incident_id))


@router.post("/{incident_id}/resolve-escalation")
async def resolve_escalation(
    incident_id: str, body: ResolveEscalationRequest, request: Request
) -> dict:
    incident = await _orchestrator(request).resolve_escalation(incident_id, body.resolved_by)
    return _incident_payload(incident)


@router.post("/{incident_id}/emotion", status_code=201)
async def record_emotion(incident_id: str, body: AudioFeatures, request: Request) -> dict:
    """Score a voice sample taken during the incident."""
    reading = await _orchestrator(request).record_emotion(incident_id, body)
    return reading.model_dump(mode="json")


@router.get("/{incident_id}/emotion/timeline")
async def emotion_timeline(incident_id: str, request: Request) -> dict:
    return _orchestrator(request).emotion_timeline(incident_id).model_dump(mode="json")


@router.get("/{incident_id}/report", response_class=PlainTextResponse)
async def incident_report(incident_id: str, request: Request) -> PlainTextResponse:
    report = _orchestrator(request).generate_report(incident_id)
    return PlainTextResponse(
        report,
        headers={"Content-Disposition": f'attachment; filename="{incident_id}.txt"'},
    )


@router.get("/{incident_id}/dispatch")
async def dispatch_status(incident_id: str, request: Request) -> dict:
    _orchestrator(request).get(incident_id)
    dispatcher = request.app.state.dispatcher
    return dispatcher.state(incident_id).model_dump(mode="json")


@router.get("/{incident_id}/deliveries")
async def delivery_log(incident_id: str, request: Request) -> dict:
    _orchestrator(request).get(incident_id)
    dispatcher = request.app.state.dispatcher
    return {"deliveries": [d.model_dump(mode="json") for d in dispatcher.deliveries(incident_id)]}


@router.websocket("/{incident_id}/events")
async def incident_events(websocket: WebSocket, incident_id: str, responder_id: str) -> None:
    """Live event feed for a responder dispatched to this incident."""
    orchestrator: IncidentOrchestrator | None = getattr(websocket.app.state, "orchestrator", None)
    if orchestrator is None:
        await websocket.close(code=1013)
        return

    try:
        subscription = orchestrator.hub.subscribe(incident_id, responder_id)
    except NotFoundError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    try:
        while True:
            event = await subscription.next_event()
            await websocket.send_text(orjson.dumps(event.model_dump(mode="json")).decode())
    except WebSocketDisconnect:
        logger.info("api.incidents.events_disconnected", incident_id=incident_id, responder_id=responder_id)
    finally:
        orchestrator.hub.unsubscribe(subscription)
