"""Responder registration, heartbeat and ranking endpoints."""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from saferelay.models.enums import ChannelType, ResponderKind
from saferelay.models.responder import GeoPoint, ResponderProfile
from saferelay.services.ids import IdGenerator
from saferelay.services.responder_directory import ResponderDirectory

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/responders", tags=["responders"])


class RegisterResponderRequest(BaseModel):
    responder_id: str | None = None
    kind: ResponderKind = ResponderKind.VOLUNTEER
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = ""
    push_token: str = ""
    trust_score: float = Field(default=0.8, ge=0.0, le=1.0)
    channels: list[ChannelType] = Field(default_factory=lambda: [ChannelType.PUSH, ChannelType.SMS])
    guardian_of: list[str] = Field(default_factory=list)


class HeartbeatRequest(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    timestamp: datetime | None = None


def _directory(request: Request) -> ResponderDirectory:
    directory = getattr(request.app.state, "directory", None)
    if directory is None:
        raise HTTPException(status_code=503, detail="Responder directory is not available.")
    return directory


def _ids(request: Request) -> IdGenerator:
    ids = getattr(request.app.state, "ids", None)
    if ids is None:
        raise HTTPException(status_code=503, detail="Id generator is not available.")
    return ids


@router.post("", status_code=201)
async def register_responder(body: RegisterResponderRequest, request: Request) -> dict:
    if body.kind == ResponderKind.GUARDIAN and not body.guardian_of:
        raise HTTPException(status_code=400, detail="A guardian must guard at least one user.")
    profile = _directory(request).register(
        ResponderProfile(
            responder_id=body.responder_id or _ids(request).new_id("rsd"),
            kind=body.kind,
            name=body.name,
            phone=body.phone,
            push_token=body.push_token,
            trust_score=body.trust_score,
            channels=frozenset(body.channels),
            guardian_of=frozenset(body.guardian_of),
        )
    )
    return profile.model_dump(mode="json", exclude={"push_token"})


@router.put("/{responder_id}/heartbeat")
async def heartbeat(responder_id: str, body: HeartbeatRequest, request: Request) -> dict:
    beat = _directory(request).record_heartbeat(
        responder_id,
        GeoPoint(latitude=body.latitude, longitude=body.longitude),
        body.timestamp,
    )
    return beat.model_dump(mode="json")


@router.post("/{responder_id}/deactivate")
async def deactivate(responder_id: str, request: Request) -> dict:
    _directory(request).deactivate(responder_id)
    return {"responder_id": responder_id, "is_active": False}


@router.get("/nearby")
async def nearby_responders(
    request: Request,
    user_id: str = Query(..., min_length=1),
    latitude: float = Query(..., ge=-90.0, le=90.0),
    longitude: float = Query(..., ge=-180.0, le=180.0),
    radius_meters: float | None = Query(default=None, gt=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict:
    """Rank the responders who would be alerted for an SOS raised here."""
    default_radius = getattr(request.app.state, "search_radius_meters", 5_000.0)
    candidates = _directory(request).rank_candidates(
        user_id,
        GeoPoint(latitude=latitude, longitude=longitude),
        radius_meters or default_radius,
        limit,
    )
    return {
        "responders": [
            c.model_dump(mode="json", exclude={"phone", "push_token"}) for c in candidates
        ],
        "count": len(candidates),
    }


@router.get("/{responder_id}/stats")
async def responder_stats(responder_id: str, request: Request) -> dict:
    stats = _directory(request).stats(responder_id)
    return {
        **stats.model_dump(mode="json"),
        "acceptance_rate": round(stats.acceptance_rate, 4),
        "average_response_time_ms": round(stats.average_response_time_ms, 1),
    }
