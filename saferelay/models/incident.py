"""Incident, response and distress-reading models.

An incident references its responses and evidence records by id; the
records themselves live in their own collections so that evidence can be
audited independently of the incident that produced it.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from saferelay.models.enums import (
    ChannelType,
    DistressLevel,
    EmotionLabel,
    IncidentStatus,
    IncidentType,
    ResponseAction,
)
from saferelay.models.responder import GeoPoint, ResponderCandidate


class Incident(BaseModel):
    """A single SOS event. Never deleted."""

    incident_id: str
    user_id: str
    incident_type: IncidentType
    opened_at: datetime
    origin: GeoPoint
    status: IncidentStatus = IncidentStatus.OPEN
    candidate_queue: tuple[ResponderCandidate, ...] = ()
    response_ids: list[str] = Field(default_factory=list)
    evidence_refs: list[str] = Field(default_factory=list)
    escalation_tier: int = 0
    resolved_by: str | None = None
    closed_at: datetime | None = None
    escalated_at: datetime | None = None
    silent: bool = False
    description: str = ""


class Response(BaseModel):
    """A responder's answer (or silence) for one incident. Immutable."""

    model_config = ConfigDict(frozen=True)

    response_id: str
    responder_id: str
    incident_id: str
    action: ResponseAction
    responded_at: datetime
    latency_ms: int
    tier: int
    authoritative: bool = False


class DeliveryAttempt(BaseModel):
    """Outcome of one channel send for one responder in one tier."""

    model_config = ConfigDict(frozen=True)

    incident_id: str
    responder_id: str
    channel: ChannelType
    tier: int
    delivered: bool
    attempted_at: datetime
    error: str = ""


class AudioFeatures(BaseModel):
    """Voice features extracted on the device during an SOS."""

    pitch: float = Field(default=0.0, ge=0.0)
    energy: float = Field(default=0.0, ge=0.0)
    prosody_variance: float = Field(default=0.0, ge=0.0)
    speech_rate: float = Field(default=0.0, ge=0.0)


class EmotionReading(BaseModel):
    """One distress analysis result attached to an incident."""

    model_config = ConfigDict(frozen=True)

    reading_id: str
    incident_id: str
    recorded_at: datetime
    confidences: dict[EmotionLabel, float]
    primary_emotion: EmotionLabel
    distress_score: float
    distress_level: DistressLevel
    triggered_escalation: bool = False


class EmotionTimeline(BaseModel):
    incident_id: str
    readings: list[EmotionReading]
    peaks: dict[EmotionLabel, float]
    max_distress_score: float
