"""Responder, location and identity models.

Guardians are trusted contacts attached to one or more users; volunteers
are community responders available to anyone nearby.  Both are ranked
together by the responder directory.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from saferelay.models.enums import ChannelType, ResponderKind


class GeoPoint(BaseModel):
    """WGS-84 coordinate pair."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class Heartbeat(BaseModel):
    """Latest known position of a responder. Superseded points are dropped."""

    model_config = ConfigDict(frozen=True)

    location: GeoPoint
    timestamp: datetime


class ResponderProfile(BaseModel):
    """Directory entry for a guardian or volunteer."""

    responder_id: str
    kind: ResponderKind
    name: str
    phone: str = ""
    push_token: str = ""
    trust_score: float = Field(default=0.8, ge=0.0, le=1.0)
    channels: frozenset[ChannelType] = frozenset({ChannelType.PUSH, ChannelType.SMS})
    guardian_of: frozenset[str] = frozenset()
    is_active: bool = True


class ResponderSeed(BaseModel):
    """Guardian description supplied by the identity collaborator."""

    responder_id: str
    name: str
    phone: str
    push_token: str = ""
    relationship: str = "other"
    trust_score: float = Field(default=0.8, ge=0.0, le=1.0)
    channels: frozenset[ChannelType] = frozenset({ChannelType.PUSH, ChannelType.SMS})


class ResponderCandidate(BaseModel):
    """Per-incident ranking snapshot of one responder.

    Frozen at incident open so tiers stay deterministic even if the
    directory changes afterwards.
    """

    model_config = ConfigDict(frozen=True)

    responder_id: str
    kind: ResponderKind
    distance_meters: float
    trust_score: float
    last_active_at: datetime
    score: float
    name: str = ""
    phone: str = ""
    push_token: str = ""
    channels: frozenset[ChannelType] = frozenset()
    online: bool = True


class ResponderStats(BaseModel):
    """Running response statistics for one responder."""

    total_notifications: int = 0
    total_responses: int = 0
    total_accepted: int = 0
    total_response_time_ms: int = 0

    @property
    def acceptance_rate(self) -> float:
        if self.total_responses == 0:
            return 0.0
        return self.total_accepted / self.total_responses

    @property
    def average_response_time_ms(self) -> float:
        if self.total_responses == 0:
            return 0.0
        return self.total_response_time_ms / self.total_responses


class UserIdentity(BaseModel):
    """What the identity collaborator tells the core about a user."""

    user_id: str
    name: str
    phone: str = ""
    emergency_contacts: list[str] = Field(default_factory=list)
