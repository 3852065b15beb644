from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class IncidentType(StrEnum):
    __slots__ = ()

    MANUAL = "manual"
    ACCIDENT = "accident"
    PANIC = "panic"
    SHAKE = "shake"
    POWER = "power"
    VOICE = "voice"
    CARD = "card"
    MEDICAL = "medical"
    DISASTER = "disaster"


class IncidentStatus(StrEnum):
    __slots__ = ()

    OPEN = "open"
    DISPATCHING = "dispatching"
    ESCALATED_TO_AUTHORITIES = "escalated_to_authorities"
    RESOLVED = "resolved"
    CLOSED_UNANSWERED = "closed_unanswered"

    @property
    def is_terminal(self) -> bool:
        return self in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED_UNANSWERED)


class ResponderKind(StrEnum):
    __slots__ = ()

    GUARDIAN = "guardian"
    VOLUNTEER = "volunteer"


class ResponseAction(StrEnum):
    __slots__ = ()

    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMEOUT = "timeout"


class DispatchState(StrEnum):
    __slots__ = ()

    PENDING_TIER = "pending_tier"
    AWAITING_RESPONSE = "awaiting_response"
    SETTLED = "settled"


class DispatchOutcome(StrEnum):
    __slots__ = ()

    ACCEPTED = "accepted"
    UNANSWERED = "unanswered"
    CANCELLED = "cancelled"


class ChannelType(StrEnum):
    __slots__ = ()

    PUSH = "push"
    SMS = "sms"
    MESH = "mesh"


class StreamType(StrEnum):
    """Evidence stream types, declared in canonical hashing order."""

    __slots__ = ()

    VIDEO_FRONT = "video_front"
    VIDEO_BACK = "video_back"
    AUDIO = "audio"
    PHOTO = "photo"


class ShareParty(StrEnum):
    __slots__ = ()

    FAMILY = "family"
    POLICE = "police"
    EMERGENCY_SERVICES = "emergency_services"
    LEGAL_COUNSEL = "legal_counsel"
    SOS_LOGS = "sos_logs"


class EmotionLabel(StrEnum):
    __slots__ = ()

    FEAR = "fear"
    CRYING = "crying"
    PANIC = "panic"
    CALM = "calm"


class DistressLevel(StrEnum):
    __slots__ = ()

    NONE = "none"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


def canonical_stream_order(streams: Iterable[str]) -> list[StreamType]:
    """Sort stream types by their declaration order in :class:`StreamType`."""
    order = list(StreamType)
    return sorted((StreamType(s) for s in streams), key=order.index)
