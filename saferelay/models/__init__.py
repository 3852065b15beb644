from saferelay.models.enums import (
    ChannelType,
    DispatchOutcome,
    DispatchState,
    DistressLevel,
    EmotionLabel,
    IncidentStatus,
    IncidentType,
    ResponderKind,
    ResponseAction,
    ShareParty,
    StreamType,
)
from saferelay.models.evidence import (
    AssembledStream,
    ChainReport,
    ChunkReceipt,
    ChunkStoreMetrics,
    EvidenceRecord,
    SessionStatus,
    ShareGrant,
    SignedReference,
    StreamDigest,
    StreamProgress,
    VerificationReport,
)
from saferelay.models.incident import (
    AudioFeatures,
    DeliveryAttempt,
    EmotionReading,
    EmotionTimeline,
    Incident,
    Response,
)
from saferelay.models.responder import (
    GeoPoint,
    Heartbeat,
    ResponderCandidate,
    ResponderProfile,
    ResponderSeed,
    ResponderStats,
    UserIdentity,
)

__all__ = [
    "AssembledStream",
    "AudioFeatures",
    "ChainReport",
    "ChannelType",
    "ChunkReceipt",
    "ChunkStoreMetrics",
    "DeliveryAttempt",
    "DispatchOutcome",
    "DispatchState",
    "DistressLevel",
    "EmotionLabel",
    "EmotionReading",
    "EmotionTimeline",
    "EvidenceRecord",
    "GeoPoint",
    "Heartbeat",
    "Incident",
    "IncidentStatus",
    "IncidentType",
    "ResponderCandidate",
    "ResponderKind",
    "ResponderProfile",
    "ResponderSeed",
    "ResponderStats",
    "Response",
    "ResponseAction",
    "SessionStatus",
    "ShareGrant",
    "ShareParty",
    "SignedReference",
    "StreamDigest",
    "StreamProgress",
    "StreamType",
    "UserIdentity",
    "VerificationReport",
]
