"""Evidence upload and custody models.

Upload sessions are transient; evidence records are permanent.  A record
is created exactly once from a fully received session and only its
``shared_with`` list (append-only) and ``tamper_suspected`` flag (set-only)
may change afterwards.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from saferelay.models.enums import ShareParty, StreamType


class ChunkReceipt(BaseModel):
    """Acknowledgement of a single chunk write."""

    session_id: str
    stream_type: StreamType
    chunk_index: int
    received: int
    total_expected: int


class StreamProgress(BaseModel):
    total_chunks: int
    received: int
    missing: list[int]


class SessionStatus(BaseModel):
    """Resumability view of an upload session."""

    session_id: str
    recording_id: str
    created_at: datetime
    expires_at: datetime
    bytes_received: int
    streams: dict[StreamType, StreamProgress]

    @property
    def complete(self) -> bool:
        return all(not p.missing for p in self.streams.values())


class AssembledStream(BaseModel):
    """One stream concatenated in index order and hashed."""

    model_config = ConfigDict(frozen=True)

    stream_type: StreamType
    data: bytes
    sha256: str
    size_bytes: int


class StreamDigest(BaseModel):
    model_config = ConfigDict(frozen=True)

    size_bytes: int
    content_hash: str
    storage_ref: str


class ShareGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    party: ShareParty
    granted_at: datetime


class EvidenceRecord(BaseModel):
    """Finalized, hash-verified evidence linked to one incident."""

    evidence_id: str
    incident_id: str
    user_id: str
    streams: dict[StreamType, StreamDigest]
    combined_hash: str
    finalized_at: datetime
    shared_with: list[ShareGrant] = Field(default_factory=list)
    tamper_suspected: bool = False
    tamper_detected_at: datetime | None = None
    sequence: int = 0
    previous_hash: str = ""
    record_hash: str = ""


class VerificationReport(BaseModel):
    evidence_id: str
    ok: bool
    mismatches: list[StreamType]
    verified_at: datetime


class ChainReport(BaseModel):
    ok: bool
    records_checked: int
    broken_at: str | None = None


class SignedReference(BaseModel):
    """Short-lived access token for one evidence stream."""

    evidence_id: str
    stream_type: StreamType
    token: str
    expires_at: datetime


class ChunkStoreMetrics(BaseModel):
    active_sessions: int
    chunks_received: int
    bytes_buffered: int
    sessions_finalized: int
    sessions_expired: int
