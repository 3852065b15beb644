"""SafeRelay service layer -- evidence custody, responder ranking, dispatch
and the incident orchestrator that ties them together.
"""

from __future__ import annotations

from saferelay.services.chunk_buffer import ChunkBuffer, InMemoryChunkBuffer, RedisChunkBuffer
from saferelay.services.chunk_store import EvidenceChunkStore
from saferelay.services.dispatcher import AlertContext, DispatchPolicy, NotificationDispatcher
from saferelay.services.distress import DistressAnalyzer
from saferelay.services.event_hub import IncidentEventHub
from saferelay.services.evidence_ledger import EvidenceLedger
from saferelay.services.identity import IdentityDirectory, InMemoryIdentityDirectory
from saferelay.services.ids import MonotonicIdGenerator, UUIDGenerator
from saferelay.services.incident_store import IncidentStore
from saferelay.services.object_storage import FileSystemObjectStorage, InMemoryObjectStorage
from saferelay.services.orchestrator import IncidentOrchestrator
from saferelay.services.responder_directory import ResponderDirectory
from saferelay.services.signing import ReferenceSigner

__all__ = [
    "AlertContext",
    "ChunkBuffer",
    "DispatchPolicy",
    "DistressAnalyzer",
    "EvidenceChunkStore",
    "EvidenceLedger",
    "FileSystemObjectStorage",
    "IdentityDirectory",
    "InMemoryChunkBuffer",
    "InMemoryIdentityDirectory",
    "InMemoryObjectStorage",
    "IncidentEventHub",
    "IncidentOrchestrator",
    "IncidentStore",
    "MonotonicIdGenerator",
    "NotificationDispatcher",
    "RedisChunkBuffer",
    "ReferenceSigner",
    "ResponderDirectory",
    "UUIDGenerator",
]
