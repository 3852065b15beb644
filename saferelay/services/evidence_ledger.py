"""Append-only, hash-chained evidence ledger.

The ledger is the custody record for legal evidence.  Its rules:

* :meth:`EvidenceLedger.commit` is the only way to create a record.  There
  is no update entry point, no share revocation and no deletion;
  :meth:`EvidenceLedger.request_deletion` exists only to reject.
* ``combined_hash`` is SHA-256 over the per-stream hex digests concatenated
  in canonical stream order (front video, back video, audio, photo).
* Every record also carries ``record_hash`` over its own fields and the
  previous record's hash, so a rewritten or removed record breaks the chain
  for every later entry.
* Re-verification that finds a mismatch sets ``tamper_suspected`` and
  nothing else.  The flag is never cleared.
* Callers always receive deep copies.

Stream bytes are only reachable through short-lived signed references.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Final, NoReturn

import structlog

from saferelay.models.enums import ShareParty, StreamType, canonical_stream_order
from saferelay.models.evidence import (
    AssembledStream,
    ChainReport,
    EvidenceRecord,
    ShareGrant,
    SignedReference,
    StreamDigest,
    VerificationReport,
)
from saferelay.services.errors import (
    EvidenceImmutableError,
    NotFoundError,
    ValidationError,
)
from saferelay.services.ids import IdGenerator
from saferelay.services.object_storage import ObjectStorage
from saferelay.services.signing import ReferenceSigner

logger = structlog.get_logger(__name__)

GENESIS_HASH: Final[str] = "0" * 64

CommitListener = Callable[[EvidenceRecord], Awaitable[None]]


# ---------------------------------------------------------------------------
# Hashing helpers
# ---------------------------------------------------------------------------


def compute_combined_hash(content_hashes: Mapping[StreamType, str]) -> str:
    """SHA-256 of the stream digests concatenated in canonical order."""
    joined = "".join(content_hashes[s] for s in canonical_stream_order(content_hashes))
    return hashlib.sha256(joined.encode("ascii")).hexdigest()


def compute_record_hash(record: EvidenceRecord) -> str:
    """Chain hash over the write-once fields of *record*."""
    parts = [
        record.previous_hash,
        str(record.sequence),
        record.evidence_id,
        record.incident_id,
        record.user_id,
        record.combined_hash,
        record.finalized_at.isoformat(),
    ]
    for stream in canonical_stream_order(record.streams):
        digest = record.streams[stream]
        parts.append(f"{stream}:{digest.content_hash}:{digest.size_bytes}:{digest.storage_ref}")
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


# ---------------------------------------------------------------------------
# EvidenceLedger
# ---------------------------------------------------------------------------


class EvidenceLedger:
    """Owns every :class:`EvidenceRecord`.

    Parameters
    ----------
    storage:
        Object storage collaborator for stream blobs.
    signer:
        Issues and checks signed access references.
    ids:
        Evidence id generator.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        signer: ReferenceSigner,
        ids: IdGenerator,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._storage = storage
        self._signer = signer
        self._ids = ids
        self._clock = clock or (lambda: datetime.now(UTC))

        self._records: dict[str, EvidenceRecord] = {}
        self._order: list[str] = []
        self._by_incident: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[CommitListener] = []

    def add_listener(self, listener: CommitListener) -> None:
        """Register a coroutine called with every committed record."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def commit(
        self,
        incident_id: str,
        user_id: str,
        assembled: Mapping[StreamType, AssembledStream],
    ) -> EvidenceRecord:
        """Store finalized streams and append an immutable record."""
        if not assembled:
            raise ValidationError("nothing to commit: no streams assembled")
        if not incident_id or not user_id:
            raise ValidationError("incident_id and user_id are required")

        digests: dict[StreamType, StreamDigest] = {}
        for stream in canonical_stream_order(assembled):
            part = assembled[stream]
            actual = hashlib.sha256(part.data).hexdigest()
            if actual != part.sha256:
                raise ValidationError(f"stream {stream} does not match its declared hash")
            storage_ref = await self._storage.put(part.data)
            digests[stream] = StreamDigest(
                size_bytes=len(part.data),
                content_hash=actual,
                storage_ref=storage_ref,
            )

        async with self._lock:
            previous = self._records[self._order[-1]] if self._order else None
            record = EvidenceRecord(
                evidence_id=self._ids.new_id("evd"),
                incident_id=incident_id,
                user_id=user_id,
                streams=digests,
                combined_hash=compute_combined_hash({s: d.content_hash for s, d in digests.items()}),
                finalized_at=self._clock(),
                sequence=len(self._order),
                previous_hash=previous.record_hash if previous else GENESIS_HASH,
            )
            record.record_hash = compute_record_hash(record)
            self._records[record.evidence_id] = record
            self._order.append(record.evidence_id)
            self._by_incident.setdefault(incident_id, []).append(record.evidence_id)
            snapshot = record.model_copy(deep=True)

        logger.info(
            "evidence_ledger.committed",
            evidence_id=snapshot.evidence_id,
            incident_id=incident_id,
            sequence=snapshot.sequence,
            combined_hash=snapshot.combined_hash,
            streams=[str(s) for s in snapshot.streams],
        )

        for listener in self._listeners:
            try:
                await listener(snapshot.model_copy(deep=True))
            except Exception:
                logger.error(
                    "evidence_ledger.listener_failed",
                    evidence_id=snapshot.evidence_id,
                    exc_info=True,
                )
        return snapshot

    async def grant_share(self, evidence_id: str, party: ShareParty | str) -> EvidenceRecord:
        """Append a sharing grant.  Grants are never removed."""
        try:
            share_party = ShareParty(party)
        except ValueError as exc:
            raise ValidationError(f"unknown share party {party!r}") from exc

        async with self._lock:
            record = self._require(evidence_id)
            record.shared_with.append(ShareGrant(party=share_party, granted_at=self._clock()))
            snapshot = record.model_copy(deep=True)

        logger.info(
            "evidence_ledger.shared",
            evidence_id=evidence_id,
            party=str(share_party),
            grants=len(snapshot.shared_with),
        )
        return snapshot

    async def request_deletion(self, evidence_id: str, *, requested_by: str = "") -> NoReturn:
        """Reject a deletion request.  Evidence is preserved for legal use."""
        logger.warning(
            "evidence_ledger.deletion_rejected",
            evidence_id=evidence_id,
            requested_by=requested_by,
        )
        raise EvidenceImmutableError("evidence records cannot be deleted")

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get(self, evidence_id: str) -> EvidenceRecord:
        return self._require(evidence_id).model_copy(deep=True)

    def list_for_incident(self, incident_id: str) -> list[EvidenceRecord]:
        return [
            self._records[eid].model_copy(deep=True)
            for eid in self._by_incident.get(incident_id, [])
        ]

    @property
    def size(self) -> int:
        return len(self._order)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def verify(self, evidence_id: str) -> VerificationReport:
        """Recompute stream hashes from storage and compare.

        A mismatch flags the record ``tamper_suspected``; nothing is
        deleted or rewritten.
        """
        record = self._require(evidence_id)
        mismatches: list[StreamType] = []

        for stream in canonical_stream_order(record.streams):
            digest = record.streams[stream]
            try:
                blob = await self._storage.get(digest.storage_ref)
            except NotFoundError:
                logger.warning(
                    "evidence_ledger.blob_missing",
                    evidence_id=evidence_id,
                    stream=str(stream),
                )
                mismatches.append(stream)
                continue
            if hashlib.sha256(blob).hexdigest() != digest.content_hash:
                mismatches.append(stream)

        combined_ok = compute_combined_hash(
            {s: d.content_hash for s, d in record.streams.items()}
        ) == record.combined_hash
        chain_ok = compute_record_hash(record) == record.record_hash
        ok = not mismatches and combined_ok and chain_ok

        if not ok:
            async with self._lock:
                if not record.tamper_suspected:
                    record.tamper_suspected = True
                    record.tamper_detected_at = self._clock()
            logger.warning(
                "evidence_ledger.tamper_suspected",
                evidence_id=evidence_id,
                mismatches=[str(s) for s in mismatches],
                combined_ok=combined_ok,
                chain_ok=chain_ok,
            )
        else:
            logger.info("evidence_ledger.verified", evidence_id=evidence_id)

        return VerificationReport(
            evidence_id=evidence_id,
            ok=ok,
            mismatches=mismatches,
            verified_at=self._clock(),
        )

    def verify_chain(self) -> ChainReport:
        """Walk the chain from genesis and report the first broken link."""
        expected_previous = GENESIS_HASH
        for position, evidence_id in enumerate(self._order):
            record = self._records[evidence_id]
            if (
                record.sequence != position
                or record.previous_hash != expected_previous
                or compute_record_hash(record) != record.record_hash
            ):
                logger.warning("evidence_ledger.chain_broken", evidence_id=evidence_id, position=position)
                return ChainReport(ok=False, records_checked=position + 1, broken_at=evidence_id)
            expected_previous = record.record_hash
        return ChainReport(ok=True, records_checked=len(self._order))

    # ------------------------------------------------------------------
    # Signed access
    # ------------------------------------------------------------------

    def issue_access_reference(
        self,
        evidence_id: str,
        stream_type: StreamType | str,
        *,
        ttl_seconds: int | None = None,
    ) -> SignedReference:
        record = self._require(evidence_id)
        try:
            stream = StreamType(stream_type)
        except ValueError as exc:
            raise ValidationError(f"unknown stream type {stream_type!r}") from exc
        if stream not in record.streams:
            raise NotFoundError(f"evidence {evidence_id} has no {stream} stream")

        reference = self._signer.issue(evidence_id, stream, ttl_seconds=ttl_seconds, now=self._clock())
        logger.info(
            "evidence_ledger.access_issued",
            evidence_id=evidence_id,
            stream=str(stream),
            expires_at=reference.expires_at.isoformat(),
        )
        return reference

    async def open_access_reference(self, token: str) -> tuple[EvidenceRecord, StreamType, bytes]:
        """Resolve a signed reference to the stream bytes it grants."""
        evidence_id, stream = self._signer.resolve(token, now=self._clock())
        record = self._require(evidence_id)
        digest = record.streams.get(stream)
        if digest is None:
            raise NotFoundError(f"evidence {evidence_id} has no {stream} stream")
        blob = await self._storage.get(digest.storage_ref)
        return record.model_copy(deep=True), stream, blob

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, evidence_id: str) -> EvidenceRecord:
        record = self._records.get(evidence_id)
        if record is None:
            raise NotFoundError(f"unknown evidence {evidence_id}")
        return record
