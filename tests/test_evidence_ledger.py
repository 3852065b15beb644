"""Tests for the append-only evidence ledger, signed references and storage."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import jwt
import pytest

from saferelay.models.enums import ShareParty, StreamType
from saferelay.models.evidence import AssembledStream, ShareGrant
from saferelay.services.errors import (
    EvidenceImmutableError,
    NotFoundError,
    ReferenceExpiredError,
    ValidationError,
)
from saferelay.services.evidence_ledger import (
    GENESIS_HASH,
    EvidenceLedger,
    compute_combined_hash,
)
from saferelay.services.ids import MonotonicIdGenerator
from saferelay.services.object_storage import FileSystemObjectStorage, InMemoryObjectStorage
from saferelay.services.signing import ReferenceSigner


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _assembled(**streams: bytes) -> dict[StreamType, AssembledStream]:
    return {
        StreamType(name): AssembledStream(
            stream_type=StreamType(name),
            data=data,
            sha256=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
        )
        for name, data in streams.items()
    }


def _ledger(clock: _Clock | None = None) -> tuple[EvidenceLedger, InMemoryObjectStorage]:
    storage = InMemoryObjectStorage()
    ledger = EvidenceLedger(
        storage,
        ReferenceSigner("test-secret", ttl_seconds=600),
        MonotonicIdGenerator(),
        clock=clock,
    )
    return ledger, storage


# -----------------------------------------------------------------------
# Commit
# -----------------------------------------------------------------------


class TestCommit:
    async def test_combined_hash_uses_canonical_order(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit(
            "inc_1", "usr_1", _assembled(audio=b"voice", video_front=b"front", photo=b"pic")
        )
        digests = [
            hashlib.sha256(b"front").hexdigest(),
            hashlib.sha256(b"voice").hexdigest(),
            hashlib.sha256(b"pic").hexdigest(),
        ]
        assert record.combined_hash == hashlib.sha256("".join(digests).encode()).hexdigest()

    async def test_combined_hash_helper_ignores_mapping_order(self) -> None:
        a = {StreamType.AUDIO: "aa", StreamType.VIDEO_BACK: "bb"}
        b = {StreamType.VIDEO_BACK: "bb", StreamType.AUDIO: "aa"}
        assert compute_combined_hash(a) == compute_combined_hash(b)

    async def test_record_fields(self) -> None:
        clock = _Clock()
        ledger, storage = _ledger(clock)
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"voice"))
        assert record.evidence_id == "evd_000001"
        assert record.finalized_at == clock.now
        assert record.streams[StreamType.AUDIO].size_bytes == 5
        assert record.shared_with == []
        assert record.tamper_suspected is False
        assert storage.size == 1

    async def test_records_are_chained(self) -> None:
        ledger, _ = _ledger()
        first = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"one"))
        second = await ledger.commit("inc_2", "usr_1", _assembled(audio=b"two"))
        assert first.previous_hash == GENESIS_HASH
        assert second.previous_hash == first.record_hash
        assert second.sequence == 1
        assert ledger.verify_chain().ok is True

    async def test_rejects_hash_mismatch(self) -> None:
        ledger, _ = _ledger()
        bad = {
            StreamType.AUDIO: AssembledStream(
                stream_type=StreamType.AUDIO, data=b"abc", sha256="0" * 64, size_bytes=3
            )
        }
        with pytest.raises(ValidationError):
            await ledger.commit("inc_1", "usr_1", bad)

    async def test_rejects_empty_commit(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(ValidationError):
            await ledger.commit("inc_1", "usr_1", {})

    async def test_listener_receives_record_and_failures_are_contained(self) -> None:
        ledger, _ = _ledger()
        seen = AsyncMock()
        broken = AsyncMock(side_effect=RuntimeError("listener down"))
        ledger.add_listener(broken)
        ledger.add_listener(seen)
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        seen.assert_awaited_once()
        assert seen.await_args.args[0].evidence_id == record.evidence_id

    async def test_returned_records_are_copies(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        record.shared_with.append(ShareGrant(party=ShareParty.POLICE, granted_at=record.finalized_at))
        record.tamper_suspected = True
        fresh = ledger.get(record.evidence_id)
        assert fresh.shared_with == []
        assert fresh.tamper_suspected is False


# -----------------------------------------------------------------------
# Sharing and immutability
# -----------------------------------------------------------------------


class TestSharingAndDeletion:
    async def test_shared_with_only_grows(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        sizes = []
        for party in (ShareParty.FAMILY, ShareParty.POLICE, ShareParty.FAMILY):
            updated = await ledger.grant_share(record.evidence_id, party)
            sizes.append(len(updated.shared_with))
        assert sizes == [1, 2, 3]
        assert [g.party for g in ledger.get(record.evidence_id).shared_with] == [
            ShareParty.FAMILY,
            ShareParty.POLICE,
            ShareParty.FAMILY,
        ]

    async def test_unknown_party_rejected(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        with pytest.raises(ValidationError):
            await ledger.grant_share(record.evidence_id, "newspaper")

    async def test_deletion_always_rejected(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        with pytest.raises(EvidenceImmutableError):
            await ledger.request_deletion(record.evidence_id, requested_by="usr_1")
        assert ledger.get(record.evidence_id).evidence_id == record.evidence_id

    async def test_unknown_record(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(NotFoundError):
            ledger.get("evd_missing")

    async def test_list_for_incident(self) -> None:
        ledger, _ = _ledger()
        await ledger.commit("inc_1", "usr_1", _assembled(audio=b"a"))
        await ledger.commit("inc_2", "usr_1", _assembled(audio=b"b"))
        await ledger.commit("inc_1", "usr_1", _assembled(photo=b"c"))
        assert [r.sequence for r in ledger.list_for_incident("inc_1")] == [0, 2]


# -----------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------


class TestVerification:
    async def test_clean_record_verifies(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x", photo=b"y"))
        report = await ledger.verify(record.evidence_id)
        assert report.ok is True
        assert report.mismatches == []

    async def test_modified_blob_flags_tamper_and_flag_sticks(self) -> None:
        ledger, storage = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x", photo=b"y"))
        ref = record.streams[StreamType.PHOTO].storage_ref
        storage._blobs[ref] = b"edited"

        report = await ledger.verify(record.evidence_id)
        assert report.ok is False
        assert report.mismatches == [StreamType.PHOTO]
        flagged = ledger.get(record.evidence_id)
        assert flagged.tamper_suspected is True
        assert flagged.tamper_detected_at is not None

        # restoring the blob does not clear the flag
        storage._blobs[ref] = b"y"
        assert (await ledger.verify(record.evidence_id)).ok is True
        assert ledger.get(record.evidence_id).tamper_suspected is True

    async def test_missing_blob_counts_as_mismatch(self) -> None:
        ledger, storage = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        storage._blobs.clear()
        report = await ledger.verify(record.evidence_id)
        assert report.mismatches == [StreamType.AUDIO]

    async def test_rewritten_record_breaks_chain(self) -> None:
        ledger, _ = _ledger()
        first = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"one"))
        await ledger.commit("inc_1", "usr_1", _assembled(audio=b"two"))
        ledger._records[first.evidence_id].combined_hash = "f" * 64

        report = ledger.verify_chain()
        assert report.ok is False
        assert report.broken_at == first.evidence_id


# -----------------------------------------------------------------------
# Signed access
# -----------------------------------------------------------------------


class TestSignedAccess:
    async def test_issue_and_open(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"voice-bytes"))
        reference = ledger.issue_access_reference(record.evidence_id, "audio")
        opened, stream, blob = await ledger.open_access_reference(reference.token)
        assert opened.evidence_id == record.evidence_id
        assert stream == StreamType.AUDIO
        assert blob == b"voice-bytes"

    async def test_expired_reference(self) -> None:
        clock = _Clock()
        ledger, _ = _ledger(clock)
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        reference = ledger.issue_access_reference(record.evidence_id, "audio", ttl_seconds=60)
        clock.advance(61)
        with pytest.raises(ReferenceExpiredError):
            await ledger.open_access_reference(reference.token)

    async def test_tampered_token_rejected(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        token = ledger.issue_access_reference(record.evidence_id, "audio").token
        header, payload, signature = token.split(".")
        with pytest.raises(ValidationError):
            await ledger.open_access_reference(f"{header}.{payload}.{'A' * len(signature)}")

    async def test_token_from_other_key_rejected(self) -> None:
        other = ReferenceSigner("other-secret")
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        forged = other.issue(record.evidence_id, StreamType.AUDIO)
        with pytest.raises(ValidationError):
            await ledger.open_access_reference(forged.token)

    async def test_malformed_token(self) -> None:
        with pytest.raises(ValidationError):
            ReferenceSigner("k").resolve("not-a-token")

    async def test_reference_for_missing_stream(self) -> None:
        ledger, _ = _ledger()
        record = await ledger.commit("inc_1", "usr_1", _assembled(audio=b"x"))
        with pytest.raises(NotFoundError):
            ledger.issue_access_reference(record.evidence_id, "photo")


class TestReferenceSigner:
    def test_token_is_hs256_jwt_with_expiry_and_id(self) -> None:
        issued_at = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
        reference = ReferenceSigner("test-secret", ttl_seconds=600).issue(
            "evd_000001", StreamType.AUDIO, now=issued_at
        )

        assert jwt.get_unverified_header(reference.token)["alg"] == "HS256"
        claims = jwt.decode(reference.token, options={"verify_signature": False})
        assert claims["sub"] == "evd_000001"
        assert claims["stream"] == "audio"
        assert claims["exp"] == int((issued_at + timedelta(seconds=600)).timestamp())
        assert reference.expires_at == issued_at + timedelta(seconds=600)
        assert claims["jti"]

    def test_each_reference_is_unique(self) -> None:
        signer = ReferenceSigner("test-secret")
        first = signer.issue("evd_000001", StreamType.AUDIO)
        second = signer.issue("evd_000001", StreamType.AUDIO)
        assert first.token != second.token
        assert signer.resolve(first.token) == signer.resolve(second.token) == ("evd_000001", StreamType.AUDIO)

    def test_expiry_follows_injected_clock(self) -> None:
        signer = ReferenceSigner("test-secret")
        issued_at = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
        token = signer.issue("evd_000001", StreamType.PHOTO, ttl_seconds=60, now=issued_at).token

        assert signer.resolve(token, now=issued_at + timedelta(seconds=59))[1] == StreamType.PHOTO
        with pytest.raises(ReferenceExpiredError):
            signer.resolve(token, now=issued_at + timedelta(seconds=60))

    def test_foreign_jwt_rejected(self) -> None:
        foreign = jwt.encode(
            {"sub": "evd_000001", "stream": "audio", "exp": datetime.now(UTC) + timedelta(minutes=5)},
            "test-secret",
            algorithm="HS256",
        )
        with pytest.raises(ValidationError):
            ReferenceSigner("test-secret").resolve(foreign)


# -----------------------------------------------------------------------
# Object storage
# -----------------------------------------------------------------------


class TestFileSystemObjectStorage:
    async def test_put_get(self, tmp_path) -> None:
        storage = FileSystemObjectStorage(tmp_path)
        ref = await storage.put(b"evidence")
        assert ref.startswith("file://")
        assert await storage.get(ref) == b"evidence"

    async def test_unknown_ref(self, tmp_path) -> None:
        storage = FileSystemObjectStorage(tmp_path)
        with pytest.raises(NotFoundError):
            await storage.get("file://00/missing")
